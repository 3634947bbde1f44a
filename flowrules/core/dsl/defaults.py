"""
Default rule set applied to newly created networks.
"""

from functools import lru_cache
from typing import Any, Dict, List

from flowrules.models.schemas import PolicyBundle

from .compiler import compile_rules

DEFAULT_RULES_SOURCE = """#
# This is a default rule set that allows IPv4 and IPv6 traffic but otherwise
# behaves like a standard Ethernet switch:

drop
\tnot ethertype ipv4
\tand not ethertype arp
\tand not ethertype ipv6
;

# Accept anything else. This is required since default is 'drop':

accept;

# For more information on how rules work visit: https://docs.zerotier.com/rules/
"""


@lru_cache(maxsize=1)
def _compiled_default() -> PolicyBundle:
    result = compile_rules(DEFAULT_RULES_SOURCE)
    if result.bundle is None:
        raise RuntimeError(
            "default rule source does not compile: "
            + "; ".join(d.format() for d in result.errors)
        )
    return result.bundle


def default_policy() -> PolicyBundle:
    """Compiled default rule set; callers get their own copy."""
    return _compiled_default().model_copy(deep=True)


def default_compiled_rules() -> List[Dict[str, Any]]:
    return default_policy().rules

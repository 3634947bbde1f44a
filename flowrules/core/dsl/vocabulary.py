"""
Rule Vocabulary
===============

Static, read-only table of match fields and actions shared by the parser,
validator, emitter and decompiler. Extending the DSL means adding a row here
and, for a new operand kind, a handler in each stage; every stage checks its
handler table against ``OperandKind``/``ActionShape`` at import time.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional, Tuple, Type


UINT16_MAX = 0xFFFF
UINT32_MAX = 0xFFFFFFFF

# Capability and tag ids share this namespace bound
MAX_DECLARATION_ID = UINT16_MAX
MAX_QOS_BUCKET = 8
MAX_FLAG_BIT = 31


class MatchField(str, Enum):
    """Match clause fields."""
    ZT_SOURCE = "zt-source"
    ZT_DEST = "zt-dest"
    VLAN_ID = "vlan-id"
    VLAN_PCP = "vlan-pcp"
    VLAN_DEI = "vlan-dei"
    ETHERTYPE = "ethertype"
    MAC_SOURCE = "mac-source"
    MAC_DEST = "mac-dest"
    IP_SOURCE = "ip-source"
    IP_DEST = "ip-dest"
    IP_TOS = "ip-tos"
    IP_PROTOCOL = "ip-protocol"
    ICMP = "icmp"
    PORT_SOURCE = "port-source"
    PORT_DEST = "port-dest"
    CHARACTERISTICS = "characteristics"
    FRAME_SIZE = "frame-size"
    RANDOM = "random"
    TAG_DIFFERENCE = "tag-difference"
    TAG_BITWISE_AND = "tag-bitwise-and"
    TAG_BITWISE_OR = "tag-bitwise-or"
    TAG_BITWISE_XOR = "tag-bitwise-xor"
    TAG_EQUALS = "tag-equals"
    TAG_SENDER = "tag-sender"
    TAG_RECEIVER = "tag-receiver"
    RAW = "raw"


class ActionKind(str, Enum):
    """Terminal actions of a rule group."""
    ACCEPT = "accept"
    DROP = "drop"
    BREAK = "break"
    TEE = "tee"
    WATCH = "watch"
    REDIRECT = "redirect"
    PRIORITY = "priority"
    RAW = "raw"


class OperandKind(Enum):
    """How a match clause's operands are resolved and serialized."""
    ZT_ADDRESS = "zt-address"
    UINT = "uint"
    ETHERTYPE = "ethertype"
    MAC = "mac"
    IP = "ip"
    IP_TOS = "ip-tos"
    IP_PROTOCOL = "ip-protocol"
    ICMP = "icmp"
    RANGE = "range"
    CHARACTERISTICS = "characteristics"
    PROBABILITY = "probability"
    TAG_VALUE = "tag-value"
    RAW = "raw"


class ActionShape(Enum):
    """Operand layout of an action."""
    NONE = "none"
    OBSERVE = "observe"  # length address [flags]
    REDIRECT = "redirect"  # address [flags]
    PRIORITY = "priority"  # qos bucket
    RAW = "raw"  # controller object as a JSON string


@dataclass(frozen=True)
class MatchSpec:
    """One match field: DSL keyword, controller type names and operand shape."""

    field: MatchField
    keyword: str
    json_types: Tuple[str, ...]
    operand: OperandKind
    min_operands: int
    max_operands: Optional[int]
    json_key: Optional[str] = None
    bounds: Tuple[int, int] = (0, UINT32_MAX)

    @property
    def json_type(self) -> str:
        return self.json_types[0]

    @property
    def arity_text(self) -> str:
        if self.max_operands is None:
            return f"at least {self.min_operands}"
        if self.min_operands == self.max_operands:
            return str(self.min_operands)
        return f"{self.min_operands} to {self.max_operands}"


@dataclass(frozen=True)
class ActionSpec:
    """One action: DSL keyword, controller type name and operand shape."""

    kind: ActionKind
    keyword: str
    json_type: str
    shape: ActionShape
    min_operands: int
    max_operands: int
    terminal: bool

    @property
    def arity_text(self) -> str:
        if self.min_operands == self.max_operands:
            return str(self.min_operands)
        return f"{self.min_operands} to {self.max_operands}"


def _tag(field: MatchField, keyword: str, json_type: str) -> MatchSpec:
    return MatchSpec(field, keyword, (json_type,), OperandKind.TAG_VALUE, 2, 2)


MATCH_SPECS: Tuple[MatchSpec, ...] = (
    MatchSpec(MatchField.ZT_SOURCE, "ztsrc", ("MATCH_SOURCE_ZEROTIER_ADDRESS",),
              OperandKind.ZT_ADDRESS, 1, 1, json_key="zt"),
    MatchSpec(MatchField.ZT_DEST, "ztdest", ("MATCH_DEST_ZEROTIER_ADDRESS",),
              OperandKind.ZT_ADDRESS, 1, 1, json_key="zt"),
    MatchSpec(MatchField.VLAN_ID, "vlan", ("MATCH_VLAN_ID",),
              OperandKind.UINT, 1, 1, json_key="vlanId", bounds=(0, 4095)),
    MatchSpec(MatchField.VLAN_PCP, "vlanpcp", ("MATCH_VLAN_PCP",),
              OperandKind.UINT, 1, 1, json_key="vlanPcp", bounds=(0, 7)),
    MatchSpec(MatchField.VLAN_DEI, "vlandei", ("MATCH_VLAN_DEI",),
              OperandKind.UINT, 1, 1, json_key="vlanDei", bounds=(0, 1)),
    MatchSpec(MatchField.ETHERTYPE, "ethertype", ("MATCH_ETHERTYPE",),
              OperandKind.ETHERTYPE, 1, 1, json_key="etherType", bounds=(0, UINT16_MAX)),
    MatchSpec(MatchField.MAC_SOURCE, "macsrc", ("MATCH_MAC_SOURCE",),
              OperandKind.MAC, 1, 1, json_key="mac"),
    MatchSpec(MatchField.MAC_DEST, "macdest", ("MATCH_MAC_DEST",),
              OperandKind.MAC, 1, 1, json_key="mac"),
    MatchSpec(MatchField.IP_SOURCE, "ipsrc", ("MATCH_IPV4_SOURCE", "MATCH_IPV6_SOURCE"),
              OperandKind.IP, 1, 1, json_key="ip"),
    MatchSpec(MatchField.IP_DEST, "ipdest", ("MATCH_IPV4_DEST", "MATCH_IPV6_DEST"),
              OperandKind.IP, 1, 1, json_key="ip"),
    MatchSpec(MatchField.IP_TOS, "iptos", ("MATCH_IP_TOS",),
              OperandKind.IP_TOS, 2, 3, bounds=(0, 255)),
    MatchSpec(MatchField.IP_PROTOCOL, "ipprotocol", ("MATCH_IP_PROTOCOL",),
              OperandKind.IP_PROTOCOL, 1, 1, json_key="ipProtocol", bounds=(0, 255)),
    MatchSpec(MatchField.ICMP, "icmp", ("MATCH_ICMP",),
              OperandKind.ICMP, 1, 2, bounds=(0, 255)),
    MatchSpec(MatchField.PORT_SOURCE, "sport", ("MATCH_IP_SOURCE_PORT_RANGE",),
              OperandKind.RANGE, 1, 2, bounds=(1, UINT16_MAX)),
    MatchSpec(MatchField.PORT_DEST, "dport", ("MATCH_IP_DEST_PORT_RANGE",),
              OperandKind.RANGE, 1, 2, bounds=(1, UINT16_MAX)),
    MatchSpec(MatchField.CHARACTERISTICS, "chr", ("MATCH_CHARACTERISTICS",),
              OperandKind.CHARACTERISTICS, 1, None, json_key="mask"),
    MatchSpec(MatchField.FRAME_SIZE, "framesize", ("MATCH_FRAME_SIZE_RANGE",),
              OperandKind.RANGE, 1, 2, bounds=(0, UINT16_MAX)),
    MatchSpec(MatchField.RANDOM, "random", ("MATCH_RANDOM",),
              OperandKind.PROBABILITY, 1, 1, json_key="probability"),
    _tag(MatchField.TAG_DIFFERENCE, "tdiff", "MATCH_TAGS_DIFFERENCE"),
    _tag(MatchField.TAG_BITWISE_AND, "tand", "MATCH_TAGS_BITWISE_AND"),
    _tag(MatchField.TAG_BITWISE_OR, "tor", "MATCH_TAGS_BITWISE_OR"),
    _tag(MatchField.TAG_BITWISE_XOR, "txor", "MATCH_TAGS_BITWISE_XOR"),
    _tag(MatchField.TAG_EQUALS, "teq", "MATCH_TAGS_EQUAL"),
    _tag(MatchField.TAG_SENDER, "tseq", "MATCH_TAG_SENDER"),
    _tag(MatchField.TAG_RECEIVER, "treq", "MATCH_TAG_RECEIVER"),
    # Pass-through for controller objects this vocabulary does not know
    MatchSpec(MatchField.RAW, "raw", (), OperandKind.RAW, 1, 1),
)

ACTION_SPECS: Tuple[ActionSpec, ...] = (
    ActionSpec(ActionKind.ACCEPT, "accept", "ACTION_ACCEPT", ActionShape.NONE, 0, 0, True),
    ActionSpec(ActionKind.DROP, "drop", "ACTION_DROP", ActionShape.NONE, 0, 0, True),
    ActionSpec(ActionKind.BREAK, "break", "ACTION_BREAK", ActionShape.NONE, 0, 0, False),
    ActionSpec(ActionKind.TEE, "tee", "ACTION_TEE", ActionShape.OBSERVE, 2, 3, False),
    ActionSpec(ActionKind.WATCH, "watch", "ACTION_WATCH", ActionShape.OBSERVE, 2, 3, False),
    ActionSpec(ActionKind.REDIRECT, "redirect", "ACTION_REDIRECT", ActionShape.REDIRECT, 1, 2, True),
    ActionSpec(ActionKind.PRIORITY, "priority", "ACTION_PRIORITY", ActionShape.PRIORITY, 1, 1, False),
)

MATCH_BY_KEYWORD: Dict[str, MatchSpec] = {s.keyword: s for s in MATCH_SPECS}
MATCH_BY_FIELD: Dict[MatchField, MatchSpec] = {s.field: s for s in MATCH_SPECS}
MATCH_BY_JSON_TYPE: Dict[str, MatchSpec] = {t: s for s in MATCH_SPECS for t in s.json_types}
ACTION_BY_KEYWORD: Dict[str, ActionSpec] = {s.keyword: s for s in ACTION_SPECS}
# Action-position pass-through. Only a statement may start with it; inside a
# rule the same keyword is the raw match clause.
RAW_ACTION = ActionSpec(ActionKind.RAW, "raw", "", ActionShape.RAW, 1, 1, False)

ACTION_BY_KIND: Dict[ActionKind, ActionSpec] = {s.kind: s for s in ACTION_SPECS + (RAW_ACTION,)}
ACTION_BY_JSON_TYPE: Dict[str, ActionSpec] = {s.json_type: s for s in ACTION_SPECS}
STATEMENT_ACTIONS: Dict[str, ActionSpec] = dict(ACTION_BY_KEYWORD, raw=RAW_ACTION)

# Keywords
CONNECTIVES: FrozenSet[str] = frozenset({"and", "or", "not"})
DECLARATIONS: FrozenSet[str] = frozenset({"cap", "tag"})
DECLARATION_ATTRIBUTES: FrozenSet[str] = frozenset({"id", "default", "enum", "flag"})
RESERVED_WORDS: FrozenSet[str] = frozenset(
    set(MATCH_BY_KEYWORD) | set(ACTION_BY_KEYWORD) | CONNECTIVES | DECLARATIONS
    | DECLARATION_ATTRIBUTES
)

# Named constants
ETHERTYPES: Dict[str, int] = {
    "ipv4": 0x0800,
    "arp": 0x0806,
    "wol": 0x0842,
    "rarp": 0x8035,
    "atalk": 0x809B,
    "aarp": 0x80F3,
    "ipx_a": 0x8137,
    "ipx_b": 0x8138,
    "ipv6": 0x86DD,
}

IP_PROTOCOLS: Dict[str, int] = {
    "icmp": 1,
    "igmp": 2,
    "ipip": 4,
    "tcp": 6,
    "egp": 8,
    "igp": 9,
    "udp": 17,
    "rdp": 27,
    "ipv6": 41,
    "gre": 47,
    "esp": 50,
    "ah": 51,
    "icmp6": 58,
    "ospf": 89,
    "pim": 103,
    "vrrp": 112,
    "l2tp": 115,
    "sctp": 132,
    "udplite": 136,
}

CHARACTERISTIC_BITS: Dict[str, int] = {
    "inbound": 63,
    "multicast": 62,
    "broadcast": 61,
    "sender_ip_auth": 60,
    "sender_mac_auth": 59,
    "tcp_ns": 8,
    "tcp_cwr": 7,
    "tcp_ece": 6,
    "tcp_urg": 5,
    "tcp_ack": 4,
    "tcp_psh": 3,
    "tcp_rst": 2,
    "tcp_syn": 1,
    "tcp_fin": 0,
}

ETHERTYPE_NAMES: Dict[int, str] = {v: k for k, v in ETHERTYPES.items()}
IP_PROTOCOL_NAMES: Dict[int, str] = {v: k for k, v in IP_PROTOCOLS.items()}

# Names accepted as operands even when they collide with a reserved word
# (``ipprotocol icmp``)
OPERAND_NAMES: Dict[OperandKind, Mapping[str, int]] = {
    OperandKind.ETHERTYPE: ETHERTYPES,
    OperandKind.IP_PROTOCOL: IP_PROTOCOLS,
    OperandKind.CHARACTERISTICS: CHARACTERISTIC_BITS,
}


def require_exhaustive(handlers: Mapping, enum_cls: Type[Enum], owner: str) -> None:
    """Fail at import when a stage lacks a handler for some enum member."""
    missing = [member.name for member in enum_cls if member not in handlers]
    if missing:
        raise RuntimeError(f"{owner} has no handler for {enum_cls.__name__}: {', '.join(missing)}")

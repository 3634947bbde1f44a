"""
Rule Compiler
=============

Pipeline façade wiring lexer, parser, validator and emitter together, and
the reverse path through the decompiler.

Every call is a single synchronous pass with no shared state, so the
functions here are safe to call concurrently.
"""

import time
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from flowrules.config.logging import get_logger
from flowrules.models.schemas import CompileResult, DecompileResult, PolicyBundle

from .ast import Document
from .decompiler import PolicyInputError, decompile
from .diagnostics import Diagnostic, has_errors, in_source_order
from .emitter import emit
from .lexer import tokenize
from .parser import parse
from .validator import validate

logger = get_logger(__name__)


def _analyze(source: str) -> Tuple[Document, List[Diagnostic]]:
    document, syntax_diagnostics = parse(tokenize(source))
    annotated, semantic_diagnostics = validate(document)
    return annotated, in_source_order(syntax_diagnostics + semantic_diagnostics)


def compile_rules(source: str) -> CompileResult:
    """
    Compile rule DSL source into the controller's JSON triple.

    Args:
        source: Rule DSL text

    Returns:
        CompileResult; ``bundle`` is set only when no errors were found
    """
    start_time = time.time()
    document, diagnostics = _analyze(source)

    bundle: Optional[PolicyBundle] = None
    if not has_errors(diagnostics):
        bundle = emit(document, diagnostics)

    processing_time = time.time() - start_time
    logger.info(
        "Compiled rule source",
        success=bundle is not None,
        statements=len(document.statements),
        errors=sum(1 for d in diagnostics if d.is_error),
        warnings=sum(1 for d in diagnostics if not d.is_error),
        processing_time=processing_time,
    )
    return CompileResult(
        success=bundle is not None,
        bundle=bundle,
        diagnostics=diagnostics,
        processing_time=processing_time,
    )


def check_rules(source: str) -> List[Diagnostic]:
    """
    Report every diagnostic for rule DSL source without emitting JSON.

    Args:
        source: Rule DSL text

    Returns:
        Diagnostics from all stages in source order
    """
    _, diagnostics = _analyze(source)
    return diagnostics


PolicyInput = Union[PolicyBundle, Dict[str, Any], Sequence[Any]]


def decompile_rules(
    policy: PolicyInput,
    capabilities: Optional[Sequence[Any]] = None,
    tags: Optional[Sequence[Any]] = None,
) -> DecompileResult:
    """
    Render controller JSON as rule DSL text.

    Args:
        policy: A PolicyBundle, a ``{rules, capabilities, tags}`` dict, or
            the bare rules list
        capabilities: Capability declarations when ``policy`` is a rules list
        tags: Tag declarations when ``policy`` is a rules list

    Returns:
        DecompileResult with the DSL text and schema warnings

    Raises:
        PolicyInputError: If the input is not a policy triple
    """
    start_time = time.time()

    if isinstance(policy, PolicyBundle):
        rules, capabilities, tags = policy.rules, policy.capabilities, policy.tags
    elif isinstance(policy, dict):
        if "rules" not in policy:
            raise PolicyInputError("policy object has no 'rules' key")
        rules = policy["rules"]
        capabilities = policy.get("capabilities")
        tags = policy.get("tags")
    elif isinstance(policy, (list, tuple)):
        rules = policy
    else:
        raise PolicyInputError(f"expected a policy bundle, dict or rules list, got {type(policy).__name__}")

    source, diagnostics = decompile(rules, capabilities or (), tags or ())

    processing_time = time.time() - start_time
    logger.info(
        "Decompiled policy",
        warnings=len(diagnostics),
        processing_time=processing_time,
    )
    return DecompileResult(source=source, diagnostics=diagnostics, processing_time=processing_time)

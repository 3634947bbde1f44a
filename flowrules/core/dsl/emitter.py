"""
Policy Emitter
==============

Lowers a validated rule document into the controller's JSON triple.

Each match clause becomes one object carrying ``type``, ``not`` and ``or``
followed by its field keys; each action becomes one object carrying ``type``
and its own keys. Objects appear in source order, which is the order the
controller evaluates them in.
"""

from typing import Any, Callable, Dict, Iterable, List, Tuple

from flowrules.config.logging import get_logger
from flowrules.models.schemas import PolicyBundle

from .ast import Action, CapabilityDecl, Document, MatchClause, RuleGroup, TagDecl
from .diagnostics import Diagnostic, has_errors
from .vocabulary import (
    ACTION_BY_KIND,
    MATCH_BY_FIELD,
    ActionShape,
    ActionSpec,
    MatchSpec,
    OperandKind,
    require_exhaustive,
)

logger = get_logger(__name__)


class PolicyEmitError(Exception):
    """Raised when emit is called on a document that cannot be emitted."""


def _lower_single(spec: MatchSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    return {spec.json_key: values[0]}


def _lower_ip(spec: MatchSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    interface = values[0]
    json_type = spec.json_types[0] if interface.version == 4 else spec.json_types[1]
    return {"type": json_type, "ip": interface.with_prefixlen}


def _lower_ip_tos(spec: MatchSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    mask, start, end = values
    return {"mask": mask, "start": start, "end": end}


def _lower_icmp(spec: MatchSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    icmp_type, icmp_code = values
    return {"icmpType": icmp_type, "icmpCode": icmp_code}


def _lower_range(spec: MatchSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    start, end = values
    return {"start": start, "end": end}


def _lower_characteristics(spec: MatchSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    return {"mask": format(values[0], "016x")}


def _lower_tag_value(spec: MatchSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    tag_id, value = values
    return {"id": tag_id, "value": value}


def _lower_raw(spec: MatchSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    return dict(values[0])


_MATCH_LOWERERS: Dict[OperandKind, Callable[[MatchSpec, Tuple[Any, ...]], Dict[str, Any]]] = {
    OperandKind.ZT_ADDRESS: _lower_single,
    OperandKind.UINT: _lower_single,
    OperandKind.ETHERTYPE: _lower_single,
    OperandKind.MAC: _lower_single,
    OperandKind.IP: _lower_ip,
    OperandKind.IP_TOS: _lower_ip_tos,
    OperandKind.IP_PROTOCOL: _lower_single,
    OperandKind.ICMP: _lower_icmp,
    OperandKind.RANGE: _lower_range,
    OperandKind.CHARACTERISTICS: _lower_characteristics,
    OperandKind.PROBABILITY: _lower_single,
    OperandKind.TAG_VALUE: _lower_tag_value,
    OperandKind.RAW: _lower_raw,
}


def _action_bare(spec: ActionSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    return {}


def _action_observe(spec: ActionSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    length, address, flags = values
    return {"address": address, "flags": flags, "length": length}


def _action_redirect(spec: ActionSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    address, flags = values
    return {"address": address, "flags": flags}


def _action_priority(spec: ActionSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    return {"qosBucket": values[0]}


def _action_raw(spec: ActionSpec, values: Tuple[Any, ...]) -> Dict[str, Any]:
    return dict(values[0])


_ACTION_LOWERERS: Dict[ActionShape, Callable[[ActionSpec, Tuple[Any, ...]], Dict[str, Any]]] = {
    ActionShape.NONE: _action_bare,
    ActionShape.OBSERVE: _action_observe,
    ActionShape.REDIRECT: _action_redirect,
    ActionShape.PRIORITY: _action_priority,
    ActionShape.RAW: _action_raw,
}

require_exhaustive(_MATCH_LOWERERS, OperandKind, "emitter")
require_exhaustive(_ACTION_LOWERERS, ActionShape, "emitter")


class PolicyEmitter:
    """Turns an annotated document into a ``PolicyBundle``."""

    def __init__(self, document: Document):
        self.document = document
        self.logger = logger.bind(component="emitter")

    def emit_bundle(self) -> PolicyBundle:
        rules: List[Dict[str, Any]] = []
        capabilities: List[Dict[str, Any]] = []
        tags: List[Dict[str, Any]] = []
        for statement in self.document.statements:
            if isinstance(statement, RuleGroup):
                rules.extend(self.group(statement))
            elif isinstance(statement, CapabilityDecl):
                capabilities.append(self.capability(statement))
            elif isinstance(statement, TagDecl):
                tags.append(self.tag(statement))
            else:
                raise PolicyEmitError(f"unexpected statement type {type(statement).__name__}")
        return PolicyBundle(rules=rules, capabilities=capabilities, tags=tags)

    def group(self, group: RuleGroup) -> List[Dict[str, Any]]:
        objects = [self.match(clause) for clause in group.matches]
        objects.append(self.action(group.action))
        return objects

    def match(self, clause: MatchClause) -> Dict[str, Any]:
        spec = MATCH_BY_FIELD[clause.field]
        fields = _MATCH_LOWERERS[spec.operand](spec, clause.values)
        if spec.operand is OperandKind.RAW:
            return fields
        obj: Dict[str, Any] = {"not": clause.negated, "or": clause.joined_by_or, "type": spec.json_type}
        obj.update(fields)
        return obj

    def action(self, action: Action) -> Dict[str, Any]:
        spec = ACTION_BY_KIND[action.kind]
        fields = _ACTION_LOWERERS[spec.shape](spec, action.values)
        if spec.shape is ActionShape.RAW:
            return fields
        obj: Dict[str, Any] = {"type": spec.json_type}
        obj.update(fields)
        return obj

    def capability(self, cap: CapabilityDecl) -> Dict[str, Any]:
        rules: List[Dict[str, Any]] = []
        for group in cap.rules:
            rules.extend(self.group(group))
        return {"id": cap.id_value, "name": cap.name, "rules": rules}

    def tag(self, tag: TagDecl) -> Dict[str, Any]:
        return {
            "id": tag.id_value,
            "name": tag.name,
            "default": tag.default_value,
            "enums": dict(tag.enum_values),
            "flags": dict(tag.flag_values),
        }


def emit(document: Document, diagnostics: Iterable[Diagnostic] = ()) -> PolicyBundle:
    """
    Emit the controller JSON for a validated document.

    Args:
        document: Annotated output of ``validate``
        diagnostics: Diagnostics collected so far; any error blocks emission

    Returns:
        PolicyBundle with rules, capabilities and tags

    Raises:
        PolicyEmitError: If the document is not annotated or carries errors
    """
    emitter = PolicyEmitter(document)
    if not document.annotated:
        emitter.logger.error("Refusing to emit an unvalidated document")
        raise PolicyEmitError("document has not been validated")
    if document.error_count or has_errors(diagnostics):
        emitter.logger.error("Refusing to emit a document with errors", errors=document.error_count)
        raise PolicyEmitError("document has errors and cannot be emitted")

    bundle = emitter.emit_bundle()
    emitter.logger.debug(
        "Emitted policy bundle",
        rules=len(bundle.rules),
        capabilities=len(bundle.capabilities),
        tags=len(bundle.tags),
    )
    return bundle

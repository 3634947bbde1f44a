"""
Policy Decompiler
=================

Renders the controller's JSON triple back into rule DSL text.

Every object is checked against a Cerberus schema for its shape before it is
rendered. Objects the DSL cannot express exactly (unknown types, malformed
shapes, non-canonical values) are carried through as ``raw '<json>'`` clauses
so recompiling the output reproduces the input byte for byte; each such
fallback is reported as a ``schema.*`` warning. An ``ACTION_*`` object that
falls back closes its statement as a ``raw '<json>';`` action, and trailing
matches with no action are closed the same way by their last object. Only
entries that are not typed objects are dropped (as ``#`` comments). A non-list
input is an error.
"""

from dataclasses import dataclass, field
import ipaddress
import json
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from cerberus import TypeDefinition, Validator  # type: ignore[import-untyped]

from flowrules.config.logging import get_logger

from .diagnostics import Diagnostic, DiagnosticCode, warning
from .vocabulary import (
    ACTION_BY_JSON_TYPE,
    CHARACTERISTIC_BITS,
    ETHERTYPE_NAMES,
    IP_PROTOCOL_NAMES,
    MATCH_BY_JSON_TYPE,
    MAX_DECLARATION_ID,
    MAX_FLAG_BIT,
    MAX_QOS_BUCKET,
    RAW_ACTION,
    RESERVED_WORDS,
    UINT16_MAX,
    UINT32_MAX,
    ActionShape,
    ActionSpec,
    MatchSpec,
    OperandKind,
    require_exhaustive,
)

logger = get_logger(__name__)

INDENT = "    "

_IDENTIFIER = re.compile(r"[A-Za-z_][0-9A-Za-z_]*")
_ZT_PATTERN = "[0-9a-f]{10}"
_MAC_PATTERN = "[0-9a-f]{2}(:[0-9a-f]{2}){5}"


class PolicyInputError(Exception):
    """Raised when decompile input is not a rules/capabilities/tags triple."""


class RuleSchemaValidator(Validator):  # type: ignore[misc]
    """Cerberus validator whose 'integer' type rejects booleans."""

    types_mapping = Validator.types_mapping.copy()
    types_mapping["integer"] = TypeDefinition("integer", (int,), (bool,))


class _RawFallback(Exception):
    """An object has no exact DSL form; render it as a raw clause."""

    def __init__(self, code: DiagnosticCode, reason: str):
        super().__init__(reason)
        self.code = code
        self.reason = reason


def _uint(low: int, high: int, nullable: bool = False) -> Dict[str, Any]:
    rule: Dict[str, Any] = {"type": "integer", "required": True, "min": low, "max": high}
    if nullable:
        rule["nullable"] = True
    return rule


# Schemas

_MATCH_BASE_SCHEMA: Dict[str, Any] = {
    "type": {"type": "string", "required": True},
    "not": {"type": "boolean", "required": True},
    "or": {"type": "boolean", "required": True},
}


def _keyed_uint_schema(spec: MatchSpec) -> Dict[str, Any]:
    return {spec.json_key: _uint(*spec.bounds)}


_MATCH_SCHEMAS: Dict[OperandKind, Callable[[MatchSpec], Dict[str, Any]]] = {
    OperandKind.ZT_ADDRESS: lambda spec: {
        "zt": {"type": "string", "required": True, "regex": _ZT_PATTERN}
    },
    OperandKind.UINT: _keyed_uint_schema,
    OperandKind.ETHERTYPE: _keyed_uint_schema,
    OperandKind.MAC: lambda spec: {
        "mac": {"type": "string", "required": True, "regex": _MAC_PATTERN}
    },
    OperandKind.IP: lambda spec: {"ip": {"type": "string", "required": True}},
    OperandKind.IP_TOS: lambda spec: {
        "mask": _uint(*spec.bounds),
        "start": _uint(*spec.bounds),
        "end": _uint(*spec.bounds),
    },
    OperandKind.IP_PROTOCOL: _keyed_uint_schema,
    OperandKind.ICMP: lambda spec: {
        "icmpType": _uint(*spec.bounds),
        "icmpCode": _uint(*spec.bounds, nullable=True),
    },
    OperandKind.RANGE: lambda spec: {"start": _uint(*spec.bounds), "end": _uint(*spec.bounds)},
    OperandKind.CHARACTERISTICS: lambda spec: {
        "mask": {"type": "string", "required": True, "regex": "[0-9a-fA-F]{1,16}"}
    },
    OperandKind.PROBABILITY: lambda spec: {"probability": _uint(0, UINT32_MAX)},
    OperandKind.TAG_VALUE: lambda spec: {
        "id": _uint(0, MAX_DECLARATION_ID),
        "value": _uint(0, UINT32_MAX),
    },
    # Raw clauses never come out of a JSON type lookup
    OperandKind.RAW: lambda spec: {},
}

_ACTION_ADDRESS = {"type": "string", "required": True, "regex": _ZT_PATTERN}

_ACTION_SCHEMAS: Dict[ActionShape, Dict[str, Any]] = {
    ActionShape.NONE: {},
    ActionShape.OBSERVE: {
        "address": _ACTION_ADDRESS,
        "flags": _uint(0, UINT32_MAX),
        "length": _uint(-1, UINT16_MAX),
    },
    ActionShape.REDIRECT: {"address": _ACTION_ADDRESS, "flags": _uint(0, UINT32_MAX)},
    ActionShape.PRIORITY: {"qosBucket": _uint(0, MAX_QOS_BUCKET)},
    # Raw actions never come out of a JSON type lookup
    ActionShape.RAW: {},
}

TAG_SCHEMA: Dict[str, Any] = {
    "id": _uint(0, MAX_DECLARATION_ID),
    "name": {"type": "string", "nullable": True},
    "default": {"type": "integer", "nullable": True, "min": 0, "max": UINT32_MAX},
    "enums": {
        "type": "dict",
        "keysrules": {"type": "string"},
        "valuesrules": {"type": "integer", "min": 0, "max": UINT32_MAX},
    },
    "flags": {
        "type": "dict",
        "keysrules": {"type": "string"},
        "valuesrules": {"type": "integer", "min": 0, "max": MAX_FLAG_BIT},
    },
}

CAPABILITY_SCHEMA: Dict[str, Any] = {
    "id": _uint(0, MAX_DECLARATION_ID),
    "name": {"type": "string", "nullable": True},
    "rules": {"type": "list", "required": True},
}


def _format_errors(errors: Any, path: str = "") -> List[str]:
    """Flatten Cerberus' nested error dict into 'field: message' strings."""
    formatted: List[str] = []
    for name, info in errors.items():
        current = f"{path}.{name}" if path else str(name)
        for item in info if isinstance(info, list) else [info]:
            if isinstance(item, dict):
                formatted.extend(_format_errors(item, current))
            else:
                formatted.append(f"{current}: {item}")
    return formatted


def shape_problem(schema: Dict[str, Any], obj: Dict[str, Any]) -> Optional[str]:
    """Validate ``obj`` against ``schema``; None when it conforms."""
    validator = RuleSchemaValidator(schema)
    validator.allow_unknown = False
    if validator.validate(obj):
        return None
    return "; ".join(_format_errors(validator.errors))


def _compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"))


def _raw_clause(obj: Dict[str, Any]) -> str:
    text = _compact(obj).replace("\\", "\\\\").replace("'", "\\'")
    return f"raw '{text}'"


def _span(start: int, end: int) -> str:
    return str(start) if start == end else f"{start}-{end}"


def _is_identifier(name: str) -> bool:
    return bool(_IDENTIFIER.fullmatch(name)) and name not in RESERVED_WORDS


@dataclass
class _TagView:
    """What rule rendering needs to know about one declared tag."""

    name: str
    enum_labels: Dict[int, str] = field(default_factory=dict)
    flag_labels: Dict[int, str] = field(default_factory=dict)


class PolicyDecompiler:
    """Single-use renderer for one rules/capabilities/tags triple."""

    def __init__(self) -> None:
        self.diagnostics: List[Diagnostic] = []
        self.tags_by_id: Dict[int, _TagView] = {}
        self.logger = logger.bind(component="decompiler")

    def _warn(self, code: DiagnosticCode, message: str) -> None:
        self.diagnostics.append(warning(code, message))

    def decompile(self, rules: Sequence[Any], capabilities: Sequence[Any],
                  tags: Sequence[Any]) -> str:
        sections = [
            self.tags(tags),
            self.capabilities(capabilities),
            self.rules(rules, "rules"),
        ]
        blocks = ["\n".join(lines) for lines in sections if lines]
        return "\n\n".join(blocks) + "\n" if blocks else ""

    # Declarations

    def _declaration_name(self, entry: Dict[str, Any], prefix: str, where: str,
                          used: Set[str]) -> str:
        name = entry.get("name")
        fallback = f"{prefix}_{entry['id']}"
        problem: Optional[str] = None
        if name is None or name == "":
            name = fallback
        elif not _is_identifier(name) or name in used:
            reason = "is already used" if name in used else "is not a valid DSL name"
            problem = f"name '{name}' {reason}"
            name = fallback
        candidate, suffix = name, 1
        while candidate in used:
            suffix += 1
            candidate = f"{name}_{suffix}"
        if candidate != name and problem is None:
            problem = f"fallback name '{name}' is already used"
        if problem is not None:
            self._warn(DiagnosticCode.INVALID_DECLARATION,
                       f"{where}: {problem}; renamed to '{candidate}'")
        used.add(candidate)
        return candidate

    def _checked_declaration(self, entry: Any, schema: Dict[str, Any], where: str,
                             seen_ids: Set[int]) -> bool:
        if not isinstance(entry, dict):
            self._warn(DiagnosticCode.INVALID_DECLARATION, f"{where}: not an object; skipped")
            return False
        problem = shape_problem(schema, entry)
        if problem is not None:
            self._warn(DiagnosticCode.INVALID_DECLARATION, f"{where}: {problem}; skipped")
            return False
        if entry["id"] in seen_ids:
            self._warn(DiagnosticCode.INVALID_DECLARATION,
                       f"{where}: id {entry['id']} is declared twice; skipped")
            return False
        seen_ids.add(entry["id"])
        return True

    def tags(self, tags: Sequence[Any]) -> List[str]:
        lines: List[str] = []
        names: Set[str] = set()
        seen_ids: Set[int] = set()
        for index, entry in enumerate(tags):
            where = f"tags[{index}]"
            if not self._checked_declaration(entry, TAG_SCHEMA, where, seen_ids):
                continue
            view = _TagView(self._declaration_name(entry, "tag", where, names))
            parts = [f"tag {view.name}", f"id {entry['id']}"]

            labels: Set[str] = set()
            entries: List[str] = []
            for keyword, mapping, target in (
                ("enum", entry.get("enums") or {}, view.enum_labels),
                ("flag", entry.get("flags") or {}, view.flag_labels),
            ):
                for label, value in mapping.items():
                    if not _is_identifier(label) or label in labels or value in target:
                        self._warn(DiagnosticCode.INVALID_DECLARATION,
                                   f"{where}: {keyword} '{label}' cannot be rendered; skipped")
                        continue
                    labels.add(label)
                    target[value] = label
                    entries.append(f"{keyword} {value} {label}")

            default = entry.get("default")
            if default is not None:
                parts.append(f"default {view.enum_labels.get(default, default)}")
            parts.extend(entries)
            self.tags_by_id[entry["id"]] = view
            lines.append(" ".join(parts) + ";")
        return lines

    def capabilities(self, capabilities: Sequence[Any]) -> List[str]:
        lines: List[str] = []
        names: Set[str] = set()
        seen_ids: Set[int] = set()
        for index, entry in enumerate(capabilities):
            where = f"capabilities[{index}]"
            if not self._checked_declaration(entry, CAPABILITY_SCHEMA, where, seen_ids):
                continue
            name = self._declaration_name(entry, "cap", where, names)
            lines.append(f"cap {name} id {entry['id']}")
            lines.extend(self.rules(entry["rules"], f"{where}.rules", INDENT))
            lines.append(";")
        return lines

    # Rules

    def rules(self, rules: Sequence[Any], path: str, indent: str = "") -> List[str]:
        """Cut the flat object list into statements after each action."""
        lines: List[str] = []
        clauses: List[Tuple[bool, str]] = []
        pending: List[Any] = []
        for index, obj in enumerate(rules):
            where = f"{path}[{index}]"
            if not isinstance(obj, dict) or not isinstance(obj.get("type"), str):
                self._warn(DiagnosticCode.INVALID_RULE_SHAPE,
                           f"{where}: not a rule object with a string 'type'; dropped")
                lines.append(f"{indent}# {_compact(obj)}")
                continue
            is_action, joined_by_or, text = self._element(obj, where, first=not clauses)
            if is_action:
                lines.append(indent + self._statement(text, clauses))
                clauses, pending = [], []
            else:
                clauses.append((joined_by_or, text))
                pending.append(obj)

        if pending:
            # The last object stands in as the action so the list order survives
            self._warn(DiagnosticCode.DANGLING_MATCH,
                       f"{path}: {len(pending)} trailing match object(s) have no action; "
                       "the last is kept as a raw action")
            action = self._render_raw_action(RAW_ACTION, pending[-1])
            lines.append(indent + self._statement(action, clauses[:-1]))
        return lines

    @staticmethod
    def _statement(action: str, clauses: List[Tuple[bool, str]]) -> str:
        parts = [action]
        for index, (joined_by_or, text) in enumerate(clauses):
            if index:
                parts.append("or" if joined_by_or else "and")
            parts.append(text)
        return " ".join(parts) + ";"

    def _element(self, obj: Dict[str, Any], where: str, first: bool) -> Tuple[bool, bool, str]:
        """Render one object as (is_action, joined_by_or, text)."""
        json_type = obj["type"]
        try:
            action_spec = ACTION_BY_JSON_TYPE.get(json_type)
            if action_spec is not None:
                problem = shape_problem(
                    dict(_ACTION_SCHEMAS[action_spec.shape], type={"type": "string"}), obj
                )
                if problem is not None:
                    raise _RawFallback(DiagnosticCode.INVALID_RULE_SHAPE,
                                       f"malformed {json_type} object ({problem})")
                return True, False, _ACTION_RENDERERS[action_spec.shape](self, action_spec, obj)

            match_spec = MATCH_BY_JSON_TYPE.get(json_type)
            if match_spec is None:
                raise _RawFallback(DiagnosticCode.UNKNOWN_RULE_TYPE,
                                   f"unknown rule type '{json_type}'")
            schema = dict(_MATCH_BASE_SCHEMA, **_MATCH_SCHEMAS[match_spec.operand](match_spec))
            problem = shape_problem(schema, obj)
            if problem is not None:
                raise _RawFallback(DiagnosticCode.INVALID_RULE_SHAPE,
                                   f"malformed {json_type} object ({problem})")
            if first and obj["or"]:
                raise _RawFallback(DiagnosticCode.LEADING_OR,
                                   "'or' set on the first match of a rule")
            operands = _MATCH_RENDERERS[match_spec.operand](self, match_spec, obj)
        except _RawFallback as fallback:
            self._warn(fallback.code, f"{where}: {fallback.reason}; kept as raw")
            if json_type.startswith("ACTION_"):
                return True, False, self._render_raw_action(RAW_ACTION, obj)
            return False, False, _raw_clause(obj)

        text = f"{match_spec.keyword} {operands}"
        if obj["not"]:
            text = "not " + text
        return False, obj["or"], text

    # Match renderers, one per OperandKind

    def _render_zt(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        return obj["zt"]

    def _render_uint(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        return str(obj[spec.json_key])

    def _render_ethertype(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        value = obj[spec.json_key]
        return ETHERTYPE_NAMES.get(value) or format(value, "#06x")

    def _render_ip_protocol(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        value = obj[spec.json_key]
        return IP_PROTOCOL_NAMES.get(value) or str(value)

    def _render_mac(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        return obj["mac"]

    def _render_ip(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        try:
            interface = ipaddress.ip_interface(obj["ip"])
        except ValueError:
            raise _RawFallback(DiagnosticCode.INVALID_RULE_SHAPE, f"invalid address '{obj['ip']}'")
        expected_type = spec.json_types[0 if interface.version == 4 else 1]
        if obj["type"] != expected_type or interface.with_prefixlen != obj["ip"]:
            raise _RawFallback(DiagnosticCode.INVALID_RULE_SHAPE,
                               f"address '{obj['ip']}' is not in canonical form for {obj['type']}")
        return obj["ip"]

    def _render_ip_tos(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        if obj["start"] > obj["end"]:
            raise _RawFallback(DiagnosticCode.INVALID_RULE_SHAPE, "ToS range ends before it starts")
        return f"{obj['mask']} {_span(obj['start'], obj['end'])}"

    def _render_icmp(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        if obj["icmpCode"] is None:
            return str(obj["icmpType"])
        return f"{obj['icmpType']} {obj['icmpCode']}"

    def _render_range(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        if obj["start"] > obj["end"]:
            raise _RawFallback(DiagnosticCode.INVALID_RULE_SHAPE, "range ends before it starts")
        return _span(obj["start"], obj["end"])

    def _render_characteristics(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        mask = int(obj["mask"], 16)
        if format(mask, "016x") != obj["mask"]:
            raise _RawFallback(DiagnosticCode.INVALID_RULE_SHAPE,
                               f"mask '{obj['mask']}' is not 16 lowercase hex digits")
        names = []
        for name, bit in CHARACTERISTIC_BITS.items():
            if mask & (1 << bit):
                names.append(name)
                mask &= ~(1 << bit)
        if mask or not names:
            names.append(hex(mask))
        return " ".join(names)

    def _render_probability(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        value = obj["probability"]
        for digits in range(1, 7):
            text = f"{value / UINT32_MAX:.{digits}f}"
            if int(float(text) * UINT32_MAX) == value:
                return text
        return str(value)

    def _render_tag_value(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        view = self.tags_by_id.get(obj["id"])
        if view is None:
            raise _RawFallback(DiagnosticCode.UNDECLARED_TAG, f"tag id {obj['id']} is not declared")
        value = obj["value"]
        if value in view.enum_labels:
            label = view.enum_labels[value]
        elif value and value & (value - 1) == 0 and value.bit_length() - 1 in view.flag_labels:
            label = view.flag_labels[value.bit_length() - 1]
        else:
            label = str(value)
        return f"{view.name} {label}"

    def _render_raw(self, spec: MatchSpec, obj: Dict[str, Any]) -> str:
        raise _RawFallback(DiagnosticCode.UNKNOWN_RULE_TYPE, f"unknown rule type '{obj['type']}'")

    # Action renderers, one per ActionShape

    def _render_bare(self, spec: ActionSpec, obj: Dict[str, Any]) -> str:
        return spec.keyword

    def _render_observe(self, spec: ActionSpec, obj: Dict[str, Any]) -> str:
        text = f"{spec.keyword} {obj['length']} {obj['address']}"
        return f"{text} {obj['flags']}" if obj["flags"] else text

    def _render_redirect(self, spec: ActionSpec, obj: Dict[str, Any]) -> str:
        text = f"{spec.keyword} {obj['address']}"
        return f"{text} {obj['flags']}" if obj["flags"] else text

    def _render_priority(self, spec: ActionSpec, obj: Dict[str, Any]) -> str:
        return f"{spec.keyword} {obj['qosBucket']}"

    def _render_raw_action(self, spec: ActionSpec, obj: Dict[str, Any]) -> str:
        return _raw_clause(obj)


_MATCH_RENDERERS: Dict[OperandKind, Callable[..., str]] = {
    OperandKind.ZT_ADDRESS: PolicyDecompiler._render_zt,
    OperandKind.UINT: PolicyDecompiler._render_uint,
    OperandKind.ETHERTYPE: PolicyDecompiler._render_ethertype,
    OperandKind.MAC: PolicyDecompiler._render_mac,
    OperandKind.IP: PolicyDecompiler._render_ip,
    OperandKind.IP_TOS: PolicyDecompiler._render_ip_tos,
    OperandKind.IP_PROTOCOL: PolicyDecompiler._render_ip_protocol,
    OperandKind.ICMP: PolicyDecompiler._render_icmp,
    OperandKind.RANGE: PolicyDecompiler._render_range,
    OperandKind.CHARACTERISTICS: PolicyDecompiler._render_characteristics,
    OperandKind.PROBABILITY: PolicyDecompiler._render_probability,
    OperandKind.TAG_VALUE: PolicyDecompiler._render_tag_value,
    OperandKind.RAW: PolicyDecompiler._render_raw,
}

_ACTION_RENDERERS: Dict[ActionShape, Callable[..., str]] = {
    ActionShape.NONE: PolicyDecompiler._render_bare,
    ActionShape.OBSERVE: PolicyDecompiler._render_observe,
    ActionShape.REDIRECT: PolicyDecompiler._render_redirect,
    ActionShape.PRIORITY: PolicyDecompiler._render_priority,
    ActionShape.RAW: PolicyDecompiler._render_raw_action,
}

require_exhaustive(_MATCH_SCHEMAS, OperandKind, "decompiler schemas")
require_exhaustive(_MATCH_RENDERERS, OperandKind, "decompiler")
require_exhaustive(_ACTION_SCHEMAS, ActionShape, "decompiler schemas")
require_exhaustive(_ACTION_RENDERERS, ActionShape, "decompiler")


def _as_list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    raise PolicyInputError(f"'{what}' must be a list, got {type(value).__name__}")


def decompile(rules: Sequence[Any], capabilities: Sequence[Any] = (),
              tags: Sequence[Any] = ()) -> Tuple[str, List[Diagnostic]]:
    """
    Render controller JSON as rule DSL text.

    Args:
        rules: Ordered rule objects
        capabilities: Capability declarations
        tags: Tag declarations

    Returns:
        Tuple of (DSL text, schema warnings)

    Raises:
        PolicyInputError: If any of the three is not a list
    """
    if rules is None:
        raise PolicyInputError("'rules' is required")
    rule_list = _as_list(rules, "rules")
    capability_list = _as_list(capabilities, "capabilities")
    tag_list = _as_list(tags, "tags")

    decompiler = PolicyDecompiler()
    text = decompiler.decompile(rule_list, capability_list, tag_list)
    decompiler.logger.debug(
        "Decompiled policy",
        rules=len(rule_list),
        capabilities=len(capability_list),
        tags=len(tag_list),
        diagnostics=len(decompiler.diagnostics),
    )
    return text, decompiler.diagnostics

"""
Semantic Validator
==================

Checks a parsed ``Document`` against the vocabulary and resolves every
operand to the value the emitter serializes.

Validation never stops at the first problem. Each clause, action and
declaration is checked independently and the validator reports everything it
finds; a construct that fails keeps its empty ``values`` and is skipped by
later checks that depend on it, so one mistake yields one diagnostic.

Tags are scoped in source order: a tag reference resolves only against tags
declared above it.
"""

from dataclasses import replace
import ipaddress
import json
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from flowrules.config.logging import get_logger

from .ast import Action, CapabilityDecl, Document, EnumEntry, Literal, MatchClause, RuleGroup, TagDecl
from .diagnostics import Diagnostic, DiagnosticCode, error, warning
from .lexer import TokenKind
from .vocabulary import (
    ACTION_BY_KIND,
    CHARACTERISTIC_BITS,
    ETHERTYPES,
    IP_PROTOCOLS,
    MATCH_BY_FIELD,
    MAX_DECLARATION_ID,
    MAX_FLAG_BIT,
    MAX_QOS_BUCKET,
    UINT16_MAX,
    UINT32_MAX,
    ActionShape,
    MatchField,
    MatchSpec,
    OperandKind,
    require_exhaustive,
)

logger = get_logger(__name__)

UINT64_MAX = 0xFFFFFFFFFFFFFFFF

_ZT_ADDRESS = re.compile(r"[0-9A-Fa-f]{10}")
_HEX = re.compile(r"0[xX][0-9A-Fa-f]+")
_NAME_KINDS = (TokenKind.IDENT, TokenKind.KEYWORD)


def parse_integer(text: str) -> Optional[int]:
    """Decimal or ``0x`` hex, optionally negative; None for anything else."""
    negative = text.startswith("-")
    digits = text[1:] if negative else text
    if _HEX.fullmatch(digits):
        value = int(digits, 16)
    elif digits.isdigit():
        value = int(digits)
    else:
        return None
    return -value if negative else value


def _shown(literal: Literal) -> str:
    return f"'{literal.text}'"


class Validator:
    """Single-use validator over one parsed document."""

    def __init__(self, document: Document):
        self.document = document
        self.diagnostics: List[Diagnostic] = []
        self.logger = logger.bind(component="validator")

        self.tags_by_name: Dict[str, TagDecl] = {}
        self.tags_by_id: Dict[int, TagDecl] = {}
        self.tag_ids: Dict[int, str] = {}
        self.capability_names: Dict[str, CapabilityDecl] = {}
        self.capability_ids: Dict[int, str] = {}

        # Every tag in the document, to tell a forward reference from a typo
        self.all_tags_by_name: Dict[str, TagDecl] = {}
        self.all_tags_by_id: Dict[int, TagDecl] = {}
        for tag in document.tags:
            self.all_tags_by_name.setdefault(tag.name, tag)
            tag_id = parse_integer(tag.id.text) if tag.id is not None else None
            if tag_id is not None:
                self.all_tags_by_id.setdefault(tag_id, tag)

    # Diagnostics

    def _error(self, code: DiagnosticCode, message: str, node: Any) -> None:
        self.diagnostics.append(error(code, message, node.line, node.column))

    def _warning(self, code: DiagnosticCode, message: str, node: Any) -> None:
        self.diagnostics.append(warning(code, message, node.line, node.column))

    # Document

    def validate_document(self) -> Document:
        statements = []
        shadowing: Optional[RuleGroup] = None
        for statement in self.document.statements:
            if isinstance(statement, RuleGroup):
                shadowing = self._check_reachable(statement, shadowing)
                statements.append(self._rule(statement))
            elif isinstance(statement, CapabilityDecl):
                statements.append(self._capability(statement))
            elif isinstance(statement, TagDecl):
                statements.append(self._tag(statement))
            else:
                raise TypeError(f"unexpected statement type {type(statement).__name__}")

        new_errors = sum(1 for d in self.diagnostics if d.is_error)
        return Document(
            tuple(statements),
            annotated=True,
            error_count=self.document.error_count + new_errors,
        )

    def _check_reachable(self, group: RuleGroup, shadowing: Optional[RuleGroup]) -> Optional[RuleGroup]:
        """Warn when an earlier unconditional terminal rule hides ``group``."""
        if shadowing is not None:
            keyword = ACTION_BY_KIND[shadowing.action.kind].keyword
            self._warning(
                DiagnosticCode.UNREACHABLE_RULE,
                f"rule is unreachable: unconditional '{keyword}' on line {shadowing.line} "
                "always applies first",
                group,
            )
            return shadowing
        if group.unconditional and ACTION_BY_KIND[group.action.kind].terminal:
            return group
        return None

    # Rules

    def _rule(self, group: RuleGroup) -> RuleGroup:
        matches = tuple(self._match(clause) for clause in group.matches)
        return replace(group, matches=matches, action=self._action(group.action))

    def _check_arity(self, keyword: str, count: int, low: int, high: Optional[int],
                     arity_text: str, node: Any) -> bool:
        if count < low or (high is not None and count > high):
            noun = "operand" if arity_text == "1" else "operands"
            self._error(
                DiagnosticCode.OPERAND_COUNT,
                f"'{keyword}' takes {arity_text} {noun}, got {count}",
                node,
            )
            return False
        return True

    def _match(self, clause: MatchClause) -> MatchClause:
        spec = MATCH_BY_FIELD[clause.field]
        if clause.field is MatchField.RAW and (clause.negated or clause.joined_by_or):
            self._error(
                DiagnosticCode.INVALID_RAW,
                "'not' and 'or' cannot be applied to a raw clause; set them inside the JSON object",
                clause,
            )
            return clause
        if not self._check_arity(spec.keyword, len(clause.operands), spec.min_operands,
                                 spec.max_operands, spec.arity_text, clause):
            return clause
        values = _MATCH_RESOLVERS[spec.operand](self, spec, clause.operands)
        if values is None:
            return clause
        return replace(clause, values=values)

    def _action(self, action: Action) -> Action:
        spec = ACTION_BY_KIND[action.kind]
        if not self._check_arity(spec.keyword, len(action.operands), spec.min_operands,
                                 spec.max_operands, spec.arity_text, action):
            return action
        values = _ACTION_RESOLVERS[spec.shape](self, action.operands)
        if values is None:
            return action
        return replace(action, values=values)

    # Scalar operands

    def _integer(self, literal: Literal, low: int, high: int, what: str) -> Optional[int]:
        value = parse_integer(literal.text) if literal.kind is TokenKind.NUMBER else None
        if value is None:
            self._error(DiagnosticCode.OPERAND_TYPE,
                        f"{what} must be an integer, found {_shown(literal)}", literal)
            return None
        if not low <= value <= high:
            self._error(DiagnosticCode.OUT_OF_RANGE,
                        f"{what} {value} is out of range {low}..{high}", literal)
            return None
        return value

    def _named(self, literal: Literal, names: Mapping[str, int], low: int, high: int,
               what: str) -> Optional[int]:
        if literal.kind in _NAME_KINDS:
            if literal.text in names:
                return names[literal.text]
            self._error(DiagnosticCode.UNKNOWN_NAME,
                        f"unknown {what} {_shown(literal)}; expected a number or one of: "
                        f"{', '.join(sorted(names))}",
                        literal)
            return None
        return self._integer(literal, low, high, what)

    def _zt_address(self, literal: Literal) -> Optional[str]:
        if literal.kind in (TokenKind.NUMBER, TokenKind.IDENT) and _ZT_ADDRESS.fullmatch(literal.text):
            return literal.text.lower()
        self._error(DiagnosticCode.OPERAND_TYPE,
                    f"expected a 10-digit hex ZeroTier address, found {_shown(literal)}", literal)
        return None

    def _range(self, start_literal: Literal, end_literal: Optional[Literal], low: int, high: int,
               what: str) -> Optional[Tuple[int, int]]:
        start = self._integer(start_literal, low, high, what)
        end = start if end_literal is None else self._integer(end_literal, low, high, what)
        if start is None or end is None:
            return None
        if start > end:
            self._error(DiagnosticCode.INVERTED_RANGE,
                        f"{what} range {start}-{end} ends before it starts", start_literal)
            return None
        return start, end

    # Match resolvers, one per OperandKind

    def _resolve_zt_address(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        address = self._zt_address(operands[0])
        return None if address is None else (address,)

    def _resolve_uint(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        value = self._integer(operands[0], spec.bounds[0], spec.bounds[1], spec.keyword)
        return None if value is None else (value,)

    def _resolve_ethertype(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        value = self._named(operands[0], ETHERTYPES, spec.bounds[0], spec.bounds[1], "ethertype")
        return None if value is None else (value,)

    def _resolve_ip_protocol(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        value = self._named(operands[0], IP_PROTOCOLS, spec.bounds[0], spec.bounds[1], "IP protocol")
        return None if value is None else (value,)

    def _resolve_mac(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        literal = operands[0]
        if literal.kind is not TokenKind.MAC:
            self._error(DiagnosticCode.OPERAND_TYPE,
                        f"'{spec.keyword}' expects a MAC address like 02:00:00:00:00:01, "
                        f"found {_shown(literal)}",
                        literal)
            return None
        return (literal.text.lower(),)

    def _resolve_ip(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        literal = operands[0]
        if literal.kind not in (TokenKind.IPV4, TokenKind.IPV6):
            self._error(DiagnosticCode.OPERAND_TYPE,
                        f"'{spec.keyword}' expects an IPv4 or IPv6 address, found {_shown(literal)}",
                        literal)
            return None
        try:
            interface = ipaddress.ip_interface(literal.text)
        except ValueError:
            self._error(DiagnosticCode.OPERAND_TYPE,
                        f"invalid IP address {_shown(literal)}", literal)
            return None
        return (interface,)

    def _resolve_ip_tos(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        low, high = spec.bounds
        mask = self._integer(operands[0], low, high, "ToS mask")
        span = self._range(operands[1], operands[2] if len(operands) > 2 else None, low, high, "ToS")
        if mask is None or span is None:
            return None
        return (mask,) + span

    def _resolve_icmp(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        low, high = spec.bounds
        icmp_type = self._integer(operands[0], low, high, "ICMP type")
        icmp_code = None
        if len(operands) > 1:
            icmp_code = self._integer(operands[1], low, high, "ICMP code")
            if icmp_code is None:
                return None
        if icmp_type is None:
            return None
        return icmp_type, icmp_code

    def _resolve_range(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        what = "port" if spec.field in (MatchField.PORT_SOURCE, MatchField.PORT_DEST) else "frame size"
        return self._range(operands[0], operands[1] if len(operands) > 1 else None,
                           spec.bounds[0], spec.bounds[1], what)

    def _resolve_characteristics(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        mask = 0
        ok = True
        for literal in operands:
            if literal.kind is TokenKind.NUMBER:
                bits = self._integer(literal, 0, UINT64_MAX, "characteristics mask")
            else:
                bits = self._named(literal, CHARACTERISTIC_BITS, 0, 0, "characteristic")
                if bits is not None:
                    bits = 1 << bits
            if bits is None:
                ok = False
            else:
                mask |= bits
        return (mask,) if ok else None

    def _resolve_probability(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        literal = operands[0]
        if literal.kind is TokenKind.NUMBER and "." in literal.text:
            fraction = float(literal.text)
            if not 0.0 <= fraction <= 1.0:
                self._error(DiagnosticCode.OUT_OF_RANGE,
                            f"probability {literal.text} is out of range 0..1", literal)
                return None
            return (int(fraction * UINT32_MAX),)
        value = self._integer(literal, 0, UINT32_MAX, "probability")
        return None if value is None else (value,)

    def _resolve_tag_value(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        tag = self._tag_reference(operands[0])
        if tag is None or tag.id_value is None:
            return None
        literal = operands[1]
        if literal.kind is TokenKind.IDENT:
            labels = dict(tag.enum_values)
            for label, bit in tag.flag_values:
                labels.setdefault(label, 1 << bit)
            if literal.text not in labels:
                self._error(DiagnosticCode.UNKNOWN_LABEL,
                            f"tag '{tag.name}' has no enum or flag label {_shown(literal)}", literal)
                return None
            return tag.id_value, labels[literal.text]
        value = self._integer(literal, 0, UINT32_MAX, "tag value")
        return None if value is None else (tag.id_value, value)

    def _tag_reference(self, literal: Literal) -> Optional[TagDecl]:
        if literal.kind is TokenKind.IDENT:
            declared, everywhere = self.tags_by_name, self.all_tags_by_name
            key: Any = literal.text
        elif literal.kind is TokenKind.NUMBER and parse_integer(literal.text) is not None:
            declared, everywhere = self.tags_by_id, self.all_tags_by_id
            key = parse_integer(literal.text)
        else:
            self._error(DiagnosticCode.OPERAND_TYPE,
                        f"expected a tag name or id, found {_shown(literal)}", literal)
            return None

        if key in declared:
            return declared[key]
        if key in everywhere:
            later = everywhere[key]
            self._error(DiagnosticCode.FORWARD_REFERENCE,
                        f"tag {_shown(literal)} is used before its declaration on line {later.line}",
                        literal)
        else:
            self._error(DiagnosticCode.UNKNOWN_TAG, f"unknown tag {_shown(literal)}", literal)
        return None

    def _resolve_raw(self, spec: MatchSpec, operands: Tuple[Literal, ...]):
        payload = self._raw_payload(operands[0], "clause")
        return None if payload is None else (payload,)

    def _raw_payload(self, literal: Literal, role: str) -> Optional[Dict[str, Any]]:
        if literal.kind is not TokenKind.STRING:
            self._error(DiagnosticCode.OPERAND_TYPE,
                        f"'raw' expects a quoted JSON object, found {_shown(literal)}", literal)
            return None
        try:
            payload = json.loads(literal.text)
        except ValueError as e:
            self._error(DiagnosticCode.INVALID_RAW, f"raw {role} is not valid JSON: {e}", literal)
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
            self._error(DiagnosticCode.INVALID_RAW,
                        f"raw {role} must be a JSON object with a string 'type'", literal)
            return None
        return payload

    # Action resolvers, one per ActionShape

    def _resolve_no_operands(self, operands: Tuple[Literal, ...]):
        return ()

    def _resolve_observe(self, operands: Tuple[Literal, ...]):
        length = self._integer(operands[0], -1, UINT16_MAX, "capture length")
        address = self._zt_address(operands[1])
        flags = self._integer(operands[2], 0, UINT32_MAX, "flags") if len(operands) > 2 else 0
        if length is None or address is None or flags is None:
            return None
        return length, address, flags

    def _resolve_redirect(self, operands: Tuple[Literal, ...]):
        address = self._zt_address(operands[0])
        flags = self._integer(operands[1], 0, UINT32_MAX, "flags") if len(operands) > 1 else 0
        if address is None or flags is None:
            return None
        return address, flags

    def _resolve_priority(self, operands: Tuple[Literal, ...]):
        bucket = self._integer(operands[0], 0, MAX_QOS_BUCKET, "QoS bucket")
        return None if bucket is None else (bucket,)

    def _resolve_raw_action(self, operands: Tuple[Literal, ...]):
        payload = self._raw_payload(operands[0], "action")
        return None if payload is None else (payload,)

    # Declarations

    def _declaration_id(self, literal: Optional[Literal], what: str, name: str, node: Any,
                        seen: Dict[int, str]) -> Optional[int]:
        if literal is None:
            self._error(DiagnosticCode.MISSING_ID, f"{what} '{name}' needs an 'id'", node)
            return None
        value = self._integer(literal, 0, MAX_DECLARATION_ID, f"{what} id")
        if value is None:
            return None
        if value in seen:
            self._error(DiagnosticCode.DUPLICATE_ID,
                        f"{what} id {value} is already used by '{seen[value]}'", literal)
            return None
        seen[value] = name
        return value

    def _entries(self, entries: Tuple[EnumEntry, ...], high: int, what: str,
                 labels: Set[str]) -> Tuple[Tuple[str, int], ...]:
        resolved: List[Tuple[str, int]] = []
        values: Set[int] = set()
        for entry in entries:
            if entry.label in labels:
                self._error(DiagnosticCode.DUPLICATE_LABEL,
                            f"label '{entry.label}' is already defined in this tag", entry)
                continue
            labels.add(entry.label)
            value = self._integer(entry.value, 0, high, what)
            if value is None:
                continue
            if value in values:
                self._error(DiagnosticCode.DUPLICATE_VALUE,
                            f"{what} {value} is already labelled in this tag", entry.value)
                continue
            values.add(value)
            resolved.append((entry.label, value))
        return tuple(resolved)

    def _tag(self, tag: TagDecl) -> TagDecl:
        id_value = self._declaration_id(tag.id, "tag", tag.name, tag, self.tag_ids)
        if tag.name in self.tags_by_name:
            previous = self.tags_by_name[tag.name]
            self._error(DiagnosticCode.DUPLICATE_NAME,
                        f"tag '{tag.name}' is already declared on line {previous.line}", tag)

        labels: Set[str] = set()
        enum_values = self._entries(tag.enums, UINT32_MAX, "enum value", labels)
        flag_values = self._entries(tag.flags, MAX_FLAG_BIT, "flag bit", labels)

        default_value = None
        if tag.default is not None:
            if tag.default.kind is TokenKind.IDENT:
                default_value = dict(enum_values).get(tag.default.text)
                if default_value is None:
                    self._error(DiagnosticCode.UNKNOWN_LABEL,
                                f"default {_shown(tag.default)} is not an enum label of tag "
                                f"'{tag.name}'",
                                tag.default)
            else:
                default_value = self._integer(tag.default, 0, UINT32_MAX, "tag default")

        annotated = replace(
            tag,
            id_value=id_value,
            default_value=default_value,
            enum_values=enum_values,
            flag_values=flag_values,
        )
        self.tags_by_name.setdefault(tag.name, annotated)
        if id_value is not None:
            self.tags_by_id[id_value] = annotated
        return annotated

    def _capability(self, cap: CapabilityDecl) -> CapabilityDecl:
        id_value = self._declaration_id(cap.id, "capability", cap.name, cap, self.capability_ids)
        if cap.name in self.capability_names:
            previous = self.capability_names[cap.name]
            self._error(DiagnosticCode.DUPLICATE_NAME,
                        f"capability '{cap.name}' is already declared on line {previous.line}", cap)
        else:
            self.capability_names[cap.name] = cap

        rules = []
        shadowing: Optional[RuleGroup] = None
        for group in cap.rules:
            shadowing = self._check_reachable(group, shadowing)
            rules.append(self._rule(group))
        return replace(cap, rules=tuple(rules), id_value=id_value)


_MATCH_RESOLVERS: Dict[OperandKind, Callable[..., Optional[Tuple[Any, ...]]]] = {
    OperandKind.ZT_ADDRESS: Validator._resolve_zt_address,
    OperandKind.UINT: Validator._resolve_uint,
    OperandKind.ETHERTYPE: Validator._resolve_ethertype,
    OperandKind.MAC: Validator._resolve_mac,
    OperandKind.IP: Validator._resolve_ip,
    OperandKind.IP_TOS: Validator._resolve_ip_tos,
    OperandKind.IP_PROTOCOL: Validator._resolve_ip_protocol,
    OperandKind.ICMP: Validator._resolve_icmp,
    OperandKind.RANGE: Validator._resolve_range,
    OperandKind.CHARACTERISTICS: Validator._resolve_characteristics,
    OperandKind.PROBABILITY: Validator._resolve_probability,
    OperandKind.TAG_VALUE: Validator._resolve_tag_value,
    OperandKind.RAW: Validator._resolve_raw,
}

_ACTION_RESOLVERS: Dict[ActionShape, Callable[..., Optional[Tuple[Any, ...]]]] = {
    ActionShape.NONE: Validator._resolve_no_operands,
    ActionShape.OBSERVE: Validator._resolve_observe,
    ActionShape.REDIRECT: Validator._resolve_redirect,
    ActionShape.PRIORITY: Validator._resolve_priority,
    ActionShape.RAW: Validator._resolve_raw_action,
}

require_exhaustive(_MATCH_RESOLVERS, OperandKind, "validator")
require_exhaustive(_ACTION_RESOLVERS, ActionShape, "validator")


def validate(document: Document) -> Tuple[Document, List[Diagnostic]]:
    """
    Validate a parsed document and resolve its operand values.

    Args:
        document: Output of ``parse``

    Returns:
        Tuple of (annotated document, semantic diagnostics)
    """
    validator = Validator(document)
    annotated = validator.validate_document()
    validator.logger.debug(
        "Validated rule document",
        statements=len(annotated.statements),
        diagnostics=len(validator.diagnostics),
        errors=annotated.error_count,
    )
    return annotated, validator.diagnostics

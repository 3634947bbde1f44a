"""
Unit Tests for the Parser
=========================

Grammar coverage, group splitting and error recovery.
"""

import pytest

from flowrules.core.dsl.ast import CapabilityDecl, Document, RuleGroup, TagDecl
from flowrules.core.dsl.lexer import Token, TokenKind, tokenize
from flowrules.core.dsl.parser import Parser, parse
from flowrules.core.dsl.vocabulary import ActionKind, MatchField

from tests.data.sample_rules import TAGGED_POLICY_SOURCE, THREE_BROKEN_STATEMENTS
from tests.utils.assertions import assert_diagnostic_codes, assert_in_source_order


def parse_text(text):
    return parse(tokenize(text))


class TestRuleGroups:
    """Test rule statements become rule groups."""

    def test_single_clause_rule(self):
        """Test 'drop not ethertype arp;' is one negated clause plus drop."""
        document, diagnostics = parse_text("drop not ethertype arp;")
        assert diagnostics == []
        assert len(document.rules) == 1
        group = document.rules[0]
        assert group.action.kind is ActionKind.DROP
        assert len(group.matches) == 1
        clause = group.matches[0]
        assert clause.field is MatchField.ETHERTYPE
        assert clause.negated is True
        assert clause.joined_by_or is False
        assert [op.text for op in clause.operands] == ["arp"]

    def test_unconditional_accept_is_a_statement(self):
        """Test a bare action is a valid rule."""
        document, diagnostics = parse_text("accept;")
        assert diagnostics == []
        assert document.rules[0].unconditional

    def test_separate_statements_make_separate_groups(self):
        """Test two statements give two groups in order."""
        document, diagnostics = parse_text("drop not ethertype arp;\naccept;")
        assert diagnostics == []
        assert [g.action.kind for g in document.rules] == [ActionKind.DROP, ActionKind.ACCEPT]

    def test_or_sets_flag_on_following_clause(self):
        """Test 'or' marks the clause after it."""
        document, _ = parse_text("accept ipsrc 10.0.0.1 or ipsrc 10.0.0.2 and dport 22;")
        flags = [c.joined_by_or for c in document.rules[0].matches]
        assert flags == [False, True, False]

    def test_implicit_and(self):
        """Test adjacent clauses without a connective are ANDed."""
        document, diagnostics = parse_text("accept ipprotocol tcp dport 22;")
        assert diagnostics == []
        assert [c.field for c in document.rules[0].matches] == [
            MatchField.IP_PROTOCOL,
            MatchField.PORT_DEST,
        ]

    def test_action_operands(self):
        """Test action operands include negative lengths."""
        document, diagnostics = parse_text("tee -1 deadbeef00 7;")
        assert diagnostics == []
        assert [op.text for op in document.rules[0].action.operands] == ["-1", "deadbeef00", "7"]

    def test_range_operand(self):
        """Test 'a-b' yields two operands."""
        document, _ = parse_text("accept dport 80-8080;")
        assert [op.text for op in document.rules[0].matches[0].operands] == ["80", "8080"]

    def test_protocol_name_colliding_with_keyword(self):
        """Test 'ipprotocol icmp' takes icmp as its operand."""
        document, diagnostics = parse_text("accept ipprotocol icmp and icmp 8;")
        assert diagnostics == []
        matches = document.rules[0].matches
        assert [op.text for op in matches[0].operands] == ["icmp"]
        assert matches[1].field is MatchField.ICMP

    def test_action_without_terminator_starts_new_group(self):
        """Test an action keyword closes the current group with a warning."""
        document, diagnostics = parse_text("drop not ethertype arp accept;")
        assert len(document.rules) == 2
        assert_diagnostic_codes(diagnostics, ["syntax.missing-terminator"])
        assert diagnostics[0].is_error is False
        assert (diagnostics[0].line, diagnostics[0].column) == (1, 24)

    def test_raw_action_statement(self):
        """Test a statement may start with a raw object as its action."""
        document, diagnostics = parse_text("""raw '{"type":"ACTION_FUTURE"}' ethertype ipv4;""")
        assert diagnostics == []
        group = document.rules[0]
        assert group.action.kind is ActionKind.RAW
        assert [op.text for op in group.action.operands] == ['{"type":"ACTION_FUTURE"}']
        assert [c.field for c in group.matches] == [MatchField.ETHERTYPE]

    def test_raw_inside_rule_is_a_match(self):
        """Test 'raw' after the action keyword stays a match clause."""
        document, diagnostics = parse_text("""accept raw '{"type":"MATCH_X"}' raw '{"type":"MATCH_Y"}';""")
        assert diagnostics == []
        assert len(document.rules) == 1
        assert [c.field for c in document.rules[0].matches] == [MatchField.RAW, MatchField.RAW]

    def test_raw_action_in_capability(self):
        """Test capability bodies accept raw action statements."""
        document, diagnostics = parse_text("""cap c id 1\n  raw '{"type":"ACTION_FUTURE"}';\n;""")
        assert diagnostics == []
        assert document.capabilities[0].rules[0].action.kind is ActionKind.RAW


class TestSyntaxErrors:
    """Test malformed statements."""

    def test_action_after_or_is_an_error(self):
        """Test 'drop not ethertype arp or accept;' is rejected."""
        _, diagnostics = parse_text("drop not ethertype arp or accept;")
        assert_diagnostic_codes(diagnostics, ["syntax.unexpected-token"])
        assert "after 'or'" in diagnostics[0].message

    def test_leading_or_is_an_error(self):
        """Test a connective before the first clause."""
        _, diagnostics = parse_text("accept or dport 22;")
        assert_diagnostic_codes(diagnostics, ["syntax.unexpected-token"])
        assert (diagnostics[0].line, diagnostics[0].column) == (1, 8)

    def test_missing_semicolon_at_end(self):
        """Test a rule running into end of input."""
        _, diagnostics = parse_text("accept dport 22")
        assert_diagnostic_codes(diagnostics, ["syntax.unexpected-end"])

    def test_statement_must_start_with_action(self):
        """Test a bare match field is not a statement."""
        _, diagnostics = parse_text("dport 22;")
        assert_diagnostic_codes(diagnostics, ["syntax.unexpected-token"])
        assert "expected an action" in diagnostics[0].message

    def test_invalid_character_reported_as_lex_error(self):
        """Test INVALID tokens surface as lex diagnostics."""
        _, diagnostics = parse_text("accept dport @;")
        assert_diagnostic_codes(diagnostics, ["lex.invalid-character"])

    def test_unterminated_string(self):
        """Test an unterminated string is a lex error."""
        _, diagnostics = parse_text("accept raw '{;\naccept;")
        assert_diagnostic_codes(diagnostics, ["lex.unterminated-string"])

    def test_three_broken_statements_recover(self):
        """Test one error per malformed statement, in source order."""
        document, diagnostics = parse_text(THREE_BROKEN_STATEMENTS)
        assert [d.line for d in diagnostics] == [1, 2, 3]
        assert all(d.is_error for d in diagnostics)
        assert_in_source_order(diagnostics)
        assert [g.action.kind for g in document.rules] == [ActionKind.ACCEPT]

    def test_error_count_recorded_on_document(self):
        """Test the document remembers how many syntax errors it has."""
        document, _ = parse_text(THREE_BROKEN_STATEMENTS)
        assert document.error_count == 3


class TestDeclarations:
    """Test capability and tag declarations."""

    def test_tagged_policy_structure(self):
        """Test a document mixing tags, caps and rules keeps statement order."""
        document, diagnostics = parse_text(TAGGED_POLICY_SOURCE)
        assert diagnostics == []
        assert [type(s) for s in document.statements] == [
            TagDecl,
            CapabilityDecl,
            RuleGroup,
            RuleGroup,
            RuleGroup,
        ]

    def test_tag_attributes(self):
        """Test tag id, default, enums and flags are captured."""
        document, _ = parse_text("tag dept id 5 default eng enum 0 eng enum 1 ops flag 2 vip;")
        tag = document.tags[0]
        assert tag.name == "dept"
        assert tag.id.text == "5"
        assert tag.default.text == "eng"
        assert [(e.value.text, e.label) for e in tag.enums] == [("0", "eng"), ("1", "ops")]
        assert [(e.value.text, e.label) for e in tag.flags] == [("2", "vip")]

    def test_tag_id_given_twice(self):
        """Test a second 'id' on a tag is rejected."""
        _, diagnostics = parse_text("tag dept id 5 id 6;")
        assert_diagnostic_codes(diagnostics, ["syntax.unexpected-token"])

    def test_capability_rules(self):
        """Test capability bodies use the rule grammar and close on ';'."""
        document, diagnostics = parse_text(
            "cap web id 3\n  accept dport 80;\n  accept dport 443;\n;\ndrop;"
        )
        assert diagnostics == []
        cap = document.capabilities[0]
        assert cap.name == "web"
        assert cap.id.text == "3"
        assert len(cap.rules) == 2
        assert len(document.rules) == 1

    def test_capability_with_or(self):
        """Test 'or' inside a capability behaves as at top level."""
        document, diagnostics = parse_text("cap c id 1 accept dport 22 or dport 80; ;")
        assert diagnostics == []
        assert [m.joined_by_or for m in document.capabilities[0].rules[0].matches] == [False, True]

    def test_nested_declaration(self):
        """Test cap/tag inside a capability."""
        _, diagnostics = parse_text("cap c id 1\n  tag t id 1;\n;")
        assert_diagnostic_codes(diagnostics, ["syntax.nested-declaration"])

    def test_unterminated_capability(self):
        """Test EOF inside a capability keeps the partial capability."""
        document, diagnostics = parse_text("cap c id 1\n  accept dport 22;\n")
        assert_diagnostic_codes(diagnostics, ["syntax.unterminated-capability"])
        assert (diagnostics[0].line, diagnostics[0].column) == (1, 1)
        assert len(document.capabilities[0].rules) == 1

    def test_error_inside_capability_recovers(self):
        """Test a bad rule inside a capability does not lose the capability."""
        document, diagnostics = parse_text("cap c id 1\n  accept or;\n  drop;\n;")
        assert len(diagnostics) == 1
        assert len(document.capabilities[0].rules) == 1


class TestParserContract:
    """Test parser construction."""

    def test_requires_eof(self):
        """Test a token list without EOF is rejected."""
        with pytest.raises(ValueError):
            Parser([Token(TokenKind.KEYWORD, "accept", 1, 1)])

    def test_empty_document(self):
        """Test empty input parses to an empty document."""
        document, diagnostics = parse_text("# only a comment\n")
        assert document == Document()
        assert diagnostics == []

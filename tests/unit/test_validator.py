"""
Unit Tests for the Semantic Validator
=====================================

Operand resolution, range checks, tag scoping and declaration rules.
"""

import ipaddress

import pytest

from flowrules.core.dsl.lexer import tokenize
from flowrules.core.dsl.parser import parse
from flowrules.core.dsl.validator import parse_integer, validate
from flowrules.core.dsl.vocabulary import UINT32_MAX

from tests.data.sample_rules import FORWARD_REFERENCE_SOURCE
from tests.utils.assertions import assert_diagnostic_codes, assert_single_error


def check(text):
    document, syntax = parse(tokenize(text))
    assert syntax == [], [d.format() for d in syntax]
    return validate(document)


def first_values(text):
    document, diagnostics = check(text)
    assert diagnostics == [], [d.format() for d in diagnostics]
    return document.rules[0].matches[0].values


class TestParseInteger:
    """Test integer literal parsing."""

    @pytest.mark.parametrize(
        "text,expected",
        [("42", 42), ("0x1F", 31), ("-1", -1), ("0.5", None), ("abc", None)],
    )
    def test_parse_integer(self, text, expected):
        """Test decimal, hex and negative forms."""
        assert parse_integer(text) == expected


class TestOperandResolution:
    """Test operands resolve to their emitted values."""

    def test_ethertype_name(self):
        """Test named ethertypes resolve to their numbers."""
        assert first_values("drop not ethertype arp;") == (0x0806,)

    def test_ethertype_hex(self):
        """Test numeric ethertypes are accepted."""
        assert first_values("drop ethertype 0x88cc;") == (0x88CC,)

    def test_ip_protocol_name(self):
        """Test protocol names, including ones that are keywords."""
        assert first_values("accept ipprotocol icmp;") == (1,)
        assert first_values("accept ipprotocol udp;") == (17,)

    def test_ipv4_prefix(self):
        """Test IPv4 operands resolve to interfaces."""
        (interface,) = first_values("accept ipsrc 10.0.0.0/8;")
        assert interface == ipaddress.ip_interface("10.0.0.0/8")

    def test_ipv6_address(self):
        """Test IPv6 operands resolve to interfaces."""
        (interface,) = first_values("accept ipdest fd00::1;")
        assert interface.version == 6

    def test_mac_is_lowercased(self):
        """Test MAC operands are normalized."""
        assert first_values("accept macsrc 02:AA:00:00:00:01;") == ("02:aa:00:00:00:01",)

    def test_zerotier_address(self):
        """Test 10-hex-digit node addresses."""
        assert first_values("accept ztsrc DEADBEEF00;") == ("deadbeef00",)

    def test_single_port_is_a_range(self):
        """Test one port means start == end."""
        assert first_values("accept dport 22;") == (22, 22)

    def test_port_range(self):
        """Test 'dport 80-8080' is accepted."""
        assert first_values("accept dport 80-8080;") == (80, 8080)

    def test_characteristics_mask(self):
        """Test characteristic names OR into one mask."""
        assert first_values("accept chr tcp_syn tcp_ack;") == ((1 << 1) | (1 << 4),)

    def test_probability_fraction(self):
        """Test fractional probabilities scale to uint32."""
        assert first_values("accept random 0.5;") == (UINT32_MAX // 2,)
        assert first_values("accept random 1.0;") == (UINT32_MAX,)

    def test_probability_raw(self):
        """Test integral probabilities are taken as-is."""
        assert first_values("accept random 1000;") == (1000,)

    def test_icmp_without_code(self):
        """Test the icmp code is None when omitted."""
        assert first_values("accept icmp 8;") == (8, None)

    def test_ip_tos(self):
        """Test mask, start and end."""
        assert first_values("accept iptos 0xfc 10 20;") == (252, 10, 20)

    def test_raw_object(self):
        """Test raw clauses decode their JSON payload."""
        assert first_values("""accept raw '{"type":"MATCH_X","v":1}';""") == (
            {"type": "MATCH_X", "v": 1},
        )

    def test_action_values(self):
        """Test observe actions default their flags to zero."""
        document, diagnostics = check("tee -1 deadbeef00;")
        assert diagnostics == []
        assert document.rules[0].action.values == (-1, "deadbeef00", 0)

    def test_raw_action(self):
        """Test raw actions decode their JSON payload."""
        document, diagnostics = check("""raw '{"type":"ACTION_FUTURE","zone":3}';""")
        assert diagnostics == []
        assert document.rules[0].action.values == ({"type": "ACTION_FUTURE", "zone": 3},)

    def test_document_is_annotated(self):
        """Test the validator marks its output."""
        document, _ = check("accept;")
        assert document.annotated is True
        assert document.error_count == 0


class TestRangeChecks:
    """Test out-of-range and malformed operands."""

    def test_inverted_port_range(self):
        """Test 'dport 8080-80' yields exactly one error."""
        _, diagnostics = check("accept dport 8080-80;")
        error = assert_single_error(diagnostics, "semantic.inverted-range")
        assert (error.line, error.column) == (1, 14)

    def test_port_zero_rejected(self):
        """Test ports start at 1."""
        _, diagnostics = check("accept dport 0;")
        assert_single_error(diagnostics, "semantic.out-of-range")

    @pytest.mark.parametrize(
        "text",
        [
            "accept vlan 4096;",
            "accept vlanpcp 8;",
            "accept ethertype 0x10000;",
            "accept ipprotocol 256;",
            "accept framesize 70000;",
            "accept random 1.5;",
            "priority 9;",
            "tee 70000 deadbeef00;",
        ],
    )
    def test_out_of_range(self, text):
        """Test numeric bounds per field."""
        _, diagnostics = check(text)
        assert_single_error(diagnostics, "semantic.out-of-range")

    @pytest.mark.parametrize(
        "text",
        [
            "accept macsrc 10.0.0.1;",
            "accept ipsrc 02:00:00:00:00:01;",
            "accept ipsrc 300.1.1.1;",
            "accept ztsrc deadbeef;",
            "accept vlan ten;",
            "redirect 10.0.0.1;",
        ],
    )
    def test_operand_type(self, text):
        """Test literals of the wrong kind."""
        _, diagnostics = check(text)
        assert_single_error(diagnostics, "semantic.operand-type")

    @pytest.mark.parametrize(
        "text",
        ["accept dport 1 2 3;", "accept ethertype;", "accept ipsrc;", "tee 1;", "drop 5;"],
    )
    def test_operand_count(self, text):
        """Test arity per field and action."""
        _, diagnostics = check(text)
        assert_single_error(diagnostics, "semantic.operand-count")

    def test_unknown_names(self):
        """Test unknown ethertype and characteristic names."""
        _, diagnostics = check("accept ethertype bogus;\naccept chr tcp_bogus;")
        assert_diagnostic_codes(diagnostics, ["semantic.unknown-name", "semantic.unknown-name"])

    def test_invalid_raw(self):
        """Test raw clauses must hold a JSON object with a type."""
        _, diagnostics = check("accept raw 'nope';\naccept raw '[1]';")
        assert_diagnostic_codes(diagnostics, ["semantic.invalid-raw", "semantic.invalid-raw"])

    def test_invalid_raw_action(self):
        """Test raw actions need a quoted JSON object with a type."""
        _, diagnostics = check("raw 'nope';\nraw '[1]';\nraw 5;")
        assert_diagnostic_codes(
            diagnostics,
            ["semantic.invalid-raw", "semantic.invalid-raw", "semantic.operand-type"],
        )
        assert "raw action is not valid JSON" in diagnostics[0].message

    def test_raw_action_arity(self):
        """Test a raw action takes exactly one operand."""
        _, diagnostics = check("raw;")
        assert_single_error(diagnostics, "semantic.operand-count")

    def test_negated_raw(self):
        """Test 'not' cannot wrap a raw clause."""
        _, diagnostics = check("""accept not raw '{"type":"X"}';""")
        assert_single_error(diagnostics, "semantic.invalid-raw")

    def test_validation_continues_past_errors(self):
        """Test every bad clause is reported."""
        _, diagnostics = check("accept vlan 5000 and dport 9-1 and macsrc 1;")
        assert_diagnostic_codes(
            diagnostics,
            ["semantic.out-of-range", "semantic.inverted-range", "semantic.operand-type"],
        )


class TestTags:
    """Test tag declarations and references."""

    def test_tag_reference_by_name_and_label(self):
        """Test references resolve to (id, value)."""
        text = "tag dept id 9 enum 3 ops flag 4 vip;\naccept teq dept ops and tand dept vip;"
        document, diagnostics = check(text)
        assert diagnostics == []
        values = [m.values for m in document.rules[0].matches]
        assert values == [(9, 3), (9, 16)]

    def test_tag_reference_by_id(self):
        """Test numeric tag references."""
        document, diagnostics = check("tag dept id 9;\naccept teq 9 42;")
        assert diagnostics == []
        assert document.rules[0].matches[0].values == (9, 42)

    def test_forward_reference(self):
        """Test a tag used before its declaration yields exactly one error."""
        _, diagnostics = check(FORWARD_REFERENCE_SOURCE)
        error = assert_single_error(diagnostics, "semantic.forward-reference")
        assert "line 2" in error.message

    def test_unknown_tag(self):
        """Test references to undeclared tags."""
        _, diagnostics = check("accept teq nosuch 1;")
        assert_single_error(diagnostics, "semantic.unknown-tag")

    def test_unknown_label(self):
        """Test labels must belong to the referenced tag."""
        _, diagnostics = check("tag dept id 9 enum 1 ops;\naccept teq dept sales;")
        assert_single_error(diagnostics, "semantic.unknown-label")

    def test_tag_annotations(self):
        """Test resolved id, default, enums and flags."""
        document, diagnostics = check("tag dept id 9 default ops enum 1 ops flag 0 vip;")
        assert diagnostics == []
        tag = document.tags[0]
        assert tag.id_value == 9
        assert tag.default_value == 1
        assert tag.enum_values == (("ops", 1),)
        assert tag.flag_values == (("vip", 0),)

    @pytest.mark.parametrize(
        "text,code",
        [
            ("tag t;", "semantic.missing-id"),
            ("tag a id 1;\ntag b id 1;", "semantic.duplicate-id"),
            ("tag a id 1;\ntag a id 2;", "semantic.duplicate-name"),
            ("tag a id 70000;", "semantic.out-of-range"),
            ("tag a id 1 enum 0 x enum 1 x;", "semantic.duplicate-label"),
            ("tag a id 1 enum 0 x enum 0 y;", "semantic.duplicate-value"),
            ("tag a id 1 flag 32 x;", "semantic.out-of-range"),
            ("tag a id 1 default nope;", "semantic.unknown-label"),
        ],
    )
    def test_declaration_errors(self, text, code):
        """Test tag declaration rules."""
        _, diagnostics = check(text)
        assert_single_error(diagnostics, code)


class TestCapabilities:
    """Test capability declarations."""

    def test_capability_annotated(self):
        """Test capability ids and rules are resolved."""
        document, diagnostics = check("cap ssh id 4\n  accept dport 22;\n;")
        assert diagnostics == []
        cap = document.capabilities[0]
        assert cap.id_value == 4
        assert cap.rules[0].matches[0].values == (22, 22)

    @pytest.mark.parametrize(
        "text,code",
        [
            ("cap a\n;", "semantic.missing-id"),
            ("cap a id 1 ;\ncap b id 1 ;", "semantic.duplicate-id"),
            ("cap a id 1 ;\ncap a id 2 ;", "semantic.duplicate-name"),
        ],
    )
    def test_declaration_errors(self, text, code):
        """Test capability declaration rules."""
        _, diagnostics = check(text)
        assert_single_error(diagnostics, code)

    def test_tag_and_capability_ids_are_separate(self):
        """Test tags and capabilities may share an id."""
        _, diagnostics = check("tag t id 1;\ncap c id 1 ;")
        assert diagnostics == []


class TestReachability:
    """Test unreachable-rule warnings."""

    def test_rule_after_unconditional_accept(self):
        """Test each group after an unconditional terminal action is flagged."""
        _, diagnostics = check("accept;\ndrop;\ndrop dport 22;")
        assert_diagnostic_codes(
            diagnostics, ["semantic.unreachable-rule", "semantic.unreachable-rule"]
        )
        assert [d.line for d in diagnostics] == [2, 3]
        assert not any(d.is_error for d in diagnostics)

    def test_non_terminal_actions_do_not_shadow(self):
        """Test break and observe actions let later rules run."""
        _, diagnostics = check("break;\ntee -1 deadbeef00;\naccept;")
        assert diagnostics == []

    def test_capability_scope_is_separate(self):
        """Test a capability's unconditional accept does not hide top-level rules."""
        _, diagnostics = check("cap c id 1\n  accept;\n;\ndrop;")
        assert diagnostics == []

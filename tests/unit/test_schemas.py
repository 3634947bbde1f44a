"""
Unit Tests for Models and Settings
==================================

Diagnostic formatting, the policy bundle model and settings validation.
"""

import json

import pytest
from pydantic import ValidationError

from flowrules.config.settings import Settings
from flowrules.core.dsl.diagnostics import DiagnosticCode, error, has_errors, in_source_order, warning
from flowrules.models.schemas import DiagnosticCategory, PolicyBundle, Severity


class TestDiagnostic:
    """Test diagnostic model behavior."""

    def test_format(self):
        """Test the line:column rendering used by the CLI."""
        diagnostic = error(DiagnosticCode.UNKNOWN_TAG, "tag 'x' is not declared", 3, 7)
        assert diagnostic.format() == "3:7: error [semantic.unknown-tag] tag 'x' is not declared"

    def test_category_from_code(self):
        """Test the category is the code's namespace."""
        assert warning(DiagnosticCode.LEADING_OR, "m").category is DiagnosticCategory.SCHEMA
        assert error(DiagnosticCode.MISSING_TERMINATOR, "m").category is DiagnosticCategory.SYNTAX
        assert DiagnosticCode.INVALID_CHARACTER.category is DiagnosticCategory.LEX

    def test_severity(self):
        """Test error/warning helpers."""
        assert error(DiagnosticCode.OUT_OF_RANGE, "m").severity is Severity.ERROR
        assert warning(DiagnosticCode.UNREACHABLE_RULE, "m").is_error is False

    def test_has_errors(self):
        """Test warnings alone are not errors."""
        assert not has_errors([warning(DiagnosticCode.UNREACHABLE_RULE, "m", 1, 1)])
        assert has_errors([error(DiagnosticCode.OUT_OF_RANGE, "m", 1, 1)])

    def test_in_source_order_is_stable(self):
        """Test sorting by position keeps stage order at equal positions."""
        first = error(DiagnosticCode.UNEXPECTED_TOKEN, "a", 2, 5)
        second = error(DiagnosticCode.OUT_OF_RANGE, "b", 2, 5)
        earlier = warning(DiagnosticCode.UNREACHABLE_RULE, "c", 1, 1)
        assert in_source_order([first, second, earlier]) == [earlier, first, second]

    def test_frozen(self):
        """Test diagnostics are immutable values."""
        diagnostic = error(DiagnosticCode.OUT_OF_RANGE, "m", 1, 1)
        with pytest.raises(ValidationError):
            diagnostic.line = 2

    def test_json_serialization(self):
        """Test diagnostics serialize with plain string fields."""
        data = json.loads(warning(DiagnosticCode.DANGLING_MATCH, "m").model_dump_json())
        assert data == {
            "severity": "warning",
            "line": 0,
            "column": 0,
            "message": "m",
            "code": "schema.dangling-match",
        }


class TestPolicyBundle:
    """Test the controller's triple model."""

    def test_null_arrays(self):
        """Test null arrays load as empty lists."""
        bundle = PolicyBundle.from_json('{"rules": [{"type": "ACTION_ACCEPT"}], "capabilities": null}')
        assert bundle.capabilities == []
        assert bundle.tags == []

    def test_to_json(self):
        """Test compact and indented rendering."""
        bundle = PolicyBundle(rules=[{"type": "ACTION_DROP"}])
        assert bundle.to_json(indent=None) == (
            '{"rules": [{"type": "ACTION_DROP"}], "capabilities": [], "tags": []}'
        )
        assert json.loads(bundle.to_json()) == bundle.model_dump()

    def test_rejects_non_list(self):
        """Test rules must be a list of objects."""
        with pytest.raises(ValidationError):
            PolicyBundle.model_validate({"rules": "accept;"})


class TestSettings:
    """Test settings validation."""

    def test_defaults(self, monkeypatch):
        """Test default limits."""
        monkeypatch.delenv("FLOWRULES_MAX_SOURCE_BYTES", raising=False)
        settings = Settings(_env_file=None)
        assert settings.max_source_bytes == 256 * 1024
        assert settings.json_indent == 2

    def test_environment_variables(self, monkeypatch):
        """Test FLOWRULES_-prefixed variables are read."""
        monkeypatch.setenv("FLOWRULES_MAX_SOURCE_BYTES", "100")
        monkeypatch.setenv("FLOWRULES_LOG_LEVEL", "debug")
        settings = Settings(_env_file=None)
        assert settings.max_source_bytes == 100
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("environment", "staging"),
            ("log_level", "LOUD"),
            ("max_source_bytes", 0),
            ("json_indent", 9),
        ],
    )
    def test_invalid_values(self, field, value):
        """Test rejected setting values."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_log_dir_created(self, tmp_path):
        """Test a configured log directory is created."""
        log_dir = tmp_path / "logs"
        Settings(_env_file=None, log_dir=log_dir)
        assert log_dir.is_dir()

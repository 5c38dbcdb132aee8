"""Tests for schema validation."""

import pytest

from storyloop.lib.validate import ValidationError, validate, validate_before_write


class TestValidate:
    """Test validate against the bundled schemas."""

    def test_valid_plan(self):
        validate({"stories": [{"id": "US-1", "title": "x", "passes": False}]}, "plan")

    def test_reports_location(self):
        with pytest.raises(ValidationError) as exc_info:
            validate({"stories": [{"id": "US-1", "title": "x", "passes": "no"}]}, "plan")
        assert exc_info.value.schema_name == "plan"
        assert exc_info.value.path == "stories.0.passes"

    def test_unknown_schema(self):
        with pytest.raises(ValidationError, match="Schema file not found"):
            validate({}, "nope")

    def test_result_signal_enum(self):
        doc = {
            "version": 1,
            "plan": "demo",
            "signal": "exploded",
            "timestamps": {"started": "a", "ended": "b", "duration_seconds": 1.0},
        }
        with pytest.raises(ValidationError):
            validate(doc, "result")

    def test_refuses_write(self, tmp_path):
        target = tmp_path / "meta.env"
        with pytest.raises(ValidationError, match="Refusing to write"):
            validate_before_write({"ID": "x"}, "meta", target)
        assert not target.exists()

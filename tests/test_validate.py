"""Tests for the validation engine: structural step gating the rule step."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import make_doc, to_bytes

from csaf_walker.config import Settings, ValidationProfile
from csaf_walker.errors import ConfigurationError
from csaf_walker.models import Severity
from csaf_walker.rules import Rule
from csaf_walker.validate import PARSE_RULE, SCHEMA_RULE, Validator, json_pointer, load_schema, validate_file


@pytest.fixture(scope="module")
def validator() -> Validator:
    return Validator.from_settings(Settings(validation_profile=ValidationProfile.OPTIONAL))


class TestStructure:
    """Parse and schema findings."""

    def test_valid_document_has_no_findings(self, validator, valid_bytes):
        report = validator.validate(valid_bytes)
        assert report.findings == []
        assert report.valid

    def test_missing_required_field_is_one_error(self, validator):
        doc = make_doc()
        del doc["document"]["title"]
        report = validator.validate(to_bytes(doc))

        assert len(report.findings) == 1
        finding = report.findings[0]
        assert finding.rule == SCHEMA_RULE
        assert finding.severity is Severity.ERROR
        assert finding.location == "/document/title"
        assert "title" in finding.message

    def test_malformed_json_is_single_parse_error(self, validator):
        report = validator.validate(b'{"document": ')
        assert len(report.findings) == 1
        assert report.findings[0].rule == PARSE_RULE
        assert not report.valid

    def test_schema_errors_skip_rules(self, validator):
        doc = make_doc()
        doc["document"]["tracking"]["status"] = "published"
        # would also trip latest-document-version if rules ran
        doc["document"]["tracking"]["version"] = "7"
        report = validator.validate(to_bytes(doc))
        assert {f.rule for f in report.findings} == {SCHEMA_RULE}

    def test_wrong_type_reports_pointer(self, validator):
        doc = make_doc()
        doc["vulnerabilities"][0]["cve"] = "not-a-cve"
        report = validator.validate(to_bytes(doc))
        assert [f.location for f in report.findings] == ["/vulnerabilities/0/cve"]

    def test_findings_are_ordered(self, validator):
        doc = make_doc()
        del doc["document"]["title"]
        del doc["document"]["category"]
        report = validator.validate(to_bytes(doc))
        assert [f.location for f in report.findings] == ["/document/category", "/document/title"]


class TestRuleStep:
    """Rule findings after a clean structural step."""

    def test_rule_error_becomes_warning(self, valid_bytes):
        def explode(doc):
            raise KeyError("boom")

        def ok(doc):
            return [("/document", "noted")]

        rules = [
            Rule(id="exploding", severity=Severity.ERROR, profile=ValidationProfile.MANDATORY, description="", check=explode),
            Rule(id="noting", severity=Severity.INFO, profile=ValidationProfile.MANDATORY, description="", check=ok),
        ]
        report = Validator(rules).validate(valid_bytes)

        assert [(f.rule, f.severity) for f in report.findings] == [
            ("exploding", Severity.WARNING),
            ("noting", Severity.INFO),
        ]
        assert report.findings[0].message.startswith("rule error:")
        assert report.valid

    def test_rule_findings_fail_validation(self, validator):
        doc = make_doc()
        doc["vulnerabilities"][0]["product_status"]["known_affected"] = ["UNKNOWN-1"]
        report = validator.validate(to_bytes(doc))
        assert "missing-product-id-definition" in {f.rule for f in report.findings}
        assert not report.valid

    def test_schema_profile_runs_no_rules(self):
        v = Validator.from_settings(Settings(validation_profile=ValidationProfile.SCHEMA))
        assert v.rules == []

    def test_explicit_rule_ids(self):
        v = Validator.from_settings(Settings(validation_rules=["multiple-use-of-same-cve"]))
        assert v.rule_ids == ["multiple-use-of-same-cve"]

    def test_unknown_rule_id(self):
        with pytest.raises(ConfigurationError):
            Validator.from_settings(Settings(validation_rules=["no-such-rule"]))


class TestHelpers:
    """Tests for validation helpers."""

    def test_json_pointer_escapes(self):
        assert json_pointer(["a/b", "c~d", 0]) == "/a~1b/c~0d/0"
        assert json_pointer([]) == ""

    def test_custom_schema_path(self, tmp_path: Path):
        path = tmp_path / "schema.json"
        path.write_text(json.dumps({"type": "object", "required": ["x"]}), encoding="utf-8")
        v = Validator([], load_schema(path))
        report = v.validate(b"{}")
        assert [f.location for f in report.findings] == ["/x"]

    def test_invalid_schema_path(self, tmp_path: Path):
        path = tmp_path / "schema.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_schema(path)

    def test_validate_file(self, validator, tmp_path: Path, valid_bytes):
        path = tmp_path / "doc.json"
        path.write_bytes(valid_bytes)
        assert validate_file(path, validator).valid

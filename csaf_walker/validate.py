"""Document validation: CSAF schema conformance, then independent lint rules.

The schema step gates the rule step. Rules assume a structurally valid
document, so any parse or schema error stops evaluation after that step.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.exceptions import ValidationError as JSONSchemaValidationError

from .config import Settings
from .errors import ConfigurationError
from .models import Severity, ValidationFinding
from .rules import Rule, select_rules

logger = logging.getLogger(__name__)

SCHEMA_RESOURCE = "csaf_2.0_structure.json"
PARSE_RULE = "csaf-parse"
SCHEMA_RULE = "csaf-schema"


@dataclass
class ValidationReport:
    """Ordered findings for one document."""

    findings: List[ValidationFinding] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not any(f.severity is Severity.ERROR for f in self.findings)

    @property
    def error_count(self) -> int:
        return sum(1 for f in self.findings if f.severity is Severity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for f in self.findings if f.severity is Severity.WARNING)

    def summary(self) -> str:
        lines = [f.summary() for f in self.findings]
        lines.append(f"\n{self.error_count} error(s), {self.warning_count} warning(s)")
        return "\n".join(lines)


def _escape(token: Any) -> str:
    return str(token).replace("~", "~0").replace("/", "~1")


def json_pointer(path: Sequence[Any]) -> str:
    return "".join(f"/{_escape(p)}" for p in path)


def load_schema(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the bundled CSAF structure schema, or the schema at ``path``.

    Raises:
        ConfigurationError: If the schema cannot be read or is not a valid
            JSON schema.
    """
    try:
        if path is None:
            resource = resources.files("csaf_walker") / "schema" / SCHEMA_RESOURCE
            text = resource.read_text(encoding="utf-8")
        else:
            text = path.read_text(encoding="utf-8")
        schema = json.loads(text)
        Draft202012Validator.check_schema(schema)
    except (OSError, json.JSONDecodeError, SchemaError) as exc:
        raise ConfigurationError(f"Cannot load CSAF schema {path or SCHEMA_RESOURCE}: {exc}") from exc
    return schema


def _schema_finding(error: JSONSchemaValidationError) -> List[ValidationFinding]:
    path = list(error.absolute_path)
    if error.validator == "required" and isinstance(error.instance, dict):
        missing = [f for f in error.validator_value if f not in error.instance]
        return [
            ValidationFinding(
                rule=SCHEMA_RULE,
                severity=Severity.ERROR,
                location=json_pointer(path + [name]),
                message=f"missing required property {name!r}",
            )
            for name in missing
        ]
    return [
        ValidationFinding(
            rule=SCHEMA_RULE,
            severity=Severity.ERROR,
            location=json_pointer(path),
            message=error.message,
        )
    ]


class Validator:
    """Runs the structural step and the configured rules over document bytes."""

    def __init__(self, rules: Sequence[Rule], schema: Optional[Dict[str, Any]] = None) -> None:
        self.rules = list(rules)
        self._schema = Draft202012Validator(schema if schema is not None else load_schema())

    @classmethod
    def from_settings(cls, settings: Settings) -> "Validator":
        rules = select_rules(settings.validation_profile, settings.validation_rules)
        return cls(rules, load_schema(settings.schema_path))

    @property
    def rule_ids(self) -> List[str]:
        return [r.id for r in self.rules]

    def check_structure(self, data: bytes) -> tuple[Optional[Dict[str, Any]], List[ValidationFinding]]:
        """Parse and schema-check a document.

        Returns the parsed document (None if it does not parse) and the
        structural findings.
        """
        try:
            doc = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            return None, [
                ValidationFinding(
                    rule=PARSE_RULE,
                    severity=Severity.ERROR,
                    location="",
                    message=f"document is not valid JSON: {exc}",
                )
            ]

        errors = sorted(
            self._schema.iter_errors(doc),
            key=lambda e: (json_pointer(list(e.absolute_path)), e.message),
        )
        findings: List[ValidationFinding] = []
        for error in errors:
            findings.extend(_schema_finding(error))
        return doc, findings

    def check_rules(self, doc: Dict[str, Any]) -> List[ValidationFinding]:
        """Evaluate every rule; a failing rule never stops the others."""
        findings: List[ValidationFinding] = []
        for r in self.rules:
            try:
                findings.extend(r.evaluate(doc))
            except Exception as exc:  # noqa: BLE001 - one broken rule must not hide the rest
                logger.warning("Rule %s failed: %s", r.id, exc)
                findings.append(
                    ValidationFinding(
                        rule=r.id,
                        severity=Severity.WARNING,
                        location="",
                        message=f"rule error: {type(exc).__name__}: {exc}",
                    )
                )
        return findings

    def validate(self, data: bytes) -> ValidationReport:
        doc, findings = self.check_structure(data)
        report = ValidationReport(findings=findings)
        if doc is None or findings:
            logger.debug("Skipping rules after %d structural finding(s)", len(findings))
            return report
        report.findings.extend(self.check_rules(doc))
        return report


def validate_file(path: Path, validator: Validator) -> ValidationReport:
    """Validate a document on disk."""
    report = validator.validate(path.read_bytes())
    logger.info(
        "Validated %s: %d error(s), %d warning(s)",
        path, report.error_count, report.warning_count,
    )
    return report

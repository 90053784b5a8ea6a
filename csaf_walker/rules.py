"""Content lint rules for structurally valid CSAF documents.

Each rule is a plain check function registered under a stable id. A check
receives the parsed document and yields ``(location, message)`` pairs; the
registry turns those into findings with the rule's severity.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .config import ValidationProfile
from .errors import ConfigurationError
from .models import Severity, ValidationFinding

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Check = Callable[[Document], Iterable[Tuple[str, str]]]


@dataclass(frozen=True)
class Rule:
    """A registered lint rule."""

    id: str
    severity: Severity
    profile: ValidationProfile
    description: str
    check: Check

    def evaluate(self, doc: Document) -> List[ValidationFinding]:
        return [
            ValidationFinding(rule=self.id, severity=self.severity, location=loc, message=msg)
            for loc, msg in self.check(doc)
        ]


RULES: Dict[str, Rule] = {}


def rule(
    rule_id: str,
    *,
    severity: Severity = Severity.ERROR,
    profile: ValidationProfile = ValidationProfile.MANDATORY,
) -> Callable[[Check], Check]:
    """Register a check function as a rule."""

    def decorator(func: Check) -> Check:
        if rule_id in RULES:
            raise ValueError(f"Duplicate rule id: {rule_id}")
        RULES[rule_id] = Rule(
            id=rule_id,
            severity=severity,
            profile=profile,
            description=(func.__doc__ or rule_id).strip().splitlines()[0],
            check=func,
        )
        return func

    return decorator


_PROFILE_RULES = {
    ValidationProfile.SCHEMA: (),
    ValidationProfile.MANDATORY: (ValidationProfile.MANDATORY,),
    ValidationProfile.OPTIONAL: (ValidationProfile.MANDATORY, ValidationProfile.OPTIONAL),
}


def select_rules(
    profile: ValidationProfile = ValidationProfile.MANDATORY,
    rule_ids: Optional[Sequence[str]] = None,
) -> List[Rule]:
    """Assemble the active rule set from configuration.

    An explicit list of ids wins over the profile.

    Raises:
        ConfigurationError: If an id is not registered.
    """
    if rule_ids is not None:
        unknown = [r for r in rule_ids if r not in RULES]
        if unknown:
            raise ConfigurationError(f"Unknown validation rule(s): {unknown}")
        return [RULES[r] for r in dict.fromkeys(rule_ids)]
    families = _PROFILE_RULES[profile]
    return [r for r in RULES.values() if r.profile in families]


# ---------------------------------------------------------------------------
# Document helpers
# ---------------------------------------------------------------------------

AFFECTED = ("first_affected", "known_affected", "last_affected")
NOT_AFFECTED = ("known_not_affected",)
FIXED = ("first_fixed", "fixed")
UNDER_INVESTIGATION = ("under_investigation",)
STATUS_GROUPS = {
    "affected": AFFECTED,
    "not affected": NOT_AFFECTED,
    "fixed": FIXED,
    "under investigation": UNDER_INVESTIGATION,
}


def _items(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _walk_branches(branches: Any, pointer: str) -> Iterator[Tuple[str, str]]:
    for i, branch in enumerate(_items(branches)):
        here = f"{pointer}/{i}"
        product = _dict(_dict(branch).get("product"))
        if "product_id" in product:
            yield f"{here}/product/product_id", product["product_id"]
        yield from _walk_branches(_dict(branch).get("branches"), f"{here}/branches")


def product_definitions(doc: Document) -> List[Tuple[str, str]]:
    """Return ``(pointer, product_id)`` for every product defined in the tree."""
    tree = _dict(doc.get("product_tree"))
    found = list(_walk_branches(tree.get("branches"), "/product_tree/branches"))
    for i, fpn in enumerate(_items(tree.get("full_product_names"))):
        if "product_id" in _dict(fpn):
            found.append((f"/product_tree/full_product_names/{i}/product_id", fpn["product_id"]))
    for i, rel in enumerate(_items(tree.get("relationships"))):
        fpn = _dict(_dict(rel).get("full_product_name"))
        if "product_id" in fpn:
            found.append(
                (f"/product_tree/relationships/{i}/full_product_name/product_id", fpn["product_id"])
            )
    return found


def product_references(doc: Document) -> List[Tuple[str, str]]:
    """Return ``(pointer, product_id)`` for every place a product is referenced."""
    refs: List[Tuple[str, str]] = []
    tree = _dict(doc.get("product_tree"))
    for i, group in enumerate(_items(tree.get("product_groups"))):
        for j, pid in enumerate(_items(_dict(group).get("product_ids"))):
            refs.append((f"/product_tree/product_groups/{i}/product_ids/{j}", pid))
    for i, rel in enumerate(_items(tree.get("relationships"))):
        for key in ("product_reference", "relates_to_product_reference"):
            if key in _dict(rel):
                refs.append((f"/product_tree/relationships/{i}/{key}", rel[key]))

    for v, vuln in enumerate(_items(doc.get("vulnerabilities"))):
        base = f"/vulnerabilities/{v}"
        vuln = _dict(vuln)
        for status, pids in _dict(vuln.get("product_status")).items():
            for j, pid in enumerate(_items(pids)):
                refs.append((f"{base}/product_status/{status}/{j}", pid))
        for section, key in (("remediations", "product_ids"), ("scores", "products"),
                             ("threats", "product_ids"), ("flags", "product_ids")):
            for k, item in enumerate(_items(vuln.get(section))):
                for j, pid in enumerate(_items(_dict(item).get(key))):
                    refs.append((f"{base}/{section}/{k}/{key}/{j}", pid))
    return refs


def _parse_date(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def version_key(number: str) -> Tuple[int, ...]:
    """Sort key for integer or semantic version numbers; build metadata is ignored."""
    core = number.split("+", 1)[0]
    release, _, pre = core.partition("-")
    parts = tuple(int(p) for p in release.split(".") if p.isdigit())
    # a pre-release sorts before its release
    return parts + ((0,) if pre else (1,))


def _is_prerelease(number: str) -> bool:
    core = number.split("+", 1)[0]
    return core == "0" or core.startswith("0.") or "-" in core


def _revisions(doc: Document) -> List[Tuple[int, Dict[str, Any]]]:
    history = _dict(_dict(doc.get("document")).get("tracking")).get("revision_history")
    return [(i, r) for i, r in enumerate(_items(history)) if isinstance(r, dict)]


def _tracking(doc: Document) -> Dict[str, Any]:
    return _dict(_dict(doc.get("document")).get("tracking"))


# ---------------------------------------------------------------------------
# Mandatory rules
# ---------------------------------------------------------------------------

@rule("missing-product-id-definition")
def check_missing_product_definition(doc: Document) -> Iterator[Tuple[str, str]]:
    """Every referenced product id must be defined in the product tree."""
    defined = {pid for _, pid in product_definitions(doc)}
    for pointer, pid in product_references(doc):
        if pid not in defined:
            yield pointer, f"product id {pid!r} is not defined in the product tree"


@rule("multiple-product-id-definition")
def check_multiple_product_definition(doc: Document) -> Iterator[Tuple[str, str]]:
    """A product id must be defined only once."""
    seen: Dict[str, str] = {}
    for pointer, pid in product_definitions(doc):
        if pid in seen:
            yield pointer, f"product id {pid!r} already defined at {seen[pid]}"
        else:
            seen[pid] = pointer


@rule("contradicting-product-status")
def check_contradicting_product_status(doc: Document) -> Iterator[Tuple[str, str]]:
    """A product must not appear in contradicting status groups of one vulnerability."""
    for v, vuln in enumerate(_items(doc.get("vulnerabilities"))):
        status = _dict(_dict(vuln).get("product_status"))
        groups_of: Dict[str, List[str]] = {}
        for group, keys in STATUS_GROUPS.items():
            members = {pid for key in keys for pid in _items(status.get(key))}
            for pid in members:
                groups_of.setdefault(pid, []).append(group)
        for pid in sorted(groups_of):
            groups = groups_of[pid]
            if len(groups) > 1:
                yield (
                    f"/vulnerabilities/{v}/product_status",
                    f"product id {pid!r} is listed as {' and '.join(groups)}",
                )


@rule("sorted-revision-history")
def check_sorted_revision_history(doc: Document) -> Iterator[Tuple[str, str]]:
    """Revision numbers must increase with revision dates."""
    dated = []
    for i, rev in _revisions(doc):
        date, number = _parse_date(rev.get("date")), rev.get("number")
        if date is None or not isinstance(number, str):
            continue
        dated.append((date, version_key(number), i))
    dated.sort(key=lambda item: (item[0], item[1]))
    for (_, prev_key, _), (_, key, i) in zip(dated, dated[1:]):
        if key < prev_key:
            yield (
                f"/document/tracking/revision_history/{i}/number",
                "revision history is not sorted by date and version number",
            )
            return


@rule("latest-document-version")
def check_latest_document_version(doc: Document) -> Iterator[Tuple[str, str]]:
    """tracking.version must equal the number of the newest revision."""
    tracking = _tracking(doc)
    version = tracking.get("version")
    revisions = [
        (_parse_date(r.get("date")), r.get("number"))
        for _, r in _revisions(doc)
        if isinstance(r.get("number"), str)
    ]
    revisions = [(d, n) for d, n in revisions if d is not None]
    if not isinstance(version, str) or not revisions:
        return
    _, latest = max(revisions, key=lambda item: (item[0], version_key(item[1])))
    if version_key(latest) != version_key(version):
        yield "/document/tracking/version", f"version {version!r} does not match latest revision {latest!r}"


@rule("document-status-draft")
def check_document_status_draft(doc: Document) -> Iterator[Tuple[str, str]]:
    """A pre-release or zero version requires document status draft."""
    tracking = _tracking(doc)
    version, status = tracking.get("version"), tracking.get("status")
    if isinstance(version, str) and _is_prerelease(version) and status != "draft":
        yield "/document/tracking/status", f"version {version!r} requires status 'draft', found {status!r}"


@rule("released-revision-history")
def check_released_revision_history(doc: Document) -> Iterator[Tuple[str, str]]:
    """Final and interim documents must not carry a zero-version revision."""
    if _tracking(doc).get("status") not in ("final", "interim"):
        return
    for i, rev in _revisions(doc):
        number = rev.get("number")
        if isinstance(number, str) and (number == "0" or number.startswith("0.")):
            yield (
                f"/document/tracking/revision_history/{i}/number",
                f"released document contains pre-release revision {number!r}",
            )


@rule("missing-item-in-revision-history")
def check_missing_revision_item(doc: Document) -> Iterator[Tuple[str, str]]:
    """Major revision numbers must be contiguous."""
    majors = sorted(
        {version_key(r["number"])[0] for _, r in _revisions(doc)
         if isinstance(r.get("number"), str) and version_key(r["number"])[:-1]}
    )
    if not majors:
        return
    if majors[0] not in (0, 1):
        yield "/document/tracking/revision_history", f"revision history starts at {majors[0]}"
    for prev, cur in zip(majors, majors[1:]):
        if cur != prev + 1:
            yield "/document/tracking/revision_history", f"revision {prev + 1} is missing"


@rule("multiple-definition-in-revision-history")
def check_multiple_revision_definition(doc: Document) -> Iterator[Tuple[str, str]]:
    """Revision numbers must be unique."""
    counts = Counter(r.get("number") for _, r in _revisions(doc))
    for number in sorted(n for n, c in counts.items() if c > 1 and isinstance(n, str)):
        yield "/document/tracking/revision_history", f"revision {number!r} is defined {counts[number]} times"


@rule("multiple-use-of-same-cve")
def check_multiple_cve(doc: Document) -> Iterator[Tuple[str, str]]:
    """A CVE id may be used by only one vulnerability item."""
    seen: Dict[str, int] = {}
    for v, vuln in enumerate(_items(doc.get("vulnerabilities"))):
        cve = _dict(vuln).get("cve")
        if not cve:
            continue
        if cve in seen:
            yield f"/vulnerabilities/{v}/cve", f"{cve} already used by /vulnerabilities/{seen[cve]}"
        else:
            seen[cve] = v


@rule("security-advisory-vulnerabilities")
def check_security_advisory_vulnerabilities(doc: Document) -> Iterator[Tuple[str, str]]:
    """Security advisories must describe at least one vulnerability."""
    category = _dict(doc.get("document")).get("category")
    if category == "csaf_security_advisory" and not _items(doc.get("vulnerabilities")):
        yield "/vulnerabilities", "csaf_security_advisory without vulnerabilities"


# ---------------------------------------------------------------------------
# Optional rules
# ---------------------------------------------------------------------------

@rule("unused-product-id-definition", severity=Severity.WARNING, profile=ValidationProfile.OPTIONAL)
def check_unused_product_definition(doc: Document) -> Iterator[Tuple[str, str]]:
    """Defined products should be referenced somewhere."""
    referenced = {pid for _, pid in product_references(doc)}
    for pointer, pid in product_definitions(doc):
        if pid not in referenced:
            yield pointer, f"product id {pid!r} is never referenced"


@rule("missing-remediation", severity=Severity.WARNING, profile=ValidationProfile.OPTIONAL)
def check_missing_remediation(doc: Document) -> Iterator[Tuple[str, str]]:
    """Affected products should have a remediation."""
    for v, vuln in enumerate(_items(doc.get("vulnerabilities"))):
        vuln = _dict(vuln)
        status = _dict(vuln.get("product_status"))
        affected = {pid for key in AFFECTED for pid in _items(status.get(key))}
        covered = {
            pid
            for rem in _items(vuln.get("remediations"))
            for pid in _items(_dict(rem).get("product_ids"))
        }
        for pid in sorted(affected - covered):
            yield f"/vulnerabilities/{v}/remediations", f"no remediation for affected product {pid!r}"


@rule("older-initial-release-date", severity=Severity.WARNING, profile=ValidationProfile.OPTIONAL)
def check_older_initial_release_date(doc: Document) -> Iterator[Tuple[str, str]]:
    """The initial release date should not predate the revision history."""
    initial = _parse_date(_tracking(doc).get("initial_release_date"))
    dates = [d for d in (_parse_date(r.get("date")) for _, r in _revisions(doc)) if d is not None]
    if initial is None or not dates:
        return
    try:
        older = initial < min(dates)
    except TypeError:
        # naive and aware timestamps mixed
        return
    if older:
        yield "/document/tracking/initial_release_date", "initial release date is older than the revision history"


@rule("missing-tlp-label", severity=Severity.INFO, profile=ValidationProfile.OPTIONAL)
def check_missing_tlp_label(doc: Document) -> Iterator[Tuple[str, str]]:
    """Documents should state a TLP label."""
    tlp = _dict(_dict(_dict(doc.get("document")).get("distribution")).get("tlp"))
    if "label" not in tlp:
        yield "/document/distribution", "no TLP label"

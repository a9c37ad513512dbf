"""
Rule authoring helpers: validation reports, scenario simulation and
field-level diffs between rule versions.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from shared.errors import ConfigurationError, RuleParseError
from .engine import render_decision
from .families import FamilyRegistry, build_default_registry
from .models import EvaluationContext, Rule


# Upper-case dotted code with at least three segments; a trailing V<n> is a normal segment
FAMILY_CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*(?:\.[A-Z][A-Z0-9_]*){2,}$")

DIFF_EXCLUDED_FIELDS = ("metadata",)


class ValidationIssue(BaseModel):
    field: str
    message: str


class ValidationReport(BaseModel):
    """Outcome of validating a rule before it is saved."""

    ok: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


class SimulationScenario(BaseModel):
    scenario_id: str
    context: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    expected: Dict[str, Any] = Field(default_factory=dict)


class ScenarioResult(BaseModel):
    scenario_id: str
    passed: bool
    decision: Optional[Dict[str, Any]] = None
    diff: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    error: Optional[str] = None


class SimulationReport(BaseModel):
    rule_id: str
    results: List[ScenarioResult] = Field(default_factory=list)
    passed: int = 0
    failed: int = 0
    coverage: float = 0.0


class FieldChange(BaseModel):
    path: str
    old: Any = None
    new: Any = None


def _location(loc) -> str:
    return ".".join(str(part) for part in loc) or "rule"


def validate_rule(rule: Union[Rule, Mapping[str, Any]], registry: Optional[FamilyRegistry] = None,
                  stored: Optional[Rule] = None) -> ValidationReport:
    """Check a rule (or raw document) and report errors and warnings.

    ``stored`` is the currently persisted version, if any, and is used to
    catch organization changes.
    """
    registry = registry or build_default_registry()
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    if not isinstance(rule, Rule):
        try:
            rule = Rule.model_validate(rule)
        except ValidationError as exc:
            for error in exc.errors(include_url=False):
                errors.append(ValidationIssue(field=_location(error["loc"]), message=error["msg"]))
            return ValidationReport(ok=False, errors=errors)

    if not FAMILY_CODE_PATTERN.match(rule.family_code):
        errors.append(ValidationIssue(
            field="family_code",
            message="family_code must be upper-case, dot separated, with at least three segments"
        ))

    strategy = registry.lookup(rule.family_key)
    try:
        strategy.parse_payload(rule)
    except RuleParseError as exc:
        for error in exc.details.get("errors", []):
            errors.append(ValidationIssue(
                field=_location(("payload",) + tuple(error.get("loc", ()))),
                message=error.get("msg", exc.message)
            ))
    if strategy is registry.default:
        warnings.append(ValidationIssue(
            field="family_code",
            message="No registered family matches; the generic handler will be used"
        ))

    for index, window in enumerate(rule.conditions.time_windows or []):
        if window.start == window.end:
            warnings.append(ValidationIssue(
                field=f"conditions.time_windows.{index}",
                message="Time window starts and ends at the same minute"
            ))
    if rule.conditions.days_of_week is not None and not rule.conditions.days_of_week:
        errors.append(ValidationIssue(
            field="conditions.days_of_week",
            message="An empty days_of_week list never matches"
        ))

    if stored is not None and stored.organization_id != rule.organization_id:
        errors.append(ValidationIssue(
            field="scope.organization_id",
            message=f"organization_id cannot change from {stored.organization_id!r}"
        ))

    if not rule.scope.populated_dimensions():
        warnings.append(ValidationIssue(
            field="scope",
            message="Rule applies to every context in the organization"
        ))
    if not rule.payload:
        warnings.append(ValidationIssue(field="payload", message="Rule has an empty payload"))

    return ValidationReport(ok=not errors, errors=errors, warnings=warnings)


def _expected_diff(decision, expected: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    diff = {}
    payload = decision.payload or {}
    for key, wanted in expected.items():
        if key in ("decision", "confidence", "reason"):
            actual = getattr(decision, key)
        else:
            actual = payload.get(key)
        if actual != wanted:
            diff[key] = {"expected": wanted, "actual": actual}
    return diff


def simulate_rule(rule: Rule, scenarios: List[Union[SimulationScenario, Mapping[str, Any]]],
                  registry: Optional[FamilyRegistry] = None,
                  now: Optional[datetime] = None) -> SimulationReport:
    """Run the family handler for ``rule`` over each scenario.

    Status and scope gates are skipped so drafts can be exercised; the
    family's composition and decision logic run unchanged.
    """
    registry = registry or build_default_registry()
    report = SimulationReport(rule_id=rule.rule_id)

    for raw in scenarios:
        scenario = raw if isinstance(raw, SimulationScenario) else SimulationScenario.model_validate(raw)
        context_data = {"organization_id": rule.organization_id}
        context_data.update(scenario.context)
        context = EvaluationContext.from_dict(context_data)
        if context.now is None and now is not None:
            context = context.with_now(now)

        try:
            decision = render_decision(registry, rule.family_code, context, [rule], scenario.inputs)
        except ConfigurationError as exc:
            report.results.append(ScenarioResult(
                scenario_id=scenario.scenario_id, passed=False, error=exc.message
            ))
            continue

        diff = _expected_diff(decision, scenario.expected)
        report.results.append(ScenarioResult(
            scenario_id=scenario.scenario_id,
            passed=not diff,
            decision=decision.to_dict(),
            diff=diff,
        ))

    report.passed = sum(1 for result in report.results if result.passed)
    report.failed = len(report.results) - report.passed
    if report.results:
        report.coverage = report.passed / len(report.results) * 100.0
    return report


def _walk(path: str, old: Any, new: Any, changes: List[FieldChange]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in sorted(set(old) | set(new)):
            child = f"{path}.{key}" if path else str(key)
            _walk(child, old.get(key), new.get(key), changes)
        return
    if old != new:
        changes.append(FieldChange(path=path, old=old, new=new))


def diff_rules(base: Rule, new: Rule) -> List[FieldChange]:
    """Field-level differences between two rules, ignoring metadata."""
    old_document = base.to_document()
    new_document = new.to_document()
    for name in DIFF_EXCLUDED_FIELDS:
        old_document.pop(name, None)
        new_document.pop(name, None)

    changes: List[FieldChange] = []
    _walk("", old_document, new_document, changes)
    return changes

"""
Rule data models for the rule resolution service.

``Rule`` and its parts are pydantic models because they double as the
persisted JSON document; ``EvaluationContext``, ``RuleMatch`` and
``Decision`` are per-request values and stay plain dataclasses.
"""

from typing import Dict, Any, Optional, List, FrozenSet, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel, ConfigDict, Field, ValidationError,
    field_serializer, field_validator, model_validator,
)

from shared.errors import RuleParseError


FAMILY_SEGMENTS = 5

NO_MATCHING_RULE = "no_matching_rule"

SCOPE_DIMENSIONS = ("branches", "services", "specialists", "customer_segments", "channels")


def family_key(family_code: str) -> str:
    """Leading five segments of a dotted family code."""
    segments = [part.strip() for part in family_code.strip().split(".")]
    return ".".join(segments[:FAMILY_SEGMENTS])


def family_matches(family_code: str, family: str) -> bool:
    """True when ``family`` is a segment-wise prefix of ``family_code``."""
    code_parts = family_code.split(".")
    family_parts = family.split(".")
    return code_parts[:len(family_parts)] == family_parts


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RuleStatus(str, Enum):
    """Rule lifecycle status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class RolloutStrategy(str, Enum):
    """How a rule version is rolled out."""
    IMMEDIATE = "immediate"
    PERCENTAGE = "percentage"
    GRADUAL = "gradual"


class TimeWindow(BaseModel):
    """Local time-of-day window; start > end wraps past midnight."""

    start: time
    end: time

    @property
    def wraps_midnight(self) -> bool:
        return self.start > self.end

    def contains(self, moment: time) -> bool:
        if self.wraps_midnight:
            return moment >= self.start or moment <= self.end
        return self.start <= moment <= self.end

    @field_serializer("start", "end")
    def _serialize_time(self, value: time) -> str:
        if value.second or value.microsecond:
            return value.isoformat()
        return value.isoformat(timespec="minutes")


class RuleScope(BaseModel):
    """Organizational scope of a rule."""

    organization_id: str = Field(..., min_length=1)
    branches: FrozenSet[str] = frozenset()
    services: FrozenSet[str] = frozenset()
    specialists: FrozenSet[str] = frozenset()
    customer_segments: FrozenSet[str] = frozenset()
    channels: FrozenSet[str] = frozenset()

    @field_validator(*SCOPE_DIMENSIONS, mode="before")
    @classmethod
    def _none_is_unrestricted(cls, value: Any) -> Any:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            return frozenset([value])
        return value

    @field_serializer(*SCOPE_DIMENSIONS)
    def _serialize_dimension(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)

    def populated_dimensions(self) -> List[str]:
        return [name for name in SCOPE_DIMENSIONS if getattr(self, name)]


class RuleConditions(BaseModel):
    """Temporal window plus common and family-specific conditions.

    Keys this model does not declare are kept as extras and are left for the
    family decision handler to interpret.
    """

    model_config = ConfigDict(extra="allow")

    effective_from: datetime
    effective_to: Optional[datetime] = None
    days_of_week: Optional[FrozenSet[int]] = None
    time_windows: Optional[List[TimeWindow]] = None
    timezone: Optional[str] = None

    utilization_below: Optional[float] = None
    min_lead_minutes: Optional[float] = None
    max_advance_days: Optional[float] = None
    min_order_value: Optional[float] = None

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, value: Optional[FrozenSet[int]]) -> Optional[FrozenSet[int]]:
        if value is not None and any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week entries must be between 0 (Sunday) and 6 (Saturday)")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "RuleConditions":
        if self.effective_to is not None and as_utc(self.effective_to) < as_utc(self.effective_from):
            raise ValueError("effective_to must not precede effective_from")
        return self

    @field_serializer("days_of_week")
    def _serialize_days(self, value: Optional[FrozenSet[int]]) -> Optional[List[int]]:
        return sorted(value) if value is not None else None

    @property
    def extra_conditions(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class Rollout(BaseModel):
    """Rollout strategy recorded with a rule version."""

    strategy: RolloutStrategy = RolloutStrategy.IMMEDIATE
    percentage: Optional[float] = Field(None, ge=0, le=100)
    target_groups: List[str] = Field(default_factory=list)


class RuleMetadata(BaseModel):
    """Authoring metadata."""

    model_config = ConfigDict(extra="allow")

    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(1, ge=1)
    rollout: Optional[Rollout] = None


class Rule(BaseModel):
    """Versioned business rule; also the persisted document shape."""

    model_config = ConfigDict(extra="allow")

    rule_id: str = Field(..., min_length=1)
    family_code: str = Field(..., min_length=1)
    status: RuleStatus = RuleStatus.DRAFT
    scope: RuleScope
    conditions: RuleConditions
    priority: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)
    title: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("family_code")
    @classmethod
    def _check_family_code(cls, value: str) -> str:
        value = value.strip()
        if any(not part for part in value.split(".")):
            raise ValueError("family_code must be a dotted identifier without empty segments")
        return value

    @property
    def family_key(self) -> str:
        return family_key(self.family_code)

    @property
    def organization_id(self) -> str:
        return self.scope.organization_id

    @property
    def version(self) -> int:
        return self.metadata.version

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    def with_version(self, version: int) -> "Rule":
        """Copy of this rule carrying a different version number."""
        metadata = self.metadata.model_copy(update={"version": version})
        return self.model_copy(update={"metadata": metadata})

    def to_document(self) -> Dict[str, Any]:
        """JSON-compatible document for the store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: Any) -> "Rule":
        """Parse a stored document, raising RuleParseError on bad data."""
        rule_id = document.get("rule_id") if isinstance(document, dict) else None
        try:
            return cls.model_validate(document)
        except ValidationError as exc:
            raise RuleParseError(
                f"Rule document failed validation: {exc.error_count()} error(s)",
                rule_id=rule_id,
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc


def _frozen(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        return frozenset([values])
    return frozenset(values)


@dataclass(frozen=True)
class EvaluationContext:
    """Who/when/where is asking for a decision."""
    organization_id: str
    now: Optional[datetime] = None
    branch_id: Optional[str] = None
    service_ids: FrozenSet[str] = frozenset()
    specialist_id: Optional[str] = None
    customer_segments: FrozenSet[str] = frozenset()
    channel: Optional[str] = None
    customer_id: Optional[str] = None
    utilization: Optional[float] = None
    appointment_time: Optional[datetime] = None
    order_value: Optional[float] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "service_ids", _frozen(self.service_ids))
        object.__setattr__(self, "customer_segments", _frozen(self.customer_segments))

    def with_now(self, now: datetime) -> "EvaluationContext":
        return replace(self, now=now)

    def get(self, key: str, default: Any = None) -> Any:
        """Look a value up on the declared fields, then in ``attributes``."""
        if key != "attributes" and key in self.__dataclass_fields__:
            value = getattr(self, key)
            if value is not None:
                return value
        return self.attributes.get(key, default)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly copy used as decision evidence."""
        return {
            "organization_id": self.organization_id,
            "now": self.now.isoformat() if self.now else None,
            "branch_id": self.branch_id,
            "service_ids": sorted(self.service_ids),
            "specialist_id": self.specialist_id,
            "customer_segments": sorted(self.customer_segments),
            "channel": self.channel,
            "customer_id": self.customer_id,
            "utilization": self.utilization,
            "appointment_time": self.appointment_time.isoformat() if self.appointment_time else None,
            "order_value": self.order_value,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvaluationContext":
        """Build a context from a JSON mapping; unknown keys become attributes."""
        known = {name for name in cls.__dataclass_fields__ if name != "attributes"}
        values = {key: value for key, value in data.items() if key in known}
        attributes = dict(data.get("attributes") or {})
        attributes.update({key: value for key, value in data.items() if key not in known and key != "attributes"})
        for key in ("now", "appointment_time"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        return cls(attributes=attributes, **values)


@dataclass
class RuleMatch:
    """Diagnostic scoring result for one rule."""
    rule: Rule
    score: float
    matched_conditions: List[str] = field(default_factory=list)
    unmatched_conditions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule.rule_id,
            "status": self.rule.status.value,
            "priority": self.rule.priority,
            "score": self.score,
            "matched_conditions": list(self.matched_conditions),
            "unmatched_conditions": list(self.unmatched_conditions),
        }


@dataclass
class DecisionEvidence:
    """What a decision was based on."""
    matching_rule_ids: List[str] = field(default_factory=list)
    applied_rule_id: Optional[str] = None
    applied_rule_ids: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Decision:
    """Result of a decide call."""
    decision: str
    reason: str
    confidence: float
    evidence: DecisionEvidence = field(default_factory=DecisionEvidence)
    payload: Optional[Dict[str, Any]] = None
    family: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision,
            "reason": self.reason,
            "confidence": self.confidence,
            "family": self.family,
            "evidence": {
                "matching_rule_ids": list(self.evidence.matching_rule_ids),
                "applied_rule_id": self.evidence.applied_rule_id,
                "applied_rule_ids": list(self.evidence.applied_rule_ids),
                "context": dict(self.evidence.context),
            },
            "payload": self.payload,
        }

"""
Rule families: payload schema, composition strategy and decision handler
per family prefix, kept in a registry instead of a branch statement.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from shared.errors import ConfigurationError, RuleParseError
from shared.logging import get_logger
from .composer import CompositionStrategy, ExperimentBucketing, Merging, SingleWinner, Stacking
from .formulas import Formula, FormulaKind, Guard
from .models import EvaluationContext, Rule, family_key, family_matches


NO_SHOW = "ORG.CONFIG.BOOKING.NO_SHOW"
AVAILABILITY = "ORG.CONFIG.BOOKING.AVAILABILITY"
SLOT_FILTER = "ORG.CONFIG.BOOKING.SLOT_FILTER"
DISCOUNT = "ORG.CONFIG.PRICING.DISCOUNT"
NOTIFICATION_TEMPLATE = "ORG.CONFIG.NOTIFICATION.TEMPLATE"
FEATURE_FLAG = "ORG.CONFIG.UI.FEATURE_FLAG"
EXPERIMENT = "ORG.CONFIG.UI.EXPERIMENT"
POSTING = "ORG.CONFIG.FINANCE.POSTING"


@dataclass
class Verdict:
    """What a family handler concluded; the engine adds the evidence."""
    decision: str
    reason: str
    confidence: float
    payload: Optional[Dict[str, Any]] = None
    applied_rule_ids: List[str] = field(default_factory=list)


class GenericPayload(BaseModel):
    model_config = ConfigDict(extra="allow")


class NoShowPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    grace_customers: List[str] = Field(default_factory=list)
    waive_first_offense: bool = False
    fee_percentage: float = Field(0.0, ge=0)
    min_fee_amount: Optional[float] = Field(None, ge=0)
    max_fee_amount: Optional[float] = Field(None, ge=0)


class AvailabilityPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    available: bool
    reason: Optional[str] = None
    alternative_slots: List[Any] = Field(default_factory=list)


class SlotFilterPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    allowed_slots: List[str] = Field(default_factory=list)
    blocked_slots: List[str] = Field(default_factory=list)
    max_per_day: Optional[int] = Field(None, ge=0)


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    TIERED = "tiered"


class DiscountPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    discount_type: DiscountType = DiscountType.PERCENTAGE
    percentage: Optional[float] = Field(None, ge=0, le=100)
    amount: Optional[float] = Field(None, ge=0)
    formula: Optional[Formula] = None
    max_discount_amount: Optional[float] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_amount_for_type(self):
        required = {
            DiscountType.PERCENTAGE: ("percentage", self.percentage),
            DiscountType.FIXED: ("amount", self.amount),
            DiscountType.TIERED: ("formula", self.formula),
        }
        name, value = required[self.discount_type]
        if value is None:
            raise ValueError(f"{self.discount_type.value} discount requires {name}")
        return self

    def to_formula(self) -> Formula:
        if self.discount_type == DiscountType.PERCENTAGE:
            return Formula(kind=FormulaKind.PERCENTAGE_OF, base="original_price", percentage=self.percentage)
        if self.discount_type == DiscountType.FIXED:
            return Formula(kind=FormulaKind.FIXED_AMOUNT, amount=self.amount)
        return self.formula


class NotificationPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    templates: List[Dict[str, Any]] = Field(default_factory=list)


class FeatureFlagPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    flag_key: Optional[str] = None
    enabled: bool
    value: Any = None


class ExperimentPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    experiment_key: Optional[str] = None
    variant: str
    weight: float = Field(1.0, ge=0)
    config: Dict[str, Any] = Field(default_factory=dict)


class PostingSide(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class PostingLine(BaseModel):
    account: str
    side: PostingSide
    formula: Formula
    when: Optional[Guard] = None
    description: Optional[str] = None


class PostingPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    lines: List[PostingLine] = Field(..., min_length=1)
    currency: Optional[str] = None


def _number(inputs: Mapping[str, Any], context: EvaluationContext, key: str,
            fallback: Optional[str] = None) -> float:
    value = inputs.get(key)
    if value is None:
        value = context.get(key)
    if value is None and fallback:
        value = context.get(fallback)
    if value is None:
        raise ConfigurationError(f"Decision input '{key}' is required", details={"input": key})
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Decision input '{key}' must be numeric", details={"input": key}) from exc


class FamilyStrategy:
    """Compose and decide for one rule family."""

    prefix = ""
    payload_model: Type[BaseModel] = GenericPayload

    def __init__(self, prefix: Optional[str] = None, composition: Optional[CompositionStrategy] = None):
        if prefix is not None:
            self.prefix = prefix
        self.composition = composition or self.default_composition()

    def default_composition(self) -> CompositionStrategy:
        return SingleWinner()

    def parse_payload(self, rule: Rule) -> BaseModel:
        try:
            return self.payload_model.model_validate(rule.payload)
        except ValidationError as exc:
            raise RuleParseError(
                f"Payload does not match {self.payload_model.__name__}",
                rule_id=rule.rule_id,
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    def accepts(self, rule: Rule, context: EvaluationContext, inputs: Mapping[str, Any]) -> bool:
        """Check the family-specific condition keys of ``rule``.

        Each key is looked up in ``inputs`` first, then on the context. A list
        expects any of its members; anything else must compare equal. A key
        with no value to compare against rejects the rule.
        """
        for key, expected in rule.conditions.extra_conditions.items():
            actual = inputs[key] if key in inputs else context.get(key)
            if actual is None:
                return False
            if isinstance(expected, list):
                if actual not in expected:
                    return False
            elif actual != expected:
                return False
        return True

    def compose(self, rules: Sequence[Rule], family: str) -> List[Rule]:
        return self.composition.compose(rules, family)

    def decide(self, rules: Sequence[Rule], context: EvaluationContext,
               inputs: Mapping[str, Any]) -> Verdict:
        winner = rules[0]
        return Verdict(
            decision="apply",
            reason=f"Rule '{winner.title or winner.rule_id}' applies",
            confidence=1.0,
            payload=dict(winner.payload),
            applied_rule_ids=[winner.rule_id],
        )


class NoShowFeeFamily(FamilyStrategy):
    prefix = NO_SHOW
    payload_model = NoShowPayload

    def decide(self, rules, context, inputs) -> Verdict:
        rule = rules[0]
        policy = self.parse_payload(rule)
        applied = [rule.rule_id]

        if context.customer_id and context.customer_id in policy.grace_customers:
            return Verdict("waive", "Customer is on the grace list", 1.0,
                           {"fee": 0.0, "waiver": "grace_customer"}, applied)

        if policy.waive_first_offense and inputs.get("is_first_offense"):
            return Verdict("waive", "First no-show is waived", 0.95,
                           {"fee": 0.0, "waiver": "first_offense"}, applied)

        appointment_value = _number(inputs, context, "appointment_value", fallback="order_value")
        raw_fee = appointment_value * policy.fee_percentage / 100.0
        fee = raw_fee
        if policy.min_fee_amount is not None:
            fee = max(fee, policy.min_fee_amount)
        if policy.max_fee_amount is not None:
            fee = min(fee, policy.max_fee_amount)

        return Verdict(
            "charge",
            f"No-show fee of {policy.fee_percentage:g}% applied",
            0.9,
            {"fee": fee, "raw_fee": raw_fee, "appointment_value": appointment_value},
            applied,
        )


class AvailabilityFamily(FamilyStrategy):
    prefix = AVAILABILITY
    payload_model = AvailabilityPayload

    def decide(self, rules, context, inputs) -> Verdict:
        rule = rules[0]
        availability = self.parse_payload(rule)
        reason = availability.reason or ("Slot available" if availability.available else "Slot unavailable")
        return Verdict(
            "available" if availability.available else "unavailable",
            reason,
            1.0,
            {
                "available": availability.available,
                "reason": availability.reason,
                "alternative_slots": availability.alternative_slots,
            },
            [rule.rule_id],
        )


class SlotFilterFamily(FamilyStrategy):
    prefix = SLOT_FILTER
    payload_model = SlotFilterPayload

    def decide(self, rules, context, inputs) -> Verdict:
        rule = rules[0]
        slot_filter = self.parse_payload(rule)
        result: Dict[str, Any] = {
            "allowed_slots": slot_filter.allowed_slots,
            "blocked_slots": slot_filter.blocked_slots,
            "max_per_day": slot_filter.max_per_day,
        }

        candidates = inputs.get("slots")
        if candidates is not None:
            allowed = set(slot_filter.allowed_slots)
            blocked = set(slot_filter.blocked_slots)
            kept = [slot for slot in candidates
                    if (not allowed or slot in allowed) and slot not in blocked]
            if slot_filter.max_per_day is not None:
                kept = kept[:slot_filter.max_per_day]
            result["slots"] = kept

        return Verdict("filter", "Slot filter applied", 1.0, result, [rule.rule_id])


class DiscountStackingFamily(FamilyStrategy):
    prefix = DISCOUNT
    payload_model = DiscountPayload

    def default_composition(self) -> CompositionStrategy:
        return Stacking()

    def decide(self, rules, context, inputs) -> Verdict:
        original_price = _number(inputs, context, "original_price", fallback="order_value")
        variables = {key: value for key, value in inputs.items() if isinstance(value, (int, float))}
        variables["original_price"] = original_price

        breakdown = []
        total_discount = 0.0
        for rule in rules:
            discount = self.parse_payload(rule)
            amount = discount.to_formula().evaluate(variables)
            if discount.max_discount_amount is not None:
                amount = min(amount, discount.max_discount_amount)
            amount = max(0.0, amount)
            total_discount += amount
            breakdown.append({"rule_id": rule.rule_id, "discount": amount})

        final_price = max(0.0, original_price - total_discount)
        payload = {
            "original_price": original_price,
            "total_discount": total_discount,
            "final_price": final_price,
            "breakdown": breakdown,
        }
        applied = [rule.rule_id for rule in rules]

        if total_discount <= 0:
            return Verdict("no_discount", "Matching discounts evaluate to zero", 1.0, payload, applied)
        return Verdict("discount", f"{len(rules)} discount rule(s) stacked", 1.0, payload, applied)


class NotificationTemplateFamily(FamilyStrategy):
    prefix = NOTIFICATION_TEMPLATE
    payload_model = NotificationPayload

    def default_composition(self) -> CompositionStrategy:
        return Merging("templates")

    def decide(self, rules, context, inputs) -> Verdict:
        merged = rules[0]
        templates = list(merged.payload.get("templates") or [])
        applied = list(merged.payload.get("merged_rule_ids") or [merged.rule_id])

        if not templates:
            return Verdict("no_templates", "Matching rules define no templates", 0.5,
                           {"templates": []}, applied)
        return Verdict("notify", f"{len(templates)} template(s) selected", 1.0,
                       {"templates": templates}, applied)


class FeatureFlagFamily(FamilyStrategy):
    prefix = FEATURE_FLAG
    payload_model = FeatureFlagPayload

    def decide(self, rules, context, inputs) -> Verdict:
        rule = rules[0]
        flag = self.parse_payload(rule)
        flag_key = flag.flag_key or rule.family_code
        return Verdict(
            "enabled" if flag.enabled else "disabled",
            f"Feature flag '{flag_key}' is {'on' if flag.enabled else 'off'}",
            1.0,
            {"flag_key": flag_key, "enabled": flag.enabled, "value": flag.value},
            [rule.rule_id],
        )


class ExperimentFamily(FamilyStrategy):
    prefix = EXPERIMENT
    payload_model = ExperimentPayload

    def default_composition(self) -> CompositionStrategy:
        return ExperimentBucketing()

    def decide(self, rules, context, inputs) -> Verdict:
        rule = rules[0]
        arm = self.parse_payload(rule)
        experiment_key = arm.experiment_key or family_key(rule.family_code)
        return Verdict(
            "variant",
            f"Experiment '{experiment_key}' assigned variant '{arm.variant}'",
            1.0,
            {"experiment_key": experiment_key, "variant": arm.variant, "config": arm.config},
            [rule.rule_id],
        )


class PostingRecipeFamily(FamilyStrategy):
    prefix = POSTING
    payload_model = PostingPayload

    def decide(self, rules, context, inputs) -> Verdict:
        rule = rules[0]
        recipe = self.parse_payload(rule)
        variables = {key: value for key, value in inputs.items() if isinstance(value, (int, float))}
        if context.order_value is not None:
            variables.setdefault("order_value", context.order_value)

        lines = []
        total_debit = 0.0
        total_credit = 0.0
        for line in recipe.lines:
            if line.when is not None and not line.when.holds(variables):
                continue
            amount = round(line.formula.evaluate(variables), 2)
            if line.side == PostingSide.DEBIT:
                total_debit += amount
            else:
                total_credit += amount
            lines.append({
                "account": line.account,
                "side": line.side.value,
                "amount": amount,
                "description": line.description,
            })

        balanced = abs(total_debit - total_credit) < 0.005
        payload = {
            "lines": lines,
            "total_debit": round(total_debit, 2),
            "total_credit": round(total_credit, 2),
            "balanced": balanced,
            "currency": recipe.currency,
        }
        if balanced:
            return Verdict("post", "Posting recipe balanced", 1.0, payload, [rule.rule_id])
        return Verdict("unbalanced", "Posting recipe does not balance", 0.5, payload, [rule.rule_id])


class FamilyRegistry:
    """Maps family prefixes to strategies; longest matching prefix wins."""

    def __init__(self, default: Optional[FamilyStrategy] = None):
        self.logger = get_logger("rules.families")
        self._strategies: Dict[str, FamilyStrategy] = {}
        self.default = default or FamilyStrategy()

    def register(self, strategy: FamilyStrategy) -> None:
        prefix = strategy.prefix
        if not prefix:
            raise ConfigurationError("Family strategy needs a prefix")
        if prefix in self._strategies:
            self.logger.info("Replacing family strategy", prefix=prefix)
        self._strategies[prefix] = strategy

    def lookup(self, family: str) -> FamilyStrategy:
        key = family_key(family)
        matches = [prefix for prefix in self._strategies if family_matches(key, prefix)]
        if not matches:
            return self.default
        return self._strategies[max(matches, key=lambda prefix: prefix.count("."))]

    def prefixes(self) -> List[str]:
        return sorted(self._strategies)


def build_default_registry() -> FamilyRegistry:
    """Registry with the built-in families."""
    registry = FamilyRegistry()
    for strategy in (
        NoShowFeeFamily(),
        AvailabilityFamily(),
        SlotFilterFamily(),
        DiscountStackingFamily(),
        NotificationTemplateFamily(),
        FeatureFlagFamily(),
        ExperimentFamily(),
        PostingRecipeFamily(),
    ):
        registry.register(strategy)
    return registry


def compose(rules: Sequence[Rule], family: str, registry: Optional[FamilyRegistry] = None) -> List[Rule]:
    """Apply the family's composition strategy to ordered rules."""
    registry = registry or build_default_registry()
    return registry.lookup(family).compose(rules, family_key(family))

"""
Named formula variants used by rule payloads.

Rule authors describe amounts with a small closed set of formulas
(percentage of a variable, fixed amount, tiered) instead of expression
strings. The legacy shorthand ``"total_amount * 0.05"`` / ``"25"`` is
still accepted and converted on load.
"""

import operator
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, model_validator

from shared.errors import ConfigurationError


class FormulaKind(str, Enum):
    """Supported formula variants."""
    PERCENTAGE_OF = "percentage_of"
    FIXED_AMOUNT = "fixed_amount"
    TIERED = "tiered"


_LEGACY_PRODUCT = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*\*\s*(\d+(?:\.\d+)?)\s*$")
_LEGACY_NUMBER = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*$")


class Tier(BaseModel):
    """One band of a tiered formula; ``up_to=None`` is unbounded."""

    up_to: Optional[float] = None
    percentage: Optional[float] = None
    amount: Optional[float] = None

    @model_validator(mode="after")
    def _one_of(self) -> "Tier":
        if (self.percentage is None) == (self.amount is None):
            raise ValueError("a tier needs exactly one of percentage or amount")
        return self


class Formula(BaseModel):
    """Parameterized amount formula."""

    kind: FormulaKind
    base: Optional[str] = None
    percentage: Optional[float] = None
    amount: Optional[float] = None
    tiers: List[Tier] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return {"kind": FormulaKind.FIXED_AMOUNT, "amount": float(value)}
        if not isinstance(value, str):
            return value
        product = _LEGACY_PRODUCT.match(value)
        if product:
            return {
                "kind": FormulaKind.PERCENTAGE_OF,
                "base": product.group(1),
                "percentage": float(product.group(2)) * 100.0,
            }
        number = _LEGACY_NUMBER.match(value)
        if number:
            return {"kind": FormulaKind.FIXED_AMOUNT, "amount": float(number.group(1))}
        raise ValueError(f"unsupported formula expression {value!r}")

    @model_validator(mode="after")
    def _check_parameters(self) -> "Formula":
        if self.kind == FormulaKind.PERCENTAGE_OF and (self.base is None or self.percentage is None):
            raise ValueError("percentage_of needs base and percentage")
        if self.kind == FormulaKind.FIXED_AMOUNT and self.amount is None:
            raise ValueError("fixed_amount needs amount")
        if self.kind == FormulaKind.TIERED:
            if self.base is None or not self.tiers:
                raise ValueError("tiered needs base and at least one tier")
            bounded = [tier.up_to for tier in self.tiers if tier.up_to is not None]
            if bounded != sorted(bounded) or any(tier.up_to is None for tier in self.tiers[:-1]):
                raise ValueError("tiers must be sorted by up_to with only the last one unbounded")
        return self

    def variables(self) -> List[str]:
        return [self.base] if self.base else []

    def evaluate(self, variables: Mapping[str, Any]) -> float:
        if self.kind == FormulaKind.FIXED_AMOUNT:
            return float(self.amount)

        base_value = _variable(variables, self.base)
        if self.kind == FormulaKind.PERCENTAGE_OF:
            return base_value * self.percentage / 100.0

        for tier in self.tiers:
            if tier.up_to is None or base_value <= tier.up_to:
                if tier.percentage is not None:
                    return base_value * tier.percentage / 100.0
                return float(tier.amount)
        # Past the last bounded tier and no open-ended tier
        return 0.0


def _variable(variables: Mapping[str, Any], name: Optional[str]) -> float:
    if name not in variables or variables[name] is None:
        raise ConfigurationError(
            f"Formula variable '{name}' was not supplied",
            details={"variable": name, "available": sorted(variables)},
        )
    try:
        return float(variables[name])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Formula variable '{name}' is not numeric",
            details={"variable": name},
        ) from exc


_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


class Comparison(BaseModel):
    """``variable <op> value``."""

    variable: str
    op: str
    value: Union[float, int]

    @model_validator(mode="after")
    def _known_operator(self) -> "Comparison":
        if self.op not in _COMPARATORS:
            raise ValueError(f"unsupported comparison operator {self.op!r}")
        return self

    def holds(self, variables: Mapping[str, Any]) -> bool:
        return _COMPARATORS[self.op](_variable(variables, self.variable), float(self.value))


class Guard(BaseModel):
    """Conjunction of comparisons; empty guards always hold."""

    all: List[Comparison] = Field(default_factory=list)

    def holds(self, variables: Mapping[str, Any]) -> bool:
        return all(comparison.holds(variables) for comparison in self.all)

"""
compensation/errors.py

Domain exceptions and structured configuration issues for the payout core.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence


@dataclass(frozen=True)
class ConfigurationIssue:
    """
    Structured configuration problem detected while loading or applying a plan.

    ``scope`` is one of ``"plan"``, ``"rule"``, ``"component"`` or
    ``"individual"`` and tells the caller how far the damage reaches.
    """

    code: str
    message: str
    scope: str
    ref: str | None = None
    context: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "scope": self.scope,
            "ref": self.ref,
            "context": self.context,
        }


class CompensationError(Exception):
    """Base exception for payout core failures."""


class PlanConfigurationError(CompensationError, ValueError):
    """
    Raised when a plan cannot be evaluated at all.

    Covers structural defects that affect every individual: no variants,
    a component without usable config, duplicate identifiers.
    """

    def __init__(self, *, message: str, errors: Sequence[str]) -> None:
        super().__init__(f"{message}: " + "; ".join(errors) if errors else message)
        self.message = message
        self.errors = tuple(errors)

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "errors": list(self.errors)}


class MalformedRuleError(CompensationError, ValueError):
    """Raised when a metric derivation rule is missing a field its operation requires."""

    def __init__(self, message: str, *, index: int | None = None, metric: str | None = None) -> None:
        super().__init__(message)
        self.index = index
        self.metric = metric


class LifecycleTransitionError(CompensationError):
    """Raised when a batch lifecycle transition is rejected."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = tuple(errors)
        super().__init__("; ".join(self.errors))

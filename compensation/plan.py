"""
compensation/plan.py

Plan loading: stored JSON -> validated :class:`PlanDefinition`.

Accepted ``variants`` payload shapes:

- ``{"variants": [{variantId, variantName, components: [...]}, ...]}``
- a bare list of variant objects
- ``{"components": [...]}`` for a plan without variants; it becomes one
  default variant called ``default``

Derivation rules are read from ``input_bindings["metric_derivations"]``.

Plan-wide defects raise :class:`PlanConfigurationError`. Rule defects and
band gaps/overlaps are collected as :class:`ConfigurationIssue` entries and
only disable the rule or component concerned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import ValidationError

from compensation.components import PlanVariant, component_band_issues
from compensation.errors import ConfigurationIssue, PlanConfigurationError
from compensation.metrics import DerivationRule, parse_rules


@dataclass(frozen=True)
class PlanDefinition:
    plan_id: str
    variants: tuple[PlanVariant, ...]
    rules: tuple[DerivationRule, ...]
    issues: tuple[ConfigurationIssue, ...] = ()
    # (variant_id, component_id) pairs whose bands are unusable
    invalid_components: frozenset[tuple[str, str]] = field(default_factory=frozenset)
    # metrics whose only rule was rejected; never filled from row fields
    rejected_metrics: frozenset[str] = field(default_factory=frozenset)

    def component_names(self) -> list[str]:
        names: dict[str, None] = {}
        for variant in self.variants:
            for component in variant.enabled_components():
                names.setdefault(component.name, None)
        return list(names)


def load_plan(
    plan_id: Any,
    variants_payload: Any,
    input_bindings: Mapping[str, Any] | None = None,
) -> PlanDefinition:
    """
    Validate a stored plan.

    Raises
    ------
    PlanConfigurationError
        When no variant can be built, a component payload is structurally
        invalid, identifiers repeat, more than one variant is the default,
        or the plan has no enabled component at all.
    """
    plan_key = str(plan_id)
    raw_variants = _extract_variants(variants_payload)
    if not raw_variants:
        raise PlanConfigurationError(message=f"Plan {plan_key} is not usable", errors=["plan has no variants"])

    errors: list[str] = []
    variants: list[PlanVariant] = []
    for index, raw in enumerate(raw_variants):
        try:
            variants.append(PlanVariant.model_validate(raw))
        except ValidationError as exc:
            errors.extend(
                f"variants.{index}.{'.'.join(str(loc) for loc in e['loc'])}: {e['msg']}"
                for e in exc.errors()
            )

    if errors:
        raise PlanConfigurationError(message=f"Plan {plan_key} has invalid components", errors=errors)

    errors.extend(_identifier_errors(variants))
    if sum(1 for v in variants if v.is_default) > 1:
        errors.append("more than one variant is marked isDefault")
    if not any(v.enabled_components() for v in variants):
        errors.append("plan has no enabled components")
    if errors:
        raise PlanConfigurationError(message=f"Plan {plan_key} is not usable", errors=errors)

    rules, issues = parse_rules((input_bindings or {}).get("metric_derivations"))
    derived = {rule.metric for rule in rules}
    rejected = {
        issue.ref for issue in issues if issue.code == "malformed_rule" and issue.ref and issue.ref not in derived
    }

    invalid: set[tuple[str, str]] = set()
    for variant in variants:
        for component in variant.components:
            problems = component_band_issues(component)
            if not problems:
                continue
            invalid.add((variant.variant_id, component.id))
            issues.append(
                ConfigurationIssue(
                    code="invalid_bands",
                    message="; ".join(problems),
                    scope="component",
                    ref=component.id,
                    context={"variant_id": variant.variant_id, "component_name": component.name},
                )
            )

    return PlanDefinition(
        plan_id=plan_key,
        variants=tuple(variants),
        rules=tuple(rules),
        issues=tuple(issues),
        invalid_components=frozenset(invalid),
        rejected_metrics=frozenset(rejected),
    )


def _extract_variants(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, Mapping):
        return []
    if isinstance(payload.get("variants"), list):
        return payload["variants"]
    if isinstance(payload.get("components"), list):
        return [
            {
                "variantId": "default",
                "variantName": "default",
                "isDefault": True,
                "components": payload["components"],
            }
        ]
    return []


def _identifier_errors(variants: list[PlanVariant]) -> list[str]:
    errors: list[str] = []
    seen_variants: set[str] = set()
    for variant in variants:
        if variant.variant_id in seen_variants:
            errors.append(f"duplicate variantId {variant.variant_id!r}")
        seen_variants.add(variant.variant_id)
        seen_components: set[str] = set()
        for component in variant.components:
            if component.id in seen_components:
                errors.append(f"variant {variant.variant_id!r} repeats component id {component.id!r}")
            seen_components.add(component.id)
    return errors

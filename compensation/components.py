"""
compensation/components.py

Typed plan components and variants.

Plan-authoring tools emit components as JSON objects tagged with a
``componentType`` string and a per-type config object::

    {
        "id": "venta_optica",
        "name": "Venta Optica",
        "componentType": "matrix_lookup",
        "enabled": true,
        "matrixConfig": {
            "rowMetric": "attainment",
            "columnMetric": "store_sales",
            "rowBands": [{"min": 0, "max": 80}, {"min": 80, "max": null}],
            "columnBands": [{"min": 0, "max": 60000}, {"min": 60000}],
            "values": [[0, 0], [500, 800]]
        }
    }

This module validates those payloads into a closed union of pydantic models
(:data:`PlanComponent`) discriminated on ``component_type``. Unknown tags and
missing config fail validation; the caller turns those failures into a
plan-wide configuration error.

Band contiguity is checked separately by :func:`band_issues` because a gap
or overlap only disables the component it belongs to.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from compensation.numeric import to_decimal

# Authoring tools use the longer names; both spellings map to one tag.
_TYPE_ALIASES: dict[str, str] = {
    "tier": "tier",
    "tier_lookup": "tier",
    "matrix": "matrix",
    "matrix_lookup": "matrix",
    "percentage": "percentage",
    "flat_percentage": "percentage",
    "conditional_percentage": "conditional_percentage",
}


def _coerce_decimal(value: Any) -> Any:
    if value is None or isinstance(value, Decimal):
        return value
    converted = to_decimal(value)
    return value if converted is None else converted


DecimalValue = Annotated[Decimal, BeforeValidator(_coerce_decimal)]
OptionalDecimal = Annotated[Decimal | None, BeforeValidator(_coerce_decimal)]


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Config objects
# ---------------------------------------------------------------------------


class Band(_ConfigModel):
    """
    One lookup band. ``min``/``max`` of ``None`` mean unbounded.
    """

    min: OptionalDecimal = None
    max: OptionalDecimal = None
    label: str = ""
    value: DecimalValue = Decimal("0")


class TierConfig(_ConfigModel):
    metric: str = Field(min_length=1)
    tiers: list[Band] = Field(min_length=1)


class MatrixConfig(_ConfigModel):
    row_metric: str = Field(alias="rowMetric", min_length=1)
    column_metric: str = Field(alias="columnMetric", min_length=1)
    row_bands: list[Band] = Field(alias="rowBands", min_length=1)
    column_bands: list[Band] = Field(alias="columnBands", min_length=1)
    values: list[list[DecimalValue]] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_table_shape(self) -> MatrixConfig:
        if len(self.values) != len(self.row_bands):
            raise ValueError(
                f"values has {len(self.values)} rows but {len(self.row_bands)} row bands are defined"
            )
        for index, row in enumerate(self.values):
            if len(row) != len(self.column_bands):
                raise ValueError(
                    f"values row {index} has {len(row)} cells but "
                    f"{len(self.column_bands)} column bands are defined"
                )
        return self


class PercentageConfig(_ConfigModel):
    applied_to: str = Field(alias="appliedTo", min_length=1)
    rate: DecimalValue
    min_threshold: OptionalDecimal = Field(default=None, alias="minThreshold")
    max_payout: OptionalDecimal = Field(default=None, alias="maxPayout")


class Condition(_ConfigModel):
    metric: str | None = None
    metric_label: str | None = Field(default=None, alias="metricLabel")
    min: OptionalDecimal = None
    max: OptionalDecimal = None
    rate: DecimalValue


class ConditionalConfig(_ConfigModel):
    applied_to: str = Field(alias="appliedTo", min_length=1)
    condition_metric: str | None = Field(default=None, alias="conditionMetric")
    conditions: list[Condition] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_condition_metrics(self) -> ConditionalConfig:
        for index, condition in enumerate(self.conditions):
            if not (condition.metric or self.condition_metric):
                raise ValueError(
                    f"condition {index} has no metric and no conditionMetric is set"
                )
        return self

    def metric_for(self, condition: Condition) -> str:
        return condition.metric or self.condition_metric or ""


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


class _ComponentBase(_ConfigModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    enabled: bool = True

    def required_metrics(self) -> tuple[str, ...]:
        raise NotImplementedError


class TierComponent(_ComponentBase):
    component_type: Literal["tier"] = Field(alias="componentType")
    config: TierConfig = Field(alias="tierConfig")

    def required_metrics(self) -> tuple[str, ...]:
        return (self.config.metric,)


class MatrixComponent(_ComponentBase):
    component_type: Literal["matrix"] = Field(alias="componentType")
    config: MatrixConfig = Field(alias="matrixConfig")

    def required_metrics(self) -> tuple[str, ...]:
        return _unique((self.config.row_metric, self.config.column_metric))


class PercentageComponent(_ComponentBase):
    component_type: Literal["percentage"] = Field(alias="componentType")
    config: PercentageConfig = Field(alias="percentageConfig")

    def required_metrics(self) -> tuple[str, ...]:
        return (self.config.applied_to,)


class ConditionalPercentageComponent(_ComponentBase):
    component_type: Literal["conditional_percentage"] = Field(alias="componentType")
    config: ConditionalConfig = Field(alias="conditionalConfig")

    def required_metrics(self) -> tuple[str, ...]:
        metrics = [self.config.applied_to]
        metrics.extend(self.config.metric_for(c) for c in self.config.conditions)
        return _unique(metrics)


PlanComponent = Annotated[
    Union[
        TierComponent,
        MatrixComponent,
        PercentageComponent,
        ConditionalPercentageComponent,
    ],
    Field(discriminator="component_type"),
]

_COMPONENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(PlanComponent)


def normalize_component_payload(raw: Any) -> Any:
    """
    Return a copy of *raw* with ``componentType`` mapped onto its canonical tag.

    Non-dict input is returned unchanged so pydantic reports the type error.
    """

    if not isinstance(raw, dict):
        return raw
    data = dict(raw)
    tag = data.pop("component_type", None)
    tag = data.get("componentType", tag)
    if isinstance(tag, str):
        key = tag.strip().lower()
        data["componentType"] = _TYPE_ALIASES.get(key, key)
    elif tag is not None:
        data["componentType"] = tag
    return data


def parse_component(raw: Any) -> Any:
    """Validate one component payload into its typed model."""

    return _COMPONENT_ADAPTER.validate_python(normalize_component_payload(raw))


class PlanVariant(_ConfigModel):
    """
    A named configuration branch of a plan.

    ``variant_name`` is free text matched against an individual's role.
    """

    variant_id: str = Field(alias="variantId", min_length=1)
    variant_name: str = Field(alias="variantName")
    description: str | None = None
    is_default: bool = Field(default=False, alias="isDefault")
    components: list[PlanComponent] = Field(default_factory=list)

    @field_validator("components", mode="before")
    @classmethod
    def _normalize_components(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [normalize_component_payload(item) for item in value]
        return value

    def enabled_components(self) -> list[Any]:
        return [component for component in self.components if component.enabled]


# ---------------------------------------------------------------------------
# Band checks
# ---------------------------------------------------------------------------


def band_issues(bands: list[Band], *, open_ended_last: bool = True) -> list[str]:
    """
    Describe gaps, overlaps and inverted ranges in an ordered band list.

    Bands are half-open ``[min, max)``. With ``open_ended_last`` the final
    band's ``max`` is ignored because the final band extends to infinity.
    An empty result means the bands are contiguous.
    """

    problems: list[str] = []
    last_index = len(bands) - 1
    for index, band in enumerate(bands):
        is_last = index == last_index
        if band.min is None and index > 0:
            problems.append(f"band {index} has no min but is not the first band")
        if band.max is None and not is_last:
            problems.append(f"band {index} has no max but is not the last band")
        if (
            band.min is not None
            and band.max is not None
            and band.min >= band.max
            and not (is_last and open_ended_last)
        ):
            problems.append(f"band {index} has min {band.min} >= max {band.max}")
        if is_last or band.max is None:
            continue
        following = bands[index + 1]
        if following.min is None:
            continue
        if following.min > band.max:
            problems.append(f"gap between band {index} (max {band.max}) and band {index + 1} (min {following.min})")
        elif following.min < band.max:
            problems.append(f"band {index + 1} (min {following.min}) overlaps band {index} (max {band.max})")
    return problems


def component_band_issues(component: Any) -> list[str]:
    """Return band problems for tier and matrix components; other types have none."""

    if isinstance(component, TierComponent):
        return band_issues(component.config.tiers)
    if isinstance(component, MatrixComponent):
        problems = [f"rowBands: {p}" for p in band_issues(component.config.row_bands)]
        problems.extend(f"columnBands: {p}" for p in band_issues(component.config.column_bands))
        return problems
    return []


def _unique(names: Any) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for name in names:
        if name:
            seen.setdefault(name, None)
    return tuple(seen)

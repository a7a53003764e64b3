"""
app/services/calculation_orchestrator.py

Calculation pipeline orchestrator.

Wires the repositories and the pure payout core into a single batch run for
one (tenant, period, plan) key. No payout logic lives here; every layer
retains its own responsibility:

    PlanRepository / FactRepository  – reference data and fact rows
    compensation.plan                – plan validation
    compensation.calculator          – variant, metrics, components per individual
    DensityRepository                – trace-mode snapshot and post-batch update
    CalculationRepository            – atomic batch + results write

Run states
----------
collect individuals -> resolve variant -> resolve metrics -> evaluate
components -> aggregate -> persist batch + results -> mark lifecycle state

Failure contract
----------------
- Unknown tenant / period / plan     → *NotFoundError before any work
- Plan-wide configuration defect     → PlanConfigurationError (fail fast)
- No assigned individuals            → NoEligibleIndividualsError
- Key already running                → CalculationAlreadyRunningError
- Cancelled before the write         → CalculationCancelledError
- Current batch in approval or later → BatchLockedError
- Persistence failure                → CalculationPersistenceError after rollback

Per-individual problems (ambiguous variant, missing metrics, non-numeric
fields, broken bands) never fail the run; they are recorded in the batch
manifest and in each individual's log.

Concurrency
-----------
Individuals are evaluated on a thread pool; evaluation reads only immutable
inputs. Density observations are returned with each outcome and applied in
one pass inside the batch transaction, so a signature is written exactly
once per batch.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import (
    CalculationSettings,
    PersistenceSettings,
    get_calculation_settings,
    get_density_settings,
    get_persistence_settings,
)
from app.services.lifecycle_service import BatchLockedError, LifecycleService, is_locked
from app.services.retry import PersistenceRetryExhaustedError, run_with_retry
from app.services.run_registry import RunKey, RunRegistry, get_run_registry
from compensation.calculator import IndividualContext, IndividualOutcome, evaluate_individual
from compensation.density import (
    DensityState,
    PatternDensityTracker,
    merge_observations,
    pattern_signature,
)
from compensation.lifecycle import LifecycleState
from compensation.metrics import FactRecord, MetricDerivationResolver
from compensation.numeric import ZERO, decimal_to_str
from compensation.plan import PlanDefinition, load_plan
from compensation.variants import VariantResolver
from db.models.calculation_batch import CalculationBatch
from db.models.individual import Individual
from db.repositories.calculation_repository import CalculationRepository
from db.repositories.density_repository import DensityRepository
from db.repositories.fact_repository import FactRepository
from db.repositories.plan_repository import PlanRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CalculationNotFoundError(LookupError):
    """Base class for a missing tenant, period or plan."""


class TenantNotFoundError(CalculationNotFoundError):
    pass


class PeriodNotFoundError(CalculationNotFoundError):
    pass


class PlanNotFoundError(CalculationNotFoundError):
    pass


class NoEligibleIndividualsError(ValueError):
    """
    Raised when the plan has no active assigned individuals.

    A run never returns an empty batch silently.
    """


class CalculationCancelledError(RuntimeError):
    """
    Raised when a run is cancelled before its batch is written.

    Nothing has been persisted when this exception propagates.
    """


class CalculationPersistenceError(RuntimeError):
    """
    Raised when the batch, its results or the density update cannot be
    written.

    The session has been rolled back before this exception is raised.
    """


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComponentPayout:
    component_id: str
    name: str
    component_type: str
    payout: Decimal
    outcome: str
    trace_mode: str
    trace: dict[str, Any] | None = None


@dataclass(frozen=True)
class IndividualResult:
    individual_id: uuid.UUID
    external_id: str | None
    total_payout: Decimal
    variant_id: str | None
    variant_name: str | None
    excluded_reason: str | None
    components: list[ComponentPayout]
    log: list[str]


@dataclass(frozen=True)
class CalculationRunResult:
    """
    Structured output of a single orchestrator run.

    Attributes
    ----------
    batch_id:
        Primary key of the new ``CalculationBatch``.
    lifecycle_state:
        State the batch was left in (``PREVIEW``).
    individual_count:
        Number of assigned individuals, excluded ones included.
    total_payout:
        Unrounded sum of every individual's payout.
    results:
        One entry per individual in batch order.
    aggregates:
        Nonzero-payout count and per-component totals.
    anomalies:
        Data-quality anomalies per individual.
    exclusions:
        Individuals that received no evaluation and why.
    issues:
        Configuration issues (rejected rules, broken bands, ambiguous roles).
    superseded_batch_id:
        The previous current batch for the key, if any.
    """

    batch_id: uuid.UUID
    tenant_id: uuid.UUID
    period_id: uuid.UUID
    plan_id: uuid.UUID
    lifecycle_state: str
    individual_count: int
    total_payout: Decimal
    results: list[IndividualResult]
    aggregates: dict[str, Any]
    anomalies: list[dict[str, Any]] = field(default_factory=list)
    exclusions: list[dict[str, Any]] = field(default_factory=list)
    issues: list[dict[str, Any]] = field(default_factory=list)
    superseded_batch_id: uuid.UUID | None = None
    density_updates: list[DensityState] = field(default_factory=list)
    elapsed_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class CalculationOrchestrator:
    """
    Coordinates the full calculation pipeline for one (tenant, period, plan).

    The orchestrator is **stateless** with respect to business data.
    Repositories are instantiated per call because they are bound to a
    request-scoped database session.
    """

    def __init__(
        self,
        *,
        settings: CalculationSettings | None = None,
        persistence_settings: PersistenceSettings | None = None,
        tracker: PatternDensityTracker | None = None,
        registry: RunRegistry | None = None,
        lifecycle: LifecycleService | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or get_calculation_settings()
        self._persistence = persistence_settings or get_persistence_settings()
        self._tracker = tracker or PatternDensityTracker(get_density_settings().to_policy())
        self._registry = registry or get_run_registry()
        self._lifecycle = lifecycle or LifecycleService()
        self._sleep = sleep
        self._metric_resolver = MetricDerivationResolver()
        self._variant_resolver = VariantResolver()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(
        self,
        *,
        tenant_id: uuid.UUID,
        period_id: uuid.UUID,
        plan_id: uuid.UUID,
        db: Session,
        cancel_event: threading.Event | None = None,
    ) -> CalculationRunResult:
        """
        Execute the full calculation pipeline for one key.

        Steps
        -----
        1. Validate that tenant, period and plan exist.
        2. Validate the plan (components, variants, derivation rules).
        3. Claim the key in the run registry.
        4. Load assigned individuals and every fact row of the period.
        5. Snapshot density modes for every signature of the plan.
        6. Evaluate individuals on the worker pool.
        7. Aggregate totals, anomalies, exclusions and issues.
        8. Persist batch, results, supersession and density in one transaction.
        9. Return a :class:`CalculationRunResult`.

        Parameters
        ----------
        db:
            Active SQLAlchemy session. The orchestrator commits on success
            and rolls back on failure.
        cancel_event:
            Optional caller-owned event; setting it aborts the run up to the
            batch write. The registry's own event (see
            :meth:`RunRegistry.cancel`) has the same effect.

        Raises
        ------
        TenantNotFoundError, PeriodNotFoundError, PlanNotFoundError
        PlanConfigurationError
        NoEligibleIndividualsError
        CalculationAlreadyRunningError
        CalculationCancelledError
        BatchLockedError
        CalculationPersistenceError
        """
        # Step 1 – reference data
        plans = PlanRepository(db)
        if plans.get_tenant(tenant_id) is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found")
        if plans.get_period(tenant_id=tenant_id, period_id=period_id) is None:
            raise PeriodNotFoundError(f"Period {period_id} not found for tenant {tenant_id}")
        plan_row = plans.get_plan(tenant_id=tenant_id, plan_id=plan_id)
        if plan_row is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found for tenant {tenant_id}")

        # Step 2 – plan validation (PlanConfigurationError propagates)
        plan = load_plan(plan_row.id, plan_row.variants, plan_row.input_bindings)

        key = RunKey(tenant_id=tenant_id, period_id=period_id, plan_id=plan_id)
        run_start = time.monotonic()
        logger.info(
            "CalculationOrchestrator.run started key=%s variants=%d rules=%d issues=%d",
            key,
            len(plan.variants),
            len(plan.rules),
            len(plan.issues),
        )

        # Step 3 – single in-flight run per key
        with self._registry.claim(key) as registry_event:
            events = [e for e in (registry_event, cancel_event) if e is not None]

            # Step 4 – population and facts
            individuals = plans.list_assigned_individuals(tenant_id=tenant_id, plan_id=plan_id)
            if not individuals:
                raise NoEligibleIndividualsError(
                    f"No active individuals are assigned to plan {plan_id}"
                )
            records = FactRepository(db).load_records(tenant_id=tenant_id, period_id=period_id)
            logger.debug(
                "run loaded individuals=%d fact_rows=%d key=%s",
                len(individuals),
                len(records),
                key,
            )

            # Step 5 – density snapshot
            modes = self._density_modes(db, tenant_id, plan)

            # Step 6 – evaluation
            outcomes = self._evaluate(plan, individuals, records, modes, events)

            # Step 7 – aggregation
            aggregation = _aggregate(outcomes)
            if aggregation.anomalies:
                logger.warning(
                    "CalculationOrchestrator.run key=%s: %d data-quality anomalies recorded",
                    key,
                    len(aggregation.anomalies),
                )

            _raise_if_cancelled(events, key)

            # Step 8 – atomic write
            batch, prior_id, density_updates = self._persist(
                db=db,
                key=key,
                plan=plan,
                individuals=individuals,
                outcomes=outcomes,
                aggregation=aggregation,
            )

        elapsed = time.monotonic() - run_start
        logger.info(
            "CalculationOrchestrator.run completed key=%s batch_id=%s individuals=%d "
            "total_payout=%s superseded=%s elapsed=%.3fs",
            key,
            batch.id,
            len(outcomes),
            aggregation.total,
            prior_id,
            elapsed,
        )

        return CalculationRunResult(
            batch_id=batch.id,
            tenant_id=tenant_id,
            period_id=period_id,
            plan_id=plan_id,
            lifecycle_state=batch.lifecycle_state,
            individual_count=len(outcomes),
            total_payout=aggregation.total,
            results=[_individual_result(ind, outcome) for ind, outcome in zip(individuals, outcomes)],
            aggregates=aggregation.aggregates(),
            anomalies=aggregation.anomalies,
            exclusions=aggregation.exclusions,
            issues=[issue.to_dict() for issue in plan.issues] + aggregation.issues,
            superseded_batch_id=prior_id,
            density_updates=density_updates,
            elapsed_seconds=elapsed,
        )

    # ------------------------------------------------------------------
    # Internal: density snapshot
    # ------------------------------------------------------------------

    def _density_modes(self, db: Session, tenant_id: uuid.UUID, plan: PlanDefinition) -> dict[str, str]:
        signatures = [
            pattern_signature(plan.plan_id, variant.variant_id, component)
            for variant in plan.variants
            for component in variant.enabled_components()
        ]
        states = DensityRepository(db).get_states(tenant_id, signatures)
        return {signature: self._tracker.resolve_mode(states.get(signature)) for signature in signatures}

    # ------------------------------------------------------------------
    # Internal: evaluation
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        plan: PlanDefinition,
        individuals: Sequence[Individual],
        records: Sequence[FactRecord],
        modes: dict[str, str],
        events: Sequence[threading.Event],
    ) -> list[IndividualOutcome]:
        """
        Evaluate every individual, preserving input order.
        """
        own_rows: dict[str, list[FactRecord]] = defaultdict(list)
        org_unit_rows: dict[str, list[FactRecord]] = defaultdict(list)
        for record in records:
            if record.individual_id is not None:
                own_rows[record.individual_id].append(record)
            elif record.org_unit_ref is not None:
                org_unit_rows[record.org_unit_ref].append(record)

        contexts = [
            IndividualContext(
                individual_id=str(ind.id),
                role=ind.role,
                org_unit_ref=ind.org_unit_ref,
                external_id=ind.external_id,
                display_name=ind.display_name,
            )
            for ind in individuals
        ]

        def evaluate(context: IndividualContext) -> IndividualOutcome:
            if any(event.is_set() for event in events):
                raise CalculationCancelledError("Calculation cancelled during evaluation")
            return evaluate_individual(
                plan=plan,
                individual=context,
                own_rows=own_rows.get(context.individual_id, ()),
                org_unit_rows=org_unit_rows.get(context.org_unit_ref or "", ()),
                density_modes=modes,
                metric_resolver=self._metric_resolver,
                variant_resolver=self._variant_resolver,
            )

        t0 = time.monotonic()
        workers = min(self._settings.max_workers, len(contexts))
        with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="calc") as pool:
            outcomes = list(pool.map(evaluate, contexts))
        logger.debug("_evaluate individuals=%d workers=%d elapsed=%.3fs", len(outcomes), workers, time.monotonic() - t0)
        return outcomes

    # ------------------------------------------------------------------
    # Internal: persistence
    # ------------------------------------------------------------------

    def _persist(
        self,
        *,
        db: Session,
        key: RunKey,
        plan: PlanDefinition,
        individuals: Sequence[Individual],
        outcomes: Sequence[IndividualOutcome],
        aggregation: _Aggregation,
    ) -> tuple[CalculationBatch, uuid.UUID | None, list[DensityState]]:
        """
        Write batch, results, supersession and density, then commit.

        Each attempt runs in a fresh transaction; transient failures are
        retried with backoff.

        Raises
        ------
        BatchLockedError
            If the current batch for the key is in approval or later.
        CalculationPersistenceError
            If the write fails or retries are exhausted. The session is
            rolled back before the exception propagates.
        """
        observations = merge_observations([obs for outcome in outcomes for obs in outcome.observations])
        result_payloads = [_result_payload(ind, outcome) for ind, outcome in zip(individuals, outcomes)]
        summary = {
            "aggregates": aggregation.aggregates(),
            "anomalies": aggregation.anomalies,
            "exclusions": aggregation.exclusions,
            "issues": [issue.to_dict() for issue in plan.issues] + aggregation.issues,
            "lifecycle": {},
        }

        def attempt() -> tuple[CalculationBatch, uuid.UUID | None, list[DensityState]]:
            try:
                self._apply_statement_timeout(db)
                repository = CalculationRepository(db)

                prior = repository.get_current_batch(
                    tenant_id=key.tenant_id,
                    period_id=key.period_id,
                    plan_id=key.plan_id,
                    for_update=True,
                )
                if prior is not None and is_locked(prior.lifecycle_state):
                    raise BatchLockedError(prior.id, prior.lifecycle_state)

                batch = repository.create_batch(
                    tenant_id=key.tenant_id,
                    period_id=key.period_id,
                    plan_id=key.plan_id,
                    lifecycle_state=LifecycleState.DRAFT.value,
                    total_payout=aggregation.total,
                    summary=summary,
                    results=result_payloads,
                    supersedes=None if prior is None else prior.id,
                )
                repository.add_transition(
                    batch_id=batch.id,
                    from_state=None,
                    to_state=LifecycleState.DRAFT.value,
                    actor_id="system",
                    details={"individual_count": len(result_payloads)},
                )

                if prior is not None:
                    repository.mark_superseded(prior, superseded_by=batch.id)
                    if prior.lifecycle_state == LifecycleState.OFFICIAL.value:
                        self._lifecycle.apply_system_transition(
                            repository,
                            prior,
                            LifecycleState.SUPERSEDED,
                            details={"superseded_by": str(batch.id)},
                        )

                self._lifecycle.apply_system_transition(
                    repository,
                    batch,
                    LifecycleState.PREVIEW,
                    details={"total_payout": decimal_to_str(aggregation.total)},
                )

                density_updates = DensityRepository(db).apply(key.tenant_id, observations, self._tracker)
                db.commit()
                return batch, None if prior is None else prior.id, density_updates
            except Exception:
                db.rollback()
                raise

        try:
            return run_with_retry(
                attempt,
                settings=self._persistence,
                description=f"batch write key={key}",
                sleep=self._sleep,
            )
        except BatchLockedError:
            raise
        except PersistenceRetryExhaustedError as exc:
            logger.error("_persist retries exhausted key=%s: %s", key, exc.last_error, exc_info=True)
            raise CalculationPersistenceError(
                f"Failed to persist batch for {key} after {exc.attempts} attempt(s): {exc.last_error}"
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("_persist failed key=%s: %s", key, exc, exc_info=True)
            raise CalculationPersistenceError(f"Failed to persist batch for {key}: {exc}") from exc

    def _apply_statement_timeout(self, db: Session) -> None:
        if db.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = int(self._persistence.timeout_seconds * 1000)
        db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))


# ---------------------------------------------------------------------------
# Internal data containers (not part of public API)
# ---------------------------------------------------------------------------


@dataclass
class _Aggregation:
    total: Decimal = ZERO
    nonzero_count: int = 0
    component_totals: dict[str, Decimal] = field(default_factory=dict)
    anomalies: list[dict[str, Any]] = field(default_factory=list)
    exclusions: list[dict[str, Any]] = field(default_factory=list)
    issues: list[dict[str, Any]] = field(default_factory=list)

    def aggregates(self) -> dict[str, Any]:
        return {
            "total_payout": decimal_to_str(self.total),
            "nonzero_payout_count": self.nonzero_count,
            "component_totals": {name: decimal_to_str(value) for name, value in self.component_totals.items()},
            "anomaly_count": len(self.anomalies),
            "excluded_count": len(self.exclusions),
        }


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def _raise_if_cancelled(events: Sequence[threading.Event], key: RunKey) -> None:
    if any(event.is_set() for event in events):
        logger.info("CalculationOrchestrator.run cancelled before write key=%s", key)
        raise CalculationCancelledError(f"Calculation for {key} was cancelled before its batch was written")


def _aggregate(outcomes: Sequence[IndividualOutcome]) -> _Aggregation:
    """
    Fold outcomes in batch order. Summation order is fixed, so totals are
    reproducible.
    """
    aggregation = _Aggregation()
    for outcome in outcomes:
        individual_id = outcome.individual.individual_id
        aggregation.total += outcome.total_payout
        if outcome.total_payout != ZERO:
            aggregation.nonzero_count += 1
        for component in outcome.components:
            name = component.evaluation.component_name
            aggregation.component_totals[name] = aggregation.component_totals.get(name, ZERO) + component.payout
        for anomaly in outcome.anomalies:
            aggregation.anomalies.append({"individual_id": individual_id, **anomaly.to_dict()})
        if outcome.excluded:
            aggregation.exclusions.append(
                {
                    "individual_id": individual_id,
                    "external_id": outcome.individual.external_id,
                    "role": outcome.individual.role,
                    "reason": outcome.excluded_reason,
                }
            )
        aggregation.issues.extend(issue.to_dict() for issue in outcome.issues)
    return aggregation


def _component_payloads(outcome: IndividualOutcome) -> list[dict[str, Any]]:
    return [
        {
            "component_id": c.evaluation.component_id,
            "name": c.evaluation.component_name,
            "component_type": c.evaluation.component_type,
            "payout": decimal_to_str(c.payout),
            "outcome": c.evaluation.outcome,
            "detail": c.evaluation.detail,
            "metrics": {name: decimal_to_str(value) for name, value in c.evaluation.metrics.items()},
            "signature": c.signature,
            "trace_mode": c.trace_mode,
            "trace": c.trace,
        }
        for c in outcome.components
    ]


def _result_payload(individual: Individual, outcome: IndividualOutcome) -> dict[str, Any]:
    return {
        "individual_id": individual.id,
        "total_payout": outcome.total_payout,
        "variant_id": outcome.variant_id,
        "variant_name": outcome.variant_name,
        "org_unit_ref": individual.org_unit_ref,
        "excluded_reason": outcome.excluded_reason,
        "components": _component_payloads(outcome),
        "metrics": {name: value.summary() for name, value in outcome.metrics.items()},
        "log": list(outcome.log),
    }


def _individual_result(individual: Individual, outcome: IndividualOutcome) -> IndividualResult:
    return IndividualResult(
        individual_id=individual.id,
        external_id=individual.external_id,
        total_payout=outcome.total_payout,
        variant_id=outcome.variant_id,
        variant_name=outcome.variant_name,
        excluded_reason=outcome.excluded_reason,
        components=[
            ComponentPayout(
                component_id=c.evaluation.component_id,
                name=c.evaluation.component_name,
                component_type=c.evaluation.component_type,
                payout=c.payout,
                outcome=c.evaluation.outcome,
                trace_mode=c.trace_mode,
                trace=c.trace,
            )
            for c in outcome.components
        ],
        log=list(outcome.log),
    )

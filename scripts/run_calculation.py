"""
scripts/run_calculation.py

Run one payout calculation from the command line and print the batch as
JSON. Exit code 2 means the request itself was unusable (unknown key,
broken plan, nobody assigned).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import uuid

from app.services.calculation_orchestrator import (
    CalculationNotFoundError,
    CalculationOrchestrator,
    NoEligibleIndividualsError,
)
from compensation.errors import PlanConfigurationError
from compensation.numeric import quantize_money
from db.session import session_scope


def main() -> int:
    parser = argparse.ArgumentParser(description="Calculate payouts for one tenant, period and plan.")
    parser.add_argument("--tenant", dest="tenant_id", type=uuid.UUID, required=True, help="Tenant id.")
    parser.add_argument("--period", dest="period_id", type=uuid.UUID, required=True, help="Period id.")
    parser.add_argument("--plan", dest="plan_id", type=uuid.UUID, required=True, help="Plan id.")
    parser.add_argument(
        "--with-logs",
        dest="with_logs",
        action="store_true",
        help="Include each individual's calculation log in the output.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    orchestrator = CalculationOrchestrator()
    with session_scope() as db:
        try:
            result = orchestrator.run(
                tenant_id=args.tenant_id,
                period_id=args.period_id,
                plan_id=args.plan_id,
                db=db,
            )
        except (CalculationNotFoundError, NoEligibleIndividualsError) as exc:
            print(json.dumps({"error": str(exc)}, indent=2), file=sys.stderr)
            return 2
        except PlanConfigurationError as exc:
            print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
            return 2

    payload = {
        "batch_id": str(result.batch_id),
        "lifecycle_state": result.lifecycle_state,
        "individual_count": result.individual_count,
        "total_payout": str(quantize_money(result.total_payout)),
        "superseded_batch_id": None if result.superseded_batch_id is None else str(result.superseded_batch_id),
        "aggregates": result.aggregates,
        "results": [
            {
                "individual_id": str(r.individual_id),
                "external_id": r.external_id,
                "variant": r.variant_name,
                "total_payout": str(quantize_money(r.total_payout)),
                "components": {c.name: str(quantize_money(c.payout)) for c in r.components},
                **({"log": r.log} if args.with_logs else {}),
            }
            for r in result.results
        ],
        "anomalies": result.anomalies,
        "exclusions": result.exclusions,
        "issues": result.issues,
    }
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Operator job: report ledger invariant violations and unpaid achievement rewards."""
import json
import sys

from recipe_credits.core.config import settings
from recipe_credits.core.logging import configure_logging
from recipe_credits.features.balance.audit import audit_balances


def run() -> int:
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    report = audit_balances()
    print(json.dumps(report, indent=2, default=str))
    return 0 if report["status"] == "ok" else 1


if __name__ == "__main__":
    sys.exit(run())

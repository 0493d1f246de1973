"""Lifecycle sweep job: apply grace expiries and deferred cancellations that are due."""
import argparse
import logging
from datetime import datetime, timezone
from typing import Optional

from membership.core.config import LifecyclePolicy, settings
from membership.core.database import create_all_tables
from membership.core.logging import configure_logging
from membership.features.subscriptions.service import SubscriptionLifecycleManager

logger = logging.getLogger("membership.workers.lifecycle_sweep")


def run_sweep(*, limit: int = 100, now: Optional[datetime] = None) -> dict:
    manager = SubscriptionLifecycleManager(policy=LifecyclePolicy.from_settings())
    result = manager.sweep(now=now or datetime.now(timezone.utc), limit=limit)
    logger.info(
        "[sweep] lifecycle maintenance",
        extra={"examined": result["examined"], "transitions": len(result["transitions"]), "limit": limit},
    )
    return result


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Apply due subscription transitions (grace expiry, end-of-period cancels).")
    parser.add_argument("--limit", type=int, default=100, help="Maximum subscriptions to process.")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    if args.create_tables:
        create_all_tables()

    result = run_sweep(limit=args.limit)
    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

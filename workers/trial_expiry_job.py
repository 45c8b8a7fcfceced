from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from subscription_access import config
from subscription_access.errors import StoreError
from subscription_access.service import AccessQueryService
from subscription_access.store import build_store_from_env

logger = logging.getLogger(__name__)


@dataclass
class SweepStats:
    started_at: str
    completed_at: Optional[str] = None
    records_scanned: int = 0
    trials_expired: int = 0
    errors: int = 0


def run_trial_expiry_cycle(service: Optional[AccessQueryService] = None) -> SweepStats:
    """Background trial-expiry sweep.

    Responsibilities:
    - persist expiry for trials that lapsed without anyone querying them
    - keep going past per-account store failures and count them
    """

    svc = service or AccessQueryService(build_store_from_env())
    stats = SweepStats(started_at=datetime.now(timezone.utc).isoformat())

    try:
        account_ids = list(svc.store.account_ids())
    except StoreError as exc:
        logger.error("Trial expiry sweep could not list accounts", extra={"error": str(exc)})
        stats.errors += 1
        stats.completed_at = datetime.now(timezone.utc).isoformat()
        return stats

    for account_id in account_ids:
        stats.records_scanned += 1
        try:
            if svc.expire_lapsed_trial(account_id):
                stats.trials_expired += 1
        except StoreError as exc:
            logger.warning(
                "Trial expiry sweep failed for account",
                extra={"account_id": account_id, "error": str(exc)},
            )
            stats.errors += 1

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info("Trial expiry sweep completed", extra=vars(stats))
    return stats


def run_forever(interval_seconds: int = config.TRIAL_SWEEP_INTERVAL_SECONDS) -> None:
    service = AccessQueryService(build_store_from_env())
    while True:
        run_trial_expiry_cycle(service)
        time.sleep(interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_forever()

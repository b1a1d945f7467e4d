"""
Daily hot score recomputation and its scheduler.

Migrates any remaining legacy rating blobs, recomputes every live item's hot
score from a trailing window of rating events, persists the scores in one
statement and evicts the cached "hot" listing pages.

Every write is an idempotent recomputation, so an interrupted run simply
self-corrects on the next one.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from db.legacy_migration import migrate_items
from db.listing_cache import invalidate_dimension
from db.postgres import batch_update_hot_scores, fetch_live_items
from db.rating_store import DEFAULT_WINDOW_COUNTS, count_window_ratings
from implementation.classes.enums import ListingDimension, SubjectType
from implementation.scoring import HOT_WINDOW, compute_hot_score

logger = logging.getLogger(__name__)

# Local wall-clock time of the daily run.
SCORE_REFRESH_HOUR: int = int(os.getenv("SCORE_REFRESH_HOUR", "23"))
SCORE_REFRESH_MINUTE: int = int(os.getenv("SCORE_REFRESH_MINUTE", "12"))

# Held for the whole of a run so scheduled, CLI and on-demand runs never overlap.
_refresh_lock = asyncio.Lock()


@dataclass(slots=True)
class ScoreRefreshResult:
    items: int
    migrated: int
    migration_failures: int
    scored: int
    scoring_failures: int
    cache_keys_evicted: int


async def run_score_refresh(now: Optional[datetime] = None) -> ScoreRefreshResult:
    """
    Run one full hot score refresh.

    Steps:
        1. Load all non-deleted items.
        2. Migrate every item that still has an unconsumed legacy blob.
        3. Count likes/dislikes per item over the trailing window in one
           grouped query (items without events default to (1, 0)).
        4. Recompute and persist every hot score.
        5. Evict the whole "hot" listing cache.

    A failure of the grouped window query aborts the run. Per-item migration
    or scoring failures are logged and the item is retried on the next run.
    Overlapping calls in the same process run one after the other.

    Returns:
        Counters describing what the run did.
    """
    async with _refresh_lock:
        return await _refresh_hot_scores(now or datetime.now(timezone.utc))


def refresh_in_progress() -> bool:
    return _refresh_lock.locked()


async def _refresh_hot_scores(now: datetime) -> ScoreRefreshResult:
    logger.info("Refreshing hot scores")

    items = await fetch_live_items()
    item_ids = [item.item_id for item in items]

    migration = await migrate_items(item_ids)
    if migration.failed:
        logger.warning("Legacy migration failed for %d items, retrying next run", len(migration.failed))

    window_counts = await count_window_ratings(
        SubjectType.COPILOT,
        [str(item_id) for item_id in item_ids],
        now - HOT_WINDOW,
    )

    scored_ids: list[int] = []
    scores: list[float] = []
    scoring_failures = 0
    for item in items:
        likes, dislikes = window_counts.get(str(item.item_id), DEFAULT_WINDOW_COUNTS)
        try:
            score = compute_hot_score(item.upload_time, item.views, likes, dislikes, now=now)
        except (ArithmeticError, TypeError, ValueError) as e:
            logger.warning("Hot score computation failed for item %d: %s", item.item_id, e)
            scoring_failures += 1
            continue
        scored_ids.append(item.item_id)
        scores.append(score)

    await batch_update_hot_scores(scored_ids, scores)
    evicted = await invalidate_dimension(ListingDimension.HOT)

    result = ScoreRefreshResult(
        items=len(items),
        migrated=len(migration.migrated),
        migration_failures=len(migration.failed),
        scored=len(scored_ids),
        scoring_failures=scoring_failures,
        cache_keys_evicted=evicted,
    )
    logger.info(
        "Hot scores written for %d/%d items (%d legacy blobs migrated)",
        result.scored, result.items, result.migrated,
    )
    return result


def seconds_until_next_run(now: datetime, hour: int, minute: int) -> float:
    """Seconds from `now` until the next occurrence of hour:minute (strictly in the future)."""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def scheduled_score_refresh(
    hour: int = SCORE_REFRESH_HOUR,
    minute: int = SCORE_REFRESH_MINUTE,
) -> None:
    """
    Run the hot score refresh once a day at hour:minute local time, forever.

    Started as a background task from the FastAPI lifespan. Cancelling the
    task stops the wait for the next run. A run already in progress is
    shielded, and the cancellation only completes once that run has
    finished, so the caller can close connections right after awaiting it.
    """
    logger.info("Hot score scheduler started (daily at %02d:%02d)", hour, minute)
    while True:
        await asyncio.sleep(seconds_until_next_run(datetime.now(), hour, minute))
        run = asyncio.create_task(run_score_refresh())
        try:
            await asyncio.shield(run)
        except asyncio.CancelledError:
            await asyncio.wait({run})
            if not run.cancelled() and run.exception() is not None:
                logger.error("Hot score refresh failed during shutdown: %s", run.exception())
            raise
        except Exception:
            logger.exception("Hot score refresh failed, next attempt at the next scheduled time")

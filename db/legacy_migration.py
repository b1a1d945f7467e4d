"""
Commit step of the legacy rating migration.

`migrate_item` turns an item's unconsumed legacy rating blob into normalized
rating records exactly once. The whole migration runs in one transaction
that starts by locking the blob row with `SELECT ... FOR UPDATE` and
classifying the locked row:

    - a concurrent migration of the same item blocks on the row lock, then
      reads the committed row, finds it consumed and does nothing;
    - if any record write fails the transaction rolls back, so the blob is
      never marked consumed without its records.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from db.postgres import _execute_on_conn, _execute_read, pool, update_item_rating_fields
from db.rating_store import bulk_upsert_ratings
from implementation.classes.schemas import LegacyRatingBlob, RatingSubmission
from implementation.migration import LegacyState, MigrationPlan, classify_rating_state, plan_migration

logger = logging.getLogger(__name__)

_BLOB_COLUMNS = ("item_id", "rating_users", "rating_level", "rating_ratio", "consumed")


def _row_to_blob(row) -> LegacyRatingBlob:
    return LegacyRatingBlob(**dict(zip(_BLOB_COLUMNS, row)))


async def fetch_unconsumed_legacy_item_ids(item_ids: list[int]) -> list[int]:
    """Which of the given items still carry an unconsumed legacy blob."""
    if not item_ids:
        return []
    rows = await _execute_read(
        """
        SELECT item_id FROM public.legacy_copilot_rating
        WHERE item_id = ANY(%s::bigint[]) AND consumed = FALSE
        ORDER BY item_id
        """,
        (item_ids,),
    )
    return [int(row[0]) for row in rows]


async def migrate_item(
    item_id: int,
    submission: Optional[RatingSubmission] = None,
) -> Optional[MigrationPlan]:
    """
    Migrate one item's legacy ratings if it still has an unconsumed blob.

    Args:
        item_id: The item to migrate.
        submission: The rating submission that triggered this migration, if
            any. It is folded into the migrated records and counters in the
            same pass instead of being written separately.

    Returns:
        The committed plan, or None if there was nothing to migrate (no blob,
        or another migration already consumed it).
    """
    async with pool.connection() as conn:
        try:
            rows = await _execute_on_conn(
                conn,
                """
                SELECT item_id, rating_users, rating_level, rating_ratio, consumed
                FROM public.legacy_copilot_rating
                WHERE item_id = %s
                FOR UPDATE
                """,
                (item_id,),
                fetch=True,
            )
            state = classify_rating_state(item_id, _row_to_blob(rows[0]) if rows else None)
            if not isinstance(state, LegacyState):
                await conn.rollback()
                logger.debug("Item %d needs no migration (%s)", item_id, type(state).__name__)
                return None

            plan = plan_migration(state.blob, submission)
            await bulk_upsert_ratings(plan.records, conn=conn)
            await update_item_rating_fields(
                item_id,
                plan.aggregate.like_count,
                plan.aggregate.dislike_count,
                plan.rating_level,
                plan.rating_ratio,
                conn=conn,
            )
            await _execute_on_conn(
                conn,
                """
                UPDATE public.legacy_copilot_rating
                SET consumed = TRUE
                WHERE item_id = %s AND consumed = FALSE
                """,
                (item_id,),
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    logger.info(
        "Migrated %d legacy ratings for item %d (likes=%d, dislikes=%d)",
        len(plan.records), item_id, plan.aggregate.like_count, plan.aggregate.dislike_count,
    )
    return plan


@dataclass(slots=True)
class BulkMigrationResult:
    migrated: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


async def migrate_items(item_ids: list[int]) -> BulkMigrationResult:
    """
    Migrate every item in `item_ids` that still has an unconsumed blob.

    A failure on one item is logged and skipped; its blob stays unconsumed
    and is retried on the next call.
    """
    result = BulkMigrationResult()
    pending = await fetch_unconsumed_legacy_item_ids(item_ids)
    for item_id in pending:
        try:
            plan = await migrate_item(item_id)
        except Exception as e:
            logger.warning("Legacy rating migration failed for item %d: %s", item_id, e)
            result.failed.append(item_id)
            continue
        if plan is not None:
            result.migrated.append(item_id)
    return result

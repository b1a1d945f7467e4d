"""
Normalized per-user rating records.

Each (subject_type, subject_key, user_id) triple has at most one live row in
public.copilot_rating; re-rating overwrites it in place. Concurrent writes
for the same triple resolve last-write-wins by rate_time. Aggregate counts
are always recomputed from the rows, never accumulated.
"""

import logging
from datetime import datetime
from typing import Iterable, Sequence

from db.postgres import _execute_on_conn, _execute_read, _execute_read_one
from implementation.classes.enums import RatingType, SubjectType
from implementation.classes.schemas import RatingRecord
from implementation.scoring import RatingAggregate

logger = logging.getLogger(__name__)

# Trailing-window counts used for items with no rating events in the window.
DEFAULT_WINDOW_COUNTS: tuple[int, int] = (1, 0)


async def upsert_rating(
    subject_type: SubjectType,
    subject_key: str,
    user_id: str,
    rating: RatingType,
    rate_time: datetime,
    conn=None,
) -> RatingType:
    """
    Insert or overwrite the single rating record for a key triple.

    The prior value is read inside the same statement, so callers can work
    out deltas without a second round-trip. An older `rate_time` never
    overwrites a newer one.

    Args:
        conn: Optional existing async connection for caller-managed transaction scope.

    Returns:
        The rating held before this call, or RatingType.NONE if there was no record.
    """
    query = """
    WITH prior AS (
        SELECT rating FROM public.copilot_rating
        WHERE subject_type = %s AND subject_key = %s AND user_id = %s
        FOR UPDATE
    ), upserted AS (
        INSERT INTO public.copilot_rating (subject_type, subject_key, user_id, rating, rate_time)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (subject_type, subject_key, user_id) DO UPDATE SET
            rating = EXCLUDED.rating,
            rate_time = EXCLUDED.rate_time
        WHERE copilot_rating.rate_time <= EXCLUDED.rate_time
        RETURNING 1
    )
    SELECT (SELECT rating FROM prior), (SELECT COUNT(*) FROM upserted);
    """
    params = (
        subject_type.value, subject_key, user_id,
        subject_type.value, subject_key, user_id, int(rating), rate_time,
    )
    rows = await _execute_on_conn(conn, query, params, fetch=True)
    prior, applied = rows[0] if rows else (None, 0)
    if not applied:
        logger.debug(
            "Rating for %s/%s by %s superseded by a newer write", subject_type.value, subject_key, user_id
        )
    return RatingType(prior) if prior is not None else RatingType.NONE


async def bulk_upsert_ratings(records: Sequence[RatingRecord], conn=None) -> None:
    """
    Write many rating records in a single round-trip with the same
    last-write-wins rule as `upsert_rating`.
    """
    if not records:
        return
    query = """
    INSERT INTO public.copilot_rating (subject_type, subject_key, user_id, rating, rate_time)
    SELECT * FROM unnest(%s::text[], %s::text[], %s::text[], %s::smallint[], %s::timestamptz[])
    ON CONFLICT (subject_type, subject_key, user_id) DO UPDATE SET
        rating = EXCLUDED.rating,
        rate_time = EXCLUDED.rate_time
    WHERE copilot_rating.rate_time <= EXCLUDED.rate_time;
    """
    params = (
        [record.subject_type.value for record in records],
        [record.subject_key for record in records],
        [record.user_id for record in records],
        [int(record.rating) for record in records],
        [record.rate_time for record in records],
    )
    await _execute_on_conn(conn, query, params)


async def find_user_rating(subject_type: SubjectType, subject_key: str, user_id: str) -> RatingType:
    """The user's current rating of a subject, NONE if they never rated it."""
    row = await _execute_read_one(
        """
        SELECT rating FROM public.copilot_rating
        WHERE subject_type = %s AND subject_key = %s AND user_id = %s
        """,
        (subject_type.value, subject_key, user_id),
    )
    return RatingType(row[0]) if row else RatingType.NONE


async def count_by_rating(subject_type: SubjectType, subject_key: str, rating: RatingType) -> int:
    row = await _execute_read_one(
        """
        SELECT COUNT(*) FROM public.copilot_rating
        WHERE subject_type = %s AND subject_key = %s AND rating = %s
        """,
        (subject_type.value, subject_key, int(rating)),
    )
    return int(row[0]) if row else 0


async def total_count(subject_type: SubjectType, subject_key: str) -> int:
    """Number of like or dislike records. Withdrawn (NONE) ratings are not counted."""
    row = await _execute_read_one(
        """
        SELECT COUNT(*) FROM public.copilot_rating
        WHERE subject_type = %s AND subject_key = %s AND rating <> %s
        """,
        (subject_type.value, subject_key, int(RatingType.NONE)),
    )
    return int(row[0]) if row else 0


async def count_ratings(subject_type: SubjectType, subject_key: str, conn=None) -> RatingAggregate:
    """Like and dislike counts of a subject in one query."""
    query = """
    SELECT COUNT(*) FILTER (WHERE rating = %s), COUNT(*) FILTER (WHERE rating = %s)
    FROM public.copilot_rating
    WHERE subject_type = %s AND subject_key = %s
    """
    params = (int(RatingType.LIKE), int(RatingType.DISLIKE), subject_type.value, subject_key)
    rows = await _execute_on_conn(conn, query, params, fetch=True)
    if not rows:
        return RatingAggregate()
    likes, dislikes = rows[0]
    return RatingAggregate(int(likes), int(dislikes))


async def count_window_ratings(
    subject_type: SubjectType,
    subject_keys: Iterable[str],
    since: datetime,
) -> dict[str, tuple[int, int]]:
    """
    Like/dislike counts per subject over rating events at or after `since`.

    A single grouped query covers every key. Keys without any event in the
    window map to DEFAULT_WINDOW_COUNTS so a quiet item is never penalized.

    Returns:
        Mapping of subject_key -> (likes, dislikes), one entry per requested key.
    """
    keys = list(dict.fromkeys(subject_keys))
    if not keys:
        return {}
    rows = await _execute_read(
        """
        SELECT subject_key,
               COUNT(*) FILTER (WHERE rating = %s),
               COUNT(*) FILTER (WHERE rating = %s)
        FROM public.copilot_rating
        WHERE subject_type = %s
          AND subject_key = ANY(%s::text[])
          AND rate_time >= %s
        GROUP BY subject_key
        """,
        (int(RatingType.LIKE), int(RatingType.DISLIKE), subject_type.value, keys, since),
    )
    counts = {key: DEFAULT_WINDOW_COUNTS for key in keys}
    for subject_key, likes, dislikes in rows:
        counts[subject_key] = (int(likes) or DEFAULT_WINDOW_COUNTS[0], int(dislikes))
    return counts

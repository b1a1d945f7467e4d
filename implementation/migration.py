"""
Legacy rating migration planning.

An item's rating data is in exactly one of three states:
    - LegacyState:     an unconsumed embedded rating blob is still attached.
    - MigratedState:   a blob exists but was consumed by an earlier migration.
    - NormalizedState: the item never had a blob.

Only LegacyState needs work. `plan_migration` turns a blob (plus, optionally,
the rating submission that triggered the migration) into the exact set of
rating records and item counters to commit. Committing the plan atomically
is the store's job (see db/legacy_migration.py).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from implementation.classes.enums import RatingType, SubjectType
from implementation.classes.schemas import LegacyRatingBlob, RatingRecord, RatingSubmission
from implementation.scoring import RatingAggregate, fold_ratings


@dataclass(frozen=True, slots=True)
class LegacyState:
    blob: LegacyRatingBlob


@dataclass(frozen=True, slots=True)
class MigratedState:
    item_id: int


@dataclass(frozen=True, slots=True)
class NormalizedState:
    item_id: int


ItemRatingState = Union[LegacyState, MigratedState, NormalizedState]

# Legacy entries that never recorded a time sort before any trailing window.
_UNKNOWN_RATE_TIME = datetime(1970, 1, 1, tzinfo=timezone.utc)


def classify_rating_state(item_id: int, blob: Optional[LegacyRatingBlob]) -> ItemRatingState:
    """Place an item in its rating-data state given its (possibly absent) legacy blob."""
    if blob is None:
        return NormalizedState(item_id)
    if blob.consumed:
        return MigratedState(item_id)
    return LegacyState(blob)


@dataclass(frozen=True, slots=True)
class MigrationPlan:
    """
    Everything a migration commits for one item.

    Fields:
        item_id:            The migrated item.
        records:            One RatingRecord per distinct legacy user (plus the
                            submitter when they had no legacy entry).
        aggregate:          Like/dislike totals over `records`.
        rating_level:       The blob's precomputed level, written as-is.
        rating_ratio:       The blob's precomputed ratio, written as-is.
    """
    item_id: int
    records: tuple[RatingRecord, ...]
    aggregate: RatingAggregate
    rating_level: int
    rating_ratio: float


def plan_migration(
    blob: LegacyRatingBlob,
    submission: Optional[RatingSubmission] = None,
) -> MigrationPlan:
    """
    Convert a legacy blob into normalized rating records and counters.

    Legacy entries are keyed by user; when a user appears more than once the
    last entry wins, matching the one-record-per-user rule of the rating store.
    A triggering submission replaces the submitter's entry (or adds one) in
    the same pass, so the counters already include it.

    Raises:
        ValueError: if the blob was already consumed.
    """
    if blob.consumed:
        raise ValueError(f"legacy rating blob for item {blob.item_id} is already consumed")

    subject_key = str(blob.item_id)
    by_user: dict[str, RatingRecord] = {}
    for entry in blob.rating_users:
        by_user[entry.user_id] = RatingRecord(
            subject_type=SubjectType.COPILOT,
            subject_key=subject_key,
            user_id=entry.user_id,
            rating=RatingType.from_legacy_string(entry.rating),
            rate_time=entry.rate_time or _UNKNOWN_RATE_TIME,
        )

    if submission is not None:
        existing = by_user.get(submission.user_id)
        if existing is None or existing.rating != submission.rating:
            by_user[submission.user_id] = RatingRecord(
                subject_type=SubjectType.COPILOT,
                subject_key=subject_key,
                user_id=submission.user_id,
                rating=submission.rating,
                rate_time=submission.rate_time,
            )

    records = tuple(by_user.values())
    return MigrationPlan(
        item_id=blob.item_id,
        records=records,
        aggregate=fold_ratings(record.rating for record in records),
        rating_level=blob.rating_level,
        rating_ratio=blob.rating_ratio,
    )


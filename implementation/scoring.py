"""
Rating and popularity score calculation.

Two independent computations live here:
    1. Rating ratio/level: derived synchronously from an item's aggregate
       like/dislike counts on every rating submission.
    2. Hot score: a time-decayed popularity metric recomputed by the daily
       refresh job from views and a trailing window of rating events.

Everything in this module is pure so it can be unit-tested without a store.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from implementation.classes.enums import RatingType


# ===========================================================================
# Tunable constants
# ===========================================================================

# Items with this many ratings or fewer are flagged as not having enough
# ratings for the ratio to be meaningful.
NOT_ENOUGH_RATING_THRESHOLD: int = 5

# Hot score: the time-based base score before logarithmic decay.
HOT_BASE_SCORE: float = 6.0

# Hot score: minimum trailing-window sample size before a majority of
# dislikes is allowed to penalize the base score.
HOT_PENALTY_MIN_SAMPLES: int = 5

# Trailing window of rating events used by the hot score.
HOT_WINDOW: timedelta = timedelta(days=7)

_ONE_WEEK = timedelta(weeks=1)
_ONE_DECIMAL = Decimal("0.1")


# ===========================================================================
# Rating aggregation
# ===========================================================================

@dataclass(frozen=True, slots=True)
class RatingAggregate:
    """Immutable like/dislike totals for one subject."""
    like_count: int = 0
    dislike_count: int = 0

    @property
    def total(self) -> int:
        return self.like_count + self.dislike_count

    def add(self, rating: RatingType) -> "RatingAggregate":
        if rating == RatingType.LIKE:
            return RatingAggregate(self.like_count + 1, self.dislike_count)
        if rating == RatingType.DISLIKE:
            return RatingAggregate(self.like_count, self.dislike_count + 1)
        return self


def fold_ratings(ratings: Iterable[RatingType]) -> RatingAggregate:
    """Fold a sequence of ratings into like/dislike totals. NONE entries are ignored."""
    aggregate = RatingAggregate()
    for rating in ratings:
        aggregate = aggregate.add(rating)
    return aggregate


# ===========================================================================
# Rating ratio / level
# ===========================================================================

def compute_rating_ratio(like_count: int, total_count: int) -> float:
    """
    Share of likes among all ratings, rounded half-up to one decimal place.

    The rounding is applied to the exact binary value of the quotient, so
    e.g. 0.35 (stored as 0.34999...) rounds down to 0.3.

    Returns:
        Float in [0.0, 1.0]; 0.0 when there are no ratings.
    """
    if total_count <= 0:
        return 0.0
    raw = like_count / total_count
    return float(Decimal(raw).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP))


def compute_rating_level(rating_ratio: float) -> int:
    """Ratio expressed in tenths (0.7 -> 7)."""
    tenths = Decimal(str(rating_ratio)) * 10
    return int(tenths.to_integral_value(rounding=ROUND_HALF_UP))


def rating_fields(aggregate: RatingAggregate) -> tuple[int, float]:
    """Return (rating_level, rating_ratio) for an aggregate."""
    ratio = compute_rating_ratio(aggregate.like_count, aggregate.total)
    return compute_rating_level(ratio), ratio


def is_not_enough_rating(like_count: int, dislike_count: int) -> bool:
    return like_count + dislike_count <= NOT_ENOUGH_RATING_THRESHOLD


# ===========================================================================
# Hot score
# ===========================================================================

def compute_pasted_weeks(upload_time: datetime, now: datetime) -> int:
    """Whole weeks elapsed since upload, plus one. Never below 1."""
    elapsed_weeks = (now - upload_time) // _ONE_WEEK
    return max(elapsed_weeks + 1, 1)


def compute_hot_score(
    upload_time: datetime,
    views: int,
    window_likes: int,
    window_dislikes: int,
    now: datetime | None = None,
) -> float:
    """
    Compute the time-decayed hot score of one item.

    Formula:
        pasted_weeks = floor(weeks since upload) + 1
        base         = 6 / ln(pasted_weeks + 1)
        ups, downs   = max(window_likes, 1), max(window_dislikes, 0)
        great_rate   = ups / (ups + downs)
        base        *= great_rate   if ups + downs >= 5 and downs >= ups
        s            = great_rate * (views / 10) * max((ups + downs) / 10, 1) / pasted_weeks
        hot_score    = ln(max(s, 1)) + s / 1000 + base

    Args:
        upload_time:     When the item was (last) uploaded. Must be timezone-aware
                         if `now` is.
        views:           Lifetime view count.
        window_likes:    Likes recorded within the trailing window.
        window_dislikes: Dislikes recorded within the trailing window.
        now:             Reference time; defaults to the current UTC time.

    Returns:
        The hot score as a float.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    pasted_weeks = compute_pasted_weeks(upload_time, now)
    base = HOT_BASE_SCORE / math.log(pasted_weeks + 1)

    ups = max(window_likes, 1)
    downs = max(window_dislikes, 0)
    great_rate = ups / (ups + downs)
    if (ups + downs) >= HOT_PENALTY_MIN_SAMPLES and downs >= ups:
        # Recent sentiment is mostly negative with enough samples to trust it.
        base = base * great_rate

    s = great_rate * (views / 10) * max((ups + downs) / 10, 1) / pasted_weeks
    order = math.log(max(s, 1))
    return order + s / 1000 + base

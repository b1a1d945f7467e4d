"""
Enum classes for copilot rating and listing data models.

This module contains all Enum classes used for rating storage, legacy
rating conversion and listing cache configuration across the project.
"""

from enum import Enum, IntEnum
from implementation.misc.helpers import normalize_string


class RatingType(IntEnum):
    """A single user's rating of a subject. Values are the stored smallint."""
    NONE = 0
    LIKE = 1
    DISLIKE = 2

    @classmethod
    def from_string(cls, rating: str) -> "RatingType | None":
        """
        Convert a request or legacy rating string to a RatingType.
        Returns None if the string doesn't match any valid rating.
        """
        normalized_rating = normalize_string(rating)
        _map = {
            normalize_string("Like"): cls.LIKE,
            normalize_string("Dislike"): cls.DISLIKE,
            normalize_string("None"): cls.NONE,
        }
        return _map.get(normalized_rating, None)

    @classmethod
    def from_legacy_string(cls, rating: str | None) -> "RatingType":
        """Legacy blobs carry free-form strings; anything unknown counts as NONE."""
        if rating is None:
            return cls.NONE
        return cls.from_string(rating) or cls.NONE

    @property
    def display(self) -> int:
        """Client-facing rating code: 0 = none, 1 = like, 2 = dislike."""
        return int(self.value)


class SubjectType(Enum):
    """Kinds of subjects a rating record can point at."""
    COPILOT = "COPILOT"


class ListingDimension(Enum):
    """
    Sort dimensions whose first listing pages are cached.

    Each dimension carries its own cache TTL in seconds, reflecting how
    quickly that ordering goes stale.
    """
    HOT = "hot"
    VIEWS = "views"
    ID = "id"

    @property
    def ttl_seconds(self) -> int:
        _ttls = {
            ListingDimension.HOT: 3600 * 24,
            ListingDimension.VIEWS: 3600,
            ListingDimension.ID: 300,
        }
        return _ttls[self]

    @classmethod
    def from_order_by(cls, order_by: str | None) -> "ListingDimension | None":
        """Return the cached dimension for an orderBy value, or None if it is not cached."""
        if not order_by:
            return None
        for dimension in cls:
            if dimension.value == order_by:
                return dimension
        return None

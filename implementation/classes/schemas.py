"""
Pydantic schemas for copilot items, ratings and listing requests.

This module contains the records read from and written to the store, the
request bodies accepted by the API, and the display payloads returned to
clients (which are also what the listing cache serializes).
"""

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from implementation.classes.enums import ListingDimension, RatingType, SubjectType
from implementation.misc.helpers import fingerprint_params, strip_name_quotes


# -----------------------------
#            RATINGS
# -----------------------------

class RatingRecord(BaseModel):
    """One user's current rating of one subject. Unique per (subject_type, subject_key, user_id)."""
    model_config = ConfigDict(frozen=True)

    subject_type: SubjectType = SubjectType.COPILOT
    subject_key: str
    user_id: str
    rating: RatingType
    rate_time: datetime


class LegacyRatingUser(BaseModel):
    """An entry of the embedded rating array from the old rating collection."""
    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId"))
    rating: Optional[str] = None
    rate_time: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("rate_time", "rateTime"))


class LegacyRatingBlob(BaseModel):
    """
    Old-style rating data embedded per item.

    Once `consumed` is set the blob is inert: nothing reads its entries or
    precomputed ratio/level again.
    """
    item_id: int
    rating_users: List[LegacyRatingUser] = Field(default_factory=list)
    rating_level: int = 0
    rating_ratio: float = 0.0
    consumed: bool = False


class RatingSubmission(BaseModel):
    """A rating submitted by one actor, carried into a migration pass."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    rating: RatingType
    rate_time: datetime


# -----------------------------
#             ITEMS
# -----------------------------

class CopilotItem(BaseModel):
    item_id: int
    uploader_id: str
    title: str = ""
    details: str = ""
    stage_name: str = ""
    operator_names: List[str] = Field(default_factory=list)
    content: str = ""
    views: int = Field(default=0, ge=0)
    like_count: int = Field(default=0, ge=0)
    dislike_count: int = Field(default=0, ge=0)
    rating_level: int = 0
    rating_ratio: float = 0.0
    hot_score: float = 0.0
    upload_time: datetime
    deleted: bool = False
    notification: bool = False


class ItemInfo(BaseModel):
    """Display payload for one item."""
    id: int
    uploader_id: str
    uploader: str
    title: str
    details: str
    stage_name: str
    content: str
    upload_time: datetime
    views: int
    hot_score: float
    like: int
    dislike: int
    rating_level: int
    rating_ratio: float
    not_enough_rating: bool
    rating_type: Optional[int] = None
    comments_count: int = 0
    available: bool = True
    notification: bool = False


class ItemPage(BaseModel):
    total: int
    has_next: bool
    page: int
    data: List[ItemInfo] = Field(default_factory=list)


class ItemRatingSummary(BaseModel):
    """Rating fields of an item right after a rating submission."""
    item_id: int
    like_count: int
    dislike_count: int
    rating_level: int
    rating_ratio: float
    rating_type: int


# -----------------------------
#        COPILOT CONTENT
# -----------------------------

class CopilotDoc(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = ""
    details: str = ""


class CopilotOperator(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None

    @field_validator("name", mode="after")
    @classmethod
    def strip_quotes(cls, v: Optional[str]) -> Optional[str]:
        return strip_name_quotes(v)


class CopilotGroup(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    opers: List[CopilotOperator] = Field(default_factory=list)


class CopilotAction(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None

    @field_validator("name", mode="after")
    @classmethod
    def strip_quotes(cls, v: Optional[str]) -> Optional[str]:
        return strip_name_quotes(v)


class CopilotContent(BaseModel):
    """
    The uploaded copilot document.

    Only the fields the service indexes are declared; everything else is
    kept as extra data and round-trips untouched inside `content`.
    """
    model_config = ConfigDict(extra="allow")

    stage_name: str = Field(..., min_length=1)
    doc: CopilotDoc = Field(default_factory=CopilotDoc)
    opers: List[CopilotOperator] = Field(default_factory=list)
    groups: List[CopilotGroup] = Field(default_factory=list)
    actions: List[CopilotAction] = Field(default_factory=list)

    def operator_names(self) -> list[str]:
        """Operator names from the top-level list and every group, deduplicated in order."""
        names = [oper.name for oper in self.opers if oper.name]
        for group in self.groups:
            names.extend(oper.name for oper in group.opers if oper.name)
        return list(dict.fromkeys(names))


# -----------------------------
#            REQUESTS
# -----------------------------

class ListingQuery(BaseModel):
    page: int = 1
    limit: int = 10
    level_keyword: Optional[str] = None
    operator: Optional[str] = None
    document: Optional[str] = None
    uploader_id: Optional[str] = None
    order_by: Optional[str] = None
    desc: bool = True

    def normalized(self) -> "ListingQuery":
        """Apply paging defaults and turn blank filters into None."""
        def _clean(value: Optional[str]) -> Optional[str]:
            if value is None or not value.strip():
                return None
            return value.strip()

        return ListingQuery(
            page=self.page if self.page > 0 else 1,
            limit=self.limit if self.limit > 0 else 10,
            level_keyword=_clean(self.level_keyword),
            operator=_clean(self.operator),
            document=_clean(self.document),
            uploader_id=_clean(self.uploader_id),
            order_by=_clean(self.order_by),
            desc=self.desc,
        )

    def cache_dimension(self) -> Optional[ListingDimension]:
        """
        The listing cache dimension this query may be served from, or None.

        Only unfiltered queries for the first three pages of an allow-listed
        ordering are cacheable. Expects a normalized query.
        """
        if self.page > 3:
            return None
        if self.document or self.level_keyword or self.uploader_id or self.operator:
            return None
        return ListingDimension.from_order_by(self.order_by)

    def fingerprint(self) -> str:
        return fingerprint_params(self.model_dump())


class RatingRequest(BaseModel):
    id: int
    rating: str


class UploadRequest(BaseModel):
    content: str


class UpdateRequest(BaseModel):
    id: int
    content: str


class DeleteRequest(BaseModel):
    id: int


class NotificationRequest(BaseModel):
    id: int
    status: bool

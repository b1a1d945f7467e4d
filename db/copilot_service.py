"""
Caller-facing copilot operations.

Ties the item store, rating store, legacy migration, scoring and both Redis
caches together behind the operations the HTTP layer calls. Every operation
either returns a populated result or raises a CopilotServiceError; psycopg
and pool errors are translated to StoreUnavailableError here and never reach
callers.
"""

import asyncio
import logging
import math
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import psycopg
from psycopg_pool import PoolTimeout
from pydantic import ValidationError as PydanticValidationError

from db.legacy_migration import migrate_item, migrate_items
from db.listing_cache import get_page, invalidate_if_present, put_page
from db.postgres import (
    count_comments,
    fetch_item,
    fetch_item_page,
    fetch_stage_id_fuzzy,
    fetch_user_names,
    increment_views,
    insert_item,
    item_exists,
    next_item_id,
    set_item_notification,
    soft_delete_item,
    update_item_content,
    update_item_rating_fields,
)
from db.rating_store import count_ratings, find_user_rating, upsert_rating
from db.score_refresh import ScoreRefreshResult, refresh_in_progress, run_score_refresh
from db.view_guard import should_count_view
from implementation.classes.enums import ListingDimension, RatingType, SubjectType
from implementation.classes.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from implementation.classes.schemas import (
    CopilotContent,
    CopilotItem,
    ItemInfo,
    ItemPage,
    ItemRatingSummary,
    ListingQuery,
    RatingSubmission,
)
from implementation.scoring import is_not_enough_rating, rating_fields

logger = logging.getLogger(__name__)

# User ids allowed to trigger an on-demand score refresh (comma-separated).
SCORE_REFRESH_ADMINS: frozenset[str] = frozenset(
    admin.strip() for admin in os.getenv("SCORE_REFRESH_ADMINS", "").split(",") if admin.strip()
)


@asynccontextmanager
async def _store_errors(operation: str):
    """Translate any psycopg or pool failure into StoreUnavailableError."""
    try:
        yield
    except (psycopg.OperationalError, PoolTimeout) as e:
        logger.error("Store unavailable during %s: %s", operation, e)
        raise StoreUnavailableError(f"store unavailable during {operation}") from e
    except psycopg.Error as e:
        logger.exception("Store rejected %s (%s)", operation, type(e).__name__)
        raise StoreUnavailableError(f"store error during {operation}") from e


# ===============================
#            HELPERS
# ===============================

def parse_copilot_content(content: Optional[str]) -> CopilotContent:
    """
    Parse uploaded JSON into a copilot document.

    Operator and action names are stripped of quote characters by the model
    validators.

    Raises:
        ValidationError: if the content is empty or not a valid copilot document.
    """
    if not content or not content.strip():
        raise ValidationError("copilot content must not be empty")
    try:
        return CopilotContent.model_validate_json(content)
    except PydanticValidationError as e:
        logger.warning("Rejected unparseable copilot content (%d errors)", e.error_count())
        raise ValidationError("copilot content could not be parsed") from e


async def _resolve_stage(stage_name: str) -> str:
    """Canonical stage id for a typed stage name, or the name itself when nothing matches."""
    stage_id = await fetch_stage_id_fuzzy(stage_name)
    return stage_id or stage_name


def _require_actor(actor_id: Optional[str]) -> str:
    if not actor_id:
        raise ValidationError("this operation requires an authenticated user")
    return actor_id


async def _fetch_owned_item(item_id: int, actor_id: str) -> CopilotItem:
    item = await fetch_item(item_id)
    if item is None:
        raise NotFoundError(f"copilot {item_id} not found")
    if item.uploader_id != actor_id:
        raise PermissionDeniedError(f"copilot {item_id} is not owned by the caller")
    return item


def _to_item_info(
    item: CopilotItem,
    user_names: dict[str, str],
    comment_counts: dict[int, int],
    rating_type: Optional[RatingType] = None,
) -> ItemInfo:
    return ItemInfo(
        id=item.item_id,
        uploader_id=item.uploader_id,
        uploader=user_names.get(item.uploader_id, ""),
        title=item.title,
        details=item.details,
        stage_name=item.stage_name,
        content=item.content,
        upload_time=item.upload_time,
        views=item.views,
        hot_score=item.hot_score,
        like=item.like_count,
        dislike=item.dislike_count,
        rating_level=item.rating_level,
        rating_ratio=item.rating_ratio,
        not_enough_rating=is_not_enough_rating(item.like_count, item.dislike_count),
        rating_type=rating_type.display if rating_type is not None else None,
        comments_count=comment_counts.get(item.item_id, 0),
        available=True,
        notification=item.notification,
    )


# ===============================
#            RATINGS
# ===============================

async def submit_rating(
    item_id: int,
    actor_key: str,
    rating: Optional[str],
    now: Optional[datetime] = None,
) -> ItemRatingSummary:
    """
    Record the actor's rating of an item and refresh its ratio and level.

    Steps:
        1. Parse the rating (ValidationError before anything is touched).
        2. Migrate the item's legacy blob if it still has one, folding this
           submission into the migrated records.
        3. Otherwise upsert the actor's record; when the stored value already
           equals the submitted one nothing else is written.
        4. Recompute like/dislike counts from the store and persist the
           derived ratio and level.

    The hot score is left to the daily refresh.
    """
    rating_type = RatingType.from_string(rating) if rating is not None else None
    if rating_type is None:
        raise ValidationError(f"invalid rating: {rating!r}")
    if not actor_key:
        raise ValidationError("rating requires an actor")
    rate_time = now or datetime.now(timezone.utc)
    subject_key = str(item_id)

    async with _store_errors("submit_rating"):
        if not await item_exists(item_id):
            raise NotFoundError(f"copilot {item_id} not found")

        submission = RatingSubmission(user_id=actor_key, rating=rating_type, rate_time=rate_time)
        plan = await migrate_item(item_id, submission)

        if plan is None:
            prior = await upsert_rating(SubjectType.COPILOT, subject_key, actor_key, rating_type, rate_time)
            if prior == rating_type:
                item = await fetch_item(item_id)
                if item is None:
                    raise NotFoundError(f"copilot {item_id} not found")
                return ItemRatingSummary(
                    item_id=item_id,
                    like_count=item.like_count,
                    dislike_count=item.dislike_count,
                    rating_level=item.rating_level,
                    rating_ratio=item.rating_ratio,
                    rating_type=rating_type.display,
                )

        aggregate = await count_ratings(SubjectType.COPILOT, subject_key)
        rating_level, rating_ratio = rating_fields(aggregate)
        await update_item_rating_fields(
            item_id, aggregate.like_count, aggregate.dislike_count, rating_level, rating_ratio
        )

    return ItemRatingSummary(
        item_id=item_id,
        like_count=aggregate.like_count,
        dislike_count=aggregate.dislike_count,
        rating_level=rating_level,
        rating_ratio=rating_ratio,
        rating_type=rating_type.display,
    )


# ===============================
#             READS
# ===============================

async def record_view(item_id: int, actor_key: str) -> bool:
    """Increment the item's view counter unless this actor already viewed it within the cooldown."""
    if not await should_count_view(actor_key, item_id):
        return False
    async with _store_errors("record_view"):
        await increment_views(item_id)
    return True


async def get_item(item_id: int, actor_key: str) -> ItemInfo:
    """
    Single-item read: counts the view, migrates legacy ratings on touch and
    returns the display payload including the caller's own rating.
    """
    async with _store_errors("get_item"):
        if not await item_exists(item_id):
            raise NotFoundError(f"copilot {item_id} not found")

        await record_view(item_id, actor_key)
        await migrate_item(item_id)

        item = await fetch_item(item_id)
        if item is None:
            raise NotFoundError(f"copilot {item_id} not found")

        user_names, comment_counts, own_rating = await asyncio.gather(
            fetch_user_names([item.uploader_id]),
            count_comments([item.item_id]),
            find_user_rating(SubjectType.COPILOT, str(item_id), actor_key),
        )
    return _to_item_info(item, user_names, comment_counts, own_rating)


async def list_items(query: ListingQuery, actor_id: Optional[str] = None) -> ItemPage:
    """
    Filtered, sorted, paginated listing.

    Unfiltered queries for the first pages of the hot/views/id orderings are
    served from and written to the listing cache; every other query goes
    straight to the store. Legacy rating blobs on the returned items are
    migrated before the page is built.
    """
    query = query.normalized()
    dimension = query.cache_dimension()
    fingerprint = query.fingerprint() if dimension is not None else None

    if dimension is not None:
        cached = await get_page(dimension, fingerprint)
        if cached is not None:
            return cached

    async with _store_errors("list_items"):
        total, items = await fetch_item_page(query, actor_id)

        migration = await migrate_items([item.item_id for item in items])
        if migration.migrated:
            refreshed = await asyncio.gather(*(fetch_item(item_id) for item_id in migration.migrated))
            by_id = {item.item_id: item for item in refreshed if item is not None}
            items = [by_id.get(item.item_id, item) for item in items]

        user_names, comment_counts = await asyncio.gather(
            fetch_user_names([item.uploader_id for item in items]),
            count_comments([item.item_id for item in items]),
        )

    page = ItemPage(
        total=total,
        has_next=total - query.page * query.limit > 0,
        page=math.ceil(total / query.limit),
        data=[_to_item_info(item, user_names, comment_counts) for item in items],
    )

    if dimension is not None:
        await put_page(dimension, fingerprint, page, [item.item_id for item in items])
    return page


# ===============================
#           MUTATIONS
# ===============================

async def upload_item(actor_id: Optional[str], content: Optional[str]) -> int:
    """
    Store a new copilot document and return its id.

    Counters and scores start at zero; the raw content is kept as uploaded.
    """
    uploader_id = _require_actor(actor_id)
    document = parse_copilot_content(content)

    async with _store_errors("upload_item"):
        stage_name = await _resolve_stage(document.stage_name)
        item_id = await next_item_id()
        await insert_item(
            CopilotItem(
                item_id=item_id,
                uploader_id=uploader_id,
                title=document.doc.title,
                details=document.doc.details,
                stage_name=stage_name,
                operator_names=document.operator_names(),
                content=content,
                upload_time=datetime.now(timezone.utc),
            )
        )

    logger.info("Copilot %d uploaded by %s", item_id, uploader_id)
    return item_id


async def update_item(actor_id: Optional[str], item_id: int, content: Optional[str]) -> None:
    """Replace an owned item's document. Its upload time is refreshed."""
    owner_id = _require_actor(actor_id)
    document = parse_copilot_content(content)

    async with _store_errors("update_item"):
        await _fetch_owned_item(item_id, owner_id)
        stage_name = await _resolve_stage(document.stage_name)
        await update_item_content(
            item_id,
            document.doc.title,
            document.doc.details,
            stage_name,
            document.operator_names(),
            content,
        )


async def delete_item(actor_id: Optional[str], item_id: int) -> None:
    """
    Soft-delete an owned item, then evict every cached listing dimension
    whose pages may still show it.
    """
    owner_id = _require_actor(actor_id)
    async with _store_errors("delete_item"):
        await _fetch_owned_item(item_id, owner_id)
        await soft_delete_item(item_id)

    for dimension in ListingDimension:
        if await invalidate_if_present(dimension, item_id):
            logger.info("Evicted %s listing cache after deleting copilot %d", dimension.value, item_id)


async def set_notification(actor_id: Optional[str], item_id: int, status: bool) -> None:
    owner_id = _require_actor(actor_id)
    async with _store_errors("set_notification"):
        await _fetch_owned_item(item_id, owner_id)
        await set_item_notification(item_id, status)


# ===============================
#          SCORE REFRESH
# ===============================

async def refresh_scores(actor_id: Optional[str]) -> ScoreRefreshResult:
    """
    Run the hot score refresh on demand.

    Raises:
        ValidationError: if the caller is anonymous.
        PermissionDeniedError: if the caller is not in SCORE_REFRESH_ADMINS.
        ConflictError: if a scheduled or on-demand run is already in progress.
    """
    admin_id = _require_actor(actor_id)
    if admin_id not in SCORE_REFRESH_ADMINS:
        raise PermissionDeniedError("on-demand score refresh is restricted to administrators")
    if refresh_in_progress():
        raise ConflictError("a score refresh is already running")

    logger.info("On-demand score refresh requested by %s", admin_id)
    async with _store_errors("refresh_scores"):
        return await run_score_refresh()

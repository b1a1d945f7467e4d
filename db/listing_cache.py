"""
Read-through cache for the first pages of popular listing orders.

Layout per sort dimension D (all keys environment-prefixed):

    home:D:page:<fingerprint>   JSON ItemPage, TTL = D.ttl_seconds
    home:D:item_ids             SET of every item id on any cached D page

The id set lets a mutation of one item answer "could any cached D page be
stale?" with a single SISMEMBER. It does not record which page holds the
id, so a hit evicts every cached page of D.

Cache failures never fail a request: reads degrade to a miss, writes and
evictions are logged and skipped.
"""

import logging
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from db.redis import delete_by_pattern, get_redis_client, redis_key
from implementation.classes.enums import ListingDimension
from implementation.classes.schemas import ItemPage

logger = logging.getLogger(__name__)


def _page_key(dimension: ListingDimension, fingerprint: str) -> str:
    return redis_key("home", dimension.value, "page", fingerprint)


def _index_key(dimension: ListingDimension) -> str:
    return redis_key("home", dimension.value, "item_ids")


def _dimension_pattern(dimension: ListingDimension) -> str:
    return redis_key("home", dimension.value, "*")


async def get_page(dimension: ListingDimension, fingerprint: str) -> Optional[ItemPage]:
    """Return the cached page for a query fingerprint, or None on miss or cache failure."""
    try:
        raw = await get_redis_client().get(_page_key(dimension, fingerprint))
    except RedisError as e:
        logger.warning("Listing cache read failed for %s: %s", dimension.value, e)
        return None
    if raw is None:
        return None
    try:
        return ItemPage.model_validate_json(raw)
    except PydanticValidationError:
        logger.warning("Discarding unreadable listing cache entry for %s", dimension.value)
        return None


async def put_page(
    dimension: ListingDimension,
    fingerprint: str,
    page: ItemPage,
    item_ids: Iterable[int],
    ttl: Optional[int] = None,
) -> None:
    """
    Cache a listing page and union its item ids into the dimension's id set.

    Both keys get the same TTL; the page and the index update are sent as
    one MULTI/EXEC transaction.
    """
    ttl = ttl if ttl is not None else dimension.ttl_seconds
    members = [str(item_id) for item_id in item_ids]
    client = get_redis_client()
    try:
        pipe = client.pipeline(transaction=True)
        if members:
            pipe.sadd(_index_key(dimension), *members)
            pipe.expire(_index_key(dimension), ttl)
        pipe.set(_page_key(dimension, fingerprint), page.model_dump_json(), ex=ttl)
        await pipe.execute()
    except RedisError as e:
        logger.warning("Listing cache write failed for %s: %s", dimension.value, e)


async def invalidate_dimension(dimension: ListingDimension) -> int:
    """
    Evict every cached page of a dimension, and its id set.

    Returns:
        Number of keys removed (0 on cache failure).
    """
    try:
        removed = await delete_by_pattern(_dimension_pattern(dimension))
    except RedisError as e:
        logger.warning("Listing cache eviction failed for %s: %s", dimension.value, e)
        return 0
    logger.debug("Evicted %d listing cache keys for %s", removed, dimension.value)
    return removed


async def invalidate_if_present(dimension: ListingDimension, item_id: int) -> bool:
    """
    Evict all cached pages of `dimension` if any of them may contain `item_id`.

    Returns:
        True if the dimension was evicted.
    """
    try:
        is_member = await get_redis_client().sismember(_index_key(dimension), str(item_id))
    except RedisError as e:
        logger.warning("Listing cache index lookup failed for %s: %s", dimension.value, e)
        return False
    if not is_member:
        return False
    await invalidate_dimension(dimension)
    return True

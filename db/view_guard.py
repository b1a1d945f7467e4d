"""
Per-actor view de-duplication.

Each actor (user id, or network origin for anonymous callers) has a Redis
set of item ids already counted. The set expires VIEW_COOLDOWN_SECONDS after
the last item was added to it.
"""

import logging

from redis.exceptions import RedisError

from db.redis import get_redis_client, redis_key

logger = logging.getLogger(__name__)

VIEW_COOLDOWN_SECONDS: int = 60 * 60


async def should_count_view(actor_key: str, item_id: int) -> bool:
    """
    Record a view of `item_id` by `actor_key` and report whether it counts.

    SADD is atomic, so of any number of concurrent calls for the same pair
    inside the cooldown exactly one returns True. The cooldown restarts only
    when an item is added; a repeat view leaves it alone.

    Returns:
        True the first time the pair is seen within the cooldown window,
        False afterwards. Also False when the cache is unreachable, so an
        outage never inflates view counts.
    """
    key = redis_key("views", actor_key)
    client = get_redis_client()
    try:
        pipe = client.pipeline(transaction=True)
        pipe.sadd(key, str(item_id))
        pipe.ttl(key)
        added, ttl = await pipe.execute()
        # ttl is -1 when an earlier EXPIRE never landed; set it now so the
        # actor's set cannot outlive the cooldown.
        if added or ttl == -1:
            await client.expire(key, VIEW_COOLDOWN_SECONDS)
    except RedisError as e:
        logger.warning("View guard unavailable for actor %s: %s", actor_key, e)
        return False
    return bool(added)

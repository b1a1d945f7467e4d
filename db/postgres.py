"""
Item store for the copilot API: pool, query helpers and item-level queries.

A single psycopg v3 AsyncConnectionPool backs every read and write. Public
functions here cover item lookups and counters, listing pages, the item id
sequence, and the user/comment/stage lookups that decorate responses.
"""

import logging
import os
from typing import Optional, Sequence

from psycopg_pool import AsyncConnectionPool

from implementation.classes.schemas import CopilotItem, ListingQuery
from implementation.classes.errors import ValidationError
from implementation.misc.helpers import contains_pattern

logger = logging.getLogger(__name__)

# First id handed out when the item table is empty.
ITEM_ID_FLOOR: int = int(os.getenv("ITEM_ID_FLOOR", "20000"))

_ITEM_ID_SEQUENCE = "public.copilot_item_id_seq"

_ITEM_COLUMNS: tuple[str, ...] = (
    "item_id", "uploader_id", "title", "details", "stage_name", "operator_names",
    "content", "views", "like_count", "dislike_count", "rating_level",
    "rating_ratio", "hot_score", "upload_time", "deleted", "notification",
)
_ITEM_SELECT = ", ".join(_ITEM_COLUMNS)

# orderBy value -> sortable column. Anything not listed here is rejected,
# so the column name can be interpolated safely.
_ORDER_COLUMNS: dict[str, str] = {
    "hot": "hot_score",
    "id": "item_id",
    "views": "views",
    "rating": "rating_level",
    "upload_time": "upload_time",
}
_DEFAULT_ORDER_COLUMN = "item_id"


def _build_conninfo() -> str:
    """libpq key/value conninfo assembled from the POSTGRES_* variables."""
    return (
        f"host={os.getenv('POSTGRES_HOST')} "
        f"port={os.getenv('POSTGRES_PORT', '5432')} "
        f"dbname={os.getenv('POSTGRES_DB')} "
        f"user={os.getenv('POSTGRES_USER')} "
        f"password={os.getenv('POSTGRES_PASSWORD')}"
    )


# Opened by the API lifespan or the refresh CLI, never at import time.
pool = AsyncConnectionPool(
    conninfo=_build_conninfo(),
    min_size=2,
    max_size=int(os.getenv("POSTGRES_POOL_MAX", "10")),
    max_lifetime=1800,    # seconds before a connection is recycled
    max_idle=300,         # idle seconds before a connection above min_size closes
    timeout=5.0,          # PoolTimeout after this many seconds without a free connection
    open=False,
)


# ===============================
#     PRIVATE BASE METHODS
# ===============================

async def _execute_read(query: str, params: Sequence[object] | None = None) -> list[tuple]:
    """Run a SELECT on a pooled connection and return every row."""
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()


async def _execute_read_one(query: str, params: Sequence[object] | None = None) -> tuple | None:
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchone()


async def _execute_write(
    query: str,
    params: Sequence[object] | None = None,
    fetch_one: bool = False,
):
    """
    Run one statement in its own transaction and commit it.

    An exception inside the block leaves the commit unreached, and the
    pool's connection context rolls the transaction back.

    Returns:
        The first RETURNING row when fetch_one is set, else None.
    """
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            row = await cur.fetchone() if fetch_one else None
        await conn.commit()
        return row


async def _execute_on_conn(
    conn,
    query: str,
    params: Sequence[object] | None = None,
    fetch: bool = False,
):
    """
    Execute a query on a caller-managed connection, or on a fresh pooled one.

    When `conn` is supplied the caller owns the transaction and nothing is
    committed here. Without it a pooled connection is acquired and the
    statement is committed on its own.

    Returns:
        All fetched rows when `fetch` is True, otherwise None.
    """
    if conn is not None:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall() if fetch else None

    async with pool.connection() as own_conn:
        async with own_conn.cursor() as cur:
            await cur.execute(query, params)
            result = await cur.fetchall() if fetch else None
        await own_conn.commit()
        return result


def _row_to_item(row: Sequence[object]) -> CopilotItem:
    return CopilotItem(**dict(zip(_ITEM_COLUMNS, row)))


# ===============================
#        PUBLIC METHODS
# ===============================

async def check_postgres() -> str:
    """
    Ping Postgres via the pool to verify connectivity. Used by the /health endpoint.

    Returns:
        'ok' if the check succeeds, otherwise an error message string.
    """
    try:
        async with pool.connection() as conn:
            await conn.execute("SELECT 1")
        return "ok"
    except Exception as e:
        return str(e)


# ===============================
#         ITEM ID SEQUENCE
# ===============================

async def init_item_id_sequence(floor: int = ITEM_ID_FLOOR) -> int:
    """
    Reconcile the item id sequence with the ids already stored.

    Called once at startup. After this the next id handed out is greater than
    every stored id and never below `floor`, regardless of what the sequence
    held before (e.g. after a restore from backup).

    Returns:
        The next id the sequence will hand out.
    """
    query = f"""
    SELECT setval(
        '{_ITEM_ID_SEQUENCE}',
        GREATEST((SELECT COALESCE(MAX(item_id), 0) FROM public.copilot_item), %s),
        true
    );
    """
    row = await _execute_write(query, (floor - 1,), fetch_one=True)
    next_id = int(row[0]) + 1
    logger.info("Item id sequence initialized, next id %d", next_id)
    return next_id


async def next_item_id(conn=None) -> int:
    rows = await _execute_on_conn(conn, f"SELECT nextval('{_ITEM_ID_SEQUENCE}');", fetch=True)
    return int(rows[0][0])


# ===============================
#          ITEM METHODS
# ===============================

async def insert_item(item: CopilotItem) -> None:
    """Insert a freshly uploaded item. Counters and scores come from the model."""
    placeholders = ", ".join(["%s"] * len(_ITEM_COLUMNS))
    query = f"INSERT INTO public.copilot_item ({_ITEM_SELECT}) VALUES ({placeholders});"
    params = tuple(getattr(item, column) for column in _ITEM_COLUMNS)
    await _execute_write(query, params)


async def update_item_content(
    item_id: int,
    title: str,
    details: str,
    stage_name: str,
    operator_names: list[str],
    content: str,
) -> None:
    """Replace an item's document fields and bump its upload time."""
    query = """
    UPDATE public.copilot_item
    SET title = %s, details = %s, stage_name = %s, operator_names = %s,
        content = %s, upload_time = now()
    WHERE item_id = %s;
    """
    await _execute_write(query, (title, details, stage_name, operator_names, content, item_id))


async def fetch_item(item_id: int, include_deleted: bool = False) -> Optional[CopilotItem]:
    """
    Point lookup of one item.

    Args:
        item_id: The item to fetch.
        include_deleted: Also return soft-deleted items (used by owner mutations).
    """
    query = f"SELECT {_ITEM_SELECT} FROM public.copilot_item WHERE item_id = %s"
    if not include_deleted:
        query += " AND deleted = FALSE"
    row = await _execute_read_one(query, (item_id,))
    return _row_to_item(row) if row else None


async def item_exists(item_id: int) -> bool:
    row = await _execute_read_one(
        "SELECT 1 FROM public.copilot_item WHERE item_id = %s AND deleted = FALSE",
        (item_id,),
    )
    return row is not None


async def fetch_live_items() -> list[CopilotItem]:
    """All items that are not soft-deleted. Used by the daily score refresh."""
    rows = await _execute_read(
        f"SELECT {_ITEM_SELECT} FROM public.copilot_item WHERE deleted = FALSE ORDER BY item_id"
    )
    return [_row_to_item(row) for row in rows]


async def increment_views(item_id: int) -> None:
    """Atomic single-counter increment; never read-modify-write."""
    await _execute_write(
        "UPDATE public.copilot_item SET views = views + 1 WHERE item_id = %s;",
        (item_id,),
    )


async def update_item_rating_fields(
    item_id: int,
    like_count: int,
    dislike_count: int,
    rating_level: int,
    rating_ratio: float,
    conn=None,
) -> None:
    """
    Overwrite the rating counters and derived ratio/level of a live item.

    Args:
        conn: Optional existing async connection for caller-managed transaction scope.
    """
    query = """
    UPDATE public.copilot_item
    SET like_count = %s, dislike_count = %s, rating_level = %s, rating_ratio = %s
    WHERE item_id = %s AND deleted = FALSE;
    """
    await _execute_on_conn(conn, query, (like_count, dislike_count, rating_level, rating_ratio, item_id))


async def soft_delete_item(item_id: int) -> None:
    await _execute_write(
        "UPDATE public.copilot_item SET deleted = TRUE WHERE item_id = %s;",
        (item_id,),
    )


async def set_item_notification(item_id: int, status: bool) -> None:
    await _execute_write(
        "UPDATE public.copilot_item SET notification = %s WHERE item_id = %s;",
        (status, item_id),
    )


async def batch_update_hot_scores(item_ids: list[int], hot_scores: list[float]) -> None:
    """
    Persist recomputed hot scores for many items in a single round-trip.

    Args:
        item_ids: Items to update.
        hot_scores: New scores, positionally aligned with `item_ids`.
    """
    if not item_ids:
        return
    if len(item_ids) != len(hot_scores):
        raise ValueError("item_ids and hot_scores must have the same length")
    query = """
    UPDATE public.copilot_item AS c
    SET hot_score = u.hot_score
    FROM unnest(%s::bigint[], %s::float8[]) AS u(item_id, hot_score)
    WHERE c.item_id = u.item_id;
    """
    await _execute_write(query, (item_ids, hot_scores))


# ===============================
#         LISTING METHODS
# ===============================

def _resolve_order_column(order_by: Optional[str]) -> str:
    if not order_by:
        return _DEFAULT_ORDER_COLUMN
    column = _ORDER_COLUMNS.get(order_by)
    if column is None:
        raise ValidationError(f"unsupported orderBy: {order_by}")
    return column


async def _build_listing_where(query: ListingQuery, actor_id: Optional[str]) -> tuple[str, list]:
    """
    Build the WHERE clause and parameter list for a listing query.

    Params are accumulated in the same order as %s placeholders appear
    in the assembled SQL to prevent positional mismatches.
    """
    conditions: list[str] = ["deleted = FALSE"]
    params: list = []

    if query.level_keyword:
        stage_ids = await fetch_stage_ids_by_keyword(query.level_keyword)
        if stage_ids:
            conditions.append("stage_name = ANY(%s::text[])")
            params.append(stage_ids)
        else:
            conditions.append(r"stage_name ILIKE %s ESCAPE '\'")
            params.append(contains_pattern(query.level_keyword))

    if query.document:
        conditions.append(r"(title ILIKE %s ESCAPE '\' OR details ILIKE %s ESCAPE '\')")
        pattern = contains_pattern(query.document)
        params.extend((pattern, pattern))

    if query.operator:
        cleaned = query.operator.replace('"', "").replace("“", "").replace("”", "")
        for operator in (part.strip() for part in cleaned.split(",")):
            if not operator or operator == "~":
                continue
            if operator.startswith("~"):
                conditions.append(
                    r"NOT EXISTS (SELECT 1 FROM unnest(operator_names) AS o(name) WHERE o.name LIKE %s ESCAPE '\')"
                )
                params.append(contains_pattern(operator[1:]))
            else:
                conditions.append(
                    r"EXISTS (SELECT 1 FROM unnest(operator_names) AS o(name) WHERE o.name LIKE %s ESCAPE '\')"
                )
                params.append(contains_pattern(operator))

    if query.uploader_id:
        if query.uploader_id == "me":
            if actor_id:
                conditions.append("uploader_id = %s")
                params.append(actor_id)
        else:
            conditions.append("uploader_id = %s")
            params.append(query.uploader_id)

    return " AND ".join(conditions), params


async def fetch_item_page(query: ListingQuery, actor_id: Optional[str] = None) -> tuple[int, list[CopilotItem]]:
    """
    Run a filtered, sorted, paginated listing query.

    Args:
        query: A normalized listing query.
        actor_id: The authenticated caller, used to resolve uploaderId="me".

    Returns:
        (total matching items, items on the requested page)
    """
    order_column = _resolve_order_column(query.order_by)
    direction = "DESC" if query.desc else "ASC"
    where_clause, params = await _build_listing_where(query, actor_id)

    count_row = await _execute_read_one(
        f"SELECT COUNT(*) FROM public.copilot_item WHERE {where_clause}",
        tuple(params),
    )
    total = int(count_row[0]) if count_row else 0

    page_query = (
        f"SELECT {_ITEM_SELECT} FROM public.copilot_item\n"
        f"WHERE {where_clause}\n"
        f"ORDER BY {order_column} {direction}, item_id {direction}\n"
        f"LIMIT %s OFFSET %s"
    )
    rows = await _execute_read(page_query, (*params, query.limit, (query.page - 1) * query.limit))
    return total, [_row_to_item(row) for row in rows]


# ===============================
#    USER / COMMENT / STAGE DATA
# ===============================

async def fetch_user_names(user_ids: list[str]) -> dict[str, str]:
    """Batch lookup of display names. Unknown ids are simply absent from the result."""
    if not user_ids:
        return {}
    rows = await _execute_read(
        "SELECT user_id, user_name FROM public.maa_user WHERE user_id = ANY(%s::text[])",
        (list(dict.fromkeys(user_ids)),),
    )
    return {user_id: user_name for user_id, user_name in rows}


async def count_comments(item_ids: list[int]) -> dict[int, int]:
    """Number of non-deleted comments per item. Items without comments are absent."""
    if not item_ids:
        return {}
    rows = await _execute_read(
        """
        SELECT item_id, COUNT(*)
        FROM public.comments_area
        WHERE item_id = ANY(%s::bigint[]) AND deleted = FALSE
        GROUP BY item_id
        """,
        (item_ids,),
    )
    return {int(item_id): int(count) for item_id, count in rows}


async def fetch_stage_id_fuzzy(stage_name: str) -> Optional[str]:
    """
    Resolve a user-typed stage name to its canonical stage id.

    Exact stage id matches win over name/code matches.
    """
    row = await _execute_read_one(
        r"""
        SELECT stage_id FROM public.ark_level
        WHERE stage_id = %s OR name ILIKE %s ESCAPE '\' OR cat_three ILIKE %s ESCAPE '\'
        ORDER BY (stage_id = %s) DESC, stage_id
        LIMIT 1
        """,
        (stage_name, contains_pattern(stage_name), contains_pattern(stage_name), stage_name),
    )
    return row[0] if row else None


async def fetch_stage_ids_by_keyword(keyword: str) -> list[str]:
    """Stage ids whose name, category or code contains the keyword."""
    pattern = contains_pattern(keyword)
    rows = await _execute_read(
        r"""
        SELECT stage_id FROM public.ark_level
        WHERE name ILIKE %s ESCAPE '\'
           OR cat_one ILIKE %s ESCAPE '\'
           OR cat_two ILIKE %s ESCAPE '\'
           OR cat_three ILIKE %s ESCAPE '\'
        """,
        (pattern, pattern, pattern, pattern),
    )
    return [row[0] for row in rows]

"""Unit tests for db.postgres methods."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from db import postgres
from implementation.classes.errors import ValidationError
from implementation.classes.schemas import ListingQuery


def _mock_pool_connection(
    mocker,
    *,
    fetchall_result=None,
    fetchone_result=None,
):
    """Mock pool.connection() -> conn.cursor() async context managers and return mocks."""
    cursor = AsyncMock()
    cursor.fetchall.return_value = fetchall_result
    cursor.fetchone.return_value = fetchone_result

    # Build async context manager for conn.cursor().
    cursor_cm = MagicMock()
    cursor_cm.__aenter__ = AsyncMock(return_value=cursor)
    cursor_cm.__aexit__ = AsyncMock(return_value=None)

    connection = MagicMock()
    connection.commit = AsyncMock()
    connection.execute = AsyncMock()
    connection.cursor.return_value = cursor_cm

    # Build async context manager for pool.connection().
    connection_cm = MagicMock()
    connection_cm.__aenter__ = AsyncMock(return_value=connection)
    connection_cm.__aexit__ = AsyncMock(return_value=None)
    mocker.patch.object(postgres.pool, "connection", return_value=connection_cm)

    return connection, cursor


def _item_row(item_factory, **overrides) -> tuple:
    item = item_factory(**overrides)
    return tuple(getattr(item, column) for column in postgres._ITEM_COLUMNS)


def test_build_conninfo_uses_environment_variables(mocker) -> None:
    """An unset POSTGRES_PORT falls back to 5432."""
    env_values = {
        "POSTGRES_HOST": "localhost",
        "POSTGRES_DB": "copilots",
        "POSTGRES_USER": "tester",
        "POSTGRES_PASSWORD": "secret",
    }
    mocker.patch(
        "db.postgres.os.getenv",
        side_effect=lambda key, default=None: env_values.get(key, default),
    )
    assert postgres._build_conninfo() == (
        "host=localhost port=5432 dbname=copilots user=tester password=secret"
    )


@pytest.mark.asyncio
async def test_execute_read_fetches_all_rows(mocker) -> None:
    """_execute_read should execute SQL and fetch all rows."""
    _, cursor = _mock_pool_connection(mocker, fetchall_result=[(1,), (2,)])
    result = await postgres._execute_read("SELECT 1", (123,))
    cursor.execute.assert_awaited_once_with("SELECT 1", (123,))
    cursor.fetchall.assert_awaited_once()
    assert result == [(1,), (2,)]


@pytest.mark.asyncio
async def test_execute_read_one_fetches_single_row(mocker) -> None:
    """_execute_read_one should execute SQL and fetch one row."""
    _, cursor = _mock_pool_connection(mocker, fetchone_result=(42,))
    result = await postgres._execute_read_one("SELECT 1", (456,))
    cursor.execute.assert_awaited_once_with("SELECT 1", (456,))
    assert result == (42,)


@pytest.mark.asyncio
async def test_execute_write_with_fetch_one_commits_and_returns_row(mocker) -> None:
    connection, cursor = _mock_pool_connection(mocker, fetchone_result=(99,))
    result = await postgres._execute_write("UPDATE ... RETURNING id", (1,), fetch_one=True)
    cursor.execute.assert_awaited_once_with("UPDATE ... RETURNING id", (1,))
    connection.commit.assert_awaited_once()
    assert result == (99,)


@pytest.mark.asyncio
async def test_execute_on_conn_with_existing_connection_does_not_commit() -> None:
    """_execute_on_conn should reuse the caller connection and leave the transaction open."""
    cursor = AsyncMock()
    cursor.fetchall.return_value = [(1,)]
    cursor_cm = MagicMock()
    cursor_cm.__aenter__ = AsyncMock(return_value=cursor)
    cursor_cm.__aexit__ = AsyncMock(return_value=None)
    connection = MagicMock()
    connection.commit = AsyncMock()
    connection.cursor.return_value = cursor_cm

    result = await postgres._execute_on_conn(connection, "SELECT 1", (123,), fetch=True)

    cursor.execute.assert_awaited_once_with("SELECT 1", (123,))
    connection.commit.assert_not_awaited()
    assert result == [(1,)]


@pytest.mark.asyncio
async def test_execute_on_conn_without_connection_commits_pool_connection(mocker) -> None:
    connection, cursor = _mock_pool_connection(mocker)
    result = await postgres._execute_on_conn(None, "UPDATE t SET x = %s", (9,))
    cursor.execute.assert_awaited_once_with("UPDATE t SET x = %s", (9,))
    connection.commit.assert_awaited_once()
    assert result is None


@pytest.mark.asyncio
async def test_check_postgres_returns_ok_on_success(mocker) -> None:
    connection, _ = _mock_pool_connection(mocker)
    assert await postgres.check_postgres() == "ok"
    connection.execute.assert_awaited_once_with("SELECT 1")


@pytest.mark.asyncio
async def test_check_postgres_returns_error_string_on_failure(mocker) -> None:
    connection_cm = AsyncMock()
    connection_cm.__aenter__.side_effect = RuntimeError("db unavailable")
    mocker.patch.object(postgres.pool, "connection", return_value=connection_cm)
    assert await postgres.check_postgres() == "db unavailable"


# ---------------------------------------------------------------------------
# Item id sequence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_init_item_id_sequence_reconciles_with_floor(mocker) -> None:
    """The sequence is set to max(stored max, floor - 1) so the next id is above both."""
    execute_write = mocker.patch("db.postgres._execute_write", new=AsyncMock(return_value=(20512,)))
    next_id = await postgres.init_item_id_sequence(floor=20000)

    query, params = execute_write.await_args.args
    assert "setval(" in query
    assert "GREATEST(" in query
    assert params == (19999,)
    assert next_id == 20513


@pytest.mark.asyncio
async def test_next_item_id_uses_sequence(mocker) -> None:
    execute_on_conn = mocker.patch("db.postgres._execute_on_conn", new=AsyncMock(return_value=[(20000,)]))
    assert await postgres.next_item_id() == 20000
    assert "nextval('public.copilot_item_id_seq')" in execute_on_conn.await_args.args[1]


# ---------------------------------------------------------------------------
# Item methods
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_item_maps_row_and_excludes_deleted(mocker, copilot_item_factory) -> None:
    read_one = mocker.patch(
        "db.postgres._execute_read_one",
        new=AsyncMock(return_value=_item_row(copilot_item_factory, item_id=20007)),
    )
    item = await postgres.fetch_item(20007)
    assert item.item_id == 20007
    assert item.operator_names == ["Myrtle", "Kroos"]
    assert "deleted = FALSE" in read_one.await_args.args[0]


@pytest.mark.asyncio
async def test_fetch_item_include_deleted_drops_filter(mocker) -> None:
    read_one = mocker.patch("db.postgres._execute_read_one", new=AsyncMock(return_value=None))
    assert await postgres.fetch_item(1, include_deleted=True) is None
    assert "deleted = FALSE" not in read_one.await_args.args[0]


@pytest.mark.asyncio
async def test_insert_item_binds_every_column_in_order(mocker, copilot_item_factory) -> None:
    execute_write = mocker.patch("db.postgres._execute_write", new=AsyncMock())
    item = copilot_item_factory()
    await postgres.insert_item(item)
    query, params = execute_write.await_args.args
    assert query.count("%s") == len(postgres._ITEM_COLUMNS)
    assert params[0] == item.item_id
    assert params == _item_row(copilot_item_factory)


@pytest.mark.asyncio
async def test_increment_views_is_atomic_counter_update(mocker) -> None:
    execute_write = mocker.patch("db.postgres._execute_write", new=AsyncMock())
    await postgres.increment_views(5)
    query, params = execute_write.await_args.args
    assert "views = views + 1" in query
    assert params == (5,)


@pytest.mark.asyncio
async def test_update_item_rating_fields_passes_connection(mocker) -> None:
    execute_on_conn = mocker.patch("db.postgres._execute_on_conn", new=AsyncMock())
    conn = object()
    await postgres.update_item_rating_fields(3, 4, 1, 8, 0.8, conn=conn)
    passed_conn, _, params = execute_on_conn.await_args.args
    assert passed_conn is conn
    assert params == (4, 1, 8, 0.8, 3)


@pytest.mark.asyncio
async def test_batch_update_hot_scores_empty_input_short_circuits(mocker) -> None:
    execute_write = mocker.patch("db.postgres._execute_write", new=AsyncMock())
    await postgres.batch_update_hot_scores([], [])
    execute_write.assert_not_awaited()


@pytest.mark.asyncio
async def test_batch_update_hot_scores_rejects_length_mismatch() -> None:
    with pytest.raises(ValueError):
        await postgres.batch_update_hot_scores([1, 2], [0.5])


@pytest.mark.asyncio
async def test_batch_update_hot_scores_single_round_trip(mocker) -> None:
    execute_write = mocker.patch("db.postgres._execute_write", new=AsyncMock())
    await postgres.batch_update_hot_scores([1, 2], [10.5, 3.2])
    execute_write.assert_awaited_once()
    query, params = execute_write.await_args.args
    assert "unnest(%s::bigint[], %s::float8[])" in query
    assert params == ([1, 2], [10.5, 3.2])


# ---------------------------------------------------------------------------
# Listing methods
# ---------------------------------------------------------------------------


def test_resolve_order_column_allow_list() -> None:
    assert postgres._resolve_order_column(None) == "item_id"
    assert postgres._resolve_order_column("hot") == "hot_score"
    assert postgres._resolve_order_column("rating") == "rating_level"


def test_resolve_order_column_rejects_unknown_value() -> None:
    with pytest.raises(ValidationError):
        postgres._resolve_order_column("title; DROP TABLE copilot_item")


@pytest.mark.asyncio
async def test_build_listing_where_without_filters() -> None:
    where_clause, params = await postgres._build_listing_where(ListingQuery(), None)
    assert where_clause == "deleted = FALSE"
    assert params == []


@pytest.mark.asyncio
async def test_build_listing_where_preserves_param_order(mocker) -> None:
    """Filters should append params in the same order as their placeholders."""
    resolve_stages = mocker.patch(
        "db.postgres.fetch_stage_ids_by_keyword", new=AsyncMock(return_value=["main_01-07"])
    )
    query = ListingQuery(
        level_keyword="1-7",
        document="low_rarity",
        operator='"Myrtle", ~Kroos',
        uploader_id="me",
    )
    where_clause, params = await postgres._build_listing_where(query, "u-owner")

    resolve_stages.assert_awaited_once_with("1-7")
    assert "stage_name = ANY(%s::text[])" in where_clause
    assert "(title ILIKE %s ESCAPE '\\' OR details ILIKE %s ESCAPE '\\')" in where_clause
    assert "NOT EXISTS" in where_clause
    assert "uploader_id = %s" in where_clause
    assert where_clause.count("%s") == len(params)
    assert params == [
        ["main_01-07"],
        "%low\\_rarity%",
        "%low\\_rarity%",
        "%Myrtle%",
        "%Kroos%",
        "u-owner",
    ]


@pytest.mark.asyncio
async def test_build_listing_where_falls_back_to_stage_name_match(mocker) -> None:
    mocker.patch("db.postgres.fetch_stage_ids_by_keyword", new=AsyncMock(return_value=[]))
    where_clause, params = await postgres._build_listing_where(ListingQuery(level_keyword="CE-5"), None)
    assert "stage_name ILIKE %s" in where_clause
    assert params == ["%CE-5%"]


@pytest.mark.asyncio
async def test_build_listing_where_anonymous_me_is_ignored() -> None:
    where_clause, params = await postgres._build_listing_where(ListingQuery(uploader_id="me"), None)
    assert "uploader_id" not in where_clause
    assert params == []


@pytest.mark.asyncio
async def test_fetch_item_page_paginates_and_orders(mocker, copilot_item_factory) -> None:
    read_one = mocker.patch("db.postgres._execute_read_one", new=AsyncMock(return_value=(31,)))
    read = mocker.patch(
        "db.postgres._execute_read",
        new=AsyncMock(return_value=[_item_row(copilot_item_factory, item_id=20011)]),
    )
    total, items = await postgres.fetch_item_page(ListingQuery(page=3, limit=10, order_by="views", desc=False))

    assert total == 31
    assert [item.item_id for item in items] == [20011]
    assert "COUNT(*)" in read_one.await_args.args[0]
    page_query, page_params = read.await_args.args
    assert "ORDER BY views ASC, item_id ASC" in page_query
    assert page_params == (10, 20)


@pytest.mark.asyncio
async def test_fetch_item_page_rejects_unknown_order_before_querying(mocker) -> None:
    read_one = mocker.patch("db.postgres._execute_read_one", new=AsyncMock())
    with pytest.raises(ValidationError):
        await postgres.fetch_item_page(ListingQuery(order_by="likes"))
    read_one.assert_not_awaited()


# ---------------------------------------------------------------------------
# User / comment / stage data
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_user_names_dedupes_ids(mocker) -> None:
    read = mocker.patch("db.postgres._execute_read", new=AsyncMock(return_value=[("u1", "Doctor")]))
    assert await postgres.fetch_user_names(["u1", "u1", "u2"]) == {"u1": "Doctor"}
    assert read.await_args.args[1] == (["u1", "u2"],)


@pytest.mark.asyncio
async def test_fetch_user_names_empty_input_short_circuits(mocker) -> None:
    read = mocker.patch("db.postgres._execute_read", new=AsyncMock())
    assert await postgres.fetch_user_names([]) == {}
    read.assert_not_awaited()


@pytest.mark.asyncio
async def test_count_comments_maps_counts(mocker) -> None:
    mocker.patch("db.postgres._execute_read", new=AsyncMock(return_value=[(1, 3), (2, 1)]))
    assert await postgres.count_comments([1, 2, 3]) == {1: 3, 2: 1}


@pytest.mark.asyncio
async def test_fetch_stage_id_fuzzy_returns_first_match(mocker) -> None:
    read_one = mocker.patch("db.postgres._execute_read_one", new=AsyncMock(return_value=("main_01-07",)))
    assert await postgres.fetch_stage_id_fuzzy("1-7") == "main_01-07"
    params = read_one.await_args.args[1]
    assert params == ("1-7", "%1-7%", "%1-7%", "1-7")

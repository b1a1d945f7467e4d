import asyncio
import os
from contextlib import asynccontextmanager, suppress
from dataclasses import asdict
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

load_dotenv()

from db.copilot_service import (  # noqa: E402
    delete_item,
    get_item,
    list_items,
    refresh_scores,
    set_notification,
    submit_rating,
    update_item,
    upload_item,
)
from db.postgres import check_postgres, init_item_id_sequence, pool  # noqa: E402
from db.redis import check_redis, close_redis, init_redis  # noqa: E402
from db.score_refresh import scheduled_score_refresh  # noqa: E402
from implementation.classes.errors import CopilotServiceError  # noqa: E402
from implementation.classes.schemas import (  # noqa: E402
    DeleteRequest,
    ListingQuery,
    NotificationRequest,
    RatingRequest,
    UpdateRequest,
    UploadRequest,
)

SCORE_REFRESH_ENABLED: bool = os.getenv("SCORE_REFRESH_ENABLED", "true").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan handler for connection and background task lifecycle.

    Opens the Postgres pool and Redis client on startup, reconciles the item id
    sequence and starts the daily hot score refresh. On shutdown the refresh
    task is cancelled, which returns only after any run in progress has
    finished, and then connections are closed.
    """
    # Open the pool and establish initial connections
    await pool.open()
    # Validate that connections actually work (fast-fail if Postgres is unreachable)
    await pool.check()
    await init_redis()
    await init_item_id_sequence()

    refresh_task: Optional[asyncio.Task] = None
    if SCORE_REFRESH_ENABLED:
        refresh_task = asyncio.create_task(scheduled_score_refresh())
    yield
    if refresh_task is not None:
        refresh_task.cancel()
        with suppress(asyncio.CancelledError):
            await refresh_task
    await close_redis()
    await pool.close()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(CopilotServiceError)
async def copilot_service_error_handler(request: Request, exc: CopilotServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def _actor_key(request: Request, user_id: Optional[str]) -> str:
    """Authenticated user id, or the caller's network origin for anonymous requests."""
    if user_id:
        return user_id
    return request.client.host if request.client else "unknown"


@app.get("/health")
async def health_check():
    """
    Health check endpoint that validates connectivity to all external services.

    Returns a dictionary with status for each service:
    - postgres: 'ok' or error message (checked via connection pool)
    - redis: 'ok' or error message
    """
    results = {}
    results["postgres"] = await check_postgres()
    results["redis"] = await check_redis()
    return results


@app.get("/copilot/get/{item_id}")
async def get_copilot(item_id: int, request: Request, x_user_id: Optional[str] = Header(default=None)):
    return await get_item(item_id, _actor_key(request, x_user_id))


@app.post("/copilot/query")
async def query_copilots(query: ListingQuery, x_user_id: Optional[str] = Header(default=None)):
    return await list_items(query, x_user_id)


@app.post("/copilot/rating")
async def rate_copilot(body: RatingRequest, request: Request, x_user_id: Optional[str] = Header(default=None)):
    return await submit_rating(body.id, _actor_key(request, x_user_id), body.rating)


@app.post("/copilot/upload")
async def upload_copilot(body: UploadRequest, x_user_id: Optional[str] = Header(default=None)):
    return {"id": await upload_item(x_user_id, body.content)}


@app.post("/copilot/update")
async def update_copilot(body: UpdateRequest, x_user_id: Optional[str] = Header(default=None)):
    await update_item(x_user_id, body.id, body.content)
    return {"status": "ok"}


@app.post("/copilot/delete")
async def delete_copilot(body: DeleteRequest, x_user_id: Optional[str] = Header(default=None)):
    await delete_item(x_user_id, body.id)
    return {"status": "ok"}


@app.post("/copilot/status")
async def copilot_notification_status(body: NotificationRequest, x_user_id: Optional[str] = Header(default=None)):
    await set_notification(x_user_id, body.id, body.status)
    return {"status": "ok"}


@app.post("/copilot/score/refresh")
async def refresh_copilot_scores(x_user_id: Optional[str] = Header(default=None)):
    """Run the hot score refresh now instead of waiting for the daily schedule. Admins only."""
    return asdict(await refresh_scores(x_user_id))

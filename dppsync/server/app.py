"""FastAPI relay server application."""

import hmac
import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from ..config import ServerConfig
from ..operation import Operation
from .storage import RelayStore

logger = logging.getLogger(__name__)


class OperationIn(BaseModel):
    """An operation as submitted by a client (payload is opaque)."""

    id: str = Field(min_length=1)
    clientId: str | None = None
    table: str
    type: Literal["create", "update", "delete"]
    key: str
    payload: Any = None
    timestamp: int
    keyHash: str | None = None


class PushRequest(BaseModel):
    ops: list[OperationIn]
    clientId: str | None = None


def create_app(config: ServerConfig, store: RelayStore) -> FastAPI:
    """Create the FastAPI relay application.

    Args:
        config: Server configuration.
        store: Operation storage.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="dppsync relay",
        description="Cursor-based operation relay for dppsync clients",
        version="0.1.0",
    )

    app.state.config = config
    app.state.store = store

    @app.middleware("http")
    async def require_access_token(request: Request, call_next):
        if config.access_token and request.url.path.startswith("/api/"):
            token = request.headers.get("X-Access-Token", "")
            if not hmac.compare_digest(token.encode(), config.access_token.encode()):
                logger.warning(f"Rejected {request.method} {request.url.path}: bad access token")
                return JSONResponse(
                    status_code=401, content={"success": False, "error": "Unauthorized"}
                )
        return await call_next(request)

    # ==================== Sync API ====================

    @app.post("/api/sync/push")
    async def api_push(request: Request):
        """Append a batch of operations to the global sequence."""
        try:
            body = PushRequest.model_validate(await request.json())
        except (ValidationError, ValueError) as e:
            logger.warning(f"Invalid push request: {e}")
            return JSONResponse(
                status_code=400, content={"success": False, "error": "Invalid request"}
            )

        client_id = body.clientId or request.headers.get("X-Client-ID")
        ops = [Operation.from_dict(op.model_dump()) for op in body.ops]
        acks, cursor = store.push(ops, client_id)

        return {
            "success": True,
            "count": len(ops),
            "cursor": cursor,
            "acks": acks,
        }

    @app.get("/api/sync/pull")
    async def api_pull(
        cursor: int = 0,
        clientId: str | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Operations after ``cursor``, oldest first."""
        page_size = config.page_size
        if limit is not None:
            page_size = max(1, min(limit, config.page_size))

        ops = store.pull(cursor, exclude_client_id=clientId, limit=page_size)
        next_cursor = ops[-1].server_seq if ops else cursor

        return {
            "ops": [op.evolve(server_seq=None).to_dict() for op in ops],
            "cursor": next_cursor,
        }

    @app.get("/api/sync/pending")
    async def api_pending(cursor: int = 0, clientId: str | None = None) -> dict[str, Any]:
        """Count operations after ``cursor`` without returning them."""
        return {"count": store.count_pending(cursor, exclude_client_id=clientId)}

    @app.get("/api/stats")
    async def api_stats() -> dict[str, Any]:
        stats = {"timestamp": datetime.now().isoformat()}
        stats.update(store.get_stats())
        return stats

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers."""
        return {"status": "ok"}

    return app

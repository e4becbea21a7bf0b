import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI, HTTPException, Request

if TYPE_CHECKING:
    from txstress.session import Session

log = logging.getLogger("txstress.app")

r_state = APIRouter(prefix="/state", tags=["State"])


def _session(request: Request) -> "Session":
    return request.app.state.session


def create_app(session: "Session") -> FastAPI:
    """Read-only view of a running session's tracker."""
    app = FastAPI(title="txstress", description="Live state of a txstress run")
    app.state.session = session

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(r_state)
    return app


@r_state.get("/summary")
async def state_summary(request: Request):
    s = _session(request)
    stats = s.tracker.stats()
    driver = s.driver
    return {
        "mode": s.config.mode,
        "driver_state": driver.state if driver else None,
        "sent": driver.sent if driver else 0,
        "failed": driver.failed if driver else 0,
        "completed": stats.completed,
        "pending": stats.pending,
        "avg_confirmation_time": stats.avg_confirmation_time,
        "blocks_processed": s.feed.blocks_processed,
        "last_block": s.feed.last_height,
        "block_queue_size": s.feed.queue.qsize(),
    }


@r_state.get("/pending")
async def state_pending(request: Request):
    return {"pending": _session(request).tracker.snapshot_pending()}


@r_state.get("/completed")
async def state_completed(request: Request):
    return {"completed": _session(request).tracker.snapshot_completed()}


@r_state.get("/tx/{tx_hash}")
async def state_tx(tx_hash: str, request: Request):
    data = _session(request).tracker.snapshot_tx(tx_hash.lower())
    if not data:
        raise HTTPException(404, "tx not tracked")
    return data

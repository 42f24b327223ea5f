from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .worker import Worker


logger = logging.getLogger(__name__)

router = APIRouter()


class StartBotResponse(BaseModel):
    message: str
    error: Optional[str] = None


@router.post("/start-bot", response_model=StartBotResponse)
def start_bot(request: Request) -> JSONResponse:
    """(Re)start the worker: log in again and make sure polling runs. 200 on a live session, else 500."""
    worker: Worker = request.app.state.worker
    logger.info("Start requested through the control surface.")
    try:
        ok, detail = worker.restart(timeout=request.app.state.start_timeout_seconds)
    except Exception as e:
        logger.exception("Start request failed")
        return JSONResponse(status_code=500, content={"message": "Failed to start bot.", "error": str(e)})
    if ok:
        return JSONResponse(status_code=200, content={"message": "Bot started and logged in successfully!"})
    return JSONResponse(status_code=500, content={"message": "Bot failed to log in.", "error": detail})


@router.get("/health")
def health(request: Request) -> dict[str, Any]:
    worker: Worker = request.app.state.worker
    return worker.status()


def create_app(worker: Worker, *, start_timeout_seconds: float = 180.0, manage_worker: bool = False) -> FastAPI:
    """
    Build the control-surface app around `worker`.

    With `manage_worker`, the worker starts polling when the app starts and is stopped on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_worker:
            worker.start()
        try:
            yield
        finally:
            if manage_worker:
                worker.stop()

    app = FastAPI(title="referral-watch", lifespan=lifespan)
    app.state.worker = worker
    app.state.start_timeout_seconds = start_timeout_seconds
    app.include_router(router)
    return app

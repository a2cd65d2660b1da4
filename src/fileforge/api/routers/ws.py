from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from fileforge.api.dependencies import get_orchestrator
from fileforge.conversion_engine.events.broadcaster import QueueSubscriber
from fileforge.conversion_engine.services.orchestration_service import ConversionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

_POLL_SECONDS = 0.5


async def _pump(websocket: WebSocket, subscriber: QueueSubscriber) -> None:
    while not subscriber.closed:
        message = await run_in_threadpool(subscriber.get, _POLL_SECONDS)
        if message is not None:
            await websocket.send_json(message)


@router.websocket("/ws")
async def job_updates(
    websocket: WebSocket,
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
) -> None:
    """Clients send {type: subscribe|unsubscribe, jobId} and receive job updates."""
    await websocket.accept()
    logger.debug("WebSocket client connected")
    subscriber = QueueSubscriber()
    pump = asyncio.create_task(_pump(websocket, subscriber))
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                subscriber.send({"type": "error", "data": {"error": "Invalid message format"}})
                continue
            if not isinstance(message, dict):
                continue
            kind, job_id = message.get("type"), message.get("jobId")
            if not job_id:
                continue
            if kind == "subscribe":
                await run_in_threadpool(orchestrator.subscribe, str(job_id), subscriber)
            elif kind == "unsubscribe":
                orchestrator.unsubscribe(str(job_id), subscriber)
    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected")
    finally:
        subscriber.close()
        orchestrator.broadcaster.drop_handle(subscriber)
        pump.cancel()

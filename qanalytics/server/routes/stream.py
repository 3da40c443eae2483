"""WebSocket stream of analysis updates.

``/api/studies/{id}/analysis/stream`` sends the current snapshot on connect,
then one message per session change, tagged with the revision:

- ``{"type": "delta", ...}`` after an uncommitted manual rotation
- ``{"type": "snapshot", ...}`` after every other change
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from qanalytics.analysis.models import AnalysisSnapshot
from qanalytics.server.routes.analysis import get_session, serialize_delta, serialize_snapshot
from qanalytics.session import Update

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# WebSocket close code for "no such analysis" (application range 4000-4999)
_CLOSE_NOT_FOUND = 4404


def _message(update: Update) -> dict[str, Any]:
    if isinstance(update, AnalysisSnapshot):
        return {"type": "snapshot", **serialize_snapshot(update).model_dump(mode="json")}
    return {"type": "delta", **serialize_delta(update).model_dump(mode="json")}


@router.websocket("/studies/{study_id}/analysis/stream")
async def stream_analysis(websocket: WebSocket, study_id: int) -> None:
    """Push snapshots and rotation deltas for one study's session."""
    state = websocket.app.state
    await websocket.accept()
    try:
        session = await state.registry.run(
            str(study_id), get_session, state.db_factory, state.registry, state.settings, study_id
        )
    except HTTPException as exc:
        await websocket.close(code=_CLOSE_NOT_FOUND, reason=str(exc.detail))
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Update] = asyncio.Queue()

    def _listener(update: Update) -> None:
        # Called from the worker thread that ran the command
        loop.call_soon_threadsafe(queue.put_nowait, update)

    unsubscribe = session.subscribe(_listener)
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        snapshot = await asyncio.to_thread(session.snapshot)
        await websocket.send_json(_message(snapshot))
        while True:
            next_update = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait(
                {next_update, disconnected}, return_when=asyncio.FIRST_COMPLETED
            )
            if disconnected in done:
                next_update.cancel()
                break
            await websocket.send_json(_message(next_update.result()))
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        disconnected.cancel()
    logger.debug("Stream client for study %d disconnected", study_id)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Return once the client goes away; inbound messages are ignored."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return

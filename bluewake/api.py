"""HTTP control API and journal websocket over a running coordinator."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from pathlib import Path
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from bluewake.coordinator import PowerEventCoordinator
from bluewake.journal import EventJournal
from bluewake.ui import BufferedSink

logger = logging.getLogger(__name__)


class StrategySelection(BaseModel):
    id: str


def _journal_path(coordinator: PowerEventCoordinator) -> Optional[Path]:
    journal = coordinator.journal
    return journal.path if isinstance(journal, EventJournal) else None


def create_app(
    coordinator: PowerEventCoordinator,
    *,
    sink: Optional[BufferedSink] = None,
    lifecycle: Optional[Callable[[], AsyncContextManager[None]]] = None,
    poll_interval: float = 0.5,
) -> FastAPI:
    """Build the control API around one coordinator.

    ``lifecycle`` replaces the default start/teardown of the coordinator, for
    hosts (logind) that own the lifecycle signals themselves.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if lifecycle is not None:
            async with lifecycle():
                yield
            return
        await coordinator.start()
        try:
            yield
        finally:
            await coordinator.teardown()

    app = FastAPI(title="bluewake API", version="0.1.0", lifespan=lifespan)
    app.state.coordinator = coordinator
    app.state.sink = sink

    @app.get("/health")
    async def health():
        return {"status": "ok", "time": time.time()}

    @app.get("/status")
    async def status():
        return await coordinator.status()

    @app.post("/adapter/enable")
    async def enable(wait: bool = Query(False, description="Wait for the enable attempt to finish")):
        handle = coordinator.enable()
        if not wait:
            return {"status": "enabling"}
        result = await handle.wait()
        return {"status": result.value}

    @app.post("/adapter/disable")
    async def disable():
        issued = await coordinator.disable()
        return {"status": "disabled" if issued else "already-off"}

    @app.post("/adapter/force-off")
    async def force_off():
        await coordinator.force_off()
        return {"status": "off"}

    @app.get("/devices")
    async def devices(paired: bool = False):
        directory = coordinator.directory
        found = await (directory.paired_devices() if paired else directory.list_devices())
        return [device.to_dict() for device in found]

    @app.post("/devices/scan")
    async def scan(duration: float = Query(10.0, ge=0.0, le=120.0, description="Discovery time in seconds")):
        found = await coordinator.scan(duration)
        return [device.to_dict() for device in found]

    @app.post("/devices/{address}/connect")
    async def connect(address: str):
        if not await coordinator.connect_device(address):
            raise HTTPException(status_code=502, detail=f"Connection to {address} failed")
        return {"status": "connected", "address": address.upper()}

    @app.post("/devices/{address}/disconnect")
    async def disconnect(address: str):
        if not await coordinator.disconnect_device(address):
            raise HTTPException(status_code=502, detail=f"Disconnect from {address} failed")
        return {"status": "disconnected", "address": address.upper()}

    @app.get("/strategies")
    async def strategies():
        return coordinator.engine.describe()

    @app.put("/strategies/current")
    async def select_strategy(selection: StrategySelection):
        try:
            strategy = coordinator.engine.select_strategy(selection.id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        return strategy.to_dict()

    @app.post("/reconnect")
    async def reconnect(strategy: Optional[str] = None):
        outcome = await coordinator.engine.reconnect_now(strategy)
        return {"outcome": outcome.value}

    @app.delete("/last-device")
    async def forget():
        coordinator.forget_device()
        return {"status": "forgotten"}

    @app.get("/notifications")
    async def notifications(limit: Optional[int] = Query(None, ge=0)):
        if sink is None:
            return []
        return sink.recent(limit)

    @app.websocket("/events")
    async def events(ws: WebSocket):
        await ws.accept()
        path = _journal_path(coordinator)
        pos = 0
        try:
            while True:
                if path is not None and os.path.exists(path):
                    with open(path, "r", encoding="utf-8") as handle:
                        handle.seek(pos)
                        while True:
                            line = handle.readline()
                            if not line.endswith("\n"):
                                break
                            pos = handle.tell()
                            if line.strip():
                                await ws.send_text(json.dumps({"csv": line.strip()}))
                await asyncio.sleep(poll_interval)
        except WebSocketDisconnect:
            return

    return app


__all__ = ["StrategySelection", "create_app"]

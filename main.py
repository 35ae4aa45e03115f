from __future__ import annotations

import asyncio
import os
import socket

from fastapi import FastAPI, HTTPException

from nodecap import db
from nodecap.api_models import NodeState, ResourceModel
from nodecap.capacity import get_resources
from nodecap.isolation import available_kinds, create, destroy
from nodecap.probe import HostProbe, PsutilHostProbe
from nodecap.registration import register_with_master
from nodecap.settings import settings

app = FastAPI(title="nodecap agent")

PROBE: HostProbe = PsutilHostProbe()


def node_state() -> NodeState:
    resources = getattr(app.state, "resources", None)
    isolator = getattr(app.state, "isolator", None)
    if resources is None or isolator is None:
        raise HTTPException(status_code=503, detail="Agent is not initialized")
    return NodeState(
        hostname=socket.gethostname(),
        work_dir=settings.work_dir,
        isolation=isolator.kind,
        resources=[ResourceModel(**r) for r in resources.to_records()],
    )


@app.on_event("startup")
async def startup() -> None:
    db.init_db()
    os.makedirs(settings.work_dir, exist_ok=True)

    # A malformed NODECAP_RESOURCES raises here and aborts startup.
    app.state.resources = await get_resources(settings, probe=PROBE)

    isolator = create(settings.isolation)
    if isolator is None:
        raise RuntimeError(
            f"Isolation backend '{settings.isolation}' is not available on this host "
            f"(available: {', '.join(available_kinds())})"
        )
    app.state.isolator = isolator

    if settings.master_url:
        await asyncio.to_thread(register_with_master, settings.master_url, node_state(), settings.register_timeout_s)


@app.on_event("shutdown")
def shutdown() -> None:
    destroy(getattr(app.state, "isolator", None))
    app.state.isolator = None


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/state", response_model=NodeState)
def state() -> NodeState:
    return node_state()


@app.get("/events")
def events(limit: int = 100) -> list[dict]:
    return db.latest_events(max(1, min(limit, 1000)))

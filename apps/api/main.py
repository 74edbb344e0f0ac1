# apps/api/main.py
from __future__ import annotations

import asyncio
import json
import os
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from relay import settings
from relay.catalog import load_catalog
from relay.errors import PipelineBusyError
from relay.models import PipelineState, Stage
from relay.normalize import format_bytes
from relay.pipeline import PipelineRunner

EVENT_QUEUE_SIZE = int(os.getenv("RELAY_EVENT_QUEUE", "256"))

# --------- Runner (one session per process) ----------
runner = PipelineRunner(
    load_catalog(),
    endpoint=settings.endpoint_from_env(),
    timeout=settings.request_timeout(),
)

# --------- FastAPI app & CORS ----------
app = FastAPI(title="Agent Relay API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------- Pydantic models ----------
class PlanRequest(BaseModel):
    demo_index: Optional[int] = Field(None, description="Catalog index of the demo to plan")
    problem: Optional[str] = Field(None, description="Custom problem statement; used when demo_index is absent")


class UploadRequest(BaseModel):
    title: str = Field(..., description="File name; its extension decides the data type")
    content: str = ""
    size: Optional[int] = None


class NotesRequest(BaseModel):
    notes: str = ""


# --------- Helpers ----------
def _dump(state: PipelineState) -> Dict[str, Any]:
    return state.model_dump(mode="json")


def _busy() -> HTTPException:
    return HTTPException(status_code=409, detail="Pipeline is busy")


def latest_snapshots(maxsize: int = EVENT_QUEUE_SIZE):
    """
    Bounded per-client queue. When a slow client lets it fill, the oldest
    snapshot is dropped; each snapshot is a full state, so the newest wins.
    """
    queue: "asyncio.Queue[PipelineState]" = asyncio.Queue(maxsize=maxsize)

    def push(snapshot: PipelineState) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(snapshot)

    return queue, push


# --------- Routes ----------
# All routes are async so every state transition happens on the event loop thread.
@app.get("/health")
async def health():
    return {"status": "ok", "stage": runner.state.stage.value, "model": runner.model}


@app.get("/demos")
async def demos() -> List[Dict[str, Any]]:
    return [demo.model_dump(mode="json") for demo in runner.catalog.demos]


@app.get("/state")
async def state():
    return _dump(runner.state)


@app.post("/plan", status_code=202)
async def plan(req: PlanRequest, background: BackgroundTasks):
    try:
        if req.demo_index is not None:
            st = runner.select_demo(req.demo_index)
        else:
            st = runner.select_custom(req.problem or "")
    except PipelineBusyError:
        raise _busy()
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if st.stage is Stage.ARCHITECT:
        background.add_task(runner.run_architect)
    return _dump(st)


@app.post("/inputs/{input_id}/toggle")
async def toggle_input(input_id: str):
    try:
        return _dump(runner.toggle_input(input_id))
    except PipelineBusyError:
        raise _busy()
    except KeyError:
        raise HTTPException(status_code=404, detail="Input not found")


@app.post("/uploads", status_code=201)
async def add_upload(req: UploadRequest):
    try:
        entry = runner.add_upload(req.title, req.content, req.size)
    except PipelineBusyError:
        raise _busy()
    return {**entry.model_dump(mode="json"), "size_label": format_bytes(entry.size)}


@app.delete("/uploads/{upload_id}")
async def remove_upload(upload_id: str):
    try:
        return _dump(runner.remove_upload(upload_id))
    except PipelineBusyError:
        raise _busy()


@app.put("/notes")
async def set_notes(req: NotesRequest):
    try:
        return _dump(runner.set_notes(req.notes))
    except PipelineBusyError:
        raise _busy()


@app.post("/run", status_code=202)
async def run(background: BackgroundTasks):
    try:
        entries = runner.prepare_run()
    except PipelineBusyError:
        raise _busy()
    if entries is not None:
        background.add_task(runner.run_agents, entries)
    return _dump(runner.state)


@app.get("/events")
async def events():
    """Server-sent events: one `data:` record per state snapshot; a slow client skips ahead to the newest."""
    queue, push = latest_snapshots()
    unsubscribe = runner.subscribe(push)

    async def stream() -> AsyncIterator[str]:
        try:
            yield f"data: {json.dumps(_dump(runner.state))}\n\n"
            while True:
                snapshot = await queue.get()
                yield f"data: {json.dumps(_dump(snapshot))}\n\n"
        finally:
            unsubscribe()

    return StreamingResponse(stream(), media_type="text/event-stream")

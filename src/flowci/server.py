from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .engine import PipelineEngine
from .model import Event, EventKind, PipelineReport

# -------------------- Schemas --------------------

class EventAccepted(BaseModel):
    triggered: bool
    run_id: Optional[str] = None
    branch: str
    ref: str


class RunResponse(BaseModel):
    run_id: str
    event: str
    branch: str
    ref: str
    status: str  # running|succeeded|failed|cancelled
    exit_code: Optional[int] = None
    report: Optional[dict[str, Any]] = None


# -------------------- Run registry --------------------

@dataclass
class _Run:
    id: str
    event: Event
    report: Optional[PipelineReport] = None
    error: Optional[str] = None

    def to_response(self) -> RunResponse:
        if self.report is None:
            state = "failed" if self.error else "running"
            return RunResponse(
                run_id=self.id,
                event=self.event.kind.value,
                branch=self.event.branch,
                ref=self.event.ref,
                status=state,
                report={"error": self.error} if self.error else None,
            )
        return RunResponse(
            run_id=self.id,
            event=self.event.kind.value,
            branch=self.event.branch,
            ref=self.event.ref,
            status=self.report.status.value,
            exit_code=self.report.exit_code,
            report=self.report.to_dict(),
        )


def create_app(engine: PipelineEngine) -> FastAPI:
    """Webhook front end: hosting platform events in, pipeline runs out."""
    app = FastAPI(title="flowci")
    runs: Dict[str, _Run] = {}
    lock = threading.Lock()

    def _execute(run: _Run) -> None:
        try:
            run.report = engine.handle(run.event)
        except Exception as e:  # noqa: BLE001 - surfaced through GET /runs/{id}
            run.error = str(e)

    def _get(run_id: str) -> _Run:
        with lock:
            run = runs.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return run

    # -------------------- Endpoints --------------------

    @app.post("/events/{kind}", response_model=EventAccepted)
    def receive_event(kind: str, payload: dict[str, Any], background: BackgroundTasks):
        try:
            event = Event.from_webhook(kind, payload)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"unsupported event '{kind}' (expected one of {[k.value for k in EventKind]})",
            )
        if not event.branch:
            raise HTTPException(status_code=400, detail="event carries no branch")

        if not engine.matches(event):
            return EventAccepted(triggered=False, branch=event.branch, ref=event.ref)

        run = _Run(id=str(uuid.uuid4()), event=event)
        with lock:
            runs[run.id] = run
        background.add_task(_execute, run)
        body = EventAccepted(triggered=True, run_id=run.id, branch=event.branch, ref=event.ref)
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump())

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        return _get(run_id).to_response()

    @app.post("/runs/{run_id}/abort")
    def abort_run(run_id: str):
        run = _get(run_id)
        if run.report is not None or run.error is not None:
            raise HTTPException(status_code=409, detail="Run already finished")
        engine.abort(branch=run.event.branch)
        return {"ok": True}

    return app

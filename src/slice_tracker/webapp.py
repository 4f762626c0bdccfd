"""FastAPI application exposing the slice engine to local UI surfaces."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import RunnerSettings
from .db import SqliteSliceStore
from .engine import EngineRunner, SliceEngine
from .errors import PersistenceError, SliceNotFoundError, ValidationError
from .idle import IdleSource
from .models import (
    AwayDecision,
    AwaySession,
    ConflictStrategy,
    DragMode,
    MoveConflict,
    SplitSegment,
    TimeSlice,
)
from .paths import get_db_path

logger = logging.getLogger(__name__)


class SliceCreate(BaseModel):
    work_item_id: int
    start_time: datetime
    end_time: datetime
    notes: str = ""

    model_config = ConfigDict(extra="forbid")


class SliceUpdate(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    notes: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class StartPayload(BaseModel):
    work_item_id: int
    notes: str = ""

    model_config = ConfigDict(extra="forbid")


class SegmentPayload(BaseModel):
    start: time
    end: Optional[time] = None
    work_item_id: Optional[int] = None
    notes: str = ""

    model_config = ConfigDict(extra="forbid")


class SplitPayload(BaseModel):
    segments: List[SegmentPayload] = Field(min_length=1)

    model_config = ConfigDict(extra="forbid")


class MergePayload(BaseModel):
    slice_ids: List[int]

    model_config = ConfigDict(extra="forbid")


class MovePayload(BaseModel):
    start_time: datetime
    end_time: datetime
    strategy: Optional[ConflictStrategy] = None

    model_config = ConfigDict(extra="forbid")


class DragPayload(BaseModel):
    mode: DragMode
    delta_seconds: float
    snap: bool = False
    strategy: Optional[ConflictStrategy] = None

    model_config = ConfigDict(extra="forbid")


class ReassignPayload(BaseModel):
    work_item_id: int

    model_config = ConfigDict(extra="forbid")


class CopyPayload(BaseModel):
    days: List[date] = Field(min_length=1)
    include_notes: bool = True

    model_config = ConfigDict(extra="forbid")


class SyncPayload(BaseModel):
    remote_id: str

    model_config = ConfigDict(extra="forbid")


class AwayResolution(BaseModel):
    decision: AwayDecision
    target_work_item_id: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class SettingsUpdate(BaseModel):
    rounding_enabled: Optional[bool] = None
    rounding_interval_minutes: Optional[int] = None
    away_threshold_seconds: Optional[int] = None
    away_detection_enabled: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    db_path: Optional[Path] = None,
    runner_settings: Optional[RunnerSettings] = None,
    idle_source: Optional[IdleSource] = None,
    engine: Optional[SliceEngine] = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    resolved_db_path = Path(db_path or get_db_path())
    resolved_engine = engine or SliceEngine.open(resolved_db_path, check_same_thread=False)
    runner = EngineRunner(
        resolved_engine,
        runner_settings or RunnerSettings(),
        idle_source=idle_source,
        watcher_store=SqliteSliceStore.open(resolved_db_path, check_same_thread=False),
        on_away=_log_away,
    )

    app = FastAPI(title="Slice Tracker", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.engine = resolved_engine
    app.state.runner = runner

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        runner.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        runner.stop()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        engine_: SliceEngine = request.app.state.engine
        with _engine_errors():
            tracking = engine_.current()
            settings = engine_.settings()
        return {
            "monitor_running": request.app.state.runner.is_running(),
            "database_path": str(request.app.state.db_path),
            "tracking": _slice_payload(tracking.slice) if tracking.slice else None,
            "elapsed_seconds": tracking.elapsed_seconds,
            "away_pending": engine_.away.pending is not None,
            "settings": settings.to_mapping(),
        }

    @app.get("/api/slices")
    def list_slices(
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Target date in YYYY-MM-DD format.",
        ),
    ) -> Dict[str, Any]:
        target_day = _parse_date(date)
        engine_: SliceEngine = request.app.state.engine
        with _engine_errors():
            slices = engine_.slices_for_day(target_day)
            overlaps = engine_.overlaps_for_day(target_day)
        return {
            "date": target_day.strftime("%Y-%m-%d"),
            "slices": [_slice_payload(time_slice) for time_slice in slices],
            "overlaps": [[first.id, second.id] for first, second in overlaps],
        }

    @app.post("/api/slices", status_code=201)
    def create_slice(payload: SliceCreate, request: Request) -> Dict[str, Any]:
        with _engine_errors():
            created = request.app.state.engine.add_slice(
                payload.work_item_id, payload.start_time, payload.end_time, payload.notes
            )
        return _slice_payload(created)

    @app.patch("/api/slices/{slice_id}")
    def update_slice(slice_id: int, payload: SliceUpdate, request: Request) -> Dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True)
        with _engine_errors():
            updated = request.app.state.engine.edit_slice(
                slice_id,
                start=updates.get("start_time"),
                end=updates.get("end_time"),
                notes=updates.get("notes"),
            )
        return _slice_payload(updated)

    @app.delete("/api/slices/{slice_id}", status_code=204)
    def delete_slice(slice_id: int, request: Request) -> None:
        with _engine_errors():
            request.app.state.engine.delete_slice(slice_id)

    @app.post("/api/slices/{slice_id}/reassign")
    def reassign_slice(
        slice_id: int, payload: ReassignPayload, request: Request
    ) -> Dict[str, Any]:
        with _engine_errors():
            updated = request.app.state.engine.reassign_slice(slice_id, payload.work_item_id)
        return _slice_payload(updated)

    @app.post("/api/slices/{slice_id}/copy")
    def copy_slice(slice_id: int, payload: CopyPayload, request: Request) -> Dict[str, Any]:
        with _engine_errors():
            copies = request.app.state.engine.copy_slice(
                slice_id, payload.days, include_notes=payload.include_notes
            )
        return {"slices": [_slice_payload(time_slice) for time_slice in copies]}

    @app.post("/api/slices/{slice_id}/split")
    def split_slice(slice_id: int, payload: SplitPayload, request: Request) -> Dict[str, Any]:
        segments = [
            SplitSegment(
                start=segment.start,
                end=segment.end,
                work_item_id=segment.work_item_id,
                notes=segment.notes,
            )
            for segment in payload.segments
        ]
        with _engine_errors():
            created = request.app.state.engine.split(slice_id, segments)
        return {"slices": [_slice_payload(time_slice) for time_slice in created]}

    @app.post("/api/slices/merge")
    def merge_slices(payload: MergePayload, request: Request) -> Dict[str, Any]:
        with _engine_errors():
            merged = request.app.state.engine.merge(payload.slice_ids)
        return _slice_payload(merged)

    @app.post("/api/slices/{slice_id}/move")
    def move_slice(slice_id: int, payload: MovePayload, request: Request) -> Any:
        engine_: SliceEngine = request.app.state.engine
        with _engine_errors():
            result = engine_.propose_move(slice_id, payload.start_time, payload.end_time)
            return _move_response(engine_, result, payload.strategy)

    @app.post("/api/slices/{slice_id}/drag")
    def drag_slice(slice_id: int, payload: DragPayload, request: Request) -> Any:
        engine_: SliceEngine = request.app.state.engine
        with _engine_errors():
            result = engine_.propose_drag(
                slice_id,
                payload.mode,
                timedelta(seconds=payload.delta_seconds),
                snap=payload.snap,
            )
            return _move_response(engine_, result, payload.strategy)

    @app.post("/api/slices/{slice_id}/sync")
    def mark_synced(slice_id: int, payload: SyncPayload, request: Request) -> Dict[str, Any]:
        with _engine_errors():
            updated = request.app.state.engine.mark_synced(slice_id, payload.remote_id)
        return _slice_payload(updated)

    @app.delete("/api/slices/{slice_id}/sync")
    def clear_sync(slice_id: int, request: Request) -> Dict[str, Any]:
        with _engine_errors():
            updated = request.app.state.engine.clear_sync(slice_id)
        return _slice_payload(updated)

    @app.post("/api/tracking/start", status_code=201)
    def start_tracking(payload: StartPayload, request: Request) -> Dict[str, Any]:
        with _engine_errors():
            started = request.app.state.engine.start(payload.work_item_id, notes=payload.notes)
        return _slice_payload(started)

    @app.post("/api/tracking/stop")
    def stop_tracking(request: Request) -> Dict[str, Any]:
        with _engine_errors():
            stopped = request.app.state.engine.stop()
        return {"stopped": _slice_payload(stopped) if stopped else None}

    @app.get("/api/away")
    def away_status(request: Request) -> Dict[str, Any]:
        engine_: SliceEngine = request.app.state.engine
        with _engine_errors():
            state = engine_.away.state
        pending = engine_.away.pending
        return {
            "state": state.value,
            "pending": _away_payload(pending) if pending else None,
        }

    @app.post("/api/away/resolve")
    def resolve_away(payload: AwayResolution, request: Request) -> Dict[str, Any]:
        with _engine_errors():
            written = request.app.state.engine.resolve_away(
                payload.decision, payload.target_work_item_id
            )
        return {"slices": [_slice_payload(time_slice) for time_slice in written]}

    @app.get("/api/settings")
    def get_settings(request: Request) -> Dict[str, Any]:
        with _engine_errors():
            return request.app.state.engine.settings().to_mapping()

    @app.patch("/api/settings")
    def update_settings(payload: SettingsUpdate, request: Request) -> Dict[str, Any]:
        changes = {
            key: (("true" if value else "false") if isinstance(value, bool) else str(value))
            for key, value in payload.model_dump(exclude_none=True).items()
        }
        with _engine_errors():
            return request.app.state.engine.update_settings(**changes).to_mapping()

    return app


@contextmanager
def _engine_errors() -> Iterator[None]:
    try:
        yield
    except SliceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=400, detail={"rule": exc.rule, "message": exc.message}
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _move_response(
    engine: SliceEngine, result: Any, strategy: Optional[ConflictStrategy]
) -> Any:
    if not isinstance(result, MoveConflict):
        return {"slices": [_slice_payload(result.slice)]}
    if strategy is None:
        return JSONResponse(
            status_code=409,
            content={
                "detail": "The new range overlaps another slice; choose a strategy.",
                "conflicting": _slice_payload(result.conflicting),
                "strategies": [choice.value for choice in ConflictStrategy],
            },
        )
    written = engine.resolve_conflict(result, strategy)
    return {"slices": [_slice_payload(time_slice) for time_slice in written]}


def _log_away(session: AwaySession) -> None:
    logger.info(
        "Away time pending: %ds since %s.",
        session.away_duration_seconds,
        session.away_start,
    )


def _parse_date(value: Optional[str]) -> date:
    if not value:
        return date.today()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc


def _slice_payload(time_slice: TimeSlice) -> Dict[str, Any]:
    return {
        "id": time_slice.id,
        "work_item_id": time_slice.work_item_id,
        "start_time": time_slice.start_time.isoformat(),
        "end_time": time_slice.end_time.isoformat() if time_slice.end_time else None,
        "notes": time_slice.notes,
        "is_open": time_slice.is_open,
        "synced": time_slice.sync.synced,
        "remote_id": time_slice.sync.remote_id,
        "out_of_sync": time_slice.is_out_of_sync,
    }


def _away_payload(session: AwaySession) -> Dict[str, Any]:
    return {
        "away_start": session.away_start.isoformat(),
        "away_duration_seconds": int(session.away_duration_seconds),
        "source_work_item_id": session.source_work_item_id,
        "reason": session.reason,
        "source_slice_id": session.source_slice_id,
    }

"""Command-line interface for the slice tracker."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, time
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from .config import SETTING_KEYS, RunnerSettings
from .engine import EngineRunner, SliceEngine
from .errors import SliceTrackerError
from .models import AwayDecision, AwaySession, ConflictStrategy, MoveConflict, SplitSegment
from .paths import get_db_path, get_log_path
from .reporting import SlicePrinter, format_duration, format_slice

app = typer.Typer(help="Track work as time slices with a single running slice.")

logger = logging.getLogger(__name__)

_DB_OPTION_HELP = "Location of the slices SQLite database."


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@contextmanager
def _engine(db_path: Optional[Path]) -> Iterator[SliceEngine]:
    engine: Optional[SliceEngine] = None
    try:
        engine = SliceEngine.open(db_path or get_db_path())
        yield engine
    except SliceTrackerError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    finally:
        if engine is not None:
            engine.close()


@app.command()
def start(
    work_item_id: int = typer.Argument(..., help="Work item to track."),
    notes: str = typer.Option("", "--notes", help="Notes for the new slice."),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Start tracking a work item, stopping whatever is running."""
    with _engine(db_path) as engine:
        new_slice = engine.start(work_item_id, notes=notes)
        typer.echo(f"Started slice #{new_slice.id} for work item {work_item_id}.")


@app.command()
def stop(
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Stop the running slice (rounding applies when enabled)."""
    with _engine(db_path) as engine:
        stopped = engine.stop()
        if stopped is None:
            typer.echo("Nothing is being tracked.")
            return
        assert stopped.end_time is not None
        typer.echo(
            f"Stopped slice #{stopped.id}: {stopped.start_time:%H:%M}-{stopped.end_time:%H:%M} "
            f"({format_duration(stopped.duration_seconds(stopped.end_time))})."
        )


@app.command()
def status(
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Show the running slice, if any."""
    with _engine(db_path) as engine:
        SlicePrinter(engine).print_status(engine.current())


@app.command("list")
def list_slices(
    day: Optional[str] = typer.Option(
        None, "--date", help="Date (YYYY-MM-DD) to list. Defaults to today."
    ),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """List the slices of one day, flagging overlaps and out-of-sync slices."""
    with _engine(db_path) as engine:
        SlicePrinter(engine).print_day(_parse_day(day))


@app.command()
def add(
    work_item_id: int = typer.Argument(...),
    start_at: str = typer.Argument(..., metavar="START", help="YYYY-MM-DD HH:MM"),
    end_at: str = typer.Argument(..., metavar="END", help="YYYY-MM-DD HH:MM"),
    notes: str = typer.Option("", "--notes"),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Record a closed slice manually."""
    with _engine(db_path) as engine:
        new_slice = engine.add_slice(
            work_item_id, _parse_instant(start_at), _parse_instant(end_at), notes
        )
        typer.echo(format_slice(new_slice, datetime.now()))


@app.command()
def edit(
    slice_id: int = typer.Argument(...),
    start_at: Optional[str] = typer.Option(None, "--start", help="YYYY-MM-DD HH:MM"),
    end_at: Optional[str] = typer.Option(None, "--end", help="YYYY-MM-DD HH:MM"),
    notes: Optional[str] = typer.Option(None, "--notes"),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Change a slice's boundaries or notes."""
    with _engine(db_path) as engine:
        updated = engine.edit_slice(
            slice_id,
            start=_parse_instant(start_at) if start_at else None,
            end=_parse_instant(end_at) if end_at else None,
            notes=notes,
        )
        typer.echo(format_slice(updated, datetime.now()))


@app.command()
def delete(
    slice_id: int = typer.Argument(...),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Delete a slice."""
    with _engine(db_path) as engine:
        engine.delete_slice(slice_id)
        typer.echo(f"Deleted slice #{slice_id}.")


@app.command()
def reassign(
    slice_id: int = typer.Argument(...),
    work_item_id: int = typer.Argument(...),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Move a slice to a different work item."""
    with _engine(db_path) as engine:
        engine.reassign_slice(slice_id, work_item_id)
        typer.echo(f"Slice #{slice_id} now belongs to work item {work_item_id}.")


@app.command()
def copy(
    slice_id: int = typer.Argument(...),
    days: List[str] = typer.Argument(..., help="Target dates (YYYY-MM-DD)."),
    no_notes: bool = typer.Option(False, "--no-notes", help="Do not copy notes."),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Copy a closed slice's time range to other days."""
    with _engine(db_path) as engine:
        copies = engine.copy_slice(
            slice_id, [_parse_day(day) for day in days], include_notes=not no_notes
        )
        typer.echo(f"Created {len(copies)} slice(s).")


@app.command()
def split(
    slice_id: int = typer.Argument(...),
    segments: List[str] = typer.Argument(
        ...,
        help="Segments as HH:MM-HH:MM=WORK_ITEM; leave the end empty for an open last segment.",
    ),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Split a slice into assigned segments; gaps stay on the original work item."""
    parsed = [_parse_segment(segment) for segment in segments]
    with _engine(db_path) as engine:
        created = engine.split(slice_id, parsed)
        now = datetime.now()
        for time_slice in created:
            typer.echo(format_slice(time_slice, now))


@app.command()
def merge(
    slice_ids: List[int] = typer.Argument(..., help="Slices to merge (at least two)."),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Merge slices of the same work item into one."""
    with _engine(db_path) as engine:
        merged = engine.merge(slice_ids)
        typer.echo(format_slice(merged, datetime.now()))


@app.command()
def move(
    slice_id: int = typer.Argument(...),
    start_at: str = typer.Argument(..., metavar="START", help="YYYY-MM-DD HH:MM"),
    end_at: str = typer.Argument(..., metavar="END", help="YYYY-MM-DD HH:MM"),
    strategy: Optional[ConflictStrategy] = typer.Option(
        None,
        "--strategy",
        case_sensitive=False,
        help="How to resolve an overlap with a neighbouring slice.",
    ),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Move or resize a closed slice."""
    with _engine(db_path) as engine:
        result = engine.propose_move(slice_id, _parse_instant(start_at), _parse_instant(end_at))
        if not isinstance(result, MoveConflict):
            typer.echo(format_slice(result.slice, datetime.now()))
            return
        if strategy is None:
            typer.secho(
                f"The new range overlaps slice #{result.conflicting.id}; "
                "re-run with --strategy to resolve it.",
                fg=typer.colors.YELLOW,
                err=True,
            )
            raise typer.Exit(code=2)
        now = datetime.now()
        for time_slice in engine.resolve_conflict(result, strategy):
            typer.echo(format_slice(time_slice, now))


@app.command("settings")
def settings_command(
    values: Optional[List[str]] = typer.Argument(
        None, help=f"KEY=VALUE pairs to store; keys: {', '.join(SETTING_KEYS)}."
    ),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
) -> None:
    """Show or change engine settings."""
    changes: dict[str, str] = {}
    for value in values or []:
        key, sep, raw = value.partition("=")
        if not sep or key not in SETTING_KEYS:
            raise typer.BadParameter(f"Expected KEY=VALUE with KEY in {', '.join(SETTING_KEYS)}")
        changes[key] = raw
    with _engine(db_path) as engine:
        current = engine.update_settings(**changes) if changes else engine.settings()
        for key, value in current.to_mapping().items():
            typer.echo(f"{key} = {value}")


@app.command()
def monitor(
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
    idle_poll_seconds: float = typer.Option(
        5.0, "--idle-poll", min=1.0, help="Idle polling interval in seconds."
    ),
) -> None:
    """Run heartbeat and away detection in the foreground until interrupted."""
    from .idle import default_idle_source

    file_handler = logging.FileHandler(get_log_path(), encoding="utf-8")
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    logging.getLogger().addHandler(file_handler)

    with _engine(db_path) as engine:
        runner = EngineRunner(
            engine,
            RunnerSettings.from_intervals(idle_poll_seconds=idle_poll_seconds),
            idle_source=default_idle_source(),
            on_away=lambda session: _prompt_away(engine, session),
        )
        runner.run_forever()


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the dashboard."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the dashboard."
    ),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path, help=_DB_OPTION_HELP),
    open_browser: bool = typer.Option(
        True,
        "--open-browser/--no-open-browser",
        help="Automatically launch the dashboard in your default browser.",
    ),
) -> None:
    """Start the local dashboard API with the background monitor."""
    from .server_runner import run_dashboard

    run_dashboard(
        host=host,
        port=port,
        db_path=db_path or get_db_path(),
        open_browser=open_browser,
    )


def _prompt_away(engine: SliceEngine, session: AwaySession) -> None:
    typer.echo(
        f"You were away for {format_duration(session.away_duration_seconds)} "
        f"since {session.away_start:%H:%M} while tracking work item "
        f"{session.source_work_item_id}."
    )
    choice: Optional[AwayDecision] = None
    while choice is None:
        answer = typer.prompt(
            "Keep, discard or reassign the away time?", default=AwayDecision.KEEP.value
        )
        try:
            choice = AwayDecision(answer.strip().lower())
        except ValueError:
            typer.echo("Please answer keep, discard or reassign.")
    target: Optional[int] = None
    if choice == AwayDecision.REASSIGN:
        target = typer.prompt("Work item for the away time", type=int)
    try:
        engine.resolve_away(choice, target)
    except SliceTrackerError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)


def _parse_day(value: Optional[str]) -> date:
    if not value:
        return date.today()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid date: {value!r}") from exc


def _parse_instant(value: str) -> datetime:
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise typer.BadParameter(f"Invalid date and time: {value!r}")


def _parse_time(value: str) -> time:
    try:
        return datetime.strptime(value, "%H:%M").time()
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid time: {value!r}") from exc


def _parse_segment(value: str) -> SplitSegment:
    """Parse ``HH:MM-HH:MM=ITEM`` (or ``HH:MM-=ITEM`` for an open segment)."""
    span, sep, item = value.partition("=")
    start_raw, dash, end_raw = span.partition("-")
    if not sep or not dash:
        raise typer.BadParameter(f"Invalid segment: {value!r}")
    try:
        work_item_id = int(item)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid work item in segment: {value!r}") from exc
    return SplitSegment(
        start=_parse_time(start_raw),
        end=_parse_time(end_raw) if end_raw else None,
        work_item_id=work_item_id,
    )

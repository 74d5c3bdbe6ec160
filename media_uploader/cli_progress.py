"""Console rendering and progress helpers for media-up CLI."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .models import ProgressEvent, UploadKind, UploadResult, UploadStatus
from .orchestrator.models import RecordUploadResult
from .utils.events import AggregateProgress

console = Console()


def _echo(message: str) -> None:
    console.print(message)


def _human_size(value: int) -> str:
    size = float(max(value, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_idx = 0
    while size >= 1024.0 and unit_idx < len(units) - 1:
        size /= 1024.0
        unit_idx += 1
    if unit_idx == 0:
        return f"{int(size)} {units[unit_idx]}"
    return f"{size:.2f} {units[unit_idx]}"


def render_configuration_summary(config: Dict[str, Any]) -> None:
    """Render startup configuration summary."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    panel = Panel(
        table,
        title="[bold green]media-up[/bold green]",
        subtitle="[dim]media uploader CLI[/dim]",
        border_style="blue",
    )
    console.print(panel)


def _emit_timeline(status: str, kind: str, name: str, size_bytes: Optional[int] = None, error: Optional[str] = None) -> None:
    stamp = time.strftime("%H:%M:%S")
    size_label = f" {_human_size(size_bytes)}" if size_bytes and size_bytes > 0 else ""
    error_label = f" cause={error}" if error else ""
    palette = {
        "DONE": "green",
        "FAIL": "red",
        "PART": "yellow",
        "INFO": "blue",
    }
    color = palette.get(status, "white")
    _echo(
        f"[dim]{stamp}[/dim] [{color}]{status:<4}[/{color}] "
        f"{kind}: {name}{size_label}{error_label}"
    )


class UploadProgressDisplay:
    """Live per-leg progress bars; one timeline line per terminal state."""

    def __init__(self):
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=42),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("[dim]{task.fields[phase]}", justify="left"),
            TimeElapsedColumn(),
            expand=False,
            console=console,
        )
        self._tasks: Dict[UploadKind, TaskID] = {}
        self._live: Optional[Live] = None

    def add_leg(self, kind: UploadKind, file_name: str) -> None:
        if kind in self._tasks:
            return
        self._tasks[kind] = self._progress.add_task(
            kind.value,
            label=f"{kind.value}: {file_name[:50]}",
            total=100,
            phase="pending",
        )

    def start(self) -> None:
        if self._live is not None:
            return
        self._live = Live(
            self._progress,
            console=console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    def _update(self, kind: UploadKind, overall: Optional[float], phase: str) -> None:
        task_id = self._tasks.get(kind)
        if task_id is None:
            return
        if overall is None:
            self._progress.update(task_id, phase=phase)
        else:
            self._progress.update(task_id, completed=overall, phase=phase)

    def on_progress_event(self, event: ProgressEvent) -> None:
        """Listener for a single upload's EventEmitter."""
        if event.leg is not None:
            self._update(event.leg, event.overall, event.phase.value)

    def on_progress(self, progress: AggregateProgress) -> None:
        """Listener for RecordUploadProcess.on_progress."""
        for kind, leg in progress.legs.items():
            self._update(kind, leg.overall, leg.status)

    def on_leg_complete(self, result: UploadResult) -> None:
        self._update(result.kind, 100.0, "completed")
        _emit_timeline("DONE", result.kind.value, result.filename)
        if result.url:
            _echo(f"      [dim]{result.url}[/dim]")

    def on_leg_fail(self, result: UploadResult) -> None:
        self._update(result.kind, None, "failed")
        _emit_timeline("FAIL", result.kind.value, result.filename, error=result.error)

    def on_result(self, result: UploadResult) -> None:
        """Terminal line for a single (non-record) upload."""
        self.stop()
        if result.success:
            self.on_leg_complete(result)
        else:
            self.on_leg_fail(result)

    def on_finish(self, result: RecordUploadResult) -> None:
        self.stop()
        if result.status == UploadStatus.SUCCESS:
            _emit_timeline("DONE", "record", result.record_id)
        elif result.status == UploadStatus.PARTIAL:
            _emit_timeline("PART", "record", result.record_id, error=result.error)
        else:
            _emit_timeline("FAIL", "record", result.record_id, error=result.error)

    def on_error(self, error: Exception) -> None:
        self.stop()
        _emit_timeline("FAIL", "process", "record upload", error=str(error))

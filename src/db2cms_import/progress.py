"""Progress reporting for the database to CMS import.

Provides rich console output with a progress bar per phase, warnings
and errors, and optional file logging.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn
from rich.table import Table

from db2cms_import.models import ReconcileStatus

if TYPE_CHECKING:
    from types import TracebackType


class Phase(Enum):
    """Import phases in execution order."""

    MAPPING = "Mapping"
    PRE_PASS = "Pre-pass"
    RECORDS = "Records"
    POST_PASS = "Deferred references"
    TEARDOWN = "Teardown"


PHASE_ORDER: list[Phase] = list(Phase)

STATUS_STYLES: dict[ReconcileStatus, str] = {
    ReconcileStatus.CREATED: "green",
    ReconcileStatus.EXISTING: "blue",
    ReconcileStatus.SKIPPED: "yellow",
    ReconcileStatus.FAILED: "red",
}


@dataclass
class PhaseResult:
    """Result of a completed phase."""

    phase: Phase
    total: int
    created: int
    existing: int
    skipped: int
    failed: int
    duration_seconds: float

    @property
    def processed(self) -> int:
        return self.created + self.existing + self.skipped + self.failed

    def count(self, status: ReconcileStatus) -> int:
        return getattr(self, status.value)


@dataclass
class ImportSummary:
    """Summary of a whole import run."""

    phases: list[PhaseResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    start_time: datetime = field(default_factory=datetime.now)
    end_time: datetime | None = None

    @property
    def total_duration_seconds(self) -> float:
        """Total import duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def total(self, status: ReconcileStatus) -> int:
        """Sum one outcome count across all phases."""
        return sum(p.count(status) for p in self.phases)


def _result_marker(result: PhaseResult) -> str:
    if result.failed == 0:
        return "[green]OK[/green]"
    return f"[yellow]{result.failed} failed[/yellow]"


def format_duration(seconds: float) -> str:
    """Format duration as human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def _file_logger(name: str, log_path: Path) -> logging.Logger:
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_logger = logging.getLogger(name)
    file_logger.setLevel(logging.DEBUG)

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    file_logger.addHandler(handler)
    return file_logger


def print_summary(console: Console, summary: ImportSummary) -> None:
    """Print the final summary table, warnings and errors."""
    table = Table(title="Import Summary", show_header=True, header_style="bold")
    table.add_column("Phase", style="cyan")
    table.add_column("Total", justify="right")
    for status, style in STATUS_STYLES.items():
        table.add_column(status.value.capitalize(), justify="right", style=style)
    table.add_column("Duration", justify="right", style="dim")

    for result in summary.phases:
        table.add_row(
            result.phase.value,
            str(result.total),
            *(str(result.count(status)) for status in STATUS_STYLES),
            format_duration(result.duration_seconds),
        )

    table.add_section()
    table.add_row(
        "[bold]Total[/bold]",
        f"[bold]{sum(p.total for p in summary.phases)}[/bold]",
        *(
            f"[bold {style}]{summary.total(status)}[/bold {style}]"
            for status, style in STATUS_STYLES.items()
        ),
        f"[bold]{format_duration(summary.total_duration_seconds)}[/bold]",
    )

    console.print()
    console.print(table)

    for label, messages, style in (
        ("Warnings", summary.warnings, "yellow"),
        ("Errors", summary.errors, "red"),
    ):
        if messages:
            console.print()
            console.print(f"[{style} bold]{label} ({len(messages)}):[/{style} bold]")
            for message in messages:
                console.print(f"  [{style}]-[/{style}] {escape(message)}")

    # The run is acknowledged even when individual records failed.
    console.print()
    if summary.total(ReconcileStatus.FAILED) == 0 and not summary.errors:
        console.print("[green bold]Import finished successfully![/green bold]")
    else:
        console.print("[yellow bold]Import finished with warnings/errors.[/yellow bold]")


def _phase_label(phase: Phase) -> str:
    return f"[{PHASE_ORDER.index(phase) + 1}/{len(PHASE_ORDER)}] {phase.value}"


class ProgressReporter:
    """Progress reporter showing one rich progress bar per phase."""

    title = "DB to CMS Import"

    def __init__(
        self,
        console: Console | None = None,
        log_file: Path | str | None = None,
        verbose: bool = False,
    ) -> None:
        """Initialize the progress reporter.

        Args:
            console: Rich console instance (creates new if None).
            log_file: Optional path to log file.
            verbose: If True, log every processed item.
        """
        self.console = console or Console()
        self.verbose = verbose
        self._logger: logging.Logger | None = None

        self._summary = ImportSummary()
        self._current_phase: Phase | None = None
        self._current_total: int = 0
        self._counts: dict[ReconcileStatus, int] = dict.fromkeys(ReconcileStatus, 0)
        self._phase_start_time: float = 0.0

        self._progress: Progress | None = None
        self._task: TaskID | None = None

        if log_file:
            self._logger = _file_logger("db2cms_import.report", Path(log_file))

    def _log(self, message: str, level: str = "INFO") -> None:
        """Write to log file if configured."""
        if self._logger:
            log_method = getattr(self._logger, level.lower(), self._logger.info)
            log_method(message)

    def start(self) -> None:
        """Start the progress display."""
        self._summary = ImportSummary()
        self.console.print(f"[bold blue]{self.title}[/bold blue]")
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TextColumn("{task.fields[item]}", style="dim", markup=False),
            console=self.console,
        )
        self._progress.start()
        self._log("Import started")

    def stop(self) -> None:
        """Stop the progress display."""
        if self._progress:
            self._progress.stop()
            self._progress = None
            self._task = None

        self._summary.end_time = datetime.now()
        self._log("Import finished")

    def start_phase(self, phase: Phase, total: int) -> None:
        """Start a new import phase.

        Args:
            phase: The phase to start.
            total: Total number of items to process in this phase.
        """
        self._current_phase = phase
        self._current_total = total
        self._counts = dict.fromkeys(ReconcileStatus, 0)
        self._phase_start_time = time.monotonic()

        if self._progress:
            self._task = self._progress.add_task(_phase_label(phase), total=total, item="")
        self._log(f"Starting phase: {phase.value} ({total} items)")

    def record(self, status: ReconcileStatus, current_item: str = "") -> None:
        """Count one processed item in the current phase."""
        self._counts[status] += 1
        if self._progress and self._task is not None:
            self._progress.update(self._task, advance=1, item=current_item)
        if current_item and self.verbose:
            self._log(f"{status.value}: {current_item}")

    def complete_phase(self) -> PhaseResult:
        """Complete the current phase and return its result.

        Raises:
            RuntimeError: If no phase is in progress.
        """
        if not self._current_phase:
            raise RuntimeError("No phase in progress")

        duration = time.monotonic() - self._phase_start_time
        result = PhaseResult(
            phase=self._current_phase,
            total=self._current_total,
            created=self._counts[ReconcileStatus.CREATED],
            existing=self._counts[ReconcileStatus.EXISTING],
            skipped=self._counts[ReconcileStatus.SKIPPED],
            failed=self._counts[ReconcileStatus.FAILED],
            duration_seconds=duration,
        )
        self._summary.phases.append(result)
        self._current_phase = None

        if self._progress and self._task is not None:
            self._progress.update(
                self._task,
                description=f"{_phase_label(result.phase)} {_result_marker(result)}",
                item="",
            )
            self._task = None

        self._log(
            f"Completed phase: {result.phase.value} - {result.created} created, "
            f"{result.existing} existing, {result.skipped} skipped, "
            f"{result.failed} failed ({format_duration(duration)})"
        )
        return result

    def warning(self, message: str) -> None:
        """Record and display a warning."""
        self._summary.warnings.append(message)
        self._log(f"Warning: {message}", level="WARNING")
        self.console.print(f"  [yellow]Warning: {escape(message)}[/yellow]")

    def error(self, message: str) -> None:
        """Record and display an error."""
        self._summary.errors.append(message)
        self._log(f"Error: {message}", level="ERROR")
        self.console.print(f"  [red]Error: {escape(message)}[/red]")

    def info(self, message: str) -> None:
        self._log(message)
        self.console.print(f"  [dim]{escape(message)}[/dim]")

    def get_summary(self) -> ImportSummary:
        return self._summary

    def print_final_summary(self) -> None:
        print_summary(self.console, self._summary)

    def __enter__(self) -> ProgressReporter:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit."""
        self.stop()


class SimpleProgressReporter(ProgressReporter):
    """Line-based progress reporter without live updates.

    Useful for non-interactive environments (cron, CI) or testing.
    """

    def start(self) -> None:
        self._summary = ImportSummary()
        self.console.print(f"[bold blue]{self.title}[/bold blue]")
        self.console.print()
        self._log("Import started")

    def start_phase(self, phase: Phase, total: int) -> None:
        super().start_phase(phase, total)
        self.console.print(f"[cyan]{_phase_label(phase)}[/cyan] ({total} items)...")

    def record(self, status: ReconcileStatus, current_item: str = "") -> None:
        super().record(status, current_item)
        if self.verbose and current_item:
            self.console.print(f"  [dim]{status.value}: {escape(current_item)}[/dim]")

    def complete_phase(self) -> PhaseResult:
        result = super().complete_phase()
        self.console.print(
            f"  Completed: {result.processed}/{result.total} {_result_marker(result)} "
            f"({format_duration(result.duration_seconds)})"
        )
        return result


def create_progress_reporter(
    console: Console | None = None,
    log_file: Path | str | None = None,
    verbose: bool = False,
    simple: bool = False,
) -> ProgressReporter:
    """Factory function to create a progress reporter.

    Args:
        console: Rich console instance.
        log_file: Optional path to log file.
        verbose: If True, report every processed item.
        simple: If True, use the line-based reporter without live updates.
    """
    if simple:
        return SimpleProgressReporter(console=console, log_file=log_file, verbose=verbose)
    return ProgressReporter(console=console, log_file=log_file, verbose=verbose)

"""CLI module for the database to CMS import tool.

This module provides the command-line interface using Typer with two commands:
- preview: Query the source database and show how rows map to records
- run: Import the rows into the CMS
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from db2cms_import.api_client import APIError, RedirectionClient, WordPressClient
from db2cms_import.config import ImportSettings
from db2cms_import.errors import MappingError, SetupError
from db2cms_import.hooks import HookRegistry
from db2cms_import.mapper import ColumnMapper, RecordMapper, load_mapper, load_mapping
from db2cms_import.orchestrator import ImportOrchestrator, RunSummary
from db2cms_import.progress import ProgressReporter, create_progress_reporter
from db2cms_import.redirects import RedirectBridge
from db2cms_import.source import ExternalSource
from db2cms_import.state import ImportState, ImportStateError

# Create Typer app
app = typer.Typer(
    name="db2cms-import",
    help="Import records from an external database into a WordPress site",
    no_args_is_help=True,
)

# Rich console for output
console = Console()
error_console = Console(stderr=True)

# Logger for this module
logger = logging.getLogger(__name__)

PostTypeOption = Annotated[
    str,
    typer.Option("--post-type", "-t", help="Target content kind (post type slug)"),
]
MappingOption = Annotated[
    Path | None,
    typer.Option(
        "--mapping",
        "-m",
        help="JSON column mapping file",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
    ),
]
MapperOption = Annotated[
    str | None,
    typer.Option("--mapper", help="Custom mapper class as module:Class"),
]
QueryOption = Annotated[
    str | None,
    typer.Option("--query", "-q", help="Source SQL query (overrides DB2CMS_SOURCE_QUERY)"),
]
DatabaseUrlOption = Annotated[
    str | None,
    typer.Option(
        "--database-url",
        help="Source database URL (overrides DB2CMS_SOURCE_DATABASE_URL)",
    ),
]


def _fail(message: str) -> typer.Exit:
    error_console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(1)


def _load_settings(**overrides: Any) -> ImportSettings:
    """Load settings from the environment with CLI overrides applied.

    Raises:
        typer.Exit: If the settings are invalid.
    """
    try:
        return ImportSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        raise _fail(f"Invalid settings: {e}") from None


def _build_mapper(mapping: Path | None, mapper_spec: str | None) -> RecordMapper:
    if mapping and mapper_spec:
        raise _fail("Cannot specify both --mapping and --mapper")
    try:
        if mapper_spec:
            return load_mapper(mapper_spec)
        if mapping:
            return ColumnMapper(load_mapping(mapping))
    except MappingError as e:
        raise _fail(str(e)) from None
    return ColumnMapper()


def _fetch_rows(settings: ImportSettings, post_type: str) -> list[dict[str, Any]]:
    if not settings.source_database_url:
        raise _fail("No source database. Use --database-url or set DB2CMS_SOURCE_DATABASE_URL.")
    if not settings.source_query:
        raise _fail("No source query. Use --query or set DB2CMS_SOURCE_QUERY.")

    source = ExternalSource(settings.source_database_url, settings.source_query)
    try:
        return source.fetch_rows(post_type)
    except SetupError as e:
        raise _fail(str(e)) from None
    finally:
        source.close()


def _display_summary(summary: RunSummary) -> None:
    counts = summary.counts
    console.print(
        Panel(
            f"[green]{counts['created']}[/green] created, "
            f"[blue]{counts['existing']}[/blue] existing, "
            f"[yellow]{counts['skipped']}[/yellow] skipped, "
            f"[red]{counts['failed']}[/red] failed\n"
            f"Deferred references: {summary.deferred_resolved} resolved, "
            f"{summary.deferred_unresolved} pending",
            title="All done",
            border_style="green" if counts["failed"] == 0 else "yellow",
        )
    )


@app.command()
def preview(
    post_type: PostTypeOption,
    mapping: MappingOption = None,
    mapper: MapperOption = None,
    query: QueryOption = None,
    database_url: DatabaseUrlOption = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Number of records to show", min=1),
    ] = 20,
) -> None:
    """Show how source rows map to records without writing anything."""
    settings = _load_settings(source_query=query, source_database_url=database_url)
    record_mapper = _build_mapper(mapping, mapper)
    rows = _fetch_rows(settings, post_type)

    try:
        batch = record_mapper.map(rows, post_type)
    except MappingError as e:
        raise _fail(str(e)) from None

    table = Table(title=f"{len(batch)} records mapped", show_header=True, header_style="bold")
    table.add_column("External ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Title")
    table.add_column("Terms", style="dim")
    table.add_column("Meta", style="dim")
    table.add_column("Redirect from", style="dim")

    for record in batch.posts[:limit]:
        table.add_row(
            record.external_id or "[red]<empty>[/red]",
            record.target_type,
            record.title,
            "; ".join(f"{tax}: {', '.join(names)}" for tax, names in record.terms.items()),
            ", ".join(entry.key for entry in record.post_meta),
            record.redirect_source or "",
        )

    console.print(table)
    if len(batch) > limit:
        console.print(f"[dim]... and {len(batch) - limit} more[/dim]")


async def _execute_import(
    settings: ImportSettings,
    rows: list[dict[str, Any]],
    post_type: str,
    record_mapper: RecordMapper,
    hooks: HookRegistry,
    state: ImportState,
    reporter: ProgressReporter,
    do_redirect: bool,
) -> RunSummary:
    """Connect to the CMS and run the import.

    Raises:
        SetupError: If the CMS or the redirect plugin is unavailable.
        MappingError: If the rows cannot be mapped.
    """
    async with WordPressClient(
        base_url=settings.cms_url,
        username=settings.cms_username,
        password=settings.cms_password,
        timeout=settings.request_timeout,
        download_timeout=settings.download_timeout,
    ) as wp:
        try:
            await wp.ping()
        except APIError as e:
            raise SetupError(f"Failed to connect to {settings.cms_url}: {e.message}") from e

        redirects = None
        if do_redirect:
            redirects = RedirectBridge(RedirectionClient(wp), wp, settings.redirect_group_name)

        orchestrator = ImportOrchestrator(
            wp,
            wp,
            settings,
            mapper=record_mapper,
            hooks=hooks,
            redirects=redirects,
            state=state,
            reporter=reporter,
        )
        return await orchestrator.run(rows, post_type)


@app.command()
def run(
    post_type: PostTypeOption,
    do_redirect: Annotated[
        bool,
        typer.Option("--do-redirect", help="Create 301 redirects from legacy URLs"),
    ] = False,
    mapping: MappingOption = None,
    mapper: MapperOption = None,
    query: QueryOption = None,
    database_url: DatabaseUrlOption = None,
    cms_url: Annotated[
        str | None,
        typer.Option("--cms-url", "-u", help="WordPress site URL (overrides DB2CMS_CMS_URL)"),
    ] = None,
    username: Annotated[
        str | None,
        typer.Option("--username", help="WordPress user name"),
    ] = None,
    password: Annotated[
        str | None,
        typer.Option(
            "--password",
            help="WordPress application password",
            envvar="DB2CMS_CMS_PASSWORD",
        ),
    ] = None,
    hook: Annotated[
        list[str] | None,
        typer.Option(
            "--hooks",
            help="Extension plugin as module:function, called with the hook registry",
        ),
    ] = None,
    state_file: Annotated[
        Path | None,
        typer.Option(
            "--state-file",
            "-s",
            help="State file for resume support",
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", help="Write progress messages to this file"),
    ] = None,
    simple: Annotated[
        bool,
        typer.Option("--simple", help="Plain line output instead of the live panel"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show detailed progress"),
    ] = False,
) -> None:
    """Import rows from the external database into the CMS.

    Rows returned by the source query are mapped to records and imported
    one by one: existing items are reused, new ones are created with their
    terms and metadata, and embedded images and files are copied to the
    media library.

    Use --state-file to enable resume support. If the import is interrupted,
    re-run with the same state file; already imported records are skipped.
    """
    # Configure logging based on verbose flag
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(name)s - %(levelname)s - %(message)s",
        )

    console.print(Panel("DB to CMS Import - Run", style="bold blue"))
    console.print()

    settings = _load_settings(
        source_query=query,
        source_database_url=database_url,
        cms_url=cms_url,
        cms_username=username,
        cms_password=password,
    )
    record_mapper = _build_mapper(mapping, mapper)

    hooks = HookRegistry()
    for spec in hook or []:
        try:
            hooks.load_plugin(spec)
        except (ValueError, ImportError, AttributeError) as e:
            raise _fail(f"Cannot load extension plugin '{spec}': {e}") from None

    console.print(f"[bold]CMS URL:[/bold] {settings.cms_url}")
    console.print(f"[bold]Post type:[/bold] {post_type}")
    console.print(f"[bold]Local domain:[/bold] {settings.home_domain}")
    if do_redirect:
        console.print(f"[bold]Redirect group:[/bold] {settings.redirect_group_name}")
    if state_file:
        console.print(f"[bold]State file:[/bold] {state_file}")
    console.print()

    rows = _fetch_rows(settings, post_type)
    console.print(f"Fetched {len(rows)} rows from the source database")

    # Load or create import state
    state: ImportState
    if state_file and state_file.exists():
        try:
            state = ImportState.load(state_file)
        except (ImportStateError, ValueError) as e:
            raise _fail(f"Failed to load state file: {e}") from None
        console.print(f"[green]Resumed import:[/green] {len(state.id_map)} records already mapped")
    else:
        state = ImportState(target_kind=post_type, cms_url=settings.cms_url)
    console.print()

    reporter = create_progress_reporter(
        console=console,
        log_file=log_file,
        verbose=verbose,
        simple=simple or not console.is_terminal,
    )

    try:
        with reporter:
            summary = asyncio.run(
                _execute_import(
                    settings=settings,
                    rows=rows,
                    post_type=post_type,
                    record_mapper=record_mapper,
                    hooks=hooks,
                    state=state,
                    reporter=reporter,
                    do_redirect=do_redirect,
                )
            )
    except (SetupError, MappingError) as e:
        raise _fail(str(e)) from None
    finally:
        if state_file:
            state.save(state_file)

    reporter.print_final_summary()
    if state_file:
        console.print()
        console.print(f"State saved to: {state_file}")

    console.print()
    _display_summary(summary)
    sys.exit(0)


if __name__ == "__main__":
    app()

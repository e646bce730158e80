"""
Memex CLI - command-line interface for session memory.

Thin adapter over the services: argument parsing, rich output and exit
codes. Exit code 1 means the user asked for something invalid; exit code 2
means an internal or environmental failure.
"""

import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, List, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from memex.exceptions import (
    ErrorCode,
    InvalidArgumentError,
    InvalidQueryError,
    MemexError,
    is_user_error,
)
from memex.logging_config import setup_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="memex",
    help="Memex - permanent, searchable memory for AI coding sessions",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


def _init_logging(context: str = "cli", quiet: bool = False) -> None:
    # Fall back to console-only logging if the log directory is not writable
    try:
        setup_logging(context=context, console=not quiet)
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _fail(error: MemexError, as_json: bool = False) -> NoReturn:
    if as_json:
        _emit_json(error.to_dict())
    else:
        err_console.print(f"[bold red]Error ({error.code.value}):[/bold red] {error.message}")
        for key, value in error.context.items():
            err_console.print(f"  {key}: {value}")
    raise typer.Exit(1 if is_user_error(error.code) else 2)


def _open_store():
    from memex.db import connect

    return connect()


def _parse_time(value: Optional[str], option: str):
    if value is None:
        return None
    from memex.parsers.utils import parse_iso_timestamp

    try:
        return parse_iso_timestamp(value)
    except ValueError as e:
        raise InvalidQueryError(
            f"Invalid {option} timestamp: {value}", context={"option": option}
        ) from e


@app.command("sync")
def sync_command(
    paths: Optional[List[Path]] = typer.Argument(
        None, help="Session files to sync (default: all discovered sessions)"
    ),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Sync one session by id"),
    force: bool = typer.Option(
        False, "--force", help="Re-extract even if files are unchanged"
    ),
    project: Optional[str] = typer.Option(
        None, "--project", "-p", help="Only sync project directories containing this text"
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress progress output"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """
    Extract session transcripts into the memory database.

    Unchanged files are skipped; interrupted or failed files are re-extracted.
    """
    from memex.pipeline.recovery import recover_interrupted
    from memex.pipeline.sync import SYNC_ALL, SyncProgress, SyncService

    background = os.environ.get("MEMEX_HOOK") == "1"
    _init_logging(context="sync" if background else "cli", quiet=quiet or as_json)

    if paths and session:
        _fail(
            InvalidArgumentError("Pass either session files or --session, not both"),
            as_json,
        )

    target: Any = [str(path) for path in paths] if paths else (session or SYNC_ALL)

    def progress(update: SyncProgress) -> None:
        if update.phase == "failed":
            console.print(f"  [red]✗[/red] {update.session_path}")
        elif update.phase == "complete":
            console.print(f"  [green]✓[/green] {update.session_path}")

    recovered = 0
    try:
        with _open_store() as store:
            # A full sync re-extracts interrupted files itself
            if target != SYNC_ALL:
                try:
                    recovery = recover_interrupted(store)
                except MemexError as e:
                    logger.warning(f"Startup recovery skipped: {e}")
                    recovery = None
                if recovery is not None and recovery.recovered:
                    recovered = recovery.recovered
                    if not quiet and not as_json:
                        console.print(
                            f"[yellow]Resumed {recovered} interrupted session(s)[/yellow]"
                        )
            if not quiet and not as_json:
                console.print(f"[bold blue]Syncing:[/bold blue] {target if isinstance(target, str) else f'{len(target)} file(s)'}")
            result = SyncService(store).sync(
                target,
                force=force,
                project_filter=project,
                on_progress=None if (quiet or as_json) else progress,
            )
    except MemexError as e:
        _fail(e, as_json)

    if as_json:
        _emit_json({**result.to_dict(), "recovered": recovered})
    elif not quiet:
        console.print()
        console.print("[bold]Summary:[/bold]")
        console.print(f"  Discovered: {result.sessions_discovered}")
        console.print(f"  Processed: {result.files_processed}")
        console.print(f"  Skipped (unchanged): {result.sessions_skipped}")
        console.print(f"  Messages extracted: {result.messages_extracted}")
        console.print(f"  Malformed lines skipped: {result.malformed_lines}")
        if result.errors:
            console.print(f"  [red]Failed: {len(result.errors)}[/red]")
            for error in result.errors:
                console.print(f"    [red]{error.code}[/red] {error.session_path}: {error.message}")

    if result.errors:
        user_only = all(is_user_error(ErrorCode(error.code)) for error in result.errors)
        raise typer.Exit(1 if user_only else 2)


@app.command()
def search(
    query: str = typer.Argument(..., help="Search terms, quoted phrases, OR / NOT"),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project name filter"),
    role: Optional[str] = typer.Option(None, "--role", "-r", help="user or assistant"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Restrict to one session"),
    since: Optional[str] = typer.Option(None, "--since", help="ISO timestamp lower bound"),
    before: Optional[str] = typer.Option(None, "--before", help="ISO timestamp upper bound"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum results"),
    sessions: bool = typer.Option(False, "--sessions", help="Search session summaries instead"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Full-text search across all stored sessions."""
    from memex.search import SearchFilters, SearchService

    _init_logging(quiet=True)

    try:
        filters = SearchFilters(
            project=project,
            role=role,
            session_id=session,
            since=_parse_time(since, "--since"),
            before=_parse_time(before, "--before"),
        )
        with _open_store() as store:
            service = SearchService(store)
            if sessions:
                matches = service.search_sessions(query, limit=limit)
            else:
                response = service.search(query, filters, limit=limit)
    except MemexError as e:
        _fail(e, as_json)

    if sessions:
        if as_json:
            _emit_json([match.to_dict() for match in matches])
            return
        for match in matches:
            console.print(
                f"[bold]{match.session_id}[/bold] ({match.project_name or '?'}) "
                f"score={match.score:.2f}"
            )
            console.print(f"  {match.snippet}", markup=False)
        return

    if as_json:
        _emit_json(response.to_dict())
        return

    if not response.results:
        console.print("[yellow]No matches[/yellow]")
        return

    for result in response.results:
        console.print(
            f"[bold]{result.score:.2f}[/bold] [cyan]{result.role}[/cyan] "
            f"{result.timestamp} {result.project_name or ''} [dim]{result.session_id}[/dim]"
        )
        console.print(f"  {result.snippet}", markup=False, highlight=False)
    if response.truncated:
        console.print(
            f"[yellow]Output truncated: showing {len(response.results)} "
            f"of {response.total_matches} matches[/yellow]"
        )


@app.command()
def related(
    source_id: str = typer.Argument(..., help="Id of the session, message or topic"),
    source_type: str = typer.Option("session", "--type", "-t", help="session, message or topic"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum results"),
    hops: int = typer.Option(2, "--hops", help="Traversal depth (1 or 2)"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Show sessions related to a session, message or topic."""
    from memex.graph import RelatedService, RelatedStatus

    _init_logging(quiet=True)

    try:
        with _open_store() as store:
            response = RelatedService(store).related(
                source_type, source_id, limit=limit, max_hops=hops
            )
    except MemexError as e:
        _fail(e, as_json)

    if as_json:
        _emit_json(response.to_dict())
    elif response.status == RelatedStatus.NOT_FOUND:
        console.print(f"[yellow]No {source_type} with id {source_id}[/yellow]")
    elif response.status == RelatedStatus.NO_LINKS:
        console.print("[yellow]No relationships extracted yet; run `memex sync` first[/yellow]")
    elif not response.results:
        console.print("[yellow]No related sessions[/yellow]")
    else:
        table = Table(title=f"Related to {source_type} {source_id}")
        table.add_column("Session")
        table.add_column("Project")
        table.add_column("Weight", justify="right")
        table.add_column("Hops", justify="right")
        for item in response.results:
            table.add_row(item.session_id, item.project_name or "", f"{item.weight:.2f}", str(item.hops))
        console.print(table)

    if response.status == RelatedStatus.NOT_FOUND:
        raise typer.Exit(1)


@app.command()
def stats(
    projects: Optional[int] = typer.Option(None, "--projects", help="Limit the project breakdown"),
    as_json: bool = typer.Option(False, "--json", help="Print statistics as JSON"),
) -> None:
    """Show database statistics."""
    from memex.services.stats import StatsService

    _init_logging(quiet=True)

    try:
        with _open_store() as store:
            result = StatsService(store).stats(project_limit=projects)
    except MemexError as e:
        _fail(e, as_json)

    if as_json:
        _emit_json(result.to_dict())
        return

    console.print("[bold]Memex statistics[/bold]")
    console.print(f"  Sessions: {result.session_count}")
    console.print(f"  Messages: {result.message_count}")
    console.print(f"  Tool uses: {result.tool_use_count}")
    console.print(f"  Database size: {result.storage_size_bytes / 1024:.1f} KiB")

    if result.per_project:
        table = Table(title="Projects")
        table.add_column("Project")
        table.add_column("Sessions", justify="right")
        table.add_column("Messages", justify="right")
        for project in result.per_project:
            table.add_row(project.project_name, str(project.session_count), str(project.message_count))
        console.print(table)


@app.command()
def context(
    project: str = typer.Argument(..., help="Project name (substring match)"),
    days: Optional[int] = typer.Option(None, "--days", help="Only sessions from the last N days"),
    as_json: bool = typer.Option(False, "--json", help="Print context as JSON"),
) -> None:
    """Summarize activity in a project."""
    from memex.services.context import ContextService

    _init_logging(quiet=True)

    try:
        with _open_store() as store:
            result = ContextService(store).project_context(project, days=days)
    except MemexError as e:
        _fail(e, as_json)

    if as_json:
        _emit_json(result.to_dict())
        return

    console.print(f"[bold blue]Project:[/bold blue] {project}")
    console.print(f"  Sessions: {result.session_count}")
    console.print(f"  Messages: {result.message_count}")
    if result.top_tools:
        console.print("  Top tools: " + ", ".join(f"{name} ({count})" for name, count in result.top_tools))
    if result.top_files:
        console.print("  Top files:")
        for name, count in result.top_files:
            console.print(f"    {name} ({count})", markup=False)
    if result.recent_sessions:
        console.print("  Recent sessions:")
        for recent in result.recent_sessions:
            console.print(
                f"    {recent.start_time} {recent.session_id} "
                f"({recent.message_count} messages) {recent.summary or ''}",
                markup=False,
            )


@app.command("list")
def list_sessions(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project name filter"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum sessions"),
    as_json: bool = typer.Option(False, "--json", help="Print sessions as JSON"),
) -> None:
    """List recent sessions."""
    from memex.services.sessions import SessionService

    _init_logging(quiet=True)

    try:
        with _open_store() as store:
            sessions = SessionService(store).list_sessions(project=project, limit=limit)
    except MemexError as e:
        _fail(e, as_json)

    if as_json:
        _emit_json([session.__dict__ for session in sessions])
        return

    table = Table(title="Sessions")
    table.add_column("Session")
    table.add_column("Project")
    table.add_column("Started")
    table.add_column("Messages", justify="right")
    for item in sessions:
        table.add_row(item.id, item.project_name, item.start_time, str(item.message_count))
    console.print(table)


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session id"),
    flat: bool = typer.Option(False, "--flat", help="Chronological order instead of threads"),
    as_json: bool = typer.Option(False, "--json", help="Print the session as JSON"),
) -> None:
    """Show one session's conversation."""
    from memex.services.sessions import SessionService

    _init_logging(quiet=True)

    try:
        with _open_store() as store:
            detail = SessionService(store).show_session(session_id, threaded=not flat)
    except MemexError as e:
        _fail(e, as_json)

    if as_json:
        _emit_json(detail.to_dict())
        return

    console.print(f"[bold blue]Session:[/bold blue] {detail.id}")
    console.print(f"  Project: {detail.project_name} ({detail.project_path})", markup=False)
    console.print(f"  Started: {detail.start_time}")
    console.print(f"  Messages: {detail.message_count}")
    if detail.summary:
        console.print(f"  Summary: {detail.summary}", markup=False)
    console.print()
    for message in detail.messages:
        indent = "  " * message.depth
        style = "green" if message.role == "user" else "cyan"
        console.print(f"{indent}[{style}]{message.role}[/{style}] [dim]{message.timestamp}[/dim]")
        if message.content:
            console.print(f"{indent}  {message.content}", markup=False, highlight=False)


@app.command()
def recover(
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list pending sessions"),
    max_sessions: Optional[int] = typer.Option(None, "--max", help="Recover at most N sessions"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Re-extract sessions left pending by an interrupted or failed sync."""
    from memex.pipeline.recovery import recover as run_recovery

    _init_logging(quiet=as_json)

    try:
        with _open_store() as store:
            result = run_recovery(store, dry_run=dry_run, max_sessions=max_sessions)
    except MemexError as e:
        _fail(e, as_json)

    if as_json:
        _emit_json(
            {
                "dry_run": result.dry_run,
                "pending": [
                    {"session_path": str(item.source.path), "status": item.status}
                    for item in result.pending
                ],
                "recovered": result.recovered,
                "sync": result.sync_result.to_dict() if result.sync_result else None,
            }
        )
        return

    console.print(f"[bold blue]Pending sessions:[/bold blue] {len(result.pending)}")
    for item in result.pending:
        console.print(f"  {item.status:<12} {item.source.path}", markup=False)
    if not dry_run and result.sync_result is not None:
        console.print(f"[green]✓ Recovered {result.recovered} session(s)[/green]")
        if result.sync_result.errors:
            console.print(f"[red]✗ {len(result.sync_result.errors)} failed[/red]")
            raise typer.Exit(2)


@app.command()
def check(
    full: bool = typer.Option(False, "--full", help="Run a full integrity check (slow)"),
    repair: bool = typer.Option(False, "--repair", help="Rebuild the full-text index"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Verify database integrity."""
    _init_logging(quiet=True)

    try:
        with _open_store() as store:
            if repair:
                store.rebuild_index()
            report = store.integrity_check() if full else store.quick_check()
    except MemexError as e:
        _fail(e, as_json)

    if as_json:
        _emit_json({"ok": report.ok, "mode": report.mode, "problems": report.problems})
    elif report.ok:
        console.print(f"[green]✓ Database OK ({report.mode} check)[/green]")
    else:
        console.print(f"[red]✗ Database problems found ({report.mode} check):[/red]")
        for problem in report.problems:
            console.print(f"  {problem}", markup=False)

    if not report.ok:
        raise typer.Exit(2)


def _format_bytes(size: float) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def _print_counts(counts: dict) -> None:
    console.print("  Details:")
    for name, count in counts.items():
        console.print(f"    {name.replace('_', ' ').capitalize() + ':':<18} {count}")


@app.command("export")
def export_command(
    output: Path = typer.Argument(..., help="JSON backup file to write"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the file path"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Export the whole database to a JSON backup file."""
    from memex.services.export import ExportService

    _init_logging(quiet=True)

    try:
        with _open_store() as store:
            result = ExportService(store).export_to_json(output)
    except MemexError as e:
        _fail(e, as_json)

    if as_json:
        _emit_json({"success": True, **result.to_dict()})
    elif quiet:
        typer.echo(result.path)
    else:
        console.print(
            f"[green]✓ Exported {result.counts['sessions']} sessions, "
            f"{result.counts['messages']} messages to[/green] {result.path}"
        )
        _print_counts(result.counts)
        console.print(f"    {'File size:':<18} {_format_bytes(result.bytes)}")


@app.command("import")
def import_command(
    source: Path = typer.Argument(..., help="JSON backup file to read"),
    clear: bool = typer.Option(False, "--clear", help="Delete existing data before importing"),
    force: bool = typer.Option(False, "--force", help="Merge into a database that already has data"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only validate the file"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="No output on success"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Restore a JSON backup file into the database."""
    from memex.services.export import ExportService, validate_export_file

    _init_logging(quiet=True)

    try:
        # Reject a bad file before the database is opened or created
        manifest = validate_export_file(source)
        if dry_run:
            result = None
        else:
            with _open_store() as store:
                result = ExportService(store).import_from_json(source, clear=clear, force=force)
    except MemexError as e:
        _fail(e, as_json)

    if result is None:
        if as_json:
            _emit_json({"valid": True, "path": str(source), **asdict(manifest)})
        elif not quiet:
            console.print(f"[green]✓ Valid backup[/green] (version {manifest.version}, exported {manifest.exported_at})")
            _print_counts(manifest.stats)
        return

    if as_json:
        _emit_json({"success": True, **result.to_dict()})
    elif not quiet:
        verb = "Replaced data with" if result.cleared else "Imported"
        console.print(
            f"[green]✓ {verb} {result.inserted['sessions']} sessions, "
            f"{result.inserted['messages']} messages from[/green] {result.path}"
        )
        _print_counts(result.inserted)


@app.command()
def hook() -> None:
    """
    Entry point for editor hooks.

    Reads the hook payload from stdin and starts a background sync. Always
    exits 0 so the editor session is never interrupted.
    """
    from memex.hooks import run_hook

    try:
        setup_logging(context="hook", console=False)
    except OSError:
        pass

    raw = "" if sys.stdin is None or sys.stdin.isatty() else sys.stdin.read()
    raise typer.Exit(run_hook(raw))


if __name__ == "__main__":
    app()

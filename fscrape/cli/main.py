"""fscrape CLI.

Usage:
    fscrape scrape reddit subreddit python --limit 500
    fscrape resume SESSION_ID
    fscrape sessions --status paused
    fscrape status SESSION_ID

Exit codes: 0=completed, 1=failed or error, 2=paused (run `fscrape resume` to continue)
"""

# Load .env file before any other imports
from dotenv import load_dotenv

load_dotenv()

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import AsyncIterator, Annotated

import typer
from rich.console import Console
from rich.table import Table

from fscrape import __version__
from fscrape.config import Settings, get_settings
from fscrape.core.errors import ScrapeError
from fscrape.core.types import Platform, SessionStatus
from fscrape.observability import get_logger, setup_logging
from fscrape.rate_limit import RateLimiterRegistry
from fscrape.session import (
    JSONFileSessionStore,
    Session,
    SessionConfig,
    SessionEvent,
    SessionEventType,
    SessionManager,
    SessionStore,
    SQLiteSessionStore,
    cleanup_old_sessions,
    export_sessions,
    import_sessions,
)
from fscrape.sources import PlatformClient, create_client
from fscrape.storage import SQLiteStorage

# Create CLI app
app = typer.Typer(
    name="fscrape",
    help="Resumable forum scraper for Reddit and HackerNews",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PAUSED = 2


def _configure_logging(quiet: bool = False, verbose: bool = False) -> Settings:
    """Configure logging with rich handler and return the settings."""
    settings = get_settings()
    level = logging.DEBUG if verbose else settings.log_level
    setup_logging(
        level=level,
        json_format=settings.json_logs,
        quiet=quiet,
        console=None if settings.json_logs else console,
        force=True,
    )
    return settings


def _build_store(settings: Settings) -> SessionStore:
    if settings.sessions_backend == "json":
        return JSONFileSessionStore(settings.sessions_dir)
    return SQLiteSessionStore(settings.database_path)


@asynccontextmanager
async def _open_manager(settings: Settings) -> AsyncIterator[SessionManager]:
    """Manager wired to the configured store, SQLite sink and HTTP clients."""
    registry = RateLimiterRegistry(settings.platform_limits)

    def make_client(session: Session) -> PlatformClient:
        return create_client(
            session.platform,
            session.query_type,
            session.query_value,
            user_agent=settings.user_agent,
            timeout=settings.request_timeout,
            request_limiter=registry.get(session.platform),
            include_comments=session.include_comments,
            include_users=session.include_users,
        )

    sink = SQLiteStorage(settings.database_path)
    manager = SessionManager(
        _build_store(settings),
        sink,
        {platform: make_client for platform in Platform},
        limits=settings.platform_limits,
        registry=registry,
        page_size=settings.page_size,
        request_timeout=settings.request_timeout,
        persist_every_batches=settings.persist_every_batches,
        persist_interval=settings.persist_interval,
    )
    try:
        yield manager
    finally:
        await manager.close()
        await sink.close()


def _report(session: Session) -> int:
    """Print the outcome of a run and map it to an exit code."""
    counts = (
        f"{session.scraped_item_count} items "
        f"({session.post_count} posts, {session.comment_count} comments, {session.user_count} users)"
    )
    if session.status == SessionStatus.COMPLETED:
        console.print(f"[green]Session completed: {counts}[/green]")
        return EXIT_OK
    if session.status == SessionStatus.PAUSED:
        console.print(f"[yellow]Session paused at {counts}[/yellow]")
        console.print(f"[yellow]Run `fscrape resume {session.id}` to continue.[/yellow]")
        return EXIT_PAUSED
    if session.status == SessionStatus.FAILED:
        console.print(f"[red]Session failed: {session.last_error}[/red]")
        console.print(f"[red]Run `fscrape restart-from {session.id}` to continue from the last good page.[/red]")
        return EXIT_FAILED
    if session.status == SessionStatus.CANCELLED:
        console.print(f"[yellow]Session cancelled at {counts}[/yellow]")
        return EXIT_FAILED
    console.print(f"Session {session.id} is {session.status.value}")
    return EXIT_PAUSED


async def _drive(manager: SessionManager, session_id: str, *, resume: bool, quiet: bool) -> int:
    """Run a session to its next stop. SIGINT pauses it at the next checkpoint."""
    loop = asyncio.get_running_loop()
    pause_task: asyncio.Task | None = None

    def on_interrupt() -> None:
        nonlocal pause_task
        if pause_task is None:
            console.print("\n[yellow]Interrupted, pausing at the next checkpoint...[/yellow]")
            pause_task = asyncio.create_task(manager.pause_session(session_id))

    def on_milestone(event: SessionEvent) -> None:
        if not quiet:
            console.print(f"[bold blue]{event.data['percent']}% reached[/bold blue] ({event.data['count']} items)")

    unsubscribe = manager.events.subscribe(on_milestone, SessionEventType.MILESTONE)
    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        handles_sigint = True
    except (NotImplementedError, RuntimeError):
        handles_sigint = False

    try:
        if resume:
            session = await manager.resume_session(session_id)
        else:
            session = await manager.start_session(session_id)
        if not quiet:
            console.print(f"[bold]Session {session.id}[/bold] ({session.platform.value} {session.query})")

        final = await manager.wait_for(session_id)
        if pause_task is not None:
            final = await pause_task
    finally:
        unsubscribe()
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)

    if not quiet:
        snapshot = await manager.get_progress(session_id)
        console.print(snapshot.format())
    return _report(final)


def _run(coro) -> None:
    """Run a command coroutine and turn its result into an exit code."""
    try:
        code = asyncio.run(coro)
    except ScrapeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=EXIT_FAILED)
    if code:
        raise typer.Exit(code=code)


# ==================== Commands ====================


@app.command()
def scrape(
    platform: Annotated[Platform, typer.Argument(help="Platform to scrape")],
    query_type: Annotated[str, typer.Argument(help="Query type, e.g. subreddit, search, top, user")],
    query_value: Annotated[str | None, typer.Argument(help="Subreddit, search term or user name")] = None,
    limit: Annotated[int | None, typer.Option("--limit", "-n", help="Target number of items")] = None,
    page_size: Annotated[int | None, typer.Option("--page-size", help="Items per page request")] = None,
    include_comments: Annotated[bool, typer.Option("--include-comments", help="Also fetch comments")] = False,
    include_users: Annotated[bool, typer.Option("--include-users", help="Also fetch author profiles")] = False,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Minimal output")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Verbose output")] = False,
) -> None:
    """Create a scrape session and run it.

    Press Ctrl+C to pause; the session can be resumed later.

    Examples:
        fscrape scrape reddit subreddit python --limit 500
        fscrape scrape hackernews top --limit 100 --include-comments
        fscrape scrape reddit search "rust async" -n 50
    """
    settings = _configure_logging(quiet=quiet, verbose=verbose)
    if page_size is not None:
        settings = settings.model_copy(update={"page_size": page_size})

    try:
        config = SessionConfig(
            platform=platform,
            query_type=query_type,
            query_value=query_value,
            target_item_count=limit,
            include_comments=include_comments,
            include_users=include_users,
        )
    except ScrapeError as e:
        console.print(f"[red]Invalid session: {e}[/red]")
        raise typer.Exit(code=EXIT_FAILED)

    async def _scrape() -> int:
        async with _open_manager(settings) as manager:
            session = await manager.create_session(config)
            return await _drive(manager, session.id, resume=False, quiet=quiet)

    _run(_scrape())


@app.command()
def resume(
    session_id: Annotated[str, typer.Argument(help="Session to resume")],
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Minimal output")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Verbose output")] = False,
) -> None:
    """Resume a paused (or crashed) session from its last checkpoint."""
    settings = _configure_logging(quiet=quiet, verbose=verbose)

    async def _resume() -> int:
        async with _open_manager(settings) as manager:
            return await _drive(manager, session_id, resume=True, quiet=quiet)

    _run(_resume())


@app.command()
def cancel(
    session_id: Annotated[str, typer.Argument(help="Session to cancel")],
) -> None:
    """Cancel a pending, running or paused session."""
    settings = _configure_logging()

    async def _cancel() -> int:
        async with _open_manager(settings) as manager:
            session = await manager.cancel_session(session_id)
        console.print(f"[yellow]Session {session.id} cancelled.[/yellow]")
        return EXIT_OK

    _run(_cancel())


@app.command("restart-from")
def restart_from(
    session_id: Annotated[str, typer.Argument(help="Failed or cancelled session")],
    limit: Annotated[int | None, typer.Option("--limit", "-n", help="Target number of items")] = None,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Minimal output")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Verbose output")] = False,
) -> None:
    """Start a new session from the last good page of a failed session."""
    settings = _configure_logging(quiet=quiet, verbose=verbose)

    async def _restart() -> int:
        async with _open_manager(settings) as manager:
            session = await manager.restart_from(session_id, target_item_count=limit)
            if not quiet:
                console.print(f"Continuing {session_id} as new session {session.id}")
            return await _drive(manager, session.id, resume=False, quiet=quiet)

    _run(_restart())


@app.command()
def sessions(
    status: Annotated[SessionStatus | None, typer.Option("--status", "-s", help="Filter by status")] = None,
    platform: Annotated[Platform | None, typer.Option("--platform", "-p", help="Filter by platform")] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows")] = 50,
) -> None:
    """List sessions, newest first."""
    settings = _configure_logging()

    async def _list() -> int:
        store = _build_store(settings)
        rows = await store.list_sessions(status=status, platform=platform, limit=limit)
        if not rows:
            console.print("[dim]No sessions found.[/dim]")
            return EXIT_OK

        table = Table(title="Sessions")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Platform")
        table.add_column("Query")
        table.add_column("Status")
        table.add_column("Items", justify="right")
        table.add_column("Target", justify="right")
        table.add_column("Last activity")
        for s in rows:
            last_seen = s.last_activity_at or s.created_at
            table.add_row(
                s.id,
                s.platform.value,
                s.query,
                s.status.value,
                str(s.scraped_item_count),
                str(s.target_item_count) if s.target_item_count is not None else "-",
                last_seen.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
        return EXIT_OK

    _run(_list())


@app.command()
def status(
    session_id: Annotated[str, typer.Argument(help="Session to inspect")],
) -> None:
    """Show progress, counters and the last error of a session."""
    settings = _configure_logging()

    async def _status() -> int:
        async with _open_manager(settings) as manager:
            session = await manager.get_session(session_id)
            snapshot = await manager.get_progress(session_id)

        console.print(f"[bold]Session {session.id}[/bold]")
        console.print(f"  Platform: {session.platform.value}")
        console.print(f"  Query: {session.query}")
        console.print(f"  Status: {session.status.value}")
        console.print(f"  Progress: {snapshot.format()}")
        console.print(
            f"  Items: {session.post_count} posts, {session.comment_count} comments, "
            f"{session.user_count} users in {session.page_count} pages"
        )
        console.print(
            f"  Requests: {session.request_count} (retries: {session.retry_count}, "
            f"rate limited: {session.rate_limit_hits})"
        )
        if session.resume_token:
            console.print(f"  Resume token: {session.resume_token}")
        if session.resumed_from:
            console.print(f"  Continued from: {session.resumed_from}")
        if session.last_error:
            console.print(f"  [red]Last error: {session.last_error}[/red]")

        if session.can_resume:
            console.print(f"[yellow]Run `fscrape resume {session.id}` to continue.[/yellow]")
        elif session.status == SessionStatus.FAILED:
            console.print(f"[yellow]Run `fscrape restart-from {session.id}` to continue.[/yellow]")
        return EXIT_OK

    _run(_status())


@app.command()
def recover() -> None:
    """Pause sessions left running by a crashed process."""
    settings = _configure_logging()

    async def _recover() -> int:
        async with _open_manager(settings) as manager:
            recovered = await manager.recover_sessions()
        if not recovered:
            console.print("[green]No crashed sessions.[/green]")
        for session in recovered:
            console.print(
                f"[yellow]Paused {session.id} ({session.platform.value} {session.query}) "
                f"at {session.scraped_item_count} items[/yellow]"
            )
        return EXIT_OK

    _run(_recover())


@app.command("export-sessions")
def export_sessions_cmd(
    path: Annotated[Path, typer.Argument(help="Backup file to write")],
    status: Annotated[SessionStatus | None, typer.Option("--status", "-s", help="Only this status")] = None,
) -> None:
    """Write sessions to a JSON backup file."""
    settings = _configure_logging()

    async def _export() -> int:
        count = await export_sessions(_build_store(settings), path, status=status)
        console.print(f"[green]Exported {count} sessions to {path}[/green]")
        return EXIT_OK

    _run(_export())


@app.command("import-sessions")
def import_sessions_cmd(
    path: Annotated[Path, typer.Argument(help="Backup file to read")],
    overwrite: Annotated[bool, typer.Option("--overwrite", help="Replace existing sessions")] = False,
) -> None:
    """Restore sessions from a JSON backup file."""
    settings = _configure_logging()

    async def _import() -> int:
        count = await import_sessions(_build_store(settings), path, overwrite=overwrite)
        console.print(f"[green]Imported {count} sessions from {path}[/green]")
        return EXIT_OK

    _run(_import())


@app.command()
def cleanup(
    days: Annotated[int, typer.Option("--days", "-d", help="Delete finished sessions older than this")] = 30,
) -> None:
    """Delete completed, failed and cancelled sessions older than N days."""
    settings = _configure_logging()
    if days < 0:
        console.print("[red]--days must be >= 0[/red]")
        raise typer.Exit(code=EXIT_FAILED)

    async def _cleanup() -> int:
        deleted = await cleanup_old_sessions(_build_store(settings), timedelta(days=days))
        console.print(f"[green]Deleted {deleted} sessions.[/green]")
        return EXIT_OK

    _run(_cleanup())


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"[bold]fscrape v{__version__}[/bold]")
    console.print("Resumable Reddit and HackerNews scraping sessions")


if __name__ == "__main__":
    app()

"""Session orchestration: lifecycle state machine and fetch loop.

One asyncio task per running session. Each loop iteration:
- checks for a pause/cancel/complete request
- waits on the platform's shared rate limiter
- fetches the next page through the retry policy
- commits the batch, then counters, then the resume token
- checkpoints the session to the store

Usage:
    manager = SessionManager(store, sink, {Platform.REDDIT: make_reddit_client})

    session = await manager.create_session(SessionConfig(Platform.REDDIT, "subreddit", "python"))
    await manager.start_session(session.id)
    ...
    await manager.pause_session(session.id)
    await manager.resume_session(session.id)
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from ..config.constants import (
    DEFAULT_MILESTONES,
    DEFAULT_PAGE_SIZE,
    DEFAULT_PERSIST_EVERY_BATCHES,
    DEFAULT_PERSIST_INTERVAL,
    DEFAULT_REQUEST_TIMEOUT,
)
from ..config.settings import PlatformLimits
from ..core.errors import (
    AlreadyRunningError,
    InvalidConfigError,
    InvalidStateError,
    RetryExhaustedError,
    SessionNotFoundError,
)
from ..core.types import Comment, ForumPost, Page, Platform, SessionStatus, User
from ..observability.logger import get_logger, log_context
from ..observability.metrics import MetricsCollector, SessionMetrics
from ..rate_limit.classify import FailureType, classify_failure
from ..rate_limit.limiter import Clock, CompositeRateLimiter, RateLimiterRegistry, Sleep
from ..rate_limit.retry import RetryAttempt, RetryPolicy
from ..sources.base import PlatformClient
from ..storage.base import PersistenceSink
from .events import EventBus, SessionEvent, SessionEventType
from .progress import ProgressSnapshot, ProgressTracker
from .state import Session, SessionConfig, can_transition
from .store import SessionStore

logger = get_logger(__name__)

ClientFactory = Callable[[Session], PlatformClient]

_STOP_EVENTS = {
    SessionStatus.PAUSED: SessionEventType.PAUSED,
    SessionStatus.COMPLETED: SessionEventType.COMPLETED,
    SessionStatus.CANCELLED: SessionEventType.CANCELLED,
    SessionStatus.FAILED: SessionEventType.FAILED,
}

# Fields that move together: counters and the cursor of the same batch
_PROGRESS_FIELDS = (
    "scraped_item_count",
    "post_count",
    "comment_count",
    "user_count",
    "page_count",
    "resume_token",
    "last_item_id",
)


def _progress_of(session: Session) -> dict[str, Any]:
    state: dict[str, Any] = {name: getattr(session, name) for name in _PROGRESS_FIELDS}
    state["milestones_reached"] = list(session.milestones_reached)
    return state


@dataclass
class _Run:
    """A fetch loop owned by this manager."""

    session: Session
    client: PlatformClient
    tracker: ProgressTracker
    last_persist: float
    committed: dict[str, Any] = field(default_factory=dict)  # Last counters/cursor pair
    task: asyncio.Task | None = None
    stop: SessionStatus | None = None  # Requested stop, applied at the next checkpoint
    batches_since_persist: int = 0
    metrics: SessionMetrics | None = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        return self.task is not None and not self.task.done()

    def rollback_progress(self) -> bool:
        """Restore the last consistent counters/cursor pair. True if anything changed."""
        changed = _progress_of(self.session) != self.committed
        for name, value in self.committed.items():
            setattr(self.session, name, list(value) if isinstance(value, list) else value)
        return changed


class SessionManager:
    """Create, run, pause, resume and finish scrape sessions.

    The store is the source of truth. A session persisted as `running`
    that no loop in this manager owns is treated as crashed: it can be
    resumed (or paused) but not started again.
    """

    def __init__(
        self,
        store: SessionStore,
        sink: PersistenceSink,
        client_factories: Mapping[Platform, ClientFactory],
        *,
        limits: Mapping[Platform, PlatformLimits] | None = None,
        registry: RateLimiterRegistry | None = None,
        events: EventBus | None = None,
        metrics: MetricsCollector | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        request_timeout: float | None = DEFAULT_REQUEST_TIMEOUT,
        persist_every_batches: int = DEFAULT_PERSIST_EVERY_BATCHES,
        persist_interval: float = DEFAULT_PERSIST_INTERVAL,
        milestones: Iterable[int] = DEFAULT_MILESTONES,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if page_size <= 0:
            raise InvalidConfigError(f"page_size must be positive, got {page_size}")
        if persist_every_batches <= 0:
            raise InvalidConfigError(
                f"persist_every_batches must be positive, got {persist_every_batches}"
            )

        self.store = store
        self.sink = sink
        self.client_factories = dict(client_factories)
        self.limits = dict(limits or {})
        self.registry = registry or RateLimiterRegistry(self.limits, clock=clock, sleep=sleep)
        self.events = events or EventBus()
        self.metrics = metrics or MetricsCollector()
        self.page_size = page_size
        self.request_timeout = request_timeout
        self.persist_every_batches = persist_every_batches
        self.persist_interval = persist_interval
        self.milestones = tuple(milestones)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._runs: dict[str, _Run] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # =========================================================================
    # Queries
    # =========================================================================

    def is_owned(self, session_id: str) -> bool:
        """Whether a live fetch loop for the session runs in this manager."""
        run = self._runs.get(session_id)
        return run is not None and run.alive

    async def _load(self, session_id: str) -> Session:
        session = await self.store.load(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}", session_id=session_id)
        return session

    async def get_session(self, session_id: str) -> Session:
        """Current view of a session: in-memory if running here, else persisted."""
        run = self._runs.get(session_id)
        if run is not None:
            return run.session.copy()
        return await self._load(session_id)

    async def list_sessions(self, **filters) -> list[Session]:
        return await self.store.list_sessions(**filters)

    async def get_progress(self, session_id: str) -> ProgressSnapshot:
        """Progress snapshot from the live tracker, or from persisted counters."""
        run = self._runs.get(session_id)
        if run is not None:
            return run.tracker.get_snapshot()
        session = await self._load(session_id)
        tracker = ProgressTracker(
            target=session.target_item_count,
            initial_count=session.scraped_item_count,
            milestones=self.milestones,
            already_reached=session.milestones_reached,
            clock=self._clock,
        )
        return tracker.get_snapshot()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_session(self, config: SessionConfig) -> Session:
        """Validate and persist a new pending session.

        Raises:
            InvalidConfigError: bad config or no client for the platform
        """
        if not isinstance(config, SessionConfig):
            raise InvalidConfigError(f"Expected SessionConfig, got {type(config).__name__}")
        if config.platform not in self.client_factories:
            raise InvalidConfigError(
                f"No client configured for platform: {config.platform.value}",
                platform=config.platform.value,
            )

        session = Session.from_config(config)
        await self.store.save(session)

        logger.info(
            f"Created session {session.id} ({session.platform.value} {session.query})",
            extra={"session_id": session.id, "target": session.target_item_count},
        )
        await self._emit(session, SessionEventType.CREATED)
        return session.copy()

    async def start_session(self, session_id: str) -> Session:
        """Start a pending session (or resume a paused one).

        Raises:
            AlreadyRunningError: the session is already running
            InvalidStateError: the session is completed, failed or cancelled
            SessionNotFoundError: unknown id
        """
        async with self._locks[session_id]:
            self._ensure_not_owned(session_id)
            session = await self._load(session_id)

            if session.status == SessionStatus.PAUSED:
                return await self._resume_locked(session)
            if session.status == SessionStatus.RUNNING:
                raise AlreadyRunningError(
                    f"Session {session_id} is already running; use resume to recover it",
                    current_status=session.status.value,
                    target_status=SessionStatus.RUNNING.value,
                    session_id=session_id,
                )

            session.transition(SessionStatus.RUNNING)
            await self.store.save(session)
            logger.info(f"Started session {session_id}", extra={"session_id": session_id})
            await self._emit(session, SessionEventType.STARTED)
            self._launch(session)
            return session.copy()

    async def resume_session(self, session_id: str) -> Session:
        """Restart the fetch loop of a paused (or crashed running) session.

        The loop continues from the persisted resume token.

        Raises:
            AlreadyRunningError: a loop for this session runs in this manager
            InvalidStateError: status is not paused/running
        """
        async with self._locks[session_id]:
            self._ensure_not_owned(session_id)
            session = await self._load(session_id)
            return await self._resume_locked(session)

    async def _resume_locked(self, session: Session) -> Session:
        if session.status == SessionStatus.RUNNING:
            # Persisted as running but no owner here: a crashed loop
            logger.warning(
                f"Recovering crashed session {session.id} from token {session.resume_token!r}",
                extra={"session_id": session.id},
            )
            session.touch()
        elif session.status == SessionStatus.PAUSED:
            session.transition(SessionStatus.RUNNING)
        else:
            hint = " (start a new session with restart_from)" if session.status == SessionStatus.FAILED else ""
            raise InvalidStateError(
                f"Cannot resume session {session.id} in status {session.status.value}{hint}",
                current_status=session.status.value,
                target_status=SessionStatus.RUNNING.value,
                session_id=session.id,
            )

        await self.store.save(session)
        logger.info(
            f"Resumed session {session.id} at {session.scraped_item_count} items",
            extra={"session_id": session.id, "resume_token": session.resume_token},
        )
        await self._emit(session, SessionEventType.RESUMED)
        self._launch(session)
        return session.copy()

    async def pause_session(self, session_id: str) -> Session:
        """Pause at the next checkpoint.

        Returns only after the paused status and resume token are persisted.
        If the loop finishes on its own first, the finished session is returned.
        """
        return await self._stop(session_id, SessionStatus.PAUSED)

    async def cancel_session(self, session_id: str) -> Session:
        """Terminal stop from pending, running or paused."""
        return await self._stop(session_id, SessionStatus.CANCELLED)

    async def complete_session(self, session_id: str) -> Session:
        """Mark a running session completed (applied at the next checkpoint)."""
        return await self._stop(session_id, SessionStatus.COMPLETED)

    async def _stop(self, session_id: str, target: SessionStatus) -> Session:
        async with self._locks[session_id]:
            run = self._runs.get(session_id)
            if run is not None and run.alive:
                # Cancel wins over an earlier pause/complete request
                if run.stop is None or target == SessionStatus.CANCELLED:
                    run.stop = target
                await asyncio.wait({run.task})  # type: ignore[arg-type]
                return await self._load(session_id)

            session = await self._load(session_id)
            session.transition(target)
            await self.store.save(session)
            logger.info(
                f"Session {session_id} {target.value}",
                extra={"session_id": session_id},
            )
            await self._emit(session, _STOP_EVENTS[target])
            return session

    async def wait_for(self, session_id: str) -> Session:
        """Wait for a running loop to exit and return the persisted session."""
        run = self._runs.get(session_id)
        if run is not None and run.task is not None:
            await asyncio.wait({run.task})
        return await self._load(session_id)

    async def run_session(self, session_id: str) -> Session:
        """Start (or resume) a session and wait until its loop exits."""
        await self.start_session(session_id)
        return await self.wait_for(session_id)

    async def recover_sessions(self) -> list[Session]:
        """Pause sessions left `running` by a previous process.

        Returns:
            Sessions moved to paused
        """
        recovered = []
        for candidate in await self.store.list_active():
            if candidate.status != SessionStatus.RUNNING:
                continue
            async with self._locks[candidate.id]:
                # Re-read under the lock; another call may have moved it meanwhile
                session = await self.store.load(candidate.id)
                if (
                    session is None
                    or session.status != SessionStatus.RUNNING
                    or self.is_owned(session.id)
                ):
                    continue
                session.transition(SessionStatus.PAUSED)
                await self.store.save(session)
            logger.info(
                f"Recovered crashed session {session.id} as paused",
                extra={"session_id": session.id, "resume_token": session.resume_token},
            )
            await self._emit(session, SessionEventType.PAUSED, {"recovered": True})
            recovered.append(session)
        return recovered

    async def restart_from(
        self,
        session_id: str,
        target_item_count: int | None = None,
    ) -> Session:
        """New pending session that continues from another session's last good token.

        Intended for failed or cancelled sessions, which cannot be resumed.
        """
        source = await self._load(session_id)
        if source.status not in (SessionStatus.FAILED, SessionStatus.CANCELLED):
            raise InvalidStateError(
                f"restart_from needs a failed or cancelled session, got {source.status.value}",
                current_status=source.status.value,
                session_id=session_id,
            )
        if target_item_count is None and source.remaining_items:
            target_item_count = source.remaining_items

        config = SessionConfig(
            platform=source.platform,
            query_type=source.query_type,
            query_value=source.query_value,
            target_item_count=target_item_count,
            include_comments=source.include_comments,
            include_users=source.include_users,
            resume_token=source.resume_token,
            resumed_from=source.id,
        )
        return await self.create_session(config)

    async def close(self) -> None:
        """Cancel owned loops without finishing them.

        Their sessions stay `running` in the store and are picked up by
        recover_sessions or resume_session later.
        """
        runs = [run for run in self._runs.values() if run.alive]
        for run in runs:
            run.task.cancel()  # type: ignore[union-attr]
        await asyncio.gather(*(run.task for run in runs), return_exceptions=True)  # type: ignore[misc]
        for run in runs:
            await self.store.save(run.session)
        self._runs.clear()

    def _ensure_not_owned(self, session_id: str) -> None:
        if self.is_owned(session_id):
            raise AlreadyRunningError(
                f"Session {session_id} is already running",
                current_status=SessionStatus.RUNNING.value,
                target_status=SessionStatus.RUNNING.value,
                session_id=session_id,
            )

    # =========================================================================
    # Fetch loop
    # =========================================================================

    def _launch(self, session: Session) -> None:
        factory = self.client_factories.get(session.platform)
        if factory is None:
            raise InvalidConfigError(
                f"No client configured for platform: {session.platform.value}",
                platform=session.platform.value,
            )
        run = _Run(
            session=session,
            client=factory(session),
            tracker=ProgressTracker(
                target=session.target_item_count,
                initial_count=session.scraped_item_count,
                milestones=self.milestones,
                already_reached=session.milestones_reached,
                clock=self._clock,
            ),
            last_persist=self._clock(),
            committed=_progress_of(session),
        )
        self._runs[session.id] = run
        run.task = asyncio.create_task(self._run_loop(run), name=f"session-{session.id}")

    def _retry_policy(self, run: _Run) -> RetryPolicy:
        limits = self.limits.get(run.session.platform) or PlatformLimits()
        return RetryPolicy.from_limits(
            limits,
            sleep=self._sleep,
            rng=self._rng,
            on_retry=[lambda attempt: self._on_retry(run, attempt)],
        )

    async def _run_loop(self, run: _Run) -> None:
        session = run.session
        limiter = self.registry.get(session.platform)
        retry = self._retry_policy(run)

        with log_context(
            platform=session.platform.value,
            session_id=session.id,
            query=session.query,
            phase="fetch",
        ), self.metrics.session(session.id, session.platform.value) as metrics:
            run.metrics = metrics
            try:
                while True:
                    if run.stop is not None:
                        await self._finish(run, run.stop)
                        return
                    if session.target_reached:
                        await self._finish(run, SessionStatus.COMPLETED)
                        return

                    token = session.resume_token
                    page_size = self.page_size
                    if session.remaining_items is not None:
                        page_size = min(page_size, session.remaining_items)

                    page = await retry.execute(self._fetch_attempt, run, limiter, token, page_size)
                    await self._commit_page(run, page)

                    if session.target_reached:
                        await self._finish(run, SessionStatus.COMPLETED)
                        return
                    if not page.has_more or page.next_resume_token is None:
                        logger.info("Platform has no more pages")
                        await self._finish(run, SessionStatus.COMPLETED)
                        return
                    if not page.items and page.next_resume_token == token:
                        logger.warning(f"Empty page did not advance the cursor ({token!r}), stopping")
                        await self._finish(run, SessionStatus.COMPLETED)
                        return
            except asyncio.CancelledError:
                logger.info("Fetch loop cancelled; session left running for recovery")
                raise
            except Exception as e:
                await self._fail(run, e)
            finally:
                if self._runs.get(session.id) is run:
                    del self._runs[session.id]
                await self._close_client(run)

    async def _fetch_attempt(
        self,
        run: _Run,
        limiter: CompositeRateLimiter,
        token: str | None,
        page_size: int,
    ) -> Page:
        waited = await limiter.acquire()
        if run.metrics is not None:
            run.metrics.record_rate_limit_wait(waited)
            run.metrics.record_request()
        run.session.request_count += 1

        fetch = run.client.fetch_page(token, page_size)
        if self.request_timeout is None:
            return await fetch
        return await asyncio.wait_for(fetch, timeout=self.request_timeout)

    async def _commit_page(self, run: _Run, page: Page) -> None:
        session = run.session
        items = page.items
        remaining = session.remaining_items
        if remaining is not None and len(items) > remaining:
            items = items[:remaining]

        posts = [i for i in items if isinstance(i, ForumPost)]
        comments = [i for i in items if isinstance(i, Comment)]
        users = [i for i in items if isinstance(i, User)]

        await self.sink.commit_batch(posts, comments, users)

        # Counters strictly before the cursor
        self._apply_counters(session, posts, comments, users)
        last_item_id = items[-1].id if items else session.last_item_id
        self._advance_cursor(session, page.next_resume_token, last_item_id)

        run.tracker.update(len(items))
        milestones = run.tracker.check_milestones()
        for milestone in milestones:
            session.milestones_reached.append(milestone.percent)
        run.committed = _progress_of(session)
        if run.metrics is not None:
            run.metrics.record_page(len(items))

        run.batches_since_persist += 1
        if (
            run.batches_since_persist >= self.persist_every_batches
            or self._clock() - run.last_persist >= self.persist_interval
        ):
            await self._checkpoint(run)

        snapshot = run.tracker.get_snapshot()
        logger.debug(
            f"Committed page {session.page_count}: {snapshot.format()}",
            extra={"items": len(items), "resume_token": session.resume_token},
        )
        await self._emit(session, SessionEventType.PROGRESS, snapshot.to_dict())
        for milestone in milestones:
            logger.info(f"Milestone {milestone.percent}% reached ({milestone.count} items)")
            await self._emit(
                session,
                SessionEventType.MILESTONE,
                {"percent": milestone.percent, "count": milestone.count},
            )

    def _apply_counters(
        self,
        session: Session,
        posts: list[ForumPost],
        comments: list[Comment],
        users: list[User],
    ) -> None:
        session.post_count += len(posts)
        session.comment_count += len(comments)
        session.user_count += len(users)
        session.scraped_item_count += len(posts) + len(comments) + len(users)
        session.page_count += 1

    def _advance_cursor(self, session: Session, token: str | None, last_item_id: str | None) -> None:
        # A final page may have no next token; keep the last good cursor
        if token is not None:
            session.resume_token = token
        session.last_item_id = last_item_id
        session.touch()

    async def _checkpoint(self, run: _Run) -> None:
        run.session.touch()
        await self.store.save(run.session)
        run.batches_since_persist = 0
        run.last_persist = self._clock()

    async def _finish(self, run: _Run, status: SessionStatus) -> None:
        # The live session keeps its status until the new one is persisted
        session = run.session.copy()
        session.transition(status)
        await self.store.save(session)
        run.session = session
        run.batches_since_persist = 0

        summary = run.metrics.to_dict() if run.metrics is not None else {}
        logger.info(
            f"Session {status.value}: {session.scraped_item_count} items in {session.page_count} pages",
            extra={"requests": summary.get("requests"), "retries": summary.get("retries")},
        )
        await self._emit(session, _STOP_EVENTS[status])

    async def _fail(self, run: _Run, error: Exception) -> None:
        session = run.session
        failure_type = classify_failure(error)
        session.record_error(error, failure_type.value)
        if run.metrics is not None:
            run.metrics.record_failure(type(error).__name__)
        if run.rollback_progress():
            logger.warning(
                f"Rolled back to the last consistent cursor {session.resume_token!r}",
                extra={"scraped_item_count": session.scraped_item_count},
            )
        if can_transition(session.status, SessionStatus.FAILED):
            session.transition(SessionStatus.FAILED)

        if isinstance(error, RetryExhaustedError):
            logger.error(
                f"Session failed after {error.retries} retries ({failure_type.value}): {error.last_error}",
                extra={"session_id": session.id},
            )
        else:
            logger.error(
                f"Session failed ({failure_type.value}): {error}",
                extra={"session_id": session.id},
            )

        try:
            await self.store.save(session)
        except Exception:
            logger.exception(f"Could not persist failed session {session.id}")
        await self._emit(
            session,
            SessionEventType.FAILED,
            {"error": str(error), "error_type": type(error).__name__, "failure_type": failure_type.value},
        )

    async def _on_retry(self, run: _Run, attempt: RetryAttempt) -> None:
        session = run.session
        session.retry_count += 1
        rate_limited = attempt.failure_type == FailureType.RATE_LIMIT
        if rate_limited:
            session.rate_limit_hits += 1
            # Every session on the platform backs off, not just this one
            self.registry.get(session.platform).record_rate_limit(attempt.delay)
        if run.metrics is not None:
            run.metrics.record_retry(type(attempt.error).__name__, rate_limited=rate_limited)
        await self._emit(
            session,
            SessionEventType.RETRY,
            {
                "attempt": attempt.attempt,
                "delay": attempt.delay,
                "error": str(attempt.error),
                "failure_type": attempt.failure_type.value,
            },
        )

    async def _close_client(self, run: _Run) -> None:
        try:
            await run.client.close()
        except Exception:
            logger.exception("Failed to close platform client")

    async def _emit(self, session: Session, event_type: SessionEventType, data: dict | None = None) -> None:
        await self.events.emit(
            SessionEvent(
                type=event_type,
                session_id=session.id,
                status=session.status,
                data=data or {},
            )
        )

"""Population controller: keeps the number of live virtual users on the ramp.

Each virtual user owns one simulated identity and loops sessions for it until
the orchestrator stops it. Ramp-down stops the highest identities first; a
stopped user leaves the live set at once and finishes its session in the
background. After the last stage the orchestrator waits for every user
(bounded by the graceful-stop window), then reconciles undelivered probes
across all sessions that ever ran.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Protocol

import structlog

from chatload.backend.models import AuthFailure, Credentials
from chatload.config import Settings
from chatload.metrics import Metric, MetricsAggregator
from chatload.orchestration.ramp import RampProfile
from chatload.session.machine import ChatSession
from chatload.session.models import SessionConfig, SessionContext
from chatload.transport import TRANSPORT_ERRORS, Connection, open_connection

logger = structlog.get_logger()

Connector = Callable[[str, str, str, float], Awaitable[Connection]]


class Backend(Protocol):
    async def sign_in(self, username: str, password: str) -> Credentials: ...

    async def get_ticket(self, auth_token: str) -> str: ...

    async def list_chats(self, auth_token: str) -> set[str]: ...


class User(Protocol):
    vu: int

    async def run(self) -> None: ...

    def stop(self) -> None: ...


class CredentialCache:
    """Credentials per simulated identity, kept across that identity's sessions."""

    def __init__(self) -> None:
        self._by_vu: dict[int, Credentials] = {}

    def __len__(self) -> int:
        return len(self._by_vu)

    def get(self, vu: int) -> Credentials | None:
        return self._by_vu.get(vu)

    def put(self, vu: int, credentials: Credentials) -> None:
        self._by_vu[vu] = credentials

    def invalidate(self, vu: int) -> None:
        self._by_vu.pop(vu, None)


@dataclass
class RunContext:
    """Shared, explicitly passed state for every virtual user of one run."""

    settings: Settings
    backend: Backend
    metrics: MetricsAggregator
    credentials: CredentialCache
    session_config: SessionConfig
    register_session: Callable[[ChatSession], None]
    connector: Connector = open_connection
    # Absolute monotonic time after which no session may still be running
    deadline: float = float("inf")
    clock: Callable[[], float] = time.monotonic


class VirtualUser:
    def __init__(self, vu: int, ctx: RunContext, rng: random.Random | None = None) -> None:
        self.vu = vu
        self.username = ctx.settings.username_for(vu)
        self._ctx = ctx
        self._rng = rng or random.Random()
        self._stop_event = asyncio.Event()
        self._session: ChatSession | None = None
        self._iterations = itertools.count(1)
        self._log = logger.bind(vu=vu)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()
        if self._session is not None:
            self._session.request_stop()

    async def run(self) -> None:
        pause = self._ctx.settings.iteration_pause_ms / 1000.0
        while not self.stopping:
            try:
                await self.run_iteration()
            except Exception:
                self._ctx.metrics.incr(Metric.INTERNAL_ERRORS)
                self._log.exception("virtual_user_iteration_crashed")
            if self.stopping:
                break
            # Also paces failed attempts so errors never turn into a retry storm
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=pause)

    async def run_iteration(self) -> ChatSession | None:
        ctx = self._ctx
        credentials = await self._credentials()
        if credentials is None or self.stopping:
            return None

        try:
            ticket = await ctx.backend.get_ticket(credentials.auth_token)
        except AuthFailure as exc:
            ctx.metrics.incr(Metric.AUTH_ERRORS)
            self._log.warning("get_ticket_failed", error=str(exc), status_code=exc.status_code)
            if exc.status_code == 401:
                ctx.credentials.invalidate(self.vu)
            return None

        remaining = ctx.deadline - ctx.clock()
        if self.stopping or remaining <= 0:
            return None

        try:
            connection = await ctx.connector(
                ctx.settings.ws_url,
                ticket,
                credentials.auth_token,
                ctx.session_config.handshake_timeout,
            )
        except TRANSPORT_ERRORS as exc:
            ctx.metrics.incr(Metric.TRANSPORT_ERRORS)
            self._log.warning("ws_handshake_failed", error=str(exc))
            return None

        if self.stopping:
            with contextlib.suppress(*TRANSPORT_ERRORS):
                await connection.close()
            return None

        config = replace(
            ctx.session_config,
            max_duration=min(ctx.session_config.max_duration, remaining),
        )
        context = SessionContext(
            session_id=f"{self.vu}-{next(self._iterations)}",
            vu=self.vu,
            credentials=credentials,
            config=config,
        )
        session = ChatSession(context, connection, ctx.backend, ctx.metrics, rng=self._rng)
        ctx.register_session(session)
        ctx.metrics.incr(Metric.SESSIONS_STARTED)
        self._session = session
        try:
            await session.run()
        finally:
            self._session = None
            ctx.metrics.incr(Metric.SESSIONS_COMPLETED)
        return session

    async def _credentials(self) -> Credentials | None:
        ctx = self._ctx
        cached = ctx.credentials.get(self.vu)
        if cached is not None:
            return cached
        try:
            credentials = await ctx.backend.sign_in(self.username, ctx.settings.password)
        except AuthFailure as exc:
            ctx.metrics.incr(Metric.AUTH_ERRORS)
            self._log.warning("signin_failed", username=self.username, error=str(exc))
            return None
        ctx.credentials.put(self.vu, credentials)
        return credentials


@dataclass(frozen=True)
class ConcurrencySample:
    elapsed_seconds: float
    target: int
    live: int
    stopping: int


class Orchestrator:
    """Drives the live virtual-user population along a ramp profile."""

    def __init__(
        self,
        profile: RampProfile,
        settings: Settings,
        backend: Backend,
        metrics: MetricsAggregator | None = None,
        *,
        connector: Connector = open_connection,
        user_factory: Callable[[int], User] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        seed: int | None = None,
    ) -> None:
        self.profile = profile
        self.settings = settings
        self.metrics = metrics or MetricsAggregator()
        self.credentials = CredentialCache()
        self.sessions: list[ChatSession] = []
        self.samples: list[ConcurrencySample] = []
        self._rng = random.Random(seed)
        self._clock = clock
        self._sleep = sleep
        self._ctx = RunContext(
            settings=settings,
            backend=backend,
            metrics=self.metrics,
            credentials=self.credentials,
            session_config=SessionConfig.from_settings(settings),
            register_session=self.sessions.append,
            connector=connector,
            clock=clock,
        )
        self._user_factory = user_factory or self._default_user
        self._live: dict[int, User] = {}
        self._retiring: dict[int, asyncio.Task[None]] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self.wall_time = 0.0

    def _default_user(self, vu: int) -> VirtualUser:
        return VirtualUser(vu, self._ctx, rng=random.Random(self._rng.getrandbits(64)))

    # ---- population control -------------------------------------------------

    @property
    def live_count(self) -> int:
        return len(self._live)

    @property
    def stopping_count(self) -> int:
        return len(self._retiring)

    def live_ids(self) -> list[int]:
        return sorted(self._live)

    def _next_free_index(self) -> int:
        # An identity still finishing its last session is not reused yet
        vu = 1
        while vu in self._live or vu in self._retiring:
            vu += 1
        return vu

    def scale_to(self, target: int) -> None:
        while len(self._live) < target:
            vu = self._next_free_index()
            user = self._user_factory(vu)
            self._live[vu] = user
            task = asyncio.create_task(user.run(), name=f"vu-{vu}")
            self._tasks[vu] = task
            task.add_done_callback(lambda _t, vu=vu: self._on_user_done(vu))

        while len(self._live) > target:
            vu = max(self._live)
            user = self._live.pop(vu)
            self._retiring[vu] = self._tasks.pop(vu)
            user.stop()

    def _on_user_done(self, vu: int) -> None:
        if vu in self._retiring:
            del self._retiring[vu]
            return
        # A user ended without being asked to; free the slot for the next tick
        self._live.pop(vu, None)
        self._tasks.pop(vu, None)

    # ---- main execution loop ------------------------------------------------

    async def run(self) -> MetricsAggregator:
        """Run every stage, stop all users, join them and reconcile."""
        profile = self.profile
        tick = self.settings.scheduler_tick_ms / 1000.0
        start = self._clock()
        self._ctx.deadline = start + profile.total_duration
        ticks = 0

        logger.info(
            "run_started",
            profile=profile.name,
            stages=len(profile.stages),
            peak=profile.peak,
            duration_seconds=profile.total_duration,
        )

        try:
            while True:
                elapsed = self._clock() - start
                if elapsed >= profile.total_duration:
                    break

                target = profile.target_at(elapsed)
                self.scale_to(target)
                self.samples.append(
                    ConcurrencySample(
                        elapsed_seconds=round(elapsed, 3),
                        target=target,
                        live=self.live_count,
                        stopping=self.stopping_count,
                    )
                )

                ticks += 1
                if ticks % 10 == 0:
                    logger.info(
                        "run_progress",
                        elapsed_seconds=int(elapsed),
                        target=target,
                        live=self.live_count,
                        stopping=self.stopping_count,
                        sent=self.metrics.count(Metric.MESSAGES_SENT),
                        rtt_samples=self.metrics.count(Metric.PROBES_RESOLVED),
                    )

                sleep_for = start + ticks * tick - self._clock()
                if sleep_for > 0:
                    await self._sleep(sleep_for)

            self.scale_to(0)
            await self.join()
        finally:
            await self._cancel_all()

        self.wall_time = self._clock() - start
        undelivered = self.metrics.reconcile(self.sessions)
        logger.info(
            "run_complete",
            sessions=len(self.sessions),
            wall_time_seconds=round(self.wall_time, 1),
            undelivered_messages=undelivered,
        )
        return self.metrics

    async def join(self) -> None:
        """Wait for every user to finish, cancelling stragglers after the grace window."""
        tasks = list(self._tasks.values()) + list(self._retiring.values())
        if not tasks:
            return
        logger.info(
            "draining_users",
            users=len(tasks),
            grace_seconds=self.settings.graceful_stop_seconds,
        )
        _, pending = await asyncio.wait(tasks, timeout=self.settings.graceful_stop_seconds)
        if pending:
            logger.warning("graceful_stop_expired", cancelled=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _cancel_all(self) -> None:
        tasks = [
            t for t in list(self._tasks.values()) + list(self._retiring.values()) if not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

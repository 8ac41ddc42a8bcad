"""Per-connection protocol state machine.

One ``ChatSession`` drives one WebSocket connection through
CONNECTING -> CHATTING -> CLOSED. A reader task and the interval tickers only
enqueue events; ``run`` consumes them one at a time, so frame handling and
timer work never interleave inside a session.
"""

import asyncio
import contextlib
import random
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

import structlog
from websockets.exceptions import ConnectionClosedOK

from chatload.backend.models import DirectoryError
from chatload.metrics import Metric, MetricsAggregator
from chatload.protocol.frames import (
    HEARTBEAT,
    HEARTBEAT_PAYLOAD,
    Command,
    Frame,
    FrameParseError,
    decode_frame,
    encode_frame,
)
from chatload.protocol.messages import (
    CHAT_DESTINATION,
    JSON_CONTENT_TYPE,
    build_probe_message,
    message_text,
    parse_incoming,
    probe_nonce,
    sender_of,
)
from chatload.session.models import (
    CloseReason,
    EventKind,
    SessionContext,
    SessionEvent,
    SessionState,
)
from chatload.session.probes import AbandonedProbe, ProbeCorrelator
from chatload.transport import TRANSPORT_ERRORS, Connection

logger = structlog.get_logger()

STOMP_VERSION = "1.2"


class ChatDirectory(Protocol):
    async def list_chats(self, auth_token: str) -> set[str]: ...


class ChatSession:
    def __init__(
        self,
        context: SessionContext,
        connection: Connection,
        directory: ChatDirectory,
        metrics: MetricsAggregator,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.context = context
        self.state = SessionState.CONNECTING
        self.chat_room_ids: set[str] = set()
        self.correlator = ProbeCorrelator(clock)
        self.close_reason: CloseReason | None = None
        self._connection = connection
        self._directory = directory
        self._metrics = metrics
        self._rng = rng or random.Random()
        self._wall_clock = wall_clock
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._log = logger.bind(session_id=context.session_id, vu=context.vu)

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def drain(self) -> list[AbandonedProbe]:
        """Abandoned probes of a finished session. Only valid once CLOSED."""
        if not self.closed:
            raise RuntimeError(f"Session {self.context.session_id} is still {self.state}")
        return self.correlator.drain()

    def request_stop(self) -> None:
        self._events.put_nowait(SessionEvent(EventKind.STOP))

    # ---- main loop ----------------------------------------------------------

    async def run(self) -> CloseReason | None:
        cfg = self.context.config
        loop = asyncio.get_running_loop()
        connect_deadline = loop.time() + cfg.handshake_timeout
        try:
            async with asyncio.timeout(cfg.max_duration):
                await self.open()
                self._spawn(self._reader())
                self._spawn(self._ticker(EventKind.SEND_TICK, cfg.send_interval))
                if cfg.heartbeat_interval > 0:
                    self._spawn(self._ticker(EventKind.HEARTBEAT_TICK, cfg.heartbeat_interval))

                while not self.closed:
                    event = await self._next_event(connect_deadline)
                    if event is None:
                        self._metrics.incr(Metric.TRANSPORT_ERRORS)
                        self._log.warning("stomp_connect_timeout", timeout=cfg.handshake_timeout)
                        self._close(CloseReason.CONNECT_TIMEOUT)
                        break
                    await self.handle_event(event)
        except TimeoutError:
            self._close(CloseReason.LIFETIME_EXPIRED)
        except asyncio.CancelledError:
            self._close(CloseReason.CANCELLED)
            raise
        except Exception:
            self._metrics.incr(Metric.INTERNAL_ERRORS)
            self._log.exception("session_crashed", state=self.state)
            self._close(CloseReason.INTERNAL_ERROR)
        finally:
            await self._shutdown()
        return self.close_reason

    async def _next_event(self, connect_deadline: float) -> SessionEvent | None:
        if self.state is not SessionState.CONNECTING:
            return await self._events.get()
        remaining = connect_deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(self._events.get(), max(0.0, remaining))
        except TimeoutError:
            return None

    async def handle_event(self, event: SessionEvent) -> None:
        kind = event.kind
        if kind is EventKind.FRAME:
            await self.handle_frame(event.payload)
        elif kind is EventKind.SEND_TICK:
            await self.send_probe()
        elif kind is EventKind.REFRESH_TICK:
            await self.refresh_directory()
        elif kind is EventKind.HEARTBEAT_TICK:
            await self._send(HEARTBEAT_PAYLOAD)
        elif kind is EventKind.TRANSPORT_CLOSED:
            if event.payload is None:
                self._close(CloseReason.PEER_CLOSED)
            else:
                self._metrics.incr(Metric.TRANSPORT_ERRORS)
                self._log.warning("ws_connection_lost", error=str(event.payload))
                self._close(CloseReason.TRANSPORT_ERROR)
        elif kind is EventKind.STOP:
            self._close(CloseReason.STOPPED)

    # ---- protocol -----------------------------------------------------------

    async def open(self) -> None:
        hb = self.context.config.heartbeat_ms
        await self._send(
            encode_frame(
                Command.CONNECT,
                {
                    "accept-version": STOMP_VERSION,
                    "heart-beat": f"{hb},{hb}",
                    "Authorization": self.context.credentials.auth_token,
                },
            )
        )

    async def handle_frame(self, raw: str | bytes) -> None:
        if self.closed:
            return
        try:
            frame = decode_frame(raw)
        except FrameParseError as exc:
            self._metrics.incr(Metric.PROTOCOL_ERRORS)
            self._log.warning("stomp_unparseable_frame", error=str(exc), state=self.state)
            return
        if frame is HEARTBEAT:
            return

        if self.state is SessionState.CONNECTING:
            if frame.command == Command.CONNECTED:
                await self._on_connected()
            else:
                self._metrics.incr(Metric.PROTOCOL_ERRORS)
                self._log.warning("stomp_unexpected_frame", command=frame.command, state=self.state)
            return

        if frame.command == Command.ERROR:
            self._metrics.incr(Metric.PROTOCOL_ERRORS)
            self._log.warning(
                "stomp_error_frame", message=frame.header("message"), body=frame.body
            )
        elif frame.command == Command.MESSAGE:
            self._on_message(frame)

    async def _on_connected(self) -> None:
        self.state = SessionState.CHATTING
        self._log.debug("stomp_connected")
        subscribe = encode_frame(
            Command.SUBSCRIBE,
            {
                "id": self.context.subscription_id,
                "destination": self.context.queue_destination,
            },
        )
        if not await self._send(subscribe):
            return
        # Rooms are known before the first send tick is processed
        await self.refresh_directory()
        interval = self.context.config.refresh_interval
        if not self.closed and interval > 0:
            self._spawn(self._ticker(EventKind.REFRESH_TICK, interval))

    def _on_message(self, frame: Frame) -> None:
        data = parse_incoming(frame.body)
        if data is None:
            return
        self._metrics.incr(Metric.MESSAGES_RECEIVED)

        nonce = probe_nonce(message_text(data))
        if nonce is None or sender_of(data) != self.context.user_id:
            return
        rtt_ms = self.correlator.resolve(nonce)
        if rtt_ms is not None:
            self._metrics.record_rtt(rtt_ms)

    async def send_probe(self) -> bool:
        """Send one ping to a random room. No-op unless CHATTING with rooms."""
        if self.state is not SessionState.CHATTING or not self.chat_room_ids:
            return False

        chat_id = self._rng.choice(sorted(self.chat_room_ids))
        sent_at = self._wall_clock()
        nonce = self.correlator.mint_nonce(int(sent_at.timestamp() * 1000))
        if self.correlator.register(nonce):
            self._metrics.incr(Metric.PROBES_REGISTERED)

        message = build_probe_message(self.context.user_id, chat_id, nonce, sent_at)
        frame = encode_frame(
            Command.SEND,
            {"destination": CHAT_DESTINATION, "content-type": JSON_CONTENT_TYPE},
            message.to_json(),
        )
        if not await self._send(frame):
            return False
        self._metrics.incr(Metric.MESSAGES_SENT)
        return True

    async def refresh_directory(self) -> None:
        if self.state is not SessionState.CHATTING:
            return
        self._metrics.incr(Metric.CHAT_LIST_REQUESTS)
        try:
            rooms = await self._directory.list_chats(self.context.credentials.auth_token)
        except DirectoryError as exc:
            self._metrics.incr(Metric.DIRECTORY_ERRORS)
            self._log.warning("get_chats_failed", error=str(exc), status_code=exc.status_code)
            self._close(CloseReason.DIRECTORY_FAILED)
            return
        if not self.closed:
            self.chat_room_ids = set(rooms)

    # ---- plumbing -----------------------------------------------------------

    async def _send(self, text: str) -> bool:
        if self.closed:
            return False
        try:
            await self._connection.send(text)
        except ConnectionClosedOK:
            self._close(CloseReason.PEER_CLOSED)
            return False
        except TRANSPORT_ERRORS as exc:
            self._metrics.incr(Metric.TRANSPORT_ERRORS)
            self._log.warning("ws_send_failed", error=str(exc))
            self._close(CloseReason.TRANSPORT_ERROR)
            return False
        return True

    async def _reader(self) -> None:
        try:
            while True:
                raw = await self._connection.recv()
                self._events.put_nowait(SessionEvent(EventKind.FRAME, raw))
        except ConnectionClosedOK:
            self._events.put_nowait(SessionEvent(EventKind.TRANSPORT_CLOSED))
        except TRANSPORT_ERRORS as exc:
            self._events.put_nowait(SessionEvent(EventKind.TRANSPORT_CLOSED, exc))

    async def _ticker(self, kind: EventKind, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._events.put_nowait(SessionEvent(kind))

    def _spawn(self, coro) -> None:
        self._tasks.append(asyncio.create_task(coro))

    def _close(self, reason: CloseReason) -> None:
        if self.closed:
            return
        self.state = SessionState.CLOSED
        self.close_reason = reason
        self.correlator.freeze()
        self._log.info("session_closed", reason=reason, pending_probes=len(self.correlator))

    async def _shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        with contextlib.suppress(*TRANSPORT_ERRORS):
            await self._connection.close()

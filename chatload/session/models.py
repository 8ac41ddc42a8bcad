"""Session state, events and per-session context."""

from dataclasses import dataclass
from enum import StrEnum

from chatload.backend.models import Credentials
from chatload.config import Settings


class SessionState(StrEnum):
    CONNECTING = "connecting"
    CHATTING = "chatting"
    CLOSED = "closed"


class CloseReason(StrEnum):
    PEER_CLOSED = "peer_closed"
    TRANSPORT_ERROR = "transport_error"
    CONNECT_TIMEOUT = "connect_timeout"
    LIFETIME_EXPIRED = "lifetime_expired"
    DIRECTORY_FAILED = "directory_failed"
    STOPPED = "stopped"
    INTERNAL_ERROR = "internal_error"
    CANCELLED = "cancelled"


class EventKind(StrEnum):
    FRAME = "frame"
    SEND_TICK = "send_tick"
    REFRESH_TICK = "refresh_tick"
    HEARTBEAT_TICK = "heartbeat_tick"
    TRANSPORT_CLOSED = "transport_closed"
    STOP = "stop"


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    payload: object = None


@dataclass(frozen=True)
class SessionConfig:
    """Timing for one session, all in seconds. Zero disables a ticker."""

    send_interval: float = 10.0
    refresh_interval: float = 30.0
    heartbeat_interval: float = 10.0
    handshake_timeout: float = 20.0
    max_duration: float = 600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionConfig":
        return cls(
            send_interval=settings.send_interval_ms / 1000.0,
            refresh_interval=settings.chat_refresh_ms / 1000.0,
            heartbeat_interval=settings.heartbeat_ms / 1000.0,
            handshake_timeout=settings.handshake_timeout_seconds,
            max_duration=settings.session_time_ms / 1000.0,
        )

    @property
    def heartbeat_ms(self) -> int:
        return int(self.heartbeat_interval * 1000)


@dataclass(frozen=True)
class SessionContext:
    """Everything a session needs to know about who it is."""

    session_id: str
    vu: int
    credentials: Credentials
    config: SessionConfig

    @property
    def user_id(self) -> str:
        return self.credentials.user_id

    @property
    def subscription_id(self) -> str:
        return f"sub-{self.session_id}"

    @property
    def queue_destination(self) -> str:
        return f"/user/{self.credentials.user_id}/queue/messages"

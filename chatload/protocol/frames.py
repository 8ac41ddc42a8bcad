"""STOMP-style text frame codec.

A frame on the wire is::

    COMMAND\\n
    key:value\\n        (zero or more, insertion order)
    \\n
    optional body
    \\0

A payload consisting of a single newline is a heartbeat, not a frame.
"""

from dataclasses import dataclass, field
from enum import StrEnum

TERMINATOR = "\x00"
HEARTBEAT_PAYLOAD = "\n"


class Command(StrEnum):
    CONNECT = "CONNECT"
    CONNECTED = "CONNECTED"
    SUBSCRIBE = "SUBSCRIBE"
    SEND = "SEND"
    MESSAGE = "MESSAGE"
    ERROR = "ERROR"


_COMMANDS = frozenset(c.value for c in Command)


class FrameParseError(ValueError):
    """Raised when a payload cannot be decoded into a frame."""


class _Heartbeat:
    __slots__ = ()

    def __repr__(self) -> str:
        return "HEARTBEAT"


HEARTBEAT = _Heartbeat()


@dataclass(frozen=True)
class Frame:
    command: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None

    def header(self, key: str, default: str | None = None) -> str | None:
        return self.headers.get(key, default)


def _check_header(key: str, value: str) -> None:
    if not key or ":" in key or "\n" in key:
        raise ValueError(f"Invalid header key: {key!r}")
    if "\n" in value:
        raise ValueError(f"Header {key!r} value must not contain a newline")


def encode_frame(
    command: str,
    headers: dict[str, str] | None = None,
    body: str | None = None,
) -> str:
    """Serialize a frame to its wire text, terminator included."""
    if command not in _COMMANDS:
        raise ValueError(f"Unknown command: {command!r}")

    parts = [f"{command}\n"]
    for key, value in (headers or {}).items():
        value = str(value)
        _check_header(key, value)
        parts.append(f"{key}:{value}\n")
    parts.append("\n")
    if body:
        parts.append(body)
    parts.append(TERMINATOR)
    return "".join(parts)


def decode_frame(raw: str | bytes) -> Frame | _Heartbeat:
    """Parse one wire payload into a :class:`Frame` or :data:`HEARTBEAT`."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FrameParseError("Frame is not valid UTF-8") from exc

    if raw in (HEARTBEAT_PAYLOAD, "\r\n"):
        return HEARTBEAT

    text = raw[:-1] if raw.endswith(TERMINATOR) else raw
    head, sep, body = text.partition("\n\n")
    lines = head.split("\n")
    command = lines[0].rstrip("\r")
    if not command:
        raise FrameParseError("Frame has no command line")
    if command not in _COMMANDS:
        raise FrameParseError(f"Unknown command: {command!r}")

    headers: dict[str, str] = {}
    for line in lines[1:]:
        key, colon, value = line.partition(":")
        if not colon or not key:
            continue
        headers[key] = value

    return Frame(command=command, headers=headers, body=body if sep and body else None)

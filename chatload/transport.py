"""WebSocket transport for STOMP frames."""

from typing import Protocol
from urllib.parse import quote

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

# Failures that end a connection attempt or a live connection
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    WebSocketException,
    OSError,
    TimeoutError,
)


class Connection(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


def url_with_ticket(base: str, ticket: str) -> str:
    sep = "&" if "?" in base else "?"
    return f"{base}{sep}ticket={quote(ticket, safe='')}"


async def open_connection(
    ws_url: str,
    ticket: str,
    auth_token: str,
    handshake_timeout: float,
) -> Connection:
    """Open the socket with the ticket in the query string and the JWT in the headers."""
    return await connect(
        url_with_ticket(ws_url, ticket),
        additional_headers={"Authorization": auth_token},
        open_timeout=handshake_timeout,
        max_size=None,
    )

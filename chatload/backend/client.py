"""Async HTTP client for sign-in, connection tickets and the chat directory."""

from typing import Any

import httpx
import structlog

from chatload.backend.models import (
    AuthFailure,
    BackendError,
    Credentials,
    DirectoryError,
    as_bearer,
)

logger = structlog.get_logger()

SIGNIN_PATH = "/api/user/signin"
REGISTER_PATH = "/api/user/registerUser"
TICKET_PATH = "/api/user/getTicket"
CHATS_PATH = "/api/chat/getChats"
CREATE_CHAT_PATH = "/api/chat/createChat"


def _json_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


class BackendClient:
    """Thin wrapper over a shared ``httpx.AsyncClient``.

    Non-success responses raise; nothing is retried here. The caller decides
    what a failure means for its session.
    """

    def __init__(self, client: httpx.AsyncClient, api_key: str) -> None:
        self._client = client
        self._api_key = api_key

    @classmethod
    def create(
        cls,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 20.0,
        max_connections: int = 500,
    ) -> "BackendClient":
        transport = httpx.AsyncHTTPTransport(
            retries=0,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections // 2,
            ),
        )
        client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            transport=transport,
            timeout=httpx.Timeout(timeout_seconds),
        )
        return cls(client, api_key)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        error_cls: type[BackendError],
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise error_cls(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise error_cls(f"{method} {path} failed: {exc}") from exc

    # ---- credential provider ------------------------------------------------

    async def sign_in(self, username: str, password: str) -> Credentials:
        resp = await self._request(
            AuthFailure,
            "POST",
            SIGNIN_PATH,
            json={"username": username, "password": password},
            headers={"x-api-key": self._api_key},
        )
        if resp.status_code != 200:
            raise AuthFailure(f"signin for {username} returned {resp.status_code}", resp.status_code)

        jwt = resp.headers.get("authorization")
        body = _json_body(resp)
        user_id = None
        if isinstance(body, dict):
            user_id = body.get("id") or body.get("userId")
        if not jwt or not user_id:
            raise AuthFailure(f"signin for {username} missing userId or Authorization header")
        return Credentials(user_id=str(user_id), auth_token=as_bearer(jwt))

    # ---- ticket provider ----------------------------------------------------

    async def get_ticket(self, auth_token: str) -> str:
        resp = await self._request(
            AuthFailure, "GET", TICKET_PATH, headers={"Authorization": auth_token}
        )
        if resp.status_code != 200:
            raise AuthFailure(f"getTicket returned {resp.status_code}", resp.status_code)
        body = _json_body(resp)
        ticket = body.get("ticket") if isinstance(body, dict) else None
        if not ticket:
            raise AuthFailure("getTicket response has no ticket")
        return str(ticket)

    # ---- chat directory provider --------------------------------------------

    async def list_chats(self, auth_token: str) -> set[str]:
        resp = await self._request(
            DirectoryError, "GET", CHATS_PATH, headers={"Authorization": auth_token}
        )
        if resp.status_code != 200:
            raise DirectoryError(f"getChats returned {resp.status_code}", resp.status_code)
        body = _json_body(resp)
        chats = body.get("chats") if isinstance(body, dict) else None
        if not isinstance(chats, list):
            raise DirectoryError("getChats response has no chats list")
        return {
            str(chat["chatId"])
            for chat in chats
            if isinstance(chat, dict) and chat.get("chatId")
        }

    # ---- provisioning -------------------------------------------------------

    async def register_user(self, username: str, password: str) -> bool:
        """Register a test user. Returns False when the user already exists."""
        payload = {
            "username": username,
            "firstName": "test",
            "surName": "user",
            "email": f"{username}@example.com",
            "password": password,
        }
        resp = await self._request(
            BackendError,
            "POST",
            REGISTER_PATH,
            json=payload,
            headers={"x-api-key": self._api_key},
        )
        if resp.status_code == 201:
            return True
        if resp.status_code == 400:
            return False
        raise BackendError(f"registerUser {username} returned {resp.status_code}", resp.status_code)

    async def create_chat(self, auth_token: str, chat_name: str, usernames: list[str]) -> str | None:
        resp = await self._request(
            BackendError,
            "POST",
            CREATE_CHAT_PATH,
            json={"chatName": chat_name, "userNames": usernames},
            headers={"Authorization": auth_token},
        )
        if resp.status_code != 201:
            raise BackendError(f"createChat {chat_name} returned {resp.status_code}", resp.status_code)
        body = _json_body(resp)
        chat_id = body.get("chatId") if isinstance(body, dict) else None
        return str(chat_id) if chat_id else None

"""Chat payloads carried in SEND / MESSAGE frame bodies."""

import json
import re
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

SEND_MSG = "SEND_MSG"
PROBE_PREFIX = "ping:"
# Older runs used the bare epoch-millisecond form without the counter suffix
PROBE_PATTERN = re.compile(r"^ping:(\d+(?:-\d+)?)$")

CHAT_DESTINATION = "/api/chat"
JSON_CONTENT_TYPE = "application/json"


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = SEND_MSG
    sender_id: str = Field(alias="senderId")
    chat_id: str = Field(alias="chatId")
    message: str
    time_stamp: str = Field(alias="timeStamp")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def probe_text(nonce: str) -> str:
    return f"{PROBE_PREFIX}{nonce}"


def probe_nonce(text: object) -> str | None:
    """Return the nonce embedded in a probe message text, if any."""
    if not isinstance(text, str):
        return None
    match = PROBE_PATTERN.match(text)
    return match.group(1) if match else None


def build_probe_message(sender_id: str, chat_id: str, nonce: str, sent_at: datetime) -> ChatMessage:
    return ChatMessage(
        type=SEND_MSG,
        sender_id=sender_id,
        chat_id=chat_id,
        message=probe_text(nonce),
        time_stamp=sent_at.astimezone(UTC).isoformat(timespec="milliseconds").replace(
            "+00:00", "Z"
        ),
    )


def parse_incoming(body: str | None) -> dict | None:
    """Decode a MESSAGE body as a JSON object; anything else yields None."""
    if not body:
        return None
    try:
        data = json.loads(body)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def message_text(data: dict) -> object:
    return data.get("message") or data.get("content") or ""


def sender_of(data: dict) -> str | None:
    for key in ("senderId", "senderID", "fromUserId"):
        if data.get(key) is not None:
            return str(data[key])
    return None

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

RERUN_PREFIX = "rerun"


class ChatPayload(BaseModel):
    id: int


class UserPayload(BaseModel):
    id: int


class MessagePayload(BaseModel):
    message_id: Optional[int] = None
    chat: ChatPayload
    text: Optional[str] = None
    caption: Optional[str] = None


class CallbackMessagePayload(BaseModel):
    message_id: int
    chat: ChatPayload


class CallbackQueryPayload(BaseModel):
    id: str
    from_user: UserPayload
    message: Optional[CallbackMessagePayload] = None
    data: Optional[str] = None


@dataclass(frozen=True)
class MessageEvent:
    message_id: Optional[int]
    chat_id: int
    text: str


@dataclass(frozen=True)
class CallbackEvent:
    callback_id: str
    from_id: int
    chat_id: Optional[int]
    message_id: Optional[int]
    data: str


@dataclass(frozen=True)
class Unrecognized:
    reason: str


InboundEvent = Union[MessageEvent, CallbackEvent, Unrecognized]


@dataclass(frozen=True)
class RerunToken:
    prior_message_id: int
    new_message_id: int

    @classmethod
    def parse(cls, data: str | None) -> "RerunToken | None":
        if not data:
            return None
        parts = data.split(":")
        if len(parts) != 3 or parts[0] != RERUN_PREFIX:
            return None
        try:
            prior, new = int(parts[1]), int(parts[2])
        except ValueError:
            return None
        return cls(prior_message_id=prior, new_message_id=new)

    def encode(self) -> str:
        return f"{RERUN_PREFIX}:{self.prior_message_id}:{self.new_message_id}"


def parse_update(payload: Any) -> InboundEvent:
    """Turn a Bot API update into one of the tagged inbound events.

    Missing or mistyped required fields yield ``Unrecognized`` rather than an
    exception, so the webhook can always acknowledge.
    """
    if not isinstance(payload, dict):
        return Unrecognized("payload_not_object")
    if "callback_query" in payload:
        return _parse_callback(payload["callback_query"])
    if "message" in payload:
        return _parse_message(payload["message"])
    return Unrecognized("unsupported_update")


def _parse_message(raw: Any) -> InboundEvent:
    try:
        message = MessagePayload.model_validate(raw)
    except ValidationError as exc:
        return Unrecognized(f"invalid_message: {exc.error_count()} errors")
    return MessageEvent(
        message_id=message.message_id,
        chat_id=message.chat.id,
        text=message.text or message.caption or "",
    )


def _parse_callback(raw: Any) -> InboundEvent:
    if isinstance(raw, dict) and "from" in raw:
        raw = {**raw, "from_user": raw["from"]}
    try:
        query = CallbackQueryPayload.model_validate(raw)
    except ValidationError as exc:
        return Unrecognized(f"invalid_callback: {exc.error_count()} errors")
    return CallbackEvent(
        callback_id=query.id,
        from_id=query.from_user.id,
        chat_id=query.message.chat.id if query.message else None,
        message_id=query.message.message_id if query.message else None,
        data=query.data or "",
    )

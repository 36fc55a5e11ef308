"""Parsing of the server-sent events stream carrying bookmark changes."""
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass

from pydantic import ValidationError

from schemas.change_event import ChangeEvent, ChangeType

logger = logging.getLogger(__name__)

SUBSCRIBED_EVENT = "subscribed"
_CHANGE_TYPES = {change_type.value for change_type in ChangeType}


@dataclass
class SseMessage:
    """One dispatched server-sent event."""

    event: str
    data: str


async def iter_sse_messages(lines: AsyncIterable[str]) -> AsyncIterator[SseMessage]:
    """
    Group raw stream lines into SSE messages.

    Comment lines (starting with ':') are skipped, multiple data fields are
    joined with newlines, and a blank line dispatches the message. The event
    name defaults to "message".
    """
    event = ""
    data: list[str] = []
    async for line in lines:
        if not line:
            if data or event:
                yield SseMessage(event=event or "message", data="\n".join(data))
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield SseMessage(event=event or "message", data="\n".join(data))


async def iter_change_events(messages: AsyncIterable[SseMessage]) -> AsyncIterator[ChangeEvent]:
    """Decode INSERT/DELETE messages into change events, skipping anything else."""
    async for message in messages:
        if message.event not in _CHANGE_TYPES:
            continue
        try:
            yield ChangeEvent.model_validate_json(message.data)
        except ValidationError as e:
            logger.warning("Skipping malformed %s change event: %s", message.event, e)

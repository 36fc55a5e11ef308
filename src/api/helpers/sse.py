"""Server-sent events framing for the realtime bookmark feed."""
import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from uuid import UUID

from services.change_feed import ChangeFeed

KEEP_ALIVE = ": keep-alive\n\n"
SUBSCRIBED_EVENT = "subscribed"


def format_sse(data: str, event: str | None = None) -> str:
    """Frame one SSE message; multi-line data is split across data: fields."""
    lines = []
    if event:
        lines.append(f"event: {event}")
    lines.extend(f"data: {line}" for line in data.splitlines() or [""])
    return "\n".join(lines) + "\n\n"


async def change_event_stream(
    feed: ChangeFeed,
    owner_id: UUID,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_seconds: float,
) -> AsyncGenerator[str]:
    """
    Stream one owner's change events as SSE messages.

    The subscription is opened when streaming starts and released on every exit:
    client disconnect, cancellation, or the feed closing the subscription.
    A `subscribed` message is sent first so clients know no later event can be
    missed; comments are sent as keep-alives while the feed is idle.
    """
    subscription = feed.subscribe(owner_id)
    try:
        yield format_sse(f'{{"owner_id": "{owner_id}"}}', event=SUBSCRIBED_EVENT)
        while not await is_disconnected():
            try:
                change = await asyncio.wait_for(subscription.get(), timeout=heartbeat_seconds)
            except TimeoutError:
                yield KEEP_ALIVE
                continue
            if change is None:
                # Closed by the feed (slow consumer or shutdown); client reconnects
                break
            yield format_sse(change.model_dump_json(), event=change.type.value)
    finally:
        subscription.close()

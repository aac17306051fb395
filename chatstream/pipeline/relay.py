"""Server-sent-event relay between a fragment sequence and the client.

Wire format per item::

    event: <name>\\n
    data: <payload>\\n
    \\n

The terminal item is ``data: [DONE]``. Errors after the stream has started
are reported as a final ``event: error`` item, since the HTTP status has
already been sent.
"""
import asyncio
import inspect
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Sequence

from chatstream.errors import TransportError
from chatstream.models import EndOfStream, StreamFragment

logger = logging.getLogger(__name__)

DEFAULT_EVENT = "message"
ERROR_EVENT = "error"
DONE_PAYLOAD = "[DONE]"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def format_event(data: str, event: str = DEFAULT_EVENT) -> str:
    """Frame one SSE record. Embedded newlines become extra ``data:`` lines."""
    lines = data.split("\n")
    return f"event: {event}\n" + "".join(f"data: {line}\n" for line in lines) + "\n"


class FragmentListener(Protocol):
    async def on_fragment(self, fragment: StreamFragment) -> None: ...


async def _pull(iterator: AsyncIterator[StreamFragment]) -> Optional[StreamFragment]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class StreamRelay:
    """Relays one request's fragments as SSE frames.

    ``subscribe`` is called once, when streaming starts, and must return the
    fragment sequence. Listeners see each fragment before its frame is
    written. Setting ``abort`` (or cancelling the consuming task) stops all
    further writes and closes the subscription.
    """

    def __init__(
        self,
        subscribe: Callable[[], AsyncIterator[StreamFragment]],
        abort: asyncio.Event | None = None,
        listeners: Sequence[FragmentListener] = (),
        on_close: Callable[[], Awaitable[None] | None] | None = None,
        request_id: str = "",
    ):
        self._subscribe = subscribe
        self.abort_signal = abort or asyncio.Event()
        self._listeners = list(listeners)
        self._on_close = on_close
        self.request_id = request_id
        self._subscription: AsyncIterator[StreamFragment] | None = None
        self._pending: asyncio.Task | None = None
        self._closed = False
        self.frames_sent = 0

    @property
    def aborted(self) -> bool:
        return self.abort_signal.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def abort(self) -> None:
        self.abort_signal.set()

    async def stream(self) -> AsyncIterator[str]:
        if self._closed:
            return
        self._subscription = self._subscribe()
        try:
            while True:
                fragment = await self._next_fragment()
                if fragment is None:
                    break
                for listener in self._listeners:
                    await listener.on_fragment(fragment)
                if self.aborted:
                    break
                if isinstance(fragment, EndOfStream):
                    yield format_event(DONE_PAYLOAD)
                    self.frames_sent += 1
                    break
                yield format_event(fragment.text)
                self.frames_sent += 1
        except TransportError as e:
            logger.error(f"[Relay] request={self.request_id} stream failed: {e}")
            if not self.aborted:
                yield format_event(e.message, ERROR_EVENT)
        except asyncio.CancelledError:
            logger.info(f"[Relay] request={self.request_id} cancelled by server (client gone)")
            self.abort()
            raise
        finally:
            await self.close()

    async def _next_fragment(self) -> Optional[StreamFragment]:
        """Next fragment, or ``None`` once the sequence ends or abort fires."""
        if self.aborted:
            return None
        self._pending = asyncio.ensure_future(_pull(self._subscription))
        aborted = asyncio.ensure_future(self.abort_signal.wait())
        try:
            await asyncio.wait({self._pending, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
        if not self._pending.done():
            logger.info(f"[Relay] request={self.request_id} aborted while waiting for provider")
            return None
        fragment = self._pending.result()
        self._pending = None
        return fragment

    async def close(self) -> None:
        """Tear down once. Later or concurrent calls return immediately."""
        if self._closed:
            return
        self._closed = True
        await asyncio.shield(self._teardown())

    async def _teardown(self) -> None:
        pending = self._pending
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait({pending})
        self._pending = None

        aclose = getattr(self._subscription, "aclose", None)
        if aclose is not None:
            await aclose()

        if self._on_close is not None:
            result = self._on_close()
            if inspect.isawaitable(result):
                await result
        logger.info(
            f"[Relay] request={self.request_id} closed frames={self.frames_sent} aborted={self.aborted}"
        )

"""Accumulates a streamed reply and stores it once the provider finishes."""
import asyncio
import logging
import uuid

from chatstream.errors import TransportError
from chatstream.models import EndOfStream, StreamFragment, TextDelta

logger = logging.getLogger(__name__)


class ReplyPersister:
    """Request-scoped pending reply.

    Text is only written on the terminal sentinel. A stream that stops
    before it (abort, provider failure) leaves the store untouched.
    """

    def __init__(self, db, owner_id: str, conversation_id: str, request_id: str = ""):
        self.db = db
        self.owner_id = owner_id
        self.conversation_id = conversation_id
        self.request_id = request_id
        self.reply_id = uuid.uuid4().hex
        self.provider_id: str | None = None
        self._parts: list[str] = []
        self._persisted = False
        self.stored: dict | None = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def persisted(self) -> bool:
        return self._persisted

    async def on_fragment(self, fragment: StreamFragment) -> None:
        if self._persisted:
            return
        if isinstance(fragment, TextDelta):
            self._parts.append(fragment.text)
            if fragment.provider_id and self.provider_id is None:
                self.provider_id = fragment.provider_id
        elif isinstance(fragment, EndOfStream):
            if fragment.provider_id and self.provider_id is None:
                self.provider_id = fragment.provider_id
            await self._persist()

    async def _persist(self) -> None:
        self._persisted = True
        content = self.text
        # Shielded: once the reply is complete a client disconnect must not
        # cancel the write half-way.
        try:
            self.stored = await asyncio.shield(
                self.db.insert_message(
                    self.reply_id, "assistant", content, self.owner_id, self.conversation_id
                )
            )
        except Exception as e:
            logger.error(
                f"[Persist] request={self.request_id} failed to store reply {self.reply_id}: {e}",
                exc_info=True,
            )
            raise TransportError(f"Could not store reply: {e}") from e
        if self.stored is None:
            logger.error(
                f"[Persist] request={self.request_id} reply {self.reply_id} missing after insert"
            )
            raise TransportError(f"Could not store reply: {self.reply_id} was not found after insert")
        logger.info(
            f"[Persist] request={self.request_id} stored reply {self.reply_id} "
            f"({len(content)}ch, provider_id={self.provider_id})"
        )

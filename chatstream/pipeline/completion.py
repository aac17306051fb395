"""Per-request completion pipeline: budget, stream, relay, persist."""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field

from chatstream.errors import BadRequestError, ConfigurationError
from chatstream.models import PromptBudget
from chatstream.pipeline.budget import PromptBudgeter
from chatstream.pipeline.persister import ReplyPersister
from chatstream.pipeline.relay import StreamRelay

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """Everything one completion request needs. Never shared between requests."""

    owner_id: str
    conversation_id: str
    budget: PromptBudget
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)


class CompletionPipeline:
    def __init__(self, db, client, budgeter: PromptBudgeter):
        self.db = db
        self.client = client
        self.budgeter = budgeter

    async def prepare(self, owner_id: str, conversation_id: str) -> RequestContext:
        """Load the conversation and fit it into the prompt budget.

        Raises:
            BadRequestError: If the id is empty or the conversation is not the caller's.
            ConfigurationError: If the prompt cannot be made to fit.
        """
        if not conversation_id:
            raise BadRequestError("Invalid request. No Conversation provided.")
        conversation = await self.db.get_conversation(owner_id, conversation_id)
        if conversation is None:
            raise BadRequestError(f"Conversation {conversation_id} not found")

        history = await self.db.get_messages(owner_id, conversation_id)
        budget = self.budgeter.build(history, owner_id=owner_id)
        ctx = RequestContext(owner_id=owner_id, conversation_id=conversation_id, budget=budget)
        logger.info(
            f"[Completion] request={ctx.request_id} conversation={conversation_id} user={owner_id} "
            f"history={len(history)} prompt_tokens={budget.prompt_tokens} "
            f"max_response={budget.max_response_tokens}"
        )
        return ctx

    def open(self, ctx: RequestContext, abort: asyncio.Event | None = None) -> StreamRelay:
        """Build the relay for a prepared request. Nothing runs until it is iterated.

        Raises:
            ConfigurationError: If the budget holds no messages to send.
        """
        if not ctx.budget.messages:
            raise ConfigurationError(f"Request {ctx.request_id} has an empty prompt")
        persister = ReplyPersister(
            self.db, ctx.owner_id, ctx.conversation_id, request_id=ctx.request_id
        )

        def subscribe():
            return self.client.stream(ctx.budget.messages, ctx.budget.max_response_tokens)

        def on_close():
            elapsed_ms = (time.time() - ctx.started_at) * 1000
            logger.info(
                f"[Completion] request={ctx.request_id} done in {elapsed_ms:.0f}ms "
                f"persisted={persister.persisted} reply={len(persister.text)}ch"
            )

        return StreamRelay(
            subscribe,
            abort=abort,
            listeners=[persister],
            on_close=on_close,
            request_id=ctx.request_id,
        )

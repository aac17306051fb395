"""Prompt budgeting: fit a conversation's history into the context window.

The newest turns have priority. History is walked from the most recent
message backwards and selection stops at the first message that no longer
fits, so anything dropped is always a contiguous run of the oldest turns.
"""
import logging
from datetime import date
from typing import Sequence

from chatstream.config import PromptConfig, TokenBudgetConfig
from chatstream.errors import ConfigurationError
from chatstream.models import PromptBudget, PromptMessage
from chatstream.utils.tokens import METADATA_TOKENS, count_message_tokens, count_messages_tokens

logger = logging.getLogger(__name__)


def format_prompt_date(today: date) -> str:
    """``October 17, 2026`` style, independent of the process locale."""
    return f"{today:%B} {today.day}, {today.year}"


class PromptBudgeter:
    def __init__(self, token_budget: TokenBudgetConfig, prompt: PromptConfig):
        self.context_window = token_budget.context_window
        self.max_response_tokens = token_budget.max_response_tokens
        self.encoding = token_budget.encoding
        self.prompt = prompt

    @property
    def max_prompt_tokens(self) -> int:
        return self.context_window - self.max_response_tokens

    def system_message(self, today: date | None = None) -> PromptMessage:
        content = self.prompt.system_template.format(
            assistant_name=self.prompt.assistant_name,
            date=format_prompt_date(today or date.today()),
        )
        return PromptMessage(role="system", content=content)

    def _check_constants(self) -> None:
        if self.max_response_tokens <= 0 or self.max_response_tokens >= self.context_window:
            raise ConfigurationError(
                f"max_response_tokens ({self.max_response_tokens}) must be positive and smaller "
                f"than context_window ({self.context_window})"
            )

    def _cost(self, message: PromptMessage) -> int:
        return count_message_tokens(message.to_payload(), self.encoding)

    def build(
        self,
        history: Sequence[dict],
        owner_id: str | None = None,
        today: date | None = None,
    ) -> PromptBudget:
        """Assemble the prompt for one completion.

        Args:
            history: Stored messages, oldest first. Each needs ``role`` and ``content``.
            owner_id: Attached as ``name`` to history messages when identity
                tagging is enabled.
            today: Date shown in the system instruction (defaults to today).

        Raises:
            ConfigurationError: If the constants are inconsistent, the system
                instruction alone overflows, or the newest message cannot fit.
        """
        self._check_constants()
        limit = self.max_prompt_tokens

        system = self.system_message(today)
        running = self._cost(system)
        if running + METADATA_TOKENS > limit:
            raise ConfigurationError(
                f"System instruction needs {running + METADATA_TOKENS} tokens, "
                f"max prompt is {limit}"
            )

        name = owner_id if self.prompt.tag_identity else None
        selected: list[PromptMessage] = []
        for record in reversed(history):
            candidate = PromptMessage(role=record["role"], content=record["content"], name=name)
            cost = self._cost(candidate)
            if running + cost + METADATA_TOKENS < limit:
                selected.append(candidate)
                running += cost
                continue
            if not selected:
                raise ConfigurationError(
                    f"Prompt is too long. Max token count is {limit}, but the latest message "
                    f"alone brings it to {running + cost + METADATA_TOKENS} tokens."
                )
            break
        selected.reverse()

        messages = [system, *selected]
        total = count_messages_tokens([m.to_payload() for m in messages], self.encoding)
        max_response = min(self.context_window - total, self.max_response_tokens)
        dropped = len(history) - len(selected)
        logger.info(
            f"[Budget] prompt={total} tokens kept={len(selected)} dropped={dropped} "
            f"max_response={max_response}"
        )
        return PromptBudget(
            messages=messages,
            prompt_tokens=total,
            max_response_tokens=max_response,
            dropped=dropped,
        )

from .budget import PromptBudgeter
from .completion import CompletionPipeline, RequestContext
from .persister import ReplyPersister
from .relay import StreamRelay, format_event

__all__ = [
    "CompletionPipeline",
    "PromptBudgeter",
    "ReplyPersister",
    "RequestContext",
    "StreamRelay",
    "format_event",
]

"""Token counting using tiktoken, matching the provider's chat accounting."""
import tiktoken

DEFAULT_ENCODING = "cl100k_base"

MESSAGE_OVERHEAD_TOKENS = 4  # role/name framing per message
METADATA_TOKENS = 2  # reply priming after the last message

_encoders: dict[str, tiktoken.Encoding] = {}


def _get_encoder(encoding: str = DEFAULT_ENCODING) -> tiktoken.Encoding:
    encoder = _encoders.get(encoding)
    if encoder is None:
        encoder = tiktoken.get_encoding(encoding)
        _encoders[encoding] = encoder
    return encoder


def count_tokens(text: str, encoding: str = DEFAULT_ENCODING) -> int:
    if not text:
        return 0
    # Special-token literals in user text are counted as ordinary text.
    return len(_get_encoder(encoding).encode(text, disallowed_special=()))


def count_message_tokens(message: dict, encoding: str = DEFAULT_ENCODING) -> int:
    """Token cost of one chat message.

    Every present field is counted; a ``name`` field costs one token less
    because the provider folds it into the role framing.
    """
    total = MESSAGE_OVERHEAD_TOKENS
    for key, value in message.items():
        if value is None:
            continue
        total += count_tokens(str(value), encoding)
        if key == "name":
            total -= 1
    return total


def count_messages_tokens(messages: list[dict], encoding: str = DEFAULT_ENCODING) -> int:
    total = 0
    for msg in messages:
        total += count_message_tokens(msg, encoding)
    total += METADATA_TOKENS
    return total

"""Token counting helpers shared by the pipeline stages."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Literal, Mapping, Protocol

import tiktoken

from ..chat.message_model import full_text_of

LOGGER = logging.getLogger(__name__)

_DEFAULT_BYTES_PER_TOKEN = 4
_DEFAULT_ENCODING = "cl100k_base"

# Role name plus message boundary tokens added by chat formats.
MESSAGE_OVERHEAD_TOKENS = 4

CountUnit = Literal["tokens", "characters"]

__all__ = [
    "CountUnit",
    "MESSAGE_OVERHEAD_TOKENS",
    "TokenCounterProtocol",
    "ApproxByteCounter",
    "CharacterCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "estimate_message_tokens",
]


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class ApproxByteCounter:
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(
        self,
        *,
        model_name: str | None = None,
        charset: str = "utf-8",
        bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN,
    ) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class CharacterCounter:
    """Counts characters; used when a context limit is expressed in characters."""

    def __init__(self, *, model_name: str | None = None) -> None:
        self.model_name = model_name

    def count(self, text: str) -> int:
        return len(text or "")

    def estimate(self, text: str) -> int:
        return len(text or "")


class TiktokenCounter:
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except ValueError:
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> tiktoken.Encoding:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to %s encoding for model %s", _DEFAULT_ENCODING, model_name)
            return tiktoken.get_encoding(_DEFAULT_ENCODING)


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> TokenCounterRegistry:
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def unregister(self, model_name: str) -> None:
        self._counters.pop(self._normalize_key(model_name), None)

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def ensure(self, model_name: str | None) -> TokenCounterProtocol:
        """Return the counter for ``model_name``, building a tiktoken one on first use.

        When the encoding cannot be loaded (for example without network
        access to fetch the BPE file) the byte approximation is registered
        instead so the failure is only paid once.
        """

        if not model_name or self.has(model_name):
            return self.get(model_name)
        counter: TokenCounterProtocol
        try:
            counter = TiktokenCounter(model_name)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Unable to load tiktoken encoding for %s (%s); using byte estimate", model_name, exc)
            counter = ApproxByteCounter(model_name=model_name)
        self.register(model_name, counter)
        return counter

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


def estimate_message_tokens(
    message: Mapping[str, Any] | Any,
    counter: TokenCounterProtocol,
    *,
    unit: CountUnit = "tokens",
) -> int:
    """Estimate the size of one message.

    ``message`` is either a payload mapping or any object with ``role`` and
    ``content`` attributes. Every text part is counted. In token units a fixed
    per-message overhead is added when the message has a role; character
    units count text only.
    """

    if isinstance(message, Mapping):
        content = message.get("content", "")
        text = content if isinstance(content, str) else _payload_text(content)
        role = message.get("role")
    else:
        text = full_text_of(getattr(message, "content", "")) or ""
        role = getattr(message, "role", None)
    size = counter.count(text)
    if unit == "tokens" and role:
        size += MESSAGE_OVERHEAD_TOKENS
    return size


def _payload_text(content: Any) -> str:
    if not isinstance(content, (list, tuple)):
        return str(content or "")
    return "\n".join(
        str(part.get("text") or "")
        for part in content
        if isinstance(part, Mapping) and part.get("type") == "text"
    )

"""
Protocol Layer - Chat request / response types
==============================================

[WIRE] The routing layer speaks the OpenAI-compatible chat protocol to
providers:

    POST {endpoint}/chat/completions
    {"model": ..., "messages": [...], "temperature": ..., "max_tokens": ...,
     "stream": false}

[SIGNING] ``ChatRequest.get_signing_data()`` is the exact byte string the
auth headers are bound to. It is canonical JSON of the message list so two
requests with the same conversation always hash the same way.

[RESPONSE] ``ChatResponse.kind`` tells a genuine provider answer apart from a
degraded fallback or an error; the ``ok`` flag alone is not enough.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, TYPE_CHECKING

from .errors import AllProvidersExhausted

if TYPE_CHECKING:
    from .transport import AttemptRecord


class Role(Enum):
    """Author of a chat message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ResponseKind(Enum):
    """What produced a ChatResponse."""
    PROVIDER = "provider"    # genuine answer from a provider
    DEGRADED = "degraded"    # labeled simulation fallback
    ERROR = "error"          # no answer


@dataclass(frozen=True)
class ChatMessage:
    """One message of a conversation."""

    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChatMessage":
        role = data.get("role")
        content = data.get("content")
        try:
            parsed_role = Role(role)
        except ValueError:
            raise ValueError(f"Invalid message role: {role!r}")
        if not isinstance(content, str) or not content:
            raise ValueError("Message content must be a non-empty string")
        return cls(role=parsed_role, content=content)


@dataclass(frozen=True)
class ChatRequest:
    """
    One inbound chat call. Immutable for the whole failover loop.

    ``preferred_provider`` is tried first when discovery returns it.
    ``model`` and ``user_id`` are informational only.
    """

    messages: Tuple[ChatMessage, ...]
    temperature: float = 0.7
    max_tokens: int = 1024
    preferred_provider: Optional[str] = None
    model: Optional[str] = None
    user_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_messages(
        cls,
        messages: Sequence[Mapping[str, Any]],
        **kwargs: Any,
    ) -> "ChatRequest":
        """Build a request from ``[{"role": ..., "content": ...}, ...]``."""
        return cls(messages=tuple(ChatMessage.from_dict(m) for m in messages), **kwargs)

    @classmethod
    def from_prompt(cls, prompt: str, system: Optional[str] = None, **kwargs: Any) -> "ChatRequest":
        """Build a single-turn request."""
        messages: List[ChatMessage] = []
        if system:
            messages.append(ChatMessage(Role.SYSTEM, system))
        messages.append(ChatMessage(Role.USER, prompt))
        return cls(messages=tuple(messages), **kwargs)

    def validate(self) -> None:
        """
        Raises:
            ValueError: no messages, bad content or out-of-range parameters
        """
        if not self.messages:
            raise ValueError("Messages array is required and cannot be empty")
        for message in self.messages:
            if not isinstance(message, ChatMessage) or not isinstance(message.role, Role):
                raise ValueError("Invalid message format. Each message must have 'role' and 'content' fields")
            if not isinstance(message.content, str) or not message.content:
                raise ValueError("Message content must be a non-empty string")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"temperature must be within [0, 2], got {self.temperature}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be > 0, got {self.max_tokens}")

    def messages_as_dicts(self) -> List[Dict[str, str]]:
        return [m.to_dict() for m in self.messages]

    def get_signing_data(self) -> bytes:
        """Canonical bytes the auth headers are bound to."""
        return json.dumps(
            self.messages_as_dicts(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")

    def completion_body(self, model: str) -> Dict[str, Any]:
        """JSON body for ``POST /chat/completions``."""
        return {
            "model": model,
            "messages": self.messages_as_dicts(),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }


@dataclass(frozen=True)
class Usage:
    """Token counters reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "Usage":
        """
        Read ``usage`` from an OpenAI-style completion.

        Missing or malformed counters become zero; camelCase keys are
        accepted as well.
        """
        usage = payload.get("usage") if isinstance(payload, dict) else None
        if not isinstance(usage, dict):
            return cls()

        def _count(*keys: str) -> int:
            for key in keys:
                value = usage.get(key)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    return int(value)
            return 0

        prompt = _count("prompt_tokens", "promptTokens")
        completion = _count("completion_tokens", "completionTokens")
        total = _count("total_tokens", "totalTokens") or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class ChatResponse:
    """
    Structured result of one routed request.

    [INVARIANT] ``kind`` is PROVIDER only for a real provider answer. A
    DEGRADED response carries sentinel provider/model values that can never
    be mistaken for a provider address.
    """

    ok: bool
    kind: ResponseKind
    provider_address: Optional[str] = None
    model: Optional[str] = None
    verified: bool = False
    balance_snapshot: Optional[int] = None
    usage: Usage = field(default_factory=Usage)
    payload: Any = None
    error: Optional[str] = None
    attempts: Tuple["AttemptRecord", ...] = ()
    request_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def is_authentic(self) -> bool:
        """True only for a successful answer from a real provider."""
        return self.ok and self.kind is ResponseKind.PROVIDER

    @property
    def content(self) -> Optional[str]:
        """Text of the first choice, if the payload has one."""
        if not isinstance(self.payload, dict):
            return None
        choices = self.payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        return None

    def raise_for_error(self) -> "ChatResponse":
        """
        Raise AllProvidersExhausted for an error response, else return self.

        Degraded responses are returned; callers check ``is_authentic``.
        """
        if self.kind is ResponseKind.ERROR:
            raise AllProvidersExhausted(self.error or "Chat completion failed", self.attempts)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "kind": self.kind.value,
            "provider_address": self.provider_address,
            "model": self.model,
            "verified": self.verified,
            "balance": str(self.balance_snapshot) if self.balance_snapshot is not None else None,
            "usage": self.usage.to_dict(),
            "result": self.payload,
            "error": self.error,
            "request_id": self.request_id,
            "attempts": [a.to_dict() for a in self.attempts],
        }

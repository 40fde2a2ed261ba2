# llm_core.py
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from openai import OpenAI, RateLimitError

from . import config

logger = logging.getLogger(__name__)

_RATE_LIMIT_PHRASES = (
    "rate limit",
    "rate_limit",
    "quota",
    "resource_exhausted",
    "resource has been exhausted",
    "too many requests",
)


class UpstreamUnavailable(Exception):
    """Raised when every model in the fallback chain failed."""

    def __init__(self, last_error: Optional[BaseException], attempted: Sequence[str]):
        summary = f"{last_error.__class__.__name__}: {last_error}" if last_error else "no models attempted"
        super().__init__(f"All models failed ({', '.join(attempted)}): {summary}")
        self.last_error = last_error
        self.attempted = list(attempted)


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    if getattr(exc, "status_code", None) == 429:
        return True
    msg = str(exc).lower()
    return any(phrase in msg for phrase in _RATE_LIMIT_PHRASES)


def _openai_client() -> OpenAI:
    if config.is_offline():
        raise RuntimeError("NAT_OFFLINE is true")
    key = config.openai_api_key()
    if not key:
        raise RuntimeError("OPENAI_API_KEY missing")
    # Retries are owned by the fallback chain, not the SDK.
    return OpenAI(
        api_key=key,
        base_url=config.openai_base_url(),
        timeout=config.llm_timeout_secs(),
        max_retries=0,
    )


def to_openai_content(parts: List[Dict[str, Any]]):
    """Convert prompt parts to a chat-completions ``content`` value."""
    if all(part.get("type") == "text" for part in parts):
        return "".join(part.get("text", "") for part in parts)
    content = []
    for part in parts:
        if part.get("type") == "inline_data":
            url = f"data:{part['mime_type']};base64,{part['data']}"
            content.append({"type": "image_url", "image_url": {"url": url}})
        else:
            content.append({"type": "text", "text": part.get("text", "")})
    return content


def _try_call_messages(
    client: OpenAI,
    model: str,
    messages: List[Dict[str, Any]],
    max_tokens: int,
    temperature: float,
) -> str:
    resp = client.chat.completions.create(
        model=model,
        messages=messages,
        temperature=temperature,
        max_completion_tokens=max_tokens,
    )
    txt = resp.choices[0].message.content or ""
    if not txt.strip():
        raise RuntimeError("Empty response")
    return txt


class ChatSession:
    def __init__(self, handle: "ModelHandle", history: List[Dict[str, str]]):
        self.handle = handle
        self.history = list(history)

    def send(self, parts: List[Dict[str, Any]]) -> str:
        messages = self.history + [{"role": "user", "content": to_openai_content(parts)}]
        reply = self.handle.complete(messages)
        self.history.append(messages[-1])
        self.history.append({"role": "assistant", "content": reply})
        return reply


class ModelHandle:
    def __init__(self, client: OpenAI, model_id: str):
        self.client = client
        self.model_id = model_id

    def complete(self, messages: List[Dict[str, Any]]) -> str:
        return _try_call_messages(
            self.client,
            self.model_id,
            messages,
            config.max_tokens(),
            config.temperature(),
        )

    def generate(self, parts: List[Dict[str, Any]]) -> str:
        return self.complete([{"role": "user", "content": to_openai_content(parts)}])

    def chat(self, history: List[Dict[str, str]]) -> ChatSession:
        return ChatSession(self, history)


class OpenAIProvider:
    """Any OpenAI-compatible chat-completions endpoint."""

    def __init__(self, client_factory: Callable[[], OpenAI] = _openai_client):
        self.client_factory = client_factory
        self._client: Optional[OpenAI] = None

    def create_model(self, model_id: str) -> ModelHandle:
        if self._client is None:
            self._client = self.client_factory()
        return ModelHandle(self._client, model_id)


def _attempt(provider, model_id: str, prompt: List[Dict[str, Any]], history: List[Dict[str, str]]) -> str:
    handle = provider.create_model(model_id)
    if history:
        text = handle.chat(history).send(prompt)
    else:
        text = handle.generate(prompt)
    if not text or not text.strip():
        raise RuntimeError(f"Empty completion from {model_id}")
    return text


def generate_with_fallback(
    provider,
    models: Sequence[str],
    prompt: List[Dict[str, Any]],
    history: List[Dict[str, str]],
    backoff: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    diagnostics: Optional[logging.Logger] = None,
) -> Tuple[str, str]:
    """Try ``models`` in order and return ``(text, model_id)`` from the first success.

    Rate-limit failures move straight to the next candidate; other failures
    pause ``backoff`` seconds first. Raises UpstreamUnavailable when all fail.
    """
    if not models:
        raise ValueError("fallback chain needs at least one model")
    pause = config.fallback_backoff_secs() if backoff is None else backoff
    attempted: List[str] = []
    last_error: Optional[BaseException] = None

    for idx, model_id in enumerate(models):
        attempted.append(model_id)
        logger.info("LLM: attempting model=%s history=%d parts=%d", model_id, len(history), len(prompt))
        try:
            text = _attempt(provider, model_id, prompt, history)
        except Exception as exc:
            last_error = exc
            rate_limited = is_rate_limit_error(exc)
            logger.warning(
                "LLM: model=%s failed (%s): %s",
                model_id,
                "rate_limited" if rate_limited else "error",
                f"{exc.__class__.__name__}: {exc}",
            )
            if diagnostics is not None:
                diagnostics.error("model %s failed: %s", model_id, exc, exc_info=exc)
            if not rate_limited and idx < len(models) - 1 and pause > 0:
                sleep(pause)
            continue
        logger.info("LLM: success model=%s", model_id)
        return text, model_id

    raise UpstreamUnavailable(last_error, attempted)


def ping(model_id: str) -> str:
    """One-token round trip used by the diagnostics endpoint."""
    client = _openai_client()
    resp = client.chat.completions.create(
        model=model_id,
        messages=[{"role": "user", "content": "ping"}],
        max_completion_tokens=1,
    )
    return resp.choices[0].message.content or ""

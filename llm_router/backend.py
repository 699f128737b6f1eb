"""
Expert backends.

``HttpExpertBackend`` posts chat completions to an OpenAI-compatible proxy
(LiteLLM by default on 127.0.0.1:4444). Transport and HTTP failures are
raised as :class:`ExpertCallError` with messages the error classifier
buckets correctly (``HTTP 429 ...`` is a rate limit, a connect failure is
a network error, and so on). A 400 whose body reports an exceeded context
window is raised as a context overflow rather than a bad request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import httpx

from .clock import Clock, SystemClock
from .config import BackendConfig
from .errors import ExpertCallError
from .experts import ExpertDescriptor
from .recovery import ERROR_PATTERNS, ErrorCategory

logger = logging.getLogger("llm-router.backend")

COMPLETIONS_PATH = "/v1/chat/completions"

CONTEXT_OVERFLOW_CODES = frozenset({"context_length_exceeded", "string_above_max_length"})


@dataclass(frozen=True)
class BackendResponse:
    response: str
    model: str
    latency_ms: float


class ExpertBackend(Protocol):
    async def call(
        self,
        expert: ExpertDescriptor,
        prompt: str,
        context: Mapping[str, Any] | None = None,
    ) -> BackendResponse: ...


def build_messages(
    expert: ExpertDescriptor,
    prompt: str,
    context: Mapping[str, Any] | None = None,
) -> list[dict[str, str]]:
    """Chat messages for one expert call.

    ``context["system"]`` overrides the expert's role as system prompt;
    ``context["history"]`` (list of role/content dicts) is inserted before
    the prompt.
    """
    context = context or {}
    messages = []
    system = context.get("system") or expert.role
    if system:
        messages.append({"role": "system", "content": str(system)})
    for msg in context.get("history") or ():
        messages.append({"role": str(msg["role"]), "content": str(msg["content"])})
    messages.append({"role": "user", "content": prompt})
    return messages


class HttpExpertBackend:
    """Call experts through an OpenAI-compatible proxy using httpx."""

    def __init__(
        self,
        config: BackendConfig | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or BackendConfig()
        self.clock = clock or SystemClock()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.proxy_url,
                timeout=self.config.timeout_ms / 1000.0,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def call(
        self,
        expert: ExpertDescriptor,
        prompt: str,
        context: Mapping[str, Any] | None = None,
    ) -> BackendResponse:
        payload = {
            "model": expert.model,
            "messages": build_messages(expert, prompt, context),
            "temperature": expert.temperature,
            "max_tokens": expert.max_tokens,
        }
        url = f"{self.config.proxy_url.rstrip('/')}{COMPLETIONS_PATH}"
        start = self.clock.now_ms()

        try:
            resp = await self.client.post(
                url,
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.TimeoutException as e:
            raise ExpertCallError(
                f"Request to {expert.id} timed out: {e}", expert_id=expert.id
            ) from e
        except httpx.TransportError as e:
            raise ExpertCallError(
                f"Network error calling {expert.id}: {type(e).__name__}: {e}",
                expert_id=expert.id,
            ) from e

        latency = self.clock.now_ms() - start

        if resp.status_code != 200:
            detail = resp.text[:200]
            logger.debug("Expert %s returned HTTP %d: %s", expert.id, resp.status_code, detail)
            message, code = _error_body(resp)
            if resp.status_code in (400, 413) and _is_context_overflow(message, code):
                # Provider text stays out of the message so only the overflow pattern matches
                raise ExpertCallError(
                    f"Context length exceeded for {expert.id}",
                    expert_id=expert.id,
                    status_code=resp.status_code,
                )
            raise ExpertCallError(
                f"HTTP {resp.status_code} {resp.reason_phrase} from {expert.id}: {detail}",
                expert_id=expert.id,
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExpertCallError(
                f"Malformed completion from {expert.id}: {e}", expert_id=expert.id
            ) from e

        return BackendResponse(
            response=content,
            model=data.get("model") or expert.model,
            latency_ms=latency,
        )


def _error_body(resp: httpx.Response) -> tuple[str, str | None]:
    """Error message and code from an OpenAI-style error body, else the raw text."""
    try:
        error = resp.json().get("error")
    except (ValueError, AttributeError):
        return resp.text, None
    if isinstance(error, dict):
        code = error.get("code")
        return str(error.get("message") or ""), str(code) if code is not None else None
    if isinstance(error, str):
        return error, None
    return resp.text, None


def _is_context_overflow(message: str, code: str | None) -> bool:
    if code in CONTEXT_OVERFLOW_CODES:
        return True
    overflow = dict(ERROR_PATTERNS)[ErrorCategory.CONTEXT_OVERFLOW]
    return any(p.search(message) for p in overflow)

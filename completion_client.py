"""
Chain diagnosis -> completion backend client.

Talks to an OpenAI-compatible chat-completions endpoint (Perplexity by default)
in two modes:
- batch: one request, full JSON response
- streaming: server-sent events, surfaced as an async sequence of chunks
"""

from __future__ import annotations

import inspect
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

import httpx

from models import CompletionChunk, CompletionResult, CompletionUsage, PromptPart

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.perplexity.ai"
SSE_DATA_PREFIX = "data:"
SSE_DONE_SENTINEL = "[DONE]"

UserPrompt = Union[str, Sequence[PromptPart]]
ChunkHandler = Callable[[CompletionChunk], Union[None, Awaitable[None]]]


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


class CompletionError(RuntimeError):
    """Network, auth, rate-limit or server failure from the completion backend."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"[{self.status_code}] {self.message}"


class CompletionClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (
            base_url or os.getenv("RADIANCE_COMPLETION_BASE_URL", DEFAULT_BASE_URL) or DEFAULT_BASE_URL
        ).strip().rstrip("/")
        if api_key is None:
            api_key = os.getenv("RADIANCE_COMPLETION_API_KEY") or os.getenv("PERPLEXITY_API_KEY") or ""
        self.api_key = api_key.strip()
        self.timeout_seconds = max(1.0, _env_float("RADIANCE_COMPLETION_TIMEOUT_SECONDS", 120.0))
        self.temperature = _env_float("RADIANCE_COMPLETION_TEMPERATURE", 0.1)
        self.max_tokens = max(1, _env_int("RADIANCE_COMPLETION_MAX_TOKENS", 2000))
        self.top_p = _env_float("RADIANCE_COMPLETION_TOP_P", 0.95)
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    # ---- Public API ----

    async def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: UserPrompt,
        *,
        streaming: bool = False,
        has_image_content: bool = False,
        on_chunk: Optional[ChunkHandler] = None,
    ) -> CompletionResult:
        if streaming:
            parts: List[str] = []
            async for chunk in self.stream_completion(
                model, system_prompt, user_prompt, has_image_content=has_image_content
            ):
                if chunk.delta:
                    parts.append(chunk.delta)
                if on_chunk is not None:
                    await notify_chunk(on_chunk, chunk)
            return CompletionResult(
                id=f"stream-{uuid4().hex}",
                model=model,
                content="".join(parts),
            )

        body = self.build_request_body(
            model, system_prompt, user_prompt, streaming=False, has_image_content=has_image_content
        )
        async with self._client() as client:
            try:
                resp = await client.post(self.endpoint, headers=self._headers(), json=body)
                resp.raise_for_status()
                payload = resp.json()
            except httpx.HTTPStatusError as exc:
                raise CompletionError(
                    _error_message(exc.response), status_code=exc.response.status_code
                ) from exc
            except httpx.HTTPError as exc:
                raise CompletionError(f"Completion request failed: {exc}") from exc
            except ValueError as exc:
                raise CompletionError(f"Completion response was not JSON: {exc}") from exc
        return self._result_from_payload(model, payload)

    async def stream_completion(
        self,
        model: str,
        system_prompt: str,
        user_prompt: UserPrompt,
        *,
        has_image_content: bool = False,
    ) -> AsyncIterator[CompletionChunk]:
        """
        Yields incremental text fragments, then one final chunk with `is_final=True`.

        Unparsable events are skipped; closing the generator aborts the request.
        """
        body = self.build_request_body(
            model, system_prompt, user_prompt, streaming=True, has_image_content=has_image_content
        )
        async with self._client() as client:
            try:
                async with client.stream("POST", self.endpoint, headers=self._headers(), json=body) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise CompletionError(_error_message(resp), status_code=resp.status_code)
                    async for line in resp.aiter_lines():
                        data = _sse_data(line)
                        if data is None:
                            continue
                        if data == SSE_DONE_SENTINEL:
                            break
                        delta = _delta_content(data)
                        if delta:
                            yield CompletionChunk(delta=delta)
            except httpx.HTTPError as exc:
                raise CompletionError(f"Completion stream failed: {exc}") from exc
        yield CompletionChunk(delta="", is_final=True)

    def build_request_body(
        self,
        model: str,
        system_prompt: str,
        user_prompt: UserPrompt,
        *,
        streaming: bool,
        has_image_content: bool,
    ) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": build_user_content(user_prompt, has_image_content)},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "stream": streaming,
        }

    # ---- Internals ----

    def _client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise CompletionError(
                "Completion API key is not configured. Set RADIANCE_COMPLETION_API_KEY or PERPLEXITY_API_KEY."
            )
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _result_from_payload(model: str, payload: Any) -> CompletionResult:
        if not isinstance(payload, dict):
            raise CompletionError("Completion response must be a JSON object.")
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise CompletionError("Completion response is missing choices[0].message.content.") from None

        created_at = datetime.now(timezone.utc)
        created = payload.get("created")
        if isinstance(created, (int, float)):
            created_at = datetime.fromtimestamp(created, tz=timezone.utc)

        usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
        return CompletionResult(
            id=str(payload.get("id") or ""),
            model=str(payload.get("model") or model),
            created_at=created_at,
            content=content if isinstance(content, str) else json.dumps(content),
            usage=CompletionUsage(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
            ),
        )


def build_user_content(user_prompt: UserPrompt, has_image_content: bool) -> Union[str, List[Dict[str, Any]]]:
    if isinstance(user_prompt, str):
        if has_image_content:
            return [{"type": "text", "text": user_prompt}]
        return user_prompt

    if not has_image_content:
        return "\n\n".join(part.text for part in user_prompt if part.text)

    content: List[Dict[str, Any]] = []
    for part in user_prompt:
        if part.text:
            content.append({"type": "text", "text": part.text})
        if part.image_url:
            content.append({"type": "image_url", "image_url": {"url": part.image_url}})
    return content


async def notify_chunk(handler: ChunkHandler, chunk: CompletionChunk) -> None:
    result = handler(chunk)
    if inspect.isawaitable(result):
        await result


def _sse_data(line: str) -> Optional[str]:
    text = (line or "").strip()
    if not text.startswith(SSE_DATA_PREFIX):
        return None
    return text[len(SSE_DATA_PREFIX):].strip() or None


def _delta_content(data: str) -> Optional[str]:
    try:
        event = json.loads(data)
        content = event["choices"][0]["delta"].get("content")
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        logger.debug("Skipping malformed completion stream event: %.200s", data)
        return None
    return content if isinstance(content, str) else None


def _error_message(response: httpx.Response) -> str:
    detail = ""
    try:
        payload = response.json()
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                detail = str(error.get("message") or "")
            elif error:
                detail = str(error)
            else:
                detail = str(payload.get("detail") or payload.get("message") or "")
    except ValueError:
        detail = response.text
    detail = (detail or response.reason_phrase or "").strip()
    if len(detail) > 500:
        detail = detail[:500] + "..."
    return f"Completion backend returned HTTP {response.status_code}: {detail}"

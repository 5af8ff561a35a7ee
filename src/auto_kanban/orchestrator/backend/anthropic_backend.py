"""Anthropic Messages API backend over httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from auto_kanban.orchestrator.backend.base import (
    BackendCallError,
    LlmRequest,
    LlmResponse,
    LlmUsage,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_API_VERSION = "2023-06-01"
DEFAULT_TIMEOUT_SECONDS = 300.0
WEB_SEARCH_TOOL_TYPE = "web_search_20250305"
WEB_FETCH_TOOL_TYPE = "web_fetch_20250910"
WEB_FETCH_BETA = "web-fetch-2025-09-10"


class AnthropicBackend:
    """Single-shot Messages API call with server-side web tools.

    The client is built without a retrying transport: retries belong to the
    orchestration layer, which replays checkpoints instead of re-billing calls.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "x-api-key": api_key,
                "anthropic-version": api_version,
                "anthropic-beta": WEB_FETCH_BETA,
                "content-type": "application/json",
            },
            transport=transport,
        )

    def complete(self, request: LlmRequest) -> LlmResponse:
        body = build_messages_body(request)
        try:
            response = self._client.post("/v1/messages", json=body)
        except httpx.TimeoutException as error:
            raise BackendCallError(f"Model call timed out: {error}") from error
        except httpx.HTTPError as error:
            raise BackendCallError(f"Model call failed: {error}") from error

        if not response.is_success:
            raise BackendCallError(
                f"Model call failed with HTTP {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        payload = response.json()
        usage = parse_usage(payload.get("usage") or {})
        logger.debug(
            "Model %s returned stop_reason=%s input=%d output=%d",
            request.model,
            payload.get("stop_reason"),
            usage.input_tokens,
            usage.output_tokens,
        )
        return LlmResponse(text=extract_text(payload), usage=usage)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> AnthropicBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_messages_body(request: LlmRequest) -> dict[str, Any]:
    """Translate a backend request into a Messages API payload."""

    system_blocks: list[dict[str, Any]] = []
    for segment in request.system_segments:
        block: dict[str, Any] = {"type": "text", "text": segment.text}
        if segment.cacheable:
            block["cache_control"] = {"type": "ephemeral"}
        system_blocks.append(block)

    tools: list[dict[str, Any]] = []
    if request.tool_budget.web_search > 0:
        tools.append(
            {
                "type": WEB_SEARCH_TOOL_TYPE,
                "name": "web_search",
                "max_uses": request.tool_budget.web_search,
            },
        )
    if request.tool_budget.web_fetch > 0:
        tools.append(
            {
                "type": WEB_FETCH_TOOL_TYPE,
                "name": "web_fetch",
                "max_uses": request.tool_budget.web_fetch,
            },
        )

    body: dict[str, Any] = {
        "model": request.model,
        "max_tokens": request.max_tokens,
        "system": system_blocks,
        "messages": [{"role": "user", "content": request.user_prompt}],
    }
    if tools:
        body["tools"] = tools
    return body


def extract_text(payload: dict[str, Any]) -> str:
    parts = [
        str(block.get("text", ""))
        for block in payload.get("content") or []
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "".join(parts).strip()


def parse_usage(raw: dict[str, Any]) -> LlmUsage:
    """Normalize provider usage so ``input_tokens`` includes cached input."""

    cache_write = int(raw.get("cache_creation_input_tokens") or 0)
    cache_read = int(raw.get("cache_read_input_tokens") or 0)
    uncached_input = int(raw.get("input_tokens") or 0)
    return LlmUsage(
        input_tokens=uncached_input + cache_write + cache_read,
        output_tokens=int(raw.get("output_tokens") or 0),
        cache_creation_input_tokens=cache_write,
        cache_read_input_tokens=cache_read,
    )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.text[:300]

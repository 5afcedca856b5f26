# [Core: Dispatch Gateway]
"""
Inference Transport: one HTTP attempt against an OpenAI-compatible
chat-completions endpoint (OpenRouter by default).

The transport performs exactly one attempt and classifies the outcome into
the gateway's error kinds. Retry policy, billing and credential rotation
belong to the gateway, so the SDK's own retries are switched off.

OpenRouter specifics handled here:
  - HTTP 429 with an optional Retry-After header
  - HTTP 200 responses whose body is an embedded ``{"error": {...}}`` object
  - ``usage.cost`` as the provider-reported cost (requested via ``usage.include``)
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from brf_extract.config import settings
from brf_extract.models.schemas import CallRequest, CallResponse, Choice, Usage
from brf_extract.services.errors import (
    RateLimited,
    TransientNetworkError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 504}


class InferenceTransport(Protocol):
    async def complete(self, request: CallRequest, api_key: str) -> CallResponse: ...


class OpenRouterTransport:
    """
    Single-attempt chat completion over ``openai.AsyncOpenAI``.

    Usage:
        transport = OpenRouterTransport()
        response = await transport.complete(request, api_key="sk-or-...")
    """

    def __init__(
        self,
        base_url: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        app_title: str = "",
        referer: str = "",
        timeout: float = 0,
    ):
        headers = {"X-Title": app_title or settings.inference_app_title}
        if referer or settings.inference_referer:
            headers["HTTP-Referer"] = referer or settings.inference_referer
        self._timeout = timeout or settings.attempt_timeout_seconds
        # The per-attempt key is swapped in with ``with_options``
        self._client = AsyncOpenAI(
            api_key="unset",
            base_url=base_url or settings.inference_base_url,
            max_retries=0,
            timeout=self._timeout,
            default_headers=headers,
            http_client=http_client,
        )

    async def complete(self, request: CallRequest, api_key: str) -> CallResponse:
        client = self._client.with_options(api_key=api_key)
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": [m.to_payload() for m in request.messages],
            "temperature": request.temperature,
            "extra_body": {"usage": {"include": True}},
        }
        if request.max_output_tokens:
            kwargs["max_tokens"] = request.max_output_tokens
        if request.structured_output:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            raw = await client.chat.completions.with_raw_response.create(**kwargs)
        except openai.RateLimitError as e:
            raise RateLimited(
                f"Rate limited by upstream: {e}",
                retry_after=_retry_after_seconds(e.response),
            ) from e
        except openai.APIConnectionError as e:
            # APITimeoutError is a subclass
            raise TransientNetworkError(f"Connection to inference endpoint failed: {e}") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500 or e.status_code in RETRYABLE_STATUS_CODES:
                raise TransientNetworkError(f"Upstream {e.status_code}: {e.message}") from e
            raise UpstreamError(f"Upstream rejected request ({e.status_code}): {e.message}", status_code=e.status_code) from e

        try:
            data = raw.http_response.json()
        except ValueError as e:
            raise TransientNetworkError(f"Inference endpoint returned a non-JSON body: {e}") from e
        return parse_completion(data, request.model)


def parse_completion(data: Dict[str, Any], requested_model: str = "") -> CallResponse:
    """Convert a chat-completions body into a ``CallResponse``.

    Raises the matching gateway error when the body is an embedded error object.
    """
    if not isinstance(data, dict):
        raise UpstreamError("Inference endpoint returned an unexpected body")

    error = data.get("error")
    if error:
        _raise_embedded_error(error)

    choices = []
    for item in data.get("choices") or []:
        message = item.get("message") or {}
        choices.append(
            Choice(
                content=message.get("content") or "",
                finish_reason=item.get("finish_reason"),
            )
        )

    usage = None
    provider_cost = None
    raw_usage = data.get("usage")
    if isinstance(raw_usage, dict):
        prompt_tokens = raw_usage.get("prompt_tokens")
        completion_tokens = raw_usage.get("completion_tokens")
        if prompt_tokens is None or completion_tokens is None:
            logger.warning(f"Usage block without token counts, treating as missing: {raw_usage}")
        else:
            usage = Usage(
                input_tokens=int(prompt_tokens),
                output_tokens=int(completion_tokens),
                total_tokens=int(raw_usage.get("total_tokens") or int(prompt_tokens) + int(completion_tokens)),
            )
        if raw_usage.get("cost") is not None:
            provider_cost = float(raw_usage["cost"])

    return CallResponse(
        id=data.get("id"),
        model=data.get("model") or requested_model,
        choices=choices,
        usage=usage,
        provider_cost=provider_cost,
    )


def _raise_embedded_error(error: Any) -> None:
    if not isinstance(error, dict):
        raise UpstreamError(f"Upstream error: {error}")
    message = str(error.get("message") or "unknown upstream error")
    try:
        code = int(error.get("code"))
    except (TypeError, ValueError):
        code = None

    logger.warning(f"Embedded error in 200 response (code={code}): {message}")
    if code == 429:
        raise RateLimited(f"Rate limited by upstream: {message}")
    if code is not None and (code >= 500 or code in RETRYABLE_STATUS_CODES):
        raise TransientNetworkError(f"Upstream {code}: {message}")
    raise UpstreamError(f"Upstream error ({code}): {message}", status_code=code)


def _retry_after_seconds(response: Optional[httpx.Response]) -> Optional[float]:
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from .errors import AuthenticationError, UpstreamError
from .router_contracts import NormalizedMessage, ProviderTier

log = structlog.get_logger()


def _output_text(output: Any) -> str | None:
    if isinstance(output, str):
        return output
    if isinstance(output, dict):
        for key in ("content", "generated_text", "text"):
            value = output.get(key)
            if isinstance(value, str):
                return value
        return None
    if isinstance(output, list) and output:
        return _output_text(output[-1])
    return None


class InferenceSession:
    """
    Generic model-hosting endpoint: one request, one complete answer.

    Runs keyless when the tier has no credential. There is no native
    streaming; `stream` yields the whole answer as a single increment.
    """

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def complete_once(self, tier: ProviderTier, messages: list[NormalizedMessage]) -> str:
        url = f"{tier.base_url.rstrip('/')}/{tier.model_name}"
        headers = {"Content-Type": "application/json"}
        if tier.api_key:
            headers["Authorization"] = f"Key {tier.api_key}"
        if any(m.images for m in messages):
            log.debug("inference_images_dropped", tier=tier.id)
        payload = {
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
        }

        try:
            resp = await self._client.post(url, headers=headers, json=payload, timeout=tier.timeout_seconds)
        except httpx.TimeoutException as e:
            raise UpstreamError("Inference request timed out.", tier=tier.id) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Inference request failed: {e.__class__.__name__}.", tier=tier.id) from e

        if resp.status_code in (401, 403):
            raise AuthenticationError("Inference host rejected credentials.", tier=tier.id, http_status=resp.status_code)
        if resp.status_code >= 400:
            raise UpstreamError(
                f"Inference error: {resp.text[:200] or resp.reason_phrase}",
                tier=tier.id,
                http_status=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("Inference host returned a non-JSON body.", tier=tier.id) from e
        if not isinstance(data, dict):
            raise UpstreamError("Unexpected inference response shape.", tier=tier.id)

        if data.get("error"):
            raise UpstreamError(f"Inference error: {data['error']}", tier=tier.id, http_status=resp.status_code)

        text = _output_text(data.get("output"))
        if not text:
            raise UpstreamError("Empty output in inference response.", tier=tier.id)

        log.debug("inference_ok", tier=tier.id, model=tier.model_name, chars=len(text))
        return text

    async def stream(self, tier: ProviderTier, messages: list[NormalizedMessage]) -> AsyncIterator[str]:
        yield await self.complete_once(tier, messages)

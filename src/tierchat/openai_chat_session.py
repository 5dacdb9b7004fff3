from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from .errors import AuthenticationError, RateLimitError, UpstreamError
from .router_contracts import NormalizedMessage, ProviderTier

log = structlog.get_logger()


def _message_payload(msg: NormalizedMessage) -> dict[str, Any]:
    if msg.role == "user" and msg.images:
        parts: list[dict[str, Any]] = [{"type": "text", "text": msg.content}]
        parts.extend({"type": "image_url", "image_url": {"url": url}} for url in msg.images)
        return {"role": "user", "content": parts}
    return {"role": msg.role, "content": msg.content}


def _content_text(content: Any) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [p.get("text") for p in content if isinstance(p, dict) and isinstance(p.get("text"), str)]
        return "".join(texts) if texts else None
    return None


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(err, str):
            return err
    return resp.reason_phrase


class OpenAIChatSession:
    """
    Chat-completions client for any OpenAI wire-compatible endpoint.

    Serves both the vendors' own endpoints and the aggregator; the tier
    supplies base URL, credential and the provider-side model name.
    """

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    def _build_request(
        self, tier: ProviderTier, messages: list[NormalizedMessage], *, stream: bool
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = f"{tier.base_url.rstrip('/')}/chat/completions"
        headers = {"Content-Type": "application/json"}
        if tier.api_key:
            headers["Authorization"] = f"Bearer {tier.api_key}"
        if stream:
            headers["Accept"] = "text/event-stream"
        payload: dict[str, Any] = {
            "model": tier.model_name,
            "messages": [_message_payload(m) for m in messages],
        }
        if stream:
            payload["stream"] = True
        return url, headers, payload

    def _raise_for_status(self, tier: ProviderTier, resp: httpx.Response, message: str) -> None:
        if resp.status_code in (401, 403):
            raise AuthenticationError(
                f"Upstream rejected credentials: {message}", tier=tier.id, http_status=resp.status_code
            )
        if resp.status_code == 429:
            retry_after = resp.headers.get("retry-after")
            raise RateLimitError(
                f"Upstream rate limited: {message}",
                tier=tier.id,
                retry_after_seconds=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        raise UpstreamError(f"Upstream error: {message}", tier=tier.id, http_status=resp.status_code)

    async def complete_once(self, tier: ProviderTier, messages: list[NormalizedMessage]) -> str:
        url, headers, payload = self._build_request(tier, messages, stream=False)
        try:
            resp = await self._client.post(url, headers=headers, json=payload, timeout=tier.timeout_seconds)
        except httpx.TimeoutException as e:
            raise UpstreamError("Upstream request timed out.", tier=tier.id) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream request failed: {e.__class__.__name__}.", tier=tier.id) from e

        if resp.status_code >= 400:
            self._raise_for_status(tier, resp, _error_message(resp))

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("Upstream returned a non-JSON body.", tier=tier.id, http_status=resp.status_code) from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise UpstreamError("Missing choices in upstream response.", tier=tier.id)

        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise UpstreamError("Missing message in upstream response.", tier=tier.id)

        text = _content_text(message.get("content"))
        if not text:
            raise UpstreamError("Empty content in upstream response.", tier=tier.id)

        log.debug("chat_completion_ok", tier=tier.id, model=tier.model_name, chars=len(text))
        return text

    async def stream(self, tier: ProviderTier, messages: list[NormalizedMessage]) -> AsyncIterator[str]:
        url, headers, payload = self._build_request(tier, messages, stream=True)
        finished = False
        try:
            async with self._client.stream(
                "POST", url, headers=headers, json=payload, timeout=tier.timeout_seconds
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    self._raise_for_status(tier, resp, _error_message(resp))

                async for line in resp.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    raw = line[len("data:") :].strip()
                    if not raw:
                        continue
                    if raw == "[DONE]":
                        finished = True
                        break
                    try:
                        event = json.loads(raw)
                    except json.JSONDecodeError as e:
                        raise UpstreamError("Failed to decode upstream SSE JSON.", tier=tier.id) from e
                    if not isinstance(event, dict):
                        continue

                    err = event.get("error")
                    if err:
                        msg = err.get("message") if isinstance(err, dict) else str(err)
                        raise UpstreamError(f"Upstream stream error: {msg}", tier=tier.id)

                    choices = event.get("choices")
                    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                        continue
                    delta = choices[0].get("delta")
                    if isinstance(delta, dict):
                        text = _content_text(delta.get("content"))
                        if text:
                            yield text
                    if choices[0].get("finish_reason"):
                        finished = True
        except httpx.TimeoutException as e:
            raise UpstreamError("Upstream stream timed out.", tier=tier.id) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream stream failed: {e.__class__.__name__}.", tier=tier.id) from e

        if not finished:
            raise UpstreamError("Upstream stream ended before completion.", tier=tier.id)

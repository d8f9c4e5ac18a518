"""
Chat completion client for the two supported providers.

Features:
  - One injected httpx.AsyncClient (connection pooling), closed on shutdown
  - Retry with exponential backoff + jitter (429, 500, 502, 503, 504)
  - OpenRouter model fallback (primary model → OPENROUTER_FALLBACK_MODEL)
  - Default system prompt when the caller sent none
  - <think> / <thinking> artifacts stripped from replies
"""

import asyncio
import json
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..core.config import Settings
from ..core.errors import ProviderError
from ..core.flags import FeatureFlags

logger = logging.getLogger(__name__)

OPENROUTER = "openrouter"
KOBOLDCPP = "koboldcpp"
PROVIDERS = (KOBOLDCPP, OPENROUTER)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Give concise, useful answers. Do not output "
    "chain-of-thought, internal reasoning, or tags like <think>...</think>. "
    "Provide only the final answer."
)


@dataclass
class ChatCompletion:
    reply: str
    provider: str


# ── Reply helpers ────────────────────────────────────────────────────

_THINK_BLOCK = re.compile(r"<(think|thinking)\b[^>]*>[\s\S]*?</\1>", re.IGNORECASE)
_THINK_TAG = re.compile(r"</?(?:think|thinking)\b[^>]*>", re.IGNORECASE)
_BLANK_RUNS = re.compile(r"\n{3,}")


def strip_thinking_artifacts(text: str) -> str:
    """Drop reasoning blocks. If that leaves nothing, keep the original text."""
    original = (text or "").strip()
    if not original:
        return ""
    cleaned = _THINK_BLOCK.sub("", original)
    cleaned = _THINK_TAG.sub("", cleaned)
    cleaned = _BLANK_RUNS.sub("\n\n", cleaned).strip()
    return cleaned or original


def ensure_text_response(payload: Any) -> str:
    """Pull the first choice's text out of an OpenAI-style response body."""
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return ""

    content = message.get("content")
    if isinstance(content, str):
        return strip_thinking_artifacts(content)
    if isinstance(content, list):
        merged = "".join(
            part["text"] for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
        return strip_thinking_artifacts(merged)
    return ""


def read_openrouter_error(payload: Any) -> Optional[str]:
    """Flatten OpenRouter's {"error": {...}} body into one line."""
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        return None
    error = payload["error"]
    message = error.get("message")
    details = [message.strip() if isinstance(message, str) and message.strip() else "Provider returned an error."]

    code = error.get("code")
    if isinstance(code, (int, str)) and not isinstance(code, bool):
        details.append(f"code {code}")

    metadata = error.get("metadata")
    if isinstance(metadata, dict):
        for key, label in (("provider_name", "provider "), ("raw", "")):
            value = metadata.get(key)
            if isinstance(value, str) and value.strip():
                details.append(f"{label}{value.strip()}")

    return " | ".join(details)


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except (json.JSONDecodeError, ValueError):
        return None


# ── Client ───────────────────────────────────────────────────────────

class LLMClient:
    RETRYABLE_STATUS = {429, 500, 502, 503, 504}
    MAX_RETRIES = 2
    BASE_DELAY = 1.0
    MAX_DELAY = 8.0

    def __init__(
        self,
        settings: Settings,
        flags: FeatureFlags,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.flags = flags
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=120, write=30, pool=10),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )

    async def close(self):
        """Close the HTTP client if we created it. Call on app shutdown."""
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    # ── Provider selection ───────────────────────────────────────────

    @property
    def default_provider(self) -> str:
        return OPENROUTER if (self.flags.llm_provider or "").lower() == OPENROUTER else KOBOLDCPP

    def resolve_provider(self, requested: Optional[str] = None) -> str:
        if requested in PROVIDERS and self.flags.allow_provider_override:
            return requested
        return self.default_provider

    @property
    def system_prompt(self) -> str:
        custom = (self.settings.chat_system_prompt or "").strip()
        return custom or DEFAULT_SYSTEM_PROMPT

    def sanitize_messages(self, messages: list[dict]) -> list[dict]:
        cleaned = []
        for message in messages:
            content = message.get("content")
            content = content.strip() if isinstance(content, str) else ""
            if content:
                cleaned.append({"role": message.get("role", "user"), "content": content})

        if not cleaned:
            cleaned = [{"role": "user", "content": "Hello"}]
        if any(message["role"] == "system" for message in cleaned):
            return cleaned
        return [{"role": "system", "content": self.system_prompt}] + cleaned

    # ── Main entry ───────────────────────────────────────────────────

    async def complete(
        self,
        messages: list[dict],
        provider: Optional[str] = None,
        reasoning: bool = False,
    ) -> ChatCompletion:
        """Run one chat completion. Raises ProviderError on any failure."""
        active = self.resolve_provider(provider)
        payload_messages = self.sanitize_messages(messages)

        start = time.monotonic()
        if active == OPENROUTER:
            reply = await self._call_openrouter(payload_messages, reasoning)
        else:
            reply = await self._call_koboldcpp(payload_messages)

        logger.info(
            "LLM %s: %dms | messages=%d reasoning=%s reply=%d chars",
            active, int((time.monotonic() - start) * 1000),
            len(payload_messages), reasoning, len(reply),
        )
        return ChatCompletion(reply=reply, provider=active)

    # ── OpenRouter ───────────────────────────────────────────────────

    async def _call_openrouter(self, messages: list[dict], reasoning: bool) -> str:
        settings = self.settings
        if not settings.openrouter_api_key:
            raise ProviderError("Missing OPENROUTER_API_KEY.", provider=OPENROUTER)

        model = settings.openrouter_model
        fallback = (settings.openrouter_fallback_model or "").strip()

        try:
            return await self._openrouter_once(model, messages, reasoning)
        except ProviderError as primary_error:
            if not fallback or fallback == model:
                raise
            logger.warning("OpenRouter model %s failed, falling back to %s", model, fallback)
            try:
                return await self._openrouter_once(fallback, messages, reasoning)
            except ProviderError as fallback_error:
                raise ProviderError(
                    f'OpenRouter primary model "{model}" failed: {primary_error} '
                    f'Fallback model "{fallback}" failed: {fallback_error}',
                    provider=OPENROUTER,
                ) from fallback_error

    async def _openrouter_once(self, model: str, messages: list[dict], reasoning: bool) -> str:
        settings = self.settings
        url = f"{settings.openrouter_base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {settings.openrouter_api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": settings.openrouter_site_url,
            "X-Title": settings.openrouter_app_name,
        }
        payload = {
            "model": model,
            "messages": messages,
            "reasoning": {"enabled": reasoning},
        }
        timeout = settings.openrouter_timeout_seconds()

        resp = await self._retry_request(url, payload, headers, timeout, OPENROUTER, model)
        body = _json_or_none(resp)
        provider_error = read_openrouter_error(body)

        if resp.status_code >= 400:
            details = provider_error or resp.text.strip()[:500] or "No response body."
            raise ProviderError(
                f'OpenRouter error ({resp.status_code}) for model "{model}": {details}',
                provider=OPENROUTER,
            )
        if provider_error:
            raise ProviderError(
                f'OpenRouter provider error for model "{model}": {provider_error}',
                provider=OPENROUTER,
            )

        reply = ensure_text_response(body)
        if not reply:
            raise ProviderError(
                f'OpenRouter returned an empty completion for model "{model}".',
                provider=OPENROUTER,
            )
        return reply

    # ── KoboldCpp ────────────────────────────────────────────────────

    async def _call_koboldcpp(self, messages: list[dict]) -> str:
        settings = self.settings
        url = f"{settings.koboldcpp_url.rstrip('/')}/v1/chat/completions"
        payload = {"model": settings.koboldcpp_model, "messages": messages}
        timeout = settings.koboldcpp_timeout_ms / 1000

        resp = await self._retry_request(
            url, payload, {"Content-Type": "application/json"}, timeout, KOBOLDCPP,
            settings.koboldcpp_model,
        )
        if resp.status_code >= 400:
            raise ProviderError(
                f"KoboldCpp error ({resp.status_code}): {resp.text[:500]}",
                provider=KOBOLDCPP,
            )

        reply = ensure_text_response(_json_or_none(resp))
        if not reply:
            raise ProviderError("KoboldCpp returned an empty completion.", provider=KOBOLDCPP)
        return reply

    # ── Retry logic ──────────────────────────────────────────────────

    def _backoff(self, attempt: int) -> float:
        return min(self.MAX_DELAY, self.BASE_DELAY * (2 ** attempt) + random.uniform(0, 1))

    async def _retry_request(
        self,
        url: str,
        payload: dict,
        headers: dict,
        timeout: float,
        provider: str,
        model: str,
    ) -> httpx.Response:
        """
        POST with exponential backoff + jitter. Returns the last response, which
        may still carry an error status for the caller to report.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(self.MAX_RETRIES + 1):
            is_last = attempt == self.MAX_RETRIES
            try:
                resp = await self._client.post(url, json=payload, headers=headers, timeout=timeout)
            except httpx.TimeoutException as e:
                last_exc = e
                if is_last:
                    break
                delay = self._backoff(attempt)
                logger.warning(
                    "%s timeout (attempt %d/%d), retrying in %.1fs",
                    provider, attempt + 1, self.MAX_RETRIES + 1, delay,
                )
                await asyncio.sleep(delay)
                continue
            except httpx.HTTPError as e:
                last_exc = e
                if is_last:
                    break
                await asyncio.sleep(self._backoff(attempt))
                continue

            if resp.status_code not in self.RETRYABLE_STATUS or is_last:
                if resp.status_code >= 400:
                    logger.error("%s API error %d: %s", provider, resp.status_code, resp.text[:500])
                return resp

            retry_after = resp.headers.get("retry-after")
            try:
                delay = min(self.MAX_DELAY, float(retry_after)) if retry_after else self._backoff(attempt)
            except ValueError:
                delay = self._backoff(attempt)
            logger.warning(
                "%s %d (attempt %d/%d), retrying in %.1fs",
                provider, resp.status_code, attempt + 1, self.MAX_RETRIES + 1, delay,
            )
            await asyncio.sleep(delay)

        if isinstance(last_exc, httpx.TimeoutException):
            raise ProviderError(
                f'{provider} timed out after {timeout:.0f}s for model "{model}".',
                provider=provider,
            ) from last_exc
        raise ProviderError(
            f'{provider} request failed for model "{model}": {last_exc}',
            provider=provider,
        ) from last_exc

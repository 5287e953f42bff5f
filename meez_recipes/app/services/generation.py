"""Generation providers and the primary/secondary fallback orchestrator."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from meez_recipes.app.core.errors import ProviderError
from meez_recipes.app.schemas.parse import GenerationResult, PromptPayload, TokenUsage

logger = logging.getLogger(__name__)

# USD per 1K tokens
COST_PER_1K_TOKENS: Dict[str, Dict[str, float]] = {
    "gemini": {"input": 0.0001, "output": 0.0004},
    "openai": {"input": 0.01, "output": 0.03},
}

TEMPORARY_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def normalize_usage(raw: Optional[Dict[str, Any]], provider: str) -> TokenUsage:
    """Map a provider-specific usage block onto input/output token counts."""
    if not raw:
        return TokenUsage()
    if provider == "gemini":
        return TokenUsage(
            input_tokens=int(raw.get("promptTokenCount") or 0),
            output_tokens=int(raw.get("candidatesTokenCount") or 0),
        )
    return TokenUsage(
        input_tokens=int(raw.get("prompt_tokens") or 0),
        output_tokens=int(raw.get("completion_tokens") or 0),
    )


def estimate_cost_usd(usage: TokenUsage, provider: Optional[str]) -> float:
    rates = COST_PER_1K_TOKENS.get(provider or "")
    if not rates:
        return 0.0
    cost = (usage.input_tokens / 1000) * rates["input"] + (usage.output_tokens / 1000) * rates["output"]
    return round(cost, 6)


def _error_from_response(provider: str, resp: httpx.Response) -> ProviderError:
    message = f"status {resp.status_code}"
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        error_info = data["error"]
        message = f"{error_info.get('status') or error_info.get('type', 'error')}: {str(error_info.get('message', ''))[:500]}"
    return ProviderError(provider, message, temporary=resp.status_code in TEMPORARY_STATUS_CODES)


class GenerationProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def generate(self, prompt: PromptPayload) -> GenerationResult:  # pragma: no cover - interface
        """Run one generation; raise ProviderError on failure."""


class GeminiProvider(GenerationProvider):
    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        max_prompt_chars: int = 250_000,
        timeout_seconds: float = 90.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_prompt_chars = max_prompt_chars
        self.timeout = httpx.Timeout(timeout_seconds, read=timeout_seconds, connect=10.0)

    async def generate(self, prompt: PromptPayload) -> GenerationResult:
        if not self.api_key:
            raise ProviderError(self.name, "GEMINI_API_KEY is not set")

        # Gemini has no separate system slot in this call shape
        full_prompt = f"{prompt.system}\n\n{prompt.text}"
        if len(full_prompt) > self.max_prompt_chars:
            raise ProviderError(
                self.name,
                f"prompt of {len(full_prompt)} chars exceeds the {self.max_prompt_chars} char limit",
            )

        parts: list[dict] = [{"text": full_prompt}]
        if prompt.image_data:
            parts.append({"inline_data": {"mime_type": prompt.image_mime_type, "data": prompt.image_data}})
        generation_config: dict = {"temperature": prompt.temperature}
        if prompt.is_json:
            generation_config["responseMimeType"] = "application/json"
        payload = {"contents": [{"role": "user", "parts": parts}], "generationConfig": generation_config}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/models/{self.model}:generateContent",
                    params={"key": self.api_key},
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"request failed: {exc}", temporary=True) from exc
        if resp.status_code >= 400:
            raise _error_from_response(self.name, resp)

        data = resp.json()
        candidates = data.get("candidates") or [{}]
        content_parts = (candidates[0].get("content") or {}).get("parts") or []
        output = "".join(part.get("text", "") for part in content_parts if isinstance(part, dict))
        usage = normalize_usage(data.get("usageMetadata"), self.name)
        logger.info(
            "[%s] gemini generation done (in=%s, out=%s)",
            prompt.metadata.request_id,
            usage.input_tokens,
            usage.output_tokens,
        )
        return GenerationResult(
            output=output,
            usage=usage,
            provider=self.name,
            cost_usd=estimate_cost_usd(usage, self.name),
        )


class OpenAIProvider(GenerationProvider):
    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4-turbo",
        vision_model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 90.0,
    ):
        self.api_key = api_key
        self.model = model
        self.vision_model = vision_model
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds, read=timeout_seconds, connect=10.0)

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    async def generate(self, prompt: PromptPayload) -> GenerationResult:
        if not self.api_key:
            raise ProviderError(self.name, "OPENAI_API_KEY is not set")

        if prompt.image_data:
            user_content: Any = [
                {"type": "text", "text": prompt.text},
                {"type": "image_url", "image_url": {"url": f"data:{prompt.image_mime_type};base64,{prompt.image_data}"}},
            ]
            model = self.vision_model
        else:
            user_content = prompt.text
            model = self.model

        payload: Dict[str, Any] = {
            "model": model,
            "temperature": prompt.temperature,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": user_content},
            ],
        }
        if prompt.is_json:
            payload["response_format"] = {"type": "json_object"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"request failed: {exc}", temporary=True) from exc
        if resp.status_code >= 400:
            raise _error_from_response(self.name, resp)

        data = resp.json()
        if isinstance(data, dict) and "error" in data:
            error_info = data["error"] or {}
            raise ProviderError(self.name, f"{error_info.get('type', 'unknown_error')}: {error_info.get('message', '')}")
        content = data.get("choices", [{}])[0].get("message", {}).get("content")
        usage = normalize_usage(data.get("usage"), self.name)
        logger.info(
            "[%s] openai generation done with %s (in=%s, out=%s)",
            prompt.metadata.request_id,
            model,
            usage.input_tokens,
            usage.output_tokens,
        )
        return GenerationResult(
            output=content if isinstance(content, str) else None,
            usage=usage,
            provider=self.name,
            cost_usd=estimate_cost_usd(usage, self.name),
        )


class FallbackGenerator:
    """Primary provider first; at most one call to the secondary.

    The secondary runs when the primary raises, times out or returns empty
    output. Results from the two providers are never merged.
    """

    def __init__(
        self,
        primary: GenerationProvider,
        secondary: Optional[GenerationProvider] = None,
        timeout_seconds: float = 90.0,
    ):
        self.primary = primary
        self.secondary = secondary
        self.timeout_seconds = timeout_seconds

    async def _attempt(self, provider: GenerationProvider, prompt: PromptPayload) -> tuple[Optional[GenerationResult], str]:
        request_id = prompt.metadata.request_id
        try:
            result = await asyncio.wait_for(provider.generate(prompt), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("[%s] %s timed out after %ss", request_id, provider.name, self.timeout_seconds)
            return None, f"{provider.name} timed out"
        except ProviderError as exc:
            logger.warning("[%s] %s failed (temporary=%s): %s", request_id, provider.name, exc.temporary, exc)
            return None, str(exc)
        except Exception as exc:
            logger.exception("[%s] %s raised unexpectedly", request_id, provider.name)
            return None, f"{provider.name}: {exc}"

        if not result.output or not result.output.strip():
            logger.warning("[%s] %s returned empty output", request_id, provider.name)
            return None, f"{provider.name} returned empty output"
        result.provider = result.provider or provider.name
        return result, ""

    async def generate(self, prompt: PromptPayload) -> GenerationResult:
        result, primary_error = await self._attempt(self.primary, prompt)
        if result is not None:
            return result
        if self.secondary is None:
            return GenerationResult(error=f"Generation failed: {primary_error}")

        logger.info("[%s] falling back to %s", prompt.metadata.request_id, self.secondary.name)
        result, secondary_error = await self._attempt(self.secondary, prompt)
        if result is not None:
            return result
        return GenerationResult(
            error=f"Both providers failed. Primary: {primary_error}. Secondary: {secondary_error}.",
        )

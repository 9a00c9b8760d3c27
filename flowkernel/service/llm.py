from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from flowkernel.config import Settings
from flowkernel.logging import get_logger
from flowkernel.service.credentials import CredentialCipher, CredentialError
from flowkernel.service.errors import NodeError, TransientDependencyError

logger = get_logger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"

# USD per one million tokens: (prompt, completion)
MODEL_PRICING: Dict[str, tuple] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1-nano": (0.10, 0.40),
    "gpt-4.1": (2.00, 8.00),
    "gpt-4-turbo": (10.00, 30.00),
    "gpt-3.5-turbo": (0.50, 1.50),
    "o3-mini": (1.10, 4.40),
    "deepseek-chat": (0.27, 1.10),
    "deepseek-reasoner": (0.55, 2.19),
    "qwen-plus": (0.40, 1.20),
    "qwen-turbo": (0.05, 0.20),
}


def estimate_cost_usd(model: Optional[str], prompt_tokens: int, completion_tokens: int) -> float:
    """Price a call by the longest known model-name prefix; unknown models cost 0."""
    if not model:
        return 0.0
    lowered = model.lower()
    match = None
    for name in MODEL_PRICING:
        if lowered.startswith(name) and (match is None or len(name) > len(match)):
            match = name
    if match is None:
        return 0.0
    prompt_rate, completion_rate = MODEL_PRICING[match]
    return (max(0, prompt_tokens) * prompt_rate + max(0, completion_tokens) * completion_rate) / 1_000_000


@dataclass
class ChatResult:
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""


@dataclass
class ImageResult:
    images: List[Dict[str, Any]] = field(default_factory=list)
    model: str = ""


@dataclass
class VideoResult:
    task_id: str
    status: str
    url: Optional[str] = None
    model: str = ""


@dataclass
class SpeechResult:
    audio: bytes
    format: str
    model: str = ""


class AIProvider(Protocol):
    async def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        *,
        temperature: float = 0.7,
        max_tokens: Optional[int] = 2048,
    ) -> ChatResult: ...

    async def generate_image(self, model: str, prompt: str, *, size: str, count: int) -> ImageResult: ...

    async def generate_video(self, model: str, prompt: str, *, duration: int) -> VideoResult: ...

    async def synthesize_speech(self, model: str, text: str, *, voice: str, format: str) -> SpeechResult: ...

    async def close(self) -> None: ...


@dataclass
class ResolvedAIConfig:
    """Decrypted provider settings cached per execution."""

    id: str
    provider: str
    api_key: Optional[str]
    base_url: Optional[str]
    default_model: str
    source: str


def _digest(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]


class OpenAIProvider:
    """OpenAI-compatible provider.

    Without an API key (or in offline mode) it returns deterministic
    placeholder content so workflows stay runnable in dev and test.
    """

    def __init__(self, config: ResolvedAIConfig, *, offline: bool = False, timeout: float = 120.0) -> None:
        self.config = config
        self.base_url = (config.base_url or OPENAI_API_BASE).rstrip("/")
        self.client = (
            AsyncOpenAI(api_key=config.api_key, base_url=config.base_url or None, timeout=timeout)
            if config.api_key and not offline
            else None
        )
        self._http: Optional[httpx.AsyncClient] = None
        self._timeout = timeout

    @staticmethod
    def _translate(exc: Exception, operation: str) -> NodeError:
        if isinstance(exc, (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)):
            return TransientDependencyError(f"AI provider unavailable during {operation}: {exc}")
        return NodeError(f"AI provider rejected {operation}: {exc}")

    async def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        *,
        temperature: float = 0.7,
        max_tokens: Optional[int] = 2048,
    ) -> ChatResult:
        if self.client:
            request: Dict[str, Any] = {"model": model, "messages": messages, "temperature": temperature}
            if max_tokens and max_tokens > 0:
                request["max_tokens"] = max_tokens
            try:
                completion = await self.client.chat.completions.create(**request)
            except APIError as exc:
                raise self._translate(exc, "chat") from exc
            choices = getattr(completion, "choices", None) or []
            first_choice = next(iter(choices), None)
            if not first_choice:
                logger.warning("ai_chat_no_choices", model=model)
                content = ""
            else:
                content = first_choice.message.content or ""
            usage = completion.usage
            return ChatResult(
                content=content,
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
                model=getattr(completion, "model", None) or model,
            )
        last = messages[-1]["content"] if messages else ""
        prompt_words = sum(len(str(m.get("content", "")).split()) for m in messages)
        return ChatResult(
            content=f"[{self.config.provider} model={model}] {last}",
            prompt_tokens=prompt_words,
            completion_tokens=max(5, min(20, len(last.split()))),
            model=model,
        )

    async def generate_image(self, model: str, prompt: str, *, size: str = "1024x1024", count: int = 1) -> ImageResult:
        if self.client:
            try:
                response = await self.client.images.generate(model=model, prompt=prompt, size=size, n=count)
            except APIError as exc:
                raise self._translate(exc, "image generation") from exc
            images = []
            for item in response.data or []:
                images.append(
                    {
                        "url": getattr(item, "url", None),
                        "b64": getattr(item, "b64_json", None),
                        "revisedPrompt": getattr(item, "revised_prompt", None),
                    }
                )
            return ImageResult(images=images, model=model)
        digest = _digest(f"{model}:{prompt}")
        return ImageResult(
            images=[{"url": f"placeholder://image/{digest}-{i}", "b64": None} for i in range(count)],
            model=model,
        )

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
        return self._http

    async def generate_video(self, model: str, prompt: str, *, duration: int = 5) -> VideoResult:
        if self.client:
            client = await self._get_http()
            try:
                response = await client.post(
                    f"{self.base_url}/videos/generations",
                    json={"model": model, "prompt": prompt, "duration": duration},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code in (429, 500, 502, 503, 504):
                    raise TransientDependencyError(
                        f"video generation unavailable: HTTP {exc.response.status_code}"
                    ) from exc
                raise NodeError(f"video generation failed: HTTP {exc.response.status_code}") from exc
            except httpx.HTTPError as exc:
                raise TransientDependencyError(f"video generation unavailable: {exc}") from exc
            payload = response.json()
            return VideoResult(
                task_id=str(payload.get("id") or payload.get("task_id") or ""),
                status=str(payload.get("status") or "submitted"),
                url=payload.get("url") or (payload.get("data") or [{}])[0].get("url"),
                model=model,
            )
        digest = _digest(f"{model}:{prompt}:{duration}")
        return VideoResult(
            task_id=f"placeholder-{digest}",
            status="completed",
            url=f"placeholder://video/{digest}",
            model=model,
        )

    async def synthesize_speech(self, model: str, text: str, *, voice: str = "alloy", format: str = "mp3") -> SpeechResult:
        if self.client:
            try:
                response = await self.client.audio.speech.create(
                    model=model, voice=voice, input=text, response_format=format
                )
            except APIError as exc:
                raise self._translate(exc, "speech synthesis") from exc
            return SpeechResult(audio=response.content, format=format, model=model)
        return SpeechResult(audio=f"voice={voice}\n{text}".encode("utf-8"), format="txt", model="placeholder")

    async def close(self) -> None:
        if self.client:
            await self.client.close()
        if self._http:
            await self._http.aclose()
            self._http = None


ProviderFactory = Callable[[ResolvedAIConfig], AIProvider]


class AIService:
    """Resolves provider credentials and routes AI calls with usage accounting."""

    SYSTEM_CONFIG_ID = "system"

    def __init__(
        self,
        store,
        cipher: CredentialCipher,
        settings: Settings,
        *,
        provider_factory: Optional[ProviderFactory] = None,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.settings = settings
        self._provider_factory = provider_factory or (
            lambda config: OpenAIProvider(config, offline=settings.test_mode)
        )
        self._providers: Dict[str, AIProvider] = {}

    def resolve_config(self, context, config_id: Optional[str] = None) -> ResolvedAIConfig:
        """Explicit config scoped to the org, else the org default, else settings."""
        cache_key = config_id or "__default__"
        cached = context.ai_configs.get(cache_key)
        if cached is not None:
            return cached
        record = self.store.find_ai_config(context.organization_id, config_id)
        if config_id and record is None:
            raise NodeError(f"AI config '{config_id}' not found or inactive")
        if record is not None:
            try:
                api_key = self.cipher.decrypt(record.key_encrypted)
            except CredentialError as exc:
                raise NodeError(f"AI config '{record.id}' credentials are unreadable") from exc
            resolved = ResolvedAIConfig(
                id=record.id,
                provider=record.provider,
                api_key=api_key,
                base_url=record.base_url,
                default_model=record.default_model or self.settings.default_model,
                source="explicit" if config_id else "default",
            )
        else:
            resolved = ResolvedAIConfig(
                id=self.SYSTEM_CONFIG_ID,
                provider=self.settings.default_ai_provider,
                api_key=self.settings.openai_api_key,
                base_url=self.settings.openai_base_url,
                default_model=self.settings.default_model,
                source="system",
            )
        context.ai_configs[cache_key] = resolved
        return resolved

    def provider_for(self, config: ResolvedAIConfig) -> AIProvider:
        key = f"{config.id}:{_digest(config.api_key or '')}:{config.base_url or ''}"
        provider = self._providers.get(key)
        if provider is None:
            provider = self._provider_factory(config)
            self._providers[key] = provider
        return provider

    def _account(self, context, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        cost = estimate_cost_usd(model, prompt_tokens, completion_tokens)
        context.add_usage(prompt_tokens, completion_tokens, cost)
        return cost

    async def chat(
        self,
        context,
        messages: List[Dict[str, str]],
        *,
        config_id: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = 2048,
    ) -> ChatResult:
        config = self.resolve_config(context, config_id)
        target_model = model or config.default_model
        result = await self.provider_for(config).chat(
            target_model, messages, temperature=temperature, max_tokens=max_tokens
        )
        self._account(context, result.model or target_model, result.prompt_tokens, result.completion_tokens)
        logger.info(
            "ai_chat_completed",
            execution_id=context.execution_id,
            model=result.model or target_model,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
        )
        return result

    async def generate_image(self, context, prompt: str, *, config_id=None, model=None, size="1024x1024", count=1) -> ImageResult:
        config = self.resolve_config(context, config_id)
        return await self.provider_for(config).generate_image(
            model or "dall-e-3", prompt, size=size, count=count
        )

    async def generate_video(self, context, prompt: str, *, config_id=None, model=None, duration=5) -> VideoResult:
        config = self.resolve_config(context, config_id)
        return await self.provider_for(config).generate_video(
            model or "video-default", prompt, duration=duration
        )

    async def synthesize_speech(self, context, text: str, *, config_id=None, model=None, voice="alloy", format="mp3") -> SpeechResult:
        config = self.resolve_config(context, config_id)
        return await self.provider_for(config).synthesize_speech(
            model or "tts-1", text, voice=voice, format=format
        )

    async def close(self) -> None:
        for provider in list(self._providers.values()):
            await provider.close()
        self._providers.clear()

"""
OpenAI provider implementation.
Implements chat, embedding and Whisper transcription using the OpenAI API.
"""

import math
import os
from typing import Dict, List

import openai as openai_client
from openai import AsyncOpenAI

from careflow.core.errors import AdapterError, MalformedAdapterResponse, TransientAdapterError
from careflow.providers.base import (
    BaseLLMProvider, BaseEmbeddingProvider, BaseSpeechToTextProvider,
    LLMResult, EmbeddingResult, TranscriptionResult, ProviderType,
    provider_registry
)

# Whisper reports the detected language by name
WHISPER_LANGUAGE_CODES = {
    "english": "en",
    "french": "fr",
    "arabic": "ar",
    "spanish": "es",
    "german": "de",
    "italian": "it",
    "portuguese": "pt",
    "dutch": "nl",
    "turkish": "tr",
}


def translate_openai_error(exc: Exception, operation: str) -> AdapterError:
    """Map an OpenAI SDK exception onto the adapter error taxonomy."""
    if isinstance(exc, (openai_client.APIConnectionError, openai_client.RateLimitError,
                        openai_client.InternalServerError)):
        return TransientAdapterError(f"OpenAI {operation} failed: {exc}")
    if isinstance(exc, openai_client.APIStatusError) and exc.status_code >= 500:
        return TransientAdapterError(f"OpenAI {operation} failed: {exc}")
    return AdapterError(f"OpenAI {operation} failed: {exc}")


class _OpenAIClientMixin:
    """Shared client setup for the OpenAI providers."""

    def __init__(self, api_key: str = None, **kwargs):
        super().__init__(api_key, **kwargs)
        self.client = None
        self.base_url = kwargs.get("base_url", None)

    async def initialize(self) -> None:
        """Initialize the OpenAI client."""
        if not self.api_key:
            self.api_key = os.getenv("OPENAI_API_KEY")

        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            max_retries=0
        )


class OpenAILLMProvider(_OpenAIClientMixin, BaseLLMProvider):
    """OpenAI provider for chat completions."""

    provider_name = "openai"
    provider_type = ProviderType.LLM

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        **kwargs
    ) -> LLMResult:
        """Chat completion using OpenAI."""
        model = model or "gpt-4o-mini"
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs
            )
        except openai_client.OpenAIError as e:
            raise translate_openai_error(e, "chat") from e

        if not response.choices:
            raise MalformedAdapterResponse("OpenAI chat returned no choices")

        choice = response.choices[0]
        usage = response.usage
        return LLMResult(
            text=choice.message.content or "",
            model=model,
            usage={
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens
            } if usage else {},
            finish_reason=choice.finish_reason or "stop"
        )


class OpenAIEmbeddingProvider(_OpenAIClientMixin, BaseEmbeddingProvider):
    """OpenAI provider for embedding services."""

    provider_name = "openai"
    provider_type = ProviderType.EMBEDDING

    async def embed(
        self,
        texts: List[str],
        model: str = None,
        dimensions: int = None,
        **kwargs
    ) -> EmbeddingResult:
        """Generate embeddings using OpenAI."""
        model = model or "text-embedding-3-small"
        if dimensions:
            kwargs["dimensions"] = dimensions
        try:
            response = await self.client.embeddings.create(
                model=model,
                input=texts,
                **kwargs
            )
        except openai_client.OpenAIError as e:
            raise translate_openai_error(e, "embedding") from e

        return EmbeddingResult(
            embeddings=[item.embedding for item in response.data],
            model=model,
            usage={"total_tokens": response.usage.total_tokens} if response.usage else {}
        )


class OpenAISpeechToTextProvider(_OpenAIClientMixin, BaseSpeechToTextProvider):
    """OpenAI Whisper provider for speech-to-text."""

    provider_name = "openai"
    provider_type = ProviderType.SPEECH_TO_TEXT
    reports_dialects = False

    async def transcribe(
        self,
        audio: bytes,
        language: str = None,
        model: str = None,
        filename: str = "note.webm",
        **kwargs
    ) -> TranscriptionResult:
        """Transcribe audio with Whisper, keeping language and segment confidence."""
        model = model or "whisper-1"
        if language:
            kwargs["language"] = language
        try:
            response = await self.client.audio.transcriptions.create(
                model=model,
                file=(filename, audio),
                response_format="verbose_json",
                **kwargs
            )
        except openai_client.OpenAIError as e:
            raise translate_openai_error(e, "transcription") from e

        detected = (getattr(response, "language", None) or "").lower()
        segments = getattr(response, "segments", None) or []
        confidence = None
        if segments:
            mean_logprob = sum(s.avg_logprob for s in segments) / len(segments)
            confidence = round(math.exp(mean_logprob), 4)

        return TranscriptionResult(
            text=(response.text or "").strip(),
            language=WHISPER_LANGUAGE_CODES.get(detected, detected or None),
            confidence=confidence,
            duration=getattr(response, "duration", None)
        )


# Register providers
provider_registry.register(OpenAILLMProvider)
provider_registry.register(OpenAIEmbeddingProvider)
provider_registry.register(OpenAISpeechToTextProvider)

"""
HuggingFace provider implementation.
Implements chat, sentence embeddings and ASR using the HuggingFace Inference API.
"""

import asyncio
import os
from typing import Dict, List

import httpx
import numpy as np
from huggingface_hub import AsyncInferenceClient
from huggingface_hub.errors import HfHubHTTPError, InferenceTimeoutError

from careflow.core.errors import AdapterError, MalformedAdapterResponse, TransientAdapterError
from careflow.providers.base import (
    BaseLLMProvider, BaseEmbeddingProvider, BaseSpeechToTextProvider,
    LLMResult, EmbeddingResult, TranscriptionResult, ProviderType, provider_registry
)


def translate_hf_error(exc: Exception, operation: str) -> AdapterError:
    """Map a HuggingFace client exception onto the adapter error taxonomy."""
    if isinstance(exc, (InferenceTimeoutError, httpx.TransportError, ConnectionError)):
        return TransientAdapterError(f"HuggingFace {operation} failed: {exc}")
    if isinstance(exc, HfHubHTTPError):
        status = exc.response.status_code if exc.response is not None else None
        if status is None or status >= 500 or status == 429:
            return TransientAdapterError(f"HuggingFace {operation} failed: {exc}")
    return AdapterError(f"HuggingFace {operation} failed: {exc}")


def _pool_vector(raw) -> List[float]:
    """Reduce a feature-extraction output to one sentence vector."""
    array = np.asarray(raw, dtype=float)
    if array.ndim == 3:
        array = array[0]
    if array.ndim == 2:
        # token-level output from models without a pooling head
        array = array[0] if array.shape[0] == 1 else array.mean(axis=0)
    if array.ndim != 1 or array.size == 0:
        raise MalformedAdapterResponse(f"Unexpected embedding shape {np.shape(raw)}")
    return array.tolist()


class _HuggingFaceClientMixin:
    """Shared client setup for the HuggingFace providers."""

    def __init__(self, api_key: str = None, **kwargs):
        super().__init__(api_key, **kwargs)
        self.client = None

    async def initialize(self) -> None:
        """Initialize the HuggingFace client."""
        if not self.api_key:
            self.api_key = os.getenv("HF_API_KEY")

        self.client = AsyncInferenceClient(token=self.api_key)


class HuggingFaceLLMProvider(_HuggingFaceClientMixin, BaseLLMProvider):
    """HuggingFace provider for chat completions."""

    provider_name = "huggingface"
    provider_type = ProviderType.LLM

    DEFAULT_MODEL = "meta-llama/Llama-3.1-8B-Instruct"

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        **kwargs
    ) -> LLMResult:
        """Chat completion using the HuggingFace Inference API."""
        model = model or self.DEFAULT_MODEL
        try:
            response = await self.client.chat_completion(
                messages=messages,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs
            )
        except Exception as e:
            raise translate_hf_error(e, "chat") from e

        if not response.choices:
            raise MalformedAdapterResponse("HuggingFace chat returned no choices")

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


class HuggingFaceEmbeddingProvider(_HuggingFaceClientMixin, BaseEmbeddingProvider):
    """HuggingFace provider for sentence embeddings."""

    provider_name = "huggingface"
    provider_type = ProviderType.EMBEDDING

    DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
    DIMENSION = 384

    async def embed(
        self,
        texts: List[str],
        model: str = None,
        **kwargs
    ) -> EmbeddingResult:
        """Generate embeddings for multiple texts."""
        model = model or self.DEFAULT_MODEL
        embeddings = await asyncio.gather(*(self._embed_text(text, model) for text in texts))

        return EmbeddingResult(
            embeddings=list(embeddings),
            model=model,
            usage={"total_tokens": sum(len(t.split()) for t in texts)}
        )

    async def _embed_text(self, text: str, model: str) -> List[float]:
        try:
            response = await self.client.feature_extraction(text, model=model)
        except Exception as e:
            raise translate_hf_error(e, "embedding") from e
        return _pool_vector(response)


class HuggingFaceSpeechToTextProvider(_HuggingFaceClientMixin, BaseSpeechToTextProvider):
    """HuggingFace provider for speech-to-text (Whisper)."""

    provider_name = "huggingface"
    provider_type = ProviderType.SPEECH_TO_TEXT
    reports_dialects = False

    DEFAULT_MODEL = "openai/whisper-large-v3"

    async def transcribe(
        self,
        audio: bytes,
        language: str = None,
        model: str = None,
        filename: str = "note.webm",
        **kwargs
    ) -> TranscriptionResult:
        """Transcribe audio. The hosted pipeline does not report the spoken language."""
        model = model or self.DEFAULT_MODEL
        try:
            result = await self.client.automatic_speech_recognition(audio, model=model)
        except Exception as e:
            raise translate_hf_error(e, "transcription") from e

        return TranscriptionResult(
            text=(result.text or "").strip(),
            language=language
        )


# Register providers
provider_registry.register(HuggingFaceLLMProvider)
provider_registry.register(HuggingFaceEmbeddingProvider)
provider_registry.register(HuggingFaceSpeechToTextProvider)

"""
Vendor-neutral interfaces for the hosted models the pipeline depends on.

Each capability (chat, embeddings, speech-to-text) has its own base class;
concrete vendors register themselves with `provider_registry` on import.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum


class ProviderType(str, Enum):
    """Model capabilities used by the pipeline."""
    LLM = "llm"
    EMBEDDING = "embedding"
    SPEECH_TO_TEXT = "speech_to_text"


@dataclass
class EmbeddingResult:
    """Vectors for a batch of texts."""
    embeddings: List[List[float]]
    model: str
    usage: Dict[str, int] = field(default_factory=dict)


@dataclass
class LLMResult:
    """One chat completion."""
    text: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)
    finish_reason: str = "stop"


@dataclass
class TranscriptionResult:
    """Transcript of one recording, with whatever language signal the vendor gives."""
    text: str
    language: Optional[str] = None
    confidence: Optional[float] = None
    duration: Optional[float] = None


class BaseAIProvider(ABC):
    """Common construction for vendor clients."""

    provider_type: ProviderType
    provider_name: str

    def __init__(self, api_key: str = None, **kwargs):
        self.api_key = api_key
        self.config = kwargs

    @abstractmethod
    async def initialize(self) -> None:
        """Create the vendor client."""
        pass


class BaseLLMProvider(BaseAIProvider):
    provider_type = ProviderType.LLM

    @abstractmethod
    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        **kwargs
    ) -> LLMResult:
        """Complete a system/user message list."""
        pass


class BaseEmbeddingProvider(BaseAIProvider):
    provider_type = ProviderType.EMBEDDING

    @abstractmethod
    async def embed(self, texts: List[str], model: str = None, **kwargs) -> EmbeddingResult:
        pass

    async def embed_one(self, text: str, model: str = None, **kwargs) -> List[float]:
        result = await self.embed([text], model=model, **kwargs)
        return result.embeddings[0]


class BaseSpeechToTextProvider(BaseAIProvider):
    provider_type = ProviderType.SPEECH_TO_TEXT
    # False when the model only names macro languages (Whisper reports Darija as "ar")
    reports_dialects: bool = True

    @abstractmethod
    async def transcribe(
        self,
        audio: bytes,
        language: str = None,
        model: str = None,
        filename: str = "note.webm",
        **kwargs
    ) -> TranscriptionResult:
        """Transcribe a recorded note. `language` is a hint, not a requirement."""
        pass


class ProviderRegistry:
    """Provider classes and their instances, keyed by (name, capability)."""

    def __init__(self):
        self._instances: Dict[Tuple[str, ProviderType], BaseAIProvider] = {}
        self._classes: Dict[Tuple[str, ProviderType], type] = {}

    def register(self, provider_class: type, name: str = None) -> None:
        key = (name or provider_class.provider_name, provider_class.provider_type)
        self._classes[key] = provider_class

    def get_provider(
        self,
        name: str,
        provider_type: ProviderType,
        api_key: str = None,
        **config
    ) -> BaseAIProvider:
        """Return the shared instance for a vendor capability, creating it on first use."""
        key = (name, ProviderType(provider_type))
        if key in self._instances:
            return self._instances[key]

        if key not in self._classes:
            available = ", ".join(f"{n}:{t.value}" for n, t in self._classes)
            raise ValueError(f"No {key[1].value} provider named '{name}'. Available: {available}")

        provider = self._classes[key](api_key=api_key, **config)
        self._instances[key] = provider
        return provider


provider_registry = ProviderRegistry()

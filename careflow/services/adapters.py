"""
Adapters between the pipeline and the AI providers.

Each adapter exposes one narrow request/response operation, applies a
per-call timeout, retries transient failures with exponential backoff and
normalises vendor payloads into plain Python values.
"""

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from careflow.core.errors import MalformedAdapterResponse, TransientAdapterError
from careflow.models.schemas import REPORT_FIELDS, EmbeddingMode, ExtractionMode, ExtractionResult
from careflow.providers.base import (
    BaseEmbeddingProvider, BaseLLMProvider, BaseSpeechToTextProvider, LLMResult
)
from careflow.services import prompts

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


@dataclass
class Transcript:
    """Normalised transcription output."""
    text: str
    language: Optional[str] = None
    confidence: Optional[float] = None


class _ProviderAdapter:
    """Timeout and retry handling shared by every adapter."""

    operation = "provider call"

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    def _log_retry(self, retry_state) -> None:
        logger.warning(
            f"Retrying {self.operation}, attempt {retry_state.attempt_number} failed: "
            f"{retry_state.outcome.exception()}"
        )

    async def _call(self, factory: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(TransientAdapterError),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._call_once(factory)

    async def _call_once(self, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransientAdapterError(
                f"{self.operation} timed out after {self.timeout_seconds}s"
            ) from e


class TranscriptionAdapter(_ProviderAdapter):
    """Audio bytes in, transcript with detected language out."""

    operation = "transcription"

    def __init__(self, provider: BaseSpeechToTextProvider, model: str = None, **kwargs):
        super().__init__(**kwargs)
        self.provider = provider
        self.model = model

    async def transcribe(self, audio: bytes, filename: str = "note.webm") -> Transcript:
        result = await self._call(
            lambda: self.provider.transcribe(audio, model=self.model, filename=filename)
        )
        text = (result.text or "").strip()
        if not text:
            raise MalformedAdapterResponse("Transcription returned no text")

        language = result.language.strip().lower() if result.language else None
        logger.info(f"Transcribed {len(text)} chars, language={language} ({result.confidence})")
        return Transcript(text=text, language=language, confidence=result.confidence)


class _ChatAdapter(_ProviderAdapter):
    """Base for adapters backed by a chat-completion model."""

    temperature = 0.2
    max_tokens = 1500

    def __init__(self, provider: BaseLLMProvider, model: str = None, **kwargs):
        super().__init__(**kwargs)
        self.provider = provider
        self.model = model

    async def _complete(self, system: str, user: str, **overrides) -> str:
        result: LLMResult = await self._call(
            lambda: self.provider.chat(
                [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                model=self.model,
                max_tokens=overrides.get("max_tokens", self.max_tokens),
                temperature=overrides.get("temperature", self.temperature),
            )
        )
        text = (result.text or "").strip()
        if not text:
            raise MalformedAdapterResponse(f"{self.operation} returned an empty completion")
        return text


class TranslationAdapter(_ChatAdapter):
    """Translate a transcript into the extraction language."""

    operation = "translation"
    temperature = 0.0

    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        system = prompts.TRANSLATION_PROMPT.format(
            source=prompts.language_name(source_language),
            target=prompts.language_name(target_language),
        )
        return await self._complete(system, text)


def parse_extraction(raw: str, mode: ExtractionMode = ExtractionMode.REPORT) -> ExtractionResult:
    """Parse model output into a validated extraction result."""
    cleaned = _FENCE.sub("", raw).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedAdapterResponse(f"Extraction output is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedAdapterResponse("Extraction output is not a JSON object")

    tasks = payload.get("tasks")
    if mode == ExtractionMode.TASKS_ONLY:
        data = {"report": None, "tasks": tasks}
    elif isinstance(payload.get("report"), dict):
        data = {"report": payload["report"], "tasks": tasks}
    else:
        data = {
            "report": {k: v for k, v in payload.items() if k != "tasks"},
            "tasks": tasks,
        }

    if data["report"] is not None and not any(k in data["report"] for k in REPORT_FIELDS):
        raise MalformedAdapterResponse("Extraction output has no report fields")

    try:
        return ExtractionResult.model_validate(data)
    except ValidationError as e:
        raise MalformedAdapterResponse(f"Extraction output failed validation: {e}") from e


class ExtractionAdapter(_ChatAdapter):
    """Transcript in, structured report and tasks out."""

    operation = "extraction"

    def __init__(self, provider: BaseLLMProvider, model: str = None, parse_attempts: int = 2, **kwargs):
        super().__init__(provider, model=model, **kwargs)
        self.parse_attempts = max(1, parse_attempts)

    async def extract(
        self,
        text: str,
        output_language: str = None,
        mode: ExtractionMode = ExtractionMode.REPORT,
    ) -> ExtractionResult:
        template = (
            prompts.TASK_EXTRACTION_PROMPT if mode == ExtractionMode.TASKS_ONLY
            else prompts.REPORT_EXTRACTION_PROMPT
        )
        language = prompts.language_name(output_language)
        user = prompts.EXTRACTION_USER_MESSAGE.format(transcript=text)

        last_error = None
        for attempt in range(1, self.parse_attempts + 1):
            # later attempts use the stricter prompt
            system = template if attempt == 1 else template + prompts.STRICT_SUFFIX
            try:
                raw = await self._complete(
                    system.format(output_language=language),
                    user,
                    temperature=self.temperature if attempt == 1 else 0.0,
                )
                result = parse_extraction(raw, mode)
            except MalformedAdapterResponse as e:
                last_error = e
                logger.warning(f"Extraction attempt {attempt}/{self.parse_attempts} unparseable: {e}")
                continue
            logger.info(f"Extracted {len(result.tasks)} tasks ({mode.value}, {language})")
            return result

        raise last_error


class EmbeddingAdapter(_ProviderAdapter):
    """Text in, fixed-length vector out."""

    operation = "embedding"

    def __init__(
        self,
        provider: BaseEmbeddingProvider,
        dimension: int,
        model: str = None,
        query_prefix: str = "",
        document_prefix: str = "",
        **kwargs
    ):
        super().__init__(**kwargs)
        self.provider = provider
        self.dimension = dimension
        self.model = model
        self.prefixes = {
            EmbeddingMode.QUERY: query_prefix,
            EmbeddingMode.DOCUMENT: document_prefix,
        }

    async def embed(self, text: str, mode: EmbeddingMode = EmbeddingMode.DOCUMENT) -> List[float]:
        payload = f"{self.prefixes[mode]}{text}"
        vector = await self._call(lambda: self.provider.embed_one(payload, model=self.model))

        if len(vector) != self.dimension:
            raise MalformedAdapterResponse(
                f"Embedding has {len(vector)} dimensions, expected {self.dimension}"
            )
        if not all(math.isfinite(v) for v in vector):
            raise MalformedAdapterResponse("Embedding contains non-finite values")
        return [float(v) for v in vector]


class AnswerAdapter(_ChatAdapter):
    """Chart context and question in, answer text out."""

    operation = "answer"

    def __init__(self, provider: BaseLLMProvider, model: str = None,
                 max_tokens: int = 500, temperature: float = 0.3, **kwargs):
        super().__init__(provider, model=model, **kwargs)
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def answer(self, context: str, question: str) -> str:
        return await self._complete(
            prompts.ANSWER_SYSTEM_PROMPT,
            prompts.ANSWER_USER_MESSAGE.format(context=context, question=question),
        )

"""
Pytest configuration and shared fixtures.

Providers are replaced by scripted fakes; the database is a throwaway
SQLite file per test.
"""

import asyncio
import json
import re
from typing import Any, Dict, List
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from careflow.core.config import ChatConfig
from careflow.db.session import create_session_factory, init_db
from careflow.db.store import ClinicalStore
from careflow.models.schemas import ShiftType
from careflow.providers.base import (
    BaseEmbeddingProvider, BaseLLMProvider, BaseSpeechToTextProvider,
    EmbeddingResult, LLMResult, TranscriptionResult
)
from careflow.services.adapters import (
    AnswerAdapter, EmbeddingAdapter, ExtractionAdapter, TranscriptionAdapter, TranslationAdapter
)
from careflow.services.chat import PatientChatService
from careflow.services.embedding import ReportEmbedder
from careflow.services.handoff import HandoffService
from careflow.services.notifications import ChangeFeed
from careflow.services.orchestrator import NoteOrchestrator
from careflow.services.worker import NoteWorkerPool
from careflow.storage.blob import LocalBlobStore, build_blob_path
from careflow.vectorstores.base import PatientScopedIndex
from careflow.vectorstores.memory import InMemoryVectorStore


# =============================================================================
# SAMPLE DATA
# =============================================================================

STABLE_TRANSCRIPT = "Patient stable, pain 3, recheck labs in 2 hours."

STABLE_EXTRACTION = {
    "summary": "Patient stable overnight.",
    "pain_level": 3,
    "consciousness": "Alert",
    "risk_factors": [],
    "access_lines": [],
    "pending_labs": ["recheck in 2 hours"],
    "action_items": ["Recheck labs in 2 hours"],
    "tasks": [
        {
            "title": "Recheck labs",
            "description": "Recheck labs in 2 hours",
            "priority": "medium",
            "category": "Lab Work",
        }
    ],
}

EMBEDDING_VOCABULARY = ["pain", "labs", "fall", "iv", "sedated", "stable", "wound", "fever"]
EMBEDDING_DIMENSION = len(EMBEDDING_VOCABULARY)


# =============================================================================
# FAKE PROVIDERS
# =============================================================================


class FakeSpeechProvider(BaseSpeechToTextProvider):
    """Returns a fixed transcript; can be scripted to fail or stall first."""

    provider_name = "fake"

    def __init__(self, text: str = STABLE_TRANSCRIPT, language: str = "en", confidence: float = 0.94):
        super().__init__()
        self.text = text
        self.language = language
        self.confidence = confidence
        self.failures: List[Exception] = []
        self.delays: List[float] = []
        self.calls = 0

    async def initialize(self) -> None:
        pass

    async def transcribe(self, audio, language=None, model=None, filename="note.webm", **kwargs):
        self.calls += 1
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        if self.failures:
            raise self.failures.pop(0)
        return TranscriptionResult(text=self.text, language=self.language, confidence=self.confidence)


def _reply_kind(system_prompt: str) -> str:
    if "medical translator" in system_prompt:
        return "translate"
    if "nursing assistant" in system_prompt:
        return "answer"
    return "extract"


class FakeLLMProvider(BaseLLMProvider):
    """
    Chat provider that replies per prompt kind (translate, extract, answer).

    A reply may be a string, an exception to raise, or a list of either that
    is consumed in order, repeating the last element.
    """

    provider_name = "fake"

    def __init__(self, **replies: Any):
        super().__init__()
        self.replies: Dict[str, Any] = {
            "extract": json.dumps(STABLE_EXTRACTION),
            "translate": "Translated note.",
            "answer": "Per [Report 1], pain is 3/10.",
        }
        self.replies.update(replies)
        self.calls: List[tuple] = []

    async def initialize(self) -> None:
        pass

    def calls_for(self, kind: str) -> List[list]:
        return [messages for k, messages in self.calls if k == kind]

    async def chat(self, messages, model=None, max_tokens=1000, temperature=0.7, **kwargs):
        kind = _reply_kind(messages[0]["content"])
        self.calls.append((kind, messages))
        reply = self.replies[kind]
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, Exception):
            raise reply
        return LLMResult(text=reply, model="fake-llm")


class FakeEmbeddingProvider(BaseEmbeddingProvider):
    """Bag-of-words vectors over a tiny clinical vocabulary."""

    provider_name = "fake"

    def __init__(self):
        super().__init__()
        self.failures: List[Exception] = []
        self.texts: List[str] = []

    async def initialize(self) -> None:
        pass

    @staticmethod
    def vector_for(text: str) -> List[float]:
        words = re.findall(r"[a-z]+", text.lower())
        return [float(words.count(term)) for term in EMBEDDING_VOCABULARY]

    async def embed(self, texts, model=None, **kwargs):
        if self.failures:
            raise self.failures.pop(0)
        self.texts.extend(texts)
        return EmbeddingResult(embeddings=[self.vector_for(t) for t in texts], model="fake-embed")


# =============================================================================
# STORAGE FIXTURES
# =============================================================================


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'careflow.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def change_feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def store(session_factory, change_feed) -> ClinicalStore:
    return ClinicalStore(session_factory, change_feed)


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def index(vector_store) -> PatientScopedIndex:
    return PatientScopedIndex(vector_store)


# =============================================================================
# PROVIDER AND ADAPTER FIXTURES
# =============================================================================


@pytest.fixture
def speech() -> FakeSpeechProvider:
    return FakeSpeechProvider()


@pytest.fixture
def llm() -> FakeLLMProvider:
    return FakeLLMProvider()


@pytest.fixture
def embeddings() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def retry_options() -> dict:
    return {"timeout_seconds": 0.2, "max_attempts": 3, "backoff_seconds": 0}


@pytest.fixture
def transcriber(speech, retry_options) -> TranscriptionAdapter:
    return TranscriptionAdapter(speech, **{**retry_options, "max_attempts": 2})


@pytest.fixture
def translator(llm, retry_options) -> TranslationAdapter:
    return TranslationAdapter(llm, **retry_options)


@pytest.fixture
def extractor(llm, retry_options) -> ExtractionAdapter:
    return ExtractionAdapter(llm, parse_attempts=2, **retry_options)


@pytest.fixture
def embedding_adapter(embeddings, retry_options) -> EmbeddingAdapter:
    return EmbeddingAdapter(embeddings, dimension=EMBEDDING_DIMENSION, **retry_options)


@pytest.fixture
def answerer(llm, retry_options) -> AnswerAdapter:
    return AnswerAdapter(llm, **retry_options)


# =============================================================================
# SERVICE FIXTURES
# =============================================================================


@pytest.fixture
def embedder(store, embedding_adapter, index) -> ReportEmbedder:
    return ReportEmbedder(store, embedding_adapter, index)


@pytest.fixture
def orchestrator(store, blob_store, transcriber, translator, extractor, embedder) -> NoteOrchestrator:
    return NoteOrchestrator(
        store=store,
        blob_store=blob_store,
        transcriber=transcriber,
        translator=translator,
        extractor=extractor,
        embedder=embedder,
    )


@pytest.fixture
def chat_service(store, embedding_adapter, index, answerer) -> PatientChatService:
    return PatientChatService(
        store, embedding_adapter, index, answerer,
        ChatConfig(top_k=3, similarity_threshold=0.3),
    )


@pytest.fixture
async def handoff_service(store, blob_store, orchestrator, chat_service, embedder):
    pool = NoteWorkerPool(orchestrator, concurrency=2)
    service = HandoffService(store, blob_store, orchestrator, pool, chat_service, embedder)
    await service.start()
    yield service
    await service.stop()


@pytest.fixture
def make_note(store, blob_store):
    """Factory that stores audio and creates an uploaded note row."""

    async def _make(patient_id: str = "patient-1", audio: bytes = b"RIFF-audio", store_audio: bool = True):
        note_id = str(uuid4())
        path = build_blob_path(patient_id, note_id)
        if store_audio:
            await blob_store.write(path, audio)
        return await store.create_note(
            note_id=note_id,
            patient_id=patient_id,
            author_id="nurse-7",
            blob_path=path,
            duration_seconds=12.5,
            shift_type=ShiftType.NIGHT,
        )

    return _make

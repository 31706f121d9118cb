"""
Handoff service: the operations exposed to the API, and the wiring that
builds them from settings.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from careflow.core.config import Settings
from careflow.db.database import HandoffReport, Note, Task
from careflow.db.store import ClinicalStore
from careflow.models.schemas import ExtractionMode, ShiftType
from careflow.providers.base import BaseSpeechToTextProvider, ProviderType, provider_registry
from careflow.services.adapters import (
    AnswerAdapter, EmbeddingAdapter, ExtractionAdapter, TranscriptionAdapter, TranslationAdapter
)
from careflow.services.chat import ChatAnswer, PatientChatService
from careflow.services.embedding import ReportEmbedder
from careflow.services.locks import NoteLockManager, RedisNoteLockManager
from careflow.services.notifications import ChangeFeed
from careflow.services.orchestrator import NoteOrchestrator
from careflow.services.worker import NoteWorkerPool
from careflow.storage.blob import BaseBlobStore, build_blob_path, create_blob_store
from careflow.vectorstores.base import PatientScopedIndex, vector_store_registry

# provider and backend modules register themselves on import
import careflow.providers.huggingface  # noqa: F401
import careflow.providers.openai  # noqa: F401
import careflow.vectorstores.memory  # noqa: F401
import careflow.vectorstores.pinecone  # noqa: F401

logger = logging.getLogger(__name__)


@dataclass
class NoteDetail:
    """A note with whatever its extraction produced."""
    note: Note
    report: Optional[HandoffReport]
    tasks: List[Task]


class HandoffService:
    """Submit notes, retry them, embed reports and answer chart questions."""

    def __init__(
        self,
        store: ClinicalStore,
        blob_store: BaseBlobStore,
        orchestrator: NoteOrchestrator,
        pool: NoteWorkerPool,
        chat: PatientChatService,
        embedder: ReportEmbedder,
        sweep_interval_seconds: float = 0,
    ):
        self.store = store
        self.blob_store = blob_store
        self.orchestrator = orchestrator
        self.pool = pool
        self.chat = chat
        self.embedder = embedder
        self.sweep_interval_seconds = sweep_interval_seconds
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def change_feed(self) -> ChangeFeed:
        return self.store.change_feed

    async def start(self) -> None:
        await self.pool.start()
        if self.sweep_interval_seconds > 0 and self._sweep_task is None:
            self._sweep_task = asyncio.create_task(
                self.embedder.run_periodic(self.sweep_interval_seconds)
            )

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        await self.pool.stop()

    # ========================================================================
    # Operations
    # ========================================================================

    async def submit_note(
        self,
        patient_id: str,
        author_id: str,
        audio: bytes,
        duration_seconds: float = None,
        shift_type: str = ShiftType.DAY.value,
        extension: str = "webm",
    ) -> str:
        """Store the audio, create the note row and queue it for processing."""
        if not patient_id:
            raise ValueError("patient_id is required")
        if not audio:
            raise ValueError("Audio recording is empty")
        shift = ShiftType(shift_type)

        note_id = str(uuid4())
        blob_path = build_blob_path(patient_id, note_id, extension)

        # the row only exists once the audio is durable
        await self.blob_store.write(blob_path, audio)
        await self.store.create_note(
            note_id=note_id,
            patient_id=patient_id,
            author_id=author_id,
            blob_path=blob_path,
            duration_seconds=duration_seconds,
            shift_type=shift,
        )
        await self.pool.submit(note_id)
        logger.info(f"Note {note_id} submitted for patient {patient_id}")
        return note_id

    async def retry_note(self, note_id: str, wait: bool = True) -> Note:
        """
        Retry a note. Processed notes are returned untouched; notes that
        failed on unusable audio raise UnrecoverableInputError.
        """
        note = await self.store.get_note(note_id)
        if not self.orchestrator.check_retry(note):
            return note
        if wait:
            return await self.orchestrator.retry(note_id)
        await self.pool.submit(note_id, resume=True)
        return note

    async def get_note(self, note_id: str) -> Note:
        return await self.store.get_note(note_id)

    async def get_note_detail(self, note_id: str) -> NoteDetail:
        note = await self.store.get_note(note_id)
        return NoteDetail(
            note=note,
            report=await self.store.get_report_for_note(note_id),
            tasks=await self.store.list_tasks(note_id),
        )

    async def ask_patient_question(self, patient_id: str, question: str) -> ChatAnswer:
        return await self.chat.answer(patient_id, question)

    async def embed_reports(self, report_id: Optional[str] = None) -> int:
        return await self.embedder.embed_pending(report_id=report_id)


ARABIC_DIALECTS = {"ary", "arq", "aeb", "darija"}


def translation_languages_for(stt: BaseSpeechToTextProvider, languages: List[str]) -> List[str]:
    """Languages to translate, widened to "ar" when the STT model cannot tell Arabic dialects apart."""
    languages = [lang.lower() for lang in languages]
    if not stt.reports_dialects and "ar" not in languages and ARABIC_DIALECTS & set(languages):
        logger.info(f"{stt.provider_name} does not report Arabic dialects, translating all \"ar\" notes")
        languages.append("ar")
    return languages


async def build_handoff_service(
    settings: Settings,
    session_factory: async_sessionmaker,
    change_feed: ChangeFeed = None,
) -> HandoffService:
    """Create providers, adapters and services from settings."""
    cfg = settings.providers
    api_keys = {"openai": cfg.openai_api_key, "huggingface": cfg.huggingface_api_key}
    provider_config = {"openai": {"base_url": cfg.openai_base_url}, "huggingface": {}}

    async def provider(name: str, provider_type: ProviderType):
        instance = provider_registry.get_provider(
            name, provider_type, api_key=api_keys.get(name), **provider_config.get(name, {})
        )
        await instance.initialize()
        return instance

    stt = await provider(cfg.transcription, ProviderType.SPEECH_TO_TEXT)
    llm = await provider(cfg.llm, ProviderType.LLM)
    embeddings = await provider(cfg.embedding, ProviderType.EMBEDDING)

    retry_options = {
        "timeout_seconds": cfg.timeout_seconds,
        "max_attempts": cfg.max_retries,
        "backoff_seconds": cfg.retry_backoff_seconds,
    }
    pipeline = settings.pipeline

    transcriber = TranscriptionAdapter(
        stt, model=cfg.transcription_model,
        **{**retry_options, "max_attempts": pipeline.transcription_max_attempts},
    )
    translator = TranslationAdapter(llm, model=cfg.llm_model, **retry_options)
    extractor = ExtractionAdapter(
        llm, model=cfg.llm_model, parse_attempts=pipeline.extraction_max_attempts, **retry_options
    )
    embedding_adapter = EmbeddingAdapter(
        embeddings,
        dimension=cfg.embedding_dimension,
        model=cfg.embedding_model,
        query_prefix=cfg.embedding_query_prefix,
        document_prefix=cfg.embedding_document_prefix,
        **retry_options,
    )
    answerer = AnswerAdapter(
        llm, model=cfg.llm_model,
        max_tokens=settings.chat.max_tokens, temperature=settings.chat.temperature,
        **retry_options,
    )

    backend_config = {"dimension": cfg.embedding_dimension}
    if settings.vector_store.backend == "pinecone":
        if settings.pinecone is None:
            raise ValueError("vector_store.backend is pinecone but no pinecone settings were given")
        backend_config.update(settings.pinecone.model_dump())
    vector_store = vector_store_registry.create(settings.vector_store.backend, **backend_config)
    await vector_store.initialize()
    index = PatientScopedIndex(vector_store)

    if pipeline.lock_backend == "redis":
        locks = RedisNoteLockManager(
            redis.from_url(settings.redis.url), timeout_seconds=pipeline.lock_timeout_seconds
        )
    else:
        locks = NoteLockManager()

    store = ClinicalStore(session_factory, change_feed)
    blob_store = create_blob_store(settings.storage.type, settings.storage.base_path)
    embedder = ReportEmbedder(store, embedding_adapter, index)

    orchestrator = NoteOrchestrator(
        store=store,
        blob_store=blob_store,
        transcriber=transcriber,
        translator=translator,
        extractor=extractor,
        embedder=embedder,
        locks=locks,
        translation_languages=translation_languages_for(stt, pipeline.translation_languages),
        target_language=pipeline.translation_target_language,
        extraction_mode=ExtractionMode(pipeline.extraction_mode),
    )
    pool = NoteWorkerPool(orchestrator, pipeline.max_concurrent_notes, pipeline.queue_size)
    chat = PatientChatService(store, embedding_adapter, index, answerer, settings.chat)

    logger.info(
        f"Handoff service ready: stt={cfg.transcription}, llm={cfg.llm}, "
        f"embedding={cfg.embedding}, index={settings.vector_store.backend}"
    )
    return HandoffService(
        store, blob_store, orchestrator, pool, chat, embedder,
        sweep_interval_seconds=pipeline.embedding_sweep_interval_seconds,
    )

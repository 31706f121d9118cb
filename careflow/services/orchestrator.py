"""
Note processing pipeline.

Drives a single note from upload to a terminal state:

    uploaded -> transcribing -> (translating) -> extracting -> embedding -> processed

with failed:transcription / failed:extraction reachable from any active
stage. State is persisted after every stage, so a run can resume from
wherever the previous one stopped.
"""

import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional

from careflow.core.errors import AdapterError, UnrecoverableInputError
from careflow.db.database import Note
from careflow.db.store import ClinicalStore
from careflow.models.schemas import ExtractionMode, NoteState, RESUME_STATE
from careflow.services.adapters import ExtractionAdapter, TranscriptionAdapter, TranslationAdapter
from careflow.services.embedding import ReportEmbedder
from careflow.services.locks import NoteLockManager
from careflow.storage.blob import BaseBlobStore

logger = logging.getLogger(__name__)


class NoteOrchestrator:
    """Sequences the adapters for one note and persists its progress."""

    def __init__(
        self,
        store: ClinicalStore,
        blob_store: BaseBlobStore,
        transcriber: TranscriptionAdapter,
        translator: TranslationAdapter,
        extractor: ExtractionAdapter,
        embedder: ReportEmbedder,
        locks: NoteLockManager = None,
        translation_languages: Iterable[str] = ("ary", "arq", "aeb", "darija"),
        target_language: str = "en",
        extraction_mode: ExtractionMode = ExtractionMode.REPORT,
    ):
        self.store = store
        self.blob_store = blob_store
        self.transcriber = transcriber
        self.translator = translator
        self.extractor = extractor
        self.embedder = embedder
        self.locks = locks or NoteLockManager()
        self.translation_languages = {lang.lower() for lang in translation_languages}
        self.target_language = target_language
        self.extraction_mode = ExtractionMode(extraction_mode)

        self._stages: Dict[NoteState, Callable[[Note], Awaitable[Optional[Note]]]] = {
            NoteState.UPLOADED: self._start,
            NoteState.TRANSCRIBING: self._transcribe,
            NoteState.TRANSLATING: self._translate,
            NoteState.EXTRACTING: self._extract,
            NoteState.EMBEDDING: self._embed,
        }

    def needs_translation(self, language: Optional[str]) -> bool:
        return bool(language) and language.lower() in self.translation_languages

    # ========================================================================
    # Entry points
    # ========================================================================

    def check_retry(self, note: Note) -> bool:
        """
        Decide whether a retry has work to do.

        Processed notes need nothing; notes whose audio is missing or
        unreadable cannot be retried and must be recorded again.
        """
        if note.state == NoteState.PROCESSED:
            return False
        if note.state.is_failed and not note.failure_recoverable:
            raise UnrecoverableInputError(
                f"Note {note.id} cannot be retried: {note.failure_reason}. Please re-record."
            )
        return True

    async def retry(self, note_id: str) -> Note:
        """Resume a failed or stalled note from the stage where it stopped."""
        note = await self.store.get_note(note_id)
        if not self.check_retry(note):
            logger.info(f"Retry of note {note_id} skipped: already processed")
            return note
        return await self.process(note_id, resume=True)

    async def process(self, note_id: str, resume: bool = False) -> Note:
        """
        Run the pipeline for a note from its current state.

        Failed notes are left alone unless `resume` is set. A run that finds
        the note locked by another run returns without doing anything.
        """
        async with self.locks.hold(note_id) as acquired:
            if not acquired:
                logger.info(f"Note {note_id} is already being processed")
                return await self.store.get_note(note_id)

            note = await self.store.get_note(note_id)
            if note.state.is_failed:
                if not resume:
                    return note
                self.check_retry(note)
                note = await self.store.transition(
                    note.id, note.state, RESUME_STATE[note.state],
                    failure_reason=None, failure_recoverable=True,
                )
                if note is None:
                    return await self.store.get_note(note_id)
                logger.info(f"Retrying note {note_id} from {note.state.value}")

            if note.state.is_terminal:
                return note

            await self.store.record_attempt(note_id)
            return await self._run(note)

    async def _run(self, note: Note) -> Note:
        while not note.state.is_terminal:
            stage = note.state
            updated = await self._stages[stage](note)
            if updated is None:
                logger.warning(f"Note {note.id} left {stage.value} concurrently, stopping run")
                return await self.store.get_note(note.id)
            note = updated

        logger.info(f"Note {note.id} finished in state {note.state.value}")
        return note

    # ========================================================================
    # Stages
    # ========================================================================

    async def _start(self, note: Note) -> Optional[Note]:
        return await self.store.transition(note.id, NoteState.UPLOADED, NoteState.TRANSCRIBING)

    async def _transcribe(self, note: Note) -> Optional[Note]:
        if note.transcript:
            return await self._after_transcription(note, {})

        try:
            audio = await self.blob_store.read(note.blob_path)
        except UnrecoverableInputError as e:
            return await self._fail(note, NoteState.FAILED_TRANSCRIPTION, e, recoverable=False)

        try:
            transcript = await self.transcriber.transcribe(audio, filename=note.blob_path.rsplit("/", 1)[-1])
        except AdapterError as e:
            return await self._fail(note, NoteState.FAILED_TRANSCRIPTION, e, recoverable=True)

        return await self._after_transcription(note, {
            "transcript": transcript.text,
            "language": transcript.language,
            "language_confidence": transcript.confidence,
        })

    async def _after_transcription(self, note: Note, fields: dict) -> Optional[Note]:
        language = fields.get("language", note.language)
        next_state = NoteState.TRANSLATING if self.needs_translation(language) else NoteState.EXTRACTING
        return await self.store.transition(note.id, NoteState.TRANSCRIBING, next_state, **fields)

    async def _translate(self, note: Note) -> Optional[Note]:
        translated = note.translated_transcript
        if not translated:
            try:
                translated = await self.translator.translate(
                    note.transcript, note.language, self.target_language
                )
            except AdapterError as e:
                # extraction falls back to the original transcript
                logger.warning(f"Translation failed for note {note.id}, using original transcript: {e}")
                translated = None

        return await self.store.transition(
            note.id, NoteState.TRANSLATING, NoteState.EXTRACTING,
            translated_transcript=translated,
        )

    async def _extract(self, note: Note) -> Optional[Note]:
        if await self.store.get_report_for_note(note.id) is not None:
            # report committed by an earlier run
            return await self.store.transition(note.id, NoteState.EXTRACTING, NoteState.EMBEDDING)

        if note.translated_transcript:
            text, output_language = note.translated_transcript, self.target_language
        else:
            text, output_language = note.transcript, note.language

        try:
            extraction = await self.extractor.extract(text, output_language, self.extraction_mode)
        except AdapterError as e:
            return await self._fail(note, NoteState.FAILED_EXTRACTION, e, recoverable=True)

        try:
            await self.store.save_extraction(note, extraction, NoteState.EMBEDDING)
        except LookupError:
            return None
        return await self.store.get_note(note.id)

    async def _embed(self, note: Note) -> Optional[Note]:
        report = await self.store.get_report_for_note(note.id)
        if report is not None and report.embedding is None:
            await self.embedder.embed_report(report)
        return await self.store.transition(note.id, NoteState.EMBEDDING, NoteState.PROCESSED)

    async def _fail(self, note: Note, state: NoteState, error: Exception, recoverable: bool) -> Optional[Note]:
        logger.error(f"Note {note.id} failed in {note.state.value}: {error}", exc_info=error)
        return await self.store.transition(
            note.id, note.state, state,
            failure_reason=str(error),
            failure_recoverable=recoverable,
        )

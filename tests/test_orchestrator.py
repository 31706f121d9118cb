"""
Tests for NoteOrchestrator: stage order, failures, retries and idempotency.
"""

import asyncio
import json

import pytest

from careflow.core.errors import AdapterError, UnrecoverableInputError
from careflow.models.schemas import Consciousness, ExtractionMode, NoteState
from careflow.services.orchestrator import NoteOrchestrator

from tests.conftest import STABLE_EXTRACTION


async def _states(change_feed, note_id, run):
    """Run a coroutine and return the note states it published, in order."""
    async with change_feed.subscribe() as subscription:
        result = await run
        events = []
        while not subscription.queue.empty():
            event = subscription.queue.get_nowait()
            if event.table == "notes" and event.row_id == note_id:
                events.append(event.data["state"])
    return result, events


class TestHappyPath:
    """A note that goes through every stage."""

    async def test_stable_patient_scenario(self, orchestrator, make_note, store, llm):
        note = await make_note()

        result = await orchestrator.process(note.id)

        assert result.state == NoteState.PROCESSED
        assert result.transcript == "Patient stable, pain 3, recheck labs in 2 hours."
        assert result.language == "en"
        assert result.attempts == 1

        report = await store.get_report_for_note(note.id)
        assert report.pain_level == 3
        assert report.consciousness == Consciousness.ALERT
        assert report.pending_labs == ["recheck in 2 hours"]
        assert report.embedding is not None

        tasks = await store.list_tasks(note.id)
        assert [(t.title, t.category) for t in tasks] == [("Recheck labs", "Lab Work")]
        assert llm.calls_for("translate") == []

    async def test_states_follow_pipeline_order(self, orchestrator, make_note, change_feed):
        note = await make_note()

        _, states = await _states(change_feed, note.id, orchestrator.process(note.id))

        assert states == ["transcribing", "extracting", "embedding", "processed"]

    async def test_report_is_indexed_for_patient(self, orchestrator, make_note, vector_store):
        note = await make_note(patient_id="patient-9")
        await orchestrator.process(note.id)

        assert vector_store.count("patient-patient-9") == 1


class TestTranslation:
    """Dialect transcripts are translated before extraction."""

    async def test_dialect_is_translated(self, orchestrator, make_note, speech, llm, change_feed):
        speech.text = "lmrid mzyan, lwja3 3"
        speech.language = "ary"
        note = await make_note()

        result, states = await _states(change_feed, note.id, orchestrator.process(note.id))

        assert states == ["transcribing", "translating", "extracting", "embedding", "processed"]
        assert result.transcript == "lmrid mzyan, lwja3 3"
        assert result.translated_transcript == "Translated note."

        extract_messages = llm.calls_for("extract")[0]
        assert "Translated note." in extract_messages[1]["content"]
        assert "Write every text field in English." in extract_messages[0]["content"]

    async def test_macro_arabic_is_translated_when_configured(self, store, blob_store, transcriber,
                                                             translator, extractor, embedder,
                                                             make_note, speech, llm):
        speech.text = "lmrid mzyan"
        speech.language = "ar"
        orchestrator = NoteOrchestrator(
            store, blob_store, transcriber, translator, extractor, embedder,
            translation_languages=["ary", "ar"],
        )
        note = await make_note()

        result = await orchestrator.process(note.id)

        assert result.state == NoteState.PROCESSED
        assert result.translated_transcript == "Translated note."
        assert len(llm.calls_for("translate")) == 1

    async def test_translation_failure_falls_back_to_original(self, orchestrator, make_note, speech, llm):
        speech.text = "lmrid mzyan"
        speech.language = "ary"
        llm.replies["translate"] = AdapterError("model overloaded")
        note = await make_note()

        result = await orchestrator.process(note.id)

        assert result.state == NoteState.PROCESSED
        assert result.translated_transcript is None
        extract_messages = llm.calls_for("extract")[0]
        assert "lmrid mzyan" in extract_messages[1]["content"]
        assert "Moroccan Arabic" in extract_messages[0]["content"]


class TestFailures:
    """Stage failures and what they leave behind."""

    async def test_missing_audio_is_unrecoverable(self, orchestrator, make_note, speech):
        note = await make_note(store_audio=False)

        result = await orchestrator.process(note.id)

        assert result.state == NoteState.FAILED_TRANSCRIPTION
        assert result.failure_recoverable is False
        assert speech.calls == 0
        with pytest.raises(UnrecoverableInputError):
            await orchestrator.retry(note.id)

    async def test_malformed_extraction_fails_note(self, orchestrator, make_note, store, llm):
        llm.replies["extract"] = "I could not find any structure"
        note = await make_note()

        result = await orchestrator.process(note.id)

        assert result.state == NoteState.FAILED_EXTRACTION
        assert result.failure_recoverable is True
        assert result.transcript is not None
        assert await store.get_report_for_note(note.id) is None
        assert await store.list_tasks(note.id) == []

    async def test_extraction_without_report_fields_fails_note(self, orchestrator, make_note, store, llm):
        llm.replies["extract"] = json.dumps({"tasks": []})
        note = await make_note()

        result = await orchestrator.process(note.id)

        assert result.state == NoteState.FAILED_EXTRACTION
        assert await store.get_report_for_note(note.id) is None
        assert len(llm.calls_for("extract")) == 2

    async def test_embedding_failure_still_processes(self, orchestrator, make_note, store, embeddings, embedder, chat_service):
        embeddings.failures = [AdapterError("embedding service down")]
        note = await make_note()

        result = await orchestrator.process(note.id)

        assert result.state == NoteState.PROCESSED
        report = await store.get_report_for_note(note.id)
        assert report.embedding is None

        assert await embedder.embed_pending() == 1
        assert (await store.get_report_for_note(note.id)).embedding is not None

        answer = await chat_service.answer("patient-1", "Any labs pending?")
        assert [s.report_id for s in answer.sources] == [report.id]

    async def test_failed_note_is_not_rerun_without_retry(self, orchestrator, make_note, speech):
        speech.failures = [AdapterError("bad request")]
        note = await make_note()
        await orchestrator.process(note.id)

        result = await orchestrator.process(note.id)

        assert result.state == NoteState.FAILED_TRANSCRIPTION
        assert speech.calls == 1


class TestRetry:
    """Explicit retries."""

    async def test_transcription_timeout_then_manual_retry(self, orchestrator, make_note, speech, llm, store):
        speech.delays = [1.0, 1.0]
        note = await make_note()

        failed = await orchestrator.process(note.id)

        assert failed.state == NoteState.FAILED_TRANSCRIPTION
        assert failed.failure_recoverable is True
        assert "timed out" in failed.failure_reason
        assert speech.calls == 2

        result = await orchestrator.retry(note.id)

        assert result.state == NoteState.PROCESSED
        assert result.failure_reason is None
        assert result.attempts == 2
        assert llm.calls_for("translate") == []
        assert len(await store.list_tasks(note.id)) == 1

    async def test_retry_resumes_at_extraction(self, orchestrator, make_note, speech, llm, change_feed):
        llm.replies["extract"] = ["garbage", "garbage", json.dumps(STABLE_EXTRACTION)]
        note = await make_note()
        failed = await orchestrator.process(note.id)
        assert failed.state == NoteState.FAILED_EXTRACTION

        result, states = await _states(change_feed, note.id, orchestrator.retry(note.id))

        assert result.state == NoteState.PROCESSED
        assert states == ["extracting", "embedding", "processed"]
        assert speech.calls == 1

    async def test_retry_on_processed_note_is_noop(self, orchestrator, make_note, store, llm):
        note = await make_note()
        await orchestrator.process(note.id)
        calls_before = len(llm.calls)

        result = await orchestrator.retry(note.id)
        again = await orchestrator.retry(note.id)

        assert result.state == again.state == NoteState.PROCESSED
        assert len(llm.calls) == calls_before
        assert len(await store.list_tasks(note.id)) == 1
        assert len(await store.list_unembedded_reports()) == 0

    async def test_retry_of_stalled_note_resumes_current_stage(self, orchestrator, make_note, store, speech):
        note = await make_note()
        await store.transition(note.id, NoteState.UPLOADED, NoteState.TRANSCRIBING)
        await store.transition(
            note.id, NoteState.TRANSCRIBING, NoteState.EXTRACTING,
            transcript="Patient stable, pain 3", language="en",
        )

        result = await orchestrator.retry(note.id)

        assert result.state == NoteState.PROCESSED
        assert speech.calls == 0

class TestConcurrency:
    """Per-note serialisation."""

    async def test_concurrent_runs_do_not_duplicate_work(self, orchestrator, make_note, speech, store):
        speech.delays = [0.05]
        note = await make_note()

        results = await asyncio.gather(
            orchestrator.process(note.id),
            orchestrator.process(note.id),
            orchestrator.retry(note.id),
        )

        assert speech.calls == 1
        assert (await store.get_note(note.id)).state == NoteState.PROCESSED
        assert len(await store.list_tasks(note.id)) == 1
        assert any(r.state == NoteState.PROCESSED for r in results)


class TestTasksOnlyMode:
    """Simplified extraction that produces tasks without a report."""

    async def test_tasks_only(self, store, blob_store, transcriber, translator, extractor, embedder,
                              make_note, llm, embeddings):
        llm.replies["extract"] = json.dumps({"tasks": [
            {"title": "Check temperature", "priority": "low", "category": "Vitals"},
            {"title": "Change bandage", "priority": "weird"},
        ]})
        orchestrator = NoteOrchestrator(
            store, blob_store, transcriber, translator, extractor, embedder,
            extraction_mode=ExtractionMode.TASKS_ONLY,
        )
        note = await make_note()

        result = await orchestrator.process(note.id)

        assert result.state == NoteState.PROCESSED
        assert await store.get_report_for_note(note.id) is None
        tasks = await store.list_tasks(note.id)
        assert sorted((t.title, t.priority.value, t.category) for t in tasks) == [
            ("Change bandage", "medium", "Other"),
            ("Check temperature", "low", "Vitals"),
        ]
        assert embeddings.texts == []

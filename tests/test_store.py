"""
Tests for ClinicalStore: conditional transitions, atomic extraction writes
and change notifications.
"""

import json

import pytest
from sqlalchemy.exc import IntegrityError

from careflow.core.errors import NoteNotFoundError
from careflow.models.schemas import ExtractedTask, NoteState, TaskStatus
from careflow.services.adapters import parse_extraction

from tests.conftest import STABLE_EXTRACTION


def _drain(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


class TestNotes:
    """Tests for note rows."""

    async def test_create_note_starts_uploaded(self, make_note, store):
        note = await make_note()
        loaded = await store.get_note(note.id)

        assert loaded.state == NoteState.UPLOADED
        assert loaded.transcript is None
        assert loaded.attempts == 0

    async def test_missing_note(self, store):
        with pytest.raises(NoteNotFoundError):
            await store.get_note("does-not-exist")

    async def test_transition_writes_fields(self, make_note, store):
        note = await make_note()
        await store.transition(note.id, NoteState.UPLOADED, NoteState.TRANSCRIBING)
        updated = await store.transition(
            note.id, NoteState.TRANSCRIBING, NoteState.EXTRACTING,
            transcript="Pain 3", language="en",
        )

        assert updated.state == NoteState.EXTRACTING
        assert updated.transcript == "Pain 3"

    async def test_transition_from_wrong_state_is_refused(self, make_note, store):
        note = await make_note()

        result = await store.transition(note.id, NoteState.TRANSCRIBING, NoteState.EXTRACTING)

        assert result is None
        assert (await store.get_note(note.id)).state == NoteState.UPLOADED

    async def test_invalid_transition_raises(self, make_note, store):
        note = await make_note()
        with pytest.raises(ValueError):
            await store.transition(note.id, NoteState.UPLOADED, NoteState.EMBEDDING)

    async def test_record_attempt(self, make_note, store):
        note = await make_note()
        await store.record_attempt(note.id)
        await store.record_attempt(note.id)
        assert (await store.get_note(note.id)).attempts == 2


class TestSaveExtraction:
    """Tests for the single-transaction report and task write."""

    async def _extracting_note(self, make_note, store):
        note = await make_note()
        await store.transition(note.id, NoteState.UPLOADED, NoteState.TRANSCRIBING)
        return await store.transition(
            note.id, NoteState.TRANSCRIBING, NoteState.EXTRACTING,
            transcript="x" * 300, language="en",
        )

    async def test_writes_report_and_tasks(self, make_note, store):
        note = await self._extracting_note(make_note, store)
        extraction = parse_extraction(json.dumps(STABLE_EXTRACTION))

        report = await store.save_extraction(note, extraction, NoteState.EMBEDDING)

        assert report.pain_level == 3
        assert report.embedding is None
        assert len(report.transcript_excerpt) == 200
        tasks = await store.list_tasks(note.id)
        assert len(tasks) == 1
        assert tasks[0].status == TaskStatus.PENDING
        assert tasks[0].created_by == "nurse-7"
        assert (await store.get_note(note.id)).state == NoteState.EMBEDDING

    async def test_refuses_when_note_left_extracting(self, make_note, store):
        note = await self._extracting_note(make_note, store)
        await store.transition(note.id, NoteState.EXTRACTING, NoteState.FAILED_EXTRACTION)

        with pytest.raises(LookupError):
            await store.save_extraction(
                note, parse_extraction(json.dumps(STABLE_EXTRACTION)), NoteState.EMBEDDING
            )

        assert await store.get_report_for_note(note.id) is None
        assert await store.list_tasks(note.id) == []

    async def test_failed_task_insert_rolls_back_everything(self, make_note, store, change_feed):
        note = await self._extracting_note(make_note, store)
        extraction = parse_extraction(json.dumps(STABLE_EXTRACTION))
        extraction.tasks.append(ExtractedTask.model_construct(
            title=None, description="", priority=extraction.tasks[0].priority, category="Other",
        ))

        async with change_feed.subscribe() as subscription:
            with pytest.raises(IntegrityError):
                await store.save_extraction(note, extraction, NoteState.EMBEDDING)
            assert subscription.queue.empty()

        assert await store.get_report_for_note(note.id) is None
        assert await store.list_tasks(note.id) == []
        assert (await store.get_note(note.id)).state == NoteState.EXTRACTING

    async def test_unembedded_reports(self, make_note, store):
        note = await self._extracting_note(make_note, store)
        report = await store.save_extraction(
            note, parse_extraction(json.dumps(STABLE_EXTRACTION)), NoteState.EMBEDDING
        )

        assert [r.id for r in await store.list_unembedded_reports()] == [report.id]
        await store.set_report_embedding(report.id, [0.1] * 8)
        assert await store.list_unembedded_reports() == []
        assert (await store.get_report(report.id)).embedding == [0.1] * 8

    async def test_get_reports_is_patient_scoped(self, make_note, store):
        note = await self._extracting_note(make_note, store)
        report = await store.save_extraction(
            note, parse_extraction(json.dumps(STABLE_EXTRACTION)), NoteState.EMBEDDING
        )

        assert await store.get_reports("patient-2", [report.id]) == []
        assert [r.id for r in await store.get_reports("patient-1", [report.id])] == [report.id]


class TestNotifications:
    """Tests for change events."""

    async def test_state_changes_are_published(self, make_note, store, change_feed):
        async with change_feed.subscribe("patient-1") as subscription:
            note = await make_note()
            await store.transition(note.id, NoteState.UPLOADED, NoteState.TRANSCRIBING)
            events = _drain(subscription)

        assert [e.data["state"] for e in events] == ["uploaded", "transcribing"]
        assert all(e.table == "notes" and e.row_id == note.id for e in events)

    async def test_subscription_filters_by_patient(self, make_note, change_feed):
        async with change_feed.subscribe("patient-2") as subscription:
            await make_note(patient_id="patient-1")
            assert subscription.queue.empty()

    async def test_refused_transition_publishes_nothing(self, make_note, store, change_feed):
        note = await make_note()
        async with change_feed.subscribe() as subscription:
            await store.transition(note.id, NoteState.TRANSCRIBING, NoteState.EXTRACTING)
            assert subscription.queue.empty()

    async def test_unsubscribe_on_exit(self, change_feed):
        async with change_feed.subscribe():
            assert change_feed.subscriber_count == 1
        assert change_feed.subscriber_count == 0

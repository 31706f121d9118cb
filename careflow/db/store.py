"""
Structured store for notes, handoff reports and tasks.

Every note state change is a conditional update keyed on the expected current
state, and is announced on the change feed once committed.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from careflow.core.errors import NoteNotFoundError
from careflow.db.database import Note, HandoffReport, Task
from careflow.models.schemas import ExtractionResult, NoteState, ShiftType, is_valid_transition
from careflow.services.notifications import ChangeEvent, ChangeFeed

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 200


class ClinicalStore:
    """Repository over the notes, handoff_reports and tasks tables."""

    def __init__(self, session_factory: async_sessionmaker, change_feed: ChangeFeed = None):
        self.session_factory = session_factory
        self.change_feed = change_feed or ChangeFeed()

    # ========================================================================
    # Notes
    # ========================================================================

    async def create_note(
        self,
        note_id: str,
        patient_id: str,
        author_id: str,
        blob_path: str,
        duration_seconds: float = None,
        shift_type: ShiftType = ShiftType.DAY,
    ) -> Note:
        note = Note(
            id=note_id,
            patient_id=patient_id,
            author_id=author_id,
            blob_path=blob_path,
            duration_seconds=duration_seconds,
            shift_type=shift_type,
            state=NoteState.UPLOADED,
        )
        async with self.session_factory() as session:
            session.add(note)
            await session.commit()

        self._publish_state(note)
        return note

    async def get_note(self, note_id: str) -> Note:
        async with self.session_factory() as session:
            note = await session.get(Note, note_id)
        if note is None:
            raise NoteNotFoundError(f"Note {note_id} not found")
        return note

    async def list_notes(self, state: NoteState = None) -> List[Note]:
        query = select(Note).order_by(Note.created_at)
        if state is not None:
            query = query.where(Note.state == state)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def record_attempt(self, note_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Note).where(Note.id == note_id).values(attempts=Note.attempts + 1)
            )
            await session.commit()

    async def transition(
        self,
        note_id: str,
        expected: NoteState,
        new_state: NoteState,
        **fields: Any,
    ) -> Optional[Note]:
        """
        Move a note from `expected` to `new_state`, writing `fields` alongside.

        Returns the updated note, or None when the note was no longer in the
        expected state.
        """
        if not is_valid_transition(expected, new_state):
            raise ValueError(f"Invalid note transition {expected.value} -> {new_state.value}")

        async with self.session_factory() as session:
            applied = await self._compare_and_set(session, note_id, expected, new_state, fields)
            if not applied:
                await session.rollback()
                return None
            await session.commit()
            note = await session.get(Note, note_id, populate_existing=True)

        self._publish_state(note)
        return note

    async def _compare_and_set(self, session, note_id, expected, new_state, fields) -> bool:
        result = await session.execute(
            update(Note)
            .where(Note.id == note_id, Note.state == expected)
            .values(state=new_state, **fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ========================================================================
    # Reports and tasks
    # ========================================================================

    async def save_extraction(
        self,
        note: Note,
        extraction: ExtractionResult,
        next_state: NoteState,
    ) -> Optional[HandoffReport]:
        """
        Persist the report and all tasks for a note together with its move
        out of the extracting state, in a single transaction.

        Returns the report (None in tasks-only mode). Raises LookupError when
        the note has left the extracting state.
        """
        transcript = note.translated_transcript or note.transcript or ""
        excerpt = transcript[:EXCERPT_LENGTH]

        async with self.session_factory() as session:
            async with session.begin():
                applied = await self._compare_and_set(
                    session, note.id, NoteState.EXTRACTING, next_state, {}
                )
                if not applied:
                    raise LookupError(f"Note {note.id} is no longer extracting")

                report = None
                if extraction.report is not None:
                    fields = extraction.report
                    report = HandoffReport(
                        patient_id=note.patient_id,
                        note_id=note.id,
                        author_id=note.author_id,
                        shift_type=note.shift_type,
                        summary=fields.summary,
                        pain_level=fields.pain_level,
                        consciousness=fields.consciousness,
                        risk_factors=list(fields.risk_factors),
                        access_lines=list(fields.access_lines),
                        pending_labs=list(fields.pending_labs),
                        action_items=list(fields.action_items),
                        transcript_excerpt=excerpt,
                    )
                    session.add(report)

                for item in extraction.tasks:
                    session.add(Task(
                        title=item.title,
                        description=item.description,
                        priority=item.priority,
                        category=item.category,
                        note_id=note.id,
                        patient_id=note.patient_id,
                        created_by=note.author_id,
                        transcript_excerpt=excerpt,
                    ))

            updated = await session.get(Note, note.id, populate_existing=True)

        logger.info(
            f"Saved extraction for note {note.id}: "
            f"report={'yes' if report else 'no'}, tasks={len(extraction.tasks)}"
        )
        if report is not None:
            self.change_feed.publish(ChangeEvent(
                table="handoff_reports",
                event="inserted",
                row_id=report.id,
                patient_id=report.patient_id,
                data={"note_id": note.id, "shift_type": report.shift_type.value},
            ))
        self._publish_state(updated)
        return report

    async def get_report_for_note(self, note_id: str) -> Optional[HandoffReport]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(HandoffReport).where(HandoffReport.note_id == note_id)
            )
            return result.scalar_one_or_none()

    async def get_report(self, report_id: str) -> Optional[HandoffReport]:
        async with self.session_factory() as session:
            return await session.get(HandoffReport, report_id)

    async def get_reports(self, patient_id: str, report_ids: Sequence[str]) -> List[HandoffReport]:
        """Load reports by id, restricted to one patient."""
        if not report_ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(HandoffReport).where(
                    HandoffReport.patient_id == patient_id,
                    HandoffReport.id.in_(list(report_ids)),
                )
            )
            return list(result.scalars().all())

    async def list_unembedded_reports(self, report_id: str = None, limit: int = None) -> List[HandoffReport]:
        query = select(HandoffReport).where(HandoffReport.embedding.is_(None))
        if report_id is not None:
            query = query.where(HandoffReport.id == report_id)
        query = query.order_by(HandoffReport.created_at)
        if limit:
            query = query.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def set_report_embedding(self, report_id: str, vector: List[float]) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(HandoffReport)
                .where(HandoffReport.id == report_id)
                .values(embedding=list(vector))
            )
            await session.commit()

    async def list_tasks(self, note_id: str) -> List[Task]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Task).where(Task.note_id == note_id).order_by(Task.created_at)
            )
            return list(result.scalars().all())

    # ========================================================================
    # Notifications
    # ========================================================================

    def _publish_state(self, note: Note) -> None:
        data: Dict[str, Any] = {"state": note.state.value}
        if note.state.is_failed:
            data["failure_reason"] = note.failure_reason
            data["failure_recoverable"] = note.failure_recoverable
        self.change_feed.publish(ChangeEvent(
            table="notes",
            event="state_changed",
            row_id=note.id,
            patient_id=note.patient_id,
            data=data,
        ))

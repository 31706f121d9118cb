"""
Retrieval-augmented Q&A over a patient's handoff reports.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from careflow.core.config import ChatConfig
from careflow.core.errors import AdapterError, ChatUnavailableError, ScopeViolation
from careflow.db.database import HandoffReport
from careflow.db.store import ClinicalStore
from careflow.models.schemas import EmbeddingMode
from careflow.services.adapters import AnswerAdapter, EmbeddingAdapter
from careflow.vectorstores.base import PatientScopedIndex

logger = logging.getLogger(__name__)

NOT_FOUND_ANSWER = (
    "I don't see that information in the available charts. "
    "No matching handoff reports were found for this patient."
)

CONTEXT_SEPARATOR = "\n\n---\n\n"


@dataclass
class ReportSource:
    """A report that was placed in the answer context."""
    report_id: str
    shift_type: str
    created_at: Optional[datetime]
    similarity: float


@dataclass
class ChatAnswer:
    """Answer text with the reports it was grounded on."""
    answer: str
    sources: List[ReportSource] = field(default_factory=list)


def _format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "unknown date"
    return f"{value:%b} {value.day}, {value.year}"


def format_report_block(position: int, report: HandoffReport) -> str:
    """One labelled context block for a report."""
    pain = f"{report.pain_level}/10" if report.pain_level is not None else "N/A"
    consciousness = report.consciousness.value if report.consciousness else "N/A"
    shift = report.shift_type.value if report.shift_type else "unknown"
    return "\n".join([
        f"[Report {position}] Shift: {shift} | Date: {_format_date(report.created_at)}",
        f"Summary: {report.summary or 'N/A'}",
        f"Pain level: {pain} | Consciousness: {consciousness}",
        f"Risk factors: {'; '.join(report.risk_factors or []) or 'None noted'}",
        f"To-do items: {'; '.join(report.action_items or []) or 'None noted'}",
    ])


def build_context(ranked: Sequence[Tuple[HandoffReport, float]]) -> str:
    """Context blocks in ranked order."""
    return CONTEXT_SEPARATOR.join(
        format_report_block(i, report) for i, (report, _) in enumerate(ranked, start=1)
    )


class PatientChatService:
    """Answers questions about one patient from that patient's reports only."""

    def __init__(
        self,
        store: ClinicalStore,
        embedder: EmbeddingAdapter,
        index: PatientScopedIndex,
        answerer: AnswerAdapter,
        config: ChatConfig = None,
    ):
        self.store = store
        self.embedder = embedder
        self.index = index
        self.answerer = answerer
        self.config = config or ChatConfig()

    async def answer(self, patient_id: str, question: str) -> ChatAnswer:
        question = (question or "").strip()
        if not question:
            raise ValueError("Question must not be empty")

        try:
            query_vector = await self.embedder.embed(question, EmbeddingMode.QUERY)
        except AdapterError as e:
            logger.error(f"Question embedding failed for patient {patient_id}: {e}")
            raise ChatUnavailableError() from e

        try:
            matches = await self.index.search(
                patient_id,
                query_vector,
                top_k=self.config.top_k,
                min_score=self.config.similarity_threshold,
            )
        except ScopeViolation:
            raise
        except Exception as e:
            logger.error(f"Report search failed for patient {patient_id}: {e}", exc_info=True)
            raise ChatUnavailableError() from e

        try:
            ranked = await self._load_ranked(patient_id, matches)
        except ScopeViolation:
            raise
        except Exception as e:
            logger.error(f"Report lookup failed for patient {patient_id}: {e}", exc_info=True)
            raise ChatUnavailableError() from e
        if not ranked:
            logger.info(f"No reports above {self.config.similarity_threshold} for patient {patient_id}")
            return ChatAnswer(answer=NOT_FOUND_ANSWER, sources=[])

        try:
            answer = await self.answerer.answer(build_context(ranked), question)
        except AdapterError as e:
            logger.error(f"Answer generation failed for patient {patient_id}: {e}")
            raise ChatUnavailableError() from e

        return ChatAnswer(
            answer=answer,
            sources=[
                ReportSource(
                    report_id=report.id,
                    shift_type=report.shift_type.value if report.shift_type else "unknown",
                    created_at=report.created_at,
                    similarity=round(score, 4),
                )
                for report, score in ranked
            ],
        )

    async def _load_ranked(self, patient_id, matches) -> List[Tuple[HandoffReport, float]]:
        reports = await self.store.get_reports(patient_id, [m.id for m in matches])
        by_id = {report.id: report for report in reports}

        ranked = []
        for match in matches:
            report = by_id.get(match.id)
            if report is None:
                logger.warning(f"Indexed report {match.id} not found for patient {patient_id}")
                continue
            if report.patient_id != patient_id:
                raise ScopeViolation(f"Report {report.id} is outside patient {patient_id}")
            ranked.append((report, match.score))
        return ranked

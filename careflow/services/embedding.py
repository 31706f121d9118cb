"""
Report embedding: canonical report text, per-report indexing and the sweep
that fills in reports still missing a vector.
"""

import asyncio
import logging
from typing import Optional

from careflow.db.database import HandoffReport
from careflow.db.store import ClinicalStore
from careflow.models.schemas import EmbeddingMode
from careflow.services.adapters import EmbeddingAdapter
from careflow.vectorstores.base import PatientScopedIndex

logger = logging.getLogger(__name__)

EMPTY_REPORT_TEXT = "(empty report)"


def build_report_text(report: HandoffReport) -> str:
    """Canonical text of a report, in fixed field order, for embedding."""
    parts = []
    if report.summary:
        parts.append(f"Summary: {report.summary}")
    if report.consciousness:
        parts.append(f"Consciousness: {report.consciousness.value}")
    if report.pain_level is not None:
        parts.append(f"Pain level: {report.pain_level}")
    if report.risk_factors:
        parts.append(f"Risk factors: {', '.join(report.risk_factors)}")
    if report.access_lines:
        parts.append(f"Access lines: {', '.join(report.access_lines)}")
    if report.pending_labs:
        parts.append(f"Pending labs: {', '.join(report.pending_labs)}")
    if report.action_items:
        parts.append(f"To do: {', '.join(report.action_items)}")
    return "\n".join(parts) or EMPTY_REPORT_TEXT


class ReportEmbedder:
    """Embeds handoff reports and keeps the retrieval index in step."""

    def __init__(self, store: ClinicalStore, adapter: EmbeddingAdapter, index: PatientScopedIndex):
        self.store = store
        self.adapter = adapter
        self.index = index

    async def embed_report(self, report: HandoffReport) -> bool:
        """
        Embed one report and store its vector.

        Failures are logged and leave the report's embedding empty for a
        later sweep; they never propagate.
        """
        try:
            vector = await self.adapter.embed(build_report_text(report), EmbeddingMode.DOCUMENT)
            await self.index.index_report(
                report.id,
                report.patient_id,
                vector,
                metadata={
                    "shift_type": report.shift_type.value,
                    "created_at": report.created_at.isoformat() if report.created_at else None,
                    "note_id": report.note_id,
                },
            )
            await self.store.set_report_embedding(report.id, vector)
        except Exception as e:
            logger.warning(f"Embedding failed for report {report.id}: {e}", exc_info=True)
            return False

        logger.info(f"Embedded report {report.id} for patient {report.patient_id}")
        return True

    async def embed_pending(self, report_id: Optional[str] = None, limit: int = None) -> int:
        """Embed the given report, or every report without a vector. Returns the count embedded."""
        reports = await self.store.list_unembedded_reports(report_id=report_id, limit=limit)
        embedded = 0
        for report in reports:
            if await self.embed_report(report):
                embedded += 1

        if reports:
            logger.info(f"Embedding sweep: {embedded}/{len(reports)} reports embedded")
        return embedded

    async def run_periodic(self, interval_seconds: float) -> None:
        """Sweep forever at a fixed interval until cancelled."""
        logger.info(f"Embedding sweep every {interval_seconds}s")
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.embed_pending()
            except Exception:
                logger.exception("Embedding sweep failed")

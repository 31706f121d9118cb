"""
Row-change notifications.

Subscribers receive note state changes and newly inserted reports after the
underlying transaction has committed.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ChangeEvent:
    """A committed row change."""
    table: str
    event: str
    row_id: str
    patient_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Subscription:
    """Queue-backed stream of change events, optionally filtered by patient."""

    def __init__(self, patient_id: Optional[str] = None, max_pending: int = 100):
        self.patient_id = patient_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)

    def matches(self, event: ChangeEvent) -> bool:
        return self.patient_id is None or self.patient_id == event.patient_id

    async def get(self, timeout: float = None) -> ChangeEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class ChangeFeed:
    """In-process fan-out of row changes to subscribers."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropping {event.table}.{event.event} for {event.row_id}: subscriber queue full"
                )

    @asynccontextmanager
    async def subscribe(self, patient_id: Optional[str] = None) -> AsyncIterator[Subscription]:
        subscription = Subscription(patient_id)
        self._subscriptions.append(subscription)
        try:
            yield subscription
        finally:
            self._subscriptions.remove(subscription)

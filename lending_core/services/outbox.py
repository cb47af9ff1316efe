"""Transactional outbox publisher"""

import uuid
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from lending_core.infrastructure.database.models import OutboxEvent
from lending_core.infrastructure.observability.metrics import outbox_published_counter
from lending_core.utils.date_utils import utcnow


def new_correlation_id() -> str:
    return str(uuid.uuid4())


class OutboxPublisher:
    """
    Appends domain events to the outbox table inside the caller's transaction.

    A published row becomes visible if and only if the surrounding
    transaction commits. Delivery is left to an external drainer that reads
    unprocessed rows and only ever updates `processed` and `attempts`.
    """

    def __init__(self, db: Session):
        self.db = db

    def publish(
        self,
        name: str,
        aggregate_type: str,
        aggregate_id: uuid.UUID,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
    ) -> OutboxEvent:
        """
        Stage one event row with processed=False and attempts=0.

        Headers are enriched with `published_at` and a `correlation_id`
        (generated when the caller did not supply one). Flushes so the row
        takes part in the transaction; never commits.
        """
        enriched = dict(headers or {})
        enriched["published_at"] = utcnow().isoformat()
        if not enriched.get("correlation_id"):
            enriched["correlation_id"] = new_correlation_id()

        event = OutboxEvent(
            name=name,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=payload,
            headers=enriched,
            processed=False,
            attempts=0,
        )
        self.db.add(event)
        self.db.flush()

        outbox_published_counter.labels(name=name).inc()
        return event

"""At-most-once reservations keyed by (key, scope)"""

import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lending_core.domain.exceptions import IdempotencyConflict, ValidationError
from lending_core.domain.models import Reservation
from lending_core.infrastructure.database.models import IdempotencyKey
from lending_core.infrastructure.observability.metrics import idempotency_counter


class IdempotencyGuard:
    """
    Storage-backed reservation of idempotency keys.

    Insert-or-detect-existing relies on the (key, scope) unique constraint:
    the insert runs inside a SAVEPOINT, and a constraint violation rolls back
    only that savepoint before the existing row is read back. There is no
    application-level check-then-act, so concurrent reservations of the same
    pair resolve correctly across processes.
    """

    def __init__(self, db: Session):
        self.db = db

    def reserve(self, key: str, scope: str, resource_type: str, resource_id: uuid.UUID) -> Reservation:
        """
        Bind (key, scope) to a resource.

        Returns:
            Reservation(created=True) for a fresh reservation,
            Reservation(created=False) when the pair is already bound to the
            same resource (a replay; callers must skip side effects).

        Raises:
            IdempotencyConflict: the pair is bound to a different resource
            ValidationError: key or scope is blank
        """
        if not key:
            raise ValidationError("key", "can't be blank")
        if not scope:
            raise ValidationError("scope", "can't be blank")

        try:
            with self.db.begin_nested():
                self.db.add(
                    IdempotencyKey(
                        key=key,
                        scope=scope,
                        resource_type=resource_type,
                        resource_id=resource_id,
                    )
                )
            idempotency_counter.labels(scope=scope, result="created").inc()
            return Reservation(created=True, resource_type=resource_type, resource_id=resource_id)
        except IntegrityError:
            existing = (
                self.db.query(IdempotencyKey)
                .filter(IdempotencyKey.key == key, IdempotencyKey.scope == scope)
                .one()
            )

        if existing.resource_type != resource_type or existing.resource_id != resource_id:
            idempotency_counter.labels(scope=scope, result="conflict").inc()
            logging.warning(
                "Idempotency key reused for a different resource",
                extra={"scope": scope, "resource_id": str(resource_id), "bound_to": str(existing.resource_id)},
            )
            raise IdempotencyConflict(key, scope)

        idempotency_counter.labels(scope=scope, result="replayed").inc()
        return Reservation(created=False, resource_type=existing.resource_type, resource_id=existing.resource_id)

"""Credit score recomputation with optional persistence and outbox announcement"""

import uuid
from datetime import date
from typing import Callable, Dict

from sqlalchemy.orm import Session

from lending_core.domain.exceptions import NotFound
from lending_core.domain.models import ScoreComponent, ScoreReason, ScoreResult, UserHistory
from lending_core.domain.scoring import compute_score, score_breakdown
from lending_core.infrastructure.database.models import CreditScoreEvent, User
from lending_core.infrastructure.database.repositories import ScoreHistoryRepository, UserRepository
from lending_core.infrastructure.database.session import unit_of_work
from lending_core.infrastructure.observability.logging import log_score_change
from lending_core.infrastructure.observability.metrics import credit_score_histogram
from lending_core.services.outbox import OutboxPublisher
from lending_core.utils.date_utils import business_today

USER_AGGREGATE = "User"


class CreditScoringEngine:
    """
    Recomputes a borrower's score from stored history.

    Reads are unlocked: scores are decision support, not balances. When two
    recomputations race, the last writer wins and at most one extra audit
    event is recorded.
    """

    def __init__(self, db: Session, clock: Callable[[], date] = business_today):
        self.db = db
        self.clock = clock
        self.users = UserRepository(db)
        self.history = ScoreHistoryRepository(db)
        self.outbox = OutboxPublisher(db)

    def snapshot(self, user_id: uuid.UUID) -> UserHistory:
        user = self._get_user(user_id)
        return self.history.build(user, self.clock())

    def compute(self, user_id: uuid.UUID, persist: bool = False, emit_event: bool = False) -> ScoreResult:
        """
        Score a user and optionally record the outcome.

        - persist: store the new score; append a CreditScoreEvent only when
          it differs from the stored one
        - emit_event: publish user.score_changed only when it differs

        Both use the same old/new comparison, so the audit event and the
        outbox event are written together or not at all.
        """
        user = self._get_user(user_id)
        history = self.history.build(user, self.clock())

        result = ScoreResult(
            user_id=user.id,
            old_score=user.current_score,
            new_score=compute_score(history),
            breakdown=score_breakdown(history),
        )
        credit_score_histogram.observe(result.new_score)

        if not (persist or emit_event):
            return result

        with unit_of_work(self.db):
            if persist:
                user.current_score = result.new_score
                if result.changed:
                    self.db.add(
                        CreditScoreEvent(
                            user_id=user.id,
                            reason=ScoreReason.RECOMPUTE,
                            delta=result.delta,
                            meta={"scoring_components": contributions(result.breakdown)},
                        )
                    )

            if emit_event and result.changed:
                self.outbox.publish(
                    name="user.score_changed",
                    aggregate_type=USER_AGGREGATE,
                    aggregate_id=user.id,
                    payload={
                        "user_id": str(user.id),
                        "old_score": result.old_score,
                        "new_score": result.new_score,
                    },
                )

        if result.changed:
            log_score_change(str(user_id), result.old_score, result.new_score, persisted=persist)
        return result

    def _get_user(self, user_id: uuid.UUID) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user


def contributions(breakdown: Dict[str, ScoreComponent]) -> Dict[str, float]:
    """Weighted contribution of each component, as JSON-friendly floats"""
    return {name: float(component.contribution) for name, component in breakdown.items()}

"""Disbursement gateway contract and a stub implementation"""

import itertools
from typing import List, Protocol, Tuple

from lending_core.infrastructure.database.models import User


class DisbursementGateway(Protocol):
    """External collaborator that moves funds to a borrower"""

    def disburse(self, amount_cents: int, recipient: User) -> str:
        """
        Send funds and return the gateway's transaction reference.

        The gateway is not assumed to be idempotent; at-most-once delivery is
        enforced by the caller's idempotency reservation.
        """
        ...


class StubDisbursementGateway:
    """In-process gateway that returns deterministic references and records calls"""

    def __init__(self, prefix: str = "stub"):
        self.prefix = prefix
        self.calls: List[Tuple[int, str]] = []
        self._counter = itertools.count(1)

    def disburse(self, amount_cents: int, recipient: User) -> str:
        self.calls.append((amount_cents, str(recipient.id)))
        return f"{self.prefix}-{recipient.id}-{next(self._counter)}"

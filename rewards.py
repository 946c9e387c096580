"""
Validator-local reward tally. Self-reported; the hub does not verify it.
"""

import threading
from typing import Optional

from protocol import COST_PER_VALIDATION


class RewardCounter:
    def __init__(self, credit_per_validation: int = COST_PER_VALIDATION):
        self.credit_per_validation = credit_per_validation
        self._lock = threading.Lock()
        self._pending = 0
        self._validations = 0

    @property
    def pending_payouts(self) -> int:
        return self._pending

    @property
    def validations(self) -> int:
        return self._validations

    def seed(self, pending_payouts: Optional[int]):
        """
        Take over the hub's figure from the signup ack; never move backwards.
        """
        if pending_payouts is None:
            return
        with self._lock:
            self._pending = max(self._pending, int(pending_payouts))

    def credit(self) -> int:
        with self._lock:
            self._validations += 1
            self._pending += self.credit_per_validation
            return self._pending

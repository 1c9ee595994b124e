import asyncio
from collections import defaultdict


class LearnerLocks:
    """One asyncio lock per learner; serializes that learner's progress mutations."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def for_learner(self, learner_id: str) -> asyncio.Lock:
        return self._locks[learner_id]

"""Seedable source for request ids and endpoint cohort ids."""
import random
import uuid
from typing import Optional

COHORT_MIN = 0
COHORT_MAX = 99


class RandomSource:
    """Wraps a private random.Random so ids are reproducible under a fixed seed."""

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._random = random.Random(seed)

    def request_id(self) -> str:
        """Version 4 UUID string drawn from this source."""
        return str(uuid.UUID(int=self._random.getrandbits(128), version=4))

    def cohort_id(self) -> int:
        """Uniform cohort bucket in [COHORT_MIN, COHORT_MAX]."""
        return self._random.randint(COHORT_MIN, COHORT_MAX)

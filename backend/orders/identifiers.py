"""
Identifier Generator
====================
Redemption codes are six-digit numbers checked against the store for
collisions. Tracking ids are prefixed, timestamped and randomised; they are
never presented at the counter, so they are not collision-checked.
"""

import secrets
import string
import time
from typing import Optional

import structlog

from orders.errors import ExhaustedIdentifierSpace
from storage.order_store import IOrderStore

logger = structlog.get_logger().bind(component="identifier_generator")

CODE_MIN = 100000
CODE_MAX = 999999
DEFAULT_MAX_ATTEMPTS = 50
TRACKING_PREFIX = "cf_"
TRACKING_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
TRACKING_SUFFIX_LENGTH = 6


class IdentifierGenerator:

    def __init__(
        self,
        store: IOrderStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        tracking_prefix: str = TRACKING_PREFIX,
        rng: Optional[secrets.SystemRandom] = None,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.tracking_prefix = tracking_prefix
        self._rng = rng or secrets.SystemRandom()

    def _candidate_code(self) -> str:
        return str(self._rng.randint(CODE_MIN, CODE_MAX))

    async def next_redemption_code(self) -> str:
        """
        Draw codes until one is unused as an order key or reservation.

        Raises:
            ExhaustedIdentifierSpace: after max_attempts collisions in a row
        """
        for attempt in range(1, self.max_attempts + 1):
            candidate = self._candidate_code()
            if not await self.store.exists(candidate):
                if attempt > 1:
                    logger.info("redemption_code_collisions", attempts=attempt)
                return candidate

        logger.critical("identifier_space_exhausted", attempts=self.max_attempts)
        raise ExhaustedIdentifierSpace(self.max_attempts)

    def next_tracking_id(self) -> str:
        millis = int(time.time() * 1000)
        suffix = "".join(
            self._rng.choice(TRACKING_SUFFIX_ALPHABET) for _ in range(TRACKING_SUFFIX_LENGTH)
        )
        return f"{self.tracking_prefix}{millis}{suffix}"

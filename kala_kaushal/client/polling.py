"""
Polling façade: refetch an assessment while it is processing.

The server holds no per-client state, so this is the only way the client
learns about a result it did not receive in the upload response.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional
from uuid import UUID

from ..core.assessment.models import AssessmentStatus
from .api import AssessmentApiClient, AssessmentView

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[AssessmentView], None]


class PollingTimeout(Exception):
    """Raised when an assessment is still processing at the deadline."""

    def __init__(self, assessment_id: UUID, last_seen: AssessmentView) -> None:
        super().__init__(f"Assessment {assessment_id} still {last_seen.status.value}")
        self.assessment_id = assessment_id
        self.last_seen = last_seen


class AssessmentPoller:
    """
    Fetches an assessment every ``interval_seconds`` for as long as the last
    observed status is ``processing``, and stops at the first terminal one.

    A status that appears to move backwards (a stale replica, for example)
    is logged and ignored.
    """

    def __init__(
        self,
        api: AssessmentApiClient,
        interval_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._api = api
        self._interval = interval_seconds
        self._sleep = sleep
        self._clock = clock

    async def wait_for_result(
        self,
        assessment_id: UUID,
        on_update: Optional[UpdateCallback] = None,
        timeout_seconds: Optional[float] = None,
    ) -> AssessmentView:
        deadline = self._clock() + timeout_seconds if timeout_seconds is not None else None

        current = await self._api.get_assessment(assessment_id)
        if on_update:
            on_update(current)

        while current.status == AssessmentStatus.PROCESSING:
            if deadline is not None and self._clock() >= deadline:
                raise PollingTimeout(assessment_id, current)

            await self._sleep(self._interval)
            fetched = await self._api.get_assessment(assessment_id)

            if fetched.status.rank < current.status.rank:
                logger.warning(
                    "Ignoring backward status change",
                    extra={
                        "assessment_id": str(assessment_id),
                        "from": current.status.value,
                        "to": fetched.status.value,
                    },
                )
                continue

            current = fetched
            if on_update:
                on_update(current)

        logger.debug(
            "Polling finished",
            extra={"assessment_id": str(assessment_id), "status": current.status.value},
        )
        return current

"""LogProgressAdapter — logs pipeline stages with the time spent in the previous stage."""

import logging
import threading
import time
from typing import Callable, Optional

from ports.progress import ProgressPort

logger = logging.getLogger(__name__)

FINAL_STAGE = "done"


class LogProgressAdapter(ProgressPort):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        # session_id -> (stage, entered_at)
        self._current: dict[str, tuple[str, float]] = {}

    def report(
        self,
        session_id: str,
        stage: str,
        progress: float = 0.0,
        detail: Optional[str] = None,
    ) -> None:
        now = self._clock()
        with self._lock:
            previous = self._current.pop(session_id, None)
            if stage != FINAL_STAGE:
                self._current[session_id] = (stage, now)

        msg = f"[{session_id}] {stage}"
        if progress > 0:
            msg += f" {progress:.0%}"
        if detail:
            msg += f": {detail}"
        if previous is not None:
            msg += f" ({previous[0]} took {now - previous[1]:.1f}s)"
        logger.info(msg)


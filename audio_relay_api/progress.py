import logging
from typing import Optional

logger = logging.getLogger(__name__)

class ProgressTracker:
    """Counts relayed bytes on a session and logs coarse milestones.

    Instrumentation only: observe() never raises and never changes the flow
    of the relay.
    """
    def __init__(self, step_percent: int = 10):
        self.step_percent = max(1, int(step_percent))

    @staticmethod
    def percent(delivered: int, total: Optional[int]) -> Optional[float]:
        if not total or total <= 0:
            return None  # indeterminate
        return min(100.0, delivered * 100.0 / total)

    def observe(self, session, chunk_length: int) -> Optional[float]:
        try:
            before = session.bytes_delivered
            session.bytes_delivered = before + max(0, int(chunk_length))
            pct = self.percent(session.bytes_delivered, session.total_length)
            if pct is None:
                return None
            prev = self.percent(before, session.total_length) or 0.0
            if int(pct // self.step_percent) > int(prev // self.step_percent):
                logger.debug(
                    "%s: %.0f%% (%d/%d bytes)",
                    session.label, pct, session.bytes_delivered, session.total_length,
                )
            return pct
        except Exception:
            logger.debug("progress observation failed", exc_info=True)
            return None

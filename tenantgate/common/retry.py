from logging import Logger
from typing import Optional


def retry_time(
    exponential: bool, base: float, ntries: int, logger: Optional[Logger], ceiling: Optional[float] = None
) -> float:
    """Return the delay before the next delivery attempt.

    With ``exponential`` set, the delay grows as ``base**ntries``; bases that
    do not grow fall back to a constant interval. ``ceiling`` bounds the delay
    so that a long-unavailable sink does not stall its worker for hours.
    """
    delay = abs(base)
    if exponential:
        if base > 1:
            delay = base**ntries
        elif logger:
            logger.warning("Base %f incompatible with exponential backoff", base)

    if ceiling is not None and ceiling >= 0:
        return min(delay, ceiling)
    return delay

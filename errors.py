# Imports:
import functools
import logging

logger = logging.getLogger(__name__)


class LogisticsError(Exception):
    """Base class for every hauling-order failure."""


class ConsistencyViolation(LogisticsError):
    """
    An internal invariant was broken (incoherent posting, duplicate id).

    Fatal to the operation that detected it, never to the simulation.
    """


class Infeasible(LogisticsError):
    """No destination or capacity is available right now. Retry later."""


class Contention(LogisticsError):
    """A claim needed by a delivery was lost to another worker."""


class LastResortFailure(LogisticsError):
    """A carried stack had nowhere to go and had to be destroyed."""


class QuantityOutOfRange(LogisticsError, ValueError):
    """A requested quantity override lies outside [0, selected quantity]."""


def guarded(default=None):
    """
    Wrap a public operation so a ConsistencyViolation degrades to a logged no-op.

    Args:
        default: Value returned when the wrapped call aborts.

    Returns: The decorator.
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except ConsistencyViolation as e:
                logger.error("%s aborted: %s", fn.__qualname__, e)
                return default
        return wrapper
    return decorator

import logging
import time
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class AuditorError(Exception):
    """Base class for every error raised by the auditor."""


class ConfigurationError(AuditorError):
    pass


class TransientRemoteError(AuditorError):
    """A remote call failed in a way that may succeed on retry."""


class MalformedResponseError(TransientRemoteError):
    """The remote service answered, but not with the expected JSON shape."""


class NotFoundError(AuditorError):
    pass


class ValidationError(AuditorError):
    pass


class PermissionDeniedError(AuditorError):
    pass


class FatalPipelineError(AuditorError):
    """Unexpected failure while scoring or rendering; ends the run."""


class PipelineCancelled(AuditorError):
    pass


class CancellationToken:
    """Cooperative cancellation flag checked at every remote call boundary."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise PipelineCancelled(self.reason or "cancelled")


def retry_call(
    fn: Callable[[], Any],
    *,
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (TransientRemoteError,),
    label: str = "remote call",
    token: Optional[CancellationToken] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call `fn` up to `attempts` times with linear backoff (delay * attempt).
    Only exceptions in `retry_on` are retried; the last one is re-raised.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")
    attempt = 1
    while True:
        if token is not None:
            token.raise_if_cancelled()
        try:
            return fn()
        except retry_on as exc:
            logger.warning("%s failed (attempt %d/%d): %s", label, attempt, attempts, exc)
            if attempt >= attempts:
                raise
        if delay > 0:
            sleep(delay * attempt)
        attempt += 1

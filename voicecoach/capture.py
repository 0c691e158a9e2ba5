"""Sample sources and capture acquisition.

A :class:`SampleSource` hands out fixed-size windows of mono samples.
:func:`acquire_with_retry` opens a source with a bounded number of
attempts and a linear back-off between them.  The live microphone
source lives in :mod:`voicecoach.microphone`; :class:`ArraySource`
serves a recorded signal, which is handy for offline analysis and
tests.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol, runtime_checkable

import numpy as np

from .constants import ACQUIRE_ATTEMPTS, ACQUIRE_RETRY_DELAY, SAMPLE_RATE, WINDOW_SIZE
from .models import SampleWindow

logger = logging.getLogger(__name__)


class CaptureAcquisitionError(RuntimeError):
    """Raised when a capture source could not be opened.

    ``attempts`` is the number of attempts made; the last underlying
    error is chained as ``__cause__``.
    """

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


@runtime_checkable
class SampleSource(Protocol):
    """Common interface for anything that supplies analysis windows."""

    sample_rate: int

    def open(self) -> None: ...
    def read_window(self) -> Optional[SampleWindow]: ...
    def close(self) -> None: ...


class ArraySource:
    """Serve consecutive windows from an in-memory signal.

    Each call to :meth:`read_window` returns the next ``window_size``
    samples, advancing by ``hop_size``.  When the signal is exhausted
    ``None`` is returned, or the source wraps round if ``loop`` is set.
    """

    def __init__(
        self,
        samples: np.ndarray,
        *,
        sample_rate: int = SAMPLE_RATE,
        window_size: int = WINDOW_SIZE,
        hop_size: Optional[int] = None,
        loop: bool = False,
    ) -> None:
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim == 2:
            data = data.mean(axis=1)
        self.samples = data.reshape(-1)
        self.sample_rate = sample_rate
        self.window_size = window_size
        self.hop_size = hop_size or window_size
        self.loop = loop
        self._position = 0
        self.is_open = False

    def open(self) -> None:
        self._position = 0
        self.is_open = True

    def read_window(self) -> Optional[SampleWindow]:
        if not self.is_open:
            return None
        end = self._position + self.window_size
        if end > self.samples.size:
            if not self.loop or self.samples.size < self.window_size:
                return None
            self._position = 0
            end = self.window_size
        window = self.samples[self._position : end].copy()
        self._position += self.hop_size
        return SampleWindow(window, self.sample_rate)

    def close(self) -> None:
        self.is_open = False


def acquire_with_retry(
    factory: Callable[[], SampleSource],
    *,
    attempts: int = ACQUIRE_ATTEMPTS,
    base_delay: float = ACQUIRE_RETRY_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> SampleSource:
    """Create and open a capture source, retrying on failure.

    Args:
        factory: Builds a fresh, unopened source for each attempt.
        attempts: Total attempts including the first.
        base_delay: Seconds to wait after attempt ``n`` is
            ``base_delay * n``.
        sleep: Function used to wait between attempts.
        on_attempt: Called with the attempt number before each attempt.

    Returns:
        The opened source.

    Raises:
        CaptureAcquisitionError: If every attempt failed.  The last
            error is chained.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")
    last_exc: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)
        source: Optional[SampleSource] = None
        try:
            source = factory()
            source.open()
            return source
        except Exception as exc:
            last_exc = exc
            if source is not None:
                _close_quietly(source)
            logger.warning(
                "capture attempt %d/%d failed: %s", attempt, attempts, exc
            )
            if attempt < attempts:
                sleep(base_delay * attempt)
    raise CaptureAcquisitionError(
        f"Failed to access microphone: {last_exc}", attempts=attempts
    ) from last_exc


def _close_quietly(source: SampleSource) -> None:
    try:
        source.close()
    except Exception:
        logger.debug("error closing partially opened source", exc_info=True)


__all__ = [
    "CaptureAcquisitionError",
    "SampleSource",
    "ArraySource",
    "acquire_with_retry",
]

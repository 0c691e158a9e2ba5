"""YIN fundamental frequency estimation.

:class:`PitchDetector` turns one window of time-domain samples into a
:class:`~voicecoach.models.PitchEstimate`.  Windows are first passed
through a :class:`~voicecoach.noise_gate.VoiceActivityGate`; only
windows with enough energy reach the estimator.

The estimator follows the YIN algorithm:

  1. difference function ``d(tau)`` over lags ``1..max_tau``
  2. cumulative mean normalized difference (CMNDF)
  3. absolute threshold search for the first local minimum below the
     threshold, falling back to the global minimum of the search range
  4. parabolic interpolation of the chosen lag
  5. subharmonic correction, preferring a doubled or tripled lag whose
     CMNDF value is clearly lower (YIN tends to lock onto the first
     harmonic above the true fundamental)
  6. ``frequency = sample_rate / lag``

The detector is long-lived and owns two scratch buffers sized for the
largest lag.  ``_difference`` holds the raw difference function.
``_cmndf`` first receives the running sums of the difference function
and is then overwritten in place with the normalized values.  Neither
buffer is meaningful outside a single call to :meth:`estimate_frequency`.

Clarity and confidence are heuristic blends of the CMNDF minimum and
the window energy; they are not calibrated probabilities.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Optional, Union

import numpy as np

from .constants import (
    CONFIDENCE_RMS_REFERENCE,
    MAX_FREQ,
    MIN_FREQ,
    SAMPLE_RATE,
    SUBHARMONIC_MARGIN_DOUBLE,
    SUBHARMONIC_MARGIN_TRIPLE,
    VAD_RMS_THRESHOLD,
    WINDOW_SIZE,
    YIN_THRESHOLD,
)
from .models import PitchEstimate, PitchSample, SampleWindow
from .music import clamp, to_pitch_sample
from .noise_gate import VoiceActivityGate, compute_rms

logger = logging.getLogger(__name__)

_EPSILON = 1e-12


def _now_ms() -> int:
    return int(time.time() * 1000)


class PitchDetector:
    """Stateful YIN estimator with reusable scratch buffers.

    Args:
        sample_rate: Default sampling rate for raw arrays passed to
            :meth:`process`.  Windows carry their own rate.
        window_size: Expected window length; used to size the scratch
            buffers up front.
        min_freq: Lowest frequency reported, in hertz.
        max_freq: Highest frequency reported, in hertz.
        threshold: Absolute CMNDF threshold for the lag search.
        vad_threshold: RMS level below which windows are ignored.
        double_margin: CMNDF improvement required to prefer twice the lag.
        triple_margin: CMNDF improvement required to prefer three times
            the lag.
        confidence_rms_reference: RMS level at which the energy half of
            the confidence saturates.
        clock: Callable returning the capture timestamp in milliseconds.
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        window_size: int = WINDOW_SIZE,
        min_freq: float = MIN_FREQ,
        max_freq: float = MAX_FREQ,
        threshold: float = YIN_THRESHOLD,
        vad_threshold: float = VAD_RMS_THRESHOLD,
        double_margin: float = SUBHARMONIC_MARGIN_DOUBLE,
        triple_margin: float = SUBHARMONIC_MARGIN_TRIPLE,
        confidence_rms_reference: float = CONFIDENCE_RMS_REFERENCE,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if not 0.0 < min_freq < max_freq:
            raise ValueError(
                f"invalid frequency range [{min_freq}, {max_freq}]"
            )
        self.sample_rate = int(sample_rate)
        self.min_freq = float(min_freq)
        self.max_freq = float(max_freq)
        self.threshold = float(threshold)
        self.double_margin = float(double_margin)
        self.triple_margin = float(triple_margin)
        if not confidence_rms_reference > 0.0:
            raise ValueError(
                f"confidence_rms_reference must be positive, got {confidence_rms_reference}"
            )
        self.confidence_rms_reference = float(confidence_rms_reference)
        self.gate = VoiceActivityGate(vad_threshold)
        self._clock: Callable[[], int] = clock or _now_ms
        self.last_cmndf_min: float = 1.0

        self._difference = np.zeros(0, dtype=np.float64)
        self._cmndf = np.zeros(0, dtype=np.float64)
        self._taus = np.zeros(0, dtype=np.float64)
        _, max_tau = self.lag_range(window_size, self.sample_rate)
        if max_tau > 0:
            self._ensure_buffers(max_tau)

    # -----------------------------------------------------------------
    def lag_range(self, n: int, sample_rate: int) -> tuple[int, int]:
        """Return ``(min_tau, max_tau)`` for a window of ``n`` samples.

        Lag is inversely proportional to frequency, so the upper
        frequency bound gives the lower lag bound and vice versa.
        """
        min_tau = max(2, int(sample_rate // self.max_freq))
        max_tau = min(n - 1, int(sample_rate // self.min_freq))
        return min_tau, max_tau

    def _ensure_buffers(self, max_tau: int) -> None:
        size = max_tau + 1
        if self._cmndf.size != size:
            logger.debug("allocating YIN buffers for %d lags", size)
            self._difference = np.zeros(size, dtype=np.float64)
            self._cmndf = np.zeros(size, dtype=np.float64)
            self._taus = np.arange(size, dtype=np.float64)

    # -----------------------------------------------------------------
    def process(
        self, window: Union[SampleWindow, np.ndarray]
    ) -> Optional[PitchEstimate]:
        """Estimate the pitch of ``window``.

        Returns ``None`` when the window is gated out as silence, holds
        non-finite samples, or yields no frequency inside
        ``[min_freq, max_freq]``.
        """
        if isinstance(window, SampleWindow):
            samples, sample_rate = window.samples, window.sample_rate
        else:
            samples, sample_rate = window, self.sample_rate
        samples = np.asarray(samples, dtype=np.float64).reshape(-1)
        if samples.size < 3 or not np.all(np.isfinite(samples)):
            return None
        if not self.gate.is_voiced(samples):
            return None

        freq, cmndf_min = self.estimate_frequency(samples, sample_rate)
        if not math.isfinite(freq):
            return None

        rms = compute_rms(samples)
        clarity = clamp(1.0 - cmndf_min)
        confidence = clamp(
            0.5 * clarity + 0.5 * min(1.0, rms / self.confidence_rms_reference)
        )
        return PitchEstimate(
            frequency=freq,
            clarity=clarity,
            confidence=confidence,
            captured_at_ms=int(self._clock()),
        )

    def detect(
        self, window: Union[SampleWindow, np.ndarray]
    ) -> Optional[PitchSample]:
        """Like :meth:`process` but with MIDI pitch and note names attached."""
        estimate = self.process(window)
        if estimate is None:
            return None
        return to_pitch_sample(estimate)

    # -----------------------------------------------------------------
    def estimate_frequency(
        self, samples: np.ndarray, sample_rate: int
    ) -> tuple[float, float]:
        """Run the YIN steps on ``samples``.

        Returns ``(frequency, cmndf_min)``.  ``frequency`` is NaN when
        no valid lag exists or the result lies outside the frequency
        range; ``cmndf_min`` is then ``1.0``.
        """
        x = np.asarray(samples, dtype=np.float64).reshape(-1)
        min_tau, max_tau = self.lag_range(x.size, sample_rate)
        if max_tau < min_tau:
            self.last_cmndf_min = 1.0
            return float("nan"), 1.0
        self._ensure_buffers(max_tau)

        diff = self._difference_function(x, max_tau)
        cmndf = self._normalize(diff, max_tau)
        tau, cmndf_min = self._search(cmndf, min_tau, max_tau)

        refined = self._interpolate(cmndf, tau, max_tau)
        if not 1.0 <= refined <= max_tau:
            self.last_cmndf_min = 1.0
            return float("nan"), 1.0
        final_tau = self._correct_subharmonic(cmndf, refined, max_tau)

        freq = sample_rate / final_tau
        if not (math.isfinite(freq) and self.min_freq <= freq <= self.max_freq):
            self.last_cmndf_min = 1.0
            return float("nan"), 1.0
        self.last_cmndf_min = cmndf_min
        return float(freq), cmndf_min

    def _difference_function(self, x: np.ndarray, max_tau: int) -> np.ndarray:
        """Fill ``_difference`` with ``d(tau)`` for ``tau`` in ``0..max_tau``.

        ``d(tau) = sum((x[i] - x[i + tau])**2)`` over the overlap, expanded
        into two energy terms and an FFT autocorrelation term.
        """
        n = x.size
        energy = np.concatenate(([0.0], np.cumsum(x * x)))
        size = 1 << int(math.ceil(math.log2(2 * n)))
        spectrum = np.fft.rfft(x, size)
        autocorr = np.fft.irfft(spectrum * np.conj(spectrum), size)[: max_tau + 1]

        taus = np.arange(max_tau + 1)
        out = self._difference
        np.subtract(energy[n - taus] + (energy[n] - energy[taus]), 2.0 * autocorr, out=out)
        # FFT rounding can leave tiny negative values
        np.maximum(out, 0.0, out=out)
        out[0] = 0.0
        return out

    def _normalize(self, diff: np.ndarray, max_tau: int) -> np.ndarray:
        """Turn ``diff`` into the CMNDF, written into ``_cmndf``."""
        cmndf = self._cmndf
        running = cmndf[1:]
        np.cumsum(diff[1:], out=running)
        np.maximum(running, _EPSILON, out=running)
        np.divide(diff[1:] * self._taus[1:], running, out=running)
        cmndf[0] = 1.0
        return cmndf

    def _search(
        self, cmndf: np.ndarray, min_tau: int, max_tau: int
    ) -> tuple[int, float]:
        lo = max(2, min_tau)
        segment = cmndf[lo : max_tau + 1]
        below = np.flatnonzero(
            (segment[:-1] < self.threshold) & (segment[:-1] <= segment[1:])
        )
        if below.size:
            tau = lo + int(below[0])
        else:
            tau = lo + int(np.argmin(segment))
        return tau, float(cmndf[tau])

    @staticmethod
    def _interpolate(cmndf: np.ndarray, tau: int, max_tau: int) -> float:
        if not 1 < tau < max_tau:
            return float(tau)
        x0, x1, x2 = cmndf[tau - 1], cmndf[tau], cmndf[tau + 1]
        denom = 2.0 * (2.0 * x1 - x0 - x2)
        if abs(denom) <= _EPSILON:
            return float(tau)
        return tau + float((x2 - x0) / denom)

    @staticmethod
    def _value_at(cmndf: np.ndarray, lag: float, max_tau: int) -> float:
        """Linearly interpolated CMNDF at a fractional lag."""
        i = int(math.floor(lag))
        frac = lag - i
        a = cmndf[i]
        b = cmndf[i + 1] if i + 1 <= max_tau else a
        return float(a + (b - a) * frac)

    def _correct_subharmonic(
        self, cmndf: np.ndarray, tau: float, max_tau: int
    ) -> float:
        base = self._value_at(cmndf, tau, max_tau)
        final = tau
        for mult, margin in ((2, self.double_margin), (3, self.triple_margin)):
            lag = tau * mult
            if lag <= max_tau and self._value_at(cmndf, lag, max_tau) + margin < base:
                final = lag
        return final


__all__ = ["PitchDetector"]

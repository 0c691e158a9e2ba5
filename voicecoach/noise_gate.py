"""Energy-based voice activity gating.

This module provides the :class:`VoiceActivityGate` used by
:class:`~voicecoach.pitch_detector.PitchDetector` to reject silent or
noisy windows before running the estimator.  The gate compares the
root-mean-square level of a window against a fixed threshold.  The
threshold can be raised for a noisy room by measuring the ambient
noise floor with :meth:`VoiceActivityGate.calibrate`.
"""

from __future__ import annotations

import logging

import numpy as np

from .constants import HOP_SIZE, NOISE_GATE_MARGIN, VAD_RMS_THRESHOLD

logger = logging.getLogger(__name__)


def compute_rms(samples: np.ndarray) -> float:
    """Return the RMS level of ``samples`` or ``0.0`` if empty."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


class VoiceActivityGate:
    """Fixed-threshold RMS gate.

    Parameters
    ----------
    threshold:
        RMS level on a ``[-1, 1]`` amplitude scale below which a window
        is treated as silence.
    """

    def __init__(self, threshold: float = VAD_RMS_THRESHOLD) -> None:
        if not threshold >= 0.0:
            raise ValueError(f"threshold must be non-negative, got {threshold}")
        self.default_threshold: float = float(threshold)
        self.threshold: float = float(threshold)

    def is_voiced(self, samples: np.ndarray) -> bool:
        """Return ``True`` if ``samples`` carry enough energy to analyse.

        Non-finite levels (NaN or infinite samples) are never voiced.
        """
        rms = compute_rms(samples)
        return bool(np.isfinite(rms) and rms >= self.threshold)

    def calibrate(
        self,
        samples: np.ndarray,
        *,
        margin: float = NOISE_GATE_MARGIN,
        hop_size: int = HOP_SIZE,
    ) -> float:
        """Raise the threshold above the noise floor measured in ``samples``.

        The threshold never drops below the value the gate was created
        with.  Returns the threshold now in effect.
        """
        floor = calculate_noise_floor(samples, hop_size=hop_size)
        if np.isfinite(floor):
            self.threshold = max(self.default_threshold, floor * margin)
        logger.info(
            "noise floor %.5f, VAD threshold now %.5f", floor, self.threshold
        )
        return self.threshold

    def reset(self) -> None:
        self.threshold = self.default_threshold


def calculate_noise_floor(samples: np.ndarray, hop_size: int = HOP_SIZE) -> float:
    """Estimate the ambient noise floor for ``samples``.

    The input is split into consecutive blocks of ``hop_size`` samples and the
    root-mean-square (RMS) is computed for each block.  The median RMS is
    returned as a robust estimate of the background level.

    Parameters
    ----------
    samples:
        One-dimensional array of audio samples.
    hop_size:
        Number of samples per analysis block.

    Returns
    -------
    float
        Estimated noise floor or ``0.0`` if ``samples`` is empty.
    """

    if samples.ndim != 1:
        samples = samples.reshape(-1)
    if samples.size == 0:
        return 0.0

    blocks = np.array_split(samples, max(1, samples.size // hop_size))
    rms_vals = [compute_rms(b) for b in blocks if b.size]
    return float(np.median(rms_vals)) if rms_vals else 0.0


__all__ = ["VoiceActivityGate", "compute_rms", "calculate_noise_floor"]

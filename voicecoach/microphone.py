"""Live microphone capture through ``sounddevice``.

:class:`SoundDeviceSource` wraps a PortAudio input stream.  The stream
callback runs on PortAudio's own thread: it down-mixes each block to
mono, applies a streaming high-pass filter to remove rumble and mains
hum, and appends the result to a rolling window.  The analysis tick
copies the latest full window with :meth:`SoundDeviceSource.read_window`.

``sounddevice`` is imported when the stream is opened so that the rest
of the package can be used where PortAudio is not installed.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Tuple

import numpy as np
from scipy.signal import butter, sosfilt, sosfilt_zi

from .constants import HOP_SIZE, HP_FILTER_CUTOFF, SAMPLE_RATE, WINDOW_SIZE
from .models import SampleWindow

logger = logging.getLogger(__name__)


class SoundDeviceSource:
    """Capture facility backed by a ``sounddevice.InputStream``.

    Args:
        device_index: PortAudio input device, or ``None`` for the
            default device.
        channels: Number of channels to capture; averaged to mono.
        sample_rate: Requested sampling rate in hertz.
        window_size: Samples per analysis window.
        hop_size: Block size delivered to the stream callback.
        hp_cutoff: High-pass cutoff in hertz; ``0`` disables the filter.
        extra_settings: Backend specific settings passed through to the
            stream (e.g. ``WasapiSettings``).
    """

    def __init__(
        self,
        device_index: Optional[int] = None,
        *,
        channels: int = 1,
        sample_rate: int = SAMPLE_RATE,
        window_size: int = WINDOW_SIZE,
        hop_size: int = HOP_SIZE,
        hp_cutoff: float = HP_FILTER_CUTOFF,
        extra_settings: Any = None,
    ) -> None:
        self.device_index = device_index
        self.channels = channels
        self.sample_rate = sample_rate
        self.window_size = window_size
        self.hop_size = hop_size
        self.extra_settings = extra_settings
        self.stream = None
        self._lock = threading.Lock()
        self._window = np.zeros(window_size, dtype=np.float32)
        self._filled = 0

        self.hp_sos: Optional[np.ndarray] = None
        self.hp_zi: Optional[np.ndarray] = None
        if hp_cutoff > 0:
            nyquist = sample_rate / 2.0
            normalised_cutoff = max(min(hp_cutoff / nyquist, 0.99), 0.001)
            self.hp_sos = butter(2, normalised_cutoff, btype="highpass", output="sos")
            self.hp_zi = sosfilt_zi(self.hp_sos) * 0.0

    # -----------------------------------------------------------------
    def open(self) -> None:
        """Open and start the input stream.

        Raises whatever PortAudio raises when the device is missing or
        access is denied; the caller decides whether to retry.
        """
        import sounddevice as sd

        stream = sd.InputStream(
            device=self.device_index,
            channels=self.channels,
            samplerate=self.sample_rate,
            blocksize=self.hop_size,
            dtype="float32",
            callback=self._callback,
            extra_settings=self.extra_settings,
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            raise
        self.stream = stream
        logger.info(
            "capturing from device %s at %d Hz", self.device_index, self.sample_rate
        )

    def _callback(
        self, indata: np.ndarray, frames: int, _time: Tuple[Any, ...], status
    ) -> None:
        if status:
            logger.warning("input stream status: %s", status)
        self.feed(indata)

    def feed(self, indata: np.ndarray) -> None:
        """Append one block of captured audio to the rolling window."""
        if indata.ndim == 2 and indata.shape[1] > 1:
            block = indata.mean(axis=1).astype(np.float32)
        else:
            block = indata.reshape(-1).astype(np.float32)
        if block.size == 0:
            return
        if self.hp_sos is not None:
            block, self.hp_zi = sosfilt(self.hp_sos, block, zi=self.hp_zi)
            block = block.astype(np.float32)

        with self._lock:
            n = block.size
            if n >= self.window_size:
                self._window[:] = block[-self.window_size :]
            else:
                self._window[:-n] = self._window[n:]
                self._window[-n:] = block
            self._filled = min(self.window_size, self._filled + n)

    def read_window(self) -> Optional[SampleWindow]:
        """Return a copy of the latest window, or ``None`` until one is full."""
        with self._lock:
            if self._filled < self.window_size:
                return None
            samples = self._window.copy()
        return SampleWindow(samples, self.sample_rate)

    def close(self) -> None:
        """Stop the stream and drop buffered audio.  Safe to call twice."""
        stream, self.stream = self.stream, None
        if stream is not None:
            try:
                stream.abort()
            finally:
                stream.close()
        with self._lock:
            self._window[:] = 0.0
            self._filled = 0
            if self.hp_zi is not None:
                self.hp_zi = self.hp_zi * 0.0


def record_ambient(
    seconds: float,
    device_index: Optional[int] = None,
    *,
    sample_rate: int = SAMPLE_RATE,
    hop_size: int = HOP_SIZE,
) -> np.ndarray:
    """Record ``seconds`` of mono audio for noise-floor calibration.

    Blocks until the recording is complete.  Nothing should be sung while
    it runs.
    """
    import sounddevice as sd

    total = max(1, int(seconds * sample_rate))
    blocks: list[np.ndarray] = []
    with sd.InputStream(
        device=device_index,
        channels=1,
        samplerate=sample_rate,
        blocksize=hop_size,
        dtype="float32",
    ) as stream:
        while sum(b.size for b in blocks) < total:
            data, _ = stream.read(hop_size)
            blocks.append(np.asarray(data, dtype=np.float32).reshape(-1))
    return np.concatenate(blocks)[:total]


__all__ = ["SoundDeviceSource", "record_ambient"]

"""Incremental WAV file writer used as the capture sink."""

import logging
import threading
import wave
from pathlib import Path

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # 16-bit


class WavFileSink:
    """Streams PCM chunks into a WAV file; the header is finalized on close."""

    def __init__(self, path, sample_rate: int = 16000, channels: int = 1):
        self.path = Path(path)
        self.sample_rate = sample_rate
        self.channels = channels
        self.bytes_written = 0
        self._lock = threading.Lock()
        self._wav = None

    def open(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        wf = wave.open(str(self.path), "wb")
        wf.setnchannels(self.channels)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(self.sample_rate)
        self._wav = wf
        return self

    def write(self, chunk: bytes):
        with self._lock:
            if self._wav is None:
                return
            self._wav.writeframes(chunk)
            self.bytes_written += len(chunk)

    def close(self):
        with self._lock:
            wf = self._wav
            self._wav = None
        if wf is not None:
            wf.close()
            logger.debug("Closed WAV sink %s (%d PCM bytes)", self.path, self.bytes_written)

    @property
    def closed(self) -> bool:
        return self._wav is None

import threading
from typing import Callable, Optional

import sounddevice as sd


SAMPLE_RATE = 16000
CHANNELS = 1
DTYPE = "int16"


class AudioRecorder:
    """Pushes raw PCM chunks from the default microphone to a callback.

    ``on_chunk`` runs on the PortAudio thread and must return quickly.
    ``on_error`` is called if the stream dies without ``stop()`` being asked.
    """

    def __init__(self, sample_rate=SAMPLE_RATE, channels=CHANNELS):
        self.sample_rate = sample_rate
        self.channels = channels
        self._stream = None
        self._lock = threading.Lock()
        self._on_chunk: Optional[Callable[[bytes], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None
        self._stopping = False
        self.recording = False

    def start(self, on_chunk: Callable[[bytes], None], on_error: Optional[Callable[[Exception], None]] = None):
        """Open the default input device and start streaming."""
        with self._lock:
            self._on_chunk = on_chunk
            self._on_error = on_error
            self._stopping = False
            self.recording = True
        try:
            self._stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype=DTYPE,
                callback=self._audio_callback,
                finished_callback=self._finished_callback,
            )
            self._stream.start()
        except Exception:
            with self._lock:
                self.recording = False
            self._stream = None
            raise

    def stop(self):
        """Stop and close the stream. Safe to call more than once."""
        with self._lock:
            self._stopping = True
            self.recording = False
        stream = self._stream
        self._stream = None
        if stream is not None:
            stream.stop()
            stream.close()

    def _audio_callback(self, indata, frames, time_info, status):
        callback = self._on_chunk
        if callback is not None and not self._stopping:
            callback(bytes(indata))

    def _finished_callback(self):
        with self._lock:
            unexpected = not self._stopping
            self.recording = False
            on_error = self._on_error
        if unexpected and on_error is not None:
            on_error(RuntimeError("Audio input stream stopped unexpectedly"))

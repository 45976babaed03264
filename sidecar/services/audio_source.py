"""
Audio sources that feed a recording session.

A source pushes float32 sample blocks into a sink callable (normally
``RecordingSession.push_audio``) at its own cadence and sample rate; the
session resamples before chunking.  The microphone source is driven by
the PortAudio callback thread, the file source by its own reader thread.
"""

from abc import ABC, abstractmethod
import logging
import threading
from typing import Callable, Optional

import numpy as np
import soundfile as sf

AudioSink = Callable[[np.ndarray], int]


class AudioSource(ABC):
    @property
    @abstractmethod
    def sample_rate(self) -> int:
        pass

    @abstractmethod
    def start(self, sink: AudioSink) -> None:
        """Begin delivering blocks to ``sink``; returns immediately."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop delivering; safe to call more than once."""
        pass

    @abstractmethod
    def is_complete(self) -> bool:
        pass


class MicAudioSource(AudioSource):
    """Live input device via sounddevice."""

    def __init__(
        self,
        device_index: Optional[int] = None,
        sample_rate: int = 16000,
        channels: int = 1,
        blocksize: int = 1024,
    ) -> None:
        self._device_index = device_index
        self._sample_rate = int(sample_rate)
        self._channels = int(channels)
        self._blocksize = int(blocksize)
        self._stream = None
        self._sink: Optional[AudioSink] = None
        self._stopped = threading.Event()
        self._logger = logging.getLogger("sidecar.audio.mic")

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def start(self, sink: AudioSink) -> None:
        # PortAudio is loaded on first use so file-only setups never need it
        import sounddevice as sd

        self._sink = sink
        self._stopped.clear()
        self._stream = sd.InputStream(
            device=self._device_index,
            samplerate=self._sample_rate,
            channels=self._channels,
            dtype="float32",
            blocksize=self._blocksize,
            callback=self._callback,
        )
        self._stream.start()
        self._logger.info(
            "Mic capture started: device=%s samplerate=%s channels=%s",
            self._device_index,
            self._sample_rate,
            self._channels,
        )

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            self._logger.debug("Input status: %s", status)
        if self._stopped.is_set() or self._sink is None:
            return
        self._sink(indata.copy())

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        self._logger.info("Mic capture stopped")

    def is_complete(self) -> bool:
        return self._stopped.is_set()


class FileAudioSource(AudioSource):
    """
    Replays an audio file as if it were live input.

    Playback speed controls how quickly blocks are delivered:
    - 0 = no delay (as fast as possible)
    - 100 = real-time
    - 300 = 3x faster
    """

    def __init__(
        self,
        file_path: str,
        block_seconds: float = 0.5,
        speed_percent: int = 100,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> None:
        info = sf.info(file_path)
        self._file_path = file_path
        self._sample_rate = int(info.samplerate)
        self._channels = int(info.channels)
        self._block_frames = max(int(self._sample_rate * block_seconds), 1)
        self._speed_percent = speed_percent
        self._on_complete = on_complete
        self._cancel_event = threading.Event()
        self._complete = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._logger = logging.getLogger("sidecar.audio.file")

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def start(self, sink: AudioSink) -> None:
        self._cancel_event.clear()
        self._complete.clear()
        self._thread = threading.Thread(
            target=self._read_loop,
            args=(sink,),
            daemon=True,
            name="file-audio-source",
        )
        self._thread.start()
        self._logger.info(
            "File replay started: %s samplerate=%s channels=%s speed=%s%%",
            self._file_path,
            self._sample_rate,
            self._channels,
            self._speed_percent,
        )

    def _read_loop(self, sink: AudioSink) -> None:
        block_duration = self._block_frames / self._sample_rate
        delay = block_duration * 100.0 / self._speed_percent if self._speed_percent > 0 else 0.0
        blocks = 0
        try:
            with sf.SoundFile(self._file_path) as audio_file:
                while not self._cancel_event.is_set():
                    data = audio_file.read(self._block_frames, dtype="float32")
                    if len(data) == 0:
                        break
                    sink(data)
                    blocks += 1
                    if delay and self._cancel_event.wait(delay):
                        break
        except Exception as exc:
            self._logger.exception("File replay failed after %d blocks: %s", blocks, exc)
        finally:
            self._complete.set()
            self._logger.info("File replay finished: blocks=%d", blocks)
        if self._on_complete and not self._cancel_event.is_set():
            self._on_complete()

    def wait_complete(self, timeout: Optional[float] = None) -> bool:
        return self._complete.wait(timeout)

    def stop(self) -> None:
        self._cancel_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)

    def is_complete(self) -> bool:
        return self._complete.is_set()

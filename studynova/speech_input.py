from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Union

import numpy as np

from studynova.errors import RecognitionError, UnsupportedError

SAMPLE_RATE = 16000


# =========================
# Result union
# =========================

@dataclass(frozen=True)
class Transcript:
    text: str


@dataclass(frozen=True)
class RecognitionFailure:
    error: RecognitionError


RecognitionResult = Union[Transcript, RecognitionFailure]


class RecognitionEngine(Protocol):
    def available(self) -> bool:
        ...

    async def recognize(self) -> str:
        ...

    def stop(self):
        ...


# =========================
# Audio capture with VAD
# =========================

class AudioCapture:
    """Microphone capture that ends on sustained silence or when stopped."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger, sd: Any):
        self.cfg = cfg.get("orchestrator", {})
        self.logger = logger
        self.sd = sd
        self.sample_rate = SAMPLE_RATE
        self.channels = 1
        self.chunk_size = 512
        self.vad_threshold = self.cfg.get("vad_threshold", 0.02)
        self.silence_duration = self.cfg.get("silence_duration", 1.5)

    def capture_until_silence(self, stop_event: threading.Event, timeout: float = 10.0) -> Optional[np.ndarray]:
        frames = []
        heard_speech = False
        silence_chunks = 0
        chunks_for_silence = int(self.silence_duration * self.sample_rate / self.chunk_size)
        start_time = time.time()

        self.logger.info("capture_begin %s", json.dumps({
            "timeout_s": timeout, "vad": "rms", "threshold": self.vad_threshold
        }))

        try:
            with self.sd.InputStream(samplerate=self.sample_rate, channels=self.channels,
                                     dtype='int16', blocksize=self.chunk_size) as stream:
                while time.time() - start_time < timeout and not stop_event.is_set():
                    data, _ = stream.read(self.chunk_size)
                    frames.append(data)

                    rms = np.sqrt(np.mean(data.astype(np.float32) ** 2)) / 32768.0

                    if rms < self.vad_threshold:
                        silence_chunks += 1
                        if heard_speech and silence_chunks >= chunks_for_silence:
                            break
                    else:
                        heard_speech = True
                        silence_chunks = 0
        except self.sd.PortAudioError as e:
            raise RecognitionError(f"microphone unavailable: {e}") from e

        if stop_event.is_set():
            self.logger.info("capture_stopped %s", json.dumps({"frames": len(frames)}))
            return None

        if not frames or not heard_speech:
            return None

        audio = np.concatenate(frames, axis=0)
        # sounddevice returns [N, 1] even with one channel
        if audio.ndim > 1:
            audio = audio.flatten()
        self.logger.info("capture_end %s", json.dumps({
            "samples": int(audio.shape[0]),
            "ms": int((time.time() - start_time) * 1000)
        }))
        return audio


# =========================
# Whisper recognizer
# =========================

HALLUCINATIONS = [
    "thanks for watching", "thank you for watching",
    "please subscribe", "like and subscribe",
    "see you next time", "music playing", "[music]"
]


def is_whisper_hallucination(text: str) -> bool:
    """Filter Whisper's stock phrases produced from background noise."""
    if not text or not text.strip():
        return True

    lower = text.strip().lower()
    return any(phrase in lower for phrase in HALLUCINATIONS)


class WhisperRecognizer:
    """Push-to-talk recognition: sounddevice capture + faster-whisper."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger):
        self.cfg = cfg
        self.logger = logger
        stt_cfg = cfg.get("stt", {})
        self.model_tag = stt_cfg.get("model", "small")
        self.device = stt_cfg.get("device", "cpu")
        self.compute_type = stt_cfg.get("compute_type", "int8")
        self.beam_size = stt_cfg.get("beam_size", 1)
        self.language = stt_cfg.get("language", "en")
        self.initial_prompt = stt_cfg.get("initial_prompt", None)
        self.listen_timeout = cfg.get("orchestrator", {}).get("listen_timeout_s", 10.0)

        self._whisper = None
        self._capture: Optional[AudioCapture] = None
        self._unavailable_reason: Optional[str] = None
        self._stop_event: Optional[threading.Event] = None
        self._worker: Optional[asyncio.Future] = None
        self._probe()

    def _probe(self):
        # PortAudio missing surfaces as OSError at import time
        try:
            import sounddevice as sd
            import faster_whisper  # noqa: F401
        except (ImportError, OSError) as e:
            self._unavailable_reason = str(e)
            self.logger.warning("stt_unavailable %s", json.dumps({"error": str(e)}))
            return

        try:
            sd.query_devices(kind="input")
        except (sd.PortAudioError, ValueError) as e:
            self._unavailable_reason = f"no input device: {e}"
            self.logger.warning("stt_unavailable %s", json.dumps({"error": self._unavailable_reason}))
            return

        self._capture = AudioCapture(self.cfg, self.logger, sd)

    def available(self) -> bool:
        return self._capture is not None

    def _model(self):
        if self._whisper is None:
            from faster_whisper import WhisperModel

            self._whisper = WhisperModel(self.model_tag, device=self.device, compute_type=self.compute_type)
            self.logger.info("stt_ready %s", json.dumps({
                "engine": f"whisper-{self.device}",
                "model": self.model_tag,
                "compute_type": self.compute_type
            }))
        return self._whisper

    def _transcribe(self, audio) -> str:
        audio_float = audio.astype(np.float32) / 32768.0
        segments, info = self._model().transcribe(
            audio_float,
            beam_size=self.beam_size,
            language=self.language,
            initial_prompt=self.initial_prompt
        )
        text = " ".join([seg.text for seg in segments]).strip()

        self.logger.info("stt_done %s", json.dumps({
            "engine": "whisper",
            "len": len(text),
            "lang": info.language if info else self.language
        }))
        return text

    def _run(self, stop_event: threading.Event) -> str:
        audio = self._capture.capture_until_silence(stop_event, timeout=self.listen_timeout)
        if audio is None:
            if stop_event.is_set():
                raise RecognitionError("listening stopped")
            raise RecognitionError("no speech detected")
        try:
            text = self._transcribe(audio)
        except Exception as e:
            raise RecognitionError(f"transcription failed: {e}") from e
        if is_whisper_hallucination(text):
            self.logger.warning("whisper_hallucination_filtered %s", json.dumps({"text": text}))
            raise RecognitionError("no speech detected")
        return text

    async def recognize(self) -> str:
        if not self.available():
            raise UnsupportedError(f"speech recognition unavailable: {self._unavailable_reason}")

        # A stopped capture thread may still be draining; never open the mic twice
        if self._worker is not None and not self._worker.done():
            await asyncio.wait([self._worker])

        stop_event = threading.Event()
        self._stop_event = stop_event
        self._worker = asyncio.ensure_future(asyncio.to_thread(self._run, stop_event))
        self._worker.add_done_callback(consume_result)
        try:
            return await asyncio.shield(self._worker)
        except asyncio.CancelledError:
            stop_event.set()
            raise

    def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()


def consume_result(fut: asyncio.Future):
    # Abandoned sessions still finish; mark their outcome as retrieved
    if not fut.cancelled():
        fut.exception()


# =========================
# Bridge
# =========================

class SpeechInputBridge:
    """One microphone session at a time; a new listen() preempts the old one."""

    def __init__(self, engine: RecognitionEngine, logger: logging.Logger):
        self.engine = engine
        self.logger = logger
        self._task: Optional[asyncio.Task] = None
        self._session = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _preempt(self):
        task = self._task
        if task is None or task.done():
            return
        # Detach first so the superseded listener knows it lost the device
        self._task = None
        self.logger.info("stt_session_preempted %s", json.dumps({"session": self._session}))
        self.engine.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def listen(self) -> RecognitionResult:
        if not self.engine.available():
            raise UnsupportedError("speech recognition is not available on this host")

        await self._preempt()

        self._session += 1
        session = self._session
        self.logger.info("stt_session_start %s", json.dumps({"session": session}))
        task = asyncio.ensure_future(self.engine.recognize())
        self._task = task

        try:
            text = await task
        except asyncio.CancelledError:
            if self._task is not task:
                return RecognitionFailure(RecognitionError("session superseded"))
            raise
        except RecognitionError as e:
            self.logger.warning("stt_session_error %s", json.dumps({"session": session, "error": str(e)}))
            return RecognitionFailure(e)
        finally:
            if self._task is task:
                if not task.done():
                    task.cancel()
                self.engine.stop()
                self._task = None
            self.logger.info("stt_session_end %s", json.dumps({"session": session}))

        text = (text or "").strip()
        if not text:
            return RecognitionFailure(RecognitionError("no speech detected"))
        return Transcript(text)

    async def listen_into(self, controller) -> RecognitionResult:
        """Run one session and hand a transcript to the composer draft."""
        result = await self.listen()
        if isinstance(result, Transcript):
            controller.accept_transcript(result.text)
        return result

    async def stop(self):
        await self._preempt()

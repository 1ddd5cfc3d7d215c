from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
import time
from typing import Any, Dict, List, Optional, Protocol

from studynova.errors import SynthesisError
from studynova.speech_input import consume_result


class SynthesisEngine(Protocol):
    def available(self) -> bool:
        ...

    async def say(self, text: str):
        ...

    def cancel(self):
        ...


def strip_markdown(text: str) -> str:
    """Remove markdown formatting for TTS."""
    # Remove bold/italic (**text** or *text*)
    text = re.sub(r'\*\*([^\*]+)\*\*', r'\1', text)
    text = re.sub(r'\*([^\*]+)\*', r'\1', text)
    # Remove inline code (`code`)
    text = re.sub(r'`([^`]+)`', r'\1', text)
    # Remove headers (# text)
    text = re.sub(r'^#{1,6}\s+', '', text, flags=re.MULTILINE)
    # Remove list markers (1. or - or *)
    text = re.sub(r'^\s*(?:\d+\.|[\-\*])\s+', '', text, flags=re.MULTILINE)
    # Remove links [text](url)
    text = re.sub(r'\[([^\]]+)\]\([^\)]+\)', r'\1', text)
    return text.strip()


def chunk_text(text: str, max_chars: int) -> List[str]:
    """Chunk text at sentence boundaries for natural pauses."""
    if len(text) <= max_chars:
        return [text]

    sentences = re.split(r'(?<=[.!?])\s+', text)

    chunks = []
    current_chunk = ""

    for sentence in sentences:
        if current_chunk and len(current_chunk) + len(sentence) + 1 > max_chars:
            chunks.append(current_chunk.strip())
            current_chunk = sentence
        else:
            current_chunk += (" " if current_chunk else "") + sentence

    if current_chunk:
        chunks.append(current_chunk.strip())

    return chunks if chunks else [text]


# =========================
# Piper / espeak engine
# =========================

class PiperEngine:
    """Piper synthesis played through aplay, or espeak when Piper is missing."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger):
        self.cfg = cfg.get("tts", {})
        self.logger = logger

        self.engine = self.cfg.get("engine", "piper")
        self.piper_bin = self.cfg.get("piper_bin") or shutil.which("piper")
        self.piper_voice = self.cfg.get("piper_voice") or self.cfg.get("voice_path")
        self.player_bin = self.cfg.get("player_bin") or shutil.which("aplay") or shutil.which("paplay")
        self.espeak_bin = shutil.which("espeak") or shutil.which("espeak-ng")
        self.chunk_chars = self.cfg.get("chunk_chars", 160)

        self.current_process: Optional[subprocess.Popen] = None
        self.last_dur_ms = 0
        self._proc_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._worker: Optional[asyncio.Future] = None

        if self.engine == "piper":
            if not self.piper_bin or not os.path.exists(self.piper_bin):
                self.logger.warning("piper_not_found %s", json.dumps({"bin": self.piper_bin}))
                self.engine = "espeak"
            elif not self.piper_voice or not os.path.exists(self.piper_voice):
                self.logger.warning("piper_voice_not_found %s", json.dumps({"voice": self.piper_voice}))
                self.engine = "espeak"
            elif not self.player_bin:
                self.logger.warning("player_not_found %s", json.dumps({"bin": self.player_bin}))
                self.engine = "espeak"

    def available(self) -> bool:
        if self.engine == "piper":
            return True
        return self.engine == "espeak" and bool(self.espeak_bin)

    def _run_process(self, args: List[str], stop_event: threading.Event) -> bool:
        """Run a playback process, polling for cancel. False when interrupted."""
        with self._proc_lock:
            if stop_event.is_set():
                return False
            self.current_process = subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        proc = self.current_process
        try:
            while proc.poll() is None:
                if stop_event.is_set():
                    proc.terminate()
                    proc.wait()
                    return False
                time.sleep(0.05)
        finally:
            with self._proc_lock:
                if self.current_process is proc:
                    self.current_process = None
        if proc.returncode != 0:
            raise SynthesisError(f"{args[0]} exited with status {proc.returncode}")
        return True

    def _synthesize_chunk(self, chunk: str) -> str:
        tmp_wav = tempfile.NamedTemporaryFile(suffix=".wav", delete=False)
        tmp_wav.close()
        try:
            proc = subprocess.run(
                [self.piper_bin, "-m", self.piper_voice, "-f", tmp_wav.name],
                input=chunk,
                capture_output=True,
                text=True,
                timeout=30
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            os.unlink(tmp_wav.name)
            raise SynthesisError(f"piper failed: {e}") from e
        if proc.returncode != 0:
            os.unlink(tmp_wav.name)
            raise SynthesisError(f"piper failed: {proc.stderr.strip()}")
        return tmp_wav.name

    def _speak_blocking(self, text: str, stop_event: threading.Event):
        t0 = time.time()
        text = strip_markdown(text)

        if self.engine == "espeak":
            try:
                self._run_process([self.espeak_bin, text], stop_event)
            except OSError as e:
                raise SynthesisError(f"espeak failed: {e}") from e
        else:
            for i, chunk in enumerate(chunk_text(text, self.chunk_chars)):
                if stop_event.is_set():
                    break
                wav = self._synthesize_chunk(chunk)
                try:
                    finished = self._run_process([self.player_bin, wav], stop_event)
                except OSError as e:
                    raise SynthesisError(f"playback failed: {e}") from e
                finally:
                    os.unlink(wav)
                if not finished:
                    break
                self.logger.debug("tts_chunk_played %s", json.dumps({"chunk": i + 1, "chars": len(chunk)}))

        if stop_event.is_set():
            self.logger.info("tts_interrupted %s", json.dumps({"chars": len(text)}))
            return

        self.last_dur_ms = int((time.time() - t0) * 1000)
        self.logger.info("tts_done %s", json.dumps({
            "engine": self.engine,
            "chars": len(text),
            "ms": self.last_dur_ms
        }))

    async def say(self, text: str):
        if not self.available():
            raise SynthesisError("no speech synthesis engine available")

        # The previous utterance must release the audio device first
        if self._worker is not None and not self._worker.done():
            await asyncio.wait([self._worker])

        stop_event = threading.Event()
        self._stop_event = stop_event
        self._worker = asyncio.ensure_future(asyncio.to_thread(self._speak_blocking, text, stop_event))
        self._worker.add_done_callback(consume_result)
        try:
            await asyncio.shield(self._worker)
        except asyncio.CancelledError:
            stop_event.set()
            raise

    def cancel(self):
        if self._stop_event is not None:
            self._stop_event.set()
        with self._proc_lock:
            if self.current_process is not None and self.current_process.poll() is None:
                self.current_process.terminate()


# =========================
# Output channel
# =========================

class SpeechOutputChannel:
    """At most one utterance at a time; the newest speak() always wins."""

    def __init__(self, engine: SynthesisEngine, logger: logging.Logger):
        self.engine = engine
        self.logger = logger
        self._current: Optional[asyncio.Task] = None
        self.last_error: Optional[SynthesisError] = None

    @property
    def speaking(self) -> bool:
        return self._current is not None and not self._current.done()

    def available(self) -> bool:
        return self.engine.available()

    def speak(self, text: str) -> asyncio.Task:
        """Start reading text aloud; must be called from the running loop."""
        if not self.engine.available():
            raise SynthesisError("speech output is not available on this host")

        self.stop()
        task = asyncio.ensure_future(self._utter(text))
        self._current = task
        return task

    async def _utter(self, text: str):
        try:
            await self.engine.say(text)
        except SynthesisError as e:
            self.last_error = e
            self.logger.error("tts_failed %s", json.dumps({"error": str(e)}))
        finally:
            if self._current is asyncio.current_task():
                self._current = None

    def stop(self):
        task = self._current
        self._current = None
        if task is not None and not task.done():
            self.logger.info("tts_cancel %s", json.dumps({"reason": "superseded"}))
            task.cancel()
            self.engine.cancel()

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Dict, Optional, Protocol

import requests

from studynova.errors import GenerationError


class GenerationBackend(Protocol):
    name: str

    def complete(self, prompt: str) -> str:
        ...


# =========================
# Ollama backend
# =========================

class OllamaBackend:
    """Blocking call to a local Ollama server."""

    name = "ollama"

    def __init__(self, cfg: Dict[str, Any], system_prompt: str = "", session: Optional[requests.Session] = None):
        llm = cfg.get("llm", {})
        self.model = llm.get("model", "llama3.2:3b")
        self.host = llm.get("host", "http://127.0.0.1:11434").rstrip("/")
        self.timeout = float(llm.get("timeout_s", 30.0))
        self.temperature = llm.get("temperature", 0.7)
        self.system_prompt = system_prompt
        self.http = session or requests.Session()

    def complete(self, prompt: str) -> str:
        url = f"{self.host}/api/generate"
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.temperature,
                "top_p": 0.9,
                "top_k": 40
            }
        }
        if self.system_prompt:
            payload["system"] = self.system_prompt

        try:
            resp = self.http.post(url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise GenerationError(f"request to {self.host} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationError("malformed response from generation service") from e

        if not isinstance(data, dict) or not isinstance(data.get("response"), str):
            raise GenerationError("malformed response from generation service")
        return data["response"]


# =========================
# Offline keyword backend
# =========================

class KeywordBackend:
    """Canned study-help replies, used when no model server is configured."""

    name = "offline"

    def complete(self, prompt: str) -> str:
        # Only the question matters, not any attached document text
        lower = prompt.rsplit("User question:", 1)[-1].lower()

        if "math" in lower:
            return ("For math topics, I recommend checking out Khan Academy or our math study "
                    "materials section. What specific math concept are you studying?")
        if "physics" in lower:
            return ("Physics can be challenging! The key is understanding the fundamental "
                    "principles. Our physics resources include video explanations and practice "
                    "problems. Would you like me to find some resources for you?")
        if "exam" in lower or "test" in lower:
            return ("Preparing for an exam? Make sure to create a study schedule, use active "
                    "recall techniques, and take practice tests. I can help you create a study "
                    "plan if you tell me more about your upcoming exam.")
        if "help" in lower:
            return ("I'm here to help! I can recommend study materials, answer questions about "
                    "subjects you're learning, help you create study plans, or just chat about "
                    "academic topics. What would you like assistance with?")
        return ("That's an interesting topic! I can help you find study materials or explain "
                "concepts related to this. Would you like me to recommend some resources?")


def build_backend(cfg: Dict[str, Any]) -> GenerationBackend:
    kind = cfg.get("llm", {}).get("backend", "ollama")
    if kind == "offline":
        return KeywordBackend()
    if kind == "ollama":
        identity = cfg.get("assistant", {}).get("identity", "") or ""
        return OllamaBackend(cfg, system_prompt=identity.strip())
    raise ValueError(f"unknown llm backend: {kind}")


# =========================
# Generation client
# =========================

class GenerationClient:
    """Stateless prompt -> completion wrapper with a timeout.

    The backend runs on a worker thread; if the await is cancelled or times
    out the thread is simply abandoned and its result dropped.
    """

    def __init__(self, backend: GenerationBackend, logger: logging.Logger, timeout_s: Optional[float] = 30.0):
        self.backend = backend
        self.logger = logger
        self.timeout_s = timeout_s

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], logger: logging.Logger) -> "GenerationClient":
        timeout = cfg.get("llm", {}).get("timeout_s", 30.0)
        return cls(build_backend(cfg), logger, timeout_s=timeout)

    def _strip_reasoning_tags(self, text: str) -> str:
        """Remove <think> reasoning blocks some local models emit."""
        text = re.sub(r'<think>.*?</think>', '', text, flags=re.DOTALL)
        text = re.sub(r'\n\s*\n', '\n', text)
        return text.strip()

    async def generate(self, prompt: str) -> str:
        t0 = time.time()
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self.backend.complete, prompt),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as e:
            self.logger.error("llm_timeout %s", json.dumps({
                "backend": self.backend.name,
                "timeout_s": self.timeout_s
            }))
            raise GenerationError(f"no reply within {self.timeout_s}s") from e
        except GenerationError as e:
            self.logger.error("llm_failed %s", json.dumps({
                "backend": self.backend.name,
                "err": str(e)
            }))
            raise
        except Exception as e:
            self.logger.error("llm_failed %s", json.dumps({
                "backend": self.backend.name,
                "err": str(e),
                "type": type(e).__name__
            }))
            raise GenerationError(f"generation failed: {e}") from e

        if not isinstance(raw, str):
            raise GenerationError("malformed response from generation service")

        response = self._strip_reasoning_tags(raw)
        if not response:
            self.logger.error("llm_empty %s", json.dumps({"backend": self.backend.name}))
            raise GenerationError("generation service returned an empty reply")

        self.logger.info("llm_done %s", json.dumps({
            "backend": self.backend.name,
            "chars": len(response),
            "ms": int((time.time() - t0) * 1000)
        }))
        return response

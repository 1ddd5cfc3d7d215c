from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import List

import pytest

from studynova.config import normalize_config
from studynova.errors import GenerationError


@pytest.fixture()
def logger():
    return logging.getLogger("test_studynova")


@pytest.fixture()
def cfg():
    return normalize_config({
        "assistant": {"greeting": ""},
        "llm": {"backend": "offline", "timeout_s": 2.0},
    })


async def wait_until(predicate, attempts: int = 200, interval: float = 0):
    """Yield to the loop until predicate() holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not reached")


class FakeGenerator:
    """Stands in for GenerationClient; records prompts, optionally blocks."""

    def __init__(self, replies=None, error: Exception = None, gated: bool = False):
        self.replies: List[str] = list(replies or [])
        self.error = error
        self.prompts: List[str] = []
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return f"reply {len(self.prompts)}"


class FakePage:
    def __init__(self, text: str, fail: bool = False):
        self.text = text
        self.fail = fail

    def extract_text(self) -> str:
        if self.fail:
            raise ValueError("broken content stream")
        return self.text


class GatedPage:
    """A page whose extraction blocks its worker thread until released."""

    def __init__(self, text: str):
        self.text = text
        self.started = threading.Event()
        self.release = threading.Event()

    def extract_text(self) -> str:
        self.started.set()
        if not self.release.wait(5):
            raise TimeoutError("page was never released")
        return self.text


class FakeReader:
    is_encrypted = False

    def __init__(self, pages):
        self.pages = pages


def reader_for(*pages):
    return lambda stream: FakeReader(list(pages))


def reader_by_content(mapping, default):
    """Pick the pages by a marker found in the uploaded bytes."""
    def factory(stream):
        data = stream.getvalue()
        for marker, pages in mapping.items():
            if marker in data:
                return FakeReader(list(pages))
        return FakeReader(list(default))
    return factory


def slow_reader(delay: float, *pages):
    """Reader factory whose parse step blocks like a large PDF does."""
    def factory(stream):
        time.sleep(delay)
        return FakeReader(list(pages))
    return factory


PDF_BYTES = b"%PDF-1.7\n% test document\n"


@pytest.fixture()
def failing_generator():
    return FakeGenerator(error=GenerationError("service unavailable"))

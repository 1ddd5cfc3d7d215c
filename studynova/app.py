#!/usr/bin/env python3
"""
StudyNova: text-mode study assistant

Type a question to ask it. Commands:
  /upload <file.pdf>   use a PDF as context for the following questions
  /clear               drop the document context
  /listen              dictate a question (press Enter to send it)
  /speak on|off        read replies aloud
  /history             show the conversation
  /logout, /quit
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Set

from studynova.config import load_config
from studynova.controller import ConversationController
from studynova.errors import StudyNovaError
from studynova.generation import GenerationClient
from studynova.logs import ensure_logger, log_event, now_iso
from studynova.models import Message, SessionContext
from studynova.speech_input import RecognitionFailure, SpeechInputBridge, WhisperRecognizer
from studynova.speech_output import PiperEngine, SpeechOutputChannel


class ChatLoop:
    """Wires the components together and recovers every error at the prompt."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger, session: SessionContext,
                 controller: Optional[ConversationController] = None,
                 speech_input: Optional[SpeechInputBridge] = None,
                 out=None):
        self.cfg = cfg
        self.logger = logger
        self.out = out or sys.stdout

        if controller is None:
            speech_output = SpeechOutputChannel(PiperEngine(cfg, logger), logger)
            controller = ConversationController(
                session,
                GenerationClient.from_config(cfg, logger),
                cfg,
                logger,
                speech_output=speech_output,
            )
        self.controller = controller
        self.speech_input = speech_input or SpeechInputBridge(WhisperRecognizer(cfg, logger), logger)

        self.running = True
        self._background: Set[asyncio.Task] = set()

    # =========================
    # Output
    # =========================

    def notify(self, text: str):
        self.out.write(f"!! {text}\n")
        self.out.flush()

    def show(self, message: Message):
        self.out.write(f"[{message.timestamp:%H:%M}] {message.sender.label}: {message.content}\n")
        self.out.flush()

    # =========================
    # Background work
    # =========================

    def _spawn(self, coro, label: str):
        task = asyncio.ensure_future(self._guard(coro, label))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _guard(self, coro, label: str):
        try:
            return await coro
        except StudyNovaError as e:
            self.logger.warning("%s_failed %s", label, json.dumps({
                "error": str(e),
                "type": type(e).__name__
            }))
            self.notify(str(e))

    async def _ask(self, text: str):
        reply = await self.controller.submit(text)
        self.show(reply)

    async def _upload(self, path: Path):
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            self.notify(f"cannot read {path}: {e}")
            return
        text = await self.controller.upload_document(data, filename=path.name)
        if text is None:
            self.notify(f"{path.name} ignored; a newer upload replaced it")
            return
        self.notify(f"{path.name} loaded ({len(text)} characters); questions will use it as context")

    async def _listen(self):
        self.notify("listening...")
        result = await self.speech_input.listen_into(self.controller)
        if isinstance(result, RecognitionFailure):
            self.notify(f"voice input failed: {result.error}")
        else:
            self.notify(f"heard: {result.text!r} (press Enter to send)")

    # =========================
    # Commands
    # =========================

    def handle_line(self, line: str):
        text = line.strip()

        if not text:
            if self.controller.draft:
                self._spawn(self._ask(self.controller.draft), "submit")
            return

        if not text.startswith("/"):
            self._spawn(self._ask(text), "submit")
            return

        command, _, arg = text.partition(" ")
        arg = arg.strip()

        if command == "/upload":
            if not arg:
                self.notify("usage: /upload <file.pdf>")
                return
            self._spawn(self._upload(Path(arg).expanduser()), "upload")
        elif command == "/clear":
            self.controller.clear_document_context()
            self.notify("document context cleared")
        elif command == "/listen":
            self._spawn(self._listen(), "listen")
        elif command == "/speak":
            try:
                self.controller.set_auto_speak(arg.lower() == "on")
            except StudyNovaError as e:
                self.notify(str(e))
                return
            self.notify(f"read aloud {'on' if self.controller.auto_speak else 'off'}")
        elif command == "/history":
            for message in self.controller.state.ordered():
                self.show(message)
        elif command in ("/logout", "/quit"):
            self.running = False
        else:
            self.notify(f"unknown command {command}")

    async def run(self):
        user = self.controller.session.user
        self.logger.info("loop_start %s", json.dumps({
            "user": user.id,
            "generation_backend": self.controller.generator.backend.name,
            "speech_input": self.speech_input.engine.available(),
            "speech_output": self.controller.speech_output.available() if self.controller.speech_output else False
        }))
        self.out.write(f"Signed in as {user.name}\n")
        for message in self.controller.state.ordered():
            self.show(message)

        while self.running:
            self.out.write(">> ")
            self.out.flush()
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            self.handle_line(line)

        # Cleanup
        await self.speech_input.stop()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self.controller.close()


# =========================
# Entry Point
# =========================

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="StudyNova study assistant")
    parser.add_argument("--config", type=Path, default=None, help="path to config.yaml")
    parser.add_argument("--user", default="student@example.com", help="email to sign in with")
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    cfg = load_config(args.config)
    if args.debug:
        cfg["logging"]["debug"] = True

    logger, log_path = ensure_logger(cfg.get("logging", {}))
    log_event(logger, "boot", {
        "log_file": log_path,
        "time": now_iso(),
        "version": cfg.get("version"),
        "backend": cfg["llm"].get("backend")
    })

    session = SessionContext.open(args.user)
    loop = ChatLoop(cfg, logger, session)
    try:
        asyncio.run(loop.run())
    except KeyboardInterrupt:
        logger.info("shutdown_requested %s", json.dumps({"reason": "keyboard_interrupt"}))


if __name__ == "__main__":
    main()

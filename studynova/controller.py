from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

from studynova.errors import SynthesisError, ValidationError
from studynova.extraction import DocumentExtractor, ProgressCallback
from studynova.generation import GenerationClient
from studynova.models import ConversationState, Message, Sender, SessionContext
from studynova.speech_output import SpeechOutputChannel


def compose_prompt(user_text: str, context: Optional[str] = None) -> str:
    """Prefix the question with the active document, when there is one."""
    if context:
        return f"Based on this document content:\n{context}\n\nUser question: {user_text}"
    return user_text


class ConversationController:
    """Owns the message log and the one-request-at-a-time lifecycle.

    Nothing else writes to ``state``; extraction results come in through
    ``set_document_context`` and speech transcripts through
    ``accept_transcript``.
    """

    def __init__(self, session: SessionContext, generator: GenerationClient,
                 cfg: Dict[str, Any], logger: logging.Logger,
                 extractor: Optional[DocumentExtractor] = None,
                 speech_output: Optional[SpeechOutputChannel] = None):
        self.session = session
        self.generator = generator
        self.cfg = cfg.get("assistant", {})
        self.logger = logger
        self.extractor = extractor or DocumentExtractor(cfg, logger)
        self.speech_output = speech_output
        self.auto_speak = bool(self.cfg.get("auto_speak", False)) and speech_output is not None

        self.state = ConversationState()
        self.draft = ""
        self._upload_seq = 0

        greeting = self.cfg.get("greeting")
        if greeting:
            self.state.append(Sender.ASSISTANT, greeting)

    @property
    def pending(self) -> bool:
        return self.state.pending

    @property
    def messages(self):
        return list(self.state.messages)

    # =========================
    # Composer
    # =========================

    async def submit(self, user_text: str) -> Message:
        """Send one question and return the assistant's reply.

        Raises ValidationError without touching the log when the text is
        blank, a request is already in flight, or the session has ended.
        GenerationError propagates after ``pending`` is cleared; the user
        message stays in the log so the question can be resubmitted.
        """
        text = (user_text or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty")
        if self.state.pending:
            raise ValidationError("Please wait for the current reply")
        if not self.session.active:
            raise ValidationError("Session has ended; sign in again to continue")

        t0 = time.time()
        user_message = self.state.append(Sender.USER, text)
        self.draft = ""
        self.state.pending = True

        context = self.state.active_document_context
        prompt = compose_prompt(text, context)
        self.logger.info("turn_begin %s", json.dumps({
            "turn": user_message.id,
            "chars": len(text),
            "has_document": bool(context)
        }))

        try:
            reply = await self.generator.generate(prompt)
        finally:
            self.state.pending = False

        message = self.state.append(Sender.ASSISTANT, reply)
        self.logger.info("turn_done %s", json.dumps({
            "turn": message.id,
            "chars": len(reply),
            "ms": int((time.time() - t0) * 1000)
        }))

        if self.auto_speak:
            self._read_aloud(reply)
        return message

    def accept_transcript(self, text: str):
        """Speech input only fills the composer; the user still submits."""
        self.draft = text.strip()

    # =========================
    # Document context
    # =========================

    def set_document_context(self, text: str, name: Optional[str] = None):
        self.state.active_document_context = text
        self.state.active_document_name = name
        self.logger.info("document_context_set %s", json.dumps({
            "name": name,
            "chars": len(text or "")
        }))

    def clear_document_context(self):
        self.state.active_document_context = None
        self.state.active_document_name = None
        self.logger.info("document_context_cleared %s", json.dumps({}))

    async def upload_document(self, data: bytes, filename: Optional[str] = None,
                              progress: Optional[ProgressCallback] = None) -> Optional[str]:
        """Extract a PDF and make it the context for later questions.

        On any extraction error the current context is left as it was.
        Uploads may overlap; only the most recently started one installs its
        text. An older upload that finishes later returns None.
        """
        self._upload_seq += 1
        ticket = self._upload_seq
        text = await self.extractor.extract(data, filename=filename, progress=progress)
        if ticket != self._upload_seq:
            self.logger.info("document_superseded %s", json.dumps({
                "name": filename,
                "ticket": ticket,
                "latest": self._upload_seq
            }))
            return None
        self.set_document_context(text, name=filename)
        return text

    # =========================
    # Speech output
    # =========================

    def _read_aloud(self, text: str):
        try:
            self.speech_output.speak(text)
        except SynthesisError as e:
            self.auto_speak = False
            self.logger.warning("auto_speak_disabled %s", json.dumps({"error": str(e)}))

    def set_auto_speak(self, enabled: bool):
        if enabled and (self.speech_output is None or not self.speech_output.available()):
            raise SynthesisError("speech output is not available on this host")
        self.auto_speak = enabled
        if not enabled and self.speech_output is not None:
            self.speech_output.stop()

    def close(self):
        """Logout: end the session and silence any speech."""
        self.session.close()
        if self.speech_output is not None:
            self.speech_output.stop()
        self.logger.info("session_closed %s", json.dumps({
            "user": self.session.user.id,
            "turns": self.state.turn_num
        }))

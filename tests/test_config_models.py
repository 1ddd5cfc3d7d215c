"""Tests for config loading and the conversation data model."""

from __future__ import annotations

from datetime import datetime

import yaml

from studynova.config import DEFAULT_CONFIG, load_config, normalize_config
from studynova.logs import ensure_logger, log_event
from studynova.models import ConversationState, Message, Sender, SessionContext


class TestConfig:
    def test_missing_file_written_with_defaults(self, tmp_path):
        path = tmp_path / "cfg" / "config.yaml"
        cfg = load_config(path)

        assert path.exists()
        assert cfg["llm"]["model"] == DEFAULT_CONFIG["llm"]["model"]
        assert yaml.safe_load(path.read_text())["version"] == "v1"

    def test_partial_file_merged(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"llm": {"backend": "offline"}}))
        cfg = load_config(path)

        assert cfg["llm"]["backend"] == "offline"
        assert cfg["llm"]["timeout_s"] == DEFAULT_CONFIG["llm"]["timeout_s"]
        assert "tts" in cfg and "documents" in cfg

    def test_normalize_empty(self):
        cfg = normalize_config(None)
        for section in ("assistant", "llm", "stt", "tts", "orchestrator", "documents", "logging"):
            assert section in cfg

    def test_normalize_does_not_share_defaults(self):
        cfg = normalize_config({})
        cfg["llm"]["model"] = "changed"
        assert DEFAULT_CONFIG["llm"]["model"] != "changed"


class TestModels:
    def test_sender_is_closed(self):
        assert {s.value for s in Sender} == {"user", "assistant"}

    def test_session_open_derives_name(self):
        session = SessionContext.open("marie.curie@example.com")
        assert session.user.name == "marie.curie"
        assert session.active
        session.close()
        assert not session.active

    def test_ids_are_monotonic(self):
        state = ConversationState()
        first = state.append(Sender.USER, "a")
        second = state.append(Sender.ASSISTANT, "b")
        assert second.id > first.id

    def test_ordered_breaks_ties_by_id(self):
        ts = datetime(2024, 1, 1, 12, 0, 0)
        state = ConversationState()
        state.messages.extend([
            Message(id=2, content="later", sender=Sender.ASSISTANT, timestamp=ts),
            Message(id=1, content="earlier", sender=Sender.USER, timestamp=ts),
        ])
        assert [m.content for m in state.ordered()] == ["earlier", "later"]


class TestLogging:
    def test_ensure_logger_writes_events(self, tmp_path):
        logger, log_path = ensure_logger({"debug": True}, log_dir=tmp_path)
        log_event(logger, "boot", {"mode": "text"})
        for handler in logger.handlers:
            handler.flush()

        content = open(log_path, encoding="utf-8").read()
        assert 'boot {"mode": "text"}' in content
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

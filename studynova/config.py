from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# =========================
# Paths
# =========================

BASE_DIR = Path(os.environ.get("STUDYNOVA_HOME", "~/.studynova")).expanduser()
CONFIG_PATH = Path(os.environ.get("STUDYNOVA_CONFIG", str(BASE_DIR / "config.yaml"))).expanduser()
LOG_DIR = BASE_DIR / "logs"

SECTIONS = ["assistant", "llm", "stt", "tts", "orchestrator", "documents", "logging"]

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": "v1",
    "assistant": {
        "greeting": "Hello! I'm your AI study assistant. How can I help you today?",
        "identity": "You are a helpful study assistant for students.",
        "auto_speak": False,
    },
    "llm": {
        "backend": "ollama",
        "model": "llama3.2:3b",
        "host": "http://127.0.0.1:11434",
        "timeout_s": 30.0,
        "temperature": 0.7,
    },
    "stt": {
        "model": "small",
        "device": "cpu",
        "compute_type": "int8",
        "beam_size": 1,
        "language": "en",
    },
    "tts": {
        "engine": "piper",
        "piper_bin": None,
        "piper_voice": None,
        "player_bin": None,
        "chunk_chars": 160,
    },
    "orchestrator": {
        "mode": "text",
        "vad_threshold": 0.02,
        "silence_duration": 1.5,
        "listen_timeout_s": 10.0,
    },
    "documents": {
        "max_pages": 0,
    },
    "logging": {
        "debug": False,
    },
}


def normalize_config(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Fill in missing sections and keys from the defaults."""
    cfg = dict(cfg or {})
    for key in SECTIONS:
        section = cfg.get(key) or {}
        merged = dict(DEFAULT_CONFIG[key])
        merged.update(section)
        cfg[key] = merged

    cfg.setdefault("version", DEFAULT_CONFIG["version"])
    return cfg


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load YAML config, writing the defaults out on first run."""
    path = Path(path).expanduser() if path else CONFIG_PATH

    if not path.exists():
        cfg = copy.deepcopy(DEFAULT_CONFIG)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(cfg, f, sort_keys=False)
    else:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

    return normalize_config(cfg)

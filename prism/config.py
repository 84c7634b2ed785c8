from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# searches for .env in CWD/parents
load_dotenv()

# --- Gemini ---
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
GEMINI_IMAGE_MODEL: str = os.getenv("GEMINI_IMAGE_MODEL", "")  # e.g. "gemini-2.5-flash-image"
DEFAULT_EMBEDDING_MODEL = "models/text-embedding-004"
GEMINI_EMBEDDING_MODEL: str = os.getenv("GEMINI_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)

# Models that can only draw; never valid for embed_content
IMAGE_ONLY_MODELS = ("gemini-2.5-flash-image", "gemini-2.5-flash-image-preview", "imagen-3.0-generate")

# --- Search defaults ---
MAX_ITERATIONS: int = int(os.getenv("PRISM_MAX_ITERATIONS", "5"))
SIMILARITY_THRESHOLD: float = float(os.getenv("PRISM_SIMILARITY_THRESHOLD", "0.85"))
STREAM_COUNT: int = int(os.getenv("PRISM_STREAM_COUNT", "1"))
OUTPUT_DIR: str = os.getenv("PRISM_OUTPUT_DIR", "artifacts")

# --- Runtime ---
CALL_TIMEOUT: float = float(os.getenv("PRISM_CALL_TIMEOUT", "120"))
CONCURRENCY: int = int(os.getenv("PRISM_CONCURRENCY", "4"))
MAX_IMAGE_BYTES: int = 20 * 1024 * 1024

# --- Logging ---
LOG_LEVEL: str = os.getenv("PRISM_LOG_LEVEL", "INFO").upper()

if LOG_LEVEL not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    print(f"Warning: Invalid PRISM_LOG_LEVEL '{LOG_LEVEL}'. Defaulting to INFO.")
    LOG_LEVEL = "INFO"


def get_api_key() -> Optional[str]:
    key = os.getenv("GEMINI_API_KEY")
    if key:
        return key
    # Optional: read from ~/.config/gemini/api_key
    cfg_path = Path.home() / ".config" / "gemini" / "api_key"
    try:
        if cfg_path.exists():
            return cfg_path.read_text().strip() or None
    except OSError:
        pass
    return None

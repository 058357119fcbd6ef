"""Centralized helpers for resolving the application's data directory."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

APP_ROOT = Path(__file__).resolve().parent
DATA_DIR_ENV = "CLASSROOM_DATA_DIR"
STORAGE_FILENAME = "classroom_storage.db"


def data_root() -> Path:
    """``$CLASSROOM_DATA_DIR`` when set, ``<app>/data`` otherwise."""
    return Path(os.environ.get(DATA_DIR_ENV) or APP_ROOT / "data").expanduser()


def ensure_data_root() -> Path:
    """Return the data root, creating it when missing."""
    root = data_root()
    root.mkdir(parents=True, exist_ok=True)
    return root


def default_storage_path() -> Path:
    """Location of the SQLite file backing the key-value store."""
    return ensure_data_root() / STORAGE_FILENAME

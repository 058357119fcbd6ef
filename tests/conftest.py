import json
import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from database import KeyValueStore
from services.unified_store import UnifiedStore


@pytest.fixture
def kv(tmp_path):
    store = KeyValueStore(tmp_path / "storage.db")
    yield store
    store.close()


@pytest.fixture
def store(kv):
    return UnifiedStore(kv, auto_migrate=False)


@pytest.fixture
def put_json(kv):
    def _put(key, value):
        kv.set_item(key, json.dumps(value))

    return _put


@pytest.fixture
def read_json(kv):
    def _read(key):
        raw = kv.get_item(key)
        return None if raw is None else json.loads(raw)

    return _read

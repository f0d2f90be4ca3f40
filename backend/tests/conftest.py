import os
import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEEPSEEK_API_KEY", "test-key")
os.environ.setdefault("CHROMA_PERSIST_DIR", str(BACKEND_ROOT / ".chromadb-test"))


@pytest.fixture(autouse=True)
def no_retry_delays(monkeypatch):
    from narrative_engine.core.config import settings

    monkeypatch.setattr(settings, "LLM_TRANSPORT_BACKOFF", 0.0)
    monkeypatch.setattr(settings, "DECOMPOSE_RETRY_DELAY", 0.0)
    monkeypatch.setattr(settings, "CHAPTER_RETRY_DELAY", 0.0)
    monkeypatch.setattr(settings, "WORLD_EVOLUTION_BACKOFF", 0.0)

import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest


# Ensure project src is on path for imports in tests
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (ROOT, SRC):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

# Keep tests offline: no credentials means every external source reports unavailable
for key in ("ANTHROPIC_API_KEY", "VIRUS_TOTAL", "GOOGLE_API_KEY", "SIGHT_API_USER", "SIGHT_API_SECRET", "REDIS_URL"):
    os.environ[key] = ""


class StubMessages:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.reply, BaseException):
            raise self.reply
        if callable(self.reply):
            return await self.reply(**kwargs)
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=self.reply)],
            usage=SimpleNamespace(input_tokens=120, output_tokens=45),
        )


class StubModelClient:
    """Stands in for ``anthropic.AsyncAnthropic``; replies with a fixed text or raises."""

    def __init__(self, reply):
        self.messages = StubMessages(reply)


@pytest.fixture
def make_llm():
    from agentshield.llm_adapter import JudgmentModelAdapter

    def _make(reply, timeout=5.0):
        return JudgmentModelAdapter(StubModelClient(reply), model="test-model", timeout=timeout, max_tokens=256)

    return _make


@pytest.fixture
def offline_llm():
    from agentshield.llm_adapter import JudgmentModelAdapter

    return JudgmentModelAdapter(None)


@pytest.fixture
def intel_store():
    from agentshield.storage import IntelStore, StorageManager

    return IntelStore(StorageManager(), ttl_hours=24)


@pytest.fixture
def memory(intel_store):
    from agentshield.intel_cache import IntelWriter, ThreatMemory

    return ThreatMemory(intel_store, IntelWriter())

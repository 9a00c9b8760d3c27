import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="flowkernel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("CREDENTIALS_SECRET", "test-credentials-secret-for-testing-only-0123456789")
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from flowkernel.config import Settings, reset_settings_cache  # noqa: E402
from flowkernel.service.llm import ChatResult, ImageResult, SpeechResult, VideoResult  # noqa: E402
from flowkernel.service.runtime import EngineRuntime  # noqa: E402
from flowkernel.storage.redis_cache import MemoryStateCache  # noqa: E402

TENANT = "org-test"
USER = "user-test"


class FakeAIProvider:
    """Deterministic provider that records every call."""

    def __init__(self, reply: Optional[str] = None, fail_with: Optional[Exception] = None) -> None:
        self.reply = reply
        self.fail_with = fail_with
        self.calls: List[Dict] = []
        self.configs: List = []

    async def chat(self, model, messages, *, temperature=0.7, max_tokens=2048):
        self.calls.append({"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.fail_with is not None:
            raise self.fail_with
        content = self.reply if self.reply is not None else f"reply to: {messages[-1]['content']}"
        return ChatResult(content=content, prompt_tokens=12, completion_tokens=8, model=model)

    async def generate_image(self, model, prompt, *, size, count):
        self.calls.append({"model": model, "prompt": prompt, "size": size, "count": count})
        return ImageResult(images=[{"url": f"https://images.test/{i}.png"} for i in range(count)], model=model)

    async def generate_video(self, model, prompt, *, duration):
        self.calls.append({"model": model, "prompt": prompt, "duration": duration})
        return VideoResult(task_id="video-task-1", status="processing", model=model)

    async def synthesize_speech(self, model, text, *, voice, format):
        self.calls.append({"model": model, "text": text, "voice": voice, "format": format})
        return SpeechResult(audio=b"ID3-fake-audio", format=format, model=model)

    async def close(self) -> None:
        return None


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        credentials_secret="test-credentials-secret-for-testing-only-0123456789",
        node_timeout_seconds=30,
    )


@pytest.fixture
def fake_ai():
    return FakeAIProvider()


@pytest.fixture
def http_handler():
    """Replace ``http_handler.handler`` to script egress responses."""

    class _Handler:
        def __init__(self) -> None:
            self.requests: List[httpx.Request] = []
            self.handler = lambda request: httpx.Response(200, json={"ok": True})

        def __call__(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.handler(request)

    return _Handler()


@pytest.fixture
def runtime(settings, fake_ai, http_handler):
    def _factory(config):
        fake_ai.configs.append(config)
        return fake_ai

    return EngineRuntime(
        settings,
        state_cache=MemoryStateCache(),
        provider_factory=_factory,
        egress_transport=httpx.MockTransport(http_handler),
    )


@pytest.fixture
def engine(runtime):
    return runtime.engine


@pytest.fixture
def store(runtime):
    return runtime.store


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

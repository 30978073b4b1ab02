import asyncio

import pytest

from drawqueue.core.config import Settings
from drawqueue.core.connection import ConnectionManager
from drawqueue.core.queue import JobQueue
from drawqueue.core.services import AppServices
from drawqueue.core.session import GenerationResult, ProgressUpdate, SessionMetadata
from drawqueue.core.storage import MemoryStore

# Script marker: block the generation until ``FakeSession.release`` is set.
HOLD = object()


class FakeSession:
    """Scripted session; each ``generate`` call consumes the next script."""

    def __init__(self, metadata=None):
        self.metadata = metadata or SessionMetadata(
            models=[{"name": "SD 1.5", "file": "sd_v1.5.ckpt", "version": "v1"}],
            loras=[{"name": "Detail", "file": "detail.safetensors", "version": "v1"}],
        )
        self.scripts = []
        self.images = (b"image-1",)
        self.requests = []
        self.probe_error = None
        self.probe_delay = 0.0
        self.cancel_calls = 0
        self.cancel_delay = 0.0
        self.release_on_cancel = False
        self.closed = False
        self.generating = asyncio.Event()
        self.release = asyncio.Event()

    async def probe(self):
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        if self.probe_error is not None:
            raise self.probe_error
        return self.metadata

    async def generate(self, request):
        self.requests.append(request)
        self.generating.set()
        if self.scripts:
            script = self.scripts.pop(0)
        else:
            script = [ProgressUpdate(1, 2), GenerationResult(self.images)]
        for item in script:
            if item is HOLD:
                await self.release.wait()
                self.release.clear()
                continue
            if isinstance(item, Exception):
                raise item
            await asyncio.sleep(0)
            yield item

    async def cancel_current(self):
        self.cancel_calls += 1
        if self.release_on_cancel:
            self.release.set()
        if self.cancel_delay:
            await asyncio.sleep(self.cancel_delay)

    async def close(self):
        self.closed = True


class FakeConnector:
    """Hands out ``session`` on every call, or raises ``error``."""

    def __init__(self):
        self.session = FakeSession()
        self.error = None
        self.calls = []

    async def __call__(self, address, use_tls):
        self.calls.append((address, use_tls))
        if self.error is not None:
            raise self.error
        return self.session


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def profile_store():
    return MemoryStore()


@pytest.fixture
def queue_store():
    return MemoryStore()


@pytest.fixture
def manager(profile_store, connector):
    return ConnectionManager(profile_store, connector, probe_timeout=1.0)


@pytest.fixture
def queue(queue_store, manager):
    return JobQueue(queue_store, manager, cancel_timeout=0.2, progress_persist_interval=0)


@pytest.fixture
def services(tmp_path, manager, queue):
    settings = Settings(data_dir=tmp_path, connect_on_startup=False)
    return AppServices(settings=settings, connection=manager, queue=queue)


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds."""

    async def wait(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)

    return wait

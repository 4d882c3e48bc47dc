"""Pytest configuration and fixtures."""

import asyncio

import pytest

from cutout.common.artifacts import ArtifactStore
from cutout.common.errors import TransformError
from cutout.common.models import ArtifactMeta, ResultSink
from cutout.scheduler.main import Scheduler
from cutout.worker.main import TransformationGateway


class FakeGateway(TransformationGateway):
    """
    Stand-in engine. Blocks on `gate` until the test opens it, fails for any
    artifact whose name contains one of `fail_on`, and records call order.
    """

    def __init__(self, fail_on=(), blocked=False):
        self.fail_on = set(fail_on)
        self.gate = asyncio.Event()
        if not blocked:
            self.gate.set()
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def transform(self, artifact, options):
        name = artifact.path.name.split("-", 7)[-1]
        self.calls.append(name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate.wait()
            if name in self.fail_on:
                raise TransformError("corrupt input")
            return b"PNG:" + artifact.path.read_bytes()
        finally:
            self.active -= 1


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(root=str(tmp_path))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def blocked_gateway():
    return FakeGateway(blocked=True)


def make_scheduler(gateway, store, **kwargs):
    kwargs.setdefault("pacing_delay", 0)
    kwargs.setdefault("gc_hint", False)
    return Scheduler(gateway, store, **kwargs)


async def submit_upload(scheduler, name, data=b"pixels"):
    """Write an artifact the way the upload layer does and hand it to the scheduler."""
    artifact = await scheduler.store.write(data, name)
    meta = ArtifactMeta(original_name=name, mime_type="image/png", size_bytes=len(data))
    sink = ResultSink()
    result = scheduler.submit(meta, artifact, sink)
    return result, sink, artifact


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)

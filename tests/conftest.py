"""Shared test fixtures."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from chatexcel.config import ChatExcelConfig
from chatexcel.errors import SandboxFileNotFound
from chatexcel.models import CapturedOutput, RunOutcome
from chatexcel.sandbox import CaptureSession, SandboxManager, SandboxRuntime
from chatexcel.staging import UploadStagingStore


class FakeCapture(CaptureSession):
    def __init__(self, runtime: "FakeRuntime") -> None:
        self._runtime = runtime

    async def collect(self) -> CapturedOutput:
        self._runtime.collected += 1
        return self._runtime.factory.captured


class FakeRuntime(SandboxRuntime):
    """In-memory runtime. Behaviour is scripted through its factory."""

    def __init__(self, factory: "FakeRuntimeFactory") -> None:
        self.factory = factory
        self.files: dict[str, bytes] = {}
        self.sources: list[str] = []
        self.loaded: list[str] = []
        self.installed: list[str] = []
        self.capturing = False
        self.collected = 0
        self.closed = False

    async def start(self) -> None:
        self.factory.starts += 1
        if self.factory.start_delay:
            await asyncio.sleep(self.factory.start_delay)
        if self.factory.fail_starts:
            self.factory.fail_starts -= 1
            raise RuntimeError("interpreter failed to boot")

    async def load_packages(self, names: list[str]) -> None:
        self.loaded.extend(names)

    async def install_packages(self, names: list[str]) -> None:
        self.installed.extend(names)

    async def write_file(self, name: str, data: bytes) -> None:
        if self.factory.write_gate is not None:
            self.factory.writes_started.append(name)
            await self.factory.write_gate.wait()
        self.files[name] = data

    async def read_file(self, name: str) -> bytes:
        if name not in self.files:
            raise SandboxFileNotFound(f"No file named '{name}' in the sandbox.")
        return self.files[name]

    async def delete_file(self, name: str) -> bool:
        return self.files.pop(name, None) is not None

    async def run(self, source: str, timeout: float | None = None) -> RunOutcome:
        self.sources.append(source)
        if not self.capturing:
            # Bootstrap prelude
            return RunOutcome(ok=self.factory.prelude_ok, error_type="ImportError")
        self.files.update(self.factory.produces)
        return self.factory.outcome

    @asynccontextmanager
    async def capture(self) -> AsyncIterator[CaptureSession]:
        self.capturing = True
        try:
            yield FakeCapture(self)
        finally:
            self.capturing = False

    async def close(self) -> None:
        self.closed = True


class FakeRuntimeFactory:
    """RuntimeFactory that records every runtime it builds."""

    def __init__(self) -> None:
        self.created: list[FakeRuntime] = []
        self.starts = 0
        self.start_delay = 0.0
        self.fail_starts = 0
        self.prelude_ok = True
        self.outcome = RunOutcome(ok=True, duration_ms=3)
        self.captured = CapturedOutput()
        self.produces: dict[str, bytes] = {}
        # When set, each write blocks on the gate after recording its name.
        self.write_gate: asyncio.Event | None = None
        self.writes_started: list[str] = []

    def __call__(self, config: ChatExcelConfig) -> FakeRuntime:
        runtime = FakeRuntime(self)
        self.created.append(runtime)
        return runtime

    @property
    def runtime(self) -> FakeRuntime:
        return self.created[-1]


@pytest.fixture
def chatexcel_config(tmp_path: Path) -> ChatExcelConfig:
    """Provide config for tests with logs and the sandbox under tmp_path."""
    return ChatExcelConfig(
        log_file=tmp_path / "logs" / "test.log",
        sandbox_dir=tmp_path / "sandbox",
        allow_package_install=False,
        exec_timeout_s=10.0,
    )


@pytest.fixture
def store(chatexcel_config: ChatExcelConfig) -> UploadStagingStore:
    return UploadStagingStore(chatexcel_config)


@pytest.fixture
def runtime_factory() -> FakeRuntimeFactory:
    return FakeRuntimeFactory()


@pytest.fixture
def sandbox(
    chatexcel_config: ChatExcelConfig, runtime_factory: FakeRuntimeFactory
) -> SandboxManager:
    return SandboxManager(chatexcel_config, runtime_factory)

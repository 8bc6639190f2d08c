"""The state the presentation layer reads and the intents it emits."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from chatexcel.config import ChatExcelConfig
from chatexcel.errors import WorkspaceBusy
from chatexcel.models import (
    ExecutionResult,
    Identity,
    IncomingFile,
    Mode,
    OutputFile,
    UploadedFile,
    UploadReport,
    WorkspaceStatus,
)
from chatexcel.orchestrator import AnalysisOrchestrator, OrchestratorState
from chatexcel.quota import QuotaGate, build_quota_gate
from chatexcel.resolver import CommandResolver
from chatexcel.runtime import PythonRuntime
from chatexcel.sandbox import SandboxManager
from chatexcel.staging import UploadStagingStore

log = structlog.get_logger("chatexcel.workspace")


class Workspace:
    """Staged files, the last analysis result and the loading flags.

    The workspace is the sole owner of the last ExecutionResult: every
    submission replaces it, and deleting the last staged file clears it.
    """

    def __init__(
        self,
        config: ChatExcelConfig,
        store: UploadStagingStore,
        sandbox: SandboxManager,
        orchestrator: AnalysisOrchestrator,
        closers: list[Any] | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._sandbox = sandbox
        self._orchestrator = orchestrator
        self._closers = closers or []
        self._lock = asyncio.Lock()
        self.result: ExecutionResult | None = None
        self._http_enabled = False

    @classmethod
    def from_config(
        cls,
        config: ChatExcelConfig,
        resolver: CommandResolver | None = None,
        quota: QuotaGate | None = None,
    ) -> Workspace:
        """Wire the default stack: in-process runtime, HTTP resolver and quota gate."""
        store = UploadStagingStore(config)
        sandbox = SandboxManager(config, PythonRuntime)
        resolver = resolver or CommandResolver(config)
        quota = quota or build_quota_gate(config)
        orchestrator = AnalysisOrchestrator(config, store, sandbox, resolver, quota)
        return cls(config, store, sandbox, orchestrator, closers=[resolver, quota])

    def enable_http(self) -> None:
        """Signal that the HTTP output-file server is running."""
        self._http_enabled = True

    def download_url(self, filename: str) -> str | None:
        """Build the download URL for an output file, or None if HTTP server not running."""
        if not self._http_enabled:
            return None
        host = self._config.http_host
        if host in ("0.0.0.0", "127.0.0.1"):
            host = "localhost"
        return f"http://{host}:{self._config.http_port}/outputs/{filename}"

    @property
    def files(self) -> list[UploadedFile]:
        return self._store.files

    @property
    def analyzing(self) -> bool:
        return self._orchestrator.state is not OrchestratorState.IDLE

    @property
    def executing(self) -> bool:
        return self._orchestrator.state is OrchestratorState.EXECUTING

    @property
    def sandbox_ready(self) -> bool:
        return self._sandbox.is_ready

    @property
    def total_bytes(self) -> int:
        return self._store.total_bytes

    def status(self) -> WorkspaceStatus:
        return WorkspaceStatus(
            files=self.files,
            analyzing=self.analyzing,
            executing=self.executing,
            sandbox_ready=self.sandbox_ready,
            has_result=self.result is not None,
        )

    # --- Intents ---

    async def upload(self, files: list[IncomingFile]) -> UploadReport:
        """Stage a batch and queue the admitted files for the sandbox."""
        report = await self._store.add(files)
        for info in report.staged:
            data = self._store.get(info.name)
            if data is not None:
                self._sandbox.enqueue_file(info.name, data)
        return report

    async def delete(self, name: str) -> bool:
        """Unstage a file and drop it from the sandbox if it was materialized there."""
        removed = self._store.remove(name)
        await self._sandbox.discard_file(name)
        if not len(self._store) and self.result is not None:
            log.info("result_cleared")
            self.result = None
        return removed

    async def submit(
        self,
        instruction: str,
        mode: Mode = "basic",
        identity: Identity | None = None,
    ) -> ExecutionResult:
        """Run an analysis and make its result the current one."""
        if self._lock.locked():
            raise WorkspaceBusy("An analysis is already running. Wait for it to finish.")
        async with self._lock:
            self.result = None
            result = await self._orchestrator.execute(instruction, mode, identity)
            self.result = result
            return result

    def output_file(self, filename: str) -> OutputFile | None:
        """An output file of the current result, by name."""
        if self.result is None:
            return None
        for output in self.result.output_files:
            if output.filename == filename:
                return output
        return None

    async def aclose(self) -> None:
        await self._sandbox.shutdown()
        for closer in self._closers:
            aclose = getattr(closer, "aclose", None)
            if aclose is not None:
                await aclose()

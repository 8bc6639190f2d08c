"""Lazy, process-wide lifecycle of the code-execution sandbox."""

from __future__ import annotations

import asyncio
import contextlib
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Literal

import structlog

from chatexcel.config import ChatExcelConfig
from chatexcel.errors import ChatExcelError, SandboxInitError
from chatexcel.models import CapturedOutput, RunOutcome

log = structlog.get_logger("chatexcel.sandbox")

SandboxState = Literal["stopped", "starting", "ready"]


class CaptureSession(ABC):
    """Output capture installed for the duration of one run."""

    @abstractmethod
    async def collect(self) -> CapturedOutput:
        """Read back captured text and drain every emitted figure."""


class SandboxRuntime(ABC):
    """Capabilities the orchestrator relies on.

    A runtime offers redirectable text streams, a filesystem addressable by
    name, and a sink for figures the executed code asks to display. Nothing
    else about its internals is assumed.
    """

    @abstractmethod
    async def start(self) -> None:
        """Boot the interpreter. Raises SandboxInitError on failure."""

    @abstractmethod
    async def load_packages(self, names: list[str]) -> None:
        """Make the bundled base packages importable."""

    @abstractmethod
    async def install_packages(self, names: list[str]) -> None:
        """Install additional packages by name."""

    @abstractmethod
    async def write_file(self, name: str, data: bytes) -> None:
        """Write (or overwrite) a file in the sandbox filesystem."""

    @abstractmethod
    async def read_file(self, name: str) -> bytes:
        """Read a file back. Raises SandboxFileNotFound when absent."""

    @abstractmethod
    async def delete_file(self, name: str) -> bool:
        """Best-effort removal. Returns False when the file did not exist."""

    @abstractmethod
    async def run(self, source: str, timeout: float | None = None) -> RunOutcome:
        """Execute a source unit. Errors raised by the code are reported, not raised."""

    @abstractmethod
    def capture(self) -> AbstractAsyncContextManager[CaptureSession]:
        """Install stream redirection and the figure sink; restore both on exit."""

    @abstractmethod
    async def close(self) -> None:
        """Release the interpreter and its filesystem."""


RuntimeFactory = Callable[[ChatExcelConfig], SandboxRuntime]


def build_prelude(config: ChatExcelConfig) -> str:
    """Source run once after bootstrap: shared imports and plotting defaults."""
    return "\n".join(
        [
            "import io",
            "import sys",
            "import pandas as pd",
            "import numpy as np",
            "import matplotlib",
            "matplotlib.use('agg')",
            "import matplotlib.pyplot as plt",
            "import plotly.express as px",
            "import plotly.graph_objects as go",
            f"plt.style.use({config.plot_style!r})",
            "matplotlib.rcParams['figure.figsize'] = "
            f"({config.figure_width_in!r}, {config.figure_height_in!r})",
            f"matplotlib.rcParams['figure.dpi'] = {config.figure_dpi!r}",
        ]
    )


class SandboxManager:
    """Own the single sandbox runtime of this process.

    ``ensure_ready`` boots the runtime on first use and memoizes it. Callers
    arriving while a bootstrap is in flight await that same bootstrap. A
    failed bootstrap leaves the manager stopped so the next call starts over.
    """

    def __init__(self, config: ChatExcelConfig, runtime_factory: RuntimeFactory) -> None:
        self._config = config
        self._factory = runtime_factory
        self._runtime: SandboxRuntime | None = None
        self._bootstrap: asyncio.Task[SandboxRuntime] | None = None
        self._pending: dict[str, bytes] = {}

    @property
    def state(self) -> SandboxState:
        if self._runtime is not None:
            return "ready"
        if self._bootstrap is not None and not self._bootstrap.done():
            return "starting"
        return "stopped"

    @property
    def is_ready(self) -> bool:
        return self._runtime is not None

    @property
    def pending_files(self) -> list[str]:
        return list(self._pending)

    async def ensure_ready(self) -> SandboxRuntime:
        """Return the running sandbox, booting it if necessary."""
        if self._runtime is not None:
            return self._runtime
        if self._bootstrap is None or self._bootstrap.done():
            self._bootstrap = asyncio.create_task(self._boot())
        # Shield so one cancelled caller does not abort the shared bootstrap.
        return await asyncio.shield(self._bootstrap)

    async def _boot(self) -> SandboxRuntime:
        log.info("sandbox_bootstrap_start")
        start = time.monotonic()
        runtime: SandboxRuntime | None = None
        try:
            runtime = self._factory(self._config)
            await runtime.start()
            await runtime.load_packages(list(self._config.base_packages))
            await runtime.install_packages(list(self._config.extra_packages))
            prelude = await runtime.run(build_prelude(self._config))
            if not prelude.ok:
                raise SandboxInitError(
                    f"Sandbox prelude failed: {prelude.error_type}: {prelude.error_message}"
                )
            await self._flush_pending(runtime)
        except asyncio.CancelledError:
            if runtime is not None:
                await self._close_quietly(runtime)
            raise
        except Exception as exc:
            log.error("sandbox_bootstrap_failed", error=str(exc), exc_type=type(exc).__name__)
            if runtime is not None:
                await self._close_quietly(runtime)
            if isinstance(exc, SandboxInitError):
                raise
            message = exc.message if isinstance(exc, ChatExcelError) else str(exc)
            raise SandboxInitError(f"Sandbox initialization failed: {message}") from exc

        self._runtime = runtime
        duration_ms = int((time.monotonic() - start) * 1000)
        log.info("sandbox_ready", duration_ms=duration_ms)
        return runtime

    async def _flush_pending(self, runtime: SandboxRuntime) -> None:
        """Write files staged while the bootstrap was in flight, once.

        The queue stays live during the flush: a file discarded before its
        turn is skipped, one discarded while its write was in flight is
        deleted again, and one replaced mid-write is written again.
        """
        while self._pending:
            name, data = next(iter(self._pending.items()))
            await runtime.write_file(name, data)
            current = self._pending.get(name)
            if current is data:
                del self._pending[name]
                log.debug("pending_file_written", filename=name, size_bytes=len(data))
            elif current is None:
                await runtime.delete_file(name)
                log.debug("pending_file_discarded", filename=name)

    @staticmethod
    async def _close_quietly(runtime: SandboxRuntime) -> None:
        try:
            await runtime.close()
        except Exception as exc:
            log.warning("sandbox_close_failed", error=str(exc))

    # --- Staged-file bookkeeping ---

    def enqueue_file(self, name: str, data: bytes) -> None:
        """Queue a staged file for the bootstrap to write.

        Once the sandbox is ready the queue is not used: every execution
        re-materializes the staged files itself.
        """
        if self._runtime is None:
            self._pending[name] = data

    async def discard_file(self, name: str) -> None:
        """Forget a file: drop it from the queue and, if present, the sandbox."""
        self._pending.pop(name, None)
        if self._runtime is None:
            return
        removed = await self._runtime.delete_file(name)
        if not removed:
            log.debug("sandbox_file_absent", filename=name)

    async def shutdown(self) -> None:
        """Close the runtime and return to the stopped state."""
        if self._bootstrap is not None and not self._bootstrap.done():
            self._bootstrap.cancel()
            with contextlib.suppress(asyncio.CancelledError, SandboxInitError):
                await self._bootstrap
        self._bootstrap = None
        runtime, self._runtime = self._runtime, None
        if runtime is not None:
            await runtime.close()
            log.info("sandbox_shutdown")

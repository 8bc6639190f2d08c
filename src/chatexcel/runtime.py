"""In-process, single-tenant sandbox runtime.

The sandbox is one persistent global namespace plus a private working
directory that stands in for its filesystem. Every operation runs on a single
dedicated worker thread, so sandboxed code is evaluated strictly in order and
never blocks the event loop.

Capture hooks (stdout/stderr redirection and the plotly ``show`` sink) are
process-global while installed and are always removed on exit.
"""

from __future__ import annotations

import asyncio
import base64
import builtins
import functools
import importlib
import importlib.util
import io
import os
import shutil
import sys
import tempfile
import time
import traceback
from collections.abc import AsyncIterator, Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from types import FrameType
from typing import Any, TypeVar

import structlog

from chatexcel.config import ChatExcelConfig
from chatexcel.errors import InvalidFilename, SandboxFileNotFound, SandboxInitError
from chatexcel.models import CapturedOutput, Chart, RunOutcome
from chatexcel.sandbox import CaptureSession, SandboxRuntime
from chatexcel.validation import is_safe_filename

log = structlog.get_logger("chatexcel.runtime")

SOURCE_NAME = "<analysis>"

T = TypeVar("T")


class _DeadlineExceeded(BaseException):
    """Raised inside sandboxed frames once the run's deadline has passed.

    Derives from BaseException so ``except Exception`` in user code cannot
    swallow it.
    """


class _DeadlineTracer:
    """sys.settrace hook that interrupts a run after ``seconds``.

    Every new frame is checked on entry; frames of the analysis source are
    also checked line by line so tight loops without calls are interrupted.
    Long-running C extension calls cannot be interrupted.
    """

    def __init__(self, seconds: float) -> None:
        self._expires = time.monotonic() + seconds

    def __call__(self, frame: FrameType, event: str, arg: Any) -> Any:
        if time.monotonic() > self._expires:
            raise _DeadlineExceeded
        if frame.f_code.co_filename == SOURCE_NAME:
            return self._local
        return None

    def _local(self, frame: FrameType, event: str, arg: Any) -> Any:
        if event == "line" and time.monotonic() > self._expires:
            raise _DeadlineExceeded
        return self._local


def _validate_name(name: str) -> None:
    if not is_safe_filename(name):
        raise InvalidFilename(f"Invalid sandbox filename '{name}'.")


def _render_matplotlib() -> str | None:
    """Rasterize the current figure to base64 PNG and close every open figure.

    Figures are closed even when drawing raises.
    """
    import matplotlib.pyplot as plt

    if not plt.get_fignums():
        return None
    buf = io.BytesIO()
    try:
        plt.savefig(buf, format="png", bbox_inches="tight")
    finally:
        plt.close("all")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class _PythonCapture(CaptureSession):
    """Stream buffers and figure accumulator for one run."""

    def __init__(self, runtime: PythonRuntime) -> None:
        self._runtime = runtime
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()
        self.figures: list[Any] = []
        self._saved_streams: tuple[Any, Any] | None = None
        self._figure_cls: type | None = None
        self._own_show: Any = None

    def install(self) -> None:
        import plotly.graph_objects as go

        figure_cls = go.Figure
        self._own_show = figure_cls.__dict__.get("show")
        sink = self.figures

        def _capturing_show(fig: Any, *args: Any, **kwargs: Any) -> None:
            sink.append(fig)

        figure_cls.show = _capturing_show  # type: ignore[method-assign]
        self._figure_cls = figure_cls

        self._saved_streams = (sys.stdout, sys.stderr)
        sys.stdout, sys.stderr = self.stdout, self.stderr

    def restore(self) -> None:
        if self._saved_streams is not None:
            sys.stdout, sys.stderr = self._saved_streams
            self._saved_streams = None
        if self._figure_cls is not None:
            if self._own_show is None:
                # show was inherited from BaseFigure; drop the override
                delattr(self._figure_cls, "show")
            else:
                self._figure_cls.show = self._own_show  # type: ignore[attr-defined]
            self._figure_cls = None

    def _collect(self) -> CapturedOutput:
        # Text first: a figure that fails to render must not cost the run its output.
        stdout = self.stdout.getvalue()
        stderr = self.stderr.getvalue()
        charts: list[Chart] = []
        notes: list[str] = []

        try:
            png = _render_matplotlib()
        except Exception as exc:
            log.warning("chart_render_failed", kind="matplotlib", error=str(exc))
            notes.append(f"Failed to render matplotlib figure: {type(exc).__name__}: {exc}")
        else:
            if png is not None:
                charts.append(Chart(kind="matplotlib", payload=png))

        for index, fig in enumerate(self.figures):
            try:
                payload = fig.to_json()
            except Exception as exc:
                log.warning("chart_render_failed", kind="plotly", index=index, error=str(exc))
                notes.append(f"Failed to serialize plotly figure {index}: {type(exc).__name__}: {exc}")
                continue
            charts.append(Chart(kind="plotly", payload=payload))
        self.figures.clear()

        if notes:
            if stderr and not stderr.endswith("\n"):
                stderr += "\n"
            stderr += "".join(f"{note}\n" for note in notes)
        return CapturedOutput(stdout=stdout, stderr=stderr, charts=charts)

    async def collect(self) -> CapturedOutput:
        return await self._runtime.call(self._collect)


class PythonRuntime(SandboxRuntime):
    """Execute analysis code in this interpreter, isolated by namespace and cwd."""

    def __init__(self, config: ChatExcelConfig) -> None:
        self._config = config
        self._executor: ThreadPoolExecutor | None = None
        self._workdir: Path | None = None
        self._owns_workdir = False
        self._namespace: dict[str, Any] = {}

    @property
    def workdir(self) -> Path:
        if self._workdir is None:
            raise SandboxInitError("Sandbox runtime is not started.")
        return self._workdir

    @property
    def namespace(self) -> dict[str, Any]:
        return self._namespace

    async def call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn`` on the sandbox thread."""
        if self._executor is None:
            raise SandboxInitError("Sandbox runtime is not started.")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._config.sandbox_dir is not None:
            workdir = Path(self._config.sandbox_dir)
            workdir.mkdir(parents=True, exist_ok=True)
            self._owns_workdir = False
        else:
            workdir = Path(tempfile.mkdtemp(prefix="chatexcel-"))
            self._owns_workdir = True
        self._workdir = workdir.resolve()
        self._namespace = {"__name__": "__main__", "__builtins__": builtins}
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chatexcel-sandbox")
        log.info("runtime_started", workdir=str(self._workdir))

    async def load_packages(self, names: list[str]) -> None:
        for name in names:
            start = time.monotonic()
            try:
                await self.call(importlib.import_module, name)
            except ImportError as exc:
                raise SandboxInitError(f"Base package '{name}' could not be loaded: {exc}") from exc
            log.info(
                "package_loaded",
                package=name,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

    async def install_packages(self, names: list[str]) -> None:
        missing = [name for name in names if importlib.util.find_spec(name) is None]
        if not missing:
            log.debug("packages_present", packages=names)
            return
        if not self._config.allow_package_install:
            raise SandboxInitError(
                f"Required packages are not installed: {', '.join(missing)}"
            )

        cmd = [sys.executable, "-m", "pip", "install", "--quiet", *missing]
        if self._config.package_index_url:
            cmd += ["--index-url", self._config.package_index_url]
        log.info("package_install_start", packages=missing)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _out, err = await proc.communicate()
        except OSError as exc:
            raise SandboxInitError(f"Package installer could not run: {exc}") from exc

        if proc.returncode != 0:
            detail = err.decode("utf-8", errors="replace").strip().splitlines()[-1:] or [""]
            raise SandboxInitError(
                f"Installing {', '.join(missing)} failed (exit {proc.returncode}): {detail[0]}"
            )
        importlib.invalidate_caches()
        log.info("package_install_done", packages=missing)

    async def close(self) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            await asyncio.to_thread(executor.shutdown, wait=True)
        self._namespace.clear()
        if self._owns_workdir and self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
        log.info("runtime_closed", workdir=str(self._workdir))
        self._workdir = None

    # --- Filesystem ---

    def _path(self, name: str) -> Path:
        _validate_name(name)
        return self.workdir / name

    async def write_file(self, name: str, data: bytes) -> None:
        path = self._path(name)
        await self.call(path.write_bytes, data)

    async def read_file(self, name: str) -> bytes:
        path = self._path(name)
        try:
            return await self.call(path.read_bytes)
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise SandboxFileNotFound(f"No file named '{name}' in the sandbox.") from exc

    async def delete_file(self, name: str) -> bool:
        path = self._path(name)

        def _unlink() -> bool:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        return await self.call(_unlink)

    # --- Execution ---

    async def run(self, source: str, timeout: float | None = None) -> RunOutcome:
        return await self.call(self._run, source, timeout)

    def _run(self, source: str, timeout: float | None) -> RunOutcome:
        start = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            code = compile(source, SOURCE_NAME, "exec")
        except SyntaxError as exc:
            return RunOutcome(
                ok=False,
                error_type="SyntaxError",
                error_message=str(exc),
                traceback="".join(traceback.format_exception_only(exc)),
                duration_ms=_elapsed(),
            )

        previous_cwd = os.getcwd()
        previous_trace = sys.gettrace()
        try:
            os.chdir(self.workdir)
            if timeout:
                sys.settrace(_DeadlineTracer(timeout))
            exec(code, self._namespace)  # noqa: S102
        except _DeadlineExceeded:
            return RunOutcome(
                ok=False,
                error_type="TimeoutError",
                error_message=f"Execution timed out after {timeout:g}s",
                timed_out=True,
                duration_ms=_elapsed(),
            )
        except (Exception, SystemExit) as exc:
            # Skip this method's own frame; the rest belongs to the analysis code.
            frames = exc.__traceback__.tb_next if exc.__traceback__ else None
            tb = traceback.format_exception(type(exc), exc, frames)
            return RunOutcome(
                ok=False,
                error_type=type(exc).__name__,
                error_message=str(exc),
                traceback="".join(tb),
                duration_ms=_elapsed(),
            )
        finally:
            sys.settrace(previous_trace)
            os.chdir(previous_cwd)

        return RunOutcome(ok=True, duration_ms=_elapsed())

    @asynccontextmanager
    async def capture(self) -> AsyncIterator[CaptureSession]:
        session = _PythonCapture(self)
        await self.call(session.install)
        try:
            yield session
        finally:
            await self.call(session.restore)

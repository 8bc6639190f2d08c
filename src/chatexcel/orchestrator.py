"""Turn one user instruction into a single ExecutionResult.

Idle -> Resolving -> (NeedMoreInfo | OutOfScope | Executing) -> (Succeeded | Failed) -> Idle

The resolver call and the sandbox warm-up run concurrently so the sandbox
cold start hides behind network latency. Staged files are copied into the
sandbox before every run, capture hooks wrap the run and are always torn
down, and every failure ends in a renderable result.
"""

from __future__ import annotations

import asyncio
import enum
import time
import uuid

import structlog

from chatexcel.config import ChatExcelConfig
from chatexcel.errors import ChatExcelError, MalformedCommand, NoFilesStaged, QuotaDenied
from chatexcel.logging import run_id_var, submission_context
from chatexcel.models import (
    AnalysisRequest,
    CapturedOutput,
    ExecutionResult,
    Identity,
    Mode,
    OutputFile,
    ResolvedCommand,
    RunOutcome,
)
from chatexcel.quota import QuotaGate, denial_message
from chatexcel.resolver import CommandResolver, ensure_valid
from chatexcel.sandbox import SandboxManager, SandboxRuntime
from chatexcel.staging import UploadStagingStore

log = structlog.get_logger("chatexcel.orchestrator")


class OrchestratorState(enum.Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    EXECUTING = "executing"


def generate_submission_id() -> str:
    return f"sub_{uuid.uuid4().hex[:12]}"


def _log_warmup_failure(task: asyncio.Task[SandboxRuntime]) -> None:
    """Retrieve the outcome of a warm-up nobody is waiting on any more."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning("sandbox_warmup_failed", error=str(exc), exc_type=type(exc).__name__)


class AnalysisOrchestrator:
    """Coordinate staging store, resolver and sandbox for one submission at a time.

    Holds no result between submissions; the caller owns the returned value.
    """

    def __init__(
        self,
        config: ChatExcelConfig,
        store: UploadStagingStore,
        sandbox: SandboxManager,
        resolver: CommandResolver,
        quota: QuotaGate,
    ) -> None:
        self._config = config
        self._store = store
        self._sandbox = sandbox
        self._resolver = resolver
        self._quota = quota
        self._state = OrchestratorState.IDLE

    @property
    def state(self) -> OrchestratorState:
        return self._state

    async def execute(
        self,
        instruction: str,
        mode: Mode = "basic",
        identity: Identity | None = None,
    ) -> ExecutionResult:
        """Run one submission end to end. Never raises for pipeline failures."""
        start = time.monotonic()
        with submission_context(generate_submission_id(), mode, len(self._store)):
            try:
                result = await self._execute(instruction, mode, identity or Identity())
            except ChatExcelError as exc:
                log.warning("analysis_failed", error=exc.code, message=exc.message)
                result = ExecutionResult(status="error", error=exc.code, error_message=exc.message)
            except Exception as exc:
                log.exception("analysis_crashed", exc_type=type(exc).__name__)
                result = ExecutionResult(
                    status="error",
                    error="internal_error",
                    error_message=f"Analysis failed, please try again later. ({exc})",
                )
            finally:
                self._state = OrchestratorState.IDLE

            log.info(
                "analysis_done",
                status=result.status,
                charts=len(result.charts),
                output_files=len(result.output_files),
                duration_ms=int((time.monotonic() - start) * 1000),
            )
            return result

    async def _execute(self, instruction: str, mode: Mode, identity: Identity) -> ExecutionResult:
        if not len(self._store):
            raise NoFilesStaged("Please upload a file to analyze first.")

        request = AnalysisRequest(
            user_instruction=instruction.strip(),
            table_info=self._store.table_info(),
            mode=mode,
        )
        ensure_valid(request)

        decision = await self._quota.check(mode, identity)
        if not decision.allowed:
            raise QuotaDenied(denial_message(mode, decision))

        self._state = OrchestratorState.RESOLVING
        ready_task = asyncio.create_task(self._sandbox.ensure_ready())
        try:
            command = await self._resolver.resolve(request)
        except BaseException:
            # Warm-up keeps running for the next submission.
            ready_task.add_done_callback(_log_warmup_failure)
            raise
        log.info("command_resolved", next_step=command.next_step)
        runtime = await ready_task

        if command.next_step == "need_more_info":
            return ExecutionResult(status="need_more_info", message=command.message)
        if command.next_step == "out_of_scope":
            return ExecutionResult(status="out_of_scope", message=command.message)

        code = command.code
        if not code or not code.strip():
            raise MalformedCommand("The system could not generate analysis code.")
        if len(code.encode("utf-8")) > self._config.max_code_bytes:
            raise MalformedCommand(
                f"Generated code exceeds {self._config.max_code_bytes} byte limit."
            )

        self._state = OrchestratorState.EXECUTING
        return await self._run_command(runtime, command, code)

    async def _materialize(self, runtime: SandboxRuntime) -> None:
        """Copy every staged file into the sandbox, overwriting stale copies."""
        for name, data in self._store.entries():
            await runtime.write_file(name, data)
        log.debug("files_materialized", count=len(self._store))

    async def _run_command(
        self, runtime: SandboxRuntime, command: ResolvedCommand, code: str
    ) -> ExecutionResult:
        await self._materialize(runtime)

        run_token = run_id_var.set(f"run_{uuid.uuid4().hex[:8]}")
        log.info("sandbox_run_start", code_bytes=len(code))
        outcome: RunOutcome
        captured: CapturedOutput
        try:
            async with runtime.capture() as capture:
                try:
                    outcome = await runtime.run(code, timeout=self._config.exec_timeout_s)
                finally:
                    captured = await capture.collect()
        finally:
            run_id_var.reset(run_token)

        output = captured.text
        output_files, notes = await self._read_outputs(runtime, command.output_filenames)
        for note in notes:
            output += f"\n{note}"

        log.info(
            "sandbox_run_done",
            ok=outcome.ok,
            timed_out=outcome.timed_out,
            duration_ms=outcome.duration_ms,
            output_chars=len(output),
        )

        if not outcome.ok:
            log.info("sandbox_code_raised", error_type=outcome.error_type, traceback=outcome.traceback)
            return ExecutionResult(
                status="error",
                captured_output=output,
                charts=captured.charts,
                output_files=output_files,
                error="timeout" if outcome.timed_out else "execution_error",
                error_message=f"{outcome.error_type}: {outcome.error_message}",
            )
        return ExecutionResult(
            status="success",
            captured_output=output,
            charts=captured.charts,
            output_files=output_files,
        )

    async def _read_outputs(
        self, runtime: SandboxRuntime, filenames: list[str]
    ) -> tuple[list[OutputFile], list[str]]:
        """Read expected output files back. Missing ones become notes, not failures."""
        files: list[OutputFile] = []
        notes: list[str] = []
        for name in filenames:
            if name in self._store:
                log.warning("output_overwrites_input", filename=name)
            try:
                content = await runtime.read_file(name)
            except ChatExcelError as exc:
                log.warning("output_file_missing", filename=name, error=exc.code)
                notes.append(f"Failed to read output file '{name}': {exc.message}")
                continue
            files.append(OutputFile(filename=name, content=content, size_bytes=len(content)))
        return files, notes

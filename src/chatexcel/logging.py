"""Structured logging setup with structlog — file handler only, never stdout."""

import logging
import logging.handlers
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import structlog

from chatexcel.config import ChatExcelConfig

# Correlation context vars, set per submission and per run
submission_id_var: ContextVar[str | None] = ContextVar("submission_id", default=None)
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)


def _add_context_vars(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Inject submission_id and run_id from contextvars into every log line."""
    sid = submission_id_var.get()
    if sid is not None:
        event_dict.setdefault("submission_id", sid)
    rid = run_id_var.get()
    if rid is not None:
        event_dict.setdefault("run_id", rid)
    return event_dict


@contextmanager
def submission_context(submission_id: str, mode: str, staged_files: int) -> Iterator[None]:
    """Tag every log line of one submission with its id, mode and staged file count."""
    token = submission_id_var.set(submission_id)
    try:
        with structlog.contextvars.bound_contextvars(mode=mode, staged_files=staged_files):
            yield
    finally:
        submission_id_var.reset(token)


def configure_logging(config: ChatExcelConfig) -> None:
    """Set up structlog with file-only output.

    Stdout is reserved for the MCP stdio transport and for sandbox output
    capture, so nothing here may write to it.
    """
    config.log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=3,
    )
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    file_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(file_handler)
    root_logger.setLevel(level)

    if config.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)  # type: ignore[assignment]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_context_vars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    file_handler.setFormatter(formatter)

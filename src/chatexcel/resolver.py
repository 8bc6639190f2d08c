"""One round-trip to the remote code-generation service."""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from chatexcel.config import ChatExcelConfig
from chatexcel.errors import (
    InvalidRequest,
    MalformedCommand,
    ResolverError,
    ResolverTimeout,
    ServiceUnavailable,
)
from chatexcel.models import AnalysisRequest, ResolvedCommand

log = structlog.get_logger("chatexcel.resolver")

FALLBACK_ERROR = "The analysis service is temporarily unavailable."


def ensure_valid(request: AnalysisRequest) -> None:
    """Reject requests that must never reach the network."""
    if not request.user_instruction.strip():
        raise InvalidRequest("Please describe what you want to do with the data.")
    if not request.table_info:
        raise InvalidRequest("Request is incomplete: no table information.")


def _error_detail(response: httpx.Response) -> str:
    """Pull a human-readable message out of an error response."""
    try:
        body: Any = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:500] if text else FALLBACK_ERROR

    if isinstance(body, dict):
        for key in ("detail", "message"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("detail"), str):
            return error["detail"]
        if isinstance(error, str) and error:
            return error
    return FALLBACK_ERROR


class CommandResolver:
    """Translate an instruction plus table schema into a ResolvedCommand.

    Single attempt, no retries: a failed call is reported to the caller, who
    may resubmit.
    """

    def __init__(
        self,
        config: ChatExcelConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._internal_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.resolver_timeout_s)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.resolver_api_key:
            headers["Authorization"] = f"Bearer {self._config.resolver_api_key}"
        return headers

    async def resolve(self, request: AnalysisRequest) -> ResolvedCommand:
        ensure_valid(request)

        log.info(
            "resolver_request",
            mode=request.mode,
            tables=list(request.table_info),
            instruction_chars=len(request.user_instruction),
        )
        start = time.monotonic()
        try:
            response = await self._client.post(
                self._config.resolver_url,
                json=request.to_payload(),
                headers=self._headers(),
                timeout=self._config.resolver_timeout_s,
            )
        except httpx.TimeoutException as exc:
            log.error("resolver_timeout", timeout_s=self._config.resolver_timeout_s)
            raise ResolverTimeout(
                f"The analysis service did not answer within {self._config.resolver_timeout_s:g}s."
            ) from exc
        except httpx.TransportError as exc:
            log.error("resolver_unreachable", error=str(exc), exc_type=type(exc).__name__)
            raise ServiceUnavailable(f"{FALLBACK_ERROR} ({exc})") from exc

        duration_ms = int((time.monotonic() - start) * 1000)
        if response.is_error:
            detail = _error_detail(response)
            log.warning(
                "resolver_error",
                status_code=response.status_code,
                detail=detail,
                duration_ms=duration_ms,
            )
            raise ResolverError(detail, status_code=response.status_code)

        try:
            command = ResolvedCommand.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            log.error("resolver_bad_payload", error=str(exc))
            raise MalformedCommand("The analysis service returned an unreadable response.") from exc

        log.info(
            "resolver_response",
            next_step=command.next_step,
            code_bytes=len(command.code or ""),
            output_files=command.output_filenames,
            duration_ms=duration_ms,
        )
        return command

    async def aclose(self) -> None:
        if self._internal_client:
            await self._client.aclose()

"""Ask the quota collaborator whether an operation class is permitted."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

import httpx
import structlog

from chatexcel.config import ChatExcelConfig
from chatexcel.errors import QuotaCheckFailed
from chatexcel.models import Identity, Mode, QuotaDecision

log = structlog.get_logger("chatexcel.quota")


def client_ip(headers: Mapping[str, str]) -> str:
    """Best guess at the caller's address from proxy/CDN headers."""
    lowered = {k.lower(): v for k, v in headers.items()}
    if cf_ip := lowered.get("cf-connecting-ip"):
        return cf_ip.strip()
    if forwarded := lowered.get("x-forwarded-for"):
        return forwarded.split(",")[0].strip()
    if real_ip := lowered.get("x-real-ip"):
        return real_ip.strip()
    return "0.0.0.0"


def denial_message(mode: Mode, decision: QuotaDecision) -> str:
    return decision.message or f"You've reached your {mode} operations limit for this month."


class QuotaGate(Protocol):
    """Answers "may this identity run an operation of this class right now"."""

    async def check(self, mode: Mode, identity: Identity) -> QuotaDecision: ...


class AllowAllQuotaGate:
    """Used when no quota collaborator is configured."""

    async def check(self, mode: Mode, identity: Identity) -> QuotaDecision:
        return QuotaDecision(allowed=True)


class HttpQuotaGate:
    """Quota check over HTTP.

    The identity is keyed by user id when signed in, else by client address.
    """

    def __init__(
        self,
        config: ChatExcelConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.quota_url:
            raise ValueError("HttpQuotaGate needs quota_url to be configured")
        self._config = config
        self._url = config.quota_url
        self._internal_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.quota_timeout_s)

    async def check(self, mode: Mode, identity: Identity) -> QuotaDecision:
        payload = {
            "operationType": mode,
            "userId": identity.user_id,
            "ipAddress": None if identity.user_id else (identity.ip_address or "0.0.0.0"),
        }
        try:
            response = await self._client.post(
                self._url, json=payload, timeout=self._config.quota_timeout_s
            )
        except httpx.HTTPError as exc:
            log.error("quota_unreachable", error=str(exc), exc_type=type(exc).__name__)
            raise QuotaCheckFailed(
                "Failed to check operation quota. Please try again."
            ) from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        # The collaborator answers {"allowed": false, "error": ...} even on 4xx/5xx.
        if not isinstance(body, dict) or "allowed" not in body:
            log.warning("quota_error", status_code=response.status_code)
            message = body.get("error") if isinstance(body, dict) else None
            raise QuotaCheckFailed(message or "Failed to check operation quota. Please try again.")

        decision = QuotaDecision(
            allowed=bool(body.get("allowed", False)),
            message=body.get("error"),
            remaining_quota=body.get("remainingQuota"),
            total_quota=body.get("totalQuota"),
            used_quota=body.get("usedQuota"),
            subscription_tier=body.get("subscriptionTier"),
        )
        log.info(
            "quota_checked",
            mode=mode,
            allowed=decision.allowed,
            remaining=decision.remaining_quota,
        )
        return decision

    async def aclose(self) -> None:
        if self._internal_client:
            await self._client.aclose()


def build_quota_gate(config: ChatExcelConfig) -> QuotaGate:
    if config.quota_url:
        return HttpQuotaGate(config)
    return AllowAllQuotaGate()

"""Client for the on-demand service's natural-language intent resolver."""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
import structlog

from chatgate.core.domain.config_schema import OnDemandSettings
from chatgate.core.domain.errors import ResolverError
from chatgate.core.interfaces.llm import ResolvedIntent

logger = structlog.get_logger(__name__)

RESOLVE_PATH = "/v1/intent/resolve"


def parse_resolve_response(data: Any) -> ResolvedIntent | None:
    """Build a ``ResolvedIntent`` from the service payload.

    Returns None for ``ok: false``, a missing intent, or ``need_clarify``.
    """
    if not isinstance(data, dict) or not data.get("ok") or data.get("need_clarify"):
        return None
    intent = str(data.get("intent") or "").strip()
    if not intent:
        return None
    params = data.get("params")
    confidence = data.get("confidence")
    return ResolvedIntent(
        intent=intent,
        params=params if isinstance(params, dict) else {},
        confidence=float(confidence) if isinstance(confidence, (int, float)) else 0.0,
    )


class OnDemandIntentResolver:
    """IntentResolverProtocol implementation over HTTP (aiohttp).

    ``context`` carries ``request_id``, ``channel``, ``chat_id`` and
    ``user_id``; they are forwarded with the raw query.
    """

    def __init__(self, settings: OnDemandSettings) -> None:
        if not settings.url:
            raise ValueError("OnDemandIntentResolver requires settings.url")
        self.url = settings.url.rstrip("/") + RESOLVE_PATH
        self.token = settings.token
        self.timeout = aiohttp.ClientTimeout(total=settings.timeout_sec)
        self._session: aiohttp.ClientSession | None = None

    async def resolve(self, text: str, *, context: dict[str, Any]) -> ResolvedIntent | None:
        payload = {"raw_query": text, **{k: v for k, v in context.items() if v is not None}}
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        session = await self._get_session()
        try:
            async with session.post(self.url, json=payload, headers=headers) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise ResolverError(
                        f"intent resolve failed with HTTP {response.status}: {body[:200]}",
                        status=response.status,
                    )
                data = await response.json(content_type=None)
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            raise ResolverError(f"intent resolve error: {exc}") from exc

        resolved = parse_resolve_response(data)
        logger.debug(
            "on_demand.resolved",
            intent=resolved.intent if resolved else None,
            confidence=resolved.confidence if resolved else None,
        )
        return resolved

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

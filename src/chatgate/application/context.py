"""
Gateway Context

The one explicit object that owns every long-lived collaborator and cache
of a running gateway. It is built once at startup and threaded through the
router, handlers and the HTTP API.

Lifecycle:
    1. ``GatewayContext.build(settings, ...)`` wires collaborators and reads
       the policy, project registry and capability registry.
    2. ``await context.load()`` restores allow-lists and the state cache.
    3. ``await context.refresh()`` (or ``run_refresh_loop``) reloads the
       capability and project registries when their content changes and
       flushes limiter metrics.
    4. ``await context.aclose()`` flushes state and closes senders.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Mapping

import structlog

from chatgate.application.access import AccessControl, ChannelAccess
from chatgate.application.notify_service import NotifyService
from chatgate.application.policy import PolicyEvaluator
from chatgate.application.request_ids import RequestIdTracker
from chatgate.application.state_cache import StateCache
from chatgate.application.task_dispatcher import KeyedLocks, TaskDispatcher
from chatgate.core.domain.config_schema import GatewaySettings, ProjectEntry
from chatgate.core.domain.errors import ChatGateError
from chatgate.core.domain.policy import Limits
from chatgate.core.domain.priority import PriorityOrder
from chatgate.core.domain.routing import MessageEvent
from chatgate.core.interfaces.gateway import OutboundSenderProtocol
from chatgate.core.interfaces.llm import (
    IntentResolverProtocol,
    LLMProviderProtocol,
    RendererProtocol,
)
from chatgate.infrastructure.audit.ledger import FileLedger
from chatgate.infrastructure.config.capabilities import CapabilityRegistry
from chatgate.infrastructure.config.loader import (
    CHANNELS,
    LoadedPolicy,
    ProjectRegistrySource,
    load_policy,
    owner_principals,
)
from chatgate.infrastructure.persistence.allowlist_store import AllowlistStore
from chatgate.infrastructure.persistence.locks import LockManager
from chatgate.infrastructure.persistence.policy_state_store import PolicyStateStore
from chatgate.infrastructure.persistence.task_store import FileTaskStore
from chatgate.infrastructure.runtime.exec_limiter import ExecLimiter
from chatgate.infrastructure.runtime.rate_limiter import SlidingWindowRateLimiter
from chatgate.infrastructure.runtime.renderer import SubprocessRenderer


def clip_output(text: str, limits: Limits) -> str:
    """Trim ``text`` to the decision's line and character limits."""
    lines = text.splitlines()
    clipped = len(lines) > limits.max_lines
    if clipped:
        text = "\n".join(lines[: limits.max_lines])
    if len(text) > limits.max_chars:
        text = text[: limits.max_chars]
        clipped = True
    return text + "\n…(truncated)" if clipped else text


class GatewayContext:
    """Explicit runtime state of one gateway process."""

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        loaded_policy: LoadedPolicy,
        registry_source: ProjectRegistrySource,
        capabilities: CapabilityRegistry,
        locks: LockManager,
        senders: Mapping[str, OutboundSenderProtocol] | None = None,
        llm: LLMProviderProtocol | None = None,
        resolver: IntentResolverProtocol | None = None,
        renderer: RendererProtocol | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings
        self.storage_dir = Path(settings.storage_dir)
        self.order: PriorityOrder = settings.priority_order
        self.loaded_policy = loaded_policy
        self.registry_source = registry_source
        self.capabilities = capabilities
        self.locks = locks
        self.senders: dict[str, OutboundSenderProtocol] = dict(senders or {})
        self.resolver = resolver
        self.logger = structlog.get_logger().bind(component="gateway_context")

        self.evaluator = PolicyEvaluator(
            loaded_policy.policy, policy_ok=loaded_policy.policy_ok, environ=environ
        )
        self.allowlists = AllowlistStore(self.storage_dir, locks)
        self.access = AccessControl(self.evaluator, self.channel_access)
        self.ledger = FileLedger(self.storage_dir, meta_provider=capabilities.audit_meta)
        self.limiter = ExecLimiter(settings.exec)
        self.rate_limiter = SlidingWindowRateLimiter(
            settings.rate_limit.per_user_rpm, settings.rate_limit.global_rpm
        )
        self.state = StateCache(settings.state, self.storage_dir, locks=locks)
        self.request_ids = RequestIdTracker(settings.dedupe_window_sec)
        self.task_store = FileTaskStore(self.storage_dir, locks)
        self.task_locks = KeyedLocks()
        self.dispatcher = (
            TaskDispatcher(llm, self.task_store, locks=self.task_locks) if llm is not None else None
        )
        self.policy_state = PolicyStateStore(
            self.storage_dir, locks, lock_ttl_sec=settings.locks.strategy_ttl_sec
        )
        if renderer is None and (
            settings.renderer.chart_command or settings.renderer.dashboard_command
        ):
            renderer = SubprocessRenderer(settings.renderer, self.limiter, settings.storage_dir)
        self.renderer = renderer
        self.notify = NotifyService(
            registry=lambda: self.registry_source.registry,
            senders=self.senders,
            order=self.order,
            ledger=self.ledger,
            limiter=self.limiter,
            default_project_id=settings.default_project_id,
        )

    @classmethod
    def build(
        cls,
        settings: GatewaySettings,
        *,
        senders: Mapping[str, OutboundSenderProtocol] | None = None,
        llm: LLMProviderProtocol | None = None,
        resolver: IntentResolverProtocol | None = None,
        renderer: RendererProtocol | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "GatewayContext":
        """Read configuration from disk and wire all collaborators."""
        storage = Path(settings.storage_dir)
        storage.mkdir(parents=True, exist_ok=True)
        capabilities = CapabilityRegistry(settings.capabilities_path)
        capabilities.refresh()
        return cls(
            settings,
            loaded_policy=load_policy(settings.policy_path, owner=owner_principals(settings)),
            registry_source=ProjectRegistrySource(settings.projects_path),
            capabilities=capabilities,
            locks=LockManager(storage / "locks", settings.locks),
            senders=senders,
            llm=llm,
            resolver=resolver,
            renderer=renderer,
            environ=environ if environ is not None else os.environ,
        )

    # -- lifecycle ---------------------------------------------------------

    async def load(self) -> None:
        for channel in CHANNELS:
            cfg = self.settings.channel(channel)
            await self.allowlists.load(channel, cfg.owner_chat_id)
        await self.state.load()
        self.logger.info(
            "gateway.loaded",
            policy_ok=self.loaded_policy.policy_ok,
            policy_errors=list(self.loaded_policy.errors),
            projects=len(self.registry_source.registry.projects),
            senders=sorted(self.senders),
        )

    async def refresh(self) -> dict[str, bool]:
        """Reload registries whose content changed; flush limiter metrics."""
        changed = {
            "capabilities": self.capabilities.refresh(),
            "projects": self.registry_source.reload(),
        }
        self.limiter.maybe_flush_metrics()
        if any(changed.values()):
            self.logger.info("gateway.refreshed", **changed)
        return changed

    async def run_refresh_loop(self, stop: asyncio.Event) -> None:
        interval = self.settings.capabilities_refresh_sec
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.refresh()

    async def aclose(self) -> None:
        await self.state.flush()
        self.limiter.maybe_flush_metrics(force=True)
        for closable in (*self.senders.values(), self.resolver):
            close = getattr(closable, "close", None)
            if close is not None:
                await close()
        self.logger.info("gateway.closed")

    # -- lookups -----------------------------------------------------------

    def channel_access(self, channel: str) -> ChannelAccess:
        cfg = self.settings.channel(channel)
        return ChannelAccess(
            channel=channel,
            owner_chat_id=cfg.owner_chat_id,
            owner_user_id=cfg.owner_user_id,
            allowlist_mode=cfg.allowlist_mode,
            allowed_chat_ids=self.allowlists.allowed_chat_ids(channel),
        )

    def bot_username(self, channel: str) -> str:
        return self.settings.channel(channel).bot_username

    def default_project(self) -> ProjectEntry | None:
        registry = self.registry_source.registry
        return registry.get(registry.default_project_id(self.settings.default_project_id))

    # -- outbound ----------------------------------------------------------

    async def send_text(self, channel: str, chat_id: str, text: str) -> bool:
        """Send through the channel sender under its limiter module.

        Returns False when the channel has no sender or delivery failed.
        """
        sender = self.senders.get(channel)
        if sender is None:
            self.logger.warning("gateway.no_sender", channel=channel, chat_id=chat_id)
            return False
        try:
            await self.limiter.run(channel, lambda: sender.send_text(chat_id, text))
        except ChatGateError as exc:
            self.logger.warning(
                "gateway.send_failed", channel=channel, chat_id=chat_id, error=exc.message
            )
            return False
        return True

    async def send_image(self, channel: str, chat_id: str, image_path: str, caption: str = "") -> bool:
        sender = self.senders.get(channel)
        if sender is None:
            self.logger.warning("gateway.no_sender", channel=channel, chat_id=chat_id)
            return False
        try:
            await self.limiter.run(
                channel, lambda: sender.send_image(chat_id, image_path, caption)
            )
        except ChatGateError as exc:
            self.logger.warning(
                "gateway.send_failed", channel=channel, chat_id=chat_id, error=exc.message
            )
            return False
        return True

    async def reply(self, event: MessageEvent, text: str, limits: Limits | None = None) -> bool:
        if limits is not None:
            text = clip_output(text, limits)
        return await self.send_text(event.channel, event.chat_id, text)

    async def audit(self, record: dict[str, Any]) -> None:
        await self.ledger.append(record)

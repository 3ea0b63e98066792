"""
Notify Service

Delivers outbound alerts to the chats of a project:

1. Resolve target chats from the request (``chat_id``, ``chat_ids``,
   ``chat_ids_by_target``) or the project's registered defaults.
2. Run the priority gate once per chat, with that chat's override.
3. Send through the channel sender under the ``notify`` limiter module.
4. Return and ledger one ``DeliveryRecord`` per chat, sent or not.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

import structlog

from chatgate.application.notify_gate import decide_gate, extract_gate_info, raw_priority_inputs
from chatgate.application.notify_overrides import (
    TargetOverrides,
    lookup_override,
    resolve_target_overrides,
)
from chatgate.core.domain.errors import ChatGateError, error_code
from chatgate.core.domain.notify import (
    DeliveryRecord,
    NotifyGateInfo,
    NotifyRequest,
    NotifyResult,
    NotifyTarget,
)
from chatgate.core.domain.priority import PriorityOrder
from chatgate.core.domain.result import Err, Ok, Result
from chatgate.core.interfaces.gateway import OutboundSenderProtocol
from chatgate.core.interfaces.persistence import LedgerProtocol

if TYPE_CHECKING:
    from chatgate.core.domain.config_schema import ProjectEntry
    from chatgate.infrastructure.config.loader import ProjectRegistry
    from chatgate.infrastructure.runtime.exec_limiter import ExecLimiter

logger = structlog.get_logger(__name__)

NOTIFY_MODULE = "notify"
BOTH = "both"

ResolvedChats = dict[str, list[str]]


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    text = str(value).strip()
    return [text] if text else []


def normalize_target(raw: Any) -> str:
    """``telegram``, ``feishu`` or ``both`` (default for anything else)."""
    target = NotifyTarget.parse(raw)
    return target.value if target else BOTH


def resolve_chat_ids(
    request: NotifyRequest, project: "ProjectEntry | None"
) -> Result[ResolvedChats]:
    """Resolve chat ids per target, or an ``Err`` naming what is missing."""
    target = normalize_target(request.target)
    direct = _str_list(
        request.chat_id if request.chat_id is not None
        else request.chat_ids if isinstance(request.chat_ids, list) else None
    )
    if target == BOTH and direct:
        return Err("chat_id_requires_single_target")

    by_target: Mapping[str, Any] = request.chat_ids_by_target or (
        request.chat_ids if isinstance(request.chat_ids, dict) else {}
    )
    defaults = {
        NotifyTarget.TELEGRAM.value: list(project.notify.telegram_chat_ids) if project else [],
        NotifyTarget.FEISHU.value: list(project.notify.feishu_chat_ids) if project else [],
    }

    resolved: ResolvedChats = {}
    for name in (NotifyTarget.TELEGRAM.value, NotifyTarget.FEISHU.value):
        explicit = _str_list(by_target.get(name))
        if explicit:
            resolved[name] = explicit
        elif target == name and direct:
            resolved[name] = direct
        else:
            resolved[name] = defaults[name]

    if target != BOTH:
        if not resolved[target]:
            return Err(f"missing_{target}_chat_ids")
        return Ok({target: resolved[target]})
    if not all(resolved.values()):
        return Err("missing_chat_ids_for_both")
    return Ok(resolved)


class NotifyService:
    """Gate and deliver notify requests.

    Example:
        >>> service = NotifyService(
        ...     registry=lambda: registry_source.registry,
        ...     senders={"telegram": telegram_sender},
        ...     order=PriorityOrder.default(),
        ... )
        >>> result = await service.send_text(NotifyRequest(text="...", meta={...}))
    """

    def __init__(
        self,
        *,
        registry: Callable[[], "ProjectRegistry"],
        senders: Mapping[str, OutboundSenderProtocol],
        order: PriorityOrder,
        ledger: LedgerProtocol | None = None,
        limiter: "ExecLimiter | None" = None,
        default_project_id: str | None = None,
    ) -> None:
        self._registry = registry
        self.senders = dict(senders)
        self.order = order
        self.ledger = ledger
        self.limiter = limiter
        self.default_project_id = default_project_id
        self._overrides_cache: dict[tuple[str, str], TargetOverrides] = {}

    def _project(self, project_id: str | None) -> tuple[str | None, "ProjectEntry | None"]:
        registry = self._registry()
        resolved_id = project_id or registry.default_project_id(self.default_project_id)
        return resolved_id, registry.get(resolved_id)

    def target_overrides(self, project: "ProjectEntry | None") -> TargetOverrides:
        """Overrides of ``project``, parsed once per registry content hash."""
        if project is None:
            return {}
        key = (self._registry().content_hash, project.project_id)
        cached = self._overrides_cache.get(key)
        if cached is None:
            if len(self._overrides_cache) > 64:
                self._overrides_cache.clear()
            cached = resolve_target_overrides(project, self.order)
            self._overrides_cache[key] = cached
        return cached

    async def send_text(self, request: NotifyRequest) -> NotifyResult:
        text = request.text.strip()

        async def deliver(sender: OutboundSenderProtocol, chat_id: str) -> None:
            await sender.send_text(chat_id, text)

        return await self._dispatch(request, deliver, kind="text", require_text=True)

    async def send_image(self, request: NotifyRequest) -> NotifyResult:
        image_path = (request.image_path or "").strip()
        caption = request.caption if request.caption is not None else request.text

        async def deliver(sender: OutboundSenderProtocol, chat_id: str) -> None:
            await sender.send_image(chat_id, image_path, caption or "")

        if not image_path:
            return NotifyResult(ok=False, error="missing_image_path")
        return await self._dispatch(request, deliver, kind="image", require_text=False)

    def plan(self, request: NotifyRequest, *, require_text: bool = True) -> NotifyResult:
        """Resolve chats and gate decisions without sending or auditing."""
        project_id, project = self._project(request.project_id)
        resolved = resolve_chat_ids(request, project)
        if isinstance(resolved, Err):
            logger.info("notify.rejected", error=resolved.kind, project_id=project_id)
            return NotifyResult(ok=False, error=resolved.kind, project_id=project_id)
        if require_text and not request.text.strip():
            return NotifyResult(ok=False, error="missing_text", project_id=project_id)

        gate = extract_gate_info(request, self.order)
        raw = raw_priority_inputs(request)
        overrides = self.target_overrides(project)
        records = [
            self._decide(gate, target, chat_id, overrides, raw)
            for target, chat_ids in resolved.value.items()
            for chat_id in chat_ids
        ]
        return NotifyResult(ok=True, project_id=project_id, records=records)

    async def _dispatch(
        self,
        request: NotifyRequest,
        deliver: Callable[[OutboundSenderProtocol, str], Awaitable[None]],
        *,
        kind: str,
        require_text: bool,
    ) -> NotifyResult:
        planned = self.plan(request, require_text=require_text)
        if planned.error:
            return planned
        project_id = planned.project_id
        records = planned.records
        for record in records:
            if record.sent:
                await self._deliver(record, deliver)
            await self._audit(record, project_id=project_id, kind=kind)

        ok = all(r.error is None for r in records)
        logger.info(
            "notify.dispatched",
            kind=kind,
            project_id=project_id,
            sent=sum(1 for r in records if r.sent),
            skipped=sum(1 for r in records if not r.sent),
            ok=ok,
        )
        return NotifyResult(ok=ok, project_id=project_id, records=records)

    def _decide(
        self,
        gate: NotifyGateInfo | None,
        target: str,
        chat_id: str,
        overrides: TargetOverrides,
        raw: dict[str, str | None],
    ) -> DeliveryRecord:
        override = lookup_override(overrides, target, chat_id)
        decision = decide_gate(gate, override.min_priority if override else None, self.order)
        return DeliveryRecord(
            target=target,
            chat_id=chat_id,
            sent=decision.allowed,
            delivery_priority=gate.delivery_priority if gate else None,
            global_min_priority=gate.global_min_priority if gate else None,
            channel_min_priority=gate.channel_min_priority if gate else None,
            target_override_min_priority=override.min_priority if override else None,
            target_override_source=override.source if override else None,
            effective_min_priority=decision.effective_min_priority,
            skip_reason=decision.skip_reason.value if decision.skip_reason else None,
            gate_bypassed=bool(gate and gate.skip_gate),
            raw_priorities=dict(raw),
        )

    async def _deliver(
        self,
        record: DeliveryRecord,
        deliver: Callable[[OutboundSenderProtocol, str], Awaitable[None]],
    ) -> None:
        sender = self.senders.get(record.target)
        if sender is None:
            record.sent = False
            record.error = "sender_unavailable"
            return
        try:
            if self.limiter is not None:
                await self.limiter.run(NOTIFY_MODULE, lambda: deliver(sender, record.chat_id))
            else:
                await deliver(sender, record.chat_id)
        except ChatGateError as exc:
            record.sent = False
            record.error = error_code(exc)
            logger.warning(
                "notify.delivery_failed",
                target=record.target,
                chat_id=record.chat_id,
                error=exc.message,
            )

    async def _audit(self, record: DeliveryRecord, *, project_id: str | None, kind: str) -> None:
        if self.ledger is None:
            return
        await self.ledger.append(
            {"cmd": "notify", "kind": kind, "project_id": project_id, **record.to_dict()}
        )

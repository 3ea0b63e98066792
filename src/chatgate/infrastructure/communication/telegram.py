"""Telegram Bot API adapter: outbound sender and long-polling receiver.

Usage::

    sender = TelegramSender(bot_token="123:ABC")
    poller = TelegramPoller(
        bot_token="123:ABC",
        bot_username="alerts_bot",
        handler=router,
    )
    await poller.start()   # runs in background
    ...
    await poller.stop()
    await sender.close()
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import aiohttp
import structlog

from chatgate.core.domain.errors import SenderError
from chatgate.core.domain.routing import MessageEvent
from chatgate.core.interfaces.gateway import MessageHandlerProtocol

logger = structlog.get_logger(__name__)

API_BASE = "https://api.telegram.org"
MAX_MESSAGE_CHARS = 4096


def split_message(text: str, limit: int = MAX_MESSAGE_CHARS) -> list[str]:
    """Split ``text`` into chunks under ``limit``, preferring line breaks."""
    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    rest = text
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(rest[:cut])
        rest = rest[cut:].lstrip("\n")
    if rest:
        chunks.append(rest)
    return chunks


class TelegramSender:
    """OutboundSenderProtocol implementation for the Telegram Bot API.

    Uses a shared ``aiohttp.ClientSession`` created lazily on first send and
    closed via ``close()``. Failures raise ``SenderError`` so callers can
    record them in delivery audits.
    """

    def __init__(self, bot_token: str, *, api_base: str = API_BASE) -> None:
        self._base_url = f"{api_base}/bot{bot_token}"
        self._session: aiohttp.ClientSession | None = None
        self._logger = structlog.get_logger().bind(component="telegram_sender")

    @property
    def channel(self) -> str:
        return "telegram"

    async def send_text(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text):
            await self._post("sendMessage", chat_id, json={"chat_id": chat_id, "text": chunk})

    async def send_image(self, chat_id: str, image_path: str, caption: str = "") -> None:
        path = Path(image_path)
        if not path.is_file():
            raise SenderError(f"Image not found: {image_path}", channel=self.channel)
        form = aiohttp.FormData()
        form.add_field("chat_id", chat_id)
        if caption:
            form.add_field("caption", caption[:1024])
        form.add_field(
            "photo", path.read_bytes(), filename=path.name, content_type="image/png"
        )
        await self._post("sendPhoto", chat_id, data=form)

    async def _post(self, method: str, chat_id: str, **kwargs: Any) -> None:
        session = await self._get_session()
        try:
            async with session.post(f"{self._base_url}/{method}", **kwargs) as response:
                if response.status >= 400:
                    body = await response.text()
                    self._logger.error(
                        "telegram.send_failed",
                        method=method,
                        status=response.status,
                        response=body[:300],
                        chat_id=chat_id,
                    )
                    raise SenderError(
                        f"telegram {method} failed with HTTP {response.status}",
                        channel=self.channel,
                        details={"status": response.status, "chat_id": chat_id},
                    )
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            self._logger.error("telegram.send_error", method=method, error=str(exc), chat_id=chat_id)
            raise SenderError(
                f"telegram {method} error: {exc}", channel=self.channel
            ) from exc

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=30)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session


def event_from_update(update: dict[str, Any], bot_username: str = "") -> MessageEvent | None:
    """Normalize a Telegram ``Update`` into a MessageEvent (text messages only)."""
    message = update.get("message") or update.get("edited_message")
    if not isinstance(message, dict):
        return None
    text = str(message.get("text") or message.get("caption") or "").strip()
    if not text:
        return None
    chat = message.get("chat") or {}
    sender = message.get("from") or {}
    chat_id = str(chat.get("id", ""))
    user_id = str(sender.get("id", ""))
    if not chat_id or not user_id:
        return None

    reply = message.get("reply_to_message") or {}
    reply_from = reply.get("from") or {}
    handle = bot_username.lstrip("@").lower()
    mentions_bot = bool(handle) and (
        f"@{handle}" in text.lower()
        or str(reply_from.get("username") or "").lower() == handle
    )

    return MessageEvent(
        channel="telegram",
        chat_id=chat_id,
        chat_type=str(chat.get("type") or "private"),
        user_id=user_id,
        text=text,
        message_id=str(message["message_id"]) if "message_id" in message else None,
        reply_to_id=str(reply["message_id"]) if "message_id" in reply else None,
        reply_text=str(reply.get("text") or reply.get("caption") or "") or None,
        mentions_bot=mentions_bot,
        username=sender.get("username"),
    )


class TelegramPoller:
    """Poll Telegram ``getUpdates`` and hand each message to the router.

    Dispatch is fire-and-forget so one slow handler does not stall the
    receive loop; handler errors are logged and never reach the loop.
    Messages from different chats may therefore be handled concurrently.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        handler: MessageHandlerProtocol,
        bot_username: str = "",
        poll_timeout: int = 30,
        api_base: str = API_BASE,
    ) -> None:
        self._base_url = f"{api_base}/bot{bot_token}"
        self._handler = handler
        self._bot_username = bot_username
        self._poll_timeout = poll_timeout
        self._offset: int = 0
        self._task: asyncio.Task[None] | None = None
        self._session: aiohttp.ClientSession | None = None
        self._inflight: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background polling task."""
        if self._task is not None:
            return
        await self._delete_webhook()
        self._task = asyncio.create_task(self._poll_loop(), name="telegram-poller")
        logger.info("telegram_poller.started")

    async def stop(self) -> None:
        """Cancel polling, wait for in-flight dispatches and close the session."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
        logger.info("telegram_poller.stopped")

    # ------------------------------------------------------------------
    # Internal polling loop
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._poll_timeout + 15)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def _delete_webhook(self) -> None:
        """Remove any registered webhook so long-polling works."""
        session = await self._get_session()
        try:
            async with session.post(f"{self._base_url}/deleteWebhook") as resp:
                if resp.status < 400:
                    logger.info("telegram_poller.webhook_deleted")
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            logger.warning("telegram_poller.delete_webhook_failed", error=str(exc))

    async def _poll_loop(self) -> None:
        """Continuously poll ``getUpdates`` until cancelled."""
        while True:
            try:
                updates = await self._get_updates()
                for update in updates:
                    self._handle_update(update)
            except asyncio.CancelledError:
                raise
            except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as exc:
                logger.error("telegram_poller.poll_error", error=str(exc))
                await asyncio.sleep(2.0)

    async def _get_updates(self) -> list[dict[str, Any]]:
        """Call Telegram ``getUpdates`` with long-polling."""
        session = await self._get_session()
        params: dict[str, Any] = {"timeout": self._poll_timeout}
        if self._offset:
            params["offset"] = self._offset

        async with session.get(f"{self._base_url}/getUpdates", params=params) as resp:
            if resp.status >= 400:
                body = await resp.text()
                logger.error(
                    "telegram_poller.get_updates_failed",
                    status=resp.status,
                    body=body[:200],
                )
                await asyncio.sleep(2.0)
                return []
            data = await resp.json()
            return data.get("result", [])

    def _handle_update(self, update: dict[str, Any]) -> None:
        update_id = int(update.get("update_id", 0))
        self._offset = max(self._offset, update_id + 1)
        event = event_from_update(update, self._bot_username)
        if event is None:
            return
        task = asyncio.create_task(self._dispatch(event), name=f"telegram-dispatch-{update_id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, event: MessageEvent) -> None:
        try:
            handled = await self._handler.handle(event)
        except Exception as exc:
            logger.exception(
                "telegram_poller.dispatch_failed",
                chat_id=event.chat_id,
                message_id=event.message_id,
                error=str(exc),
            )
            return
        logger.debug("telegram_poller.dispatched", chat_id=event.chat_id, handled=handled)

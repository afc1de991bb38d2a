"""
待選分頁追蹤

MCP relay 連線建立後，會先停留在「待選」狀態，等待使用者選定分頁。
選擇頁面不在前景超過逾時時間，連線即被關閉。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from browser_relay.tabshare.relay_connection import RelayConnection

logger = logging.getLogger(__name__)

INACTIVE_REASON = "Tab has been inactive for 5 seconds"
TIMEOUT_MESSAGE = {"type": "connectionTimeout"}

Notifier = Callable[[int, dict[str, Any]], Awaitable[None]]


@dataclass
class PendingSelection:
    """待選項目"""
    connection: RelayConnection
    target_id: int
    timer: asyncio.Task | None = None

    def cancel_timer(self) -> None:
        if self.timer is not None and not self.timer.done():
            self.timer.cancel()
        self.timer = None


class PendingSelectionTracker:
    """
    待選分頁追蹤器

    選擇頁面在前景時不計時；其他分頁切到前景時開始計時，
    逾時即關閉連線並移除（Expired）。
    """

    def __init__(self, timeout: float = 5.0, notify: Notifier | None = None):
        self._timeout = timeout
        self._notify = notify
        self._entries: dict[int, PendingSelection] = {}

    def __contains__(self, target_id: int) -> bool:
        return target_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, target_id: int) -> PendingSelection | None:
        return self._entries.get(target_id)

    async def track(self, target_id: int, connection: RelayConnection) -> PendingSelection:
        """登記待選連線；同一分頁的舊連線會被關閉"""
        previous = self._entries.pop(target_id, None)
        if previous is not None and previous.connection is not connection:
            previous.cancel_timer()
            await previous.connection.close("Another connection is requested")

        entry = PendingSelection(connection=connection, target_id=target_id)
        self._entries[target_id] = entry
        connection.add_close_listener(lambda: self.forget(target_id, connection))
        logger.debug(f"待選連線已登記: 分頁 {target_id}")
        return entry

    def claim(self, target_id: int) -> RelayConnection | None:
        """取出待選連線供綁定使用"""
        entry = self._entries.pop(target_id, None)
        if entry is None:
            return None
        entry.cancel_timer()
        return entry.connection

    def forget(self, target_id: int, connection: RelayConnection) -> None:
        """連線自行關閉時移除項目"""
        entry = self._entries.get(target_id)
        if entry is not None and entry.connection is connection:
            entry.cancel_timer()
            del self._entries[target_id]

    async def discard(self, target_id: int, reason: str) -> bool:
        """移除項目並關閉連線"""
        entry = self._entries.pop(target_id, None)
        if entry is None:
            return False
        entry.cancel_timer()
        await entry.connection.close(reason)
        return True

    async def close_all(self, reason: str) -> None:
        for target_id in list(self._entries):
            await self.discard(target_id, reason)

    def on_target_activated(self, target_id: int) -> None:
        """
        前景分頁改變

        回到前景的項目取消計時；其他尚未計時的待選項目開始計時，
        之後再離開選擇頁面時會重新計時。
        """
        for entry_id, entry in list(self._entries.items()):
            if entry_id == target_id:
                if entry.timer is not None:
                    logger.debug(f"待選分頁回到前景，取消計時: {entry_id}")
                entry.cancel_timer()
                continue
            if entry.timer is not None:
                continue
            entry.timer = asyncio.create_task(self._expire(entry))

    async def _expire(self, entry: PendingSelection) -> None:
        await asyncio.sleep(self._timeout)
        if self._entries.get(entry.target_id) is not entry:
            return
        del self._entries[entry.target_id]
        entry.timer = None
        logger.info(f"⏱️ 待選分頁 {entry.target_id} 逾時，關閉連線")
        await entry.connection.close(INACTIVE_REASON)
        if self._notify is not None:
            try:
                await self._notify(entry.target_id, dict(TIMEOUT_MESSAGE))
            except Exception as e:
                logger.debug(f"無法通知分頁 {entry.target_id}: {e}")

"""
分頁分享服務（MCP relay 模式）

IDE 端的 MCP client 透過 relay 連線要求控制一個分頁：
先 connect_to_relay 建立待選連線，使用者在選擇頁面上選定分頁後 connect_tab 完成綁定。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import websockets

from browser_relay.errors import TransportError
from browser_relay.session.events import EventBus, LifecycleEvent, TargetActivated, TargetRemoved
from browser_relay.session.host import TargetHost
from browser_relay.tabshare.pending import PendingSelectionTracker
from browser_relay.tabshare.relay_connection import RelayConnection

logger = logging.getLogger(__name__)

ConnectFn = Callable[[str], Awaitable[Any]]


async def _open_websocket(url: str) -> Any:
    return await websockets.connect(url)


class TabShareService:
    """分頁分享服務"""

    def __init__(
        self,
        host: TargetHost,
        events: EventBus,
        *,
        open_timeout: float = 5.0,
        pending_timeout: float = 5.0,
        connect_fn: ConnectFn | None = None,
    ):
        self._host = host
        self._open_timeout = open_timeout
        self._connect_fn = connect_fn or _open_websocket
        self._pending = PendingSelectionTracker(timeout=pending_timeout, notify=host.notify_target)
        self._active: RelayConnection | None = None
        self._connected_target_id: int | None = None
        self._subscription = events.subscribe_lifecycle(self._on_lifecycle_event)

    @property
    def pending(self) -> PendingSelectionTracker:
        return self._pending

    @property
    def active_connection(self) -> RelayConnection | None:
        return self._active

    @property
    def connected_target_id(self) -> int | None:
        return self._connected_target_id

    def status(self) -> dict[str, Any]:
        return {
            "connectedTargetId": self._connected_target_id,
            "pending": len(self._pending),
        }

    async def connect_to_relay(self, selector_target_id: int, relay_url: str) -> None:
        """
        建立 MCP relay 連線並登記為待選

        Args:
            selector_target_id: 顯示選擇頁面的分頁 ID
            relay_url: MCP relay WebSocket 位址

        Raises:
            TransportError: 連線失敗或逾時
        """
        logger.info(f"🔗 正在連接 MCP relay: {relay_url}")
        try:
            websocket = await asyncio.wait_for(self._connect_fn(relay_url), timeout=self._open_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError("Failed to connect to MCP relay: Connection timeout") from e
        except Exception as e:
            raise TransportError(f"Failed to connect to MCP relay: {e}") from e

        await self._pending.track(selector_target_id, RelayConnection(websocket))
        logger.info("✅ 已連接到 MCP relay")

    async def connect_tab(self, selector_target_id: int, target_id: int) -> None:
        """
        將待選連線綁定到指定分頁

        Raises:
            TransportError: 找不到待選連線
        """
        logger.info(f"綁定分頁 {target_id} 到 MCP relay")
        if self._active is not None:
            previous, self._active = self._active, None
            previous.clear_close_listeners()
            await previous.close("Another connection is requested")
        self._connected_target_id = None

        connection = self._pending.claim(selector_target_id)
        if connection is None:
            raise TransportError("No active MCP relay connection")

        connection.set_target_id(target_id)
        connection.clear_close_listeners()
        connection.add_close_listener(lambda: self._on_active_closed(connection))
        self._active = connection

        try:
            await self._host.update_target(target_id, active=True)
            await self._host.focus_window(target_id)
        except Exception:
            self._active = None
            connection.clear_close_listeners()
            await connection.close("Failed to activate tab")
            raise
        self._connected_target_id = target_id
        logger.info(f"✅ 分頁 {target_id} 已連接到 MCP relay")

    async def disconnect(self) -> None:
        """使用者中斷 MCP relay 連線"""
        await self._close_active("User disconnected")

    async def close(self) -> None:
        """關閉所有連線"""
        await self._pending.close_all("Extension shutting down")
        await self._close_active("Extension shutting down")
        self._subscription.cancel()

    async def on_target_activated(self, target_id: int) -> None:
        self._pending.on_target_activated(target_id)

    async def on_target_removed(self, target_id: int) -> None:
        if await self._pending.discard(target_id, "Browser tab closed"):
            return
        if self._connected_target_id == target_id:
            await self._close_active("Browser tab closed")

    async def _close_active(self, reason: str) -> None:
        connection, self._active = self._active, None
        self._connected_target_id = None
        if connection is not None:
            connection.clear_close_listeners()
            await connection.close(reason)

    def _on_active_closed(self, connection: RelayConnection) -> None:
        if self._active is connection:
            logger.info("MCP relay 連線已關閉")
            self._active = None
            self._connected_target_id = None

    async def _on_lifecycle_event(self, event: LifecycleEvent) -> None:
        if isinstance(event, TargetActivated):
            await self.on_target_activated(event.target_id)
        elif isinstance(event, TargetRemoved):
            await self.on_target_removed(event.target_id)

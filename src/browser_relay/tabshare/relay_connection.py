"""
MCP relay 連線

包裝 IDE 端（MCP relay）的 WebSocket 連線，記錄綁定的分頁，
並在連線關閉時通知監聽者（僅一次）。
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from websockets.exceptions import ConnectionClosed

from browser_relay.schemas import NORMAL_CLOSURE

logger = logging.getLogger(__name__)


class RelayConnection:
    """MCP relay WebSocket 連線"""

    def __init__(self, websocket: Any):
        self._websocket = websocket
        self._closed = False
        self._close_listeners: list[Callable[[], Any]] = []
        self.target_id: int | None = None
        self.close_reason: str | None = None
        self._watch_task = asyncio.create_task(self._watch())

    @property
    def closed(self) -> bool:
        return self._closed

    def set_target_id(self, target_id: int) -> None:
        self.target_id = target_id

    def add_close_listener(self, listener: Callable[[], Any]) -> None:
        self._close_listeners.append(listener)

    def clear_close_listeners(self) -> None:
        self._close_listeners.clear()

    async def close(self, reason: str) -> None:
        """關閉連線（重複呼叫無效果）"""
        if self._closed or self.close_reason is not None:
            return
        logger.info(f"關閉 MCP relay 連線: {reason}")
        self.close_reason = reason
        if self._watch_task is not asyncio.current_task():
            self._watch_task.cancel()
        with contextlib.suppress(Exception):
            await self._websocket.close(code=NORMAL_CLOSURE, reason=reason)
        self._mark_closed()

    async def _watch(self) -> None:
        try:
            while True:
                message = await self._websocket.recv()
                logger.debug(f"MCP relay 訊息: {str(message)[:100]}")
        except ConnectionClosed:
            logger.info("MCP relay 連線已由對方關閉")
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.warning(f"MCP relay 連線錯誤: {e}")
        self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for listener in list(self._close_listeners):
            try:
                listener()
            except Exception:
                logger.exception("關閉通知失敗")

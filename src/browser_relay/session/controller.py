"""
分頁 Session 控制器

維護 Relay 與單一分頁的綁定（Binding），以及綁定分頁上的 attach session。
每個遠端指令對應一個方法，成功回傳資料，失敗拋出 RelayError。
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from browser_relay.config import CDP_PROTOCOL_VERSION
from browser_relay.errors import ActionError, NoTargetBound, TargetNotFound
from browser_relay.session.events import EventBus, ProtocolEvent, Subscription
from browser_relay.session.host import AttachSession, TargetHost, is_controllable

logger = logging.getLogger(__name__)

# 在頁面端執行的函式，this 為 document；參數以結構化方式傳入，不拼接進程式碼
CLICK_FUNCTION = """function (selector) {
  const el = this.querySelector(selector);
  if (!el) return false;
  el.click();
  return true;
}"""

TYPE_FUNCTION = """function (selector, text) {
  const el = this.querySelector(selector);
  if (!el) return false;
  el.focus();
  el.value = text;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  return true;
}"""


def build_call_params(function_declaration: str, object_id: str, *args: Any) -> dict[str, Any]:
    """
    建立 Runtime.callFunctionOn 參數

    Args:
        function_declaration: 頁面端函式原始碼
        object_id: 作為 this 的遠端物件 ID
        *args: 函式參數，以 CallArgument.value 傳遞

    Returns:
        CDP 指令參數
    """
    return {
        "functionDeclaration": function_declaration,
        "objectId": object_id,
        "arguments": [{"value": arg} for arg in args],
        "returnByValue": True,
        "awaitPromise": True,
        "userGesture": True,
    }


@dataclass
class Binding:
    """目前控制的分頁；attached_target_id 為 None 表示 Detached"""
    active_target_id: int | None = None
    attached_target_id: int | None = None


class TargetSessionController:
    """
    分頁 Session 控制器

    同一時間最多 attach 一個分頁；切換綁定時先 detach 舊的 session，
    協定事件的訂閱與 attach session 同生命週期。
    """

    def __init__(
        self,
        host: TargetHost,
        events: EventBus,
        protocol_version: str = CDP_PROTOCOL_VERSION,
    ):
        self._host = host
        self._events = events
        self._protocol_version = protocol_version
        self._binding = Binding()
        self._session: AttachSession | None = None
        self._subscription: Subscription | None = None
        self._lock = asyncio.Lock()
        self.on_protocol_event: Callable[[ProtocolEvent], Any] | None = None

    @property
    def connected_target_id(self) -> int | None:
        return self._binding.active_target_id

    @property
    def binding(self) -> Binding:
        return Binding(self._binding.active_target_id, self._binding.attached_target_id)

    # ═══════════════════════════════════════════════════════════════════════════════
    # 指令
    # ═══════════════════════════════════════════════════════════════════════════════

    async def navigate(self, url: str) -> dict[str, Any]:
        """導航：已綁定則原地更新並切到前景，否則開新分頁並綁定"""
        logger.info(f"🧭 導航到: {url}")
        target_id = self._binding.active_target_id
        if target_id is not None:
            await self._host.update_target(target_id, url=url, active=True)
        else:
            target = await self._host.create_target(url, active=True)
            await self._bind(target.id)
            target_id = target.id
        return {"targetId": target_id}

    async def list_targets(self) -> dict[str, Any]:
        """列出所有可控制的分頁"""
        targets = await self._host.query_targets()
        return {
            "targets": [t.to_dict() for t in targets if is_controllable(t.url)],
            "connectedTargetId": self._binding.active_target_id,
        }

    async def select_target(self, target_id: int) -> dict[str, Any]:
        """切換綁定到指定分頁，並切到前景、聚焦視窗"""
        logger.info(f"選擇分頁: {target_id}")
        target = await self._host.get_target(target_id)
        if target is None or not is_controllable(target.url):
            raise TargetNotFound(target_id)

        await self._bind(target_id)
        await self._host.update_target(target_id, active=True)
        await self._host.focus_window(target_id)
        return {"targetId": target_id}

    async def click(self, selector: str) -> dict[str, Any]:
        """點擊元素"""
        session = await self.ensure_attached()
        logger.info(f"🖱️ 點擊: {selector}")
        found = await self._call_function(session, CLICK_FUNCTION, selector)
        if not found:
            logger.warning(f"找不到元素: {selector}")
        return {"clicked": found is True}

    async def type_text(self, selector: str, text: str) -> dict[str, Any]:
        """輸入文字"""
        session = await self.ensure_attached()
        logger.info(f"⌨️ 輸入文字到: {selector} ({len(text)} 字元)")
        found = await self._call_function(session, TYPE_FUNCTION, selector, text)
        if not found:
            logger.warning(f"找不到元素: {selector}")
        return {"typed": found is True}

    async def snapshot(self) -> dict[str, Any]:
        """取得無障礙樹（accessibility tree）"""
        session = await self.ensure_attached()
        result = await session.send("Accessibility.getFullAXTree")
        return {"snapshot": result.get("nodes", [])}

    async def screenshot(self) -> dict[str, Any]:
        """截取綁定分頁目前可見的畫面"""
        target_id = self._require_bound()
        data_url = await self._host.capture_visible(target_id)
        return {"screenshot": data_url}

    # ═══════════════════════════════════════════════════════════════════════════════
    # Attach session
    # ═══════════════════════════════════════════════════════════════════════════════

    async def ensure_attached(self) -> AttachSession:
        """
        確保綁定分頁已有 attach session

        已 attach 到綁定分頁時不做任何事；否則先 detach 舊 session，
        再 attach 綁定分頁並訂閱它的協定事件。

        Raises:
            NoTargetBound: 尚未綁定分頁
            ActionError: attach 失敗
        """
        async with self._lock:
            target_id = self._require_bound()
            if self._session is not None and self._session.target_id == target_id:
                return self._session

            await self._detach()
            try:
                session = await self._host.attach(target_id, self._protocol_version)
            except ActionError:
                raise
            except Exception as e:
                raise ActionError(f"Failed to attach to tab {target_id}: {e}") from e

            self._session = session
            self._binding.attached_target_id = target_id
            self._subscription = self._events.subscribe(target_id, self._handle_protocol_event)
            logger.info(f"🔗 已 attach 到分頁 {target_id} (protocol {self._protocol_version})")
            return session

    async def teardown(self) -> None:
        """detach 並清除綁定"""
        await self._bind(None)

    async def on_target_removed(self, target_id: int) -> None:
        """分頁關閉時，若為綁定分頁則清除綁定"""
        if self._binding.active_target_id == target_id:
            logger.info(f"綁定的分頁 {target_id} 已關閉")
            await self._bind(None)

    async def _bind(self, target_id: int | None) -> None:
        async with self._lock:
            if self._binding.attached_target_id not in (None, target_id):
                await self._detach()
            self._binding.active_target_id = target_id

    async def _detach(self) -> None:
        """detach 目前 session；分頁可能已不存在，錯誤一律忽略"""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        session, self._session = self._session, None
        self._binding.attached_target_id = None
        if session is None:
            return
        with contextlib.suppress(Exception):
            await session.detach()
        logger.debug(f"已 detach 分頁 {session.target_id}")

    def _require_bound(self) -> int:
        target_id = self._binding.active_target_id
        if target_id is None:
            raise NoTargetBound()
        return target_id

    async def _call_function(self, session: AttachSession, function: str, *args: Any) -> Any:
        document = await session.send("Runtime.evaluate", {"expression": "document", "returnByValue": False})
        object_id = document.get("result", {}).get("objectId")
        if not object_id:
            raise ActionError("Document is not available")

        response = await session.send("Runtime.callFunctionOn", build_call_params(function, object_id, *args))
        details = response.get("exceptionDetails")
        if details:
            exception = details.get("exception", {})
            raise ActionError(exception.get("description") or details.get("text") or "Script execution failed")
        return response.get("result", {}).get("value")

    def _handle_protocol_event(self, event: ProtocolEvent) -> None:
        if event.target_id != self._binding.attached_target_id:
            return
        logger.debug(f"CDP Event: {event.method}")
        if event.method == "Inspector.detached":
            # 使用者手動關閉除錯連線，下次指令重新 attach
            self._session = None
            self._binding.attached_target_id = None
            if self._subscription is not None:
                self._subscription.cancel()
                self._subscription = None
        if self.on_protocol_event is not None:
            self.on_protocol_event(event)

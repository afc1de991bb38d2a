"""
Playwright 瀏覽器操作模組

透過 Playwright CDP 連接本地 Chrome，實作 TargetHost 介面。
分頁以遞增的整數 ID 識別，attach session 使用 CDPSession。
"""

import base64
import contextlib
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from playwright.async_api import async_playwright

from browser_relay.errors import ActionError, TargetNotFound, TransportError
from browser_relay.schemas import TargetInfo
from browser_relay.session.events import EventBus, ProtocolEvent, TargetActivated, TargetRemoved

logger = logging.getLogger(__name__)

PageMessageHandler = Callable[[int, dict[str, Any]], Awaitable[dict[str, Any]]]

# 頁面端呼叫的 binding 名稱
ACTIVATION_BINDING = "__browserRelayActivated"
MESSAGE_BINDING = "browserRelay"

# 分頁切到前景（visibilitychange → visible）時通知 Relay，只在頂層 frame 註冊
ACTIVATION_SCRIPT = """(() => {
  if (window !== window.top || window.__browserRelayTracking) return;
  window.__browserRelayTracking = true;
  document.addEventListener("visibilitychange", () => {
    if (document.visibilityState === "visible") window.__browserRelayActivated();
  });
})()"""

# 轉發到事件匯流排的 CDP 事件
FORWARDED_EVENTS = (
    "Inspector.detached",
    "Page.javascriptDialogOpening",
    "Page.loadEventFired",
    "Runtime.exceptionThrown",
)


class PlaywrightAttachSession:
    """CDPSession 包裝，事件轉發到 EventBus"""

    def __init__(self, target_id: int, cdp_session: Any, events: EventBus):
        self.target_id = target_id
        self._cdp_session = cdp_session
        self._events = events
        for method in FORWARDED_EVENTS:
            cdp_session.on(method, self._forwarder(method))

    def _forwarder(self, method: str):
        async def forward(params: Any = None) -> None:
            await self._events.publish(ProtocolEvent(self.target_id, method, params or {}))

        return forward

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            return await self._cdp_session.send(method, params or {})
        except Exception as e:
            raise ActionError(str(e)) from e

    async def detach(self) -> None:
        await self._cdp_session.detach()


class PlaywrightTargetHost:
    """
    Playwright 瀏覽器控制器

    透過 Playwright CDP 連接本地 Chrome 瀏覽器，提供 TargetHost 操作接口。
    """

    def __init__(self, events: EventBus, cdp_endpoint: str = "http://localhost:9222"):
        self._events = events
        self._cdp_endpoint = cdp_endpoint
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._pages: dict[int, Any] = {}
        self._ids: dict[Any, int] = {}
        self._counter = itertools.count(1)
        self._active_id: int | None = None

    @property
    def is_connected(self) -> bool:
        """是否已連接到瀏覽器"""
        return self._browser is not None and self._browser.is_connected()

    async def connect(self) -> None:
        """
        連接到 Chrome CDP

        Raises:
            TransportError: 連接失敗
        """
        try:
            logger.info(f"正在連接到 Chrome CDP: {self._cdp_endpoint}")
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.connect_over_cdp(self._cdp_endpoint)
            logger.info(f"✅ 已連接到瀏覽器: {self._browser.version}")

            contexts = self._browser.contexts
            await self.use_context(contexts[0] if contexts else await self._browser.new_context())
            logger.info(f"已載入 {len(self._pages)} 個分頁")

        except Exception as e:
            logger.exception(f"連接 Chrome CDP 失敗: {e}")
            await self.disconnect()
            raise TransportError(f"Cannot connect to Chrome CDP at {self._cdp_endpoint}: {e}") from e

    async def disconnect(self) -> None:
        """中斷瀏覽器連接"""
        self._pages.clear()
        self._ids.clear()
        self._active_id = None
        self._context = None
        self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        logger.info("已中斷瀏覽器連接")

    async def use_context(self, context: Any) -> None:
        """
        使用指定的 BrowserContext

        登記現有分頁、監聽新分頁，並追蹤使用者切換分頁（前景變更）。
        """
        self._context = context
        for page in context.pages:
            self._register(page)
        context.on("page", self._register)

        await context.expose_binding(ACTIVATION_BINDING, self._on_page_visible)
        await context.add_init_script(ACTIVATION_SCRIPT)
        # init script 只對之後載入的文件生效，已開啟的分頁另外注入
        for page in context.pages:
            with contextlib.suppress(Exception):
                await page.evaluate(ACTIVATION_SCRIPT)

    async def expose_message_handler(self, handler: PageMessageHandler) -> None:
        """
        讓頁面以 window.browserRelay(message) 呼叫 Relay

        handler 收到發送訊息的分頁 ID 與訊息內容，回傳值送回頁面。
        """
        if self._context is None:
            raise ActionError("Browser is not connected")

        async def on_message(source: dict[str, Any], message: Any = None) -> dict[str, Any]:
            target_id = self._ids.get(source.get("page"))
            if target_id is None:
                return {"success": False, "error": "Unknown tab"}
            return await handler(target_id, message if isinstance(message, dict) else {})

        await self._context.expose_binding(MESSAGE_BINDING, on_message)

    async def _on_page_visible(self, source: dict[str, Any]) -> None:
        target_id = self._ids.get(source.get("page"))
        if target_id is None or target_id == self._active_id:
            return
        logger.debug(f"分頁切到前景: {target_id}")
        self._active_id = target_id
        await self._events.publish(TargetActivated(target_id))

    def _register(self, page: Any) -> int:
        if page in self._ids:
            return self._ids[page]
        target_id = next(self._counter)
        self._pages[target_id] = page
        self._ids[page] = target_id

        async def on_close(_page: Any = None) -> None:
            self._pages.pop(target_id, None)
            self._ids.pop(page, None)
            if self._active_id == target_id:
                self._active_id = None
            await self._events.publish(TargetRemoved(target_id))

        page.on("close", on_close)
        return target_id

    def _page(self, target_id: int) -> Any:
        page = self._pages.get(target_id)
        if page is None or page.is_closed():
            raise TargetNotFound(target_id)
        return page

    async def _info(self, target_id: int, page: Any) -> TargetInfo:
        try:
            title = await page.title()
        except Exception:
            title = ""
        return TargetInfo(id=target_id, url=page.url, title=title, active=target_id == self._active_id)

    async def _activate(self, target_id: int, page: Any) -> None:
        await page.bring_to_front()
        if self._active_id == target_id:
            return
        self._active_id = target_id
        await self._events.publish(TargetActivated(target_id))

    # ═══════════════════════════════════════════════════════════════════════════════
    # TargetHost 介面
    # ═══════════════════════════════════════════════════════════════════════════════

    async def create_target(self, url: str, active: bool = True) -> TargetInfo:
        if self._context is None:
            raise ActionError("Browser is not connected")
        page = await self._context.new_page()
        target_id = self._register(page)
        await page.goto(url)
        if active:
            await self._activate(target_id, page)
        return await self._info(target_id, page)

    async def update_target(self, target_id: int, url: str | None = None, active: bool = False) -> TargetInfo:
        page = self._page(target_id)
        if url:
            await page.goto(url)
        if active:
            await self._activate(target_id, page)
        return await self._info(target_id, page)

    async def get_target(self, target_id: int) -> TargetInfo | None:
        page = self._pages.get(target_id)
        if page is None or page.is_closed():
            return None
        return await self._info(target_id, page)

    async def query_targets(self) -> list[TargetInfo]:
        return [
            await self._info(target_id, page)
            for target_id, page in list(self._pages.items())
            if not page.is_closed()
        ]

    async def focus_window(self, target_id: int) -> None:
        """還原分頁所在視窗（最小化時）"""
        page = self._page(target_id)
        session = await page.context.new_cdp_session(page)
        try:
            window = await session.send("Browser.getWindowForTarget")
            await session.send(
                "Browser.setWindowBounds",
                {"windowId": window["windowId"], "bounds": {"windowState": "normal"}},
            )
        except Exception as e:
            logger.debug(f"無法聚焦視窗: {e}")
        finally:
            await session.detach()

    async def capture_visible(self, target_id: int) -> str:
        page = self._page(target_id)
        screenshot_bytes = await page.screenshot(type="png")
        return "data:image/png;base64," + base64.b64encode(screenshot_bytes).decode("utf-8")

    async def attach(self, target_id: int, protocol_version: str) -> PlaywrightAttachSession:
        page = self._page(target_id)
        cdp_session = await page.context.new_cdp_session(page)
        logger.debug(f"CDP session 已建立: 分頁 {target_id} (protocol {protocol_version})")
        return PlaywrightAttachSession(target_id, cdp_session, self._events)

    async def notify_target(self, target_id: int, message: dict[str, Any]) -> None:
        page = self._page(target_id)
        await page.evaluate("message => window.postMessage(message, '*')", message)

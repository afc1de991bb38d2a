"""
Relay 組裝

RelayContext 在程式啟動時建立一次，持有所有元件並負責串接：
設定儲存、事件匯流排、分頁控制器、指令分派器、連線管理器、分頁分享服務。
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from browser_relay.base.logging_config import set_log_identity
from browser_relay.config import SETTING_AUTO_CONNECT, Config
from browser_relay.errors import InvalidCommand, RelayError
from browser_relay.relay.connection import ConnectFn, ConnectionManager
from browser_relay.relay.dispatcher import CommandDispatcher
from browser_relay.schemas import CommandEnvelope
from browser_relay.session.controller import TargetSessionController
from browser_relay.session.events import EventBus, LifecycleEvent, ProtocolEvent, TargetRemoved
from browser_relay.session.host import TargetHost
from browser_relay.session.playwright_host import PlaywrightTargetHost
from browser_relay.store import JsonFileStore, SettingsStore
from browser_relay.tabshare.service import TabShareService

logger = logging.getLogger(__name__)

PageMessage = dict[str, Any]


class RelayContext:
    """Relay 執行環境"""

    def __init__(
        self,
        config: Config,
        host: TargetHost,
        events: EventBus,
        store: SettingsStore,
        connect_fn: ConnectFn | None = None,
        relay_connect_fn: ConnectFn | None = None,
    ):
        self.config = config
        self.host = host
        self.events = events
        self.store = store
        self.controller = TargetSessionController(host, events)
        self.dispatcher = CommandDispatcher(self.controller)
        self.connection = ConnectionManager(
            self.dispatcher,
            self.controller,
            store,
            keepalive_interval=config.keepalive_interval,
            reconnect_base_delay=config.reconnect_base_delay,
            reconnect_max_delay=config.reconnect_max_delay,
            open_timeout=config.open_timeout,
            connect_fn=connect_fn,
        )
        self.tabshare = TabShareService(
            host,
            events,
            open_timeout=config.relay_open_timeout,
            pending_timeout=config.pending_selection_timeout,
            connect_fn=relay_connect_fn,
        )
        self.connection.add_status_listener(self._log_status)
        self.connection.add_error_listener(self._log_error)
        self.controller.on_protocol_event = self._on_protocol_event
        self._subscription = events.subscribe_lifecycle(self._on_lifecycle_event)
        self._page_handlers: dict[str, Callable[[int, PageMessage], Awaitable[PageMessage]]] = {
            "connectToMCPRelay": self._page_connect_to_relay,
            "connectToTab": self._page_connect_to_tab,
            "getTabs": self._page_get_tabs,
            "getConnectionStatus": self._page_get_status,
            "disconnect": self._page_disconnect,
            "connectToRelayServer": self._page_connect_server,
            "disconnectFromRelayServer": self._page_disconnect_server,
        }

    @classmethod
    async def create(cls, config: Config) -> "RelayContext":
        """
        建立連接本地 Chrome 的 RelayContext

        Raises:
            TransportError: 無法連接 Chrome CDP
        """
        events = EventBus()
        host = PlaywrightTargetHost(events, cdp_endpoint=config.cdp_endpoint)
        await host.connect()
        context = cls(config, host, events, JsonFileStore(config.settings_path))
        await host.expose_message_handler(context.handle_page_message)
        return context

    async def start(self) -> bool:
        """依設定檔自動連線"""
        if self.store.get(SETTING_AUTO_CONNECT) is False:
            logger.info("自動連線已停用")
            return False
        logger.info("嘗試自動連線...")
        return await self.connection.auto_connect()

    async def connect(self, endpoint: str, identity: str) -> None:
        """使用者明確連線，之後啟動時自動連線"""
        await self.connection.connect(endpoint, identity)
        self.store.set({SETTING_AUTO_CONNECT: True})

    async def disconnect(self) -> None:
        """使用者明確中斷，之後啟動時不再自動連線"""
        self.store.set({SETTING_AUTO_CONNECT: False})
        await self.connection.disconnect()

    async def close(self) -> None:
        """程式結束時釋放所有連線"""
        await self.connection.disconnect()
        await self.tabshare.close()
        self._subscription.cancel()
        if isinstance(self.host, PlaywrightTargetHost):
            await self.host.disconnect()

    def status(self) -> dict[str, Any]:
        return {
            "connectedTargetId": self.tabshare.connected_target_id,
            "relay": self.connection.status(),
        }

    # ═══════════════════════════════════════════════════════════════════════════════
    # 頁面訊息（window.browserRelay）
    # ═══════════════════════════════════════════════════════════════════════════════

    async def handle_page_message(self, sender_target_id: int, message: PageMessage) -> PageMessage:
        """
        處理頁面送來的訊息（選擇頁面、狀態頁面）

        Args:
            sender_target_id: 發送訊息的分頁 ID
            message: {"type": ..., ...}

        Returns:
            {"success": bool, ...}，失敗時帶 error
        """
        kind = message.get("type")
        handler = self._page_handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            return {"success": False, "error": f"Unknown message: {kind}"}

        try:
            result = await handler(sender_target_id, message)
        except RelayError as e:
            logger.warning(f"頁面訊息處理失敗: {kind} - {e.message}")
            return {"success": False, "error": e.message}
        except Exception as e:
            logger.exception(f"頁面訊息處理失敗: {kind}")
            return {"success": False, "error": str(e) or type(e).__name__}
        return {"success": True, **result}

    async def _page_connect_to_relay(self, sender: int, message: PageMessage) -> PageMessage:
        url = message.get("mcpRelayUrl")
        if not isinstance(url, str) or not url:
            raise InvalidCommand("Missing or invalid parameter 'mcpRelayUrl'")
        await self.tabshare.connect_to_relay(sender, url)
        return {}

    async def _page_connect_to_tab(self, sender: int, message: PageMessage) -> PageMessage:
        # 未指定 tabId 時連接選擇頁面本身
        raw = message.get("tabId")
        target_id = sender if raw is None else CommandEnvelope(kind="connectToTab", target_id=raw).require_target_id()
        await self.tabshare.connect_tab(sender, target_id)
        return {}

    async def _page_get_tabs(self, sender: int, message: PageMessage) -> PageMessage:
        result = await self.controller.list_targets()
        return {"tabs": result["targets"], "currentTabId": sender}

    async def _page_get_status(self, sender: int, message: PageMessage) -> PageMessage:
        return self.status()

    async def _page_disconnect(self, sender: int, message: PageMessage) -> PageMessage:
        await self.tabshare.disconnect()
        return {}

    async def _page_connect_server(self, sender: int, message: PageMessage) -> PageMessage:
        identity = message.get("identity")
        if not isinstance(identity, str) or not identity:
            raise InvalidCommand("Missing or invalid parameter 'identity'")
        endpoint = message.get("endpoint") or self.connection.endpoint or self.config.server_url
        await self.connect(endpoint, identity)
        return {}

    async def _page_disconnect_server(self, sender: int, message: PageMessage) -> PageMessage:
        await self.disconnect()
        return {}

    # ═══════════════════════════════════════════════════════════════════════════════
    # 事件
    # ═══════════════════════════════════════════════════════════════════════════════

    async def _on_lifecycle_event(self, event: LifecycleEvent) -> None:
        if isinstance(event, TargetRemoved):
            await self.controller.on_target_removed(event.target_id)

    def _on_protocol_event(self, event: ProtocolEvent) -> None:
        # 對話框會擋住後續的點擊與輸入，提醒使用者
        if event.method == "Page.javascriptDialogOpening":
            logger.warning(f"⚠️ 分頁 {event.target_id} 開啟對話框: {event.params.get('message', '')}")
        elif event.method == "Runtime.exceptionThrown":
            details = event.params.get("exceptionDetails", {})
            logger.warning(f"⚠️ 分頁 {event.target_id} 發生例外: {details.get('text', '')}")

    def _log_status(self, connected: bool, identity: str | None) -> None:
        set_log_identity(identity if connected else None)
        if connected:
            logger.info(f"Relay 狀態: connected as {identity}")
        else:
            logger.info("Relay 狀態: disconnected")

    def _log_error(self, message: str) -> None:
        logger.error(f"Relay 錯誤: {message}")

"""
WebSocket 連線管理模組

負責與 Relay Server 建立連線、註冊、心跳、斷線重連，
接收指令交給 CommandDispatcher 並回傳結果。
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from browser_relay.config import SETTING_ENDPOINT, SETTING_IDENTITY
from browser_relay.errors import ProtocolError, TransportError
from browser_relay.relay.dispatcher import CommandDispatcher
from browser_relay.schemas import (
    NORMAL_CLOSURE,
    CommandEnvelope,
    ConnectionState,
    FrameType,
    decode_frame,
    encode_frame,
    ping_frame,
    register_frame,
)
from browser_relay.session.controller import TargetSessionController
from browser_relay.store import SettingsStore

logger = logging.getLogger(__name__)

StatusListener = Callable[[bool, str | None], Any]
ErrorListener = Callable[[str], Any]
ConnectFn = Callable[[str], Awaitable[Any]]

# 非正常關閉（未收到 close frame）
ABNORMAL_CLOSURE = 1006

# 指數上限，避免 2 ** attempt 溢位
_MAX_EXPONENT = 32


def reconnect_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """
    計算重連延遲：min(2^attempt * base, cap)

    attempt 0, 1, 2, ... 對應 1, 2, 4, 8, 16, 30, 30 ...（base=1, cap=30）
    """
    return min((2 ** min(attempt, _MAX_EXPONENT)) * base, cap)


async def _open_websocket(url: str) -> Any:
    # 心跳由應用層 ping/pong 處理
    return await websockets.connect(url, ping_interval=None)


class ConnectionManager:
    """
    Relay 連線管理器

    管理單一 WebSocket 連線的生命週期。非正常關閉且仍有 identity 時，
    以指數退避自動重連；disconnect() 取消所有計時器並清除 attach session。
    """

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        controller: TargetSessionController,
        store: SettingsStore,
        *,
        keepalive_interval: float = 30.0,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        open_timeout: float = 10.0,
        connect_fn: ConnectFn | None = None,
    ):
        self._dispatcher = dispatcher
        self._controller = controller
        self._store = store
        self._keepalive_interval = keepalive_interval
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._open_timeout = open_timeout
        self._connect_fn = connect_fn or _open_websocket

        # 啟動時從設定檔讀回連線參數，供自動重連使用
        self._endpoint: str | None = store.get(SETTING_ENDPOINT)
        self._identity: str | None = store.get(SETTING_IDENTITY)

        self._websocket: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._last_pong: float | None = None

        self._receive_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

        self._status_listeners: list[StatusListener] = []
        self._error_listeners: list[ErrorListener] = []

    # ═══════════════════════════════════════════════════════════════════════════════
    # 狀態
    # ═══════════════════════════════════════════════════════════════════════════════

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._is_open(self._websocket)

    @property
    def identity(self) -> str | None:
        return self._identity

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def last_pong(self) -> float | None:
        return self._last_pong

    def add_status_listener(self, listener: StatusListener) -> None:
        """註冊狀態變更通知 (connected, identity)"""
        self._status_listeners.append(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def status(self) -> dict[str, Any]:
        return {
            "connected": self.is_connected,
            "state": self._state.value,
            "identity": self._identity,
            "endpoint": self._endpoint,
            "connectedTargetId": self._controller.connected_target_id,
        }

    @staticmethod
    def _is_open(websocket: Any) -> bool:
        """檢查 WebSocket 連線狀態（兼容 websockets 新舊版本）"""
        if websocket is None:
            return False
        if hasattr(websocket, "state"):
            return websocket.state == State.OPEN
        return not getattr(websocket, "closed", True)

    def _set_state(self, state: ConnectionState, force_notify: bool = False) -> None:
        previous, self._state = self._state, state
        if previous is state and not force_notify:
            return
        logger.debug(f"連線狀態: {previous.value} → {state.value}")
        connected = state is ConnectionState.CONNECTED
        self._notify_status(connected, self._identity if connected else None)

    def _notify_status(self, connected: bool, identity: str | None) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(connected, identity)
            except Exception:
                logger.exception("狀態通知失敗")

    def _notify_error(self, message: str) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("錯誤通知失敗")

    # ═══════════════════════════════════════════════════════════════════════════════
    # 連線 / 斷線
    # ═══════════════════════════════════════════════════════════════════════════════

    async def connect(self, endpoint: str, identity: str) -> None:
        """
        連接到 Relay Server 並送出註冊訊息

        Args:
            endpoint: WebSocket 位址
            identity: 身分識別

        Raises:
            TransportError: 連線失敗或逾時
        """
        await self._shutdown()

        self._endpoint = endpoint
        self._identity = identity
        self._store.set({SETTING_ENDPOINT: endpoint, SETTING_IDENTITY: identity})
        logger.info(f"🔗 正在連接到 Relay Server: {endpoint} (identity: {identity})")

        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open()
        except TransportError as e:
            logger.error(f"❌ 連接失敗: {e.message}")
            self._set_state(ConnectionState.DISCONNECTED)
            self._notify_error(e.message)
            raise

    async def auto_connect(self) -> bool:
        """
        使用設定檔中的 endpoint / identity 自動連線

        失敗時不拋出例外，改為排程重連。

        Returns:
            是否已連線
        """
        if not self._endpoint or not self._identity:
            logger.info("未設定連線參數，略過自動連線")
            return False

        try:
            await self.connect(self._endpoint, self._identity)
            return True
        except TransportError:
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()
            return False

    async def disconnect(self) -> None:
        """中斷連線，取消重連與心跳，並清除 attach session"""
        if self._state is not ConnectionState.DISCONNECTED:
            logger.info("🛑 中斷 Relay 連線")
        await self._shutdown()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _shutdown(self) -> None:
        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        await self._cancel_task(self._keepalive_task)
        self._keepalive_task = None

        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            with contextlib.suppress(Exception):
                await websocket.close(code=NORMAL_CLOSURE, reason="Client disconnect")

        await self._cancel_task(self._receive_task)
        self._receive_task = None

        await self._controller.teardown()

    async def _open(self) -> None:
        try:
            websocket = await asyncio.wait_for(self._connect_fn(self._endpoint), timeout=self._open_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Connection timeout: {self._endpoint}") from e
        except Exception as e:
            raise TransportError(f"Cannot connect to {self._endpoint}: {e}") from e

        self._websocket = websocket
        try:
            await self._send(register_frame(self._identity or ""))
        except TransportError:
            self._websocket = None
            with contextlib.suppress(Exception):
                await websocket.close()
            raise

        self._attempt = 0
        self._last_pong = None
        self._receive_task = asyncio.create_task(self._receive_loop(websocket))
        self._start_keepalive()
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"✅ 已連接到 Relay Server: {self._endpoint}")

    async def _cancel_task(self, task: asyncio.Task | None) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ═══════════════════════════════════════════════════════════════════════════════
    # 重連
    # ═══════════════════════════════════════════════════════════════════════════════

    def _schedule_reconnect(self) -> None:
        """啟動重連；同時只會有一個重連任務"""
        task = self._reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while self._identity and self._endpoint:
            delay = reconnect_delay(self._attempt, self._reconnect_base_delay, self._reconnect_max_delay)
            self._attempt += 1
            logger.info(f"🔄 {delay:.1f} 秒後重新連線（第 {self._attempt} 次）")
            await asyncio.sleep(delay)
            try:
                await self._open()
            except TransportError as e:
                logger.warning(f"重新連線失敗: {e.message}")
                continue
            logger.info("✅ 已重新連線")
            return

    async def _on_transport_closed(self, websocket: Any, code: int) -> None:
        if websocket is not self._websocket:
            return
        self._websocket = None
        await self._cancel_task(self._keepalive_task)
        self._keepalive_task = None
        await self._controller.teardown()

        if code != NORMAL_CLOSURE and self._identity and self._endpoint:
            logger.warning(f"🔴 連線中斷 (code {code})，準備重新連線")
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()
        else:
            logger.info(f"🔴 連線已關閉 (code {code})")
            self._set_state(ConnectionState.DISCONNECTED)

    # ═══════════════════════════════════════════════════════════════════════════════
    # 收發訊息
    # ═══════════════════════════════════════════════════════════════════════════════

    async def _send(self, frame: dict[str, Any]) -> None:
        websocket = self._websocket
        if not self._is_open(websocket):
            raise TransportError("Not connected")
        try:
            await websocket.send(encode_frame(frame))
        except ConnectionClosed as e:
            raise TransportError(f"Connection closed while sending: {e}") from e

    def _start_keepalive(self) -> None:
        if self._keepalive_task is not None and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            if not self._is_open(self._websocket):
                continue
            try:
                await self._send(ping_frame())
            except TransportError as e:
                logger.debug(f"心跳傳送失敗: {e.message}")

    async def _receive_loop(self, websocket: Any) -> None:
        code = NORMAL_CLOSURE
        try:
            while True:
                message = await websocket.recv()
                await self._handle_message(message)
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else ABNORMAL_CLOSURE
        except Exception as e:
            logger.exception(f"接收訊息時發生錯誤: {e}")
            code = ABNORMAL_CLOSURE
            with contextlib.suppress(Exception):
                await websocket.close()
        await self._on_transport_closed(websocket, code)

    async def _handle_message(self, message: str | bytes) -> None:
        """處理來自 Relay Server 的訊息，格式錯誤的訊息記錄後丟棄"""
        try:
            frame = decode_frame(message)
        except ProtocolError as e:
            logger.warning(f"無法解析訊息: {e.message} | {str(message)[:100]}")
            return

        frame_type = frame["type"]
        if frame_type == FrameType.COMMAND:
            await self._handle_command(frame)
        elif frame_type == FrameType.PONG:
            self._last_pong = time.monotonic()
        elif frame_type == FrameType.PING:
            with contextlib.suppress(TransportError):
                await self._send({"type": FrameType.PONG.value})
        elif frame_type == FrameType.REGISTERED:
            confirmed = frame.get("identity")
            if isinstance(confirmed, str) and confirmed:
                self._identity = confirmed
            logger.info(f"✅ 註冊完成: {self._identity}")
            self._set_state(ConnectionState.CONNECTED, force_notify=True)
        else:
            logger.warning(f"未知訊息類型: {frame_type}")

    async def _handle_command(self, frame: dict[str, Any]) -> None:
        envelope = CommandEnvelope.from_frame(frame)
        logger.info(f"📥 收到指令: {envelope.kind} (id: {envelope.correlation_id})")

        response = await self._dispatcher.handle(envelope)
        response.correlation_id = envelope.correlation_id
        try:
            await self._send(response.to_frame())
        except TransportError as e:
            logger.warning(f"回應傳送失敗: {envelope.kind} - {e.message}")

"""
指令分派器

將 CommandEnvelope 對應到 TargetSessionController 的操作，
所有失敗在這裡統一轉換為 ResponseEnvelope，不會拋出例外。
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from browser_relay.errors import RelayError
from browser_relay.schemas import CommandEnvelope, CommandKind, ResponseEnvelope
from browser_relay.session.controller import TargetSessionController

logger = logging.getLogger(__name__)

CommandHandler = Callable[[CommandEnvelope], Awaitable[Any]]


class CommandDispatcher:
    """指令分派器"""

    def __init__(self, controller: TargetSessionController):
        self._controller = controller
        self._handlers: dict[CommandKind, CommandHandler] = {
            CommandKind.NAVIGATE: self._handle_navigate,
            CommandKind.CLICK: self._handle_click,
            CommandKind.TYPE: self._handle_type,
            CommandKind.SNAPSHOT: self._handle_snapshot,
            CommandKind.SCREENSHOT: self._handle_screenshot,
            CommandKind.LIST_TARGETS: self._handle_list_targets,
            CommandKind.SELECT_TARGET: self._handle_select_target,
        }
        missing = set(CommandKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"未實作的指令處理器: {sorted(k.value for k in missing)}")

    async def handle(self, envelope: CommandEnvelope) -> ResponseEnvelope:
        """
        執行指令並產生回應

        Args:
            envelope: 遠端指令

        Returns:
            帶有相同 correlation id 的回應
        """
        kind = envelope.command_kind
        if kind is None:
            logger.warning(f"未知的指令: {envelope.kind}")
            return ResponseEnvelope.fail(f"Unknown command: {envelope.kind}", envelope.correlation_id)

        try:
            data = await self._handlers[kind](envelope)
        except RelayError as e:
            logger.warning(f"指令執行失敗: {envelope.kind} - {e.message}")
            return ResponseEnvelope.fail(e.message, envelope.correlation_id)
        except Exception as e:
            logger.exception(f"指令執行失敗: {envelope.kind}")
            return ResponseEnvelope.fail(str(e) or type(e).__name__, envelope.correlation_id)

        logger.info(f"📤 指令執行成功: {envelope.kind}")
        return ResponseEnvelope.ok(data, envelope.correlation_id)

    # ═══════════════════════════════════════════════════════════════════════════════
    # 指令處理器
    # ═══════════════════════════════════════════════════════════════════════════════

    async def _handle_navigate(self, envelope: CommandEnvelope) -> dict[str, Any]:
        return await self._controller.navigate(envelope.require_str("url"))

    async def _handle_click(self, envelope: CommandEnvelope) -> dict[str, Any]:
        return await self._controller.click(envelope.require_str("selector"))

    async def _handle_type(self, envelope: CommandEnvelope) -> dict[str, Any]:
        return await self._controller.type_text(
            envelope.require_str("selector"),
            envelope.require_str("text", allow_empty=True),
        )

    async def _handle_snapshot(self, envelope: CommandEnvelope) -> dict[str, Any]:
        return await self._controller.snapshot()

    async def _handle_screenshot(self, envelope: CommandEnvelope) -> dict[str, Any]:
        return await self._controller.screenshot()

    async def _handle_list_targets(self, envelope: CommandEnvelope) -> dict[str, Any]:
        return await self._controller.list_targets()

    async def _handle_select_target(self, envelope: CommandEnvelope) -> dict[str, Any]:
        return await self._controller.select_target(envelope.require_target_id())

"""
錯誤類型定義

Relay 內部所有可預期的錯誤都繼承自 RelayError，
由 CommandDispatcher 統一轉換為回應格式。
"""
from typing import Any


class RelayError(Exception):
    """Relay 錯誤基底類別"""

    def __init__(self, message: str, data: dict[str, Any] | None = None):
        self.message = message
        self.data = data
        super().__init__(message)


class TransportError(RelayError, ConnectionError):
    """傳輸層錯誤（開啟、傳送失敗或逾時）"""


class NoTargetBound(RelayError):
    """尚未綁定任何分頁"""

    def __init__(self) -> None:
        super().__init__("No tab connected")


class TargetNotFound(RelayError):
    """指定的分頁不存在"""

    def __init__(self, target_id: Any):
        self.target_id = target_id
        super().__init__(f"Tab not found: {target_id}", {"targetId": target_id})


class ActionError(RelayError):
    """自動化操作失敗，訊息原樣傳回"""


class ProtocolError(RelayError):
    """無法解析的訊息"""


class InvalidCommand(ProtocolError):
    """指令參數缺漏或型別錯誤"""

"""
資料模型定義

包含連線狀態、訊息框架（frame）、CommandEnvelope 與 ResponseEnvelope。

Wire 格式（JSON 文字訊息）：
    client → server  {"type": "register", "identity": "..."}
    server → client  {"type": "registered", "identity": "..."}
    server → client  {"type": "command", "id": "...", "kind": "...", ...}
    client → server  {"type": "response", "id": "...", "success": true, "data": ..., "error": "..."}
    雙向            {"type": "ping"} / {"type": "pong"}
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from browser_relay.errors import InvalidCommand, ProtocolError

# 正常關閉的 close code，不觸發自動重連
NORMAL_CLOSURE = 1000


# ═══════════════════════════════════════════════════════════════════════════════
# 列舉類別
# ═══════════════════════════════════════════════════════════════════════════════
class ConnectionState(Enum):
    """連線狀態"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class FrameType(str, Enum):
    """訊息框架類型"""
    REGISTER = "register"
    REGISTERED = "registered"
    COMMAND = "command"
    RESPONSE = "response"
    PING = "ping"
    PONG = "pong"


class CommandKind(str, Enum):
    """遠端指令種類"""
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    SNAPSHOT = "snapshot"
    SCREENSHOT = "screenshot"
    LIST_TARGETS = "list-targets"
    SELECT_TARGET = "select-target"


# 舊版客戶端使用的指令名稱
_KIND_ALIASES: dict[str, CommandKind] = {
    "getTabs": CommandKind.LIST_TARGETS,
    "selectTab": CommandKind.SELECT_TARGET,
}


def resolve_kind(kind: Any) -> CommandKind | None:
    """將指令名稱轉換為 CommandKind，未知名稱回傳 None"""
    if not isinstance(kind, str):
        return None
    if kind in _KIND_ALIASES:
        return _KIND_ALIASES[kind]
    try:
        return CommandKind(kind)
    except ValueError:
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# 指令與回應
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class CommandEnvelope:
    """
    遠端指令

    收到後即不可變。參數以原始值保存，型別檢查延後到 require_* 方法，
    讓格式錯誤的指令仍能得到對應的錯誤回應。
    """
    kind: str
    correlation_id: Any = None
    url: Any = None
    selector: Any = None
    text: Any = None
    target_id: Any = None

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> "CommandEnvelope":
        """從 command frame 建立指令"""
        target_id = frame.get("targetId", frame.get("tabId"))
        return cls(
            kind=str(frame.get("kind", "")),
            correlation_id=frame.get("id"),
            url=frame.get("url"),
            selector=frame.get("selector"),
            text=frame.get("text"),
            target_id=target_id,
        )

    @property
    def command_kind(self) -> CommandKind | None:
        return resolve_kind(self.kind)

    def require_str(self, name: str, allow_empty: bool = False) -> str:
        """取得必要的字串參數"""
        value = getattr(self, name)
        if not isinstance(value, str) or (not allow_empty and not value):
            raise InvalidCommand(f"Missing or invalid parameter '{name}' for command '{self.kind}'")
        return value

    def require_target_id(self) -> int:
        """取得必要的分頁 ID（接受整數或純數字字串）"""
        value = self.target_id
        if isinstance(value, bool):
            value = None
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value)
        if not isinstance(value, int):
            raise InvalidCommand(f"Missing or invalid parameter 'targetId' for command '{self.kind}'")
        return value


@dataclass
class ResponseEnvelope:
    """指令回應，每個指令恰好產生一個"""
    success: bool
    data: Any = None
    error: str | None = None
    correlation_id: Any = None

    @classmethod
    def ok(cls, data: Any = None, correlation_id: Any = None) -> "ResponseEnvelope":
        return cls(success=True, data=data, correlation_id=correlation_id)

    @classmethod
    def fail(cls, error: str, correlation_id: Any = None) -> "ResponseEnvelope":
        return cls(success=False, error=error, correlation_id=correlation_id)

    def to_frame(self) -> dict[str, Any]:
        """轉換為 response frame，主動推送的回應不帶 id"""
        frame: dict[str, Any] = {"type": FrameType.RESPONSE.value}
        if self.correlation_id is not None:
            frame["id"] = self.correlation_id
        frame["success"] = self.success
        if self.data is not None:
            frame["data"] = self.data
        if self.error is not None:
            frame["error"] = self.error
        return frame


@dataclass
class TargetInfo:
    """分頁資訊"""
    id: int
    url: str = ""
    title: str = ""
    active: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "active": self.active,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# Frame 編解碼
# ═══════════════════════════════════════════════════════════════════════════════
def register_frame(identity: str) -> dict[str, Any]:
    """建立註冊訊息"""
    return {"type": FrameType.REGISTER.value, "identity": identity}


def ping_frame() -> dict[str, Any]:
    return {"type": FrameType.PING.value}


def encode_frame(frame: dict[str, Any]) -> str:
    return json.dumps(frame, ensure_ascii=False)


def decode_frame(message: str | bytes) -> dict[str, Any]:
    """
    解析收到的訊息

    Raises:
        ProtocolError: 非 JSON 物件或缺少 type 欄位
    """
    if isinstance(message, bytes):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}") from e
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Frame must be a JSON object")
    if not isinstance(data.get("type"), str):
        raise ProtocolError("Frame is missing 'type'")
    return data

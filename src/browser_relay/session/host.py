"""
自動化介面定義

TargetSessionController 依賴的低階操作（分頁建立/更新/查詢、截圖、
attach session）。實作見 playwright_host.PlaywrightTargetHost。
"""

from typing import Any, Protocol

from browser_relay.config import PRIVILEGED_SCHEMES
from browser_relay.schemas import TargetInfo


class AttachSession(Protocol):
    """綁定單一分頁的低階協定 session"""

    target_id: int

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    async def detach(self) -> None: ...


class TargetHost(Protocol):
    """瀏覽器端的自動化操作"""

    async def create_target(self, url: str, active: bool = True) -> TargetInfo: ...

    async def update_target(self, target_id: int, url: str | None = None, active: bool = False) -> TargetInfo: ...

    async def get_target(self, target_id: int) -> TargetInfo | None: ...

    async def query_targets(self) -> list[TargetInfo]: ...

    async def focus_window(self, target_id: int) -> None: ...

    async def capture_visible(self, target_id: int) -> str: ...

    async def attach(self, target_id: int, protocol_version: str) -> AttachSession: ...

    async def notify_target(self, target_id: int, message: dict[str, Any]) -> None: ...


def is_controllable(url: str | None) -> bool:
    """內部頁面（chrome:, devtools: 等）不開放遠端控制"""
    if not url:
        return False
    return not url.lower().startswith(PRIVILEGED_SCHEMES)

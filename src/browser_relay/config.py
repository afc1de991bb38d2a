"""
Browser Relay 配置

從環境變數或命令列參數載入設定。
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# 專案根目錄
PROJECT_ROOT = Path(__file__).parent.parent.parent

# 自動載入 .env 檔案
_ENV_PATH = PROJECT_ROOT / ".env"
if _ENV_PATH.exists():
    load_dotenv(_ENV_PATH)

# 預設設定檔位置（endpoint / identity 跨重啟保存）
DEFAULT_SETTINGS_PATH = Path.home() / ".browser_relay" / "settings.json"

# 設定檔中的 key
SETTING_ENDPOINT = "relay_endpoint"
SETTING_IDENTITY = "relay_identity"
SETTING_AUTO_CONNECT = "relay_auto_connect"

# 不允許遠端控制的內部協定
PRIVILEGED_SCHEMES = (
    "chrome:",
    "chrome-extension:",
    "chrome-untrusted:",
    "devtools:",
    "edge:",
    "about:",
    "view-source:",
)

# CDP 協定版本
CDP_PROTOCOL_VERSION = "1.3"


@dataclass
class Config:
    """Browser Relay 配置"""

    # Relay Server WebSocket 位址
    server_url: str = "ws://localhost:30787"

    # 註冊用的身分識別
    identity: str = ""

    # Chrome CDP Endpoint
    cdp_endpoint: str = "http://localhost:9222"

    # 設定檔路徑
    settings_path: Path = DEFAULT_SETTINGS_PATH

    # 心跳間隔（秒）
    keepalive_interval: float = 30.0

    # 重連退避的基準與上限（秒）
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0

    # 連線逾時（秒）
    open_timeout: float = 10.0

    # MCP relay 連線逾時（秒）
    relay_open_timeout: float = 5.0

    # 待選分頁逾時（秒）
    pending_selection_timeout: float = 5.0

    # 日誌目錄
    log_dir: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        """從環境變數載入配置"""
        return cls(
            server_url=os.getenv("RELAY_SERVER_URL", "ws://localhost:30787"),
            identity=os.getenv("RELAY_IDENTITY", ""),
            cdp_endpoint=os.getenv(
                "CHROME_CDP_ENDPOINT",
                f"http://localhost:{os.getenv('CHROME_CDP_PORT', '9222')}",
            ),
            settings_path=Path(os.getenv("RELAY_SETTINGS_PATH", str(DEFAULT_SETTINGS_PATH))),
            keepalive_interval=float(os.getenv("KEEPALIVE_INTERVAL", "30.0")),
            reconnect_base_delay=float(os.getenv("RECONNECT_BASE_DELAY", "1.0")),
            reconnect_max_delay=float(os.getenv("RECONNECT_MAX_DELAY", "30.0")),
            open_timeout=float(os.getenv("OPEN_TIMEOUT", "10.0")),
            relay_open_timeout=float(os.getenv("RELAY_OPEN_TIMEOUT", "5.0")),
            pending_selection_timeout=float(os.getenv("PENDING_SELECTION_TIMEOUT", "5.0")),
            log_dir=os.getenv("LOG_DIR") or None,
        )

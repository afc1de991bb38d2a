"""
日誌設定模組

控制台彩色輸出與檔案輪替，Relay 程式啟動時呼叫一次。
檔案日誌每筆都帶有目前註冊的 identity，方便多個 Relay 共用同一個日誌目錄時追查。
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# 外部套件日誌等級固定為 INFO（websockets 在 DEBUG 會輸出每個 frame）
EXTERNAL_LOG = ["asyncio", "playwright", "websockets"]

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
FILE_FORMAT = "[%(asctime)s][%(levelname)-8s][%(relay_identity)s][%(name)s:%(lineno)d] %(message)s"

# 預設日誌目錄：專案根目錄的 logs/
DEFAULT_LOG_DIR = Path(__file__).resolve().parents[3] / "logs"

_ANSI_CODES = {
    logging.DEBUG: "38;5;7",
    logging.INFO: "38;5;2",
    logging.WARNING: "38;5;3",
    logging.ERROR: "38;5;1",
    logging.CRITICAL: "38;5;6;48;5;1",
}


class ColoredFormatter(logging.Formatter):
    """依日誌等級加上 ANSI 顏色"""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        code = _ANSI_CODES.get(record.levelno)
        return f"\033[{code}m{message}\033[0m" if code else message


class IdentityFilter(logging.Filter):
    """在每筆紀錄加上 relay_identity 欄位"""

    def __init__(self) -> None:
        super().__init__()
        self.identity = "-"

    def filter(self, record: logging.LogRecord) -> bool:
        record.relay_identity = self.identity
        return True


_identity_filter = IdentityFilter()


def set_log_identity(identity: str | None) -> None:
    """連線狀態改變時更新日誌中的 identity（未連線為 "-"）"""
    _identity_filter.identity = identity or "-"


def _file_handler(log_path: Path, level: int) -> logging.Handler | None:
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=str(log_path),
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as e:
        sys.stderr.write(f"警告: 無法建立日誌檔案 {log_path}: {e}\n")
        return None
    handler.setLevel(level)
    handler.addFilter(_identity_filter)
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _console_handler(verbose: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Windows 主控台與重新導向的輸出不加顏色
    formatter_cls = ColoredFormatter if sys.platform != "win32" and sys.stdout.isatty() else logging.Formatter
    handler.setFormatter(formatter_cls(fmt=CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(
    verbose: bool = False,
    log_file: str = "browser_relay.log",
    file_log_level: int = logging.WARNING,
    log_dir: str | None = None,
) -> Path | None:
    """
    設定全局日誌系統

    Args:
        verbose: 控制台是否輸出 DEBUG 等級
        log_file: 日誌檔案名稱（相對於 log_dir）
        file_log_level: 檔案輸出的日誌等級，NOTSET 表示不寫檔
        log_dir: 日誌目錄，預設為專案根目錄的 logs/

    Returns:
        日誌檔案路徑；未寫檔時為 None
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    log_path = None
    if file_log_level != logging.NOTSET:
        log_path = Path(log_dir) / log_file if log_dir else DEFAULT_LOG_DIR / log_file
        file_handler = _file_handler(log_path, file_log_level)
        if file_handler is None:
            log_path = None
        else:
            root_logger.addHandler(file_handler)

    root_logger.addHandler(_console_handler(verbose))

    for log_name in EXTERNAL_LOG:
        logging.getLogger(log_name).setLevel(logging.INFO)

    root_logger.debug(f"日誌系統設定完成: {log_path or '僅控制台'}")
    return log_path

"""
設定儲存模組

簡單的 key-value 儲存，用於保存連線參數（endpoint、identity），
讓程式重啟後可以自動重連。
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class SettingsStore(Protocol):
    """key-value 儲存介面"""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, values: dict[str, Any]) -> None: ...


class MemoryStore:
    """記憶體內的 key-value 儲存"""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, values: dict[str, Any]) -> None:
        self._data.update(values)


class JsonFileStore:
    """
    JSON 檔案 key-value 儲存

    每次 set 都會完整寫回檔案（先寫暫存檔再取代，避免寫到一半的檔案）。
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"⚠️ 無法讀取設定檔 {self._path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"⚠️ 設定檔格式錯誤（應為 JSON 物件）: {self._path}")
            return {}
        return data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, values: dict[str, Any]) -> None:
        self._data.update(values)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)
        logger.debug(f"設定已儲存: {list(values)}")

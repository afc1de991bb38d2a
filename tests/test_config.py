from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from browser_relay.__main__ import parse_args
from browser_relay.base.logging_config import ColoredFormatter, IdentityFilter, set_log_identity, setup_logging
from browser_relay.config import Config


def test_config_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RELAY_SERVER_URL", "wss://relay.example.com/browser-hub")
    monkeypatch.setenv("RELAY_IDENTITY", "me@example.com")
    monkeypatch.delenv("CHROME_CDP_ENDPOINT", raising=False)
    monkeypatch.setenv("CHROME_CDP_PORT", "9333")
    monkeypatch.setenv("RELAY_SETTINGS_PATH", str(tmp_path / "settings.json"))
    monkeypatch.setenv("RECONNECT_MAX_DELAY", "12")

    config = Config.from_env()

    assert config.server_url == "wss://relay.example.com/browser-hub"
    assert config.identity == "me@example.com"
    assert config.cdp_endpoint == "http://localhost:9333"
    assert config.settings_path == tmp_path / "settings.json"
    assert config.reconnect_max_delay == 12.0
    assert config.keepalive_interval == 30.0


def test_parse_args() -> None:
    args = parse_args(["--server", "ws://relay", "--identity", "me", "-v"])

    assert args.server == "ws://relay"
    assert args.identity == "me"
    assert args.verbose is True
    assert args.cdp_endpoint is None


def test_setup_logging_writes_rotating_file(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved = root.handlers[:]
    try:
        log_path = setup_logging(verbose=True, log_dir=str(tmp_path))

        assert log_path == tmp_path / "browser_relay.log"

        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert Path(file_handlers[0].baseFilename) == tmp_path / "browser_relay.log"
        assert logging.getLogger("websockets").level == logging.INFO

        logging.getLogger("browser_relay.test").warning("寫入檔案")
        file_handlers[0].flush()
        assert "寫入檔案" in (tmp_path / "browser_relay.log").read_text(encoding="utf-8")
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved:
            root.addHandler(handler)


def test_colored_formatter_wraps_message() -> None:
    record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, None)

    formatted = ColoredFormatter("%(message)s").format(record)

    assert formatted.startswith("\033[") and "boom" in formatted and formatted.endswith("\033[0m")


def test_file_log_is_tagged_with_identity(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved = root.handlers[:]
    try:
        setup_logging(log_dir=str(tmp_path))
        logger = logging.getLogger("browser_relay.test")

        set_log_identity("me@example.com")
        logger.warning("已註冊")
        set_log_identity(None)
        logger.warning("已中斷")
        for handler in root.handlers:
            handler.flush()

        lines = (tmp_path / "browser_relay.log").read_text(encoding="utf-8").splitlines()
        assert "[me@example.com]" in lines[0] and "已註冊" in lines[0]
        assert "[-]" in lines[1] and "已中斷" in lines[1]
    finally:
        set_log_identity(None)
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved:
            root.addHandler(handler)


def test_setup_logging_without_file(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved = root.handlers[:]
    try:
        assert setup_logging(file_log_level=logging.NOTSET, log_dir=str(tmp_path)) is None
        assert not any(isinstance(h, RotatingFileHandler) for h in root.handlers)
        assert not (tmp_path / "browser_relay.log").exists()
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved:
            root.addHandler(handler)


def test_identity_filter_defaults_to_dash() -> None:
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "hello", None, None)

    assert IdentityFilter().filter(record) is True
    assert record.relay_identity == "-"

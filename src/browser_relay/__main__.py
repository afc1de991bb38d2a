"""
Browser Relay 主程式

連接 Relay Server，接收遠端指令並操作本地 Chrome 瀏覽器。

使用方式：
    python -m browser_relay --server wss://your-server/browser-hub --identity you@example.com

環境變數：
    RELAY_SERVER_URL    - Relay Server WebSocket 位址
    RELAY_IDENTITY      - 註冊用的身分識別
    CHROME_CDP_ENDPOINT - Chrome CDP Endpoint (預設 http://localhost:9222)
    RELAY_SETTINGS_PATH - 設定檔路徑（保存連線參數供自動重連）

未指定 identity 時，使用設定檔中上次的連線參數自動連線。
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from browser_relay.app import RelayContext
from browser_relay.base.logging_config import setup_logging
from browser_relay.config import Config
from browser_relay.errors import TransportError


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """解析命令列參數"""
    parser = argparse.ArgumentParser(
        description="Browser Relay - 將遠端指令轉送到本地 Chrome 瀏覽器",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
範例：
  # 使用上次儲存的連線參數
  python -m browser_relay

  # 指定 Server 和身分
  python -m browser_relay --server wss://relay.example.com/browser-hub --identity you@example.com

Chrome 啟動 (Linux)：
  google-chrome \\
    --remote-debugging-port=9222 \\
    --user-data-dir=/tmp/chrome_debug
        """,
    )
    parser.add_argument("--server", type=str, help="Relay Server WebSocket 位址")
    parser.add_argument("--identity", type=str, help="註冊用的身分識別")
    parser.add_argument("--cdp-endpoint", type=str, help="Chrome CDP Endpoint (預設: http://localhost:9222)")
    parser.add_argument("--settings", type=str, help="設定檔路徑")
    parser.add_argument("-v", "--verbose", action="store_true", help="顯示詳細日誌")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    """主函式"""
    args = parse_args(argv)
    config = Config.from_env()

    # 命令列參數覆蓋環境變數
    if args.server:
        config.server_url = args.server
    if args.identity:
        config.identity = args.identity
    if args.cdp_endpoint:
        config.cdp_endpoint = args.cdp_endpoint
    if args.settings:
        config.settings_path = Path(args.settings)

    setup_logging(verbose=args.verbose, log_dir=config.log_dir)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("🌐 Browser Relay 啟動中...")
    logger.info(f"   CDP Endpoint: {config.cdp_endpoint}")
    logger.info(f"   Settings: {config.settings_path}")
    logger.info("=" * 60)

    try:
        context = await RelayContext.create(config)
    except TransportError as e:
        logger.error(f"❌ {e.message}")
        logger.error("   啟動參數: chrome --remote-debugging-port=9222 --user-data-dir=/tmp/chrome_debug")
        return 1

    try:
        if config.identity:
            try:
                await context.connect(config.server_url, config.identity)
            except TransportError:
                return 1
        elif not await context.start():
            logger.warning("⚠️ 尚未連線，請使用 --identity 或設定 RELAY_IDENTITY")

        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("👋 收到中斷訊號，正在停止...")
    finally:
        await context.close()
        logger.info("🛑 Browser Relay 已停止")

    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    run()

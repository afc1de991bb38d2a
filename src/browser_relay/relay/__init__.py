"""
Relay 連線模組

與 Relay Server 的 WebSocket 連線，以及指令分派。
"""

from browser_relay.relay.connection import ConnectionManager
from browser_relay.relay.dispatcher import CommandDispatcher

__all__ = ["ConnectionManager", "CommandDispatcher"]

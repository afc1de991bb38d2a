"""
分頁 Session 模組

維護 Relay 與分頁的綁定，以及分頁上的低階自動化 session。
"""

from browser_relay.session.controller import TargetSessionController
from browser_relay.session.events import EventBus

__all__ = ["TargetSessionController", "EventBus"]

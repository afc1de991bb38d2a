"""
MCP relay 分頁分享模組
"""

from browser_relay.tabshare.pending import PendingSelectionTracker
from browser_relay.tabshare.service import TabShareService

__all__ = ["PendingSelectionTracker", "TabShareService"]

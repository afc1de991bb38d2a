"""
事件匯流排

低階協定事件（CDP event）依分頁 ID 分派給訂閱者；
分頁生命週期事件（切換到前景、關閉）廣播給所有生命週期訂閱者。
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtocolEvent:
    """某個分頁的低階協定事件"""
    target_id: int
    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TargetActivated:
    """分頁切換到前景"""
    target_id: int


@dataclass(frozen=True)
class TargetRemoved:
    """分頁已關閉"""
    target_id: int


LifecycleEvent = Union[TargetActivated, TargetRemoved]
Event = Union[ProtocolEvent, TargetActivated, TargetRemoved]
Handler = Callable[[Any], Union[None, Awaitable[None]]]


class Subscription:
    """訂閱憑證，cancel() 後不再收到事件"""

    def __init__(self, bus: "EventBus", key: Any, handler: Handler) -> None:
        self._bus = bus
        self.key = key
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)


class EventBus:
    """以分頁 ID 為 key 的事件匯流排"""

    _LIFECYCLE = object()

    def __init__(self) -> None:
        self._subscribers: dict[Any, list[Subscription]] = {}

    def subscribe(self, target_id: int, handler: Callable[[ProtocolEvent], Any]) -> Subscription:
        """訂閱指定分頁的協定事件"""
        return self._add(Subscription(self, target_id, handler))

    def subscribe_lifecycle(self, handler: Callable[[LifecycleEvent], Any]) -> Subscription:
        """訂閱所有分頁的生命週期事件"""
        return self._add(Subscription(self, self._LIFECYCLE, handler))

    def subscriber_count(self, target_id: int) -> int:
        return len(self._subscribers.get(target_id, []))

    async def publish(self, event: Event) -> None:
        """發布事件；單一訂閱者失敗不影響其他訂閱者"""
        key = event.target_id if isinstance(event, ProtocolEvent) else self._LIFECYCLE
        for subscription in list(self._subscribers.get(key, [])):
            if not subscription.active:
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"事件處理失敗: {event}")

    def _add(self, subscription: Subscription) -> Subscription:
        self._subscribers.setdefault(subscription.key, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.key)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._subscribers[subscription.key]

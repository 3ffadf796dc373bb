"""Typed publish/subscribe surface exposed to the rest of the platform."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], Union[None, Awaitable[None]]]


class Channel(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    BUTTON_PRESS = "buttonPress"
    BUTTON_RELEASE = "buttonRelease"
    CALIBRATION_COMPLETE = "calibrationComplete"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class ConnectEvent:
    port: str

    def to_dict(self) -> Dict[str, Any]:
        return {"port": self.port}


@dataclass(slots=True, frozen=True)
class DisconnectEvent:
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason}


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    type: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "message": self.message}


class Subscription:
    """Handle returned by :meth:`EventEmitter.subscribe`."""

    __slots__ = ("_emitter", "channel", "callback", "active")

    def __init__(self, emitter: "EventEmitter", channel: Channel, callback: Subscriber) -> None:
        self._emitter = emitter
        self.channel = channel
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._emitter._remove(self)
            self.active = False


class EventEmitter:
    """Ordered, synchronous fan-out of link events.

    Subscribers of a channel run in registration order on the caller's
    thread. A failing subscriber is logged and skipped; the remaining ones
    still run. Coroutine subscribers are scheduled on the running loop.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[Channel, List[Subscription]] = {channel: [] for channel in Channel}

    def subscribe(self, channel: Union[Channel, str], callback: Subscriber) -> Subscription:
        channel = Channel(channel)
        subscription = Subscription(self, channel, callback)
        self._subscribers[channel].append(subscription)
        return subscription

    def subscribe_all(self, callback: Callable[[Channel, Any], Union[None, Awaitable[None]]]) -> List[Subscription]:
        subscriptions = []
        for channel in Channel:
            def _bound(payload: Any, _channel: Channel = channel) -> Union[None, Awaitable[None]]:
                return callback(_channel, payload)

            subscriptions.append(self.subscribe(channel, _bound))
        return subscriptions

    def subscriber_count(self, channel: Union[Channel, str]) -> int:
        return len(self._subscribers[Channel(channel)])

    def emit(self, channel: Union[Channel, str], payload: Any) -> int:
        """Deliver ``payload`` to every subscriber; return how many succeeded."""
        channel = Channel(channel)
        delivered = 0
        # Copy so that unsubscribing from inside a callback is safe.
        for subscription in tuple(self._subscribers[channel]):
            if not subscription.active:
                continue
            try:
                outcome = subscription.callback(payload)
                if asyncio.iscoroutine(outcome):
                    self._schedule(outcome)
                delivered += 1
            except Exception:
                logger.exception("Subscriber for %s raised", channel.value)
        return delivered

    def clear(self) -> None:
        for subscriptions in self._subscribers.values():
            for subscription in subscriptions:
                subscription.active = False
            subscriptions.clear()

    @staticmethod
    def _schedule(coro: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()  # type: ignore[attr-defined]
            raise
        loop.create_task(coro)  # type: ignore[arg-type]

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers[subscription.channel]
        if subscription in subscribers:
            subscribers.remove(subscription)


__all__ = [
    "Channel",
    "ConnectEvent",
    "DisconnectEvent",
    "ErrorEvent",
    "EventEmitter",
    "Subscription",
    "Subscriber",
]

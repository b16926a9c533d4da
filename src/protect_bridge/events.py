"""Typed status events for the Protect bridge.

Session and realtime lifecycle changes are published as ``StatusEvent``
values on a ``StatusEventBus``. Every event carries a ``StatusEventKind``
so subscribers can branch on a closed set of kinds.

Example:
    >>> bus = StatusEventBus()
    >>>
    >>> def on_error(event: StatusEvent) -> None:
    ...     print(f"NVR error: {event.error}")
    >>>
    >>> unsub = bus.subscribe(on_error, kinds=[StatusEventKind.CONNECTION_ERROR])
    >>> # ... later ...
    >>> unsub()
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from loguru import logger  # type: ignore[import-untyped]


class StatusEventKind(str, Enum):
    """Kinds of status events published by the bridge."""

    SESSION_STATUS = 'session_status'
    CONNECTION_ERROR = 'connection_error'
    CONNECTION_CLOSED = 'connection_closed'
    LISTENER_STATE = 'listener_state'
    BOOTSTRAP_LOADED = 'bootstrap_loaded'
    NVR_SERVER = 'nvr_server'


class SessionStatus(str, Enum):
    """Login status shown to the user, as reported during login."""

    CONNECTING = 'Connecting'
    CONNECTED = 'Connected'
    DISCONNECTED = 'Disconnected'


@dataclass
class StatusEvent:
    """A single status event.

    Attributes:
        kind: What happened.
        status: Login status, set for SESSION_STATUS events.
        state: New listener state value, set for LISTENER_STATE events.
        error: The failure, set for CONNECTION_ERROR events.
        data: Extra payload such as the NVR descriptor for NVR_SERVER.
        timestamp: When the event was published.
    """

    kind: StatusEventKind
    status: SessionStatus | None = None
    state: str | None = None
    error: Exception | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


StatusCallback = Callable[[StatusEvent], Any]
UnsubscribeFunc = Callable[[], None]


@dataclass
class _Subscription:
    """Internal representation of a status subscription."""

    callback: StatusCallback
    kinds: frozenset[StatusEventKind]
    subscription_id: str

    def matches(self, event: StatusEvent) -> bool:
        return not self.kinds or event.kind in self.kinds


class StatusEventBus:
    """Delivers status events to subscribers.

    Callbacks may be sync or async; async callbacks are scheduled as tasks
    on the running loop. A failing callback is logged and never stops
    delivery to the others.
    """

    def __init__(self) -> None:
        """Initialize an empty bus."""
        self._subscriptions: dict[str, _Subscription] = {}
        self._next_subscription_id = 0
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def subscription_count(self) -> int:
        """Get the number of active subscriptions."""
        return len(self._subscriptions)

    def subscribe(
        self,
        callback: StatusCallback,
        kinds: Iterable[StatusEventKind] | None = None,
    ) -> UnsubscribeFunc:
        """Subscribe to status events.

        Args:
            callback: Function to call for each matching event.
            kinds: Event kinds to receive. None receives every kind.

        Returns:
            Unsubscribe function - call to remove the subscription.
        """
        sub_id = f'sub_{self._next_subscription_id}'
        self._next_subscription_id += 1
        self._subscriptions[sub_id] = _Subscription(
            callback=callback,
            kinds=frozenset(kinds or ()),
            subscription_id=sub_id,
        )
        logger.debug(f'Added status subscription: {sub_id}')

        def unsubscribe() -> None:
            if self._subscriptions.pop(sub_id, None) is not None:
                logger.debug(f'Removed status subscription: {sub_id}')

        return unsubscribe

    def publish(self, event: StatusEvent) -> None:
        """Deliver an event to every matching subscriber.

        Args:
            event: The event to deliver.
        """
        logger.trace(f'Status event: {event.kind.value}')
        for subscription in list(self._subscriptions.values()):
            if subscription.matches(event):
                self._dispatch(subscription, event)

    def _dispatch(self, subscription: _Subscription, event: StatusEvent) -> None:
        try:
            result = subscription.callback(event)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except Exception as e:
            logger.error(
                f'Error in status callback {subscription.subscription_id}: {e}'
            )

    def clear(self) -> None:
        """Remove all subscriptions."""
        self._subscriptions.clear()

"""Host-platform collaborators: device lookup, settings and triggers.

The bridge never creates or destroys device proxies; it only looks them up
by external id and calls behavior on them. The protocols below describe
what the host application must provide. In-memory implementations are
included for standalone use and tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from loguru import logger  # type: ignore[import-untyped]


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class DeviceProxy(Protocol):
    """Host-side stand-in for one camera, target of dispatched updates."""

    id: str
    name: str
    last_motion_at: int | None
    last_ring_at: int | None
    is_connected: bool | None

    def on_motion_start(
        self,
        timestamp: int,
        score: int | None = None,
        thumbnail: str | None = None,
        heatmap: str | None = None,
    ) -> None: ...

    def on_motion_end(self, timestamp: int) -> None: ...

    def on_doorbell_ringing(self, timestamp: int) -> None: ...

    def on_is_recording(self, value: bool) -> None: ...

    def on_is_mic_enabled(self, value: bool) -> None: ...

    def on_mic_volume(self, value: int) -> None: ...

    def on_recording_mode(self, mode: str) -> None: ...

    def on_is_dark(self, value: bool) -> None: ...

    def on_is_connected(self, value: bool) -> None: ...


class DeviceLookup(Protocol):
    """Resolves external ids to device proxies."""

    def lookup_device_by_id(self, device_id: str) -> DeviceProxy | None: ...


SettingCallback = Callable[[str], Any]


class SettingsStore(Protocol):
    """Opaque key/value settings of the host application."""

    def get_setting(self, key: str) -> Any: ...

    def set_setting(self, key: str, value: Any) -> None: ...

    def on_setting_changed(
        self, key: str | None, callback: SettingCallback
    ) -> Callable[[], None]: ...


class TriggerSink(Protocol):
    """The host application's flow-trigger mechanism."""

    def fire_trigger(self, name: str, payload: dict[str, Any]) -> None: ...


# =============================================================================
# In-memory implementations
# =============================================================================


P = TypeVar('P', bound=DeviceProxy)


class DeviceRegistry(Generic[P]):
    """In-memory registry of paired device proxies.

    Example:
        >>> registry = DeviceRegistry[CameraDevice]()
        >>> registry.add(camera)
        >>> registry.lookup_device_by_id('camera-123')
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._devices: dict[str, P] = {}

    def add(self, device: P) -> None:
        """Register a device under its external id.

        Args:
            device: The device to register.
        """
        self._devices[device.id] = device
        logger.debug(f'Registered device {device.id} ({device.name})')

    def lookup_device_by_id(self, device_id: str) -> P | None:
        """Get a device by its external id.

        Args:
            device_id: The external id carried by updates.

        Returns:
            The device if registered, None otherwise.
        """
        return self._devices.get(device_id)

    def get_by_name(self, name: str) -> P | None:
        """Get a device by its display name (case-insensitive).

        Args:
            name: The display name to search for.

        Returns:
            The first matching device, or None if not found.
        """
        name_lower = name.lower()
        for device in self._devices.values():
            if device.name.lower() == name_lower:
                return device
        return None

    def all(self) -> list[P]:
        """Get all registered devices."""
        return list(self._devices.values())

    def remove(self, device_id: str) -> bool:
        """Unregister a device.

        Args:
            device_id: The id of the device to remove.

        Returns:
            True if the device was removed, False if not found.
        """
        if device_id in self._devices:
            del self._devices[device_id]
            return True
        return False

    def clear(self) -> None:
        """Unregister every device."""
        self._devices.clear()

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[P]:
        return iter(self._devices.values())

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices


class InMemorySettingsStore:
    """Dict-backed settings store with change notification.

    Callbacks receive the changed key and may be sync or async.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        """Initialize the store.

        Args:
            initial: Initial settings.
        """
        self._values: dict[str, Any] = dict(initial or {})
        self._callbacks: list[tuple[str | None, SettingCallback]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def get_setting(self, key: str) -> Any:
        return self._values.get(key)

    def set_setting(self, key: str, value: Any) -> None:
        """Store a value and notify subscribers of ``key``."""
        self._values[key] = value
        for wanted, callback in list(self._callbacks):
            if wanted is not None and wanted != key:
                continue
            try:
                result = callback(key)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.error(f'Error in settings callback for {key}: {e}')

    def on_setting_changed(
        self, key: str | None, callback: SettingCallback
    ) -> Callable[[], None]:
        """Subscribe to changes of one key, or of every key when None.

        Returns:
            Unsubscribe function.
        """
        entry = (key, callback)
        self._callbacks.append(entry)

        def unsubscribe() -> None:
            if entry in self._callbacks:
                self._callbacks.remove(entry)

        return unsubscribe


@dataclass
class FiredTrigger:
    """A trigger fired into the host application."""

    name: str
    payload: dict[str, Any]
    fired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryTriggerSink:
    """Trigger sink that keeps a history and forwards to listeners."""

    def __init__(self, max_history: int = 1000) -> None:
        """Initialize the sink.

        Args:
            max_history: Number of fired triggers kept in ``history``.
        """
        self._max_history = max_history
        self.history: list[FiredTrigger] = []
        self._listeners: list[Callable[[FiredTrigger], Any]] = []

    def fire_trigger(self, name: str, payload: dict[str, Any]) -> None:
        """Record a trigger and forward it to listeners."""
        fired = FiredTrigger(name=name, payload=dict(payload))
        self.history.append(fired)
        if len(self.history) > self._max_history:
            del self.history[: len(self.history) - self._max_history]
        logger.debug(f'Trigger fired: {name}')
        for listener in list(self._listeners):
            try:
                listener(fired)
            except Exception as e:
                logger.error(f'Error in trigger listener for {name}: {e}')

    def add_listener(self, listener: Callable[[FiredTrigger], Any]) -> Callable[[], None]:
        """Forward every fired trigger to ``listener``.

        Returns:
            Function removing the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def names(self) -> list[str]:
        """Get the names of fired triggers, oldest first."""
        return [fired.name for fired in self.history]

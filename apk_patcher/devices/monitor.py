"""Device monitor: background polling of connected devices."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, Optional, Sequence

from apk_patcher.core.models import Device, MonitorState
from apk_patcher.devices.adb import AdbClient, AdbError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0

StateListener = Callable[[MonitorState], None]


def reconcile_selection(
    previous: Optional[Device], devices: Sequence[Device]
) -> Optional[Device]:
    """Keep the previous selection if still ready, else auto-pick or clear."""
    ready = [d for d in devices if d.is_ready]
    if previous is not None:
        for device in ready:
            if device.id == previous.id:
                return device
    if len(ready) == 1:
        return ready[0]
    return None


class DeviceMonitor:
    """Polls the bridge on a fixed interval and publishes state snapshots.

    The state is an immutable MonitorState that is replaced wholesale on
    every change, so readers never observe a partial update.
    """

    def __init__(
        self,
        client: Optional[AdbClient] = None,
        interval: float = DEFAULT_INTERVAL,
    ):
        self.client = client or AdbClient()
        self.interval = interval
        self._state = MonitorState()
        self._listeners: list[StateListener] = []
        # Guards read-modify-write of _state; reentrant so listeners may
        # select a device.
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` on every new snapshot. Returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="device-monitor", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def select_device(self, device: Optional[Device]) -> None:
        with self._lock:
            self._publish(replace(self._state, selected=device))

    def probe(self) -> bool:
        available = self.client.is_available()
        with self._lock:
            self._publish(replace(self._state, bridge_available=available))
        return available

    def refresh(self) -> MonitorState:
        """Fetch the device list once and reconcile the selection."""
        try:
            devices: Optional[list[Device]] = self.client.list_devices()
        except AdbError as e:
            logger.warning("Device refresh failed: %s", e)
            devices = None
        # Reconcile against the state at publish time, not at fetch time.
        with self._lock:
            current = self._state
            if devices is None:
                new_state = replace(current, devices=(), selected=None)
            else:
                new_state = replace(
                    current,
                    devices=tuple(devices),
                    selected=reconcile_selection(current.selected, devices),
                )
            self._publish(new_state)
        return new_state

    def _run(self) -> None:
        if not self.probe():
            logger.info("ADB unavailable, device monitoring disabled")
            return
        while not self._stop.is_set():
            self.refresh()
            self._stop.wait(self.interval)

    def _publish(self, state: MonitorState) -> None:
        # Caller holds _lock.
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.warning("Device state listener failed", exc_info=True)

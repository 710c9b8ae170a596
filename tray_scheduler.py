"""Debounced tray icon updates.

At most one render runs at a time and at most one is pending. A new
request replaces the pending timer ("latest wins after a quiet period").
A timer that fires while a render is still in flight is dropped; the next
trigger renders with fresh data.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Protocol

from PIL import Image

from tray_icon import TrayState, compose_tray_icon

logger = logging.getLogger(__name__)

# Batch rapid settings changes.
SETTINGS_DEBOUNCE_S = 2.0
# Batch probe results that land close together across providers.
PROBE_DEBOUNCE_S = 0.5
# Direct user toggles render immediately.
IMMEDIATE_S = 0.0


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer(delay_s: float, callback: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(delay_s, callback)
    timer.daemon = True
    timer.start()
    return timer


class TrayIconScheduler:
    """Owns the pending tray timer and the in-flight flag.

    ``read_state`` is called when a timer fires, so a delayed render sees
    whatever is current at that moment. It returns None while the tray is
    not ready. ``apply_icon`` receives the rendered image, or None to show
    the static fallback glyph.
    """

    def __init__(
        self,
        read_state: Callable[[], Optional[TrayState]],
        apply_icon: Callable[[Optional[Image.Image]], Any],
        timer_factory: TimerFactory = thread_timer,
        compose: Callable[[TrayState], Optional[Image.Image]] = compose_tray_icon,
    ):
        self._read_state = read_state
        self._apply_icon = apply_icon
        self._timer_factory = timer_factory
        self._compose = compose
        self._timer: Optional[TimerHandle] = None
        self._generation = 0
        self._fired_generation = 0
        self._timer_lock = threading.Lock()
        self._update_lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def in_flight(self) -> bool:
        return self._update_lock.locked()

    def schedule(self, reason: str, delay_s: float = IMMEDIATE_S) -> None:
        """Arm the update timer, replacing any pending one."""
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            generation = self._generation
        logger.debug("Tray update scheduled (%s) in %.1fs", reason, delay_s)

        def fire() -> None:
            with self._timer_lock:
                # A newer schedule() or cancel() superseded this timer
                if generation != self._generation:
                    return
                self._fired_generation = generation
                self._timer = None
            self._run_update(reason)

        handle = self._timer_factory(delay_s, fire)
        with self._timer_lock:
            if generation == self._generation and self._fired_generation != generation:
                self._timer = handle

    def cancel(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1

    def _run_update(self, reason: str) -> None:
        if not self._update_lock.acquire(blocking=False):
            logger.debug("Tray update already in progress, dropping %s update.", reason)
            return
        try:
            state = self._read_state()
            if state is None:
                return
            image = self._compose(state)
            self._apply_icon(image)
        except Exception:
            logger.exception("Failed to update tray icon (%s)", reason)
        finally:
            self._update_lock.release()

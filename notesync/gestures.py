"""Gesture reorder engine.

One state machine handles both input modalities::

    IDLE -> ARMED -> DRAGGING -> COMMITTED | CANCELLED -> IDLE

Each modality only supplies an adapter that turns raw UI events into the
engine's ``start`` / ``move`` / ``end`` / ``cancel`` signals:

* ``PointerGestureAdapter`` maps native drag-and-drop events (fine pointer).
* ``TouchGestureAdapter`` arms only after a stationary long press, so a
  swipe stays a scroll, and resolves the drop target by hit-testing the
  last touch coordinates.

The engine owns at most one ``DragSession``. Every exit path (commit,
cancel, watchdog timeout, collaborator failure) clears the session and
releases scroll suppression. Reordering only touches the local store.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from notesync.metrics import GESTURES
from notesync.models import NoteId
from notesync.store import NoteStore

logger = logging.getLogger(__name__)

DEFAULT_LONG_PRESS_S = 0.18
DEFAULT_TOUCH_SLOP_PX = 10.0
DEFAULT_WATCHDOG_S = 10.0

_LAST_TARGET: Any = object()


class InputModality(str, Enum):
    POINTER = "pointer"
    TOUCH_LONG_PRESS = "touch-long-press"


class GestureState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    DRAGGING = "dragging"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


def detect_modality(max_touch_points: int = 0, coarse_pointer: bool = False) -> InputModality:
    """Pick the modality for this device. Fixed for the whole session."""
    if max_touch_points > 0 or coarse_pointer:
        return InputModality.TOUCH_LONG_PRESS
    return InputModality.POINTER


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]

HitTester = Callable[[float, float], Optional[NoteId]]
"""Returns the id of the topmost note under a point, or None."""


class ScrollLock(Protocol):
    """Suppresses the page's default scroll while a touch drag is active."""

    def suppress(self) -> None: ...

    def release(self) -> None: ...


def loop_scheduler(delay: float, callback: Callable[[], None]) -> TimerHandle:
    """Schedule ``callback`` on the running asyncio loop."""
    return asyncio.get_running_loop().call_later(delay, callback)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass
class DragSession:
    """State of the single in-progress reorder gesture."""

    source_id: NoteId
    modality: InputModality
    x: float = 0.0
    y: float = 0.0
    state: GestureState = GestureState.ARMED
    target_id: Optional[NoteId] = None
    scroll_suppressed: bool = False
    started_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class GestureOutcome:
    state: GestureState
    source_id: NoteId
    target_id: Optional[NoteId] = None
    reason: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.state is GestureState.COMMITTED


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class GestureReorderEngine:
    """Turns start/move/end/cancel signals into ``NoteStore.move_to_position``."""

    def __init__(
        self,
        store: NoteStore,
        modality: InputModality,
        scroll_lock: Optional[ScrollLock] = None,
        schedule: Scheduler = loop_scheduler,
        watchdog_s: float = DEFAULT_WATCHDOG_S,
    ) -> None:
        self.store = store
        self.modality = modality
        self._scroll_lock = scroll_lock
        self._schedule = schedule
        self._watchdog_s = watchdog_s
        self._watchdog: Optional[TimerHandle] = None
        self._session: Optional[DragSession] = None
        self._listeners: list[Callable[[GestureOutcome], None]] = []
        self.last_outcome: Optional[GestureOutcome] = None

    @property
    def session(self) -> Optional[DragSession]:
        return self._session

    @property
    def state(self) -> GestureState:
        return self._session.state if self._session else GestureState.IDLE

    def on_outcome(self, listener: Callable[[GestureOutcome], None]) -> None:
        """Register a listener called once per finished gesture."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def start(self, source_id: NoteId, x: float = 0.0, y: float = 0.0) -> bool:
        """Arm a drag session for ``source_id``. Ignored if one is active."""
        if self._session is not None:
            logger.debug("Ignoring gesture start on %s: session active", source_id)
            return False
        if source_id not in self.store:
            logger.debug("Ignoring gesture start on unknown note %s", source_id)
            return False

        session = DragSession(source_id=source_id, modality=self.modality, x=x, y=y)
        self._session = session
        if self.modality is InputModality.TOUCH_LONG_PRESS and self._scroll_lock:
            try:
                self._scroll_lock.suppress()
                session.scroll_suppressed = True
            except Exception as e:
                logger.warning("Scroll suppression failed: %s", e)
                self.cancel("scroll-lock-failed")
                return False
        if not self._rearm_or_cancel():
            return False
        logger.debug("Gesture armed on %s (%s)", source_id, self.modality.value)
        return True

    def move(self, x: float, y: float, target_id: Optional[NoteId] = None) -> None:
        """Record the pointer position and the note currently under it."""
        session = self._session
        if session is None:
            return
        session.x, session.y = x, y
        if target_id is not None and target_id in self.store:
            session.target_id = target_id
            if session.state is GestureState.ARMED:
                session.state = GestureState.DRAGGING
                logger.debug("Dragging %s", session.source_id)
        elif session.state is GestureState.DRAGGING:
            session.target_id = None
        self._rearm_or_cancel()

    def end(self, target_id: Optional[NoteId] = _LAST_TARGET) -> Optional[GestureOutcome]:
        """Release. Commits the move if dropped on another note, else cancels.

        Without ``target_id`` the last hovered target is used.
        """
        session = self._session
        if session is None:
            return None
        target = session.target_id if target_id is _LAST_TARGET else target_id

        if session.state is not GestureState.DRAGGING:
            return self._finish(GestureState.CANCELLED, target, "not-dragging")
        if target is None or target not in self.store:
            return self._finish(GestureState.CANCELLED, None, "no-target")
        if target == session.source_id:
            return self._finish(GestureState.CANCELLED, target, "same-note")

        try:
            moved = self.store.move_to_position(session.source_id, target)
        except Exception as e:
            logger.warning("Reorder of %s failed: %s", session.source_id, e)
            return self._finish(GestureState.CANCELLED, target, "error")
        if not moved:
            return self._finish(GestureState.CANCELLED, target, "no-target")
        return self._finish(GestureState.COMMITTED, target)

    def cancel(self, reason: str = "cancelled") -> Optional[GestureOutcome]:
        """Abort the active session, if any, without reordering."""
        session = self._session
        if session is None:
            return None
        return self._finish(GestureState.CANCELLED, session.target_id, reason)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _finish(
        self, state: GestureState, target_id: Optional[NoteId], reason: Optional[str] = None
    ) -> GestureOutcome:
        session = self._session
        if session is None:
            raise RuntimeError("no active gesture session")
        self._session = None
        self._disarm_watchdog()
        if session.scroll_suppressed and self._scroll_lock:
            try:
                self._scroll_lock.release()
            except Exception as e:
                logger.warning("Scroll release failed: %s", e)

        session.state = state
        outcome = GestureOutcome(
            state=state, source_id=session.source_id, target_id=target_id, reason=reason
        )
        self.last_outcome = outcome
        GESTURES.labels(modality=self.modality.value, outcome=state.value).inc()
        if state is GestureState.COMMITTED:
            logger.info("Moved note %s to %s", session.source_id, target_id)
        else:
            logger.debug("Gesture on %s cancelled: %s", session.source_id, reason)

        for listener in list(self._listeners):
            try:
                listener(outcome)
            except Exception as e:
                logger.warning("Gesture listener failed: %s", e)
        return outcome

    def _rearm_or_cancel(self) -> bool:
        """Arm the watchdog; a session that cannot be timed out is cancelled."""
        try:
            self._arm_watchdog()
        except Exception as e:
            logger.warning("Gesture watchdog could not be armed: %s", e)
            self.cancel("watchdog-failed")
            return False
        return True

    def _arm_watchdog(self) -> None:
        self._disarm_watchdog()
        session = self._session

        def _expire() -> None:
            if self._session is session and session is not None:
                logger.warning("Gesture on %s timed out", session.source_id)
                self.cancel("timeout")

        self._watchdog = self._schedule(self._watchdog_s, _expire)

    def _disarm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None


# ---------------------------------------------------------------------------
# Modality adapters
# ---------------------------------------------------------------------------


class PointerGestureAdapter:
    """Maps native drag-and-drop events onto the engine."""

    def __init__(self, engine: GestureReorderEngine) -> None:
        self.engine = engine

    def drag_start(self, note_id: NoteId, x: float = 0.0, y: float = 0.0) -> bool:
        return self.engine.start(note_id, x, y)

    def drag_over(self, note_id: NoteId, x: float = 0.0, y: float = 0.0) -> None:
        self.engine.move(x, y, note_id)

    def drag_leave(self, x: float = 0.0, y: float = 0.0) -> None:
        self.engine.move(x, y, None)

    def drop(self, note_id: Optional[NoteId]) -> Optional[GestureOutcome]:
        return self.engine.end(note_id)

    def drag_end(self) -> Optional[GestureOutcome]:
        # Fires after drop too; by then the session is gone and this is a no-op.
        return self.engine.cancel("released-outside")


@dataclass
class _Press:
    note_id: NoteId
    origin_x: float
    origin_y: float
    x: float
    y: float
    timer: Optional[TimerHandle] = None


class TouchGestureAdapter:
    """Long-press touch dragging.

    ``touch_start`` starts a dwell timer. Moving further than ``slop_px``
    or lifting the finger before it fires means the user is scrolling or
    tapping, and no session is started. Once armed, moves are hit-tested to
    track the hovered note and ``touch_end`` drops on the note under the
    last known coordinates.
    """

    def __init__(
        self,
        engine: GestureReorderEngine,
        hit_tester: HitTester,
        schedule: Scheduler = loop_scheduler,
        long_press_s: float = DEFAULT_LONG_PRESS_S,
        slop_px: float = DEFAULT_TOUCH_SLOP_PX,
    ) -> None:
        self.engine = engine
        self._hit_tester = hit_tester
        self._schedule = schedule
        self._long_press_s = long_press_s
        self._slop_px = slop_px
        self._press: Optional[_Press] = None

    @property
    def pressing(self) -> bool:
        """Whether a long press is waiting for its dwell timer."""
        return self._press is not None

    def touch_start(self, note_id: NoteId, x: float, y: float, touches: int = 1) -> None:
        if touches > 1:
            self._interrupt("multi-touch")
            return
        if self._press is not None or self.engine.session is not None:
            return
        press = _Press(note_id=note_id, origin_x=x, origin_y=y, x=x, y=y)
        press.timer = self._schedule(self._long_press_s, lambda: self._on_dwell(press))
        self._press = press

    def touch_move(self, x: float, y: float, touches: int = 1) -> bool:
        """Handle a move. Returns True when the default scroll must be prevented."""
        if touches > 1:
            self._interrupt("multi-touch")
            return False

        press = self._press
        if press is not None:
            if math.hypot(x - press.origin_x, y - press.origin_y) > self._slop_px:
                logger.debug("Long press on %s abandoned: moved", press.note_id)
                self._clear_press()
            else:
                press.x, press.y = x, y
            return False

        if self.engine.session is None:
            return False
        self.engine.move(x, y, self._hit_test(x, y))
        return True

    def touch_end(self) -> Optional[GestureOutcome]:
        if self._press is not None:
            self._clear_press()
            return None
        session = self.engine.session
        if session is None:
            return None
        return self.engine.end(self._hit_test(session.x, session.y))

    def touch_cancel(self) -> Optional[GestureOutcome]:
        """The device lost contact or the browser took over the gesture."""
        self._clear_press()
        return self.engine.cancel("touch-cancel")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _on_dwell(self, press: _Press) -> None:
        if self._press is not press:
            return
        self._press = None
        self.engine.start(press.note_id, press.x, press.y)

    def _interrupt(self, reason: str) -> None:
        self._clear_press()
        self.engine.cancel(reason)

    def _clear_press(self) -> None:
        press, self._press = self._press, None
        if press is not None and press.timer is not None:
            press.timer.cancel()

    def _hit_test(self, x: float, y: float) -> Optional[NoteId]:
        try:
            return self._hit_tester(x, y)
        except Exception as e:
            logger.warning("Hit test at (%.0f, %.0f) failed: %s", x, y, e)
            return None

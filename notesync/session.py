"""Wires the store, persistence adapter, sync controller and gesture engine."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Union

from notesync.config import Settings
from notesync.gestures import (
    GestureReorderEngine,
    HitTester,
    InputModality,
    PointerGestureAdapter,
    Scheduler,
    ScrollLock,
    TouchGestureAdapter,
    detect_modality,
    loop_scheduler,
)
from notesync.persistence.base import PersistenceAdapter
from notesync.persistence.factory import build_adapter
from notesync.store import NoteStore
from notesync.sync import OptimisticSyncController, SyncNotice

logger = logging.getLogger(__name__)

GestureAdapter = Union[PointerGestureAdapter, TouchGestureAdapter]


class NotesSession:
    """Everything a UI needs for one user session.

    The UI renders ``store``, sends create/update/delete through
    ``controller`` and forwards raw pointer or touch events to ``gestures``.
    """

    def __init__(
        self,
        store: NoteStore,
        controller: OptimisticSyncController,
        engine: GestureReorderEngine,
        gestures: GestureAdapter,
    ) -> None:
        self.store = store
        self.controller = controller
        self.engine = engine
        self.gestures = gestures

    @property
    def modality(self) -> InputModality:
        return self.engine.modality

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        hit_tester: HitTester,
        scroll_lock: Optional[ScrollLock] = None,
        on_error: Optional[Callable[[SyncNotice], None]] = None,
        max_touch_points: int = 0,
        coarse_pointer: bool = False,
        adapter: Optional[PersistenceAdapter] = None,
        schedule: Scheduler = loop_scheduler,
    ) -> NotesSession:
        store = NoteStore()
        controller = OptimisticSyncController(
            store, adapter or build_adapter(settings), on_error=on_error
        )
        modality = detect_modality(max_touch_points, coarse_pointer)
        engine = GestureReorderEngine(
            store,
            modality,
            scroll_lock=scroll_lock,
            schedule=schedule,
            watchdog_s=settings.gesture_watchdog_s,
        )
        gestures: GestureAdapter
        if modality is InputModality.TOUCH_LONG_PRESS:
            gestures = TouchGestureAdapter(
                engine,
                hit_tester,
                schedule=schedule,
                long_press_s=settings.long_press_s,
                slop_px=settings.touch_slop_px,
            )
        else:
            gestures = PointerGestureAdapter(engine)
        logger.info("Notes session ready (%s input)", modality.value)
        return cls(store, controller, engine, gestures)

    async def load(self) -> bool:
        """Fetch the initial note list."""
        return await self.controller.load()

    async def close(self) -> None:
        """Cancel any drag, wait for pending saves, then close the adapter."""
        self.engine.cancel("session-closed")
        await self.controller.drain()
        await self.controller.adapter.close()

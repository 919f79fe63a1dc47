"""Optimistic sync controller.

Every create/update/delete is applied to the ``NoteStore`` synchronously and
then confirmed by the persistence adapter in a background task. On success
the store is reconciled with the adapter's canonical note; on failure the
store is rolled back to its exact prior shape (value and position) and a
``SyncNotice`` is sent to the ``on_error`` sink.

Ordering: each mutation gets a monotonic sequence number, and each note id
remembers the sequence of the last mutation applied to it, local or remote.
A callback whose sequence is older than that is stale and is discarded, so
a slow response can never overwrite a newer edit.

Only one pending mutation per note id is expected at a time. That is left
to the UI; the sequence guard keeps the store consistent if it happens.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Optional

from notesync.errors import ValidationError
from notesync.metrics import (
    PENDING_OPERATIONS,
    STALE_CALLBACKS,
    SYNC_DURATION,
    SYNC_OPERATIONS,
)
from notesync.models import (
    ComposeDraft,
    ConfirmedId,
    Note,
    NoteDraft,
    NoteId,
    ProvisionalId,
)
from notesync.persistence.base import PersistenceAdapter
from notesync.store import NoteStore

logger = logging.getLogger(__name__)

KEEP_IMAGE: Any = object()  # update() default: leave the image untouched


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class PendingOperation:
    """One in-flight optimistic mutation and what is needed to undo it."""

    kind: OperationKind
    target_id: NoteId
    seq: int
    previous: Optional[Note] = None
    previous_index: Optional[int] = None
    draft_text: Optional[str] = None
    draft_image: Optional[str] = None
    started: float = field(default_factory=time.perf_counter)


@dataclass(frozen=True)
class SyncNotice:
    """User-facing message emitted when a mutation is rolled back."""

    message: str
    retryable: bool
    kind: Optional[OperationKind] = None
    note_id: Optional[NoteId] = None


_RETRYABLE_MESSAGES = {
    OperationKind.CREATE: "Couldn't save your note. Check your connection and try again.",
    OperationKind.UPDATE: "Couldn't save your changes. Check your connection and try again.",
    OperationKind.DELETE: "Couldn't delete the note. Check your connection and try again.",
}
LOAD_FAILED_MESSAGE = "Couldn't load your notes. Check your connection and try again."


class OptimisticSyncController:
    """Applies note mutations locally first and reconciles them with the adapter."""

    def __init__(
        self,
        store: NoteStore,
        adapter: PersistenceAdapter,
        on_error: Optional[Callable[[SyncNotice], None]] = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.on_error = on_error
        self.draft = ComposeDraft()
        self._seq = itertools.count(1)
        self._last_applied: dict[NoteId, int] = {}
        self._pending: dict[int, PendingOperation] = {}
        # Pending deletes: removed id -> id it sat after (None for the head).
        self._tombstones: dict[NoteId, Optional[NoteId]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> dict[int, PendingOperation]:
        """In-flight operations keyed by sequence number."""
        return dict(self._pending)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self, text: Optional[str] = None, image_ref: Optional[str] = None
    ) -> asyncio.Task[Optional[Note]]:
        """Insert a provisional note at the head and confirm it remotely.

        Raises ``ValidationError`` without touching the store when both
        ``text`` and ``image_ref`` are empty. The compose draft is cleared
        immediately and restored from the given values if the create fails.
        """
        draft = NoteDraft.validated(text, image_ref)
        note = Note(id=ProvisionalId.new(), text=draft.text, image_ref=draft.image_ref)
        op = self._begin(
            OperationKind.CREATE,
            note.id,
            draft_text=text or "",
            draft_image=image_ref,
        )
        self.store.insert_at_head(note)
        self.draft.clear()
        return self._spawn(self._confirm_create(op, draft))

    def submit_draft(self) -> asyncio.Task[Optional[Note]]:
        """Create a note from the current compose draft."""
        return self.create(self.draft.text, self.draft.image_ref)

    def update(
        self, note_id: NoteId, text: Optional[str], image_ref: Any = KEEP_IMAGE
    ) -> asyncio.Task[Optional[Note]]:
        """Replace a confirmed note's content locally, then confirm it."""
        previous = self._confirmed_note(note_id)
        if image_ref is KEEP_IMAGE:
            image_ref = previous.image_ref
        draft = NoteDraft.validated(text, image_ref)
        op = self._begin(OperationKind.UPDATE, note_id, previous=previous)
        self.store.replace(note_id, previous.with_content(draft.text, draft.image_ref))
        return self._spawn(self._confirm_update(op, draft))

    def delete(self, note_id: NoteId) -> asyncio.Task[None]:
        """Remove a confirmed note locally, then confirm the delete."""
        previous = self._confirmed_note(note_id)
        op = self._begin(OperationKind.DELETE, note_id, previous=previous)
        self._tombstones[note_id] = self._predecessor(note_id)
        op.previous_index = self.store.remove_by_id(note_id)
        return self._spawn(self._confirm_delete(op))

    async def load(self) -> bool:
        """Populate the store from the adapter, keeping unconfirmed notes on top."""
        try:
            notes = await self.adapter.list()
        except Exception as e:
            logger.warning("Failed to load notes: %s", e)
            self._notify(SyncNotice(LOAD_FAILED_MESSAGE, retryable=True))
            return False
        provisional = [n for n in self.store.list() if n.is_provisional]
        self.store.reset([*provisional, *notes])
        logger.info("Loaded %d notes", len(notes))
        return True

    async def drain(self) -> None:
        """Wait until every in-flight confirmation has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Confirmation callbacks
    # ------------------------------------------------------------------

    async def _confirm_create(
        self, op: PendingOperation, draft: NoteDraft
    ) -> Optional[Note]:
        try:
            confirmed = await self.adapter.create(draft.text, draft.image_ref)
        except Exception as e:
            if self._discard_if_stale(op):
                return None
            self.store.remove_by_id(op.target_id)
            self.draft.restore(op.draft_text or "", op.draft_image)
            self._rollback(op, e)
            return None

        if self._discard_if_stale(op):
            return None
        newer = self._last_applied.get(confirmed.id, 0)
        if confirmed.id in self.store:
            # A load() already brought in the server's copy.
            self.store.remove_by_id(op.target_id)
            if newer < op.seq:
                self.store.replace(confirmed.id, confirmed)
        elif not self.store.replace(op.target_id, confirmed):
            logger.warning(
                "Provisional note %s left the list before %s was confirmed",
                op.target_id,
                confirmed.id,
            )
        self._last_applied.pop(op.target_id, None)
        self._last_applied[confirmed.id] = max(newer, op.seq)
        self._confirm(op, confirmed.id)
        return confirmed

    async def _confirm_update(
        self, op: PendingOperation, draft: NoteDraft
    ) -> Optional[Note]:
        try:
            confirmed = await self.adapter.update(
                op.target_id, draft.text, draft.image_ref
            )
        except Exception as e:
            if self._discard_if_stale(op):
                return None
            self.store.replace(op.target_id, op.previous)
            self._rollback(op, e)
            return None

        if self._discard_if_stale(op):
            return None
        self.store.replace(op.target_id, confirmed)
        self._confirm(op, confirmed.id)
        return confirmed

    async def _confirm_delete(self, op: PendingOperation) -> None:
        try:
            await self.adapter.delete(op.target_id)
        except Exception as e:
            if self._discard_if_stale(op):
                self._bury(op.target_id)
                return
            if op.previous is not None and op.target_id not in self.store:
                self.store.insert_at(self._restore_index(op), op.previous)
            self._tombstones.pop(op.target_id, None)
            self._rollback(op, e)
            return

        self._bury(op.target_id)
        # The id's sequence is kept so late callbacks for it stay stale.
        if self._discard_if_stale(op):
            return
        self._confirm(op, op.target_id)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _begin(self, kind: OperationKind, target_id: NoteId, **extra: Any) -> PendingOperation:
        op = PendingOperation(kind=kind, target_id=target_id, seq=next(self._seq), **extra)
        self._pending[op.seq] = op
        self._last_applied[target_id] = op.seq
        PENDING_OPERATIONS.set(len(self._pending))
        return op

    def _end(self, op: PendingOperation, status: str) -> None:
        self._pending.pop(op.seq, None)
        PENDING_OPERATIONS.set(len(self._pending))
        SYNC_OPERATIONS.labels(kind=op.kind.value, status=status).inc()
        SYNC_DURATION.labels(kind=op.kind.value).observe(
            time.perf_counter() - op.started
        )

    def _discard_if_stale(self, op: PendingOperation) -> bool:
        if self._last_applied.get(op.target_id, 0) <= op.seq:
            return False
        logger.debug(
            "Discarding stale %s callback for %s (seq %d)",
            op.kind.value,
            op.target_id,
            op.seq,
        )
        STALE_CALLBACKS.labels(kind=op.kind.value).inc()
        self._end(op, "stale")
        return True

    def _confirm(self, op: PendingOperation, note_id: NoteId) -> None:
        logger.info("%s confirmed for note %s", op.kind.value.capitalize(), note_id)
        self._end(op, "confirmed")

    def _rollback(self, op: PendingOperation, error: Exception) -> None:
        retryable = not isinstance(error, ValidationError)
        if retryable:
            message = _RETRYABLE_MESSAGES[op.kind]
        else:
            message = f"The note was rejected: {error.message}"
        logger.warning(
            "%s failed for note %s, rolled back: %s",
            op.kind.value.capitalize(),
            op.target_id,
            error,
        )
        self._end(op, "rolled_back")
        self._notify(
            SyncNotice(message, retryable=retryable, kind=op.kind, note_id=op.target_id)
        )

    def _notify(self, notice: SyncNotice) -> None:
        if not self.on_error:
            return
        try:
            self.on_error(notice)
        except Exception as e:
            logger.warning("Error sink failed: %s", e)

    def _predecessor(self, note_id: NoteId) -> Optional[NoteId]:
        """The id ``note_id`` follows, counting notes whose delete is pending."""
        index = self.store.index_of(note_id)
        anchor = self.store.ids()[index - 1] if index else None
        while True:
            between = next(
                (t for t, after in self._tombstones.items() if after == anchor), None
            )
            if between is None:
                return anchor
            anchor = between

    def _restore_index(self, op: PendingOperation) -> int:
        """Where a note whose delete failed goes back, relative to its neighbours."""
        anchor = self._tombstones.get(op.target_id)
        while anchor is not None and anchor not in self.store:
            if anchor not in self._tombstones:
                return op.previous_index or 0
            anchor = self._tombstones[anchor]
        if anchor is None:
            return 0
        return self.store.index_of(anchor) + 1

    def _bury(self, note_id: NoteId) -> None:
        """Drop a settled tombstone, handing its place to the ones after it."""
        after = self._tombstones.pop(note_id, None)
        for other, anchor in self._tombstones.items():
            if anchor == note_id:
                self._tombstones[other] = after

    def _confirmed_note(self, note_id: NoteId) -> Note:
        if not isinstance(note_id, ConfirmedId):
            raise ValidationError("This note is still being saved. Try again shortly.")
        note = self.store.get(note_id)
        if note is None:
            raise ValidationError(f"Note {note_id} is not in the list")
        return note

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Sync confirmation failed: %r", task.exception())

"""Unit tests for notesync.sync — optimistic mutations, rollback and ordering."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional

import pytest

from notesync.errors import TransportError, ValidationError
from notesync.models import ConfirmedId, Note, ProvisionalId
from notesync.persistence.local import LocalPersistenceAdapter
from notesync.store import NoteStore
from notesync.sync import OperationKind, OptimisticSyncController, SyncNotice

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _note(name: str, text: Optional[str] = None, image_ref: Optional[str] = None) -> Note:
    return Note(
        id=ConfirmedId(server_id=name),
        text=text if text is not None else name,
        image_ref=image_ref,
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


@dataclass
class _Call:
    method: str
    args: tuple
    future: asyncio.Future

    def succeed(self, result: Any = None) -> None:
        self.future.set_result(result)

    def fail(self, error: Exception) -> None:
        self.future.set_exception(error)


class ScriptedAdapter:
    """Adapter whose calls stay pending until the test resolves them."""

    def __init__(self, notes: Optional[list[Note]] = None) -> None:
        self.calls: list[_Call] = []
        self.notes = notes or []

    async def create(self, text, image_ref):
        return await self._call("create", text, image_ref)

    async def update(self, note_id, text, image_ref):
        return await self._call("update", note_id, text, image_ref)

    async def delete(self, note_id):
        return await self._call("delete", note_id)

    async def list(self):
        return list(self.notes)

    async def close(self):
        return None

    async def _call(self, method: str, *args: Any) -> Any:
        future = asyncio.get_running_loop().create_future()
        self.calls.append(_Call(method, args, future))
        return await future


class FailingAdapter:
    """Adapter that fails every mutation with ``error``."""

    def __init__(self, error: Exception) -> None:
        self.error = error

    async def create(self, text, image_ref):
        raise self.error

    async def update(self, note_id, text, image_ref):
        raise self.error

    async def delete(self, note_id):
        raise self.error

    async def list(self):
        raise self.error

    async def close(self):
        return None


async def _settle() -> None:
    """Let freshly spawned confirmation tasks reach their adapter call."""
    for _ in range(3):
        await asyncio.sleep(0)


def _make(adapter, notes: Optional[list[Note]] = None):
    notices: list[SyncNotice] = []
    store = NoteStore(notes or [])
    controller = OptimisticSyncController(store, adapter, on_error=notices.append)
    return controller, store, notices


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreate:
    @pytest.mark.asyncio
    async def test_provisional_note_inserted_immediately(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A")])
        controller.draft.restore("hello", None)

        task = controller.create("hello")

        head = store.list()[0]
        assert isinstance(head.id, ProvisionalId)
        assert head.text == "hello"
        assert controller.draft.is_empty
        assert len(controller.pending) == 1

        await _settle()
        adapter.calls[0].succeed(_note("42", "hello"))
        confirmed = await task

        assert confirmed.id == ConfirmedId(server_id="42")
        assert [str(n.id) for n in store.list()] == ["42", "A"]
        assert controller.pending == {}

    @pytest.mark.asyncio
    async def test_empty_note_rejected_before_mutation(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A")])
        before = store.list()

        with pytest.raises(ValidationError):
            controller.create("   ", None)

        assert store.list() == before
        await _settle()
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_transport_failure_restores_draft(self):
        controller, store, notices = _make(FailingAdapter(TransportError("offline")))

        await controller.create("hello")

        assert store.list() == ()
        assert controller.draft.text == "hello"
        assert len(notices) == 1
        assert notices[0].retryable is True
        assert notices[0].kind is OperationKind.CREATE

    @pytest.mark.asyncio
    async def test_validation_failure_is_not_retryable(self):
        controller, store, notices = _make(
            FailingAdapter(ValidationError("too long", status=422))
        )

        await controller.create("hello", "https://x/y.png")

        assert store.list() == ()
        assert controller.draft.text == "hello"
        assert controller.draft.image_ref == "https://x/y.png"
        assert notices[0].retryable is False
        assert "too long" in notices[0].message

    @pytest.mark.asyncio
    async def test_failure_keeps_position_of_others(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A"), _note("B")])
        before = store.list()

        task = controller.create("new")
        await _settle()
        adapter.calls[0].fail(TransportError("offline"))
        await task

        assert store.list() == before

    @pytest.mark.asyncio
    async def test_submit_draft(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter)
        controller.draft.restore("from the box", None)

        controller.submit_draft()

        assert store.list()[0].text == "from the box"
        assert controller.draft.is_empty


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    @pytest.mark.asyncio
    async def test_applies_locally_then_canonical(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A"), _note("B")])

        task = controller.update(ConfirmedId(server_id="B"), "edited ")

        assert store.get(ConfirmedId(server_id="B")).text == "edited"
        await _settle()
        adapter.calls[0].succeed(_note("B", "Edited (normalised)"))
        await task

        assert store.get(ConfirmedId(server_id="B")).text == "Edited (normalised)"
        assert [str(i) for i in store.ids()] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_failure_restores_exact_snapshot(self):
        original = [_note("A"), _note("B", "keep me", "https://x/img.png"), _note("C")]
        controller, store, notices = _make(FailingAdapter(TransportError("offline")), original)
        before = store.list()

        await controller.update(ConfirmedId(server_id="B"), "lost edit", None)

        assert store.list() == before
        assert notices[0].kind is OperationKind.UPDATE
        assert notices[0].note_id == ConfirmedId(server_id="B")

    @pytest.mark.asyncio
    async def test_image_kept_by_default(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A", "a", "https://x/img.png")])

        controller.update(ConfirmedId(server_id="A"), "new text")
        await _settle()

        assert adapter.calls[0].args[2] == "https://x/img.png"
        assert store.get(ConfirmedId(server_id="A")).image_ref == "https://x/img.png"

    @pytest.mark.asyncio
    async def test_empty_update_rejected(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A")])
        before = store.list()
        with pytest.raises(ValidationError):
            controller.update(ConfirmedId(server_id="A"), "", None)
        assert store.list() == before

    @pytest.mark.asyncio
    async def test_provisional_note_cannot_be_updated(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter)
        controller.create("draft")
        with pytest.raises(ValidationError):
            controller.update(store.list()[0].id, "changed")

    @pytest.mark.asyncio
    async def test_unknown_note_rejected(self):
        controller, _, _ = _make(ScriptedAdapter())
        with pytest.raises(ValidationError):
            controller.update(ConfirmedId(server_id="nope"), "x")


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    @pytest.mark.asyncio
    async def test_removes_immediately(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A"), _note("B")])

        task = controller.delete(ConfirmedId(server_id="A"))

        assert [str(i) for i in store.ids()] == ["B"]
        await _settle()
        adapter.calls[0].succeed(None)
        await task
        assert [str(i) for i in store.ids()] == ["B"]

    @pytest.mark.asyncio
    async def test_failure_reinserts_at_original_index(self):
        original = [_note("A"), _note("B"), _note("C")]
        controller, store, notices = _make(FailingAdapter(TransportError("offline")), original)
        before = store.list()

        await controller.delete(ConfirmedId(server_id="B"))

        assert store.list() == before
        assert notices[0].kind is OperationKind.DELETE

    @pytest.mark.asyncio
    async def test_provisional_note_cannot_be_deleted(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter)
        controller.create("draft")
        with pytest.raises(ValidationError):
            controller.delete(store.list()[0].id)
        assert len(store) == 1


# ---------------------------------------------------------------------------
# Ordering guard
# ---------------------------------------------------------------------------


class TestOrdering:
    @pytest.mark.asyncio
    async def test_late_first_response_is_discarded(self):
        """Second update's response lands first; the first must not win."""
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A")])
        note_id = ConfirmedId(server_id="A")

        first = controller.update(note_id, "one")
        second = controller.update(note_id, "two")
        await _settle()

        adapter.calls[1].succeed(_note("A", "two"))
        await second
        adapter.calls[0].succeed(_note("A", "one"))
        await first

        assert store.get(note_id).text == "two"
        assert controller.pending == {}

    @pytest.mark.asyncio
    async def test_early_first_response_does_not_clobber_newer_edit(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A")])
        note_id = ConfirmedId(server_id="A")

        first = controller.update(note_id, "one")
        second = controller.update(note_id, "two")
        await _settle()

        adapter.calls[0].succeed(_note("A", "one"))
        await first
        assert store.get(note_id).text == "two"

        adapter.calls[1].succeed(_note("A", "two"))
        await second
        assert store.get(note_id).text == "two"

    @pytest.mark.asyncio
    async def test_stale_failure_does_not_roll_back(self):
        adapter = ScriptedAdapter()
        controller, store, notices = _make(adapter, [_note("A")])
        note_id = ConfirmedId(server_id="A")

        first = controller.update(note_id, "one")
        second = controller.update(note_id, "two")
        await _settle()

        adapter.calls[1].succeed(_note("A", "two"))
        adapter.calls[0].fail(TransportError("offline"))
        await asyncio.gather(first, second)

        assert store.get(note_id).text == "two"
        assert notices == []

    @pytest.mark.asyncio
    async def test_update_response_after_delete_does_not_resurrect(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A"), _note("B")])
        note_id = ConfirmedId(server_id="A")

        update = controller.update(note_id, "edited")
        delete = controller.delete(note_id)
        await _settle()

        adapter.calls[1].succeed(None)
        adapter.calls[0].succeed(_note("A", "edited"))
        await asyncio.gather(update, delete)

        assert note_id not in store

    @pytest.mark.asyncio
    async def test_other_notes_proceed_independently(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A"), _note("B")])

        a = controller.update(ConfirmedId(server_id="A"), "a2")
        b = controller.update(ConfirmedId(server_id="B"), "b2")
        await _settle()
        adapter.calls[1].succeed(_note("B", "b2!"))
        adapter.calls[0].succeed(_note("A", "a2!"))
        await asyncio.gather(a, b)

        assert [n.text for n in store.list()] == ["a2!", "b2!"]


# ---------------------------------------------------------------------------
# Several notes in flight
# ---------------------------------------------------------------------------


def _ids(store: NoteStore) -> list[str]:
    return [str(i) for i in store.ids()]


async def _delete_all(controller, adapter, names: list[str]) -> list[asyncio.Task]:
    tasks = [controller.delete(ConfirmedId(server_id=n)) for n in names]
    await _settle()
    assert [c.method for c in adapter.calls] == ["delete"] * len(names)
    return tasks


class TestConcurrentDeletes:
    @pytest.mark.asyncio
    async def test_failures_in_issue_order_restore_positions(self):
        adapter = ScriptedAdapter()
        controller, store, notices = _make(adapter, [_note("A"), _note("B"), _note("C")])
        tasks = await _delete_all(controller, adapter, ["A", "B"])

        adapter.calls[0].fail(TransportError("offline"))
        await tasks[0]
        adapter.calls[1].fail(TransportError("offline"))
        await tasks[1]

        assert _ids(store) == ["A", "B", "C"]
        assert len(notices) == 2
        assert controller.pending == {}

    @pytest.mark.asyncio
    async def test_failures_in_reverse_order_restore_positions(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A"), _note("B"), _note("C")])
        tasks = await _delete_all(controller, adapter, ["A", "B"])

        adapter.calls[1].fail(TransportError("offline"))
        await tasks[1]
        adapter.calls[0].fail(TransportError("offline"))
        await tasks[0]

        assert _ids(store) == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_adjacent_middle_notes_either_order(self):
        for names in (["B", "C"], ["C", "B"]):
            for fail_order in ((0, 1), (1, 0)):
                adapter = ScriptedAdapter()
                controller, store, _ = _make(
                    adapter, [_note("A"), _note("B"), _note("C"), _note("D")]
                )
                tasks = await _delete_all(controller, adapter, names)

                for i in fail_order:
                    adapter.calls[i].fail(TransportError("offline"))
                    await tasks[i]

                assert _ids(store) == ["A", "B", "C", "D"], (names, fail_order)

    @pytest.mark.asyncio
    async def test_confirmed_neighbour_stays_gone(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(
            adapter, [_note("A"), _note("B"), _note("C"), _note("D")]
        )
        tasks = await _delete_all(controller, adapter, ["B", "C"])

        adapter.calls[0].succeed(None)
        await tasks[0]
        adapter.calls[1].fail(TransportError("offline"))
        await tasks[1]

        assert _ids(store) == ["A", "C", "D"]

    @pytest.mark.asyncio
    async def test_failed_delete_beside_pending_update(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter, [_note("A"), _note("B"), _note("C")])

        update = controller.update(ConfirmedId(server_id="A"), "a2")
        delete = controller.delete(ConfirmedId(server_id="B"))
        await _settle()
        adapter.calls[1].fail(TransportError("offline"))
        adapter.calls[0].succeed(_note("A", "a2"))
        await asyncio.gather(update, delete)

        assert _ids(store) == ["A", "B", "C"]
        assert store.list()[0].text == "a2"


# ---------------------------------------------------------------------------
# Whole-sequence properties
# ---------------------------------------------------------------------------


class TestProperties:
    @pytest.mark.asyncio
    async def test_successful_sequence_matches_adapter(self, memory_cache):
        """Against an always-succeeding adapter, the store mirrors it exactly."""
        adapter = LocalPersistenceAdapter(memory_cache)
        controller, store, notices = _make(adapter)

        for text in ("one", "two", "three", "four"):
            await controller.create(text)
        ids = store.ids()
        await controller.update(ids[1], "three, edited")
        await controller.delete(ids[3])
        await controller.update(ids[0], "four, edited", "https://x/img.png")
        await controller.create("five")

        assert notices == []
        assert store.list() == tuple(await adapter.list())
        assert all(isinstance(n.id, ConfirmedId) for n in store.list())

    @pytest.mark.asyncio
    async def test_every_single_failure_restores_store(self):
        """Each kind of failed mutation leaves the store exactly as before."""
        for error in (TransportError("down"), ValidationError("bad", status=400)):
            original = [_note("A"), _note("B", "b", "https://x/b.png"), _note("C")]
            controller, store, _ = _make(FailingAdapter(error), original)
            before = store.list()
            target = ConfirmedId(server_id="B")

            await controller.create("new")
            assert store.list() == before
            await controller.update(target, "changed", None)
            assert store.list() == before
            await controller.delete(target)
            assert store.list() == before


# ---------------------------------------------------------------------------
# Load / drain / error sink
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_load_replaces_store(self):
        adapter = ScriptedAdapter(notes=[_note("B"), _note("A")])
        controller, store, _ = _make(adapter, [_note("Z")])

        assert await controller.load() is True
        assert [str(i) for i in store.ids()] == ["B", "A"]

    @pytest.mark.asyncio
    async def test_load_keeps_unconfirmed_notes(self):
        adapter = ScriptedAdapter(notes=[_note("A")])
        controller, store, _ = _make(adapter)
        controller.create("in flight")

        await controller.load()

        assert store.list()[0].text == "in flight"
        assert store.list()[0].is_provisional
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_create_confirmed_after_load_listed_it(self):
        """The server copy arrived through load(); the provisional note folds into it."""
        adapter = ScriptedAdapter()
        controller, store, notices = _make(adapter)
        task = controller.create("hello")
        await _settle()
        adapter.notes = [_note("1", "hello")]
        await controller.load()
        assert len(store) == 2

        adapter.calls[0].succeed(_note("1", "hello"))
        confirmed = await task

        assert confirmed.id == ConfirmedId(server_id="1")
        assert _ids(store) == ["1"]
        assert controller.pending == {}
        assert notices == []

    @pytest.mark.asyncio
    async def test_create_confirmed_after_loaded_copy_was_edited(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter)
        create = controller.create("hello")
        await _settle()
        adapter.notes = [_note("1", "hello")]
        await controller.load()
        note_id = ConfirmedId(server_id="1")
        update = controller.update(note_id, "edited")
        await _settle()

        adapter.calls[0].succeed(_note("1", "hello"))
        await create
        assert _ids(store) == ["1"]
        assert store.get(note_id).text == "edited"

        adapter.calls[1].succeed(_note("1", "edited"))
        await update
        assert store.get(note_id).text == "edited"
        assert controller.pending == {}

    @pytest.mark.asyncio
    async def test_load_failure_notifies_and_keeps_store(self):
        controller, store, notices = _make(
            FailingAdapter(TransportError("offline")), [_note("A")]
        )
        assert await controller.load() is False
        assert [str(i) for i in store.ids()] == ["A"]
        assert notices[0].retryable is True

    @pytest.mark.asyncio
    async def test_drain_waits_for_pending(self):
        adapter = ScriptedAdapter()
        controller, store, _ = _make(adapter)
        controller.create("a")
        await _settle()

        drain = asyncio.ensure_future(controller.drain())
        await _settle()
        assert not drain.done()

        adapter.calls[0].succeed(_note("1", "a"))
        await drain
        assert controller.pending == {}

    @pytest.mark.asyncio
    async def test_failing_error_sink_is_contained(self):
        store = NoteStore()

        def _boom(notice: SyncNotice) -> None:
            raise RuntimeError("toast failed")

        controller = OptimisticSyncController(
            store, FailingAdapter(TransportError("offline")), on_error=_boom
        )
        await controller.create("hello")
        assert store.list() == ()
        assert controller.draft.text == "hello"

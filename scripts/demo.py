#!/usr/bin/env python3
"""
notesync walkthrough

Drives a notes session against the local-fallback store: creates notes
optimistically, edits one, reorders with a simulated mouse drag and a
simulated long-press touch drag, and shows a rollback when the backend
rejects a change.
"""

import asyncio
import logging
import sys
import tempfile
from pathlib import Path

from notesync.config import Settings
from notesync.errors import TransportError
from notesync.gestures import InputModality
from notesync.persistence.kv import FileKeyValueCache
from notesync.persistence.local import LocalPersistenceAdapter
from notesync.session import NotesSession
from notesync.sync import SyncNotice

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)

# ---------------------------------------------------------------------------
# ANSI colours
# ---------------------------------------------------------------------------
BOLD = "\033[1m"
DIM = "\033[2m"
RESET = "\033[0m"
CYAN = "\033[96m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"


def banner(text: str) -> None:
    """Print a bold cyan banner."""
    width = 60
    print()
    print(f"{CYAN}{BOLD}{'=' * width}{RESET}")
    print(f"{CYAN}{BOLD}  {text}{RESET}")
    print(f"{CYAN}{BOLD}{'=' * width}{RESET}")
    print()


def step(number: int, title: str) -> None:
    """Print a step header."""
    print(f"\n{YELLOW}{BOLD}--- Step {number}: {title} ---{RESET}\n")


def show(session: NotesSession) -> None:
    """Print the current note order."""
    for i, note in enumerate(session.store.list(), start=1):
        label = note.text or "[image]"
        print(f"  {DIM}{i}.{RESET} {label} {DIM}({note.id}){RESET}")


def on_error(notice: SyncNotice) -> None:
    tag = "retry" if notice.retryable else "fix first"
    print(f"  {RED}{notice.message} [{tag}]{RESET}")


class FlakyAdapter(LocalPersistenceAdapter):
    """Local adapter that fails the next update, to show a rollback."""

    fail_next_update = False

    async def update(self, note_id, text, image_ref):
        if self.fail_next_update:
            self.fail_next_update = False
            raise TransportError("simulated network failure")
        return await super().update(note_id, text, image_ref)


async def run(workdir: Path) -> None:
    adapter = FlakyAdapter(FileKeyValueCache(workdir / "notes_cache.json"))
    settings = Settings(persistence_backend="local")
    positions: dict[int, object] = {}

    def hit_test(x: float, y: float):
        return positions.get(int(y // 100))

    session = NotesSession.from_settings(
        settings, hit_test, on_error=on_error, adapter=adapter
    )
    assert session.modality is InputModality.POINTER

    banner("notesync demo")

    step(1, "Create three notes")
    for text in ("Buy milk", "Call the dentist", "Ship the release"):
        await session.controller.create(text)
    show(session)

    step(2, "Edit a note")
    first = session.store.list()[0]
    await session.controller.update(first.id, first.text + " today")
    show(session)

    step(3, "Edit that fails and rolls back")
    adapter.fail_next_update = True
    await session.controller.update(first.id, "this will not stick")
    show(session)

    step(4, "Drag the last note onto the first (mouse)")
    notes = session.store.list()
    session.gestures.drag_start(notes[-1].id)
    session.gestures.drag_over(notes[0].id)
    outcome = session.gestures.drop(notes[0].id)
    print(f"  {GREEN}{outcome.state.value}{RESET}")
    show(session)

    step(5, "Long-press drag on a touch device")
    touch = NotesSession.from_settings(
        settings,
        hit_test,
        on_error=on_error,
        adapter=adapter,
        max_touch_points=5,
    )
    await touch.load()
    for row, note in enumerate(touch.store.list()):
        positions[row] = note.id
    touch.gestures.touch_start(positions[2], 10, 250)
    await asyncio.sleep(settings.long_press_s + 0.05)
    touch.gestures.touch_move(10, 40)
    outcome = touch.gestures.touch_end()
    print(f"  {GREEN}{outcome.state.value}{RESET}")
    show(touch)

    await touch.close()
    await session.close()


def main() -> int:
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(run(Path(tmp)))
    return 0


if __name__ == "__main__":
    sys.exit(main())

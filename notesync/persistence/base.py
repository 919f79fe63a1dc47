"""Persistence adapter protocol."""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from notesync.models import Note, NoteId


@runtime_checkable
class PersistenceAdapter(Protocol):
    """Capability set shared by the remote and local-fallback adapters.

    The sync controller only depends on this protocol, so either backend can
    be swapped in without changing call sites. Failures are reported as
    ``ValidationError`` (do not resend unmodified) or ``TransportError``
    (retryable). The local variant never raises ``TransportError``.
    """

    async def create(self, text: str, image_ref: Optional[str]) -> Note:
        """Persist a new note and return it with a confirmed id."""
        ...

    async def update(self, note_id: NoteId, text: str, image_ref: Optional[str]) -> Note:
        """Overwrite a note's content and return the canonical version."""
        ...

    async def delete(self, note_id: NoteId) -> None:
        """Delete a note."""
        ...

    async def list(self) -> list[Note]:
        """Return every stored note, newest first."""
        ...

    async def close(self) -> None:
        """Release connections held by the adapter."""
        ...

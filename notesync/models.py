"""Pydantic models for notes, note identifiers and drafts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from notesync.errors import ValidationError


class ProvisionalId(BaseModel):
    """Locally minted id for a note the record service has not confirmed yet."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["provisional"] = "provisional"
    local_id: str

    @classmethod
    def new(cls) -> ProvisionalId:
        return cls(local_id=uuid4().hex)

    def __str__(self) -> str:
        return f"provisional:{self.local_id}"


class ConfirmedId(BaseModel):
    """Id issued by a persistence adapter."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["confirmed"] = "confirmed"
    server_id: str

    def __str__(self) -> str:
        return self.server_id


NoteId = Annotated[Union[ProvisionalId, ConfirmedId], Field(discriminator="kind")]


def _normalise_image(image_ref: Optional[str]) -> Optional[str]:
    if image_ref is None:
        return None
    image_ref = image_ref.strip()
    return image_ref or None


class Note(BaseModel):
    """A single note. Immutable; edits produce a new instance."""

    model_config = ConfigDict(frozen=True)

    id: NoteId
    text: str = ""
    image_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _has_content(self) -> Note:
        if not self.text.strip() and not _normalise_image(self.image_ref):
            raise ValueError("a note needs text or an image")
        return self

    @property
    def is_provisional(self) -> bool:
        return isinstance(self.id, ProvisionalId)

    def with_content(self, text: str, image_ref: Optional[str]) -> Note:
        """Return a copy carrying new content but the same id and timestamp."""
        return Note(
            id=self.id, text=text, image_ref=image_ref, created_at=self.created_at
        )


class NoteDraft(BaseModel):
    """Validated content for a create or update."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    image_ref: Optional[str] = None

    @classmethod
    def validated(
        cls, text: Optional[str] = None, image_ref: Optional[str] = None
    ) -> NoteDraft:
        """Trim the payload and reject it when both text and image are empty."""
        clean_text = (text or "").strip()
        clean_image = _normalise_image(image_ref)
        if not clean_text and not clean_image:
            raise ValidationError("Write something or attach an image first.")
        return cls(text=clean_text, image_ref=clean_image)


class NoteRecord(BaseModel):
    """Wire shape used by the record service and the local cache."""

    id: Union[int, str]
    text: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_note(cls, note: Note) -> NoteRecord:
        return cls(
            id=str(note.id),
            text=note.text or None,
            image_url=note.image_ref,
            created_at=note.created_at,
        )

    def to_note(self) -> Note:
        return Note(
            id=ConfirmedId(server_id=str(self.id)),
            text=(self.text or "").strip(),
            image_ref=_normalise_image(self.image_url),
            created_at=self.created_at,
        )


@dataclass
class ComposeDraft:
    """State of the compose box; cleared on submit, restored on failure."""

    text: str = ""
    image_ref: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.image_ref

    def clear(self) -> None:
        self.text = ""
        self.image_ref = None

    def restore(self, text: str, image_ref: Optional[str]) -> None:
        self.text = text
        self.image_ref = image_ref

"""Remote persistence adapter for the HTTP record service.

Routes:
  POST   /notes         — create, 201 with the stored record
  PUT    /notes/{id}    — update, 200 with the stored record
  DELETE /notes/{id}    — delete, 204
  GET    /notes         — list, 200 with an array of records

4xx responses become ``ValidationError``; 5xx responses, timeouts and
connection failures become ``TransportError``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
import pydantic

from notesync.errors import TransportError, ValidationError
from notesync.models import ConfirmedId, Note, NoteId, NoteRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class RemotePersistenceAdapter:
    """Async client for the record service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout
        )

    async def create(self, text: str, image_ref: Optional[str]) -> Note:
        data = await self._request(
            "POST", "/notes", json={"text": text or None, "image_url": image_ref}
        )
        return _parse_note(data)

    async def update(self, note_id: NoteId, text: str, image_ref: Optional[str]) -> Note:
        data = await self._request(
            "PUT",
            f"/notes/{_server_id(note_id)}",
            json={"text": text or None, "image_url": image_ref},
        )
        return _parse_note(data)

    async def delete(self, note_id: NoteId) -> None:
        await self._request("DELETE", f"/notes/{_server_id(note_id)}")

    async def list(self) -> list[Note]:
        data = await self._request("GET", "/notes")
        if not isinstance(data, list):
            raise TransportError("Record service returned a non-list body")
        return [_parse_note(item) for item in data]

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise TransportError(f"Record service unreachable: {e}") from e

        if resp.status_code >= 500:
            logger.warning("%s %s returned %d", method, path, resp.status_code)
            raise TransportError(
                f"Record service error ({resp.status_code})", status=resp.status_code
            )
        if resp.status_code >= 400:
            raise ValidationError(_error_detail(resp), status=resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"Record service returned invalid JSON: {e}") from e


def _parse_note(data: Any) -> Note:
    try:
        return NoteRecord.model_validate(data).to_note()
    except pydantic.ValidationError as e:
        raise TransportError(f"Malformed note record: {e}") from e


def _error_detail(resp: httpx.Response) -> str:
    """Extract a human-readable message from an error response."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"Request rejected ({resp.status_code})"
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        if isinstance(detail, str):
            return detail
    return f"Request rejected ({resp.status_code})"


def _server_id(note_id: NoteId) -> str:
    if not isinstance(note_id, ConfirmedId):
        raise ValidationError(f"Note {note_id} has not been saved yet")
    return note_id.server_id

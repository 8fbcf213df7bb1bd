from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, Literal


Listing = Literal["runners", "events"]


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class PageCursor:
    """Keyset position inside one listing: (created_at, id) of the last row served."""

    listing: Listing
    created_at: float
    item_id: str

    def as_key(self) -> tuple[float, str]:
        return (self.created_at, self.item_id)


def encode_cursor(cursor: PageCursor) -> str:
    raw = json.dumps(
        {"l": cursor.listing, "t": cursor.created_at, "id": cursor.item_id}, separators=(",", ":")
    ).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str, *, listing: Listing) -> PageCursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        obj = json.loads(base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8"))
        cursor = PageCursor(listing=obj["l"], created_at=float(obj["t"]), item_id=str(obj["id"]))
    except (ValueError, KeyError, TypeError) as e:
        raise CursorError("Invalid cursor") from e

    if cursor.listing != listing:
        raise CursorError(f"Cursor belongs to the {cursor.listing} listing, not {listing}")
    return cursor


def cursor_key(value: str | None, *, listing: Listing) -> tuple[float, str] | None:
    """Decode an optional query-string cursor into the store's (created_at, id) key."""
    if not value:
        return None
    return decode_cursor(value, listing=listing).as_key()


def finish_page(page: dict[str, Any], *, listing: Listing) -> dict[str, Any]:
    """Replace the store's raw next_cursor tuple with an opaque token."""
    key = page.get("next_cursor")
    if key is not None:
        created_at, item_id = key
        page["next_cursor"] = encode_cursor(
            PageCursor(listing=listing, created_at=float(created_at), item_id=str(item_id))
        )
    return page

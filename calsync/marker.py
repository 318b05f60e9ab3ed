from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from urllib.parse import quote, unquote

MARKER_PREFIX = "[CalendarSync]"
MARKER_LINE_PATTERN = re.compile(r"^[ \t]*\[CalendarSync\][^\n]*\n?", re.MULTILINE)

# Older releases wrote ``tuple=`` for the sync id.
FIELD_ALIASES = {
    "sync": "sync_id",
    "tuple": "sync_id",
    "source": "source_id",
    "occ": "occurrence",
    "key": "sync_key",
}


@dataclass(frozen=True)
class Marker:
    sync_id: str | None = None
    source_id: str | None = None
    occurrence: str | None = None
    sync_key: str | None = None

    @property
    def recognized(self) -> bool:
        return any((self.sync_id, self.source_id, self.occurrence, self.sync_key))

    def owned_by(self, sync_id: str) -> bool:
        return bool(self.sync_id) and self.sync_id == sync_id

    @property
    def occurrence_key(self) -> str | None:
        if not self.source_id or not self.occurrence:
            return None
        return f"{self.source_id}|{self.occurrence}"


def encode_sync_key(sync_id: str, source_id: str | None, occurrence: str | None) -> str:
    raw = "|".join([sync_id, source_id or "", occurrence or ""]).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_sync_key(value: str) -> tuple[str, str, str] | None:
    padded = value + "=" * (-len(value) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None
    # Source ids may contain "|"; sync ids and instants do not.
    sync_id, sep, rest = raw.partition("|")
    if not sep:
        return None
    source_id, sep, occurrence = rest.rpartition("|")
    if not sep:
        return None
    return sync_id, source_id, occurrence


def encode_marker(
    sync_id: str,
    source_id: str | None = None,
    occurrence: str | None = None,
    sync_key: str | None = None,
) -> str:
    tokens = [MARKER_PREFIX, f"sync={quote(sync_id, safe='')}"]
    if source_id:
        tokens.append(f"source={quote(source_id, safe='')}")
    if occurrence:
        tokens.append(f"occ={quote(occurrence, safe=':')}")
    tokens.append(f"key={sync_key or encode_sync_key(sync_id, source_id, occurrence)}")
    return " ".join(tokens)


def _parse_fields(text: str) -> dict[str, str]:
    start = text.find(MARKER_PREFIX)
    if start < 0:
        return {}
    tail = text[start + len(MARKER_PREFIX) :].split("\n", 1)[0]
    tokens = tail.split()
    # Markers written with ``tuple=`` predate percent-encoding.
    legacy = any(token.startswith("tuple=") for token in tokens)
    fields: dict[str, str] = {}
    for token in tokens:
        name, sep, value = token.partition("=")
        attr = FIELD_ALIASES.get(name)
        if not sep or attr is None or not value:
            continue
        fields.setdefault(attr, value if legacy else unquote(value))
    return fields


def decode_marker(notes: str | None, url: str | None = None) -> Marker | None:
    for candidate in (notes or "", url or ""):
        if MARKER_PREFIX not in candidate:
            continue
        fields = _parse_fields(candidate)
        sync_key = fields.get("sync_key")
        if sync_key:
            decoded = decode_sync_key(sync_key)
            if decoded is None:
                fields.pop("sync_key")
            else:
                for attr, value in zip(("sync_id", "source_id", "occurrence"), decoded):
                    if value:
                        fields.setdefault(attr, value)
        marker = Marker(**fields)
        if marker.recognized:
            return marker
    return None


def strip_marker(description: str) -> str:
    if not description:
        return ""
    return MARKER_LINE_PATTERN.sub("", description).strip()


def embed_marker(description: str, marker_text: str) -> str:
    remainder = strip_marker(description)
    if not remainder:
        return marker_text
    return f"{marker_text}\n{remainder}"

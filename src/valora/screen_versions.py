"""Sorted version collection for one screen.

Stored documents keep versions in a ``{"v1": {...}, "v2": {...}}`` map. This
module owns that encoding; callers work with ``VersionEntry`` records.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

_VERSION_KEY = re.compile(r"^[vV](\d+)$")


def parse_version_key(key: Any) -> int:
    """Return the version number for ``key``, or 0 when it is not a version key."""
    if not isinstance(key, str):
        return 0
    match = _VERSION_KEY.match(key)
    if not match:
        return 0
    return int(match.group(1))


def version_key(number: int) -> str:
    return f"v{number}"


def as_published_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


@dataclass
class VersionEntry:
    number: int
    key: str
    document: dict

    @property
    def is_published(self) -> bool:
        return as_published_flag(self.document.get("isPublished"))


@dataclass
class ScreenVersions:
    entries: List[VersionEntry] = field(default_factory=list)
    # keys that do not parse as versions, carried through on write
    extras: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_map(cls, raw: Any) -> "ScreenVersions":
        entries: List[VersionEntry] = []
        extras: Dict[str, Any] = {}
        if isinstance(raw, dict):
            for key, value in raw.items():
                number = parse_version_key(key)
                if number > 0 and isinstance(value, dict):
                    entries.append(VersionEntry(number, key, value))
                else:
                    extras[key] = value
        entries.sort(key=lambda e: e.number)
        return cls(entries, extras)

    def to_map(self) -> dict:
        out = dict(self.extras)
        for entry in self.entries:
            out[entry.key] = entry.document
        return out

    def __len__(self) -> int:
        return len(self.entries)

    def latest(self) -> VersionEntry | None:
        return self.entries[-1] if self.entries else None

    def published(self) -> VersionEntry | None:
        for entry in reversed(self.entries):
            if entry.is_published:
                return entry
        return None

    def has_published(self) -> bool:
        return any(e.is_published for e in self.entries)

    def get(self, number: int) -> VersionEntry | None:
        for entry in self.entries:
            if entry.number == number:
                return entry
        return None

    def max_version(self) -> int:
        latest = self.latest()
        return latest.number if latest else 0

    def next_version(self) -> int:
        return self.max_version() + 1

    def listing(self) -> list[dict]:
        return [{"version": e.number, "isPublished": e.is_published} for e in reversed(self.entries)]

    def add(self, number: int, document: dict) -> VersionEntry:
        if number <= 0:
            raise ValueError("version must be positive")
        if self.get(number) is not None:
            raise ValueError(f"version {number} already exists")
        entry = VersionEntry(number, version_key(number), document)
        self.entries.append(entry)
        self.entries.sort(key=lambda e: e.number)
        return entry

    def put(self, number: int, document: dict) -> VersionEntry:
        existing = self.get(number)
        if existing is not None:
            existing.document = document
            return existing
        return self.add(number, document)

    def clear_published(self) -> int:
        cleared = 0
        for entry in self.entries:
            if entry.is_published:
                cleared += 1
            entry.document["isPublished"] = False
        return cleared

    def mark_published(self, number: int) -> VersionEntry:
        target = self.get(number)
        if target is None:
            raise KeyError(version_key(number))
        for entry in self.entries:
            entry.document["isPublished"] = entry.number == number
        return target

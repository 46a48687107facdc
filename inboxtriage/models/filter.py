"""Filter dataclass — a user-authored text/regex rule for tagging low-priority mail."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FilterField(str, Enum):
    SUBJECT = "subject"
    SENDER = "sender"
    ANY = "any"

    @classmethod
    def parse(cls, value: str) -> "FilterField":
        """Unknown values read back from disk fall back to ANY."""
        try:
            return cls(value)
        except ValueError:
            return cls.ANY


@dataclass
class Filter:
    id: int | None = None
    name: str = ""
    pattern: str = ""
    field: FilterField = FilterField.ANY
    is_regex: bool = False
    enabled: bool = True

    def same_rule(self, other: "Filter") -> bool:
        """True when *other* would produce exactly the same match edges."""
        return (
            self.pattern == other.pattern
            and self.field == other.field
            and self.is_regex == other.is_regex
        )

    @classmethod
    def from_row(cls, row: dict) -> "Filter":
        return cls(
            id=row["id"],
            name=row["name"],
            pattern=row["pattern"],
            field=FilterField.parse(row["field"]),
            is_regex=bool(row["is_regex"]),
            enabled=bool(row["enabled"]),
        )

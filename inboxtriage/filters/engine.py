"""Filter engine — pure evaluation of text/regex filters against message metadata.

No I/O.  A malformed regex never raises out of ``matches`` / ``match_filter_ids``:
it simply matches nothing, so one bad filter cannot abort a batch rematch.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from inboxtriage.errors import InvalidPattern
from inboxtriage.models.filter import Filter, FilterField

logger = logging.getLogger(__name__)

PREVIEW_SAMPLE_SIZE = 5


class HasSubjectSender(Protocol):
    subject: str
    sender: str


@dataclass
class CompiledFilter:
    id: int | None
    field: FilterField
    regex: re.Pattern | None = None
    needle: str | None = None

    def test(self, text: str) -> bool:
        if self.regex is not None:
            return self.regex.search(text) is not None
        if self.needle:
            return self.needle in text.lower()
        return False

    def matches(self, subject: str, sender: str) -> bool:
        if self.field == FilterField.SUBJECT:
            return self.test(subject)
        if self.field == FilterField.SENDER:
            return self.test(sender)
        return self.test(subject) or self.test(sender)


def compile_filter(flt: Filter) -> CompiledFilter:
    """Compile one filter.  Invalid or blank patterns compile to a never-match."""
    if not flt.pattern.strip():
        return CompiledFilter(id=flt.id, field=flt.field)
    if not flt.is_regex:
        return CompiledFilter(id=flt.id, field=flt.field, needle=flt.pattern.lower())
    try:
        regex = re.compile(flt.pattern, re.IGNORECASE)
    except re.error as exc:
        logger.debug("Filter %s has invalid regex %r: %s", flt.id, flt.pattern, exc)
        return CompiledFilter(id=flt.id, field=flt.field)
    return CompiledFilter(id=flt.id, field=flt.field, regex=regex)


def compile_filters(filters: Iterable[Filter]) -> list[CompiledFilter]:
    return [compile_filter(f) for f in filters]


def matches(message: HasSubjectSender, flt: Filter) -> bool:
    return compile_filter(flt).matches(message.subject or "", message.sender or "")


def match_filter_ids(subject: str, sender: str, compiled: list[CompiledFilter]) -> list[int]:
    """Return the ids of every compiled filter matching this subject/sender."""
    subject = subject or ""
    sender = sender or ""
    return [c.id for c in compiled if c.id is not None and c.matches(subject, sender)]


@dataclass
class PatternPreview:
    match_count: int = 0
    total_count: int = 0
    sample_matches: list = field(default_factory=list)


def preview(
    messages: list[HasSubjectSender],
    pattern: str,
    field: FilterField = FilterField.ANY,
    is_regex: bool = False,
) -> PatternPreview:
    """Dry-run a pattern over *messages* for the filter editor.

    Unlike ``matches``, an invalid regex is reported as InvalidPattern so
    the editor can show it.
    """
    if is_regex and pattern.strip():
        try:
            re.compile(pattern)
        except re.error as exc:
            raise InvalidPattern(f"Invalid regex: {exc}") from exc

    compiled = compile_filter(Filter(pattern=pattern, field=field, is_regex=is_regex))
    matched = [m for m in messages if compiled.matches(m.subject or "", m.sender or "")]
    return PatternPreview(
        match_count=len(matched),
        total_count=len(messages),
        sample_matches=matched[:PREVIEW_SAMPLE_SIZE],
    )

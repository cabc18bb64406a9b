from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Pattern, Sequence, Union

from .errors import ConfigurationError


def _split_patterns(raw: Union[str, Iterable[str], None]) -> list[str]:
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    return [str(p).strip() for p in items if str(p).strip()]


def escape_pattern(pattern: str) -> str:
    # Only dots are escaped. "10.0.0.0/8" stays a literal-ish regex, not a range.
    return pattern.replace(".", r"\.")


@dataclass(frozen=True)
class AllowList:
    """
    Ordered, compiled allow patterns for one application.

    Matching is an unanchored regex search against the resolved client IP,
    first hit wins. Entries that look like CIDR blocks are not evaluated as
    network ranges.
    """

    patterns: tuple[Pattern[str], ...] = ()

    def matches(self, ip: str) -> bool:
        return self.first_match(ip) is not None

    def first_match(self, ip: str) -> Pattern[str] | None:
        for rx in self.patterns:
            if rx.search(ip or ""):
                return rx
        return None

    def __len__(self) -> int:
        return len(self.patterns)

    def __bool__(self) -> bool:
        return bool(self.patterns)

    @property
    def sources(self) -> list[str]:
        return [rx.pattern for rx in self.patterns]


def compile_allow_patterns(raw: Union[str, Sequence[str], None]) -> AllowList:
    """
    Build an AllowList from "a, b, c" or ["a", "b", "c"].

    Raises ConfigurationError if an entry does not compile.
    """
    compiled: list[Pattern[str]] = []
    for pattern in _split_patterns(raw):
        try:
            compiled.append(re.compile(escape_pattern(pattern)))
        except re.error as exc:
            raise ConfigurationError(f"invalid IP regex pattern '{pattern}': {exc}") from exc
    return AllowList(tuple(compiled))

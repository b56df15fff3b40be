"""
miniternet/suite/selector.py
TEST_SELECTOR expressions.

Terms are separated by commas or whitespace:

    tls13*            case ids matching the glob
    tag:dnssec        cases carrying a tag that matches the glob
    -*ocsp*           exclude matching cases (also -tag:...)

A case is selected when it matches at least one inclusion term (or there
are none) and no exclusion term. The empty selector selects everything.
"""

import fnmatch
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

_SPLIT = re.compile(r"[,\s]+")
_VALID = re.compile(r"^[A-Za-z0-9_.*?\[\]!/:-]+$")


@dataclass(frozen=True)
class _Term:
    pattern: str
    on_tags: bool

    def matches(self, case_id: str, tags: Iterable[str]) -> bool:
        if self.on_tags:
            return any(fnmatch.fnmatchcase(t.lower(), self.pattern) for t in tags)
        return fnmatch.fnmatchcase(case_id.lower(), self.pattern)


@dataclass(frozen=True)
class CaseSelector:
    include: Tuple[_Term, ...] = ()
    exclude: Tuple[_Term, ...] = ()
    expression: str = field(default="", compare=False)

    @classmethod
    def parse(cls, expression: str) -> "CaseSelector":
        """Raises ValueError for a malformed expression."""
        include: List[_Term] = []
        exclude: List[_Term] = []
        for raw in _SPLIT.split((expression or "").strip()):
            if not raw:
                continue
            negate = raw.startswith("-")
            body = raw[1:] if negate else raw
            on_tags = body.startswith("tag:")
            if on_tags:
                body = body[4:]
            if not body:
                raise ValueError(f"empty selector term {raw!r}")
            if not _VALID.match(body) or body.count("[") != body.count("]"):
                raise ValueError(f"invalid selector term {raw!r}")
            (exclude if negate else include).append(_Term(body.lower(), on_tags))
        return cls(tuple(include), tuple(exclude), expression or "")

    def matches(self, case_id: str, tags: Iterable[str] = ()) -> bool:
        tags = list(tags)
        if self.include and not any(t.matches(case_id, tags) for t in self.include):
            return False
        return not any(t.matches(case_id, tags) for t in self.exclude)

    def __bool__(self) -> bool:
        return bool(self.include or self.exclude)

"""Trigger events and relevance checks.

A pipeline runs only for events it is bound to (push to / pull request into a
configured branch) that touch at least one path of interest.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Mapping, Tuple, Union
import re

from .config import TriggerRule


@dataclass(frozen=True, slots=True)
class CodePush:
    branch: str
    changed_paths: Tuple[str, ...] = ()

    kind = "push"

    @property
    def ref_branch(self) -> str:
        return self.branch


@dataclass(frozen=True, slots=True)
class PullRequest:
    target_branch: str
    changed_paths: Tuple[str, ...] = ()

    kind = "pull_request"

    @property
    def ref_branch(self) -> str:
        return self.target_branch


TriggerEvent = Union[CodePush, PullRequest]


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> "re.Pattern[str]":
    # '**' spans directories, '*' and '?' stay within a single segment.
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(pattern: str, path: str) -> bool:
    if path.startswith("./"):
        path = path[2:]
    return _glob_regex(pattern).match(path) is not None


class PathFilter:
    """Set of glob patterns over repository-relative paths."""

    def __init__(self, patterns: Iterable[str]):
        self.patterns = tuple(patterns)

    def __repr__(self) -> str:  # pragma: no cover
        return f"PathFilter({list(self.patterns)!r})"

    def matches(self, path: str) -> bool:
        return any(glob_match(p, path) for p in self.patterns)

    def is_relevant(self, changed_paths: Iterable[str]) -> bool:
        """True iff some changed path matches some pattern.

        An empty filter applies no path restriction.
        """
        if not self.patterns:
            return True
        return any(self.matches(p) for p in changed_paths)


def should_run(event: TriggerEvent, rules: Mapping[str, TriggerRule]) -> bool:
    """Decide whether ``event`` should start a run of the pipeline bound to ``rules``."""
    rule = rules.get(event.kind)
    if rule is None:
        return False
    if not any(glob_match(b, event.ref_branch) for b in rule.branches):
        return False
    return PathFilter(rule.paths).is_relevant(event.changed_paths)


__all__ = [
    "CodePush",
    "PullRequest",
    "TriggerEvent",
    "PathFilter",
    "glob_match",
    "should_run",
]

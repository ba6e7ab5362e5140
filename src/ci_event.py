"""CI webhook event payload parsing.

Reads the JSON event document a CI service hands to a job (the file named by
``$GITHUB_EVENT_PATH``) and turns it into a gatecheck trigger event:
  - push: branch from ``ref``, changed paths from the commits' added /
    modified / removed lists
  - pull_request: target branch from ``pull_request.base.ref``; the payload
    carries no file list, so paths come from the caller or from git
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
import json
import subprocess

from gatecheck.triggers import CodePush, PullRequest, TriggerEvent


BRANCH_REF_PREFIX = "refs/heads/"


@dataclass(slots=True)
class EventPayload:
    name: str
    branch: str
    changed_paths: Tuple[str, ...]
    base_sha: Optional[str] = None
    head_sha: Optional[str] = None

    def to_trigger(self, extra_paths: Iterable[str] = ()) -> TriggerEvent:
        paths = tuple(dict.fromkeys([*self.changed_paths, *extra_paths]))
        if self.name == "push":
            return CodePush(branch=self.branch, changed_paths=paths)
        return PullRequest(target_branch=self.branch, changed_paths=paths)


class EventError(Exception):
    pass


def branch_from_ref(ref: str) -> str:
    return ref[len(BRANCH_REF_PREFIX):] if ref.startswith(BRANCH_REF_PREFIX) else ref


def _push_paths(raw: Dict[str, Any]) -> List[str]:
    paths: List[str] = []
    commits = raw.get("commits")
    if commits is None:
        commits = []
    if not isinstance(commits, list):
        raise EventError("push payload 'commits' must be a list")
    for commit in commits:
        if not isinstance(commit, dict):
            continue
        for key in ("added", "modified", "removed"):
            for p in commit.get(key) or []:
                if isinstance(p, str) and p not in paths:
                    paths.append(p)
    return paths


def parse_event(name: str, raw: Any) -> EventPayload:
    if not isinstance(raw, dict):
        raise EventError("Event payload root must be an object")
    if name == "push":
        ref = raw.get("ref")
        if not isinstance(ref, str) or not ref:
            raise EventError("push payload missing 'ref'")
        return EventPayload(
            name=name,
            branch=branch_from_ref(ref),
            changed_paths=tuple(_push_paths(raw)),
            base_sha=raw.get("before"),
            head_sha=raw.get("after"),
        )
    if name == "pull_request":
        pr = raw.get("pull_request")
        if not isinstance(pr, dict):
            raise EventError("pull_request payload missing 'pull_request'")
        base = pr.get("base") or {}
        head = pr.get("head") or {}
        ref = base.get("ref")
        if not isinstance(ref, str) or not ref:
            raise EventError("pull_request payload missing 'pull_request.base.ref'")
        return EventPayload(
            name=name,
            branch=ref,
            changed_paths=(),
            base_sha=base.get("sha"),
            head_sha=head.get("sha"),
        )
    raise EventError(f"Unsupported event '{name}'")


def load_event(name: str, path: Path) -> EventPayload:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise EventError(f"Cannot read event file: {e}") from e
    except json.JSONDecodeError as e:
        raise EventError(f"Invalid JSON: {e}") from e
    return parse_event(name, raw)


def changed_paths_from_git(base: str, head: str = "HEAD", cwd: Optional[Path] = None) -> List[str]:
    """List paths changed between the merge base of ``base`` and ``head``."""
    try:
        proc = subprocess.run(
            ["git", "diff", "--name-only", f"{base}...{head}"],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        stderr = getattr(e, "stderr", "") or ""
        raise EventError(f"git diff failed: {e} {stderr.strip()}".strip()) from e
    return [ln for ln in proc.stdout.splitlines() if ln.strip()]


__all__ = [
    "EventPayload",
    "EventError",
    "branch_from_ref",
    "parse_event",
    "load_event",
    "changed_paths_from_git",
]

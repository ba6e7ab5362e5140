"""Workflow configuration models & YAML loading.

Contains only structural parsing/validation. Trigger matching, caching and
execution live in sibling modules to keep responsibilities focused.

Example expected YAML structure (subset):

version: "1.0"
name: ci-rust
triggers:
  push:
    branches: [master]
    paths: ['src/**', 'Cargo.toml']
toolchain:
  tool: cargo
caches:
  - key: cargo-cache-test-rs
    path: /github/home/.cargo
stages:
  - name: Run formatting checks
    uses: cargo
    run:
      - fmt --all -- --check
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import yaml


TRIGGER_KINDS = ("push", "pull_request")


@dataclass(slots=True)
class Stage:
    name: str
    uses: str
    run: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_failure: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CacheSpec:
    key: str
    path: Path


@dataclass(slots=True)
class TriggerRule:
    kind: str
    branches: Tuple[str, ...]
    paths: Tuple[str, ...] = ()


@dataclass(slots=True)
class ToolchainSpec:
    tool: str
    components: Tuple[str, ...] = ()


@dataclass(slots=True)
class PipelineConfig:
    version: str
    name: str
    stages: List[Stage]
    triggers: Dict[str, TriggerRule] = field(default_factory=dict)
    caches: List[CacheSpec] = field(default_factory=list)
    toolchain: Optional[ToolchainSpec] = None
    source_path: Optional[Path] = None

    def find_stage(self, name: str) -> Optional[Stage]:
        for s in self.stages:
            if s.name == name:
                return s
        return None

    def find_cache(self, key: str) -> Optional[CacheSpec]:
        for c in self.caches:
            if c.key == key:
                return c
        return None


class PipelineError(Exception):
    pass


def _string_list(value: Any, what: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PipelineError(f"{what} must be a string or a list of strings")
    return list(value)


def _coerce_stage(obj: Dict[str, Any]) -> Stage:
    if not isinstance(obj, dict):
        raise PipelineError("Stage entry must be a mapping")
    name = obj.get("name")
    uses = obj.get("uses")
    if not name or not isinstance(name, str):
        raise PipelineError("Stage missing string 'name'")
    if not uses or not isinstance(uses, str):
        raise PipelineError(f"Stage '{name}' missing string 'uses'")
    if "run" not in obj:
        raise PipelineError(f"Stage '{name}' missing 'run'")
    run = _string_list(obj["run"], f"Stage '{name}' field 'run'")
    # A block scalar holds several commands, one per line.
    lines = [ln.strip() for cmd in run for ln in cmd.splitlines() if ln.strip()]
    if not lines:
        raise PipelineError(f"Stage '{name}' has no commands to run")
    env = obj.get("env")
    if env is None:
        env = {}
    elif not isinstance(env, dict):
        raise PipelineError(f"Stage '{name}' field 'env' must be a mapping if present")
    continue_on_failure = obj.get("continue_on_failure", False)
    if not isinstance(continue_on_failure, bool):
        raise PipelineError(f"Stage '{name}' field 'continue_on_failure' must be a boolean")
    raw = dict(obj)
    return Stage(
        name=name,
        uses=uses,
        run=lines,
        env={str(k): str(v) for k, v in env.items()},
        continue_on_failure=continue_on_failure,
        raw=raw,
    )


def _coerce_trigger(kind: str, obj: Any) -> TriggerRule:
    if kind not in TRIGGER_KINDS:
        raise PipelineError(f"Unknown trigger '{kind}' (expected one of {', '.join(TRIGGER_KINDS)})")
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise PipelineError(f"Trigger '{kind}' must be a mapping")
    branches = _string_list(obj.get("branches", ["**"]), f"Trigger '{kind}' field 'branches'")
    paths = _string_list(obj.get("paths", []), f"Trigger '{kind}' field 'paths'")
    return TriggerRule(kind=kind, branches=tuple(branches), paths=tuple(paths))


def _coerce_cache(obj: Any) -> CacheSpec:
    if not isinstance(obj, dict):
        raise PipelineError("Cache entry must be a mapping")
    key = obj.get("key")
    path = obj.get("path")
    if not key or not isinstance(key, str):
        raise PipelineError("Cache entry missing string 'key'")
    if not path or not isinstance(path, str):
        raise PipelineError(f"Cache '{key}' missing string 'path'")
    return CacheSpec(key=key, path=Path(path).expanduser())


def _coerce_toolchain(obj: Any) -> ToolchainSpec:
    if not isinstance(obj, dict):
        raise PipelineError("'toolchain' must be a mapping")
    tool = obj.get("tool")
    if not tool or not isinstance(tool, str):
        raise PipelineError("Toolchain missing string 'tool'")
    components = _string_list(obj.get("components", []), "Toolchain field 'components'")
    return ToolchainSpec(tool=tool, components=tuple(components))


def load_pipeline(path: Path) -> PipelineConfig:
    """Load a workflow YAML from path.

    Relative cache paths are kept as written; the run resolves them
    against its working directory.
    Raises PipelineError on structural issues.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PipelineError(f"Cannot read pipeline file: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise PipelineError(f"YAML parse error: {e}") from e
    return _build_config(data, source_path=path)


def load_pipeline_from_string(text: str) -> PipelineConfig:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise PipelineError(f"YAML parse error: {e}") from e
    return _build_config(data, source_path=Path("<string>"))


def _build_config(data: Any, *, source_path: Path) -> PipelineConfig:
    if not isinstance(data, dict):
        raise PipelineError("Pipeline root must be a mapping")
    version = data.get("version", "")
    if not version:
        raise PipelineError("Pipeline missing 'version'")
    stages_raw = data.get("stages")
    if not isinstance(stages_raw, list) or not stages_raw:
        raise PipelineError("Pipeline 'stages' must be a non-empty list")
    stages: List[Stage] = []
    for entry in stages_raw:
        stages.append(_coerce_stage(entry))
    names = [s.name for s in stages]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise PipelineError(f"Duplicate stage names: {', '.join(dupes)}")

    triggers_raw = data.get("triggers") or {}
    if not isinstance(triggers_raw, dict):
        raise PipelineError("Pipeline 'triggers' must be a mapping")
    triggers = {kind: _coerce_trigger(kind, obj) for kind, obj in triggers_raw.items()}

    caches_raw = data.get("caches") or []
    if not isinstance(caches_raw, list):
        raise PipelineError("Pipeline 'caches' must be a list")
    caches = [_coerce_cache(obj) for obj in caches_raw]
    keys = [c.key for c in caches]
    if len(set(keys)) != len(keys):
        raise PipelineError("Cache keys must be unique")

    toolchain_raw = data.get("toolchain")
    toolchain = _coerce_toolchain(toolchain_raw) if toolchain_raw is not None else None

    return PipelineConfig(
        version=str(version),
        name=str(data.get("name") or source_path.stem),
        stages=stages,
        triggers=triggers,
        caches=caches,
        toolchain=toolchain,
        source_path=source_path,
    )


__all__ = [
    "Stage",
    "CacheSpec",
    "TriggerRule",
    "ToolchainSpec",
    "PipelineConfig",
    "PipelineError",
    "TRIGGER_KINDS",
    "load_pipeline",
    "load_pipeline_from_string",
]

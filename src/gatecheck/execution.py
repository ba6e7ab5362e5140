"""Pipeline execution engine.

Runs the declared stages strictly sequentially, fail-fast, between a cache
restore and a best-effort cache persist:

    Pending -> Running(stage i) -> Running(stage i+1) | Failed | Passed

No retries are attempted. A failed run needs a new trigger event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional
import logging
import os
import shutil
import time

from .cache import CacheReport, CacheStore, persist_caches, restore_caches
from .config import CacheSpec, PipelineConfig, Stage
from .stages import (
    EXIT_TIMEOUT,
    CommandRunner,
    StageContext,
    StageTimeout,
    create_stage_impl,
    subprocess_runner,
)


class Outcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


class ToolchainError(Exception):
    pass


@dataclass(slots=True)
class StageResult:
    stage: Stage
    outcome: Outcome
    exit_code: Optional[int] = None
    duration: float = 0.0
    reason: Optional[str] = None


@dataclass(slots=True)
class RunResult:
    stage_results: List[StageResult] = field(default_factory=list)
    cache: CacheReport = field(default_factory=CacheReport)
    error: Optional[str] = None

    @property
    def status(self) -> RunStatus:
        if self.error is not None:
            return RunStatus.FAILED
        for r in self.stage_results:
            if r.outcome is Outcome.FAILED and not r.stage.continue_on_failure:
                return RunStatus.FAILED
        return RunStatus.PASSED

    @property
    def passed(self) -> bool:
        return self.status is RunStatus.PASSED

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    @property
    def failed_stage(self) -> Optional[StageResult]:
        for r in self.stage_results:
            if r.outcome is Outcome.FAILED and not r.stage.continue_on_failure:
                return r
        return None

    def outcomes(self) -> Dict[str, Outcome]:
        return {r.stage.name: r.outcome for r in self.stage_results}


def check_toolchain(cfg: PipelineConfig, which: Callable[[str], Optional[str]] = shutil.which) -> None:
    """Raise ToolchainError unless the tool and each component resolve on PATH.

    A component is found either as its own executable (``rustfmt``) or as a
    ``<tool>-<component>`` plugin (``cargo-clippy``).
    """
    if cfg.toolchain is None:
        return
    tool = cfg.toolchain.tool
    if which(tool) is None:
        raise ToolchainError(f"Toolchain '{tool}' not found on PATH")
    missing = [c for c in cfg.toolchain.components
               if which(c) is None and which(f"{tool}-{c}") is None]
    if missing:
        raise ToolchainError(f"Toolchain '{tool}' is missing components: {', '.join(missing)}")


def resolve_cache_paths(caches: List[CacheSpec], workdir: Optional[Path]) -> List[CacheSpec]:
    """Anchor relative cache paths at the directory the stages run in."""
    base = workdir if workdir is not None else Path.cwd()
    return [c if c.path.is_absolute() else CacheSpec(key=c.key, path=base / c.path) for c in caches]


def _skip_rest(result: RunResult, stages: List[Stage], reason: str) -> None:
    for st in stages:
        result.stage_results.append(StageResult(stage=st, outcome=Outcome.SKIPPED, reason=reason))


def execute_pipeline(
    cfg: PipelineConfig,
    cache: CacheStore,
    log: Optional[logging.Logger] = None,
    *,
    runner: CommandRunner = subprocess_runner,
    workdir: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> RunResult:
    """Execute all stages of ``cfg`` and return the per-stage results.

    ``timeout`` bounds the whole run in seconds; on expiry the running stage
    is Failed with exit code 124. Cache persistence never alters the verdict.
    """
    if log is None:  # pragma: no cover
        log = logging.getLogger('gatecheck')
    result = RunResult()
    impls = [create_stage_impl(st) for st in cfg.stages]

    try:
        check_toolchain(cfg, which)
    except ToolchainError as e:
        log.error("[pipeline] %s", e)
        result.error = str(e)
        _skip_rest(result, cfg.stages, "toolchain unavailable")
        return result

    caches = resolve_cache_paths(cfg.caches, workdir)
    restore_caches(caches, cache, result.cache, log)

    ctx = StageContext(
        runner=runner,
        workdir=workdir,
        env=dict(os.environ) if env is None else dict(env),
        deadline=time.monotonic() + timeout if timeout is not None else None,
    )
    try:
        for idx, (st, impl) in enumerate(zip(cfg.stages, impls)):
            log.info("[pipeline] running stage %d/%d: %s", idx + 1, len(impls), st.name)
            started = time.monotonic()
            try:
                code = impl.run(ctx, log)
            except StageTimeout as e:
                log.error("[pipeline] stage '%s' %s", st.name, e)
                result.error = f"Stage '{st.name}' timed out"
                result.stage_results.append(StageResult(
                    stage=st, outcome=Outcome.FAILED, exit_code=EXIT_TIMEOUT,
                    duration=time.monotonic() - started, reason="timeout"))
                _skip_rest(result, cfg.stages[idx + 1:], "run timed out")
                break
            duration = time.monotonic() - started
            if code == 0:
                log.info("[pipeline] stage '%s' passed (%.1fs)", st.name, duration)
                result.stage_results.append(StageResult(
                    stage=st, outcome=Outcome.PASSED, exit_code=0, duration=duration))
                continue
            result.stage_results.append(StageResult(
                stage=st, outcome=Outcome.FAILED, exit_code=code, duration=duration))
            if st.continue_on_failure:
                log.warning("[pipeline] stage '%s' failed with exit code %d (continuing)", st.name, code)
                continue
            log.error("[pipeline] stage '%s' failed with exit code %d", st.name, code)
            _skip_rest(result, cfg.stages[idx + 1:], f"stage '{st.name}' failed")
            break
    finally:
        persist_caches(caches, cache, result.cache, log)

    log.info("[pipeline] run %s", result.status.value)
    return result


__all__ = [
    'Outcome',
    'RunStatus',
    'StageResult',
    'RunResult',
    'ToolchainError',
    'check_toolchain',
    'resolve_cache_paths',
    'execute_pipeline',
]

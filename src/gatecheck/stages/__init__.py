"""Stage implementation classes & registry.

A stage turns its ``run`` lines into argv lists and hands them one by one to a
command runner. The first non-zero exit status ends the stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Type
import logging
import os
import shlex
import subprocess
import time

from ..config import Stage, PipelineError

# Exit codes reported when a command could not run to completion.
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127

CommandRunner = Callable[[List[str], Dict[str, str], Optional[Path], Optional[float]], int]


def subprocess_runner(argv: List[str], env: Dict[str, str], cwd: Optional[Path],
                      timeout: Optional[float]) -> int:
    """Run argv to completion; output goes straight to the parent's stdout/stderr."""
    proc = subprocess.run(argv, env=env, cwd=cwd, timeout=timeout, check=False)
    return proc.returncode


class StageTimeout(Exception):
    pass


@dataclass(slots=True)
class StageContext:
    runner: CommandRunner = subprocess_runner
    workdir: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=lambda: dict(os.environ))
    deadline: Optional[float] = None  # time.monotonic() value

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()


class BaseStageImpl:
    """Base executable stage.

    run(ctx, log) -> exit status of the stage (0 on success)
    """

    def __init__(self, cfg: Stage):
        self.cfg = cfg

    def commands(self) -> List[List[str]]:  # pragma: no cover - abstract
        raise NotImplementedError

    def run(self, ctx: StageContext, log: logging.Logger) -> int:
        env = {**ctx.env, **self.cfg.env}
        for argv in self.commands():
            remaining = ctx.remaining()
            if remaining is not None and remaining <= 0:
                raise StageTimeout(f"run timed out before '{shlex.join(argv)}'")
            log.info("[%s] $ %s", self.cfg.name, shlex.join(argv))
            try:
                code = ctx.runner(argv, env, ctx.workdir, remaining)
            except subprocess.TimeoutExpired as e:
                raise StageTimeout(f"run timed out during '{shlex.join(argv)}'") from e
            except OSError as e:
                log.error("[%s] cannot launch %s: %s", self.cfg.name, argv[0], e)
                return EXIT_NOT_FOUND
            if code != 0:
                log.debug("[%s] '%s' exited with %d", self.cfg.name, shlex.join(argv), code)
                return code
        return 0


class CommandStage(BaseStageImpl):
    """Each run line is a complete command."""

    def commands(self) -> List[List[str]]:
        return [shlex.split(line) for line in self.cfg.run]


class ToolStage(BaseStageImpl):
    """Each run line is an argument list for ``tool``."""

    tool = ""

    def commands(self) -> List[List[str]]:
        return [[self.tool, *shlex.split(line)] for line in self.cfg.run]


class CargoStage(ToolStage):
    tool = "cargo"


STAGE_CLASS_REGISTRY: Dict[str, Type[BaseStageImpl]] = {
    'command': CommandStage,
    'cargo': CargoStage,
}


def register_stage(uses: str, cls: Type[BaseStageImpl]) -> None:
    STAGE_CLASS_REGISTRY[uses] = cls


def create_stage_impl(stage: Stage) -> BaseStageImpl:
    cls = STAGE_CLASS_REGISTRY.get(stage.uses)
    if not cls:
        raise PipelineError(f"Unknown stage uses '{stage.uses}'")
    return cls(stage)


__all__ = [
    'BaseStageImpl',
    'CommandStage',
    'ToolStage',
    'CargoStage',
    'CommandRunner',
    'StageContext',
    'StageTimeout',
    'EXIT_TIMEOUT',
    'EXIT_NOT_FOUND',
    'STAGE_CLASS_REGISTRY',
    'register_stage',
    'create_stage_impl',
    'subprocess_runner',
]

"""Public gatecheck package API (config + triggers + cache + execution)."""

from .config import (
    Stage,
    CacheSpec,
    TriggerRule,
    ToolchainSpec,
    PipelineConfig,
    PipelineError,
    load_pipeline,
    load_pipeline_from_string,
)
from .triggers import CodePush, PullRequest, PathFilter, should_run
from .cache import (
    CacheError,
    CacheStore,
    InMemoryCacheStore,
    DirectoryCacheStore,
)
from .stages import create_stage_impl, register_stage
from .execution import (
    Outcome,
    RunStatus,
    StageResult,
    RunResult,
    ToolchainError,
    execute_pipeline,
)

__all__ = [
    'Stage',
    'CacheSpec',
    'TriggerRule',
    'ToolchainSpec',
    'PipelineConfig',
    'PipelineError',
    'load_pipeline',
    'load_pipeline_from_string',
    'CodePush',
    'PullRequest',
    'PathFilter',
    'should_run',
    'CacheError',
    'CacheStore',
    'InMemoryCacheStore',
    'DirectoryCacheStore',
    'create_stage_impl',
    'register_stage',
    'Outcome',
    'RunStatus',
    'StageResult',
    'RunResult',
    'ToolchainError',
    'execute_pipeline',
]

"""CLI entrypoint for gatecheck.

Responsibilities:
    1. Parse CLI arguments (CI environment variables supply defaults)
    2. Configure logging verbosity
    3. Load and validate the workflow YAML
    4. Build the trigger event and decide whether the workflow applies
    5. Execute the stages and map the verdict to the process exit code

Exit codes: 0 passed or not applicable, 1 failed, 2 usage / load error.
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import List, Optional

from gatecheck import (
    DirectoryCacheStore,
    InMemoryCacheStore,
    PipelineConfig,
    PipelineError,
    RunResult,
    execute_pipeline,
    load_pipeline,
    should_run,
)
from gatecheck.cache import CacheStore
from gatecheck.config import TRIGGER_KINDS
from gatecheck.triggers import CodePush, PullRequest, TriggerEvent
from ci_event import EventError, changed_paths_from_git, load_event

EXIT_USAGE = 2


def cli(argv: List[str] | None = None) -> int:
    """Entry point used by tests & __main__.

    Returns a process exit code.
    """
    args = parse_args(argv)
    log = configure_logging(args.verbose)

    cfg = load_pipeline_config(args.pipeline, log)
    if cfg is None:
        return EXIT_USAGE

    if args.list:
        list_declared_stages(cfg, log)
        return 0

    if args.event and args.event not in TRIGGER_KINDS:
        log.info("Workflow '%s' has no trigger for %s events; nothing to do", cfg.name, args.event)
        return 0

    event = build_trigger_event(args, log)
    if event is None:
        return EXIT_USAGE
    if not should_run(event, cfg.triggers):
        log.info("Workflow '%s' does not apply to this %s event; nothing to do", cfg.name, event.kind)
        return 0

    try:
        result = execute_pipeline(
            cfg,
            open_cache_store(args.cache_dir),
            log,
            workdir=args.workdir,
            timeout=args.timeout,
        )
    except PipelineError as e:
        log.error("Pipeline error: %s", e)
        return EXIT_USAGE
    summarize_run(result, log)
    return result.exit_code


def parse_args(argv: List[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="gatecheck (CI verification pipeline runner)")
    parser.add_argument("--pipeline", type=Path, required=True, help="Path to workflow YAML definition")
    parser.add_argument(
        "--event",
        choices=["push", "pull_request"],
        default=os.environ.get("GITHUB_EVENT_NAME") or None,
        help="Trigger event kind (default: $GITHUB_EVENT_NAME)",
    )
    parser.add_argument("--branch", help="Pushed branch, or target branch of a pull request")
    parser.add_argument(
        "--event-payload",
        type=Path,
        default=Path(os.environ["GITHUB_EVENT_PATH"]) if os.environ.get("GITHUB_EVENT_PATH") else None,
        help="JSON event payload (default: $GITHUB_EVENT_PATH)",
    )
    parser.add_argument("--changed", nargs="*", default=[], metavar="PATH", help="Changed file paths")
    parser.add_argument("--changed-from-git", metavar="BASE", help="Add paths changed since BASE (git diff BASE...HEAD)")
    parser.add_argument("--cache-dir", type=Path, help="Directory holding persisted cache entries")
    parser.add_argument("--workdir", type=Path, help="Working directory for stage commands")
    parser.add_argument("--timeout", type=float, help="Wall-clock limit for the whole run, in seconds")
    parser.add_argument("--list", action="store_true", help="List declared stages and exit")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging output")
    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> logging.Logger:
    """Configure root logging and return the project logger.

    Verbosity toggles DEBUG/INFO levels.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    return logging.getLogger("gatecheck")


def load_pipeline_config(path: Path, log: logging.Logger) -> Optional[PipelineConfig]:
    """Load workflow YAML; returns None and logs an error if loading or validation fails."""
    try:
        cfg = load_pipeline(path)
    except PipelineError as e:
        log.error("Pipeline load failed: %s", e)
        return None
    log.debug("Loaded workflow '%s' version %s", cfg.name, cfg.version)
    return cfg


def list_declared_stages(cfg: PipelineConfig, log: logging.Logger) -> None:
    log.info("Declared stages of '%s':", cfg.name)
    for idx, st in enumerate(cfg.stages, 1):
        log.info("  %02d. %s  uses=%s", idx, st.name, st.uses)
        for line in st.run:
            log.info("        $ %s", line)


def build_trigger_event(args: argparse.Namespace, log: logging.Logger) -> Optional[TriggerEvent]:
    """Assemble the trigger event from the payload file and/or explicit flags."""
    if args.event not in TRIGGER_KINDS:
        log.error("Unsupported or missing event kind %r (use --event push|pull_request)", args.event)
        return None
    extra = list(args.changed)
    try:
        if args.changed_from_git:
            extra.extend(changed_paths_from_git(args.changed_from_git, cwd=args.workdir))
        if args.event_payload is not None:
            payload = load_event(args.event, args.event_payload)
            if args.branch:
                payload.branch = args.branch
            if not payload.changed_paths and not extra:
                # Pull request payloads carry no file list.
                if not (payload.base_sha and payload.head_sha):
                    log.error("No changed paths known for this %s event (use --changed or --changed-from-git)",
                              payload.name)
                    return None
                extra = changed_paths_from_git(payload.base_sha, payload.head_sha, cwd=args.workdir)
            return payload.to_trigger(extra)
    except EventError as e:
        log.error("Cannot determine trigger event: %s", e)
        return None
    if not args.branch:
        log.error("No branch given (use --branch or --event-payload)")
        return None
    paths = tuple(dict.fromkeys(extra))
    if args.event == "push":
        return CodePush(branch=args.branch, changed_paths=paths)
    return PullRequest(target_branch=args.branch, changed_paths=paths)


def open_cache_store(cache_dir: Optional[Path]) -> CacheStore:
    if cache_dir is None:
        return InMemoryCacheStore()
    return DirectoryCacheStore(cache_dir)


def summarize_run(result: RunResult, log: logging.Logger) -> None:
    """Emit the ordered per-stage report and the verdict."""
    log.info("Run summary:")
    for r in result.stage_results:
        detail = ""
        if r.exit_code not in (None, 0):
            detail = f" (exit code {r.exit_code})"
        elif r.reason:
            detail = f" ({r.reason})"
        log.info("  %-8s %s%s", r.outcome.value, r.stage.name, detail)
    if result.cache.misses:
        log.info("  cache misses: %s", ", ".join(result.cache.misses))
    for key, err in result.cache.persist_failures.items():
        log.warning("  cache '%s' not saved: %s", key, err)
    failed = result.failed_stage
    if failed is not None:
        log.error("FAILED at stage '%s' with exit code %s", failed.stage.name, failed.exit_code)
    elif result.error:
        log.error("FAILED: %s", result.error)
    else:
        log.info("PASSED")


__all__ = [
    "cli",
    "parse_args",
    "configure_logging",
    "load_pipeline_config",
    "list_declared_stages",
    "build_trigger_event",
    "open_cache_store",
    "summarize_run",
]


def main():  # pragma: no cover
    return cli()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

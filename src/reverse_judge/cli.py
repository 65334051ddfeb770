"""CLI entry point for the reverse_judge pipeline.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``reverse_judge = "reverse_judge.cli:main"``. Parses
command-line arguments, loads an optional config YAML file, and delegates
to ``run_analysis_sync()`` from ``reverse_judge.orchestrator``.
"""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from pathlib import Path
import shutil
import sys
from typing import Any

import yaml

from reverse_judge.models import AnalysisRequest, AnalysisResult, EventKind, PipelineConfig, ProgressEvent
from reverse_judge.orchestrator import (
    PipelineError,
    apply_env_overrides,
    build_runner,
    configure_logging,
    run_analysis_sync,
)
from reverse_judge.progress import ALL_RUNS, ProgressChannel
from reverse_judge.reasoning import ClaudeCodeClient, ReasoningClient

_PRINTED_KINDS = frozenset({EventKind.STAGE, EventKind.COMPLETE, EventKind.ERROR})


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="reverse_judge",
        description="Infer the competitive-programming problem a black-box executable solves.",
    )
    parser.add_argument("--executable", required=True, help="Path to the executable to analyze.")
    parser.add_argument("--input-format", required=True, help="Free-text description of the input format.")
    parser.add_argument("--constraints", default="", help="Free-text constraints, e.g. '1 <= n <= 10^5'.")
    parser.add_argument("--config", default=None, help="Path to an optional PipelineConfig YAML file.")
    parser.add_argument(
        "--backend",
        choices=("docker", "local", "mock"),
        default=None,
        help="Sandbox backend (overrides the config file).",
    )
    parser.add_argument(
        "--no-reasoning",
        action="store_true",
        help="Skip the reasoning service and build a local fallback inference.",
    )
    parser.add_argument("--output", default=None, help="Write the full result as JSON to this path.")
    return parser


def _load_yaml(path: str, label: str) -> dict[str, Any]:
    """Load and validate a YAML file as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file does not parse to a dict.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"{label} file not found: {path}"
        raise FileNotFoundError(msg)

    with open(file_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        msg = f"{label} file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)

    return data


def _check_claude_cli() -> None:
    """Exit with status 1 if the ``claude`` CLI is not on PATH."""
    if shutil.which("claude") is None:
        print(
            "Error: Claude Code CLI ('claude') not found on PATH. "
            "Install it or pass --no-reasoning for a local fallback analysis.",
            file=sys.stderr,
        )
        sys.exit(1)


def _print_startup_summary(request: AnalysisRequest, config: PipelineConfig, reasoning: bool) -> None:
    """Print a startup summary banner to stdout."""
    sep = "=" * 60
    print(sep)
    print("reverse_judge")
    print(sep)
    print(f"  Executable:   {request.executable_path}")
    print(f"  Input format: {request.input_format}")
    print(f"  Constraints:  {request.constraints or '(none)'}")
    print(f"  Backend:      {config.sandbox_backend}")
    print(f"  Reasoning:    {config.model if reasoning else 'disabled'}")
    memory_mib = config.memory_bytes // (1024 * 1024)
    print(f"  Limits:       {config.timeout_ms}ms, {memory_mib}MiB, {config.max_processes} pids")
    print(sep)


def _print_event(event: ProgressEvent) -> None:
    if event.kind in _PRINTED_KINDS:
        print(f"[{event.progress_percent:3d}%] {event.stage}: {event.message}")


def _print_result(result: AnalysisResult) -> bool:
    """Print the outcome; returns whether an inferred problem was reported."""
    if not result.success:
        print(f"Analysis failed: {result.error} ({result.error_kind})", file=sys.stderr)
        print(f"Observations collected: {len(result.observations)}", file=sys.stderr)
        return False
    problem = result.inferred_problem
    if problem is None:
        print("Analysis finished without an inferred problem", file=sys.stderr)
        return False
    print("Analysis completed.")
    print(f"Title:        {problem.problem_title}")
    print(f"Confidence:   {problem.confidence:.2f}{' (fallback)' if result.fallback_used else ''}")
    if result.quality is not None:
        print(f"Quality:      {result.quality.score}/100")
    if result.hypotheses:
        print(f"Top match:    {result.hypotheses[0].name} ({result.hypotheses[0].confidence:.0%})")
    if result.error:
        print(f"Note:         {result.error}")
    print(f"Duration:     {result.duration_seconds:.1f}s")
    return True


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the reverse_judge CLI application.

    Returns:
        Exit code: 0 on success, 1 on error.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.no_reasoning:
        _check_claude_cli()

    try:
        config = PipelineConfig()
        if args.config is not None:
            config = PipelineConfig(**_load_yaml(args.config, "config"))
        if args.backend is not None:
            config = config.model_copy(update={"sandbox_backend": args.backend})
        config = apply_env_overrides(config)
        configure_logging(config)

        request = AnalysisRequest(
            executable_path=args.executable,
            input_format=args.input_format,
            constraints=args.constraints,
        )
        reasoning: ReasoningClient | None = None
        if not args.no_reasoning:
            reasoning = ClaudeCodeClient(model=config.model, timeout_seconds=config.reasoning_timeout_seconds)
        _print_startup_summary(request, config, reasoning is not None)

        channel = ProgressChannel()
        channel.subscribe(ALL_RUNS, _print_event)
        result = run_analysis_sync(request, config, reasoning=reasoning, runner=build_runner(config), channel=channel)

        reported = _print_result(result)
        if args.output is not None:
            Path(args.output).write_text(result.model_dump_json(indent=2), encoding="utf-8")
            print(f"Result written to {args.output}")

    except PipelineError as exc:
        print(f"Pipeline error: {exc}", file=sys.stderr)
        print(f"Diagnostics: {exc.diagnostics}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    return 0 if reported else 1


if __name__ == "__main__":
    sys.exit(main())

"""Console output formatting utilities for gateci."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from gateci.model import InstanceResult, RunContext, RunResult


_STATUS_LABELS = {
    "succeeded": "SUCCESS",
    "failed": "FAILED",
    "cancelled": "CANCELLED",
    "skipped": "SKIPPED",
    "timed_out": "TIMED OUT",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-instance progress lines
        """
        self.debug = debug
        self.quiet = quiet

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        run_id: str,
        context: "RunContext",
        instance_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Pipeline: {pipeline}")
        print(f"Run ID: {run_id}")
        print(f"Event: {context.event.value}" + (f" ({context.action})" if context.action else ""))
        if context.ref:
            print(f"Ref: {context.ref}")
        print(f"Jobs: {instance_count}")
        print()

    def print_run_skipped(self, pipeline: str, reason: str) -> None:
        print(f"\nRUN SKIPPED: {pipeline}")
        print(f"Reason: {reason}")

    def print_superseded(self, group: str, old_run: str, new_run: str) -> None:
        print(f"CONCURRENCY: run {old_run} superseded by {new_run} in group '{group}'")

    def print_instance_started(self, instance_id: str) -> None:
        if not self.quiet:
            print(f"JOB STARTED: {instance_id}")

    def print_step(self, instance_id: str, name: str) -> None:
        if not self.quiet:
            print(f"[{instance_id}] STEP: {name}")

    def print_instance_settled(self, instance_id: str, result: "InstanceResult") -> None:
        """Print one line per settled instance, plus failure details."""
        if self.quiet:
            return
        label = _STATUS_LABELS.get(result.outcome.value, result.outcome.value.upper())
        line = f"JOB {label}: {instance_id}"
        if result.reason:
            line += f" ({result.reason})"
        print(line)
        if result.outcome.is_failure and result.exit_code is not None:
            print(f"Exit code: {result.exit_code}")
        if self.debug and result.error is not None:
            print(f"Error details: {result.error}")

    def print_failure_output(self, instance_id: str, output: str) -> None:
        if not output:
            return
        if self.debug:
            print(f"--- output: {instance_id} ---")
            print(output.rstrip())
        else:
            # last line is usually the most useful
            lines = output.strip().splitlines()
            if lines:
                print(f"Error: {lines[-1]}")

    def print_plan(self, pipeline: str, levels: list[list[str]]) -> None:
        self.print_header(f"PLAN: {pipeline}")
        for idx, level in enumerate(levels):
            print(f"Stage {idx + 1}:")
            for name in level:
                print(f"  {name}")

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for instance_id, res in result.results.items():
            label = _STATUS_LABELS.get(res.outcome.value, res.outcome.value.upper())
            print(f"  {instance_id}: {label}")
        print(f"\nRUN {result.status.value.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console

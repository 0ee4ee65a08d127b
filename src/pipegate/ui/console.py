"""Console output formatting utilities for pipegate."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from pipegate.dag import ExecutionPlan
    from pipegate.report import RunReport
    from pipegate.trigger import TriggerContext


_STATE_DISPLAY = {
    "succeeded": "SUCCESS",
    "failed": "FAILED",
    "skipped": "SKIPPED",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_run_started(
        self,
        repository: str,
        pipeline: str,
        workflow: str,
        trigger: "TriggerContext",
        instance_count: int,
        commit: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Repository: {repository}")
        if commit:
            print(f"Commit: {commit[:12]}")
        print(f"Pipeline: {pipeline}")
        print(f"Workflow: {workflow}")
        print(f"Event: {trigger.event} -> {trigger.target_branch}")
        if trigger.source_branch and trigger.source_branch != trigger.target_branch:
            print(f"Source branch: {trigger.source_branch}")
        print(f"Job instances: {instance_count}")
        print()

    def print_plan(self, plan: "ExecutionPlan") -> None:
        """Print the staged execution plan."""
        for idx, level in enumerate(plan.levels):
            print(f"=== Stage {idx + 1}: {level} ===")
            for name in level:
                template = plan.templates[name]
                tags = []
                if template.needs:
                    tags.append(f"needs {', '.join(template.needs)}")
                if template.gate is not None:
                    tags.append(f"gate: {template.gate.with_groups(template.needs).describe()}")
                suffix = f"  ({'; '.join(tags)})" if tags else ""
                print(f"  {name}{suffix}")
                for inst in plan.instances[name]:
                    marker = " *" if inst.is_primary and inst.coordinate else ""
                    print(f"    - {inst.id}{marker}")

    def print_not_triggered(self, reason: str) -> None:
        print(f"NOT TRIGGERED: {reason}")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary: the state table, gates and the aggregate outcome."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for iid, state in report.states.items():
            status_display = _STATE_DISPLAY.get(state.value, state.value.upper())
            reason = report.reasons.get(iid)
            if reason and not self.debug:
                reason = reason.split("\n")[0]
            print(f"  {iid}: {status_display}" + (f" ({reason})" if reason else ""))

        if report.gates:
            print("\nGATES")
            for name, decision in report.gates.items():
                line = f"  {name}: {decision.label.upper()}"
                if decision.unmet:
                    line += f" ({decision.unmet})"
                print(line)

        if report.artifacts:
            print("\nARTIFACTS")
            for art in report.artifacts:
                producers = ", ".join(p["id"] for p in art["producers"])
                print(f"  {art['name']}: {producers}")

        print(f"\nOUTCOME: {report.outcome.value.upper()}")
        for name in report.denied:
            print(f"GATE DENIED: {name} (protected action not executed)")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
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

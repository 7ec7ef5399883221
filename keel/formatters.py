"""
Terraform-style output formatting for Keel operations.

This module provides Terraform-like formatting for plan, apply and outputs so
users get familiar output patterns. Values are always shown in canonical form:
references as ``node.output (known after apply)`` and secrets as
``(sensitive)``.
"""

from typing import Any

from rich.console import Console
from rich.text import Text

from .assembly.differ import Action, FieldChange
from .assembly.planner import Operation, Plan, PlanStep
from .errors import ApplyCancelledError, PartialApplyError
from .forge.executor import ApplyResult, StepStatus
from .resources.base import REF_MARKER, SECRET_MARKER
from .stack import Stack


class PlanFormatter:
    """
    Terraform-style formatter for Keel operations.

    Provides methods to format different types of output with Terraform-like
    symbols and structure:
    - `+` for create operations
    - `~` for update operations
    - `-` for delete operations
    - `-/+` for replacements that delete first, `+/-` for those that create first
    """

    def __init__(self, console: Console | None = None):
        """Initialize formatter with Rich console."""
        self.console = console or Console()

        # Color scheme matching Terraform output
        self.colors = {
            'create': 'green',
            'update': 'yellow',
            'replace': 'magenta',
            'delete': 'red',
            'no-op': 'dim',
            'header': 'bold blue',
            'attribute': 'cyan',
            'comment': 'dim',
        }

        # Operation symbols
        self.symbols = {
            'create': '+',
            'update': '~',
            'delete': '-',
            'no-op': ' ',
        }

    def format_plan(self, plan: Plan, stack: Stack | None = None) -> Text:
        """
        Format a plan showing what Keel will do.

        Args:
            plan: Plan to show
            stack: Declared stack; when given, attributes of new resources are listed

        Returns:
            Formatted plan output
        """
        output = Text()

        if not plan.has_changes:
            output.append("No changes. Your infrastructure matches the configuration.\n",
                          style=self.colors['header'])
            return output

        output.append("Keel will perform the following actions:\n\n", style=self.colors['header'])

        for name, steps in self._group_steps(plan):
            first = steps[0]
            if first.action == Action.NO_OP:
                continue

            action = first.action.value
            color = self.colors[action]
            symbol = self._symbol(steps)

            output.append(f"  # {self._resource_comment(steps)}\n", style=self.colors['comment'])
            output.append(f"{symbol:>3} {first.kind} \"{name}\" {{\n", style=color)

            if first.action == Action.CREATE and stack is not None and name in stack:
                for key, value in sorted(stack.get(name).canonical_properties().items()):
                    output.append(f"      + {key} = {self._format_value(value)}\n", style=color)
            else:
                for change in first.changes:
                    output.append(f"      {self._format_change(change)}\n", style=color)

            output.append("    }\n\n", style=color)

        output.append(self._format_plan_summary(plan), style=self.colors['header'])
        return output

    def format_apply(self, result: ApplyResult) -> Text:
        """Format the step results of a successful apply."""
        output = Text()

        for step_result in result.results:
            step = step_result.step
            if step_result.status == StepStatus.UNCHANGED:
                continue
            if step_result.status == StepStatus.SKIPPED:
                output.append(f"  ⋯ {step.label}: already done\n", style=self.colors['comment'])
                continue
            color = self.colors['delete'] if step.operation == Operation.DELETE else self.colors['create']
            output.append(f"  ✓ {step.label}", style=color)
            if step_result.resource_id:
                output.append(f" [id={step_result.resource_id}]", style=self.colors['comment'])
            output.append(f" ({step_result.duration:.1f}s)\n", style=self.colors['comment'])

        counts = self._count_operations(r.step for r in result.applied)
        output.append(
            f"\nApply complete! Resources: {counts['create']} added, "
            f"{counts['update']} changed, {counts['delete']} destroyed.\n",
            style=self.colors['create'],
        )
        return output

    def format_interrupted(self, error: PartialApplyError | ApplyCancelledError) -> Text:
        """Format what completed and what remains after a failed or cancelled apply."""
        output = Text()

        if isinstance(error, PartialApplyError):
            output.append(f"✗ {error.error}\n", style=self.colors['delete'])
        else:
            output.append("⚠ Apply cancelled\n", style=self.colors['update'])

        if error.completed:
            output.append("\nCompleted (recorded in state):\n", style=self.colors['header'])
            for step in error.completed:
                output.append(f"  ✓ {step.label}\n", style=self.colors['create'])

        pending = [step for step in error.pending if step.has_side_effects]
        if pending:
            output.append("\nNot applied:\n", style=self.colors['header'])
            for step in pending:
                output.append(f"  • {step.label}\n", style=self.colors['comment'])

        output.append(
            "\nRe-run apply to continue; completed steps will not be repeated.\n",
            style=self.colors['comment'],
        )
        return output

    def format_outputs(self, outputs: dict[str, Any]) -> Text:
        """Format stack outputs."""
        output = Text()
        if not outputs:
            output.append("No outputs.\n", style=self.colors['comment'])
            return output

        output.append("Outputs:\n\n", style=self.colors['header'])
        width = max(len(key) for key in outputs)
        for key, value in outputs.items():
            output.append(f"  {key:<{width}}", style=self.colors['attribute'])
            output.append(f" = {self._format_value(value)}\n")
        return output

    def _group_steps(self, plan: Plan) -> list[tuple[str, list[PlanStep]]]:
        """Group steps per resource instance, in plan order."""
        groups: dict[str, list[PlanStep]] = {}
        for step in plan.steps:
            key = f"{step.name}#{step.resource_id}" if step.retired else step.name
            groups.setdefault(key, []).append(step)
        return [(steps[0].name, steps) for steps in groups.values()]

    def _symbol(self, steps: list[PlanStep]) -> str:
        first = steps[0]
        if first.action != Action.REPLACE:
            return self.symbols[first.action.value]
        if first.operation == Operation.DELETE:
            return "-/+"
        return "+/-"

    def _resource_comment(self, steps: list[PlanStep]) -> str:
        """Format the comment line above a resource block."""
        first = steps[0]
        address = f"{first.kind}.{first.name}"
        if first.retired:
            return f"{address} ({first.resource_id}) will be destroyed: {first.reason}"

        action_text = {
            Action.CREATE: "will be created",
            Action.UPDATE: "will be updated in-place",
            Action.DELETE: "will be destroyed",
            Action.REPLACE: "must be replaced",
        }[first.action]
        comment = f"{address} {action_text}"
        if first.reason:
            comment += f" ({first.reason})"
        return comment

    def _format_change(self, change: FieldChange) -> str:
        if change.old is None:
            line = f"+ {change.field} = {self._format_value(change.new)}"
        elif change.new is None:
            line = f"- {change.field} = {self._format_value(change.old)}"
        elif change.propagated:
            line = f"~ {change.field} = {self._format_value(change.new)} (new value after apply)"
        else:
            line = (
                f"~ {change.field} = {self._format_value(change.old)} "
                f"-> {self._format_value(change.new)}"
            )
        if change.immutable:
            line += "  # forces replacement"
        return line

    def _format_value(self, value: Any) -> str:
        """Format a canonical property value for display."""
        if isinstance(value, dict):
            if set(value) == {REF_MARKER}:
                return f"{value[REF_MARKER]} (known after apply)"
            if set(value) == {SECRET_MARKER}:
                return "(sensitive)"
            items = ", ".join(f"{k} = {self._format_value(v)}" for k, v in value.items())
            return f"{{{items}}}"
        if isinstance(value, list):
            return f"[{', '.join(self._format_value(v) for v in value)}]"
        if isinstance(value, str):
            return f'"{value}"'
        if isinstance(value, bool):
            return str(value).lower()
        if value is None:
            return "null"
        return str(value)

    def _count_operations(self, steps) -> dict[str, int]:
        counts = {'create': 0, 'update': 0, 'delete': 0}
        for step in steps:
            if step.operation != Operation.NONE:
                counts[step.operation.value] += 1
        return counts

    def _format_plan_summary(self, plan: Plan) -> str:
        """Format the plan summary line."""
        counts = self._count_operations(plan.steps)
        return (
            f"Plan: {counts['create']} to add, {counts['update']} to change, "
            f"{counts['delete']} to destroy.\n"
        )

"""Verification gates run against a plan once its tasks are done."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pm_orchestrator.dispatch.models import GateCheck, GateResult, PlanTaskStatus, PlanView

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARS = 500


class GateChecker(Protocol):
    def check(self, plan: PlanView) -> GateResult:
        """Return the gate verdict for ``plan``."""


class TasksCompleteGate:
    """Passes when every blocking plan task is COMPLETE."""

    def check(self, plan: PlanView) -> GateResult:
        checks = []
        for item in plan.tasks:
            passed = item.status == PlanTaskStatus.COMPLETE or (
                not item.blocking and item.status != PlanTaskStatus.RUNNING
            )
            checks.append(
                GateCheck(
                    name=f"task:{item.plan_task_id}",
                    passed=passed,
                    message=f"{item.description[:80]} ({item.status.value})",
                ),
            )
        return GateResult(passed=all(check.passed for check in checks), checks=tuple(checks))


@dataclass(slots=True)
class CommandGateChecker:
    """Runs each configured command; a zero exit code passes."""

    commands: Sequence[str]
    cwd: Path | None = None
    timeout_seconds: int = 600

    def check(self, plan: PlanView) -> GateResult:
        checks = [self._run(command) for command in self.commands]
        if not checks:
            checks.append(GateCheck(name="commands", passed=False, message="No gate commands configured"))
        result = GateResult(passed=all(check.passed for check in checks), checks=tuple(checks))
        logger.info(
            "Gate for plan %s: %s (%d check(s))",
            plan.plan_id,
            "passed" if result.passed else "failed",
            len(checks),
        )
        return result

    def _run(self, command: str) -> GateCheck:
        try:
            completed = subprocess.run(  # noqa: S603
                shlex.split(command),
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            return GateCheck(name=command, passed=False, message=f"Command not found: {error.filename}")
        except subprocess.TimeoutExpired:
            return GateCheck(
                name=command,
                passed=False,
                message=f"Timed out after {self.timeout_seconds}s",
            )
        tail = (completed.stdout + completed.stderr).strip()[-_OUTPUT_TAIL_CHARS:]
        if completed.returncode == 0:
            return GateCheck(name=command, passed=True, message=tail or "ok")
        return GateCheck(
            name=command,
            passed=False,
            message=f"exit code {completed.returncode}: {tail}",
        )

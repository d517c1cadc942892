"""Subprocess-based executor for CLI agents."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO, Any

from pm_orchestrator.executor.base import (
    ExecutionCancelledError,
    ExecutorError,
    ExecutorRequest,
    ExecutorResult,
    ExecutorStatus,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 2_000


class CommandExecutor:
    """Run a shell command template per attempt.

    The template must include ``{prompt}`` or ``{prompt_file}`` and may use
    ``{model}``. Stdout is either a JSON result object or plain text,
    which counts as a COMPLETE result.
    """

    def __init__(
        self,
        command_template: str,
        *,
        poll_interval_seconds: float = 0.1,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.poll_interval_seconds = poll_interval_seconds
        self._extra_env = dict(env or {})

    def execute(self, request: ExecutorRequest) -> ExecutorResult:
        with tempfile.TemporaryDirectory(prefix="pm-orchestrator-") as workdir:
            root = Path(workdir)
            prompt_file = root / "task_prompt.txt"
            prompt_file.write_text(request.prompt, "utf-8")
            stdout_path = root / "stdout.txt"
            stderr_path = root / "stderr.txt"
            run_args = build_run_args(
                command_template=self.command_template,
                model=request.model,
                prompt=request.prompt,
                prompt_file=prompt_file,
            )

            env = os.environ.copy()
            env.update(self._extra_env)
            env["PM_ORCHESTRATOR_MODEL"] = request.model
            env["PM_ORCHESTRATOR_PROVIDER"] = request.provider
            env["PM_ORCHESTRATOR_TASK_ID"] = request.task_id

            try:
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    exit_code = _run_subprocess(
                        run_args=run_args,
                        env=env,
                        timeout_seconds=request.timeout_seconds,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                        cancel_requested=request.cancel_requested,
                        poll_interval_seconds=self.poll_interval_seconds,
                    )
            except FileNotFoundError as error:
                raise ExecutorError(
                    f"Executor command not found: {run_args[0]}",
                    kind="command_not_found",
                ) from error
            except OSError as error:
                raise ExecutorError(
                    f"Executor failed to start: {error}",
                    kind="temporary failure",
                ) from error

            stdout = stdout_path.read_text("utf-8", errors="replace")
            stderr = stderr_path.read_text("utf-8", errors="replace")

        if exit_code != 0:
            detail = stderr.strip()[-_STDERR_TAIL_CHARS:] or f"exit code {exit_code}"
            raise ExecutorError(f"Executor exited with code {exit_code}: {detail}", kind="exit_code")
        return parse_executor_output(stdout, prompt=request.prompt)


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutorError("Executor command template is empty.", kind="configuration")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ExecutorError(
            "Executor command template must include {prompt} or {prompt_file}.",
            kind="configuration",
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except KeyError as error:
        raise ExecutorError(
            f"Unsupported command template placeholder: {error}",
            kind="configuration",
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorError("Executor command template rendered empty command.", kind="configuration")
    return argv


def parse_executor_output(stdout: str, *, prompt: str = "") -> ExecutorResult:
    """Interpret executor stdout as a JSON result object or plain text."""

    text = stdout.strip()
    payload: Any = None
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = None
    if not isinstance(payload, dict):
        return ExecutorResult(
            status=ExecutorStatus.COMPLETE,
            output=text,
            tokens_in=estimate_tokens(prompt),
            tokens_out=estimate_tokens(text),
        )

    raw_status = str(payload.get("status") or ExecutorStatus.COMPLETE.value).upper()
    try:
        status = ExecutorStatus(raw_status)
    except ValueError as error:
        raise ExecutorError(f"Unknown executor status: {raw_status}", kind="protocol") from error
    output = str(payload.get("output") or "")
    options = payload.get("options") or ()
    if isinstance(options, str):
        options = [options]
    try:
        tokens_in = int(payload.get("tokens_in") or estimate_tokens(prompt))
        tokens_out = int(payload.get("tokens_out") or estimate_tokens(output))
    except (TypeError, ValueError) as error:
        raise ExecutorError(f"Invalid executor token counts: {error}", kind="protocol") from error
    return ExecutorResult(
        status=status,
        output=output,
        clarification_question=payload.get("clarification_question") or None,
        options=tuple(str(item) for item in options),
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        error=payload.get("error") or None,
    )


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    cancel_requested: Callable[[], bool] | None,
    poll_interval_seconds: float,
) -> int:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode
        if time.monotonic() - start_monotonic >= timeout_seconds:
            logger.warning("Executor timed out after %ss; terminating pid=%s", timeout_seconds, process.pid)
            _terminate_process(process)
            raise ExecutorError(f"Executor timed out after {timeout_seconds}s", kind="timeout")
        if cancel_requested is not None and cancel_requested():
            logger.info("Executor cancelled; terminating pid=%s", process.pid)
            _terminate_process(process)
            raise ExecutionCancelledError()
        time.sleep(poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

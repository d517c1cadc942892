from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest
from conftest import ECHO_AGENT_COMMAND_TEMPLATE

from pm_orchestrator.executor import echo_agent
from pm_orchestrator.executor.base import (
    ExecutionCancelledError,
    ExecutorError,
    ExecutorRequest,
    ExecutorResult,
    ExecutorStatus,
)
from pm_orchestrator.executor.command_executor import (
    CommandExecutor,
    build_run_args,
    parse_executor_output,
)
from pm_orchestrator.executor.scripted import ScriptedExecutor
from pm_orchestrator.queue.models import SettingsSnapshot

pytestmark = [
    allure.epic("Executor"),
    allure.feature("Executor Backends"),
]

_SLEEPER_TEMPLATE = f'{sys.executable} -c "import time; time.sleep(30)" {{prompt_file}}'


def _request(prompt: str = "List the modules", **overrides) -> ExecutorRequest:
    values = {
        "prompt": prompt,
        "settings": SettingsSnapshot(),
        "model": "gpt-4o",
        "provider": "openai",
        "task_id": "task-1",
    }
    values.update(overrides)
    return ExecutorRequest(**values)


def test_command_executor_runs_echo_agent() -> None:
    result = CommandExecutor(ECHO_AGENT_COMMAND_TEMPLATE).execute(_request("List the modules"))

    assert result.status == ExecutorStatus.COMPLETE
    assert result.output == "List the modules"
    assert result.tokens_in == 3
    assert result.tokens_out == 3


def test_command_executor_reports_nonzero_exit() -> None:
    executor = CommandExecutor(f"{ECHO_AGENT_COMMAND_TEMPLATE} --fail 'rate limit exceeded'")

    with pytest.raises(ExecutorError) as excinfo:
        executor.execute(_request())

    assert excinfo.value.kind == "exit_code"
    assert "rate limit exceeded" in str(excinfo.value)


def test_command_executor_times_out() -> None:
    executor = CommandExecutor(_SLEEPER_TEMPLATE, poll_interval_seconds=0.05)

    with pytest.raises(ExecutorError) as excinfo:
        executor.execute(_request(timeout_seconds=1))

    assert excinfo.value.kind == "timeout"


def test_command_executor_honors_cancellation() -> None:
    executor = CommandExecutor(_SLEEPER_TEMPLATE, poll_interval_seconds=0.05)

    with pytest.raises(ExecutionCancelledError):
        executor.execute(_request(cancel_requested=lambda: True))


def test_command_executor_replaces_undecodable_output() -> None:
    script = "import sys; sys.stdout.buffer.write(b'\\xff\\xfe ok')"
    template = f'{sys.executable} -c "{script}" {{prompt_file}}'

    result = CommandExecutor(template).execute(_request())

    assert result.status == ExecutorStatus.COMPLETE
    assert result.output == "\ufffd\ufffd ok"


def test_missing_command_is_a_configuration_error() -> None:
    executor = CommandExecutor("definitely-not-a-real-binary-pm {prompt}")

    with pytest.raises(ExecutorError) as excinfo:
        executor.execute(_request())

    assert excinfo.value.kind == "command_not_found"


def test_build_run_args_quotes_placeholders(tmp_path: Path) -> None:
    args = build_run_args(
        command_template="agent --model {model} --prompt {prompt}",
        model="gpt-4o",
        prompt="say 'hi' && exit",
        prompt_file=tmp_path / "prompt.txt",
    )

    assert args == ["agent", "--model", "gpt-4o", "--prompt", "say 'hi' && exit"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --model {model}", "must include {prompt} or {prompt_file}"),
        ("agent {prompt} {unknown}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(tmp_path: Path, template: str, message: str) -> None:
    with pytest.raises(ExecutorError, match=message) as excinfo:
        build_run_args(
            command_template=template,
            model="gpt-4o",
            prompt="x",
            prompt_file=tmp_path / "prompt.txt",
        )

    assert excinfo.value.kind == "configuration"


def test_parse_json_output() -> None:
    result = parse_executor_output(
        '{"status": "blocked", "output": "half done", '
        '"clarification_question": "Which DB?", "options": ["sqlite", "postgres"], "tokens_in": 7}',
    )

    assert result.status == ExecutorStatus.BLOCKED
    assert result.output == "half done"
    assert result.clarification_question == "Which DB?"
    assert result.options == ("sqlite", "postgres")
    assert result.tokens_in == 7
    assert result.tokens_out == 2


def test_parse_plain_text_output_is_complete() -> None:
    result = parse_executor_output("  plain answer\n", prompt="question text here")

    assert result.status == ExecutorStatus.COMPLETE
    assert result.output == "plain answer"
    assert result.tokens_in == 4
    assert parse_executor_output("{not json").output == "{not json"


def test_parse_rejects_unknown_status() -> None:
    with pytest.raises(ExecutorError, match="Unknown executor status: DONE") as excinfo:
        parse_executor_output('{"status": "done"}')

    assert excinfo.value.kind == "protocol"


def test_parse_wraps_single_option_string() -> None:
    result = parse_executor_output('{"status": "blocked", "clarification_question": "Go?", "options": "yes"}')

    assert result.options == ("yes",)


def test_parse_rejects_malformed_token_counts() -> None:
    with pytest.raises(ExecutorError, match="Invalid executor token counts") as excinfo:
        parse_executor_output('{"status": "complete", "output": "done", "tokens_in": "lots"}')

    assert excinfo.value.kind == "protocol"


def test_echo_agent_writes_json(capsys) -> None:
    assert echo_agent.main(["--prompt", "hello there", "--status", "INCOMPLETE", "--question", "More?"]) == 0

    result = parse_executor_output(capsys.readouterr().out)

    assert result.status == ExecutorStatus.INCOMPLETE
    assert result.output == "hello there"
    assert result.clarification_question == "More?"


def test_scripted_executor_replays_steps_and_records_requests() -> None:
    executor = ScriptedExecutor(
        [
            ExecutorResult(status=ExecutorStatus.COMPLETE, output="first"),
            ExecutorError("boom", kind="exit_code"),
            lambda request: ExecutorResult(status=ExecutorStatus.COMPLETE, output=request.prompt.upper()),
        ],
    )

    assert executor.execute(_request()).output == "first"
    with pytest.raises(ExecutorError, match="boom"):
        executor.execute(_request())
    assert executor.execute(_request("shout")).output == "SHOUT"
    assert executor.remaining == 0
    assert [request.prompt for request in executor.requests] == ["List the modules", "List the modules", "shout"]

    with pytest.raises(ExecutorError) as excinfo:
        executor.execute(_request())
    assert excinfo.value.kind == "script_exhausted"


def test_scripted_executor_default_result() -> None:
    default = ExecutorResult(status=ExecutorStatus.COMPLETE, output="fallback")
    executor = ScriptedExecutor(default=default)

    assert executor.execute(_request()) is default

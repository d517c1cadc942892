from __future__ import annotations

import allure
import pytest

from pm_orchestrator.clarification.engine import ClarificationEngine
from pm_orchestrator.clarification.finalization import (
    FINALIZATION_TABLE,
    FinalizationOutcome,
    finalize,
)
from pm_orchestrator.clarification.history import ClarificationHistory, normalize_question
from pm_orchestrator.clarification.models import ClarificationType, detect_clarification_type
from pm_orchestrator.clarification.prompts import build_resumed_prompt, generate_fallback_question
from pm_orchestrator.clarification.question_detector import detect_questions, extract_questions
from pm_orchestrator.clarification.resolver import SemanticResolver, match_option
from pm_orchestrator.executor.base import ExecutorResult, ExecutorStatus
from pm_orchestrator.queue.models import Clarification, TaskType

pytestmark = [
    allure.epic("Clarification"),
    allure.feature("Question Handling"),
]


def test_question_detection_scores_phrases_and_marks() -> None:
    detection = detect_questions("I created the file. Would you like me to add tests?")

    assert detection.has_questions is True
    assert detection.confidence == 1.0
    assert "would you like" in detection.matched_patterns

    assert detect_questions("Done. All tests pass.").has_questions is False
    assert detect_questions("Is this fine?").has_questions is False
    assert detect_questions("どちらにしますか").has_questions is True


def test_questions_inside_code_blocks_are_ignored() -> None:
    output = "```\nwhat do you think?\n```\nDone."

    assert detect_questions(output).has_questions is False
    assert extract_questions(output) == []


def test_extract_questions_in_order() -> None:
    assert extract_questions("Setup done. Which file should I edit? Also, proceed?") == [
        "Which file should I edit?",
        "Also, proceed?",
    ]


@pytest.mark.parametrize(
    ("question", "expected"),
    [
        ("Which file should I modify?", ClarificationType.TARGET_FILE_AMBIGUOUS),
        ("How many endpoints are in scope?", ClarificationType.SCOPE_UNCLEAR),
        ("Should I use approach A?", ClarificationType.ACTION_AMBIGUOUS),
        ("Please provide the API base URL.", ClarificationType.MISSING_CONTEXT),
        ("Need input: clarification_required:scope_unclear", ClarificationType.SCOPE_UNCLEAR),
        ("Hmm.", ClarificationType.UNKNOWN),
    ],
)
def test_clarification_type_detection(question: str, expected: ClarificationType) -> None:
    assert detect_clarification_type(question) == expected


@pytest.mark.parametrize(
    ("question", "answer", "rule"),
    [
        ("Should I proceed with the migration?", "yes", "confirmation"),
        ("Overwrite config? [y/N]", "no", "declared_default"),
        ("Which port should I use (default: 8080)?", "8080", "declared_default"),
        ("Where should I create the config file, in the project root?", ".", "project_root"),
        ("Which file should I edit: src/app/main.py?", "src/app/main.py", "file_path"),
    ],
)
def test_resolver_rules(question: str, answer: str, rule: str) -> None:
    resolution = SemanticResolver().resolve(question)

    assert resolution is not None
    assert (resolution.answer, resolution.rule) == (answer, rule)


@pytest.mark.parametrize(
    "question",
    [
        "Should I delete the old records?",
        "Remove the build directory? [Y/n]",
        "What color should the button be?",
    ],
)
def test_resolver_escalates_destructive_or_open_questions(question: str) -> None:
    assert SemanticResolver().resolve(question) is None


def test_resolver_canonicalizes_against_options() -> None:
    resolver = SemanticResolver()

    confirmation = resolver.resolve("Do you want to continue?", options=("Yes", "No"))
    recommended = resolver.resolve(
        "Which database do you prefer?",
        options=("SQLite (recommended)", "Postgres"),
    )

    assert confirmation is not None
    assert (confirmation.answer, confirmation.rule) == ("Yes", "confirmation")
    assert recommended is not None
    assert (recommended.answer, recommended.rule) == ("SQLite (recommended)", "option_hint")


def test_match_option_exact_index_and_unique_prefix() -> None:
    options = ("alpha", "beta", "alphabet")

    assert match_option("BETA", options) == "beta"
    assert match_option("2", options) == "beta"
    assert match_option("9", options) is None
    assert match_option("alph", options) is None
    assert match_option("alphab", options) == "alphabet"
    assert match_option("", options) is None


def test_history_normalizes_questions() -> None:
    history = ClarificationHistory()

    history.record("  Which   DB? ", "sqlite")
    entry = history.record("which db", "postgres")

    assert normalize_question("  Which   DB? ") == "which db"
    assert history.lookup("WHICH DB?") == "postgres"
    assert entry.times_answered == 2
    assert len(history) == 1
    assert history.seed(Clarification(question="Q?", reason="r")) is False
    assert history.seed(Clarification(question="Port?", reason="r", answer="8080")) is True
    assert history.lookup("port") == "8080"


def test_engine_resolves_then_remembers_then_escalates() -> None:
    engine = ClarificationEngine()

    resolved = engine.handle("Should I proceed?")
    assert resolved.resolved is True
    assert resolved.source == "resolver:confirmation"

    question = "What naming convention do you prefer for the tables?"
    escalated = engine.handle(question, partial_output="Drafted models", options=("snake", "camel"))
    assert escalated.resolved is False
    assert escalated.clarification is not None
    assert escalated.clarification.partial_output == "Drafted models"
    assert escalated.clarification.options == ("snake", "camel")

    engine.record_answer(question, "snake_case")
    remembered = engine.handle(question)
    assert (remembered.resolved, remembered.answer, remembered.source) == (True, "snake_case", "history")


def test_finalization_table_is_exhaustive() -> None:
    assert len(FINALIZATION_TABLE) == len(ExecutorStatus) * len(TaskType)


def test_read_task_with_trailing_question_needs_clarification() -> None:
    result = ExecutorResult(
        status=ExecutorStatus.COMPLETE,
        output="Found two configs. Which one do you want me to summarize?",
    )

    decision = finalize(result, TaskType.READ_INFO, "Summarize the config")

    assert decision.outcome == FinalizationOutcome.CLARIFY
    assert decision.reason == "detected_question"
    assert decision.question == "Which one do you want me to summarize?"
    assert decision.output == result.output


def test_implementation_complete_ignores_rhetorical_questions() -> None:
    result = ExecutorResult(status=ExecutorStatus.COMPLETE, output="Done. Would you like more tests?")

    decision = finalize(result, TaskType.IMPLEMENTATION, "Add login")

    assert decision.outcome == FinalizationOutcome.COMPLETE


@pytest.mark.parametrize("status", [ExecutorStatus.INCOMPLETE, ExecutorStatus.NO_EVIDENCE])
def test_unfinished_implementation_is_an_error(status: ExecutorStatus) -> None:
    decision = finalize(ExecutorResult(status=status, output="partial"), TaskType.IMPLEMENTATION, "Add login")

    assert decision.outcome == FinalizationOutcome.ERROR
    assert decision.error_message == f"Task ended with status: {status.value}"


def test_blocked_implementation_with_question_clarifies() -> None:
    result = ExecutorResult(
        status=ExecutorStatus.BLOCKED,
        clarification_question="Which auth provider?",
        options=("oauth", "saml"),
    )

    decision = finalize(result, TaskType.IMPLEMENTATION, "Add login")

    assert decision.outcome == FinalizationOutcome.CLARIFY
    assert decision.question == "Which auth provider?"
    assert decision.options == ("oauth", "saml")


def test_read_task_output_is_the_deliverable() -> None:
    decision = finalize(
        ExecutorResult(status=ExecutorStatus.INCOMPLETE, output="Three modules found."),
        TaskType.READ_INFO,
        "List modules",
    )

    assert decision.outcome == FinalizationOutcome.COMPLETE
    assert decision.reason == "output_is_deliverable:INCOMPLETE"


def test_empty_report_asks_fallback_question() -> None:
    decision = finalize(ExecutorResult(status=ExecutorStatus.NO_EVIDENCE), TaskType.REPORT, "Summarize the sprint")

    assert decision.outcome == FinalizationOutcome.CLARIFY
    assert decision.reason == "missing_output"
    assert decision.question == generate_fallback_question("Summarize the sprint")
    assert "summary" in (decision.question or "")


def test_executor_error_is_a_failure() -> None:
    decision = finalize(
        ExecutorResult(status=ExecutorStatus.ERROR, error="rate limit exceeded"),
        TaskType.REPORT,
        "Report",
    )

    assert decision.outcome == FinalizationOutcome.FAILURE
    assert decision.error_message == "rate limit exceeded"


def test_resumed_prompt_carries_answer_and_partial_output() -> None:
    clarification = Clarification(
        question="Which DB?",
        reason="executor_question",
        partial_output="Drafted models",
        answer="sqlite",
    )

    prompt = build_resumed_prompt("Add persistence", clarification)

    assert prompt.startswith("Previously asked clarification:\nQ: Which DB?\nA: sqlite\n")
    assert "Drafted models" in prompt
    assert prompt.endswith("Add persistence")
    assert build_resumed_prompt("Add persistence", None) == "Add persistence"

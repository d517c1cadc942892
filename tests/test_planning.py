from __future__ import annotations

import allure

from pm_orchestrator.planning.dependencies import analyze_dependencies
from pm_orchestrator.planning.planner import ExecutionStrategy, PlannerConfig, TaskPlanner
from pm_orchestrator.planning.size_estimator import SizeCategory, category_for_score, estimate_size
from pm_orchestrator.planning.subtasks import Subtask, extract_subtasks

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Size Estimation & Chunking"),
]

_NUMBERED_PROMPT = (
    "Implement the full authentication API with database migrations:\n"
    "1. Create the database schema\n"
    "2. Build the REST endpoints\n"
    "3. Write tests for the endpoints"
)


def test_small_prompt_is_single_unit() -> None:
    plan = TaskPlanner().plan("Fix typo in README")

    assert plan.size.score == 1
    assert plan.size.category == SizeCategory.XS
    assert plan.size.token_estimate == 12
    assert plan.is_chunked is False
    assert plan.chunking_decision.reason == "below chunking thresholds"
    assert plan.execution_strategy == ExecutionStrategy.SINGLE
    assert [unit.subtask_id for unit in plan.units()] == ["main"]
    assert plan.units()[0].description == "Fix typo in README"


def test_score_is_clamped_and_reasons_are_collected() -> None:
    estimate = estimate_size(_NUMBERED_PROMPT)

    assert estimate.score == 10
    assert estimate.category == SizeCategory.XL
    assert "full_implementation (+3)" in estimate.reasons
    assert "api (+2)" in estimate.reasons


def test_adding_indicators_never_lowers_score() -> None:
    base = estimate_size("Add a settings page")
    richer = estimate_size("Add a settings page with database storage and tests")

    assert richer.score >= base.score


def test_category_boundaries() -> None:
    assert [category_for_score(score) for score in (1, 2, 3, 4, 5, 6, 7, 8, 9, 10)] == [
        SizeCategory.XS,
        SizeCategory.XS,
        SizeCategory.S,
        SizeCategory.S,
        SizeCategory.M,
        SizeCategory.M,
        SizeCategory.L,
        SizeCategory.L,
        SizeCategory.XL,
        SizeCategory.XL,
    ]


def test_file_count_hints_scale_tokens() -> None:
    assert estimate_size("Rename a variable in 3 files").file_count == 3
    assert estimate_size("Update several files").file_count == 5
    assert estimate_size("Reformat all python files").file_count == 10


def test_numbered_prompt_is_chunked_into_a_chain() -> None:
    plan = TaskPlanner().plan(_NUMBERED_PROMPT, task_id="task-1")

    assert plan.is_chunked is True
    assert plan.chunking_decision.reason == "score 10 >= 6; 3 subtasks from numbered"
    assert [unit.description for unit in plan.units()] == [
        "Create the database schema",
        "Build the REST endpoints",
        "Write tests for the endpoints",
    ]
    assert plan.dependencies_of("subtask-3") == ["subtask-2"]
    assert [[unit.subtask_id for unit in wave] for wave in plan.waves()] == [
        ["subtask-1"],
        ["subtask-2"],
        ["subtask-3"],
    ]
    assert plan.execution_strategy == ExecutionStrategy.SEQUENTIAL
    assert plan.estimated_duration_ms == 63_000
    assert plan.to_summary()["subtask_count"] == 3


def test_bullets_run_in_parallel_and_optional_items_do_not_block() -> None:
    planner = TaskPlanner(PlannerConfig(chunk_complexity_threshold=3))

    plan = planner.plan(
        "Refactor the API layer across several files:\n"
        "- Update the user endpoint\n"
        "- Update the order endpoint\n"
        "- Add caching if possible",
    )

    assert plan.is_chunked is True
    assert plan.execution_strategy == ExecutionStrategy.PARALLEL
    assert len(plan.waves()) == 1
    assert [unit.blocking for unit in plan.units()] == [True, True, False]


def test_sequence_steps_keep_prompt_order() -> None:
    _, subtasks = extract_subtasks("Next add the tests, then write the API; after that update the changelog.")

    assert [item.description for item in subtasks] == [
        "add the tests",
        "write the API",
        "update the changelog",
    ]
    assert subtasks[1].dependencies == ("subtask-1",)


def test_sequence_words_are_ordered() -> None:
    source, subtasks = extract_subtasks("First set up the database, then write the API, finally add tests.")

    assert source == "sequence"
    assert [item.description for item in subtasks] == [
        "set up the database",
        "write the API",
        "add tests",
    ]
    assert subtasks[2].dependencies == ("subtask-2",)


def test_too_few_subtasks_disables_chunking() -> None:
    plan = TaskPlanner().plan(
        "Implement the complete authentication and security layer for the database API",
    )

    assert plan.size.score >= 6
    assert plan.is_chunked is False
    assert "only 0 subtask(s) found (minimum 2)" in plan.chunking_decision.reason
    assert [unit.subtask_id for unit in plan.units()] == ["main"]


def test_max_subtasks_truncates() -> None:
    planner = TaskPlanner(PlannerConfig(chunk_complexity_threshold=1, max_subtasks=2))
    plan = planner.plan("1. one step\n2. two step\n3. three step")

    assert len(plan.subtasks) == 2


def test_soft_dependency_inferred_from_keyword_and_shared_words() -> None:
    graph = analyze_dependencies(
        [
            Subtask("s1", 1, "Design the payment schema"),
            Subtask("s2", 2, "Write docs"),
            Subtask("s3", 3, "Implement handlers using the payment schema"),
        ],
    )

    assert [(edge.source, edge.target, edge.kind) for edge in graph.edges] == [("s1", "s3", "soft")]
    assert graph.waves == [["s1", "s2"], ["s3"]]
    assert graph.has_cycle is False


def test_auto_chunk_disabled_and_invalid_config_fallback() -> None:
    plan = TaskPlanner(PlannerConfig(auto_chunk=False)).plan(_NUMBERED_PROMPT)
    assert plan.is_chunked is False
    assert plan.chunking_decision.reason == "auto_chunk disabled"

    planner = TaskPlanner(PlannerConfig(min_subtasks=5, max_subtasks=2))
    assert planner.config == PlannerConfig()

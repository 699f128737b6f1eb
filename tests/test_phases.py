"""Tests for the expert-backed workflow phases and completion."""

from __future__ import annotations

import asyncio

import pytest

from conftest import DEFAULT_REPLY, FAILING_REVIEW, PASSING_REVIEW
from llm_router.errors import ExpertCallError
from llm_router.workflow import (
    ComplexityLevel,
    IntentType,
    PhaseHistoryEntry,
    PhaseId,
    WorkflowContext,
)
from llm_router.workflow.completion import context_to_result, determine_success, phases_executed
from llm_router.workflow.phases import (
    QueryType,
    RecoveryAction,
    analyze_failure,
    exploration_phase,
    extract_keywords,
    generate_exploration_queries,
    is_critical_failure,
    next_phase_after_assessment,
    parse_relevant_files,
    parse_verification,
    recovery_phase,
    select_expert,
    simplify_request,
    verification_phase,
)


def _run(coro):
    return asyncio.run(coro)


def _ctx(request="implement a cache", **kwargs) -> WorkflowContext:
    ctx = WorkflowContext(request, max_attempts=3, start_ms=0)
    for key, value in kwargs.items():
        setattr(ctx, key, value)
    return ctx


# =============================================================================
# Assessment helpers
# =============================================================================


class TestAssessmentHelpers:
    def test_extract_keywords(self):
        keywords = extract_keywords("Please add a retry to the HttpClient in fetch_data")
        assert keywords[:3] == ["retry", "httpclient", "fetch_data"]
        assert "the" not in keywords
        assert "add" not in keywords

    def test_keywords_are_capped(self):
        request = " ".join(f"word{i}" for i in range(30))
        assert len(extract_keywords(request)) == 10

    def test_parse_relevant_files(self):
        response = "See `src/app.py` and tests/test_app.py: line 3\nAlso docs/README.md"
        assert set(parse_relevant_files(response)) == {
            "src/app.py", "tests/test_app.py", "docs/README.md",
        }

    def test_parse_relevant_files_dedupes_and_caps(self):
        response = "\n".join(f"- pkg/mod{i}.py" for i in range(30)) + "\n- pkg/mod0.py"
        files = parse_relevant_files(response)
        assert len(files) == 20
        assert len(set(files)) == 20

    def test_parse_relevant_files_normalizes_separators(self):
        assert parse_relevant_files("edit src\\win\\path.ts now") == ["src/win/path.ts"]

    @pytest.mark.parametrize(
        "intent,files,expected",
        [
            (IntentType.CONCEPTUAL, [], PhaseId.COMPLETION),
            (IntentType.CONCEPTUAL, ["a.py"], PhaseId.IMPLEMENTATION),
            (IntentType.RESEARCH, [], PhaseId.EXPLORATION),
            (IntentType.IMPLEMENTATION, [f"f{i}.py" for i in range(6)], PhaseId.EXPLORATION),
            (IntentType.IMPLEMENTATION, ["a.py"], PhaseId.IMPLEMENTATION),
        ],
    )
    def test_next_phase_after_assessment(self, intent, files, expected):
        assert next_phase_after_assessment(intent, files) is expected


# =============================================================================
# Exploration
# =============================================================================


class TestExploration:
    def test_queries_sorted_by_priority(self):
        ctx = _ctx(intent=IntentType.DEBUGGING, relevant_files=["a.py", "b.py"])
        queries = generate_exploration_queries(ctx)
        assert [q.type for q in queries] == [
            QueryType.FILE_CONTENT,
            QueryType.FILE_CONTENT,
            QueryType.PATTERN_SEARCH,
            QueryType.USAGE_SEARCH,
        ]
        assert "a.py" in queries[0].query

    def test_refactoring_traces_dependencies(self):
        queries = generate_exploration_queries(_ctx(intent=IntentType.REFACTORING))
        assert [q.type for q in queries] == [QueryType.DEPENDENCY_TRACE, QueryType.USAGE_SEARCH]

    def test_partial_failure_still_succeeds(self, session, backend):
        def explorer(prompt):
            if prompt.startswith("Find all usages"):
                raise ExpertCallError("HTTP 400 Bad Request from explorer")
            return DEFAULT_REPLY

        backend.script["explorer"] = explorer
        ctx = _ctx(intent=IntentType.RESEARCH, relevant_files=["a.py"])

        result = _run(exploration_phase(ctx, session))

        assert result.success
        assert result.next_phase is PhaseId.IMPLEMENTATION
        assert result.metadata["results_gathered"] == 1
        assert result.metadata["failures"] == [
            {"type": "usage_search", "error": "HTTP 400 Bad Request from explorer"},
        ]
        assert ctx.exploration_results == [DEFAULT_REPLY]
        assert "[Query failed: HTTP 400" in result.output

    def test_all_queries_failing(self, session, backend):
        backend.script["explorer"] = ExpertCallError("HTTP 400 Bad Request")
        ctx = _ctx(intent=IntentType.RESEARCH)

        result = _run(exploration_phase(ctx, session))
        assert not result.success
        assert result.next_phase is PhaseId.IMPLEMENTATION
        assert ctx.exploration_results == []

    def test_sequential_mode(self, session, backend):
        ctx = _ctx(intent=IntentType.DEBUGGING, relevant_files=["a.py"])
        ctx.config = ctx.config.with_overrides({"enable_parallel_exploration": False})

        result = _run(exploration_phase(ctx, session))
        assert result.metadata["queries_executed"] == 3
        assert backend.called() == ["explorer"] * 3


# =============================================================================
# Implementation helpers
# =============================================================================


class TestImplementationHelpers:
    def test_select_expert_from_matrix(self):
        assert select_expert(IntentType.IMPLEMENTATION, ComplexityLevel.TRIVIAL) == "explorer"
        assert select_expert(IntentType.DOCUMENTATION, ComplexityLevel.SIMPLE) == "writer"

    def test_select_expert_skips_excluded(self):
        assert select_expert(IntentType.IMPLEMENTATION, ComplexityLevel.TRIVIAL, ("explorer",)) == "writer"

    def test_select_expert_default_when_exhausted(self):
        assert select_expert(IntentType.CONCEPTUAL, ComplexityLevel.TRIVIAL, ("explorer",)) == "strategist"

    def test_critical_failure(self):
        assert is_critical_failure("too short")
        assert is_critical_failure("Sorry, a rate limit stopped me. " * 3)
        assert not is_critical_failure(DEFAULT_REPLY)


# =============================================================================
# Verification
# =============================================================================


class TestParseVerification:
    def test_pass(self):
        verdict = parse_verification(PASSING_REVIEW)
        assert verdict.passed
        assert verdict.issues == []
        assert verdict.confidence == "HIGH"

    def test_fail(self):
        verdict = parse_verification(FAILING_REVIEW)
        assert not verdict.passed
        assert verdict.issues == ["Missing edge case"]
        assert verdict.confidence == "MEDIUM"

    def test_pass_with_issues_is_fail(self):
        verdict = parse_verification(
            "VERIFICATION_RESULT: PASS\nISSUES_FOUND:\n- off by one\nCONFIDENCE: HIGH"
        )
        assert not verdict.passed
        assert verdict.issues == ["off by one"]

    def test_unstructured_reply(self):
        assert parse_verification("Looks great to me").passed
        assert parse_verification("Looks great to me").confidence == "LOW"
        assert not parse_verification("There is a problem here").passed


class TestVerificationPhase:
    def test_skips_without_output(self, session, backend):
        result = _run(verification_phase(_ctx(), session))
        assert result.success
        assert result.next_phase is PhaseId.COMPLETION
        assert backend.calls == []

    def test_pass_goes_to_completion(self, session):
        ctx = _ctx(intent=IntentType.IMPLEMENTATION, last_implementation_output=DEFAULT_REPLY,
                   implementation_attempts=1)
        result = _run(verification_phase(ctx, session))
        assert result.success
        assert result.next_phase is PhaseId.COMPLETION
        assert ctx.verification_attempts == 1

    def test_low_confidence_pass_goes_to_recovery(self, session, backend):
        backend.script["reviewer"] = "VERIFICATION_RESULT: PASS\nISSUES_FOUND: None\nCONFIDENCE: LOW"
        ctx = _ctx(last_implementation_output=DEFAULT_REPLY, implementation_attempts=1)
        result = _run(verification_phase(ctx, session))
        assert not result.success
        assert result.next_phase is PhaseId.RECOVERY
        assert ctx.last_error == "Verification failed: low confidence"

    def test_fail_at_attempt_ceiling_escalates(self, session, backend):
        backend.script["reviewer"] = FAILING_REVIEW
        ctx = _ctx(last_implementation_output=DEFAULT_REPLY, implementation_attempts=3)
        result = _run(verification_phase(ctx, session))
        assert not result.success
        assert result.next_phase is PhaseId.COMPLETION
        assert ctx.escalation_required
        assert "Missing edge case" in ctx.escalation_report


# =============================================================================
# Recovery
# =============================================================================


class TestAnalyzeFailure:
    @pytest.mark.parametrize(
        "error,expert,action,new_expert",
        [
            ("429 too many requests", "strategist", RecoveryAction.SWITCH_EXPERT, "researcher"),
            ("429 too many requests", "explorer", RecoveryAction.RETRY_SAME_EXPERT, None),
            ("Request timed out", "writer", RecoveryAction.SIMPLIFY_REQUEST, None),
            ("The request is ambiguous", "writer", RecoveryAction.REQUEST_CLARIFICATION, None),
            ("I cannot do that", "reviewer", RecoveryAction.SWITCH_EXPERT, "explorer"),
            ("Execution failed", "writer", RecoveryAction.RETRY_SAME_EXPERT, None),
            ("", "writer", RecoveryAction.RETRY_SAME_EXPERT, None),
        ],
    )
    def test_first_attempt_uses_error_patterns(self, session, error, expert, action, new_expert):
        ctx = _ctx(implementation_attempts=1, last_error=error, last_expert_used=expert)
        plan = analyze_failure(ctx, session)
        assert plan.action is action
        assert plan.new_expert == new_expert

    def test_second_attempt_switches_to_fallback(self, session):
        ctx = _ctx(implementation_attempts=2, last_expert_used="strategist")
        plan = analyze_failure(ctx, session)
        assert plan.action is RecoveryAction.SWITCH_EXPERT
        assert plan.new_expert == "researcher"

    def test_second_attempt_without_fallback_escalates(self, session):
        ctx = _ctx(implementation_attempts=2, last_expert_used="explorer")
        assert analyze_failure(ctx, session).action is RecoveryAction.ESCALATE_TO_USER

    def test_ceiling_escalates(self, session):
        ctx = _ctx(implementation_attempts=3, last_error="429", last_expert_used="strategist")
        assert analyze_failure(ctx, session).action is RecoveryAction.ESCALATE_TO_USER


class TestRecoveryPhase:
    def test_simplify_shortens_request(self, session):
        ctx = _ctx("Do A. Do B! Do C?", implementation_attempts=1,
                   last_error="Request timed out", last_expert_used="writer")
        result = _run(recovery_phase(ctx, session))

        assert result.next_phase is PhaseId.IMPLEMENTATION
        assert ctx.request == "Do A. Do B"
        assert ctx.original_request == "Do A. Do B! Do C?"
        assert ctx.next_expert == "writer"
        assert ctx.recovery_actions[0].startswith("simplify_request: ")

    def test_switch_sets_next_expert(self, session):
        ctx = _ctx(implementation_attempts=2, last_expert_used="strategist")
        result = _run(recovery_phase(ctx, session))
        assert result.metadata["new_expert"] == "researcher"
        assert ctx.next_expert == "researcher"

    def test_escalation_goes_to_completion(self, session):
        ctx = _ctx(implementation_attempts=3, last_error="boom")
        result = _run(recovery_phase(ctx, session))
        assert not result.success
        assert result.next_phase is PhaseId.COMPLETION
        assert ctx.escalation_required
        assert "boom" in ctx.escalation_report

    def test_simplify_request(self):
        assert simplify_request("One. Two. Three.") == "One. Two"
        assert simplify_request("...") == "..."


# =============================================================================
# Completion
# =============================================================================


def _entry(phase, success=True, start=0.0, end=10.0):
    return PhaseHistoryEntry(phase, start, end, success)


class TestCompletion:
    def test_success_after_successful_implementation(self):
        ctx = _ctx(implementation_attempts=1)
        ctx.record_phase(_entry(PhaseId.IMPLEMENTATION))
        assert determine_success(ctx)

    def test_success_on_final_attempt_is_not_success(self):
        ctx = _ctx(implementation_attempts=3)
        ctx.record_phase(_entry(PhaseId.IMPLEMENTATION))
        assert not determine_success(ctx)

    def test_escalated_is_not_success(self):
        ctx = _ctx(implementation_attempts=1)
        ctx.record_phase(_entry(PhaseId.IMPLEMENTATION))
        ctx.escalate("stop")
        assert not determine_success(ctx)

    def test_conceptual_without_implementation(self):
        ctx = _ctx(intent=IntentType.CONCEPTUAL)
        ctx.record_phase(_entry(PhaseId.ASSESSMENT))
        assert determine_success(ctx)

    def test_result_metrics(self):
        ctx = _ctx(relevant_files=["a.py"])
        ctx.record_phase(_entry(PhaseId.INTENT, True, 0, 5))
        ctx.record_phase(_entry(PhaseId.IMPLEMENTATION, False, 5, 25))
        ctx.record_phase(_entry(PhaseId.IMPLEMENTATION, True, 25, 40))

        result = context_to_result(ctx, "", True, 50)

        assert result.total_time_ms == 50
        assert result.phases_executed == [PhaseId.INTENT, PhaseId.IMPLEMENTATION]
        assert result.metadata["phase_breakdown"] == {"intent": 5, "implementation": 35}
        assert result.metadata["success_rate"] == pytest.approx(2 / 3)
        assert "## Workflow Completed" in result.output
        assert "`a.py`" in result.output
        assert phases_executed(ctx) == result.phases_executed

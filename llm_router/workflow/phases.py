"""Expert-backed workflow phases: assessment, exploration, implementation,
verification and recovery.

Handlers take ``(ctx, session)`` and return a :class:`PhaseResult`. Expert
failures are handled here and turned into a routing decision; anything that
escapes a handler is a phase error and ends the workflow.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from . import ComplexityLevel, IntentType, PhaseId, PhaseResult, WorkflowContext
from ..recovery import error_message

logger = logging.getLogger("llm-router.workflow")


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


# =============================================================================
# Assessment
# =============================================================================

ASSESSMENT_PROMPTS: dict[IntentType, str] = {
    IntentType.CONCEPTUAL: (
        "Analyze this conceptual question and identify:\n"
        "1. Key concepts that need explanation\n"
        "2. Related code patterns in the codebase (if any)\n"
        "3. Relevant documentation or comments"
    ),
    IntentType.IMPLEMENTATION: (
        "Analyze this implementation request and identify:\n"
        "1. Files that will likely need modification\n"
        "2. Existing patterns to follow\n"
        "3. Dependencies and imports needed\n"
        "4. Potential impact areas"
    ),
    IntentType.DEBUGGING: (
        "Analyze this debugging request and identify:\n"
        "1. Files where the bug might exist\n"
        "2. Error patterns and stack traces\n"
        "3. Related test files\n"
        "4. Recent changes that might have caused the issue"
    ),
    IntentType.REFACTORING: (
        "Analyze this refactoring request and identify:\n"
        "1. Files that need restructuring\n"
        "2. Current code patterns being used\n"
        "3. Dependencies that might be affected\n"
        "4. Test coverage for affected areas"
    ),
    IntentType.RESEARCH: (
        "Analyze this research request and identify:\n"
        "1. Relevant files and directories\n"
        "2. Code patterns matching the query\n"
        "3. Documentation and comments\n"
        "4. External dependencies"
    ),
    IntentType.REVIEW: (
        "Analyze this review request and identify:\n"
        "1. Files to be reviewed\n"
        "2. Security-sensitive areas\n"
        "3. Performance-critical sections\n"
        "4. Test coverage gaps"
    ),
    IntentType.DOCUMENTATION: (
        "Analyze this documentation request and identify:\n"
        "1. Code that needs documentation\n"
        "2. Existing documentation patterns\n"
        "3. API interfaces to document\n"
        "4. Usage examples to include"
    ),
}

STOP_WORDS = frozenset("""
    the a an is are was were be been being have has had do does did will
    would could should may might must shall can need dare ought used to of
    in for on with at by from as into through during before after above
    below between under again further then once here there when where why
    how all each few more most other some such no nor not only own same so
    than too very just and but if or because until while this that these
    those me my myself we our you your it please help want like make
    create add
""".split())

_CODE_IDENTIFIER = re.compile(
    r"[A-Z][a-z]+(?:[A-Z][a-z]+)*|[a-z]+(?:_[a-z]+)+|[a-z]+(?:[A-Z][a-z]+)+"
)

MAX_KEYWORDS = 10
MAX_RELEVANT_FILES = 20

_FILE_EXTENSIONS = r"py|pyi|ts|tsx|js|jsx|json|md|toml|cfg|ini|yaml|yml"
_FILE_PATTERNS = (
    re.compile(rf"(?:^|\s)([\w\-./\\]+\.(?:{_FILE_EXTENSIONS}))(?=\s|$|:)", re.MULTILINE),
    re.compile(rf"`([\w\-./\\]+\.(?:{_FILE_EXTENSIONS}))`"),
)


def extract_keywords(request: str) -> list[str]:
    """Meaningful words plus identifier-looking tokens, deduplicated, max 10."""
    words = [
        w for w in re.sub(r"[^\w\s-]", " ", request.lower()).split()
        if len(w) > 2 and w not in STOP_WORDS
    ]
    identifiers = [m.lower() for m in _CODE_IDENTIFIER.findall(request)]
    return list(dict.fromkeys(words + identifiers))[:MAX_KEYWORDS]


def parse_relevant_files(response: str) -> list[str]:
    files: list[str] = []
    for pattern in _FILE_PATTERNS:
        for match in pattern.finditer(response):
            path = match.group(1).replace("\\", "/")
            if path not in files:
                files.append(path)
    return files[:MAX_RELEVANT_FILES]


def build_assessment_query(request: str, intent: IntentType, keywords: list[str]) -> str:
    return "\n".join([
        ASSESSMENT_PROMPTS[intent],
        "",
        f"**User Request**: {request}",
        "",
        f"**Keywords to search**: {', '.join(keywords)}",
        "",
        "Please search the codebase and provide:",
        "1. A list of relevant files (paths)",
        "2. Brief context about what each file contains",
        "3. Key code patterns or structures found",
        "4. Recommendations for the next phase",
        "",
        "Format your response as:",
        "## Relevant Files",
        "- path/to/file.py: description",
        "",
        "## Context Summary",
        "Brief overview of the codebase structure relevant to this request.",
        "",
        "## Recommendations",
        "What should be done in the implementation phase.",
    ])


def next_phase_after_assessment(intent: IntentType, relevant_files: list[str]) -> PhaseId:
    if intent is IntentType.CONCEPTUAL and not relevant_files:
        return PhaseId.COMPLETION
    if intent is IntentType.RESEARCH:
        return PhaseId.EXPLORATION
    if len(relevant_files) > 5:
        return PhaseId.EXPLORATION
    return PhaseId.IMPLEMENTATION


async def assessment_phase(ctx: WorkflowContext, session) -> PhaseResult:
    """Phase 1: ask the explorer which parts of the codebase matter."""
    intent = ctx.intent or IntentType.IMPLEMENTATION
    keywords = extract_keywords(ctx.request)
    logger.debug("Assessment keywords: %s", keywords)

    try:
        reply = await session.resolve_with_fallback(
            "explorer", build_assessment_query(ctx.request, intent, keywords)
        )
    except Exception as e:
        # Assessment only gathers context; implementation can run without it.
        message = error_message(e)
        logger.warning("Assessment failed, continuing without context: %s", message)
        return PhaseResult(
            phase=PhaseId.ASSESSMENT,
            success=False,
            output=f"Assessment failed: {message}",
            next_phase=PhaseId.IMPLEMENTATION,
            metadata={"keywords": keywords, "error": message},
        )

    ctx.relevant_files = parse_relevant_files(reply.response)
    ctx.codebase_context = reply.response
    files = ctx.relevant_files

    lines = [
        "## Phase 1: Assessment Complete",
        "",
        f"**Intent**: {intent.value}",
        f"**Relevant Files Found**: {len(files)}",
        "",
    ]
    if files:
        lines.append("### Files Identified")
        lines.extend(f"- `{f}`" for f in files)
    else:
        lines.append("### No specific files identified")
    lines.extend(["", "### Explorer Analysis", _clip(reply.response, 1000)])

    return PhaseResult(
        phase=PhaseId.ASSESSMENT,
        success=True,
        output="\n".join(lines),
        next_phase=next_phase_after_assessment(intent, files),
        metadata={
            "keywords": keywords,
            "file_count": len(files),
            "explorer_used": reply.actual_expert,
        },
    )


# =============================================================================
# Exploration
# =============================================================================

class QueryType(str, Enum):
    FILE_CONTENT = "file_content"
    PATTERN_SEARCH = "pattern_search"
    DEPENDENCY_TRACE = "dependency_trace"
    USAGE_SEARCH = "usage_search"


@dataclass(frozen=True)
class ExplorationQuery:
    type: QueryType
    query: str
    priority: int


def generate_exploration_queries(ctx: WorkflowContext) -> list[ExplorationQuery]:
    """Queries for the explorer, highest priority first."""
    excerpt = ctx.request[:100]
    queries = [
        ExplorationQuery(
            QueryType.FILE_CONTENT,
            f"Read and summarize the contents of {path}. Focus on:\n"
            "- Main exports and their purposes\n"
            "- Key functions and their signatures\n"
            "- Dependencies and imports\n"
            f"- Relevant patterns for: {excerpt}",
            3,
        )
        for path in ctx.relevant_files[:5]
    ]

    if ctx.intent in (IntentType.DEBUGGING, IntentType.IMPLEMENTATION):
        queries.append(ExplorationQuery(
            QueryType.PATTERN_SEARCH,
            "Search for error handling patterns, try/except blocks, and "
            f"validation logic related to: {excerpt}",
            2,
        ))
    if ctx.intent is IntentType.REFACTORING:
        queries.append(ExplorationQuery(
            QueryType.DEPENDENCY_TRACE,
            "Trace the import dependencies for the files mentioned. Identify "
            "which modules depend on them and what the refactoring impact would be.",
            2,
        ))
    queries.append(ExplorationQuery(
        QueryType.USAGE_SEARCH,
        f"Find all usages and references related to the main components identified in: {excerpt}",
        1,
    ))
    # sorted() is stable, so equal priorities keep generation order
    return sorted(queries, key=lambda q: -q.priority)


async def run_exploration_queries(
    session,
    queries: list[ExplorationQuery],
    parallel: bool,
    max_parallel: int,
) -> list[str | BaseException]:
    """Run every query; failures come back as exceptions in their slot."""
    async def one(q: ExplorationQuery) -> str:
        reply = await session.resolve_with_fallback("explorer", q.query)
        return reply.response

    results: list[str | BaseException] = []
    if parallel and len(queries) > 1:
        for start in range(0, len(queries), max_parallel):
            batch = queries[start:start + max_parallel]
            results.extend(await asyncio.gather(*(one(q) for q in batch), return_exceptions=True))
    else:
        for q in queries:
            try:
                results.append(await one(q))
            except Exception as e:
                results.append(e)
    return results


async def exploration_phase(ctx: WorkflowContext, session) -> PhaseResult:
    """Phase 2A: fan out explorer queries and join them all."""
    config = ctx.config
    queries = generate_exploration_queries(ctx)
    logger.info("Running %d exploration queries", len(queries))

    raw = await run_exploration_queries(
        session,
        queries,
        parallel=config.enable_parallel_exploration,
        max_parallel=config.max_parallel_exploration,
    )

    results: list[str] = []
    failures: list[dict[str, Any]] = []
    sections = ["## Exploration Results", ""]
    for query, outcome in zip(queries, raw):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            message = error_message(outcome)
            logger.warning("Exploration query %s failed: %s", query.type.value, message)
            failures.append({"type": query.type.value, "error": message})
            text = f"[Query failed: {message}]"
        else:
            text = outcome
        results.append(text)
        sections.append(f"### {query.type.value.replace('_', ' ').upper()}")
        sections.append(_clip(text, 500))
        sections.append("")

    ctx.exploration_results = [r for r in results if not r.startswith("[Query failed")]
    succeeded = len(results) - len(failures)

    output = "\n".join([
        "## Phase 2A: Exploration Complete",
        "",
        f"**Queries Executed**: {len(queries)}",
        f"**Successful**: {succeeded}",
        "",
        "### Query Types",
        *(f"- {q.type.value} (priority: {q.priority})" for q in queries),
        "",
        *sections,
        "**Next Phase**: Implementation",
    ])
    return PhaseResult(
        phase=PhaseId.EXPLORATION,
        success=succeeded > 0,
        output=output,
        next_phase=PhaseId.IMPLEMENTATION,
        metadata={
            "queries_executed": len(queries),
            "results_gathered": succeeded,
            "failures": failures,
        },
    )


# =============================================================================
# Implementation
# =============================================================================

_L = ComplexityLevel
EXPERT_SELECTION_MATRIX: dict[IntentType, dict[ComplexityLevel, tuple[str, ...]]] = {
    IntentType.CONCEPTUAL: {
        _L.TRIVIAL: ("explorer",),
        _L.SIMPLE: ("researcher",),
        _L.MODERATE: ("researcher", "strategist"),
        _L.COMPLEX: ("strategist", "researcher"),
        _L.EPIC: ("strategist",),
    },
    IntentType.IMPLEMENTATION: {
        _L.TRIVIAL: ("explorer", "writer"),
        _L.SIMPLE: ("frontend", "writer"),
        _L.MODERATE: ("strategist", "frontend"),
        _L.COMPLEX: ("strategist",),
        _L.EPIC: ("strategist",),
    },
    IntentType.DEBUGGING: {
        _L.TRIVIAL: ("explorer",),
        _L.SIMPLE: ("reviewer",),
        _L.MODERATE: ("reviewer", "strategist"),
        _L.COMPLEX: ("strategist", "reviewer"),
        _L.EPIC: ("strategist",),
    },
    IntentType.REFACTORING: {
        _L.TRIVIAL: ("reviewer",),
        _L.SIMPLE: ("reviewer",),
        _L.MODERATE: ("strategist", "reviewer"),
        _L.COMPLEX: ("strategist",),
        _L.EPIC: ("strategist",),
    },
    IntentType.RESEARCH: {
        _L.TRIVIAL: ("explorer",),
        _L.SIMPLE: ("explorer", "researcher"),
        _L.MODERATE: ("researcher",),
        _L.COMPLEX: ("researcher", "strategist"),
        _L.EPIC: ("strategist", "researcher"),
    },
    IntentType.REVIEW: {
        _L.TRIVIAL: ("reviewer",),
        _L.SIMPLE: ("reviewer",),
        _L.MODERATE: ("reviewer", "strategist"),
        _L.COMPLEX: ("strategist", "reviewer"),
        _L.EPIC: ("strategist",),
    },
    IntentType.DOCUMENTATION: {
        _L.TRIVIAL: ("writer",),
        _L.SIMPLE: ("writer",),
        _L.MODERATE: ("writer", "researcher"),
        _L.COMPLEX: ("writer", "strategist"),
        _L.EPIC: ("strategist", "writer"),
    },
}
del _L

DEFAULT_EXPERT = "strategist"

EXPECTED_OUTCOMES: dict[IntentType, str] = {
    IntentType.CONCEPTUAL: "A clear, comprehensive explanation with examples where helpful.",
    IntentType.IMPLEMENTATION: "Working code that implements the requested feature with proper error handling.",
    IntentType.DEBUGGING: "Identified root cause and fix with explanation of what went wrong.",
    IntentType.REFACTORING: "Improved code structure maintaining existing behavior with clear rationale.",
    IntentType.RESEARCH: "Comprehensive findings with references to relevant code and documentation.",
    IntentType.REVIEW: "Detailed review with categorized findings (critical, high, medium, low).",
    IntentType.DOCUMENTATION: "Clear, well-structured documentation following project conventions.",
}

BASE_CONSTRAINTS = (
    "Follow existing code patterns and conventions",
    "Maintain backwards compatibility unless explicitly changing API",
)

INTENT_CONSTRAINTS: dict[IntentType, tuple[str, ...]] = {
    IntentType.CONCEPTUAL: ("Focus on accuracy over completeness", "Cite sources when possible"),
    IntentType.IMPLEMENTATION: ("Write testable code", "Handle edge cases", "Add appropriate error handling"),
    IntentType.DEBUGGING: ("Preserve existing functionality", "Add regression prevention"),
    IntentType.REFACTORING: ("No behavior changes", "Maintain test coverage", "Incremental changes preferred"),
    IntentType.RESEARCH: ("Verify information accuracy", "Include code references"),
    IntentType.REVIEW: ("Be objective and constructive", "Prioritize security issues"),
    IntentType.DOCUMENTATION: ("Match existing doc style", "Include usage examples"),
}

RESPONSE_SECTIONS: dict[IntentType, tuple[str, ...]] = {
    IntentType.CONCEPTUAL: ("Summary", "Explanation", "Examples"),
    IntentType.IMPLEMENTATION: ("Approach", "Changes", "Code", "Testing"),
    IntentType.DEBUGGING: ("Root Cause", "Fix", "Prevention"),
    IntentType.REFACTORING: ("Current State", "Changes", "Rationale"),
    IntentType.RESEARCH: ("Findings", "Evidence", "Recommendations"),
    IntentType.REVIEW: ("Summary", "Critical Issues", "Improvements", "Minor Notes"),
    IntentType.DOCUMENTATION: ("Overview", "Content", "Examples"),
}

# Reply fragments that mean the expert call itself went wrong
CRITICAL_MARKERS = ("rate limit", "api error", "connection refused")
MIN_USEFUL_RESPONSE = 50


def select_expert(
    intent: IntentType,
    complexity: ComplexityLevel,
    excluded: tuple[str, ...] = (),
) -> str:
    candidates = EXPERT_SELECTION_MATRIX.get(intent, {}).get(complexity, (DEFAULT_EXPERT,))
    remaining = [e for e in candidates if e not in excluded]
    return remaining[0] if remaining else DEFAULT_EXPERT


def build_implementation_prompt(ctx: WorkflowContext) -> str:
    intent = ctx.intent or IntentType.IMPLEMENTATION
    complexity = ctx.complexity or ComplexityLevel.MODERATE

    outcome = EXPECTED_OUTCOMES[intent]
    if complexity in (ComplexityLevel.COMPLEX, ComplexityLevel.EPIC):
        outcome += " Break down into steps if needed."

    lines = ["## TASK", ctx.request, "", "## EXPECTED OUTCOME", outcome, "", "## CONTEXT"]
    lines.append(f"**Original Request**: {ctx.original_request}")
    if ctx.relevant_files:
        lines.append("**Relevant Files**:")
        lines.extend(f"- {f}" for f in ctx.relevant_files)
    if ctx.codebase_context:
        lines.extend(["**Codebase Context**:", ctx.codebase_context[:1000]])
    if ctx.exploration_results:
        lines.append("**Exploration Results**:")
        lines.append("\n---\n".join(r[:300] for r in ctx.exploration_results[:3]))
    if ctx.implementation_attempts > 1:
        lines.append(
            f"**Note**: This is attempt {ctx.implementation_attempts}. "
            "Previous attempt(s) encountered issues."
        )
        if ctx.last_error:
            lines.append(f"**Previous Error**: {ctx.last_error}")

    lines.extend(["", "## CONSTRAINTS"])
    lines.extend(f"- {c}" for c in BASE_CONSTRAINTS + INTENT_CONSTRAINTS[intent])
    lines.extend(["", "## RESPONSE FORMAT"])
    lines.extend(f"### {section}" for section in RESPONSE_SECTIONS[intent])
    return "\n".join(lines)


def is_critical_failure(response: str) -> bool:
    lowered = response.lower()
    return len(response) < MIN_USEFUL_RESPONSE or any(m in lowered for m in CRITICAL_MARKERS)


async def implementation_phase(ctx: WorkflowContext, session) -> PhaseResult:
    """Phase 2B: delegate the request to an expert.

    The orchestrator has already counted this attempt.
    """
    intent = ctx.intent or IntentType.IMPLEMENTATION
    complexity = ctx.complexity or ComplexityLevel.MODERATE

    if ctx.next_expert:
        expert_id, ctx.next_expert = ctx.next_expert, None
    else:
        excluded = (ctx.last_expert_used,) if ctx.last_expert_used else ()
        expert_id = select_expert(intent, complexity, excluded)
    logger.info(
        "Implementation attempt %d/%d with %s (%s, %s)",
        ctx.implementation_attempts, ctx.max_attempts, expert_id,
        intent.value, complexity.value,
    )

    try:
        reply = await session.resolve_with_fallback(expert_id, build_implementation_prompt(ctx))
    except Exception as e:
        ctx.last_error = error_message(e)
        ctx.last_expert_used = expert_id
        logger.warning("Implementation with %s failed: %s", expert_id, ctx.last_error)
        return PhaseResult(
            phase=PhaseId.IMPLEMENTATION,
            success=False,
            output=f"Implementation failed: {ctx.last_error}",
            next_phase=PhaseId.RECOVERY,
            metadata={"expert_requested": expert_id, "attempt_number": ctx.implementation_attempts},
        )

    ctx.last_expert_used = reply.actual_expert
    ctx.last_implementation_output = reply.response
    metadata = {
        "expert_used": reply.actual_expert,
        "fell_back": reply.fell_back,
        "attempt_number": ctx.implementation_attempts,
    }

    if is_critical_failure(reply.response):
        ctx.last_error = "Critical failure in implementation (API/connection issue)"
        return PhaseResult(
            phase=PhaseId.IMPLEMENTATION,
            success=False,
            output=reply.response or ctx.last_error,
            next_phase=PhaseId.RECOVERY,
            metadata={**metadata, "critical_failure": True},
        )

    output = "\n".join([
        "## Phase 2B: Implementation Complete",
        "",
        f"**Expert**: {reply.actual_expert}" + (" (fallback)" if reply.fell_back else ""),
        f"**Attempt**: {ctx.implementation_attempts}/{ctx.max_attempts}",
        "",
        reply.response,
    ])
    next_phase = PhaseId.VERIFICATION if ctx.config.enable_verification else PhaseId.COMPLETION
    return PhaseResult(
        phase=PhaseId.IMPLEMENTATION,
        success=True,
        output=output,
        next_phase=next_phase,
        metadata=metadata,
    )


# =============================================================================
# Verification
# =============================================================================

VERIFICATION_CRITERIA: dict[IntentType, tuple[str, ...]] = {
    IntentType.CONCEPTUAL: (
        "Answer addresses the question directly",
        "Explanation is accurate and complete",
        "Examples are relevant and correct",
    ),
    IntentType.IMPLEMENTATION: (
        "Code compiles without errors",
        "Implementation matches requirements",
        "Edge cases are handled",
        "No breaking changes introduced",
    ),
    IntentType.DEBUGGING: (
        "Root cause is correctly identified",
        "Fix addresses the root cause",
        "No regressions introduced",
        "Fix is minimal and targeted",
    ),
    IntentType.REFACTORING: (
        "Behavior is unchanged",
        "Code quality improved",
        "Tests still pass",
        "Changes are incremental",
    ),
    IntentType.RESEARCH: (
        "Information is accurate",
        "Sources are verified",
        "Findings are comprehensive",
        "Recommendations are actionable",
    ),
    IntentType.REVIEW: (
        "All code sections reviewed",
        "Issues are correctly categorized",
        "Recommendations are specific",
        "Security concerns addressed",
    ),
    IntentType.DOCUMENTATION: (
        "Documentation is accurate",
        "Examples are working",
        "Format matches project style",
        "All sections complete",
    ),
}

_RESULT_RE = re.compile(r"VERIFICATION_RESULT:\s*(PASS|FAIL)", re.IGNORECASE)
_ISSUES_RE = re.compile(r"ISSUES_FOUND:\s*(.*?)(?:CONFIDENCE:|$)", re.IGNORECASE | re.DOTALL)
_CONFIDENCE_RE = re.compile(r"CONFIDENCE:\s*(HIGH|MEDIUM|LOW)", re.IGNORECASE)
_FAILURE_WORDS = ("fail", "error", "issue", "problem")


@dataclass
class VerificationVerdict:
    passed: bool
    issues: list[str]
    confidence: str = "LOW"


def parse_verification(response: str) -> VerificationVerdict:
    """Parse the reviewer's structured reply.

    A PASS that still lists issues counts as a FAIL. Without an explicit
    result line the verdict is inferred from the absence of failure words.
    """
    verdict = VerificationVerdict(passed=False, issues=[])

    result = _RESULT_RE.search(response)
    if result:
        verdict.passed = result.group(1).upper() == "PASS"
    else:
        lowered = response.lower()
        verdict.passed = not any(word in lowered for word in _FAILURE_WORDS)

    issues = _ISSUES_RE.search(response)
    if issues:
        text = issues.group(1).strip().strip("`").strip()
        if text.lower() not in ("none", "[none]", ""):
            verdict.issues = [
                line for line in (re.sub(r"^[-*]\s*", "", raw).strip() for raw in text.splitlines())
                if line and line.lower() != "none"
            ]

    confidence = _CONFIDENCE_RE.search(response)
    if confidence:
        verdict.confidence = confidence.group(1).upper()

    if verdict.passed and verdict.issues:
        logger.warning("Verification marked PASS but issues found, treating as FAIL")
        verdict.passed = False
    return verdict


def build_verification_prompt(ctx: WorkflowContext) -> str:
    criteria = VERIFICATION_CRITERIA.get(ctx.intent or IntentType.IMPLEMENTATION)
    lines = [
        "## Verification Request",
        "",
        "Do NOT trust the implementation output at face value. Verify each claim.",
        "",
        "### Original Task",
        ctx.original_request,
        "",
        "### Implementation Output to Verify",
        (ctx.last_implementation_output or "")[:3000],
        "",
        "### Verification Criteria",
        *(f"{i}. {c}" for i, c in enumerate(criteria, 1)),
        "",
        "### Required Output Format",
        "VERIFICATION_RESULT: [PASS/FAIL]",
        "ISSUES_FOUND:",
        '[List specific issues, or "None" if all passed]',
        "CONFIDENCE: [HIGH/MEDIUM/LOW]",
    ]
    if ctx.verification_failures:
        lines.extend(["", "Previous failures:"])
        lines.extend(f"- {f}" for f in ctx.verification_failures[-3:])
    return "\n".join(lines)


def build_verification_escalation(ctx: WorkflowContext, verdict: VerificationVerdict) -> str:
    history = [f"{i}. {f}" for i, f in enumerate(ctx.verification_failures, 1)]
    issues = [f"- {i}" for i in verdict.issues] or ["- No specific issues recorded"]
    return "\n".join([
        "## ESCALATION REPORT (attempt limit reached)",
        "",
        f"**Original Request**: {ctx.original_request}",
        "",
        f"**Attempts Made**: {ctx.implementation_attempts}",
        f"**Verification Attempts**: {ctx.verification_attempts}",
        "",
        "### Failure History",
        *(history or ["No failure history recorded"]),
        "",
        "### Last Verification Result",
        f"**Confidence**: {verdict.confidence}",
        "**Issues**:",
        *issues,
        "",
        "### Recommended Actions",
        "1. Automated attempts have been halted",
        "2. Review the implementation manually",
        "3. Clarify or split the original request",
    ])


async def verification_phase(ctx: WorkflowContext, session) -> PhaseResult:
    """Phase 2D: have the reviewer check the implementation output."""
    if not ctx.last_implementation_output:
        logger.warning("No implementation output to verify, skipping verification")
        return PhaseResult(
            phase=PhaseId.VERIFICATION,
            success=True,
            output="Verification skipped: no implementation output available",
            next_phase=PhaseId.COMPLETION,
        )

    try:
        reply = await session.resolve_with_fallback("reviewer", build_verification_prompt(ctx))
    except Exception as e:
        ctx.last_error = error_message(e)
        logger.warning("Verification call failed: %s", ctx.last_error)
        return PhaseResult(
            phase=PhaseId.VERIFICATION,
            success=False,
            output=f"Verification failed: {ctx.last_error}",
            next_phase=PhaseId.RECOVERY,
        )

    verdict = parse_verification(reply.response)
    ctx.verification_attempts += 1
    logger.info(
        "Verification %s (confidence %s, %d issues, attempt %d)",
        "passed" if verdict.passed else "failed",
        verdict.confidence, len(verdict.issues), ctx.verification_attempts,
    )
    metadata: dict[str, Any] = {
        "verification_attempts": ctx.verification_attempts,
        "confidence": verdict.confidence,
        "issues": verdict.issues,
    }

    if verdict.passed and verdict.confidence != "LOW":
        return PhaseResult(
            phase=PhaseId.VERIFICATION,
            success=True,
            output="\n".join([
                "## Phase 2D: Verification PASSED",
                "",
                f"**Confidence**: {verdict.confidence}",
                "",
                _clip(reply.response, 2000),
            ]),
            next_phase=PhaseId.COMPLETION,
            metadata=metadata,
        )

    ctx.verification_failures.append(
        "; ".join(verdict.issues) if verdict.issues
        else "Verification did not pass confidence threshold"
    )
    ctx.last_error = "Verification failed: " + (", ".join(verdict.issues) or "low confidence")

    if ctx.implementation_attempts >= ctx.max_attempts:
        logger.warning("Attempt limit %d reached after verification, escalating", ctx.max_attempts)
        report = build_verification_escalation(ctx, verdict)
        ctx.escalate(report)
        return PhaseResult(
            phase=PhaseId.VERIFICATION,
            success=False,
            output=report,
            next_phase=PhaseId.COMPLETION,
            metadata={**metadata, "escalated": True},
        )

    return PhaseResult(
        phase=PhaseId.VERIFICATION,
        success=False,
        output="\n".join([
            "## Phase 2D: Verification FAILED",
            "",
            f"**Confidence**: {verdict.confidence}",
            f"**Issues Found**: {len(verdict.issues)}",
            "",
            _clip(reply.response, 2000),
        ]),
        next_phase=PhaseId.RECOVERY,
        metadata=metadata,
    )


# =============================================================================
# Recovery
# =============================================================================

class RecoveryAction(str, Enum):
    RETRY_SAME_EXPERT = "retry_same_expert"
    SWITCH_EXPERT = "switch_expert"
    SIMPLIFY_REQUEST = "simplify_request"
    REQUEST_CLARIFICATION = "request_clarification"
    ESCALATE_TO_USER = "escalate_to_user"


@dataclass(frozen=True)
class RecoveryPlan:
    action: RecoveryAction
    reason: str
    new_expert: str | None = None


ERROR_RECOVERY_MAP: tuple[tuple[re.Pattern[str], RecoveryAction, str], ...] = (
    (re.compile(r"rate\s*limit|too\s*many\s*requests|\b429\b", re.IGNORECASE),
     RecoveryAction.SWITCH_EXPERT, "Rate limit exceeded, switching to fallback expert"),
    (re.compile(r"timeout|timed?\s*out", re.IGNORECASE),
     RecoveryAction.SIMPLIFY_REQUEST, "Request timed out, retrying with simplified request"),
    (re.compile(r"unclear|ambiguous|not\s*sure|need\s*more\s*info", re.IGNORECASE),
     RecoveryAction.REQUEST_CLARIFICATION, "Request needs clarification from user"),
    (re.compile(r"cannot|unable|impossible|not\s*possible", re.IGNORECASE),
     RecoveryAction.SWITCH_EXPERT, "Expert cannot handle request, trying alternative"),
    (re.compile(r"error|failed|exception", re.IGNORECASE),
     RecoveryAction.RETRY_SAME_EXPERT, "Execution error, retrying"),
)


def _first_fallback(session, expert_id: str | None) -> str | None:
    if not expert_id or expert_id not in session.experts:
        return None
    fallbacks = session.experts.get(expert_id).fallbacks
    return fallbacks[0] if fallbacks else None


def analyze_failure(ctx: WorkflowContext, session) -> RecoveryPlan:
    """Three-strike protocol keyed on how many attempts have been made."""
    attempts = ctx.implementation_attempts
    if attempts >= ctx.max_attempts:
        return RecoveryPlan(
            RecoveryAction.ESCALATE_TO_USER,
            f"Maximum attempts ({ctx.max_attempts}) reached. Escalating to user.",
        )

    if attempts <= 1:
        error = ctx.last_error or ""
        for pattern, action, reason in ERROR_RECOVERY_MAP:
            if not pattern.search(error):
                continue
            if action is RecoveryAction.SWITCH_EXPERT:
                fallback = _first_fallback(session, ctx.last_expert_used)
                if fallback:
                    return RecoveryPlan(action, reason, fallback)
                return RecoveryPlan(RecoveryAction.RETRY_SAME_EXPERT, reason)
            return RecoveryPlan(action, reason)
        return RecoveryPlan(
            RecoveryAction.RETRY_SAME_EXPERT,
            "First attempt failed, retrying with adjusted approach",
        )

    if attempts == 2:
        fallback = _first_fallback(session, ctx.last_expert_used)
        if fallback:
            return RecoveryPlan(
                RecoveryAction.SWITCH_EXPERT,
                "Second attempt failed, switching to fallback expert",
                fallback,
            )

    return RecoveryPlan(
        RecoveryAction.ESCALATE_TO_USER,
        "Multiple attempts failed, user intervention required",
    )


def simplify_request(request: str) -> str:
    """First two sentences of ``request``."""
    sentences = [s.strip() for s in re.split(r"[.!?]", request) if s.strip()]
    simplified = ". ".join(sentences[:2])
    return simplified or request[:200]


def build_escalation_report(ctx: WorkflowContext) -> str:
    lines = [
        "## Escalation Required",
        "",
        "### Original Request",
        ctx.original_request,
        "",
        "### Classification",
        f"- **Intent**: {ctx.intent.value if ctx.intent else 'unknown'}",
        f"- **Complexity**: {ctx.complexity.value if ctx.complexity else 'unknown'}",
        "",
        f"### Attempts Made: {ctx.implementation_attempts}",
    ]
    if ctx.recovery_actions:
        lines.extend(["", "**Recovery Actions Taken**:"])
        lines.extend(f"{i}. {a}" for i, a in enumerate(ctx.recovery_actions, 1))
    if ctx.phase_history:
        lines.extend(["", "**Phase History**:"])
        for entry in ctx.phase_history:
            line = f"- {'ok' if entry.success else 'FAILED'} {entry.phase.value} ({entry.duration_ms:.0f}ms)"
            if entry.error:
                line += f" - {entry.error[:100]}"
            lines.append(line)
    if ctx.last_error:
        lines.extend(["", "### Last Error", ctx.last_error])
    lines.extend([
        "",
        "### Recommended Actions",
        "1. Provide more specific requirements",
        "2. Break down the task into smaller steps",
        "3. Manually review the identified files",
        "",
        "### Identified Files",
        *([f"- {f}" for f in ctx.relevant_files] or ["None identified"]),
    ])
    return "\n".join(lines)


async def recovery_phase(ctx: WorkflowContext, session) -> PhaseResult:
    """Phase 2C: decide how to retry, or escalate."""
    plan = analyze_failure(ctx, session)
    ctx.recovery_actions.append(f"{plan.action.value}: {plan.reason}")
    logger.info("Recovery after attempt %d: %s (%s)", ctx.implementation_attempts, plan.action.value, plan.reason)

    metadata: dict[str, Any] = {"strategy": plan.action.value}

    if plan.action in (RecoveryAction.REQUEST_CLARIFICATION, RecoveryAction.ESCALATE_TO_USER):
        report = build_escalation_report(ctx)
        ctx.escalate(report)
        return PhaseResult(
            phase=PhaseId.RECOVERY,
            success=False,
            output=report,
            next_phase=PhaseId.COMPLETION,
            metadata={**metadata, "escalated": True},
        )

    if plan.action is RecoveryAction.SWITCH_EXPERT:
        ctx.next_expert = plan.new_expert
        metadata["new_expert"] = plan.new_expert
    elif plan.action is RecoveryAction.SIMPLIFY_REQUEST:
        ctx.request = simplify_request(ctx.request)
        ctx.next_expert = ctx.last_expert_used
    else:
        ctx.next_expert = ctx.last_expert_used

    output = "\n".join([
        "## Phase 2C: Recovery",
        "",
        f"**Strategy**: {plan.action.value.replace('_', ' ')}",
        f"**Reason**: {plan.reason}",
        *([f"**New Expert**: {plan.new_expert}"] if plan.new_expert else []),
        f"**Attempt**: {ctx.implementation_attempts} / {ctx.max_attempts}",
        "",
        "**Recovery Actions So Far**:",
        *(f"{i}. {a}" for i, a in enumerate(ctx.recovery_actions, 1)),
    ])
    return PhaseResult(
        phase=PhaseId.RECOVERY,
        success=True,
        output=output,
        next_phase=PhaseId.IMPLEMENTATION,
        metadata=metadata,
    )

"""Pattern-table intent classification and complexity assessment.

Both classifiers are driven by static tables so the tie-break order stays
explicit: ``INTENT_PATTERNS`` is scored in declaration order and
``COMPLEXITY_KEYWORDS`` is checked from the largest band down.
"""

from __future__ import annotations

import re

from . import ComplexityLevel, IntentType, PhaseId, PhaseResult, WorkflowContext


def _compile(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(s, re.IGNORECASE) for s in sources)


INTENT_PATTERNS: tuple[tuple[IntentType, tuple[re.Pattern[str], ...]], ...] = (
    (IntentType.CONCEPTUAL, _compile(
        r"what\s+is", r"explain", r"how\s+does", r"why\s+does",
        r"difference\s+between", r"concept", r"theory", r"understand",
    )),
    (IntentType.IMPLEMENTATION, _compile(
        r"implement", r"create", r"build", r"add\s+(a\s+)?feature",
        r"write\s+(a\s+)?code", r"develop", r"make\s+(a\s+)?new", r"set\s*up",
    )),
    (IntentType.DEBUGGING, _compile(
        r"fix", r"bug", r"error", r"not\s+working", r"broken",
        r"crash", r"fail", r"issue", r"problem", r"debug",
    )),
    (IntentType.REFACTORING, _compile(
        r"refactor", r"restructure", r"reorganize", r"improve",
        r"optimi[sz]e", r"clean\s*up", r"modernize", r"migrate",
    )),
    (IntentType.RESEARCH, _compile(
        r"find", r"search", r"look\s+for", r"where\s+is",
        r"locate", r"explore", r"discover", r"investigate",
    )),
    (IntentType.REVIEW, _compile(
        r"review", r"audit", r"check", r"analy[sz]e",
        r"evaluate", r"assess", r"security", r"vulnerabilit",
    )),
    (IntentType.DOCUMENTATION, _compile(
        r"document", r"readme", r"write\s+docs", r"api\s+docs",
        r"comment", r"docstring", r"explain\s+code",
    )),
)

# Largest band first: an override for a bigger band always wins.
COMPLEXITY_KEYWORDS: tuple[tuple[ComplexityLevel, tuple[re.Pattern[str], ...]], ...] = (
    (ComplexityLevel.EPIC, _compile(
        r"\brewrite\b", r"\boverhaul\b", r"from\s+scratch", r"\bmassive\b",
        r"\bfull\s+re-?(write|build|implementation)\b",
        r"\bcomplete\s+re-?(write|build|design)\b",
    )),
    (ComplexityLevel.COMPLEX, _compile(
        r"\bmany\b", r"\bentire\b", r"\barchitecture\b", r"\bredesign\b", r"\bsystem-wide\b",
    )),
    (ComplexityLevel.MODERATE, _compile(
        r"\bseveral\b", r"\bmultiple\b", r"\bfew\s+files\b",
    )),
    (ComplexityLevel.SIMPLE, _compile(
        r"\bsingle\b", r"\bone\s+file\b", r"\bbasic\b",
    )),
    (ComplexityLevel.TRIVIAL, _compile(
        r"\btypo\b", r"\bquick\b", r"\bminor\b", r"\beasy\b", r"\bsmall\b", r"\bsimple\b",
    )),
)

WORD_COUNT_BANDS: tuple[tuple[int, ComplexityLevel], ...] = (
    (20, ComplexityLevel.TRIVIAL),
    (50, ComplexityLevel.SIMPLE),
    (100, ComplexityLevel.MODERATE),
    (200, ComplexityLevel.COMPLEX),
)

EXPERT_RECOMMENDATIONS: dict[IntentType, tuple[str, ...]] = {
    IntentType.CONCEPTUAL: ("strategist", "researcher"),
    IntentType.IMPLEMENTATION: ("strategist", "frontend", "writer"),
    IntentType.DEBUGGING: ("strategist", "reviewer"),
    IntentType.REFACTORING: ("strategist", "reviewer"),
    IntentType.RESEARCH: ("researcher", "explorer"),
    IntentType.REVIEW: ("reviewer", "strategist"),
    IntentType.DOCUMENTATION: ("writer", "researcher"),
}

INTENT_DESCRIPTIONS = {
    IntentType.CONCEPTUAL: "Conceptual question requiring explanation",
    IntentType.IMPLEMENTATION: "Implementation task requiring code writing",
    IntentType.DEBUGGING: "Debugging task requiring error resolution",
    IntentType.REFACTORING: "Refactoring task requiring code improvement",
    IntentType.RESEARCH: "Research task requiring exploration",
    IntentType.REVIEW: "Review task requiring analysis",
    IntentType.DOCUMENTATION: "Documentation task requiring writing",
}

COMPLEXITY_DESCRIPTIONS = {
    ComplexityLevel.TRIVIAL: "Very simple, can be done quickly",
    ComplexityLevel.SIMPLE: "Straightforward, single focus area",
    ComplexityLevel.MODERATE: "Multiple components involved",
    ComplexityLevel.COMPLEX: "Significant scope, careful planning needed",
    ComplexityLevel.EPIC: "Large-scale change, may need breakdown",
}


def score_intents(request: str) -> dict[IntentType, int]:
    """Number of matching patterns per intent."""
    return {
        intent: sum(1 for p in patterns if p.search(request))
        for intent, patterns in INTENT_PATTERNS
    }


def classify_intent(request: str) -> IntentType:
    """Intent with the most pattern matches; ties go to the earlier table entry."""
    best, best_score = IntentType.IMPLEMENTATION, 0
    for intent, score in score_intents(request).items():
        if score > best_score:
            best, best_score = intent, score
    return best


def word_count(request: str) -> int:
    return len(request.split())


def assess_complexity(request: str) -> ComplexityLevel:
    for level, patterns in COMPLEXITY_KEYWORDS:
        if any(p.search(request) for p in patterns):
            return level

    words = word_count(request)
    for limit, level in WORD_COUNT_BANDS:
        if words <= limit:
            return level
    return ComplexityLevel.EPIC


def recommended_experts(intent: IntentType) -> list[str]:
    return list(EXPERT_RECOMMENDATIONS.get(intent, ("strategist",)))


async def intent_phase(ctx: WorkflowContext, session) -> PhaseResult:
    """Phase 0: classify the request."""
    ctx.intent = classify_intent(ctx.request)
    ctx.complexity = assess_complexity(ctx.request)
    ctx.recommended_experts = recommended_experts(ctx.intent)

    request = ctx.request
    excerpt = request[:200] + ("..." if len(request) > 200 else "")
    output = "\n".join([
        "## Phase 0: Intent Classification",
        "",
        f"**Request**: {excerpt}",
        "",
        f"- Intent: **{ctx.intent.value}** - {INTENT_DESCRIPTIONS[ctx.intent]}",
        f"- Complexity: **{ctx.complexity.value}** - {COMPLEXITY_DESCRIPTIONS[ctx.complexity]}",
        "",
        f"**Recommended Experts**: {', '.join(ctx.recommended_experts)}",
    ])
    return PhaseResult(
        phase=PhaseId.INTENT,
        success=True,
        output=output,
        next_phase=PhaseId.ASSESSMENT,
        metadata={
            "intent": ctx.intent.value,
            "complexity": ctx.complexity.value,
            "recommended_experts": ctx.recommended_experts,
            "word_count": word_count(request),
        },
    )

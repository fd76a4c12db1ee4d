"""Classification strategies: decide whether the engine should act on a report.

Two variants share the same rules:

- ``HeuristicClassifier`` applies the rules only and never calls a model.
- ``LLMClassifier`` applies the rules first and asks the model only for
  reports that pass them.

Rules (each one makes a report not actionable):

1. Questions are not actionable.
2. Reports without reproduction steps or affected components lack the
   information needed for a change.
3. Analyses with confidence below 0.4 need more information.
4. Low-severity documentation requests are left for manual review.
"""

import json

import structlog
from pydantic import ValidationError

from fixflow.engine.types import StepContext
from fixflow.exceptions import ContractError, ResponseParseError
from fixflow.models.analysis import (
    Analysis,
    ClassificationDecision,
    Complexity,
    IssueType,
    Severity,
    WorkType,
)
from fixflow.providers.llm import ChatClient

log = structlog.get_logger(__name__)

MIN_CONFIDENCE = 0.4

_WORK_TYPES = {
    IssueType.BUG: WorkType.BUG_FIX,
    IssueType.FEATURE: WorkType.FEATURE_ADD,
    IssueType.IMPROVEMENT: WorkType.REFACTOR,
    IssueType.DOCUMENTATION: WorkType.DOCUMENTATION,
}

SYSTEM_PROMPT = """You are an expert at classifying software issues and determining if they can be automated.
Consider:
1. Is the issue clearly defined?
2. Can it be fixed/implemented automatically?
3. What's the complexity level?
4. Are there any blockers?

Respond ONLY with valid JSON."""

PROMPT = """Analyze this QA issue and determine if it's actionable for automated code changes.

# QA Analysis

{analysis}

# Classification Criteria

Actionable if the issue is clear and reproducible, has sufficient technical
detail, a well-defined scope and no external dependency blocking the work.

Not actionable if requirements are vague, critical information is missing, it
requires product or design decisions, it concerns infrastructure or external
services, or it is a security vulnerability (needs manual review).

# Response Format

{{
  "should_act": true,
  "confidence": 0.0,
  "reason": "Clear explanation of decision",
  "work_type": "bug_fix | feature_add | refactor | documentation | test_addition",
  "estimated_complexity": "simple | moderate | complex",
  "required_skills": ["skill"],
  "blockers": ["blocker"],
  "prerequisites": ["prerequisite"]
}}
"""


def _require_analysis(payload: object) -> Analysis:
    if not isinstance(payload, Analysis):
        raise ContractError(f"Classification requires an Analysis, got {type(payload).__name__}")
    return payload


class HeuristicClassifier:
    """Rule-based classification without a model call."""

    name = "heuristic-classifier"

    def evaluate(self, analysis: Analysis) -> ClassificationDecision | None:
        """Apply the rules.

        Returns:
            A negative decision if a rule matched, otherwise None
        """
        reason = None
        if analysis.issue_type == IssueType.QUESTION:
            reason = "This is a question, not an actionable issue"
        elif not analysis.steps_to_reproduce or not analysis.affected_components:
            reason = "Insufficient information: missing steps to reproduce or affected components"
        elif analysis.confidence < MIN_CONFIDENCE:
            reason = "Low confidence in analysis - need more information"
        elif analysis.issue_type == IssueType.DOCUMENTATION and analysis.severity == Severity.LOW:
            reason = "Low priority documentation request - consider manual review"

        if reason is None:
            return None
        return ClassificationDecision(should_act=False, confidence=0.9, reason=reason)

    async def execute(self, payload: Analysis, context: StepContext) -> ClassificationDecision:
        analysis = _require_analysis(payload)
        context.report_progress("Evaluating actionability", 30)

        decision = self.evaluate(analysis)
        if decision is None:
            decision = ClassificationDecision(
                should_act=True,
                confidence=analysis.confidence,
                reason="Passed heuristic checks",
                work_type=_WORK_TYPES.get(analysis.issue_type),
                estimated_complexity=self.estimate_complexity(analysis),
            )

        log.info("classification_completed", strategy=self.name, should_act=decision.should_act, reason=decision.reason)
        return decision

    @staticmethod
    def estimate_complexity(analysis: Analysis) -> Complexity:
        """Rough complexity from the number of affected components."""
        components = len(analysis.affected_components)
        if components <= 1:
            return Complexity.SIMPLE
        if components <= 3:
            return Complexity.MODERATE
        return Complexity.COMPLEX


class LLMClassifier:
    """Rules first, then a model classification."""

    name = "action-classifier"

    def __init__(self, chat: ChatClient, heuristics: HeuristicClassifier | None = None) -> None:
        self.chat = chat
        self.heuristics = heuristics or HeuristicClassifier()

    async def execute(self, payload: Analysis, context: StepContext) -> ClassificationDecision:
        analysis = _require_analysis(payload)
        context.report_progress("Evaluating actionability", 30)

        rejected = self.heuristics.evaluate(analysis)
        if rejected is not None:
            log.info("classification_completed", strategy="heuristics", should_act=False, reason=rejected.reason)
            return rejected

        context.report_progress("Classifying work type", 60)
        reply = await self.chat.complete_json(
            PROMPT.format(analysis=json.dumps(analysis.model_dump(mode="json"), indent=2)),
            system=SYSTEM_PROMPT,
            temperature=0.3,
        )
        reply.setdefault("should_act", True)
        reply.setdefault("reason", "AI classification")

        try:
            decision = ClassificationDecision.model_validate(reply)
        except ValidationError as e:
            raise ResponseParseError(f"Classification reply does not match schema: {e.error_count()} errors") from e

        log.info(
            "classification_completed",
            strategy=self.name,
            should_act=decision.should_act,
            work_type=decision.work_type.value if decision.work_type else None,
            confidence=decision.confidence,
        )
        return decision

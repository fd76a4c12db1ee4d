"""Analysis strategy: turn a QA report into a structured ``Analysis``."""

import asyncio
import json
from typing import Any

import structlog
from pydantic import ValidationError

from fixflow.engine.types import StepContext
from fixflow.exceptions import FixflowError, ResponseParseError
from fixflow.models.analysis import Analysis, VisualEvidence
from fixflow.providers.llm import ChatClient

log = structlog.get_logger(__name__)

TEXT_SYSTEM_PROMPT = """You are a QA analysis expert. Analyze bug reports and feature requests.
Extract structured information from the QA report provided.
Respond ONLY with valid JSON matching the specified schema."""

VISION_SYSTEM_PROMPT = """You are a QA analyst examining screenshots attached to a bug report.
Describe what the screenshot shows and list the details relevant to the report.
Respond ONLY with valid JSON."""

TEXT_PROMPT = """Analyze the following QA report and extract structured information.

# QA Report

**Title:** {title}

**Description:**
{description}

# Your Task

Respond with a JSON object:
{{
  "summary": "Brief summary of the issue (1-2 sentences)",
  "issue_type": "bug | feature | improvement | question | documentation",
  "severity": "critical | high | medium | low",
  "steps_to_reproduce": ["step 1", "step 2"],
  "expected_behavior": "What should happen",
  "actual_behavior": "What actually happens",
  "affected_components": ["component1"],
  "suspected_root_cause": "Potential root cause, or null if unclear",
  "related_issues": ["issue references if mentioned"]
}}

Severity guide: critical = system down, data loss, security issue; high = major
functionality broken; medium = feature partially working; low = minor or cosmetic.
Use an empty array when no reproduction steps are given.
"""

VISION_PROMPT = """Screenshot {index} of the QA report "{title}".

Respond with a JSON object:
{{
  "description": "What the screenshot shows",
  "extracted_text": "Visible text such as error messages, or null",
  "relevant_details": ["detail relevant to the report"]
}}
"""


class LLMAnalyzer:
    """Analyze the report text and its screenshots with a chat model.

    Screenshots are analyzed concurrently; a screenshot that cannot be
    analyzed is recorded as such instead of failing the phase.
    """

    name = "qa-analyzer"

    def __init__(self, chat: ChatClient) -> None:
        self.chat = chat

    async def execute(self, payload: Any, context: StepContext) -> Analysis:
        item = context.item
        log.info("analysis_started", item_id=item.id, images=len(item.images))

        context.report_progress("Analyzing QA text", 10)
        text_analysis = await self.chat.complete_json(
            TEXT_PROMPT.format(title=item.title, description=item.description or "(no description)"),
            system=TEXT_SYSTEM_PROMPT,
            temperature=0.3,
        )

        context.report_progress("Processing images", 40)
        evidence: list[VisualEvidence] = []
        if item.has_images:
            evidence = list(
                await asyncio.gather(
                    *(self._analyze_image(item.title, image, index) for index, image in enumerate(item.images, 1))
                )
            )

        context.report_progress("Synthesizing analysis", 80)
        analysis = self.synthesize(text_analysis, evidence)

        log.info(
            "analysis_completed",
            item_id=item.id,
            issue_type=analysis.issue_type.value,
            severity=analysis.severity.value,
            confidence=analysis.confidence,
        )
        return analysis

    async def _analyze_image(self, title: str, image: str, index: int) -> VisualEvidence:
        try:
            data = await self.chat.complete_json(
                VISION_PROMPT.format(index=index, title=title),
                system=VISION_SYSTEM_PROMPT,
                temperature=0.2,
                images=[image],
            )
            return VisualEvidence.model_validate(data)
        except (FixflowError, ValidationError) as e:
            log.warning("image_analysis_failed", index=index, error=str(e))
            return VisualEvidence(description="Failed to analyze image")

    @staticmethod
    def synthesize(text_analysis: dict[str, Any], evidence: list[VisualEvidence]) -> Analysis:
        """Combine the text analysis with visual evidence.

        When the model does not report a confidence, it is derived from how
        complete the report is.

        Raises:
            ResponseParseError: If the text analysis does not match the schema
        """
        data = dict(text_analysis)
        data["visual_evidence"] = evidence
        if data.get("suspected_root_cause") in ("", "null"):
            data["suspected_root_cause"] = None

        if "confidence" not in data:
            confidence = 0.5
            if data.get("steps_to_reproduce"):
                confidence += 0.15
            if data.get("affected_components"):
                confidence += 0.1
            if data.get("expected_behavior") and data.get("actual_behavior"):
                confidence += 0.1
            if any(e.description != "Failed to analyze image" for e in evidence):
                confidence += 0.1
            data["confidence"] = round(min(confidence, 0.95), 2)

        try:
            return Analysis.model_validate(data)
        except ValidationError as e:
            raise ResponseParseError(
                f"Analysis reply does not match schema: {e.error_count()} errors; "
                f"keys={json.dumps(sorted(text_analysis))}"
            ) from e

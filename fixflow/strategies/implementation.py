"""Implementation strategy: generate a change set for an actionable report.

Generated changes are not compiled or tested here; ``CodeChanges.tests``
is left empty.
"""

import json
import re

import structlog
from pydantic import ValidationError

from fixflow.engine.types import StepContext
from fixflow.exceptions import ContractError, ResponseParseError
from fixflow.models.analysis import CodeChanges, FileChange, ImplementationRequest
from fixflow.providers.llm import ChatClient

log = structlog.get_logger(__name__)

SYSTEM_PROMPT = """You are an expert software engineer implementing fixes for QA reports.
Produce minimal, focused changes with tests where appropriate.
Respond ONLY with valid JSON."""

PROMPT = """Implement the change described below.

# QA Analysis

{analysis}

# Work Classification

{decision}

# Response Format

{{
  "summary": "One paragraph describing the change",
  "files": [
    {{
      "path": "relative/path/to/file.py",
      "change_type": "created | modified | deleted",
      "description": "What changed in this file",
      "content": "Full new file content (empty for deleted files)"
    }}
  ]
}}

Include test files for the change when the work type is bug_fix or feature_add.
"""

_SLUG = re.compile(r"[^a-z0-9]+")


def branch_name(item_id: str, title: str) -> str:
    """Branch name for a change set, e.g. ``fixflow/qa-101-login-button``."""
    slug = _SLUG.sub("-", title.lower()).strip("-")[:40].rstrip("-")
    prefix = _SLUG.sub("-", item_id.lower()).strip("-")[:12]
    return f"fixflow/{prefix}-{slug}" if slug else f"fixflow/{prefix}"


class LLMImplementer:
    """Generate file changes with a chat model."""

    name = "code-agent"

    def __init__(self, chat: ChatClient, temperature: float = 0.2) -> None:
        self.chat = chat
        self.temperature = temperature

    async def execute(self, payload: ImplementationRequest, context: StepContext) -> CodeChanges:
        if not isinstance(payload, ImplementationRequest):
            raise ContractError(f"Implementation requires an ImplementationRequest, got {type(payload).__name__}")
        if not payload.decision.should_act:
            raise ContractError("Implementation requested for a not-actionable item")

        item = context.item
        log.info(
            "implementation_started",
            item_id=item.id,
            work_type=payload.decision.work_type.value if payload.decision.work_type else None,
        )

        context.report_progress("Generating code changes", 20)
        reply = await self.chat.complete_json(
            PROMPT.format(
                analysis=json.dumps(payload.analysis.model_dump(mode="json"), indent=2),
                decision=json.dumps(payload.decision.model_dump(mode="json"), indent=2),
            ),
            system=SYSTEM_PROMPT,
            temperature=self.temperature,
        )

        context.report_progress("Validating changes", 80)
        try:
            files = [FileChange.model_validate(entry) for entry in reply.get("files", [])]
        except (ValidationError, TypeError, AttributeError) as e:
            raise ResponseParseError(f"Implementation reply has malformed files: {e}") from e
        if not files:
            raise ResponseParseError("Implementation reply contains no file changes")

        changes = CodeChanges(
            files=files,
            summary=reply.get("summary") or f"Automated change for: {item.title}",
            branch=branch_name(item.id, item.title),
        )
        log.info("implementation_completed", item_id=item.id, files=len(files), branch=changes.branch)
        return changes

"""Tests for strategies/implementation.py."""

from unittest.mock import AsyncMock

import pytest

from fixflow.engine.types import SessionContext, StepContext
from fixflow.enums import WorkflowPhase
from fixflow.exceptions import ContractError, ResponseParseError
from fixflow.models.analysis import ChangeType, ImplementationRequest
from fixflow.providers.llm import ChatClient
from fixflow.strategies.implementation import LLMImplementer, branch_name


@pytest.fixture
def context(sample_item) -> StepContext:
    return StepContext(
        session_id="session-1",
        phase=WorkflowPhase.IMPLEMENTATION,
        step_id="implementation",
        session_context=SessionContext(session_id="session-1", item=sample_item),
    )


@pytest.fixture
def chat() -> AsyncMock:
    return AsyncMock(spec=ChatClient)


@pytest.fixture
def request_payload(sample_analysis, actionable_decision) -> ImplementationRequest:
    return ImplementationRequest(analysis=sample_analysis, decision=actionable_decision)


class TestBranchName:
    def test_slug(self):
        assert branch_name("QA-101", "Login button: unresponsive!") == "fixflow/qa-101-login-button-unresponsive"

    def test_title_without_letters(self):
        assert branch_name("qa-7", "!!!") == "fixflow/qa-7"

    def test_long_title_truncated(self):
        name = branch_name("qa-7", "word " * 30)
        assert len(name.split("/", 1)[1]) <= 12 + 1 + 40
        assert not name.endswith("-")


class TestLLMImplementer:
    @pytest.mark.asyncio
    async def test_generates_change_set(self, chat, context, request_payload, sample_item):
        chat.complete_json.return_value = {
            "summary": "Submit the form on click",
            "files": [
                {"path": "auth/login.js", "change_type": "modified", "content": "submit();\n"},
                {"path": "tests/test_login.js", "change_type": "created", "content": "test();\n"},
            ],
        }

        changes = await LLMImplementer(chat).execute(request_payload, context)

        assert [f.path for f in changes.files] == ["auth/login.js", "tests/test_login.js"]
        assert changes.files[1].change_type == ChangeType.CREATED
        assert changes.summary == "Submit the form on click"
        assert changes.branch == branch_name(sample_item.id, sample_item.title)
        assert changes.tests is None
        assert chat.complete_json.await_args.kwargs["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_default_summary(self, chat, context, request_payload, sample_item):
        chat.complete_json.return_value = {"files": [{"path": "a.py", "content": "x = 1\n"}]}

        changes = await LLMImplementer(chat).execute(request_payload, context)

        assert changes.summary == f"Automated change for: {sample_item.title}"

    @pytest.mark.asyncio
    async def test_no_files(self, chat, context, request_payload):
        chat.complete_json.return_value = {"summary": "nothing", "files": []}

        with pytest.raises(ResponseParseError, match="no file changes"):
            await LLMImplementer(chat).execute(request_payload, context)

    @pytest.mark.asyncio
    async def test_malformed_files(self, chat, context, request_payload):
        chat.complete_json.return_value = {"files": [{"content": "missing path"}]}

        with pytest.raises(ResponseParseError, match="malformed"):
            await LLMImplementer(chat).execute(request_payload, context)

    @pytest.mark.asyncio
    async def test_rejects_wrong_payload(self, chat, context, sample_analysis):
        with pytest.raises(ContractError, match="ImplementationRequest"):
            await LLMImplementer(chat).execute(sample_analysis, context)

    @pytest.mark.asyncio
    async def test_rejects_not_actionable_decision(self, chat, context, sample_analysis, not_actionable_decision):
        payload = ImplementationRequest(analysis=sample_analysis, decision=not_actionable_decision)

        with pytest.raises(ContractError, match="not-actionable"):
            await LLMImplementer(chat).execute(payload, context)

        chat.complete_json.assert_not_awaited()

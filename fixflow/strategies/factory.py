"""Map pipeline phases to strategy implementations based on configuration."""

import structlog

from fixflow.config.settings import FixflowSettings
from fixflow.engine.step_runner import PhaseStrategy
from fixflow.enums import WorkflowPhase
from fixflow.providers.llm import ChatClient
from fixflow.strategies.analysis import LLMAnalyzer
from fixflow.strategies.classification import HeuristicClassifier, LLMClassifier
from fixflow.strategies.implementation import LLMImplementer
from fixflow.strategies.publication import PatchBundlePublisher

log = structlog.get_logger(__name__)


def build_strategies(settings: FixflowSettings, chat: ChatClient) -> dict[WorkflowPhase, PhaseStrategy]:
    """Create the phase-to-strategy map used by the orchestrator.

    Args:
        settings: Settings selecting the classifier and publish directory
        chat: Chat client shared by the model-backed strategies

    Returns:
        Mapping of every runnable phase to its strategy
    """
    classifier: PhaseStrategy
    if settings.workflow.classifier == "heuristic":
        classifier = HeuristicClassifier()
    else:
        classifier = LLMClassifier(chat)

    strategies: dict[WorkflowPhase, PhaseStrategy] = {
        WorkflowPhase.ANALYSIS: LLMAnalyzer(chat),
        WorkflowPhase.CLASSIFICATION: classifier,
        WorkflowPhase.IMPLEMENTATION: LLMImplementer(chat),
        WorkflowPhase.REPORTING: PatchBundlePublisher(settings.publish_dir),
    }
    log.info(
        "strategies_configured",
        **{phase.value: strategy.name for phase, strategy in strategies.items()},
    )
    return strategies

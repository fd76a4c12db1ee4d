"""Phase strategies plugged into the Step Runner."""

from fixflow.strategies.analysis import LLMAnalyzer
from fixflow.strategies.classification import HeuristicClassifier, LLMClassifier
from fixflow.strategies.factory import build_strategies
from fixflow.strategies.implementation import LLMImplementer
from fixflow.strategies.publication import PatchBundlePublisher

__all__ = [
    "HeuristicClassifier",
    "LLMAnalyzer",
    "LLMClassifier",
    "LLMImplementer",
    "PatchBundlePublisher",
    "build_strategies",
]

"""Retrieval components."""

from .assembler import AssemblyConfig, ContextAssembler
from .cache import ContextCache, DecisionCache, KeywordCache
from .planner import KeywordPlanner
from .relevance import FastRelevanceScorer, QualityRelevanceFilter, RelevanceClassifier, RelevanceConfig
from .search import SearchConfig, SearchExecutor
from .service import ContextRetriever

__all__ = [
    "AssemblyConfig",
    "ContextAssembler",
    "ContextCache",
    "ContextRetriever",
    "DecisionCache",
    "FastRelevanceScorer",
    "KeywordCache",
    "KeywordPlanner",
    "QualityRelevanceFilter",
    "RelevanceClassifier",
    "RelevanceConfig",
    "SearchConfig",
    "SearchExecutor",
]

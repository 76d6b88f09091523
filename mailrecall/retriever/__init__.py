"""
mailrecall Retriever

Tiered retrieval over a user's email history:
1. IntentClassifier: pattern rules decide if the database can answer
2. DatabaseSearcher: list / count / status / fuzzy participant search
3. SemanticSearcher + Synthesizer: vector search and LLM answer
4. ContextStore: per-session conversation memory
5. EmailFollowUpResolver: details of an email discussed earlier
"""

from .context_store import ContextStore, InMemoryRecordStore, JsonFileRecordStore
from .db_search import DatabaseSearcher, DbStats
from .dispatcher import RetrievalDispatcher, RouteResult
from .followup import EmailFollowUpResolver
from .fuzzy_matcher import FuzzyMatcher, MatchResult
from .intent_classifier import EmailIntent, IntentClassifier, IntentResult
from .searcher import SemanticSearcher, VectorHit
from .synthesizer import SynthesizedAnswer, Synthesizer
from .thread_fetcher import ThreadContext, ThreadContextFetcher

__all__ = [
    "ContextStore",
    "InMemoryRecordStore",
    "JsonFileRecordStore",
    "DatabaseSearcher",
    "DbStats",
    "RetrievalDispatcher",
    "RouteResult",
    "EmailFollowUpResolver",
    "FuzzyMatcher",
    "MatchResult",
    "EmailIntent",
    "IntentClassifier",
    "IntentResult",
    "SemanticSearcher",
    "VectorHit",
    "SynthesizedAnswer",
    "Synthesizer",
    "ThreadContext",
    "ThreadContextFetcher",
]

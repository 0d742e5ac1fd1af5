"""
Session module - the conversation state and compaction engine.

Includes:
- HistoryWindow: Bounded window of recent turns
- SummaryStore: Generation-stamped rolling summary
- UsageLedger: Token accounting and cost estimates
- SessionStateStore: Persistence over a key-value store
- CompactionWorker: Background summarization
- SessionController: Orchestrates all of the above
"""

from .window import HistoryWindow
from .summary import SummarySnapshot, SummaryStore
from .usage import DEFAULT_PRICING, ModelPricing, UsageLedger, cost_estimate, get_pricing
from .persistence import FileKVStore, InMemoryKVStore, KVStore, SessionStateStore
from .compaction import CompactionResult, CompactionStatus, CompactionWorker
from .controller import SessionController, SessionSnapshot, TurnResult

__all__ = [
    "HistoryWindow",
    "SummarySnapshot",
    "SummaryStore",
    "DEFAULT_PRICING",
    "ModelPricing",
    "UsageLedger",
    "cost_estimate",
    "get_pricing",
    "FileKVStore",
    "InMemoryKVStore",
    "KVStore",
    "SessionStateStore",
    "CompactionResult",
    "CompactionStatus",
    "CompactionWorker",
    "SessionController",
    "SessionSnapshot",
    "TurnResult",
]

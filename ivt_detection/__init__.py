"""
Invalid Traffic (IVT) Detection Engine: public API.

Importing from ``ivt_detection`` gives access to all stable interfaces:

    from ivt_detection import IVTAnalyzer, AnalyzerConfig, SQLiteEventStore
"""

from .core import (
    GIVT_RULE_IDS,
    SIVT_RULE_IDS,
    AnalysisInProgressError,
    AnalyzerConfig,
    Category,
    FrequencyContext,
    Impression,
    ImpressionUpdate,
    IPFrequencyRecord,
    IVTError,
    PostgrestSettings,
    RuleEngine,
    RuleId,
    RuleResult,
    RunSummary,
    StoreError,
    StoreUnavailableError,
    Verdict,
    categorize_reasons,
    clean_ip,
    evaluate_all_rules,
)
from .engine import (
    FrequencyContextBuilder,
    IPFrequencyUpdater,
    IPStatsAccumulator,
    IVTAnalyzer,
)
from .runner import main, run_main, run_once, run_scheduled
from .store import EventStore, PostgrestEventStore, SQLiteEventStore

__all__ = [
    "AnalysisInProgressError",
    "AnalyzerConfig",
    "Category",
    "EventStore",
    "FrequencyContext",
    "FrequencyContextBuilder",
    "GIVT_RULE_IDS",
    "IPFrequencyRecord",
    "IPFrequencyUpdater",
    "IPStatsAccumulator",
    "IVTAnalyzer",
    "IVTError",
    "Impression",
    "ImpressionUpdate",
    "PostgrestEventStore",
    "PostgrestSettings",
    "RuleEngine",
    "RuleId",
    "RuleResult",
    "RunSummary",
    "SIVT_RULE_IDS",
    "SQLiteEventStore",
    "StoreError",
    "StoreUnavailableError",
    "Verdict",
    "categorize_reasons",
    "clean_ip",
    "evaluate_all_rules",
    "main",
    "run_main",
    "run_once",
    "run_scheduled",
]

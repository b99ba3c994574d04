"""Core domain: models, exceptions, rules and the rule orchestrator."""

from .exceptions import (
    AnalysisInProgressError,
    IVTError,
    StoreError,
    StoreUnavailableError,
)
from .models import (
    AnalyzerConfig,
    Category,
    FrequencyContext,
    Impression,
    ImpressionUpdate,
    IPFrequencyRecord,
    PostgrestSettings,
    RuleId,
    RuleResult,
    RunSummary,
    Verdict,
)
from .rules import (
    GIVT_RULE_IDS,
    SIVT_RULE_IDS,
    RuleEngine,
    categorize_reasons,
    clean_ip,
    evaluate_all_rules,
)

__all__ = [
    "AnalysisInProgressError",
    "AnalyzerConfig",
    "Category",
    "FrequencyContext",
    "GIVT_RULE_IDS",
    "IPFrequencyRecord",
    "IVTError",
    "Impression",
    "ImpressionUpdate",
    "PostgrestSettings",
    "RuleEngine",
    "RuleId",
    "RuleResult",
    "RunSummary",
    "SIVT_RULE_IDS",
    "StoreError",
    "StoreUnavailableError",
    "Verdict",
    "categorize_reasons",
    "clean_ip",
    "evaluate_all_rules",
]

"""Engine: frequency context, per-IP statistics and the batch analyzer."""

from .analyzer import IVTAnalyzer
from .frequency import FrequencyContextBuilder, utc_day_window
from .ip_stats import IPFrequencyUpdater, IPStatsAccumulator

__all__ = [
    "FrequencyContextBuilder",
    "IPFrequencyUpdater",
    "IPStatsAccumulator",
    "IVTAnalyzer",
    "utc_day_window",
]

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Category(str, Enum):
    GIVT = "GIVT"
    SIVT = "SIVT"


class RuleId(str, Enum):
    """Stable rule identifiers persisted in ``ivt_reasons``."""

    INVALID_IFA = "invalid_ifa"
    HIGH_FREQ_IFA = "high_freq_ifa"
    HIGH_FREQ_IP = "high_freq_ip"
    DATACENTER_IP = "datacenter_ip"
    BOT_USER_AGENT = "bot_user_agent"
    INVALID_BUNDLE = "invalid_bundle"
    DEVICE_OS_MISMATCH = "device_os_mismatch"


class Impression(BaseModel):
    """One recorded ad impression, as written by the ingestion pixel."""

    id: int
    timestamp: datetime
    pub_id: Optional[str] = None
    bundle: Optional[str] = None
    ifa: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    device_make: Optional[str] = None
    device_model: Optional[str] = None
    os: Optional[str] = None
    os_version: Optional[str] = None
    creative_id: Optional[str] = None
    is_suspicious: bool = False
    ivt_reasons: List[str] = Field(default_factory=list)
    ivt_score: int = 0
    analyzed_at: Optional[datetime] = None

    # Database rows carry NULL where the column default never applied.
    @field_validator("is_suspicious", mode="before")
    @classmethod
    def _null_flag(cls, v):
        return False if v is None else v

    @field_validator("ivt_reasons", mode="before")
    @classmethod
    def _null_reasons(cls, v):
        return [] if v is None else v

    @field_validator("ivt_score", mode="before")
    @classmethod
    def _null_score(cls, v):
        return 0 if v is None else v

    @property
    def device_key(self) -> str:
        """Make and model joined by a space, skipping whichever is missing."""
        return " ".join(part for part in (self.device_make, self.device_model) if part)


class FrequencyContext(BaseModel):
    """
    Same-day event counts keyed by IFA and by (clean) IP.

    Built once per run and passed explicitly into every rule evaluation.
    The model is frozen; treat the maps as read-only.
    """

    model_config = ConfigDict(frozen=True)

    ifa_counts: Dict[str, int] = Field(default_factory=dict)
    ip_counts: Dict[str, int] = Field(default_factory=dict)
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    def ifa_count(self, ifa: str) -> int:
        return self.ifa_counts.get(ifa, 0)

    def ip_count(self, ip: str) -> int:
        return self.ip_counts.get(ip, 0)


class RuleResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: RuleId
    rule_name: str
    category: Category
    weight: float
    triggered: bool = False


class Verdict(BaseModel):
    """Output of the rule orchestrator for a single impression."""

    model_config = ConfigDict(frozen=True)

    reasons: List[str]
    score: float
    is_suspicious: bool
    results: List[RuleResult]

    @property
    def stored_score(self) -> int:
        """Score scaled x100 for the integer ``ivt_score`` column."""
        return int(round(self.score * 100))


class ImpressionUpdate(BaseModel):
    """Write-back record for one analyzed impression."""

    id: int
    is_suspicious: bool
    ivt_reasons: List[str]
    ivt_score: int
    analyzed_at: datetime


class IPFrequencyRecord(BaseModel):
    ip: str
    impression_count: int
    unique_bundles: int
    unique_devices: int
    is_flagged: bool = True
    updated_at: datetime = Field(default_factory=utcnow)


class RunSummary(BaseModel):
    """Result of one batch analysis run."""

    analyzed_count: int = 0
    suspicious_count: int = 0
    batches_processed: int = 0
    duration_ms: int = 0
    write_errors: int = 0
    flagged_ips: int = 0
    fetch_failed: bool = False
    cancelled: bool = False
    lease_lost: bool = False


class AnalyzerConfig(BaseModel):
    """Dependency-injected configuration for IVTAnalyzer."""

    page_size: int = Field(default=5000, gt=0)
    update_chunk_size: int = Field(default=500, gt=0)
    max_concurrent_updates: int = Field(default=50, gt=0)

    ifa_frequency_threshold: int = Field(default=100, gt=0)
    ip_frequency_threshold: int = Field(default=200, gt=0)
    suspicious_score_threshold: float = Field(default=1.0, gt=0.0)

    # Lower bounds pushed into the aggregation queries to keep the maps small.
    ifa_prefilter_count: int = Field(default=50, ge=0)
    ip_prefilter_count: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def prefilters_below_thresholds(self) -> "AnalyzerConfig":
        if self.ifa_prefilter_count >= self.ifa_frequency_threshold:
            raise ValueError("ifa_prefilter_count must be below ifa_frequency_threshold")
        if self.ip_prefilter_count >= self.ip_frequency_threshold:
            raise ValueError("ip_prefilter_count must be below ip_frequency_threshold")
        return self


class PostgrestSettings(BaseModel):
    """Connection settings for the Supabase / PostgREST backend."""

    url: str
    service_key: str
    timeout_seconds: float = Field(default=30.0, gt=0.0)

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid PostgREST url: {v!r}")
        return v.rstrip("/")

    @field_validator("service_key")
    @classmethod
    def key_must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("service_key must not be empty")
        return v

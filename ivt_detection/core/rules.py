from __future__ import annotations

import re
from typing import FrozenSet, Iterable, List, Optional, Set

from .models import Category, FrequencyContext, Impression, RuleId, RuleResult, Verdict

# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------
IFA_FREQUENCY_THRESHOLD = 100
IP_FREQUENCY_THRESHOLD = 200
SUSPICIOUS_SCORE_THRESHOLD = 1.0

# ---------------------------------------------------------------------------
# Rule metadata: (name, category, weight)
# ---------------------------------------------------------------------------
RULE_METADATA = {
    RuleId.INVALID_IFA: ("Invalid IFA", Category.GIVT, 1.0),
    RuleId.HIGH_FREQ_IFA: ("High Frequency IFA", Category.SIVT, 0.8),
    RuleId.HIGH_FREQ_IP: ("High Frequency IP", Category.SIVT, 0.7),
    RuleId.DATACENTER_IP: ("Datacenter IP", Category.GIVT, 1.0),
    RuleId.BOT_USER_AGENT: ("Bot User Agent", Category.GIVT, 1.0),
    RuleId.INVALID_BUNDLE: ("Invalid Bundle", Category.GIVT, 0.6),
    RuleId.DEVICE_OS_MISMATCH: ("Device OS Mismatch", Category.SIVT, 1.0),
}

GIVT_RULE_IDS: FrozenSet[str] = frozenset(
    rid.value for rid, (_, cat, _) in RULE_METADATA.items() if cat is Category.GIVT
)
SIVT_RULE_IDS: FrozenSet[str] = frozenset(
    rid.value for rid, (_, cat, _) in RULE_METADATA.items() if cat is Category.SIVT
)

# ---------------------------------------------------------------------------
# Known cloud / hosting provider prefixes
# ---------------------------------------------------------------------------
DATACENTER_IP_PREFIXES = (
    # AWS
    "3.", "13.52.", "13.54.", "13.56.", "13.58.", "18.", "34.", "35.", "43.", "52.", "54.",
    # GCP
    "34.64.", "34.80.", "34.96.", "34.128.", "35.186.", "35.192.", "35.224.", "35.240.",
    # Azure
    "13.64.", "13.72.", "13.104.", "20.", "40.", "52.136.", "52.224.", "104.40.", "104.208.",
    # DigitalOcean
    "104.131.", "104.236.", "159.65.", "159.89.", "165.22.", "167.172.", "174.138.", "206.189.",
    # Hetzner
    "5.9.", "78.46.", "88.99.", "88.198.", "116.202.", "116.203.", "135.181.", "138.201.",
    "148.251.", "159.69.", "168.119.", "195.201.",
    # OVH
    "51.38.", "51.68.", "51.77.", "51.83.", "51.89.", "51.91.", "51.210.", "54.36.", "54.37.",
    "54.38.", "91.134.", "92.222.", "137.74.", "142.44.", "144.217.", "149.56.", "158.69.",
    "164.132.", "167.114.", "176.31.", "178.32.", "188.165.", "193.70.", "198.27.", "198.50.",
    "198.100.",
    # Vultr
    "45.32.", "45.63.", "45.76.", "45.77.", "64.156.", "64.237.", "66.42.", "104.156.",
    "104.238.", "108.61.", "136.244.", "140.82.", "149.28.", "155.138.", "207.148.", "208.167.",
    "209.250.", "217.163.",
    # Linode
    "45.33.", "45.56.", "45.79.", "50.116.", "66.175.", "69.164.", "72.14.", "74.207.",
    "96.126.", "97.107.", "139.162.", "143.42.", "172.104.", "172.105.", "176.58.", "178.79.",
    "192.155.", "194.195.", "198.58.", "198.74.",
)

# Crawlers, headless browsers, HTTP client libraries and scraping frameworks.
BOT_USER_AGENT_PATTERN = re.compile(
    r"bot|crawl|spider|slurp|mediapartners|adsbot|bingpreview|facebookexternalhit"
    r"|googlebot|baiduspider|yandex|headless|phantom|selenium|puppeteer|playwright"
    r"|wget|curl|python-requests|java/|httpclient|okhttp/1\.|libwww|go-http-client"
    r"|scrapy|urllib|aiohttp|httpx|node-fetch",
    re.IGNORECASE,
)

ALL_ZEROS_IFA = "00000000-0000-0000-0000-000000000000"
PLACEHOLDER_IFA_PREFIX = "AEBE52E7-"

TEST_BUNDLES = frozenset({"com.test", "com.example"})

APPLE_DEVICES = ("apple", "iphone", "ipad")
ANDROID_MAKERS = (
    "samsung", "huawei", "xiaomi", "oppo", "vivo", "oneplus",
    "google", "motorola", "lg", "sony",
)

_CIDR_SUFFIX = re.compile(r"/\d+$")


def clean_ip(ip: Optional[str]) -> Optional[str]:
    """Strip whitespace and a trailing CIDR suffix (``/32``) from an address."""
    if ip is None:
        return None
    return _CIDR_SUFFIX.sub("", ip.strip())


def categorize_reasons(reasons: Iterable[str]) -> Set[Category]:
    """Return the IVT categories present in a stored ``ivt_reasons`` list."""
    found: Set[Category] = set()
    for reason in reasons:
        if reason in GIVT_RULE_IDS:
            found.add(Category.GIVT)
        elif reason in SIVT_RULE_IDS:
            found.add(Category.SIVT)
    return found


def _result(rule_id: RuleId, triggered: bool) -> RuleResult:
    name, category, weight = RULE_METADATA[rule_id]
    return RuleResult(
        rule_id=rule_id,
        rule_name=name,
        category=category,
        weight=weight,
        triggered=triggered,
    )


def _blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def check_invalid_ifa(ifa: Optional[str]) -> RuleResult:
    if _blank(ifa):
        return _result(RuleId.INVALID_IFA, True)

    normalized = ifa.strip().upper()
    if normalized == ALL_ZEROS_IFA or normalized.startswith(PLACEHOLDER_IFA_PREFIX):
        return _result(RuleId.INVALID_IFA, True)

    # Low entropy: two or fewer distinct characters once separators are gone.
    unique_chars = set(normalized.replace("-", ""))
    return _result(RuleId.INVALID_IFA, len(unique_chars) <= 2)


def check_high_frequency_ifa(
    ifa: Optional[str],
    context: FrequencyContext,
    threshold: int = IFA_FREQUENCY_THRESHOLD,
) -> RuleResult:
    if _blank(ifa):
        return _result(RuleId.HIGH_FREQ_IFA, False)
    return _result(RuleId.HIGH_FREQ_IFA, context.ifa_count(ifa) > threshold)


def check_high_frequency_ip(
    ip: Optional[str],
    context: FrequencyContext,
    threshold: int = IP_FREQUENCY_THRESHOLD,
) -> RuleResult:
    ip = clean_ip(ip)
    if not ip:
        return _result(RuleId.HIGH_FREQ_IP, False)
    return _result(RuleId.HIGH_FREQ_IP, context.ip_count(ip) > threshold)


def check_datacenter_ip(ip: Optional[str]) -> RuleResult:
    ip = clean_ip(ip)
    if not ip:
        return _result(RuleId.DATACENTER_IP, False)
    return _result(RuleId.DATACENTER_IP, ip.startswith(DATACENTER_IP_PREFIXES))


def check_bot_user_agent(user_agent: Optional[str]) -> RuleResult:
    if _blank(user_agent):
        return _result(RuleId.BOT_USER_AGENT, True)
    return _result(
        RuleId.BOT_USER_AGENT, BOT_USER_AGENT_PATTERN.search(user_agent) is not None
    )


def check_invalid_bundle(bundle: Optional[str]) -> RuleResult:
    if _blank(bundle):
        return _result(RuleId.INVALID_BUNDLE, True)
    normalized = bundle.strip().lower()
    return _result(
        RuleId.INVALID_BUNDLE, normalized in TEST_BUNDLES or "." not in normalized
    )


def check_device_os_mismatch(
    device_make: Optional[str], os: Optional[str]
) -> RuleResult:
    """Apple hardware reporting Android, or an Android OEM reporting iOS."""
    if not device_make or not os:
        return _result(RuleId.DEVICE_OS_MISMATCH, False)

    make = device_make.strip().lower()
    os_name = os.strip().lower()

    if any(d in make for d in APPLE_DEVICES) and "android" in os_name:
        return _result(RuleId.DEVICE_OS_MISMATCH, True)
    if any(d in make for d in ANDROID_MAKERS) and "ios" in os_name:
        return _result(RuleId.DEVICE_OS_MISMATCH, True)
    return _result(RuleId.DEVICE_OS_MISMATCH, False)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RuleEngine:
    """
    Runs all seven rules against one impression and aggregates the verdict.

    Stateless apart from its thresholds: the frequency context comes in
    with every call, so identical inputs always give identical verdicts.
    """

    def __init__(
        self,
        ifa_frequency_threshold: int = IFA_FREQUENCY_THRESHOLD,
        ip_frequency_threshold: int = IP_FREQUENCY_THRESHOLD,
        suspicious_score_threshold: float = SUSPICIOUS_SCORE_THRESHOLD,
    ) -> None:
        self._ifa_threshold = ifa_frequency_threshold
        self._ip_threshold = ip_frequency_threshold
        self._suspicious_threshold = suspicious_score_threshold

    def run_rules(self, impression: Impression, context: FrequencyContext) -> List[RuleResult]:
        """Evaluate every rule; no rule short-circuits another."""
        return [
            check_invalid_ifa(impression.ifa),
            check_high_frequency_ifa(impression.ifa, context, self._ifa_threshold),
            check_high_frequency_ip(impression.ip, context, self._ip_threshold),
            check_datacenter_ip(impression.ip),
            check_bot_user_agent(impression.user_agent),
            check_invalid_bundle(impression.bundle),
            check_device_os_mismatch(impression.device_make, impression.os),
        ]

    def evaluate(self, impression: Impression, context: FrequencyContext) -> Verdict:
        results = self.run_rules(impression, context)
        triggered = [r for r in results if r.triggered]
        score = sum(r.weight for r in triggered)
        return Verdict(
            reasons=[r.rule_id.value for r in triggered],
            score=score,
            is_suspicious=score >= self._suspicious_threshold,
            results=results,
        )


_DEFAULT_ENGINE = RuleEngine()


def evaluate_all_rules(impression: Impression, context: FrequencyContext) -> Verdict:
    """Evaluate an impression with the default thresholds."""
    return _DEFAULT_ENGINE.evaluate(impression, context)

"""
AuthScan Orchestrator - Alert Aggregation
Groups raw ZAP findings by alert name and builds two projections:
- summary: truncated text and a few sample URLs, stored on the scan record
- detailed: full text and every occurrence, archived as a JSON report
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger("AlertAggregator")

RISK_LEVELS = ("High", "Medium", "Low", "Informational")
RISK_RANK = {level: i for i, level in enumerate(RISK_LEVELS)}

DESCRIPTIVE_FIELDS = ("risk", "confidence", "description", "solution", "reference", "cweid", "wascid")
OCCURRENCE_FIELDS = ("method", "param", "attack", "evidence")


def normalize_risk(risk: Any) -> str:
    """Map an engine risk label onto one of the four buckets; unknown labels are Informational."""
    text = str(risk or "").strip().lower()
    for level in RISK_LEVELS:
        if text == level.lower():
            return level
    return "Informational"


def truncate(text: Optional[str], budget: int) -> str:
    if not text:
        return ""
    if len(text) <= budget:
        return text
    return text[:budget] + "..."


@dataclass(frozen=True)
class Occurrence:
    """One concrete URL/parameter where an alert was raised."""
    url: Optional[str]
    method: Optional[str] = None
    param: Optional[str] = None
    attack: Optional[str] = None
    evidence: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "method": self.method,
            "param": self.param,
            "attack": self.attack,
            "evidence": self.evidence,
        }


@dataclass
class AggregatedAlert:
    """All findings sharing one alert name."""
    name: str
    risk: str = "Informational"
    confidence: Optional[str] = None
    description: Optional[str] = None
    solution: Optional[str] = None
    reference: Optional[str] = None
    cweid: Optional[str] = None
    wascid: Optional[str] = None
    occurrences: List[Occurrence] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return len(self.occurrences)

    @property
    def risk_level(self) -> str:
        return normalize_risk(self.risk)

    def summary(self, description_chars: int = 200, solution_chars: int = 150, sample_urls: int = 5) -> Dict[str, Any]:
        return {
            "alert": self.name,
            "risk": self.risk,
            "confidence": self.confidence,
            "description": truncate(self.description, description_chars),
            "solution": truncate(self.solution, solution_chars),
            "totalOccurrences": self.total_count,
            "sampleUrls": [occ.url for occ in self.occurrences[:sample_urls]],
            "hasMoreUrls": self.total_count > sample_urls,
        }

    def detailed(self) -> Dict[str, Any]:
        return {
            "alert": self.name,
            "risk": self.risk,
            "confidence": self.confidence,
            "description": self.description,
            "solution": self.solution,
            "reference": self.reference,
            "cweid": self.cweid,
            "wascid": self.wascid,
            "totalOccurrences": self.total_count,
            "occurrences": [occ.to_dict() for occ in self.occurrences],
        }


def _finding_name(finding: Dict[str, Any]) -> str:
    return str(finding.get("alert") or finding.get("name") or "Unknown Alert")


def _occurrences(finding: Dict[str, Any]) -> List[Occurrence]:
    instances = finding.get("instances") or []
    if not instances:
        # ZAP's core alerts view returns one record per instance
        return [Occurrence(
            url=finding.get("url"),
            **{k: finding.get(k) for k in OCCURRENCE_FIELDS},
        )]
    return [
        Occurrence(
            url=inst.get("uri") or inst.get("url") or finding.get("url"),
            **{k: inst.get(k) for k in OCCURRENCE_FIELDS},
        )
        for inst in instances
    ]


def sort_key(alert: AggregatedAlert) -> Tuple[int, str]:
    return RISK_RANK[alert.risk_level], alert.name


def _take_descriptive_fields(agg: AggregatedAlert, finding: Dict[str, Any]):
    for key in DESCRIPTIVE_FIELDS:
        setattr(agg, key, finding.get(key))
    if agg.risk is None:
        agg.risk = "Informational"


def group_by_name(findings: Iterable[Dict[str, Any]]) -> List[AggregatedAlert]:
    """
    Fold findings with the same name into one aggregate.

    Descriptive fields come from the highest-risk finding for a name (the first
    one seen on a tie), so the risk of an aggregate does not depend on input
    order. Occurrences accumulate in input order. The returned list is sorted
    by risk (High first) then name.
    """
    grouped: Dict[str, AggregatedAlert] = {}
    for finding in findings:
        name = _finding_name(finding)
        agg = grouped.get(name)
        if agg is None:
            agg = AggregatedAlert(name=name)
            _take_descriptive_fields(agg, finding)
            grouped[name] = agg
        elif RISK_RANK[normalize_risk(finding.get("risk"))] < RISK_RANK[agg.risk_level]:
            # ZAP can report one alert name at several risk levels
            _take_descriptive_fields(agg, finding)
        agg.occurrences.extend(_occurrences(finding))
    return sorted(grouped.values(), key=sort_key)


def compute_risk_counts(grouped: Iterable[AggregatedAlert]) -> Dict[str, int]:
    """One count per distinct alert name, bucketed by normalized risk."""
    counts = {level: 0 for level in RISK_LEVELS}
    for alert in grouped:
        counts[alert.risk_level] += 1
    return counts


def total_occurrences(grouped: Iterable[AggregatedAlert]) -> int:
    return sum(alert.total_count for alert in grouped)


@dataclass(frozen=True)
class AlertReport:
    summary: Tuple[Dict[str, Any], ...]
    detailed: Tuple[Dict[str, Any], ...]
    risk_counts: Dict[str, int]
    total_alerts: int
    total_occurrences: int


def build_alert_report(
    findings: Iterable[Dict[str, Any]],
    description_chars: int = 200,
    solution_chars: int = 150,
    sample_urls: int = 5,
) -> AlertReport:
    grouped = group_by_name(findings)
    report = AlertReport(
        summary=tuple(a.summary(description_chars, solution_chars, sample_urls) for a in grouped),
        detailed=tuple(a.detailed() for a in grouped),
        risk_counts=compute_risk_counts(grouped),
        total_alerts=len(grouped),
        total_occurrences=total_occurrences(grouped),
    )
    logger.info(f"Aggregated {report.total_occurrences} occurrences into {report.total_alerts} alerts")
    return report

from __future__ import annotations

import argparse
import csv
import json
import logging
import os
import re
import sys
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence
from xml.etree import ElementTree as ET

import psutil
import yaml
from bs4 import BeautifulSoup
from colorama import init, Fore, Style
from jinja2 import BaseLoader, Environment

init(autoreset=True)

logger = logging.getLogger("pcreport")

ROOT_ELEMENT = "HealthcheckData"
RISK_RULE_ELEMENTS = ("HealthcheckRiskRule", "RiskRule")

DEFAULT_OUTPUT = "PingCastle_Report.html"
DEFAULT_HISTORY_FILE = "pcreport_history.csv"
DEFAULT_LOW_HIGH = 20
DEFAULT_HIGH_MEDIUM = 50
DEFAULT_TOP = 5
DEFAULT_THEME = "default"
FORMATS = ("html", "csv", "json", "pdf")

# 0 = good, 100 = critical. Applied to classification, trends and worst-category selection.
POLARITY = "0=good,100=critical"

SCORE_FIELDS = ("global_score", "stale_objects", "privileged_access", "trust", "anomaly")
# Tie-break order for the worst sub-score.
SUB_SCORE_PRIORITY = ("stale_objects", "privileged_access", "trust", "anomaly")
SCORE_LABELS = {
    "global_score": "Global",
    "stale_objects": "Stale Objects",
    "privileged_access": "Privileged Accounts",
    "trust": "Trusts",
    "anomaly": "Anomalies",
}
# PingCastle has shipped both spellings of the privileged score.
SCORE_SOURCE_FIELDS = {
    "global_score": ("GlobalScore",),
    "stale_objects": ("StaleObjectsScore",),
    "privileged_access": ("PrivilegiedGroupScore", "PrivilegedScore", "PrivilegedGroupScore"),
    "trust": ("TrustScore",),
    "anomaly": ("AnomalyScore",),
}


class ReportError(Exception):
    """Base class for fatal report errors."""


class StructuralError(ReportError):
    pass


class LedgerError(ReportError):
    pass


class ConfigError(ReportError):
    pass


class Band(Enum):
    GOOD = "Good"
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def severity(self) -> int:
        return _BAND_SEVERITY[self]


_BAND_SEVERITY = {Band.GOOD: 0, Band.WARNING: 1, Band.CRITICAL: 2}


class Direction(Enum):
    IMPROVED = "Improved"
    DEGRADED = "Degraded"
    UNCHANGED = "Unchanged"


def clamp_score(value: int) -> int:
    return max(0, min(100, int(value)))


@dataclass(frozen=True)
class Scores:
    global_score: int = 0
    stale_objects: int = 0
    privileged_access: int = 0
    trust: int = 0
    anomaly: int = 0

    def __post_init__(self) -> None:
        for name in SCORE_FIELDS:
            object.__setattr__(self, name, clamp_score(getattr(self, name)))

    def items(self) -> list[tuple[str, int]]:
        return [(name, getattr(self, name)) for name in SCORE_FIELDS]

    def sub_scores(self) -> list[tuple[str, int]]:
        return [(name, getattr(self, name)) for name in SUB_SCORE_PRIORITY]


@dataclass(frozen=True)
class Finding:
    category: str
    risk_id: str
    model: str
    points: int
    rationale: str
    recommended_fix: Optional[str] = None


@dataclass(frozen=True)
class AssessmentRecord:
    domain: str
    generation_date: datetime
    scores: Scores
    risk_rules: tuple[Finding, ...] = ()
    domain_netbios: Optional[str] = None
    dc_name: Optional[str] = None


@dataclass(frozen=True)
class HistoryEntry:
    date: date
    domain: str
    scores: Scores

    @classmethod
    def from_record(cls, record: AssessmentRecord, on: Optional[date] = None) -> "HistoryEntry":
        return cls(date=on or date.today(), domain=record.domain, scores=record.scores)


@dataclass(frozen=True)
class CategorySummary:
    category: str
    count: int
    total_points: int
    average_points: float
    highest_risk: Finding


@dataclass(frozen=True)
class Trend:
    delta: int
    percent_change: float
    direction: Direction


@dataclass(frozen=True)
class Thresholds:
    low_high: int = DEFAULT_LOW_HIGH
    high_medium: int = DEFAULT_HIGH_MEDIUM

    def __post_init__(self) -> None:
        if not (0 <= self.low_high <= self.high_medium <= 100):
            raise ConfigError(
                f"Invalid thresholds: warning={self.low_high}, critical={self.high_medium} "
                "(need 0 <= warning <= critical <= 100)"
            )


@dataclass(frozen=True)
class Drift:
    new: tuple[str, ...] = ()
    resolved: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReportResult:
    record: AssessmentRecord
    thresholds: Thresholds
    bands: dict[str, Band]
    categories: list[CategorySummary]
    top_issues: list[Finding]
    worst_category: tuple[str, int]
    high_risk: list[tuple[str, int]]
    trends: Optional[dict[str, Trend]] = None
    previous: Optional[HistoryEntry] = None
    history: list[HistoryEntry] = field(default_factory=list)
    drift: Optional[Drift] = None


# ---------------------------------------------------------------------------
# Assessment importer
# ---------------------------------------------------------------------------

def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _xml_findall_by_localname(root: ET.Element, localname: str) -> list[ET.Element]:
    matches: list[ET.Element] = []
    for elem in root.iter():
        if _local_name(elem.tag).lower() == localname.lower():
            matches.append(elem)
    return matches


def _child_text(parent: ET.Element, localname: str) -> Optional[str]:
    for child in list(parent):
        if _local_name(child.tag).lower() == localname.lower():
            return _safe_str(child.text)
    return None


def _safe_str(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    s = " ".join(v.split())
    return s or None


# A real tag: bare or with name=value attributes, a closing tag, or a comment.
_MARKUP = re.compile(
    r"<(?:[A-Za-z][\w:-]*(?:\s+[\w:-]+\s*=\s*(?:\"[^\"]*\"|'[^']*'|[^\s\"'<>]+))*\s*/?"
    r"|/[A-Za-z][\w:-]*\s*"
    r"|!--.*?--)>",
    re.DOTALL,
)


def _plain_text(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    if _MARKUP.search(v):
        v = BeautifulSoup(v, "html.parser").get_text(" ", strip=True)
    return _safe_str(v)


def _parse_int(raw: str) -> Optional[int]:
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        return None


_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    # .NET writes 7 fractional digits
    text = _EXCESS_FRACTION.sub(r"\1", raw.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _find_assessment_root(root: ET.Element) -> Optional[ET.Element]:
    for elem in root.iter():
        if _local_name(elem.tag).lower() == ROOT_ELEMENT.lower():
            return elem
    return None


def _read_score(root: ET.Element, name: str) -> int:
    raw = None
    source_names = SCORE_SOURCE_FIELDS[name]
    for source_name in source_names:
        raw = _child_text(root, source_name)
        if raw is not None:
            break

    if raw is None:
        logger.warning("Score field %s is missing; defaulting to 0", source_names[0])
        return 0

    value = _parse_int(raw)
    if value is None:
        logger.warning("Score field %s is not numeric (%r); defaulting to 0", source_names[0], raw)
        return 0
    if not 0 <= value <= 100:
        logger.warning("Score field %s=%d is out of range; clamping to [0, 100]", source_names[0], value)
    return clamp_score(value)


def _read_finding(elem: ET.Element, index: int) -> Finding:
    missing: list[str] = []

    category = _child_text(elem, "Category")
    if category is None:
        missing.append("Category")
    model = _child_text(elem, "Model")
    if model is None:
        missing.append("Model")
    rationale = _plain_text(_child_text(elem, "Rationale"))
    if rationale is None:
        missing.append("Rationale")

    points = 0
    raw_points = _child_text(elem, "Points")
    if raw_points is None:
        missing.append("Points")
    else:
        parsed = _parse_int(raw_points)
        if parsed is None:
            logger.warning("Risk rule #%d has non-numeric Points %r; using 0", index, raw_points)
        else:
            points = max(0, parsed)

    recommended_fix = None
    for fix_field in ("Documentation", "RecommendedFix", "Solution"):
        recommended_fix = _plain_text(_child_text(elem, fix_field))
        if recommended_fix:
            break

    risk_id = _child_text(elem, "RiskId") or "Unknown"
    if missing:
        logger.warning("Risk rule #%d (%s) is missing %s; using defaults", index, risk_id, ", ".join(missing))

    return Finding(
        category=category or "Uncategorized",
        risk_id=risk_id,
        model=model or "Unknown",
        points=points,
        rationale=rationale or "No rationale provided",
        recommended_fix=recommended_fix,
    )


def parse_assessment(content: str | bytes, source: str = "<export>") -> AssessmentRecord:
    """Map a PingCastle health-check XML export onto an AssessmentRecord.

    Structural problems (not XML, no HealthcheckData element, no domain) raise
    StructuralError. Individual scores and risk rules fall back to defaults.
    """
    try:
        tree_root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise StructuralError(f"{source}: not a well-formed XML document ({exc})") from exc

    root = _find_assessment_root(tree_root)
    if root is None:
        raise StructuralError(f"{source}: no <{ROOT_ELEMENT}> assessment element found")

    domain = _child_text(root, "DomainFQDN")
    if not domain:
        raise StructuralError(f"{source}: required field DomainFQDN is missing or empty")

    raw_date = _child_text(root, "GenerationDate")
    generation_date = _parse_timestamp(raw_date)
    if generation_date is None:
        if raw_date:
            logger.warning("GenerationDate %r could not be parsed; using import time", raw_date)
        generation_date = datetime.now(timezone.utc)

    scores = Scores(**{name: _read_score(root, name) for name in SCORE_FIELDS})

    rule_elems: list[ET.Element] = []
    for tag in RISK_RULE_ELEMENTS:
        rule_elems = _xml_findall_by_localname(root, tag)
        if rule_elems:
            break
    findings = tuple(_read_finding(elem, idx) for idx, elem in enumerate(rule_elems, start=1))

    return AssessmentRecord(
        domain=domain,
        domain_netbios=_child_text(root, "NetBIOSName"),
        dc_name=_child_text(root, "DCName"),
        generation_date=generation_date,
        scores=scores,
        risk_rules=findings,
    )


def _validate_input_path(path: str | Path) -> Path:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(2, "Input file not found", str(p))
    if not p.is_file():
        raise StructuralError(f"{p}: input path is not a file")
    return p


def load_assessment(path: str | Path) -> AssessmentRecord:
    file_path = _validate_input_path(path)
    # bytes let the XML parser honour the BOM and encoding declaration
    return parse_assessment(file_path.read_bytes(), source=str(file_path))


# ---------------------------------------------------------------------------
# Report engine
# ---------------------------------------------------------------------------

def classify(score: int, low_high: int = DEFAULT_LOW_HIGH, high_medium: int = DEFAULT_HIGH_MEDIUM) -> Band:
    s = clamp_score(score)
    if s < low_high:
        return Band.GOOD
    if s < high_medium:
        return Band.WARNING
    return Band.CRITICAL


def compute_trend(current: int, previous: int) -> Trend:
    delta = current - previous
    percent = 0.0 if previous == 0 else round(delta / previous * 100, 1)
    if delta < 0:
        direction = Direction.IMPROVED
    elif delta > 0:
        direction = Direction.DEGRADED
    else:
        direction = Direction.UNCHANGED
    return Trend(delta=delta, percent_change=percent, direction=direction)


def compute_trends(current: Scores, previous: Scores) -> dict[str, Trend]:
    return {name: compute_trend(value, getattr(previous, name)) for name, value in current.items()}


def summarize_categories(findings: Iterable[Finding]) -> list[CategorySummary]:
    grouped: dict[str, list[Finding]] = {}
    for finding in findings:
        grouped.setdefault(finding.category, []).append(finding)

    summaries: list[CategorySummary] = []
    for category, items in grouped.items():
        total = sum(f.points for f in items)
        highest = items[0]
        for f in items[1:]:
            if f.points > highest.points:
                highest = f
        summaries.append(
            CategorySummary(
                category=category,
                count=len(items),
                total_points=total,
                average_points=total / len(items),
                highest_risk=highest,
            )
        )

    summaries.sort(key=lambda s: (-s.total_points, s.category))
    return summaries


def top_issues(findings: Iterable[Finding], n: int = DEFAULT_TOP) -> list[Finding]:
    if n <= 0:
        return []
    # sorted() is stable, so equal points keep source order
    return sorted(findings, key=lambda f: -f.points)[:n]


def worst_category(scores: Scores) -> tuple[str, int]:
    worst_name, worst_value = SUB_SCORE_PRIORITY[0], -1
    for name, value in scores.sub_scores():
        if value > worst_value:
            worst_name, worst_value = name, value
    return worst_name, worst_value


def high_risk_categories(scores: Scores, threshold: int) -> list[tuple[str, int]]:
    return [(name, value) for name, value in scores.sub_scores() if value >= threshold]


def previous_entry(entries: Sequence[HistoryEntry], before: Optional[date] = None) -> Optional[HistoryEntry]:
    """Most recent entry on or before ``before``; same-day ties go to the last one stored."""
    candidates = [
        (entry.date, idx, entry)
        for idx, entry in enumerate(entries)
        if before is None or entry.date <= before
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda c: (c[0], c[1]))[2]


def build_report(
    record: AssessmentRecord,
    thresholds: Optional[Thresholds] = None,
    top: int = DEFAULT_TOP,
    history: Sequence[HistoryEntry] = (),
    drift: Optional[Drift] = None,
    today: Optional[date] = None,
) -> ReportResult:
    thresholds = thresholds or Thresholds()
    bands = {
        name: classify(value, thresholds.low_high, thresholds.high_medium)
        for name, value in record.scores.items()
    }

    previous = previous_entry(history, before=today or date.today())
    trends = compute_trends(record.scores, previous.scores) if previous else None

    return ReportResult(
        record=record,
        thresholds=thresholds,
        bands=bands,
        categories=summarize_categories(record.risk_rules),
        top_issues=top_issues(record.risk_rules, top),
        worst_category=worst_category(record.scores),
        high_risk=high_risk_categories(record.scores, thresholds.high_medium),
        trends=trends,
        previous=previous,
        history=list(history),
        drift=drift,
    )


def compare_with_baseline(record: AssessmentRecord, baseline_json_path: Path) -> Drift:
    baseline = json.loads(Path(baseline_json_path).read_text(encoding="utf-8"))
    if not isinstance(baseline, dict):
        raise ValueError("baseline JSON must be an object")
    findings = baseline.get("findings", [])
    if not isinstance(findings, list):
        raise ValueError("baseline JSON 'findings' must be a list")

    old_set: set[str] = set()
    for f in findings:
        if isinstance(f, dict) and f.get("risk_id"):
            old_set.add(str(f["risk_id"]))

    new_set = {finding.risk_id for finding in record.risk_rules}
    return Drift(new=tuple(sorted(new_set - old_set)), resolved=tuple(sorted(old_set - new_set)))


# ---------------------------------------------------------------------------
# History ledger
# ---------------------------------------------------------------------------

LEDGER_COLUMNS = (
    "Date",
    "Domain",
    "GlobalScore",
    "StaleObjectsScore",
    "PrivilegedScore",
    "TrustScore",
    "AnomalyScore",
)
_LEDGER_SCORE_COLUMNS = dict(zip(SCORE_FIELDS, LEDGER_COLUMNS[2:]))


class HistoryLedger:
    """Append-only CSV of past scores, one row per run.

    Appends hold an exclusive ``<ledger>.lock`` file so overlapping runs
    cannot lose each other's rows.
    """

    def __init__(self, path: str | Path, lock_timeout: float = 30.0, poll_interval: float = 0.1):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval

    def load_history(self, domain: str) -> list[HistoryEntry]:
        if not self.path.exists():
            logger.info("No history ledger at %s yet; trend comparison disabled", self.path)
            return []

        entries: list[HistoryEntry] = []
        try:
            with self.path.open("r", newline="", encoding="utf-8-sig") as f:
                reader = csv.DictReader(f)
                for lineno, row in enumerate(reader, start=2):
                    entry = self._row_to_entry(row)
                    if entry is None:
                        logger.warning("Skipping malformed ledger row %d in %s", lineno, self.path)
                        continue
                    if entry.domain.lower() == domain.lower():
                        entries.append(entry)
        except OSError as exc:
            raise LedgerError(f"Cannot read history ledger {self.path}: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise LedgerError(f"History ledger {self.path} is not valid UTF-8: {exc}") from exc
        return entries

    def append_history(self, domain: str, entry: HistoryEntry) -> None:
        if entry.domain.lower() != domain.lower():
            raise LedgerError(f"History entry for {entry.domain} cannot be appended under {domain}")

        with self._locked():
            try:
                new_file = not self.path.exists() or self.path.stat().st_size == 0
                with self.path.open("a", newline="", encoding="utf-8") as f:
                    writer = csv.writer(f)
                    if new_file:
                        writer.writerow(LEDGER_COLUMNS)
                    writer.writerow(self._entry_to_row(entry))
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as exc:
                raise LedgerError(f"Cannot append to history ledger {self.path}: {exc}") from exc
        logger.debug("Appended %s history entry for %s", entry.date, entry.domain)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LedgerError(f"Cannot create ledger directory {self.path.parent}: {exc}") from exc

        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                if self._reclaim_stale_lock():
                    continue
                if time.monotonic() >= deadline:
                    raise LedgerError(
                        f"Timed out after {self.lock_timeout:g}s waiting for ledger lock {self.lock_path}"
                    )
                time.sleep(self.poll_interval)
            except OSError as exc:
                raise LedgerError(f"Cannot create ledger lock {self.lock_path}: {exc}") from exc

        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            yield
        finally:
            os.close(fd)
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass

    def _reclaim_stale_lock(self) -> bool:
        """Remove a lock left behind by a run that is no longer alive."""
        try:
            raw = self.lock_path.read_text(encoding="ascii").strip()
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        except (OSError, UnicodeDecodeError):
            return False

        if raw.isdigit():
            if psutil.pid_exists(int(raw)):
                return False
            logger.warning("Removing stale ledger lock %s (process %s is gone)", self.lock_path, raw)
        elif age > self.lock_timeout:
            # owner died before recording its pid
            logger.warning("Removing stale ledger lock %s (no owner pid, %.0fs old)", self.lock_path, age)
        else:
            return False

        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise LedgerError(f"Cannot remove stale ledger lock {self.lock_path}: {exc}") from exc
        return True

    @staticmethod
    def _entry_to_row(entry: HistoryEntry) -> list[str]:
        row = [entry.date.isoformat(), entry.domain]
        row.extend(str(getattr(entry.scores, name)) for name in SCORE_FIELDS)
        return row

    @staticmethod
    def _row_to_entry(row: dict[str, Optional[str]]) -> Optional[HistoryEntry]:
        try:
            entry_date = date.fromisoformat((row.get("Date") or "").strip())
            domain = (row.get("Domain") or "").strip()
            if not domain:
                return None
            scores = Scores(**{
                name: int((row.get(column) or "").strip())
                for name, column in _LEDGER_SCORE_COLUMNS.items()
            })
        except (ValueError, TypeError, AttributeError):
            return None
        return HistoryEntry(date=entry_date, domain=domain, scores=scores)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

THEMES: dict[str, dict[str, str]] = {
    "default": {
        "background": "#f4f6f9",
        "panel": "#ffffff",
        "text": "#222222",
        "muted": "#666666",
        "accent": "#0b5394",
        "header_text": "#ffffff",
        "border": "#dddddd",
        "good": "#2e7d32",
        "warning": "#f9a825",
        "critical": "#c62828",
    },
    "dark": {
        "background": "#1e1f24",
        "panel": "#2a2c33",
        "text": "#e6e6e6",
        "muted": "#9a9a9a",
        "accent": "#5c9ded",
        "header_text": "#ffffff",
        "border": "#3d3f47",
        "good": "#66bb6a",
        "warning": "#ffca28",
        "critical": "#ef5350",
    },
    "corporate": {
        "background": "#eef1f5",
        "panel": "#ffffff",
        "text": "#1b263b",
        "muted": "#5c6b7a",
        "accent": "#1b263b",
        "header_text": "#f0c808",
        "border": "#c9d2dc",
        "good": "#2a9d8f",
        "warning": "#e9c46a",
        "critical": "#e76f51",
    },
}

HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>PingCastle Security Report - {{ record.domain }}</title>
<style>
  body { font-family: "Segoe UI", Arial, sans-serif; margin: 0; background: {{ theme.background }}; color: {{ theme.text }}; }
  header { background: {{ theme.accent }}; color: {{ theme.header_text }}; padding: 24px 40px; }
  header h1 { margin: 0 0 6px 0; }
  main { max-width: 1200px; margin: 0 auto; padding: 24px 40px; }
  section { background: {{ theme.panel }}; border: 1px solid {{ theme.border }}; border-radius: 6px; padding: 20px; margin-bottom: 20px; }
  h2 { color: {{ theme.accent }}; margin-top: 0; }
  .meta span { margin-right: 24px; }
  .cards { display: grid; grid-template-columns: repeat(5, 1fr); gap: 14px; }
  .card { border-radius: 6px; padding: 14px; color: #ffffff; text-align: center; }
  .card .value { font-size: 32px; font-weight: bold; }
  .card .trend { font-size: 13px; margin-top: 6px; }
  .good { background: {{ theme.good }}; }
  .warning { background: {{ theme.warning }}; }
  .critical { background: {{ theme.critical }}; }
  table { width: 100%; border-collapse: collapse; }
  th, td { padding: 8px 10px; text-align: left; border-bottom: 1px solid {{ theme.border }}; vertical-align: top; }
  th { background: {{ theme.accent }}; color: {{ theme.header_text }}; }
  .muted { color: {{ theme.muted }}; }
  footer { text-align: center; color: {{ theme.muted }}; font-size: 12px; padding: 20px; }
</style>
</head>
<body>
<header>
  <h1>{% if company_name %}{{ company_name }} - {% endif %}Active Directory Security Report</h1>
  <div class="meta">
    <span>Domain: <strong id="domain">{{ record.domain }}</strong></span>
    {% if record.domain_netbios %}<span>NetBIOS: {{ record.domain_netbios }}</span>{% endif %}
    {% if record.dc_name %}<span>DC: {{ record.dc_name }}</span>{% endif %}
    <span>Assessment date: {{ record.generation_date.strftime("%Y-%m-%d %H:%M") }}</span>
  </div>
</header>
<main>
<section id="scores">
  <h2>Risk Scores</h2>
  <p class="muted">Scores range from 0 (good) to 100 (critical). Warning from {{ thresholds.low_high }}, critical from {{ thresholds.high_medium }}.</p>
  <div class="cards">
  {% for card in cards %}
    <div class="card {{ card.css }}" data-score="{{ card.name }}">
      <div class="label">{{ card.label }}</div>
      <div class="value">{{ card.value }}</div>
      <div class="band">{{ card.band }}</div>
      {% if card.trend %}
      <div class="trend" data-direction="{{ card.trend.direction.value }}">
        {% if card.trend.direction.value == "Improved" %}&#9660;{% elif card.trend.direction.value == "Degraded" %}&#9650;{% else %}&#9654;{% endif %}
        {{ "%+d"|format(card.trend.delta) }} ({{ "%+.1f"|format(card.trend.percent_change) }}%) {{ card.trend.direction.value }}
      </div>
      {% endif %}
    </div>
  {% endfor %}
  </div>
  {% if previous %}<p class="muted">Compared with the assessment recorded on {{ previous.date.isoformat() }}.</p>{% endif %}
</section>

<section id="worst-category">
  <h2>Top Concern</h2>
  <p><strong>{{ worst_label }}</strong> with a score of {{ worst_value }}.</p>
  {% if high_risk %}
  <p>Sub-scores at or above the high-risk threshold ({{ thresholds.high_medium }}):
    {% for name, value in high_risk %}{{ labels[name] }} ({{ value }}){% if not loop.last %}, {% endif %}{% endfor %}
  </p>
  {% else %}
  <p class="muted">No sub-score reaches the high-risk threshold ({{ thresholds.high_medium }}).</p>
  {% endif %}
</section>

{% if chart %}
<section id="history">
  <h2>Global Score History</h2>
  <svg width="{{ chart.width }}" height="{{ chart.height }}" viewBox="0 0 {{ chart.width }} {{ chart.height }}" role="img">
    <rect x="0" y="0" width="{{ chart.width }}" height="{{ chart.height }}" fill="{{ theme.panel }}"/>
    <polyline fill="none" stroke="{{ theme.accent }}" stroke-width="2" points="{{ chart.points }}"/>
    {% for marker in chart.markers %}
    <circle cx="{{ marker.x }}" cy="{{ marker.y }}" r="3" fill="{{ theme.accent }}"><title>{{ marker.label }}: {{ marker.score }}</title></circle>
    {% endfor %}
  </svg>
</section>
{% endif %}

<section id="categories">
  <h2>Risk Categories</h2>
  {% if categories %}
  <table>
    <thead><tr><th>Category</th><th>Findings</th><th>Total points</th><th>Average points</th><th>Highest risk</th></tr></thead>
    <tbody>
    {% for c in categories %}
      <tr><td>{{ c.category }}</td><td>{{ c.count }}</td><td>{{ c.total_points }}</td><td>{{ "%.1f"|format(c.average_points) }}</td><td>{{ c.highest_risk.risk_id }} ({{ c.highest_risk.points }})</td></tr>
    {% endfor %}
    </tbody>
  </table>
  {% else %}
  <p>No risk rules were triggered.</p>
  {% endif %}
</section>

<section id="top-issues">
  <h2>Top {{ top_issues|length }} Issues</h2>
  {% if top_issues %}
  <table>
    <thead><tr><th>Risk</th><th>Category</th><th>Points</th><th>Rationale</th></tr></thead>
    <tbody>
    {% for f in top_issues %}
      <tr><td>{{ f.risk_id }}</td><td>{{ f.category }}</td><td>{{ f.points }}</td><td>{{ f.rationale }}</td></tr>
    {% endfor %}
    </tbody>
  </table>
  {% else %}
  <p>No risk rules were triggered.</p>
  {% endif %}
</section>

{% if drift %}
<section id="drift">
  <h2>Changes Since Baseline</h2>
  <p>New risk rules: {{ drift.new|join(", ") if drift.new else "none" }}</p>
  <p>Resolved risk rules: {{ drift.resolved|join(", ") if drift.resolved else "none" }}</p>
</section>
{% endif %}

<section id="findings">
  <h2>All Findings</h2>
  {% if record.risk_rules %}
  <table>
    <thead><tr><th>Category</th><th>Risk</th><th>Model</th><th>Points</th><th>Rationale</th><th>Recommended fix</th></tr></thead>
    <tbody>
    {% for f in record.risk_rules %}
      <tr><td>{{ f.category }}</td><td>{{ f.risk_id }}</td><td>{{ f.model }}</td><td>{{ f.points }}</td><td>{{ f.rationale }}</td><td>{{ f.recommended_fix or "" }}</td></tr>
    {% endfor %}
    </tbody>
  </table>
  {% else %}
  <p>No risk rules were triggered.</p>
  {% endif %}
</section>
</main>
<footer>Generated by pcreport on {{ generated_at }}</footer>
</body>
</html>
"""

_jinja = Environment(loader=BaseLoader(), autoescape=True, trim_blocks=True, lstrip_blocks=True)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def resolve_theme(name: Optional[str]) -> dict[str, str]:
    key = (name or DEFAULT_THEME).lower()
    if key not in THEMES:
        logger.warning("Unknown theme %r; using %r", name, DEFAULT_THEME)
        key = DEFAULT_THEME
    return THEMES[key]


def _history_chart(entries: Sequence[HistoryEntry], width: int = 640, height: int = 200, pad: int = 20) -> Optional[dict]:
    if len(entries) < 2:
        return None
    step = (width - 2 * pad) / (len(entries) - 1)
    markers = []
    for idx, entry in enumerate(entries):
        x = round(pad + idx * step, 1)
        y = round(pad + (100 - entry.scores.global_score) * (height - 2 * pad) / 100, 1)
        markers.append({"x": x, "y": y, "label": entry.date.isoformat(), "score": entry.scores.global_score})
    return {
        "width": width,
        "height": height,
        "points": " ".join(f"{m['x']},{m['y']}" for m in markers),
        "markers": markers,
    }


def render_html(result: ReportResult, theme: Optional[str] = None, company_name: Optional[str] = None) -> str:
    cards = []
    for name, value in result.record.scores.items():
        band = result.bands[name]
        cards.append({
            "name": name,
            "label": SCORE_LABELS[name],
            "value": value,
            "band": band.value,
            "css": band.name.lower(),
            "trend": result.trends.get(name) if result.trends else None,
        })

    worst_name, worst_value = result.worst_category
    template = _jinja.from_string(HTML_TEMPLATE)
    return template.render(
        record=result.record,
        thresholds=result.thresholds,
        theme=resolve_theme(theme),
        company_name=company_name,
        cards=cards,
        previous=result.previous,
        worst_label=SCORE_LABELS[worst_name],
        worst_value=worst_value,
        high_risk=result.high_risk,
        labels=SCORE_LABELS,
        chart=_history_chart(result.history),
        categories=result.categories,
        top_issues=result.top_issues,
        drift=result.drift,
        generated_at=_utc_now_iso(),
    )


def _trend_dict(trend: Optional[Trend]) -> Optional[dict]:
    if trend is None:
        return None
    return {"delta": trend.delta, "percent_change": trend.percent_change, "direction": trend.direction.value}


def result_to_dict(result: ReportResult) -> dict:
    record = result.record
    worst_name, worst_value = result.worst_category
    return {
        "generated_at": _utc_now_iso(),
        "tool": "pcreport",
        "polarity": POLARITY,
        "domain": {
            "fqdn": record.domain,
            "netbios": record.domain_netbios,
            "dc_name": record.dc_name,
            "generation_date": record.generation_date.isoformat(),
        },
        "thresholds": {"warning": result.thresholds.low_high, "critical": result.thresholds.high_medium},
        "scores": {
            name: {
                "value": value,
                "band": result.bands[name].value,
                "trend": _trend_dict(result.trends.get(name) if result.trends else None),
            }
            for name, value in record.scores.items()
        },
        "previous": (
            {"date": result.previous.date.isoformat(), **dict(result.previous.scores.items())}
            if result.previous else None
        ),
        "worst_category": {"name": worst_name, "value": worst_value},
        "high_risk_categories": [{"name": n, "value": v} for n, v in result.high_risk],
        "categories": [
            {
                "category": c.category,
                "count": c.count,
                "total_points": c.total_points,
                "average_points": round(c.average_points, 2),
                "highest_risk": c.highest_risk.risk_id,
            }
            for c in result.categories
        ],
        "top_issues": [asdict(f) for f in result.top_issues],
        "findings": [asdict(f) for f in record.risk_rules],
        "drift": asdict(result.drift) if result.drift else None,
        "history": [{"date": e.date.isoformat(), **dict(e.scores.items())} for e in result.history],
    }


def export_json(result: ReportResult, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(result_to_dict(result), indent=2), encoding="utf-8")


def export_csv(result: ReportResult, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fieldnames = [
        "domain",
        "category",
        "risk_id",
        "model",
        "points",
        "rationale",
        "recommended_fix",
    ]
    with output_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for finding in result.record.risk_rules:
            writer.writerow({
                "domain": result.record.domain,
                "category": finding.category,
                "risk_id": finding.risk_id,
                "model": finding.model,
                "points": finding.points,
                "rationale": finding.rationale,
                "recommended_fix": finding.recommended_fix or "",
            })


def export_html(result: ReportResult, output_path: Path, theme: Optional[str] = None, company_name: Optional[str] = None) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(render_html(result, theme=theme, company_name=company_name), encoding="utf-8")


_BAND_COLORS = {Band.GOOD: Fore.GREEN, Band.WARNING: Fore.YELLOW, Band.CRITICAL: Fore.RED}


def print_summary(result: ReportResult) -> None:
    print(f"\n{Fore.CYAN}{'=' * 60}")
    print(f"{Fore.CYAN} PINGCASTLE REPORT: {Fore.WHITE}{Style.BRIGHT}{result.record.domain}")
    print(f"{Fore.CYAN}{'=' * 60}")

    print(f"\n{Style.BRIGHT}[Scores] 0 = good, 100 = critical:")
    for name, value in result.record.scores.items():
        band = result.bands[name]
        line = f"  {SCORE_LABELS[name]:<20} {_BAND_COLORS[band]}{value:>3} {band.value}{Style.RESET_ALL}"
        trend = result.trends.get(name) if result.trends else None
        if trend:
            line += f"  ({trend.delta:+d}, {trend.direction.value})"
        print(line)

    worst_name, worst_value = result.worst_category
    print(f"\n{Style.BRIGHT}[Top concern] {SCORE_LABELS[worst_name]} ({worst_value})")

    print(f"\n{Style.BRIGHT}[Top issues]:")
    if not result.top_issues:
        print(f"{Fore.GREEN}[+] No risk rules triggered.")
    for finding in result.top_issues:
        print(f"  {finding.points:>3}  {finding.risk_id:<30} {finding.category}")

    if result.drift:
        print(f"\n{Style.BRIGHT}[Drift] Baseline comparison:")
        print(f"  New risk rules:      {len(result.drift.new)}")
        print(f"  Resolved risk rules: {len(result.drift.resolved)}")


# ---------------------------------------------------------------------------
# Configuration and CLI
# ---------------------------------------------------------------------------

@dataclass
class Settings:
    output: Path = Path(DEFAULT_OUTPUT)
    formats: list[str] = field(default_factory=lambda: ["html"])
    theme: str = DEFAULT_THEME
    company_name: Optional[str] = None
    thresholds: Thresholds = field(default_factory=Thresholds)
    top: int = DEFAULT_TOP
    history: bool = False
    history_file: Path = Path(DEFAULT_HISTORY_FILE)
    baseline: Optional[Path] = None


def load_config(path: str | Path) -> dict:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def _config_int(value, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Config value {key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Config value {key} must be an integer, got {value!r}") from exc


def _config_bool(value, key: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConfigError(f"Config value {key} must be true or false, got {value!r}")
    return value


def _config_str(value, key: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"Config value {key} must be a string, got {value!r}")
    return value


def _parse_formats(values: Iterable[str]) -> list[str]:
    formats: list[str] = []
    for value in values:
        for part in str(value).split(","):
            fmt = part.strip().lower()
            if not fmt:
                continue
            if fmt not in FORMATS:
                raise ConfigError(f"Unknown export format {fmt!r} (choose from {', '.join(FORMATS)})")
            if fmt not in formats:
                formats.append(fmt)
    return formats


def _pick(cli_value, config: dict, key: str, default):
    if cli_value is not None:
        return cli_value
    if key in config and config[key] is not None:
        return config[key]
    return default


def resolve_settings(args: argparse.Namespace, config: dict) -> Settings:
    """Merge CLI flags over config file values over built-in defaults."""
    thresholds_cfg = config.get("thresholds") or {}
    if not isinstance(thresholds_cfg, dict):
        raise ConfigError("Config value thresholds must be a mapping")

    high_medium = _config_int(
        _pick(args.threshold, thresholds_cfg, "critical", DEFAULT_HIGH_MEDIUM), "thresholds.critical"
    )
    low_high = _pick(args.warning_threshold, thresholds_cfg, "warning", None)
    if low_high is None:
        # an unset warning bound follows a lowered critical bound
        low_high = min(DEFAULT_LOW_HIGH, high_medium)
    thresholds = Thresholds(
        low_high=_config_int(low_high, "thresholds.warning"),
        high_medium=high_medium,
    )

    raw_formats = args.formats if args.formats else config.get("formats", ["html"])
    if isinstance(raw_formats, str):
        raw_formats = [raw_formats]
    if not isinstance(raw_formats, list) or not all(isinstance(v, str) for v in raw_formats):
        raise ConfigError(f"Config value formats must be a string or a list of strings, got {raw_formats!r}")
    formats = _parse_formats(raw_formats)
    if not formats:
        raise ConfigError("No export format selected")

    history = bool(args.history) or _config_bool(config.get("history", False), "history")
    baseline = _config_str(_pick(args.baseline, config, "baseline", None), "baseline")
    company_name = _config_str(_pick(args.company_name, config, "company_name", None), "company_name")

    return Settings(
        output=Path(_config_str(_pick(args.output, config, "output", DEFAULT_OUTPUT), "output")),
        formats=formats,
        theme=_config_str(_pick(args.theme, config, "theme", DEFAULT_THEME), "theme"),
        company_name=company_name,
        thresholds=thresholds,
        top=_config_int(_pick(args.top, config, "top", DEFAULT_TOP), "top"),
        history=history,
        history_file=Path(
            _config_str(_pick(args.history_file, config, "history_file", DEFAULT_HISTORY_FILE), "history_file")
        ),
        baseline=Path(baseline) if baseline else None,
    )


def output_path_for(settings: Settings, fmt: str) -> Path:
    if fmt == "html":
        return settings.output
    return settings.output.with_suffix(f".{fmt}")


def write_outputs(result: ReportResult, settings: Settings) -> list[Path]:
    written: list[Path] = []
    for fmt in settings.formats:
        if fmt == "pdf":
            logger.warning("PDF export requires an external HTML-to-PDF converter; skipping")
            continue
        path = output_path_for(settings, fmt)
        if fmt == "html":
            export_html(result, path, theme=settings.theme, company_name=settings.company_name)
        elif fmt == "csv":
            export_csv(result, path)
        elif fmt == "json":
            export_json(result, path)
        print(f"{Fore.GREEN}[+] Wrote {fmt.upper()}: {path}")
        written.append(path)
    return written


def run(input_path: str | Path, settings: Settings, today: Optional[date] = None) -> ReportResult:
    """Import, score, persist and render one export. Raises on fatal errors."""
    today = today or date.today()
    record = load_assessment(input_path)
    logger.info("Imported %s: %d risk rules", record.domain, len(record.risk_rules))

    ledger = HistoryLedger(settings.history_file) if settings.history else None
    history = ledger.load_history(record.domain) if ledger else []

    drift = None
    if settings.baseline:
        try:
            drift = compare_with_baseline(record, settings.baseline)
        except (OSError, ValueError) as exc:
            logger.warning("Baseline comparison skipped (%s): %s", settings.baseline, exc)

    result = build_report(
        record,
        thresholds=settings.thresholds,
        top=settings.top,
        history=history,
        drift=drift,
        today=today,
    )

    if ledger:
        ledger.append_history(record.domain, HistoryEntry.from_record(record, on=today))
        result = replace(result, history=ledger.load_history(record.domain))

    print_summary(result)
    write_outputs(result, settings)
    return result


def _configure_logging(verbose: bool, log_file: Optional[str]) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def _fatal(message: str) -> int:
    logger.error(message)
    print(f"{Fore.RED}[!] {message}", file=sys.stderr)
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pcreport",
        description=(
            "PingCastle Report Engine\n\n"
            "Turns a PingCastle health-check XML export into an HTML/CSV/JSON report with "
            "score classification, trend comparison and risk prioritisation."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Scores use one polarity: 0 = good, 100 = critical.\n\n"
            "Examples:\n"
            "  pcreport ad_hc_corp.local.xml\n"
            "  pcreport ad_hc_corp.local.xml -o reports/corp.html --format html,json --history\n"
            "  pcreport ad_hc_corp.local.xml --threshold 60 --theme dark --baseline last.json\n"
        ),
    )
    parser.add_argument("input", help="PingCastle XML export (ad_hc_<domain>.xml)")
    parser.add_argument("-o", "--output", help=f"Report path (default: {DEFAULT_OUTPUT})")
    parser.add_argument("--theme", help=f"Report theme: {', '.join(THEMES)} (default: {DEFAULT_THEME})")
    parser.add_argument("--company-name", help="Branding shown in the report header")
    parser.add_argument("--threshold", type=int, help="High-risk threshold 0-100 (default: 50)")
    parser.add_argument("--warning-threshold", type=int, help="Lower bound of the warning band (default: 20)")
    parser.add_argument("--top", type=int, help="Number of top issues to list (default: 5)")
    parser.add_argument("--history", action="store_true", default=None, help="Compare with and append to the history ledger")
    parser.add_argument("--history-file", help=f"History ledger CSV (default: {DEFAULT_HISTORY_FILE})")
    parser.add_argument(
        "--format",
        dest="formats",
        action="append",
        help="Export format(s): html, csv, json, pdf; repeat or comma-separate (default: html)",
    )
    parser.add_argument("--baseline", help="Previous JSON export to diff risk rules against")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--log-file", help="Also write log messages to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        _configure_logging(args.verbose, args.log_file)
    except OSError as exc:
        return _fatal(f"Cannot open log file {args.log_file}: {exc}")

    try:
        config = load_config(args.config) if args.config else {}
        settings = resolve_settings(args, config)
        run(args.input, settings)
    except FileNotFoundError as exc:
        if exc.filename is not None and str(exc.filename) == str(Path(args.input)):
            return _fatal(f"Input file not found: {exc.filename}")
        return _fatal(f"Output error: {exc}")
    except ReportError as exc:
        return _fatal(str(exc))
    except OSError as exc:
        return _fatal(f"Output error: {exc}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

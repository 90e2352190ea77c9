"""
Data models for the diagnostics engine.

Every entity passed between stages (anomalies, hypotheses, tickets, fix plans,
knowledge entries, run summaries) is an explicit dataclass. Closed vocabularies
are enums whose values are the strings stored in PostgreSQL.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Severity of a metric deviation, from |z| thresholds"""

    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"

    @property
    def weight(self) -> int:
        return {"mild": 1, "moderate": 2, "severe": 3}[self.value]


class Confidence(str, Enum):
    """Confidence in a hypothesis"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def level(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]

    @classmethod
    def from_level(cls, level: int) -> "Confidence":
        ordered = [cls.LOW, cls.MEDIUM, cls.HIGH]
        return ordered[max(0, min(level, len(ordered) - 1))]

    def downgrade(self, steps: int = 1) -> "Confidence":
        return Confidence.from_level(self.level - steps)


class Direction(str, Enum):
    """Whether a deviation is bad or good for the business"""

    DEGRADATION = "degradation"
    IMPROVEMENT = "improvement"


class Polarity(str, Enum):
    """Static per-metric direction used to orient z-scores"""

    HIGHER_IS_BETTER = "higher_is_better"
    HIGHER_IS_WORSE = "higher_is_worse"


class Priority(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class Owner(str, Enum):
    SEO = "SEO"
    DEV = "DEV"
    ADS = "ADS"
    OPS = "OPS"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    DISMISSED = "dismissed"


# Tickets in these states take part in fingerprint deduplication
ACTIVE_TICKET_STATUSES = (TicketStatus.OPEN, TicketStatus.IN_PROGRESS)

TICKET_TRANSITIONS = {
    TicketStatus.OPEN: {TicketStatus.IN_PROGRESS, TicketStatus.DISMISSED},
    TicketStatus.IN_PROGRESS: {TicketStatus.OPEN, TicketStatus.DONE, TicketStatus.DISMISSED},
    TicketStatus.DONE: set(),
    TicketStatus.DISMISSED: set(),
}


class PlanStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    EXPIRED = "expired"
    REJECTED = "rejected"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.PARTIAL, RunStatus.FAILED)


class RunPhase(str, Enum):
    QUEUED = "queued"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    DONE = "done"


class FetchStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    """Result variants of a single metric detection"""

    ANOMALY = "anomaly"
    NO_ANOMALY = "no_anomaly"
    INSUFFICIENT_DATA = "insufficient_data"
    NO_DATA = "no_data"


class KnowledgeType(str, Enum):
    OBSERVATION = "observation"
    RECOMMENDATION = "recommendation"
    FIX_RESULT = "fix_result"
    EXPERIMENT = "experiment"
    INCIDENT = "incident"


def to_jsonable(value: Any) -> Any:
    """Convert dataclass payloads (enums, dates, nested lists) to JSON-safe values"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set):
        return [to_jsonable(v) for v in value]
    return value


def _json_column(value: Any, default: Any) -> Any:
    """JSONB columns come back decoded from psycopg2; text columns do not"""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


# ========================================
# Metrics and detection
# ========================================


@dataclass(frozen=True)
class MetricSample:
    """One daily value of a metric, as returned by a metric source"""

    site_id: str
    source: str
    metric_key: str
    date: date
    value: float | None


@dataclass(frozen=True)
class MetricSpec:
    """Catalog entry for a metric the engine knows how to score"""

    source: str
    metric_key: str
    polarity: Polarity = Polarity.HIGHER_IS_BETTER
    label: str = ""

    @property
    def qualified_key(self) -> str:
        return f"{self.source}.{self.metric_key}"


@dataclass(frozen=True)
class WindowStats:
    """Baseline and current-window statistics of one metric"""

    baseline_mean: float | None
    baseline_stddev: float | None
    baseline_count: int
    current_mean: float | None
    current_count: int
    z_score: float | None = None
    delta_pct: float | None = None


@dataclass
class AnomalyRecord:
    """A deviation flagged for one metric in one run"""

    anomaly_id: str
    run_id: str
    site_id: str
    source: str
    metric_key: str
    current_value: float
    baseline_mean: float
    baseline_stddev: float
    z_score: float
    delta_pct: float | None
    severity: Severity
    direction: Direction
    start_date: date
    created_at: datetime

    @property
    def qualified_key(self) -> str:
        return f"{self.source}.{self.metric_key}"

    @property
    def is_degradation(self) -> bool:
        return self.direction == Direction.DEGRADATION

    def to_dict(self) -> dict:
        return to_jsonable(asdict(self))

    def to_db_dict(self) -> dict:
        """Convert to dict for database insertion"""
        data = asdict(self)
        data["severity"] = self.severity.value
        data["direction"] = self.direction.value
        return data

    @classmethod
    def from_row(cls, row: dict) -> "AnomalyRecord":
        return cls(
            anomaly_id=str(row["anomaly_id"]),
            run_id=str(row["run_id"]),
            site_id=row["site_id"],
            source=row["source"],
            metric_key=row["metric_key"],
            current_value=float(row["current_value"]),
            baseline_mean=float(row["baseline_mean"]),
            baseline_stddev=float(row["baseline_stddev"]),
            z_score=float(row["z_score"]),
            delta_pct=float(row["delta_pct"]) if row.get("delta_pct") is not None else None,
            severity=Severity(row["severity"]),
            direction=Direction(row["direction"]),
            start_date=row["start_date"],
            created_at=row["created_at"],
        )


@dataclass
class DetectionOutcome:
    """Result of scoring one metric: anomaly, no anomaly, insufficient or no data"""

    status: OutcomeStatus
    source: str
    metric_key: str
    record: AnomalyRecord | None = None
    stats: WindowStats | None = None
    detail: str = ""

    @property
    def is_anomaly(self) -> bool:
        return self.status == OutcomeStatus.ANOMALY

    @property
    def qualified_key(self) -> str:
        return f"{self.source}.{self.metric_key}"


# ========================================
# Classification
# ========================================


@dataclass
class Evidence:
    """A statement backing (or contradicting) a hypothesis"""

    kind: str  # metric | comparison | check | note
    statement: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class Hypothesis:
    """A ranked root-cause candidate for a run"""

    run_id: str
    rank: int
    hypothesis_key: str
    confidence: Confidence
    summary: str = ""
    supporting_anomaly_ids: list[str] = field(default_factory=list)
    missing_data: list[str] = field(default_factory=list)
    evidence: list[Evidence] = field(default_factory=list)
    degraded: bool = False

    def to_dict(self) -> dict:
        return to_jsonable(asdict(self))

    def to_db_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "rank": self.rank,
            "hypothesis_key": self.hypothesis_key,
            "confidence": self.confidence.value,
            "summary": self.summary,
            "supporting_anomaly_ids": json.dumps(self.supporting_anomaly_ids),
            "missing_data": json.dumps(self.missing_data),
            "evidence": json.dumps(to_jsonable([asdict(e) for e in self.evidence])),
            "degraded": self.degraded,
        }

    @classmethod
    def from_row(cls, row: dict) -> "Hypothesis":
        return cls(
            run_id=str(row["run_id"]),
            rank=int(row["rank"]),
            hypothesis_key=row["hypothesis_key"],
            confidence=Confidence(row["confidence"]),
            summary=row.get("summary") or "",
            supporting_anomaly_ids=_json_column(row.get("supporting_anomaly_ids"), []),
            missing_data=_json_column(row.get("missing_data"), []),
            evidence=[Evidence(**e) for e in _json_column(row.get("evidence"), [])],
            degraded=bool(row.get("degraded", False)),
        )


@dataclass(frozen=True)
class CorroborationResult:
    """Answer of a secondary check such as 'did content change in this window?'"""

    degraded: bool
    details: str = ""


# ========================================
# Tickets
# ========================================


@dataclass
class Ticket:
    """A human-actionable item, deduplicated across runs by fingerprint"""

    ticket_id: str
    run_id: str
    site_id: str
    hypothesis_key: str | None
    issue_type: str
    target: str
    fingerprint: str
    title: str
    owner: Owner
    priority: Priority
    status: TicketStatus = TicketStatus.OPEN
    steps: list[str] = field(default_factory=list)
    evidence: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_seen_at: datetime | None = None
    last_seen_run_id: str | None = None
    occurrences: int = 1

    def to_dict(self) -> dict:
        return to_jsonable(asdict(self))

    def to_db_dict(self) -> dict:
        data = asdict(self)
        data["owner"] = self.owner.value
        data["priority"] = self.priority.value
        data["status"] = self.status.value
        data["steps"] = json.dumps(self.steps)
        data["evidence"] = json.dumps(to_jsonable(self.evidence))
        return data

    @classmethod
    def from_row(cls, row: dict) -> "Ticket":
        return cls(
            ticket_id=str(row["ticket_id"]),
            run_id=str(row["run_id"]),
            site_id=row["site_id"],
            hypothesis_key=row.get("hypothesis_key"),
            issue_type=row["issue_type"],
            target=row["target"],
            fingerprint=row["fingerprint"],
            title=row["title"],
            owner=Owner(row["owner"]),
            priority=Priority(row["priority"]),
            status=TicketStatus(row["status"]),
            steps=_json_column(row.get("steps"), []),
            evidence=_json_column(row.get("evidence"), {}),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            last_seen_at=row.get("last_seen_at"),
            last_seen_run_id=row.get("last_seen_run_id"),
            occurrences=int(row.get("occurrences") or 1),
        )


@dataclass
class TicketBatch:
    """Tickets produced for one run, with write statistics"""

    tickets: list[Ticket] = field(default_factory=list)
    created: int = 0
    refreshed: int = 0
    failed: int = 0


# ========================================
# Fix plans and knowledge
# ========================================


@dataclass
class FixPlanItem:
    """One bounded remediation step of a plan"""

    action: str
    target: str
    rationale: str = ""
    origin: str = "template"  # template | anomaly | knowledge


@dataclass(frozen=True)
class CooldownStatus:
    """Derived from the last executed plan of a (site, topic)"""

    allowed: bool
    next_allowed_at: datetime | None = None
    last_executed_at: datetime | None = None
    reason: str | None = None


@dataclass
class FixPlan:
    """A time-boxed, size-bounded remediation plan for one (site, topic)"""

    plan_id: str
    site_id: str
    topic: str
    generated_at: datetime
    expires_at: datetime
    cooldown_allowed: bool
    cooldown_next_allowed_at: datetime | None = None
    cooldown_reason: str | None = None
    items: list[FixPlanItem] = field(default_factory=list)
    status: PlanStatus = PlanStatus.PENDING
    evidence: dict[str, Any] = field(default_factory=dict)
    knowledge_context: list[str] = field(default_factory=list)
    knowledge_degraded: bool = False
    executed_at: datetime | None = None
    execution_reference: str | None = None
    override_reason: str | None = None
    rejection_reason: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return to_jsonable(asdict(self))

    def to_db_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["items"] = json.dumps([asdict(item) for item in self.items])
        data["evidence"] = json.dumps(to_jsonable(self.evidence))
        data["knowledge_context"] = json.dumps(self.knowledge_context)
        return data

    @classmethod
    def from_row(cls, row: dict) -> "FixPlan":
        return cls(
            plan_id=str(row["plan_id"]),
            site_id=row["site_id"],
            topic=row["topic"],
            generated_at=row["generated_at"],
            expires_at=row["expires_at"],
            cooldown_allowed=bool(row["cooldown_allowed"]),
            cooldown_next_allowed_at=row.get("cooldown_next_allowed_at"),
            cooldown_reason=row.get("cooldown_reason"),
            items=[FixPlanItem(**item) for item in _json_column(row.get("items"), [])],
            status=PlanStatus(row["status"]),
            evidence=_json_column(row.get("evidence"), {}),
            knowledge_context=_json_column(row.get("knowledge_context"), []),
            knowledge_degraded=bool(row.get("knowledge_degraded", False)),
            executed_at=row.get("executed_at"),
            execution_reference=row.get("execution_reference"),
            override_reason=row.get("override_reason"),
            rejection_reason=row.get("rejection_reason"),
        )


@dataclass(frozen=True)
class ChangeResult:
    """Answer of the change executor"""

    applied: bool
    reference_id: str | None = None
    details: str = ""


@dataclass
class ExecutionResult:
    """What executing a fix plan did"""

    plan_id: str
    site_id: str
    topic: str
    items_executed: list[FixPlanItem]
    applied: bool
    reference_id: str | None
    details: str
    executed_at: datetime
    cooldown_overridden: bool = False
    override_reason: str | None = None
    knowledge_recorded: bool = False

    def to_dict(self) -> dict:
        return to_jsonable(asdict(self))


@dataclass
class KnowledgeEntry:
    """Append-only learning record"""

    site_id: str
    type: KnowledgeType
    topic: str
    title: str
    evidence: dict[str, Any] = field(default_factory=dict)
    decision: str = ""
    outcome: str = ""
    tags: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    entry_id: str | None = None

    def to_dict(self) -> dict:
        return to_jsonable(asdict(self))

    def to_db_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["evidence"] = json.dumps(to_jsonable(self.evidence))
        data["tags"] = json.dumps(self.tags)
        return data

    @classmethod
    def from_row(cls, row: dict) -> "KnowledgeEntry":
        return cls(
            entry_id=str(row["entry_id"]) if row.get("entry_id") is not None else None,
            site_id=row["site_id"],
            type=KnowledgeType(row["type"]),
            topic=row["topic"],
            title=row["title"],
            evidence=_json_column(row.get("evidence"), {}),
            decision=row.get("decision") or "",
            outcome=row.get("outcome") or "",
            tags=_json_column(row.get("tags"), []),
            created_at=row.get("created_at"),
        )


# ========================================
# Runs
# ========================================


@dataclass
class RunSummary:
    """Persisted state and summary of one diagnostic run"""

    run_id: str
    site_id: str
    run_date: date
    status: RunStatus = RunStatus.QUEUED
    phase: RunPhase = RunPhase.QUEUED
    forced: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    source_statuses: dict[str, str] = field(default_factory=dict)
    source_errors: dict[str, str] = field(default_factory=dict)
    anomaly_count: int = 0
    primary_hypothesis: str | None = None
    primary_confidence: str | None = None
    degraded_message: str | None = None
    tickets_created: int = 0
    tickets_refreshed: int = 0
    tickets_failed: int = 0
    error: str | None = None

    @property
    def ticket_count(self) -> int:
        return self.tickets_created + self.tickets_refreshed

    @property
    def failed_sources(self) -> list[str]:
        return sorted(
            source
            for source, status in self.source_statuses.items()
            if status == FetchStatus.FAILED.value
        )

    def to_dict(self) -> dict:
        data = to_jsonable(asdict(self))
        data["ticket_count"] = self.ticket_count
        data["failed_sources"] = self.failed_sources
        return data

    def to_db_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["phase"] = self.phase.value
        data["source_statuses"] = json.dumps(self.source_statuses)
        data["source_errors"] = json.dumps(self.source_errors)
        return data

    @classmethod
    def from_row(cls, row: dict) -> "RunSummary":
        return cls(
            run_id=str(row["run_id"]),
            site_id=row["site_id"],
            run_date=row["run_date"],
            status=RunStatus(row["status"]),
            phase=RunPhase(row["phase"]),
            forced=bool(row.get("forced", False)),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            source_statuses=_json_column(row.get("source_statuses"), {}),
            source_errors=_json_column(row.get("source_errors"), {}),
            anomaly_count=int(row.get("anomaly_count") or 0),
            primary_hypothesis=row.get("primary_hypothesis"),
            primary_confidence=row.get("primary_confidence"),
            degraded_message=row.get("degraded_message"),
            tickets_created=int(row.get("tickets_created") or 0),
            tickets_refreshed=int(row.get("tickets_refreshed") or 0),
            tickets_failed=int(row.get("tickets_failed") or 0),
            error=row.get("error"),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "RunSummary":
        """Rebuild from ``to_dict`` output (used by the Redis cache)"""
        row = {k: v for k, v in data.items() if k not in ("ticket_count", "failed_sources")}
        row["run_date"] = date.fromisoformat(row["run_date"])
        for key in ("started_at", "completed_at"):
            if row.get(key):
                row[key] = datetime.fromisoformat(row[key])
        return cls.from_row(row)

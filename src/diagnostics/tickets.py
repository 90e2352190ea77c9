"""
Ticket generator.

Renders every hypothesis of a run into action tickets from a static template
table, fingerprints them so the same underlying issue maps to the same ticket
across runs, and writes each one with an atomic insert-or-refresh.
"""

import hashlib
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from .errors import InvalidState, TicketNotFound
from .models import (
    TICKET_TRANSITIONS,
    AnomalyRecord,
    Confidence,
    Hypothesis,
    Owner,
    Priority,
    Severity,
    Ticket,
    TicketBatch,
    TicketStatus,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TicketTemplate:
    """Action template attached to a hypothesis key"""

    issue_type: str
    target: str
    title: str
    owner: Owner
    steps: tuple[str, ...]


TICKET_TEMPLATES: dict[str, tuple[TicketTemplate, ...]] = {
    "visibility_loss": (
        TicketTemplate(
            "indexing_blocked",
            "robots and noindex directives",
            "Check robots/noindex directives blocking indexing",
            Owner.DEV,
            (
                "List templates serving noindex or blocked by robots.txt",
                "Confirm whether each block is intentional",
                "Remove accidental blocks and request re-indexing",
                "Monitor impressions for 7 days",
            ),
        ),
        TicketTemplate(
            "canonical_mismatch",
            "canonical tags",
            "Validate canonical tags on top landing pages",
            Owner.SEO,
            (
                "Crawl top landing pages and compare canonical with URL",
                "Fix canonicals pointing at the wrong page",
                "Inspect fixed URLs in Search Console",
            ),
        ),
    ),
    "tracking_attribution_gap": (
        TicketTemplate(
            "tracking_gap",
            "ga4 tag",
            "Fix analytics tracking gap",
            Owner.DEV,
            (
                "Verify the GA4 tag fires on all pages with Tag Assistant",
                "Check tag manager for recent publishes",
                "Validate the measurement ID",
                "Check consent mode is not blocking events",
                "Confirm events arrive in realtime reports",
            ),
        ),
    ),
    "ctr_loss": (
        TicketTemplate(
            "snippet_ctr",
            "titles and meta descriptions",
            "Optimize snippets to recover CTR",
            Owner.SEO,
            (
                "Identify queries with the largest CTR drop",
                "Rewrite titles and meta descriptions for those pages",
                "Add structured data where rich results apply",
                "Monitor CTR for 14 days",
            ),
        ),
    ),
    "site_availability_issue": (
        TicketTemplate(
            "availability",
            "site uptime",
            "Investigate rising errors and response times",
            Owner.OPS,
            (
                "Inspect error logs for failing endpoints",
                "Correlate with recent deploys",
                "Roll back or hotfix the offending change",
                "Verify uptime checks are green",
            ),
        ),
    ),
    "paid_campaign_issue": (
        TicketTemplate(
            "paid_campaign",
            "ads account",
            "Review paid campaign spend change",
            Owner.ADS,
            (
                "Check budgets and pacing of active campaigns",
                "Review bid strategy changes in the window",
                "Confirm billing status of the ads account",
            ),
        ),
    ),
    "content_regression": (
        TicketTemplate(
            "content_regression",
            "changed pages",
            "Review content changes made in the window",
            Owner.SEO,
            (
                "List pages whose content changed",
                "Compare rankings before and after each change",
                "Restore content that lost relevance",
            ),
        ),
    ),
    "tag_misconfiguration": (
        TicketTemplate(
            "tag_misconfiguration",
            "tag manager container",
            "Audit tag manager configuration",
            Owner.DEV,
            ("Diff the current container against the last known good version", "Republish a fixed version"),
        ),
    ),
    "serp_feature_shift": (
        TicketTemplate(
            "serp_feature_shift",
            "search result features",
            "Adapt to search result layout change",
            Owner.SEO,
            ("Review SERP features for top queries", "Target the new features with structured content"),
        ),
    ),
    "performance_regression": (
        TicketTemplate(
            "performance_regression",
            "core web vitals",
            "Fix Core Web Vitals regression",
            Owner.DEV,
            ("Find templates whose LCP/CLS/INP regressed", "Profile and fix the slowest template"),
        ),
    ),
}

# confidence -> (priority when the strongest anomaly is severe, otherwise)
PRIORITY_BY_CONFIDENCE = {
    Confidence.HIGH: (Priority.P0, Priority.P1),
    Confidence.MEDIUM: (Priority.P1, Priority.P2),
    Confidence.LOW: (Priority.P2, Priority.P3),
}

_DIGITS = re.compile(r"\d+")
_SPACES = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lower-case, drop counts/dates, collapse whitespace"""
    text = _DIGITS.sub(" ", text.lower())
    return _SPACES.sub(" ", text).strip()


def fingerprint(site_id: str, issue_type: str, target: str) -> str:
    """Stable identity of an issue across runs"""
    raw = f"{site_id}|{normalize(issue_type)}|{normalize(target)}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


def priority_for(confidence: Confidence, anomalies: list[AnomalyRecord]) -> Priority:
    severe = any(a.severity == Severity.SEVERE for a in anomalies)
    higher, lower = PRIORITY_BY_CONFIDENCE[confidence]
    return higher if severe else lower


class TicketGenerator:
    """Creates or refreshes tickets for a run's hypotheses"""

    def __init__(self, store, clock: Callable[[], datetime] | None = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(UTC))

    def generate(
        self,
        run_id: str,
        site_id: str,
        hypotheses: list[Hypothesis],
        anomalies: list[AnomalyRecord],
    ) -> TicketBatch:
        """Render, deduplicate and persist the tickets of a run

        Each write is its own transaction; a failed write is counted and the
        remaining tickets are still written.
        """
        by_id = {a.anomaly_id: a for a in anomalies}
        batch = TicketBatch()
        seen: set[str] = set()

        for hypothesis in sorted(hypotheses, key=lambda h: h.rank):
            for ticket in self._candidates(run_id, site_id, hypothesis, by_id):
                if ticket.fingerprint in seen:
                    continue
                seen.add(ticket.fingerprint)

                try:
                    stored, created = self.store.upsert_ticket(ticket)
                except Exception as e:
                    batch.failed += 1
                    logger.error(
                        "Failed to write ticket",
                        run_id=run_id,
                        fingerprint=ticket.fingerprint,
                        issue_type=ticket.issue_type,
                        error=str(e),
                    )
                    continue

                batch.tickets.append(stored)
                if created:
                    batch.created += 1
                else:
                    batch.refreshed += 1
                logger.debug(
                    "Ticket written",
                    ticket_id=stored.ticket_id,
                    fingerprint=stored.fingerprint,
                    created=created,
                    priority=stored.priority.value,
                )

        logger.info(
            "Tickets generated",
            run_id=run_id,
            created=batch.created,
            refreshed=batch.refreshed,
            failed=batch.failed,
        )
        return batch

    def _candidates(
        self,
        run_id: str,
        site_id: str,
        hypothesis: Hypothesis,
        anomalies_by_id: dict[str, AnomalyRecord],
    ) -> list[Ticket]:
        supporting = [
            anomalies_by_id[a_id]
            for a_id in hypothesis.supporting_anomaly_ids
            if a_id in anomalies_by_id
        ]

        if hypothesis.hypothesis_key == "inconclusive":
            return [
                self._build(
                    run_id,
                    site_id,
                    hypothesis,
                    TicketTemplate(
                        "unexplained_change",
                        anomaly.qualified_key,
                        f"Investigate unexplained {anomaly.direction.value} in {anomaly.qualified_key}",
                        Owner.SEO,
                        (
                            "Check annotations and release notes for the window",
                            "Compare with the same period last year",
                            "Escalate if the change persists",
                        ),
                    ),
                    [anomaly],
                )
                for anomaly in supporting
            ]

        templates = TICKET_TEMPLATES.get(hypothesis.hypothesis_key, ())
        return [self._build(run_id, site_id, hypothesis, t, supporting) for t in templates]

    def _build(
        self,
        run_id: str,
        site_id: str,
        hypothesis: Hypothesis,
        template: TicketTemplate,
        anomalies: list[AnomalyRecord],
    ) -> Ticket:
        now = self.clock()
        return Ticket(
            ticket_id=str(uuid.uuid4()),
            run_id=run_id,
            site_id=site_id,
            hypothesis_key=hypothesis.hypothesis_key,
            issue_type=template.issue_type,
            target=template.target,
            fingerprint=fingerprint(site_id, template.issue_type, template.target),
            title=template.title,
            owner=template.owner,
            priority=priority_for(hypothesis.confidence, anomalies),
            steps=list(template.steps),
            evidence={
                "run_id": run_id,
                "hypothesis_key": hypothesis.hypothesis_key,
                "confidence": hypothesis.confidence.value,
                "missing_data": hypothesis.missing_data,
                "anomalies": [
                    {
                        "metric": a.qualified_key,
                        "severity": a.severity.value,
                        "z_score": round(a.z_score, 3),
                        "delta_pct": round(a.delta_pct, 2) if a.delta_pct is not None else None,
                        "start_date": a.start_date.isoformat(),
                    }
                    for a in anomalies
                ],
            },
            created_at=now,
            updated_at=now,
            last_seen_at=now,
            last_seen_run_id=run_id,
        )

    def update_status(self, ticket_id: str, status: TicketStatus) -> Ticket:
        """Apply an operator status change

        Raises:
            TicketNotFound: unknown ticket
            InvalidState: transition not allowed from the current status
        """
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFound(f"Ticket {ticket_id} not found", stage="ticket_status")

        if status not in TICKET_TRANSITIONS[ticket.status]:
            raise InvalidState(
                f"Ticket {ticket_id} cannot move from {ticket.status.value} to {status.value}",
                stage="ticket_status",
            )

        updated = self.store.update_ticket_status(ticket_id, ticket.status, status, self.clock())
        if updated is None:
            raise InvalidState(
                f"Ticket {ticket_id} changed concurrently", stage="ticket_status"
            )

        logger.info(
            "Ticket status changed",
            ticket_id=ticket_id,
            from_status=ticket.status.value,
            to_status=status.value,
        )
        return updated

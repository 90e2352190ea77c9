"""
Implementations of the external collaborators.

- DatabaseMetricSource: daily samples already loaded into ``metric_samples``
- HttpCorroborationCheck / HttpChangeExecutor: JSON over HTTP to worker services

Errors are raised to the caller, which enforces timeouts and records failures.
"""

from dataclasses import asdict
from datetime import date

import psycopg2
import requests
import structlog

from .errors import SourceFetchFailed
from .models import ChangeResult, CorroborationResult, FixPlanItem, MetricSample

logger = structlog.get_logger(__name__)


class DatabaseMetricSource:
    """MetricSource reading one source's rows from ``metric_samples``"""

    def __init__(self, db, source: str):
        self.db = db
        self.source = source

    def fetch_daily(
        self, site_id: str, metric_key: str, start_date: date, end_date: date
    ) -> list[MetricSample]:
        try:
            return self.db.query_samples(site_id, self.source, metric_key, start_date, end_date)
        except psycopg2.Error as e:
            raise SourceFetchFailed(self.source, f"{self.source}.{metric_key} query failed: {e}") from e

    def __repr__(self) -> str:
        return f"DatabaseMetricSource(source={self.source!r})"


class _WorkerClient:
    """Shared HTTP plumbing for worker services"""

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers["Content-Type"] = "application/json"
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        resp = self.session.post(url, json=payload, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()


class HttpCorroborationCheck(_WorkerClient):
    """CorroborationCheck answered by ``POST {base_url}/checks/{topic}``"""

    def run(self, site_id: str, topic: str, window: tuple[date, date]) -> CorroborationResult:
        start, end = window
        data = self._post(
            f"/checks/{topic}",
            {"site_id": site_id, "start_date": start.isoformat(), "end_date": end.isoformat()},
        )
        logger.debug("Corroboration check answered", topic=topic, degraded=data.get("degraded"))
        return CorroborationResult(
            degraded=bool(data.get("degraded", False)),
            details=str(data.get("details", "")),
        )


class HttpChangeExecutor(_WorkerClient):
    """ChangeExecutor backed by ``POST {base_url}/changes``"""

    def apply(self, plan_id: str, items: list[FixPlanItem]) -> ChangeResult:
        data = self._post(
            "/changes",
            {"plan_id": plan_id, "items": [asdict(item) for item in items]},
        )
        logger.info(
            "Change executor answered",
            plan_id=plan_id,
            applied=data.get("applied"),
            reference_id=data.get("reference_id"),
        )
        return ChangeResult(
            applied=bool(data.get("applied", False)),
            reference_id=data.get("reference_id"),
            details=str(data.get("details", "")),
        )

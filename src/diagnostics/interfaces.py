"""
Interfaces of the external collaborators consumed by the engine.

Implementations may be in-process, HTTP or queue based; the engine only relies
on these call shapes. Any raised exception (including a timeout enforced by the
caller) counts as a failure of that one call.
"""

from datetime import date
from typing import Any, Protocol

from .models import ChangeResult, CorroborationResult, FixPlanItem, KnowledgeEntry, MetricSample


class MetricSource(Protocol):
    """Daily samples of one source (ga4, gsc, ads, uptime, ...)"""

    def fetch_daily(
        self, site_id: str, metric_key: str, start_date: date, end_date: date
    ) -> list[MetricSample]: ...


class CorroborationCheck(Protocol):
    """Secondary evidence such as content changes or Core Web Vitals"""

    def run(self, site_id: str, topic: str, window: tuple[date, date]) -> CorroborationResult: ...


class KnowledgeStore(Protocol):
    """Long-term learning records (best-effort on both read and write)"""

    def query(
        self, site_id: str, topic: str, filters: dict[str, Any] | None = None, limit: int = 20
    ) -> list[KnowledgeEntry]: ...

    def write(self, entry: KnowledgeEntry) -> bool: ...


class ChangeExecutor(Protocol):
    """Applies remediation items (e.g. opens a PR or pushes a CMS change)"""

    def apply(self, plan_id: str, items: list[FixPlanItem]) -> ChangeResult: ...

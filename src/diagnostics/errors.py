"""
Error taxonomy of the diagnostics engine.

Only run-fatal and fix-plan misuse errors are raised to callers. Per-source and
per-check failures are captured as data (failure maps, ``missing_data`` notes)
and never escape their stage. "Insufficient data" and "no matching rule" are
result variants, not exceptions.
"""

from datetime import datetime


class DiagnosticsError(Exception):
    """Base class; carries the identifiers needed to retry or investigate"""

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        plan_id: str | None = None,
        stage: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.run_id = run_id
        self.plan_id = plan_id
        self.stage = stage

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "run_id": self.run_id,
            "plan_id": self.plan_id,
            "stage": self.stage,
        }


class SourceFetchFailed(DiagnosticsError):
    """One metric source could not be fetched; non-fatal to the run"""

    def __init__(self, source: str, message: str, *, run_id: str | None = None):
        super().__init__(message, run_id=run_id, stage="fetch")
        self.source = source


class AllSourcesFailed(DiagnosticsError):
    """Every metric source failed; the run is marked failed"""

    def __init__(self, run_id: str, failures: dict[str, str]):
        sources = ", ".join(sorted(failures))
        super().__init__(f"All metric sources failed: {sources}", run_id=run_id, stage="fetch")
        self.failures = failures

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["failures"] = self.failures
        return data


class RunNotFound(DiagnosticsError):
    pass


class InvalidState(DiagnosticsError):
    """An entity is not in a state that allows the requested transition"""


class PlanNotFound(InvalidState):
    pass


class TicketNotFound(InvalidState):
    pass


class PlanExpired(DiagnosticsError):
    def __init__(self, plan_id: str, expires_at: datetime):
        super().__init__(
            f"Fix plan expired at {expires_at.isoformat()}",
            plan_id=plan_id,
            stage="execute",
        )
        self.expires_at = expires_at

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["expires_at"] = self.expires_at.isoformat()
        return data


class CooldownActive(DiagnosticsError):
    """Execution blocked until the topic's cooldown window has passed"""

    def __init__(self, plan_id: str, next_allowed_at: datetime | None, reason: str):
        super().__init__(reason, plan_id=plan_id, stage="execute")
        self.next_allowed_at = next_allowed_at
        self.reason = reason

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["next_allowed_at"] = self.next_allowed_at.isoformat() if self.next_allowed_at else None
        data["reason"] = self.reason
        return data


class PendingPlanExists(InvalidState):
    """Another pending plan already holds the (site, topic) slot"""


class ChangeExecutionFailed(DiagnosticsError):
    """The change executor failed or refused; the claim on the plan is released"""


class KnowledgeStoreUnavailable(DiagnosticsError):
    """Knowledge store query failed; callers log it and plan without knowledge"""

"""
Redis cache for run summaries.

Only terminal runs are cached: a running run changes until it finishes.
"""

import json

import redis
import structlog

from .config import DiagnosticsConfig
from .models import RunSummary

logger = structlog.get_logger(__name__)


class RunSummaryCache:
    """Redis read-through cache for ``get_run_status``"""

    def __init__(self, config: DiagnosticsConfig):
        try:
            self.redis = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                decode_responses=True,
            )
            self.ttl = config.cache_ttl_seconds
            self.redis.ping()
            logger.info("Redis cache initialized", host=config.redis_host, port=config.redis_port)
        except Exception as e:
            logger.error("Failed to initialize Redis", error=str(e))
            raise

    def save_summary(self, summary: RunSummary) -> bool:
        """Cache a run summary; non-terminal runs are skipped"""
        if not summary.status.is_terminal:
            return False

        key = self._make_key(summary.run_id)
        try:
            self.redis.setex(key, self.ttl, json.dumps(summary.to_dict()))
            logger.debug("Run summary cached", key=key)
            return True
        except Exception as e:
            logger.error("Failed to cache run summary", key=key, error=str(e))
            return False

    def load_summary(self, run_id: str) -> RunSummary | None:
        key = self._make_key(run_id)
        try:
            data = self.redis.get(key)
            if data is None:
                return None
            return RunSummary.from_dict(json.loads(data))
        except Exception as e:
            logger.error("Failed to load run summary from Redis", key=key, error=str(e))
            return None

    def invalidate(self, run_id: str):
        try:
            self.redis.delete(self._make_key(run_id))
        except Exception as e:
            logger.warning("Failed to invalidate run summary", run_id=run_id, error=str(e))

    def _make_key(self, run_id: str) -> str:
        return f"diagnostics:run:{run_id}"

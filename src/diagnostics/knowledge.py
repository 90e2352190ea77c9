"""
PostgreSQL-backed knowledge store.

Append-only learning records (observations, fix results, rejected
recommendations) queried by fix plan generation.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

import psycopg2
import structlog

from src.core.database import PostgresConnection

from .errors import KnowledgeStoreUnavailable
from .models import KnowledgeEntry

logger = structlog.get_logger(__name__)

# filter name -> column
FILTER_COLUMNS = {"type": "type", "outcome": "outcome", "decision": "decision"}


class PostgresKnowledgeStore:
    """KnowledgeStore over the ``knowledge_entries`` table"""

    def __init__(self, db: PostgresConnection):
        self.db = db

    def query(
        self,
        site_id: str,
        topic: str,
        filters: dict[str, Any] | None = None,
        limit: int = 20,
    ) -> list[KnowledgeEntry]:
        """Most recent entries of a (site, topic), newest first

        Raises:
            ValueError: unsupported filter name
            KnowledgeStoreUnavailable: the query failed
        """
        clauses = ["site_id = %(site_id)s", "topic = %(topic)s"]
        params: dict[str, Any] = {"site_id": site_id, "topic": topic, "limit": limit}
        for name, value in (filters or {}).items():
            column = FILTER_COLUMNS.get(name)
            if column is None:
                raise ValueError(f"Unsupported knowledge filter: {name}")
            clauses.append(f"{column} = %({name})s")
            params[name] = getattr(value, "value", value)

        try:
            rows = self.db.fetch_all(
                f"""
                SELECT * FROM knowledge_entries
                WHERE {" AND ".join(clauses)}
                ORDER BY created_at DESC
                LIMIT %(limit)s
                """,
                params,
            )
        except psycopg2.Error as e:
            raise KnowledgeStoreUnavailable(f"Knowledge query failed: {e}", stage="knowledge") from e
        logger.debug("Queried knowledge entries", site_id=site_id, topic=topic, rows=len(rows))
        return [KnowledgeEntry.from_row(row) for row in rows]

    def write(self, entry: KnowledgeEntry) -> bool:
        """Append an entry; False on failure"""
        data = entry.to_db_dict()
        data["entry_id"] = entry.entry_id or str(uuid.uuid4())
        data["created_at"] = entry.created_at or datetime.now(UTC)

        query = """
            INSERT INTO knowledge_entries (
                entry_id, site_id, type, topic, title, evidence,
                decision, outcome, tags, created_at
            ) VALUES (
                %(entry_id)s, %(site_id)s, %(type)s, %(topic)s, %(title)s, %(evidence)s,
                %(decision)s, %(outcome)s, %(tags)s, %(created_at)s
            )
        """
        if not self.db.execute_query(query, data):
            logger.warning("Knowledge entry not written", topic=entry.topic, type=entry.type.value)
            return False
        logger.debug("Knowledge entry written", entry_id=data["entry_id"], topic=entry.topic)
        return True

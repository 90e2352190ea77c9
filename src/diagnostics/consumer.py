"""
Kafka consumer for diagnostic run requests.

Each message is a JSON object ``{"site_id": ..., "force": false, "run_date": "YYYY-MM-DD"}``
and triggers one ``start_run``.
"""

import json
import time
from datetime import date
from typing import Any

import structlog
from kafka import KafkaConsumer

from .config import DiagnosticsConfig
from .engine import DiagnosticsEngine
from .errors import DiagnosticsError

logger = structlog.get_logger(__name__)


class RunRequestConsumer:
    """Consumes run requests and drives the engine"""

    def __init__(self, config: DiagnosticsConfig, engine: DiagnosticsEngine | None = None):
        self.config = config
        self.engine = engine or DiagnosticsEngine.from_config(config)

        try:
            self.consumer = KafkaConsumer(
                config.kafka_topic,
                bootstrap_servers=config.kafka_bootstrap_servers,
                group_id=config.kafka_group_id,
                auto_offset_reset=config.kafka_auto_offset_reset,
                value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            )
            logger.info(
                "Kafka consumer initialized",
                bootstrap_servers=config.kafka_bootstrap_servers,
                topic=config.kafka_topic,
                group_id=config.kafka_group_id,
            )
        except Exception as e:
            logger.error("Failed to initialize Kafka consumer", error=str(e))
            raise

        self.stats = {
            "total_consumed": 0,
            "runs_completed": 0,
            "runs_partial": 0,
            "runs_failed": 0,
            "parse_errors": 0,
        }

    def run(self, duration_seconds: int | None = None):
        """Run the consumer

        Args:
            duration_seconds: Optional duration in seconds. If None, runs indefinitely.
        """
        logger.info(
            "Starting run request consumer",
            topic=self.config.kafka_topic,
            duration=duration_seconds if duration_seconds else "indefinite",
        )
        start_time = time.time()

        try:
            for message in self.consumer:
                self.stats["total_consumed"] += 1
                self._process_message(message.value)

                elapsed = time.time() - start_time
                if duration_seconds and elapsed >= duration_seconds:
                    logger.info("Duration limit reached", duration_seconds=duration_seconds)
                    break

        except KeyboardInterrupt:
            logger.info("Received interrupt signal, stopping consumer")

        except Exception as e:
            logger.error("Consumer error", error=str(e), exc_info=True)
            raise

        finally:
            self.consumer.close()
            self.engine.close()
            logger.info(
                "Consumer stopped",
                elapsed_sec=round(time.time() - start_time, 1),
                **self.stats,
            )

    def _process_message(self, message: dict[str, Any]):
        """Start one run; failures are counted, never raised"""
        try:
            site_id = message["site_id"]
            force = bool(message.get("force", False))
            run_date = date.fromisoformat(message["run_date"]) if message.get("run_date") else None
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Invalid run request", error=str(e), message=message)
            self.stats["parse_errors"] += 1
            return

        try:
            summary = self.engine.start_run(site_id, force=force, run_date=run_date)
        except DiagnosticsError as e:
            self.stats["runs_failed"] += 1
            logger.error("Run failed", site_id=site_id, **e.to_dict())
            return
        except Exception as e:
            self.stats["runs_failed"] += 1
            logger.error("Run crashed", site_id=site_id, error=str(e), exc_info=True)
            return

        key = f"runs_{summary.status.value}"
        if key in self.stats:
            self.stats[key] += 1
        logger.info(
            "Run request handled",
            site_id=site_id,
            run_id=summary.run_id,
            status=summary.status.value,
        )

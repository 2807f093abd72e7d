"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from community_lending.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_transition(
    action: str,
    loan_id: Optional[str],
    actor_id: str,
    outcome: str,
    duration_ms: float,
    error_code: Optional[str] = None,
) -> None:
    """Log one lifecycle transition attempt for analysis"""
    extra = {
        "loan_id": loan_id,
        "actor_id": actor_id,
        "step": action,
        "outcome": outcome,
        "duration_ms": round(duration_ms, 2),
    }
    if error_code is not None:
        extra["error_code"] = error_code
    logging.getLogger("community_lending.transitions").info("Transition %s", outcome, extra=extra)

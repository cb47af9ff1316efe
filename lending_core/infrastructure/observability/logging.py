"""Structured JSON logging for production observability"""

import logging
import sys
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

from lending_core.config import settings
from lending_core.utils.date_utils import utcnow


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utcnow().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_transition(
    correlation_id: str,
    loan_id: str,
    transition: str,
    from_state: str,
    to_state: str,
) -> None:
    """Log a committed loan state change"""
    logging.info(
        "Loan transition committed",
        extra={
            "correlation_id": correlation_id,
            "loan_id": loan_id,
            "step": "transition_complete",
            "transition": transition,
            "from_state": from_state,
            "to_state": to_state,
        },
    )


def log_score_change(user_id: str, old_score: int, new_score: int, persisted: bool) -> None:
    """Log a credit score recomputation that moved the score"""
    logging.info(
        "Credit score changed",
        extra={
            "user_id": user_id,
            "step": "score_recomputed",
            "old_score": old_score,
            "new_score": new_score,
            "delta": new_score - old_score,
            "persisted": persisted,
        },
    )

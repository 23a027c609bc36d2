"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from craiverse_gateway.config import settings


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

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_ledger_operation(
    request_id: str,
    user_id: str,
    action: str,
    status_code: int,
    duration_ms: float,
    replayed: bool = False,
    balance: Optional[int] = None,
) -> None:
    """Log structured ledger outcome for audit and analysis"""
    logging.info(
        "Ledger operation completed",
        extra={
            "request_id": request_id,
            "user_id": user_id,
            "step": "ledger_operation",
            "action": action,
            "status_code": status_code,
            "replayed": replayed,
            "balance": balance,
            "duration_ms": duration_ms,
        },
    )


def log_webhook(provider: str, event_id: str, event_type: str, outcome: str) -> None:
    """Log structured webhook handling outcome"""
    logging.info(
        "Webhook processed",
        extra={
            "step": "webhook",
            "provider": provider,
            "event_id": event_id,
            "event_type": event_type,
            "outcome": outcome,
        },
    )

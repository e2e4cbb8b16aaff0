"""
Structured JSON Logging for PinFlow
===================================
Every Lambda in this repo writes one JSON object per log line. Two fields
identify where a line came from:

  service  the deployed function, from SERVICE_NAME ("pinflow-webhook",
           "pinflow-notifications"); one value per Lambda
  logger   the Python module that logged it ("webhook_service.reconciler")

so one CloudWatch Logs Insights query can follow a single delivery across
stages:

    fields @timestamp, stage, logger, message
    | filter service = "pinflow-webhook" and event_id = "evt_1"
    | sort @timestamp asc

Usage:
  from shared.logger import get_logger
  logger = get_logger(__name__)
  logger.warning("Proceeding without lock", extra={"event_id": "evt_1", "resource_id": "SKU1"})

Output:
  {"timestamp":"2024-01-01T00:00:00Z","level":"WARNING","service":"pinflow-webhook",
   "logger":"webhook_service.reconciler","message":"Proceeding without lock",
   "event_id":"evt_1","resource_id":"SKU1"}
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

# Attributes every LogRecord carries; anything else arrived through `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}

_configured = False


class _JsonFormatter(logging.Formatter):
    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_obj.update(_extra_fields(record))

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    # underscore-prefixed keys are private to handlers (pytest's caplog among them)
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _configure() -> None:
    root = logging.getLogger()
    formatter = _JsonFormatter(os.environ.get("SERVICE_NAME", "pinflow"))
    # The Lambda runtime installs its own handler; reformat it instead of adding a second one
    if root.handlers:
        for h in root.handlers:
            h.setFormatter(formatter)
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    root.setLevel(getattr(logging, log_level, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; the root logger is configured on first use."""
    global _configured
    if not _configured:
        _configure()
        _configured = True
    return logging.getLogger(name)

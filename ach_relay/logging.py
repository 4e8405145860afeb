from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


class JsonFormatter(logging.Formatter):
    """Format log records as JSON."""

    def _coerce(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, dict):
            return {str(k): self._coerce(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._coerce(item) for item in value]
        return value

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        # Whitelisted extra fields to enrich logs
        extra_fields = (
            "endpoint",
            "method",
            "event_id",
            "event_type",
            "outcome",
            "payment_intent",
            "setup_intent",
            "charge",
            "customer",
            "user_id",
            "order_ids",
            "table",
            "record_ids",
            "status",
            "amount",
            "metadata",
            "operation",
            "latency_ms",
            "response_code",
            "error",
            "attempt",
            "purged",
        )
        for field in extra_fields:
            if hasattr(record, field):
                data[field] = self._coerce(getattr(record, field))
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure root logger to use JSON formatter."""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logging.basicConfig(level=level.upper(), handlers=[handler], force=True)
    # the SDK logs every request at INFO; our own call log covers it
    logging.getLogger("stripe").setLevel(logging.WARNING)

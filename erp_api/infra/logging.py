"""JSON log formatting with the request's tenant and user attached."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any

from erp_api.infra.tenant import get_tenant_id, get_user_id

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ERP_JSON_LOGS = os.getenv("ERP_JSON_LOGS", "true").lower() in {"1", "true", "yes"}

_RESERVED_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}
# Never emitted even if a caller passes them through ``extra``.
_REDACTED_KEYS = {"password", "refresh_token", "access_token", "token", "api_key", "key"}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        tenant_id = get_tenant_id()
        if tenant_id:
            log_data["tenant_id"] = tenant_id
        user_id = get_user_id()
        if user_id:
            log_data["user_id"] = user_id

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            log_data[key] = "[redacted]" if key in _REDACTED_KEYS else value

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


def configure_logging(level: str | None = None, *, json_logs: bool | None = None) -> None:
    use_json = ERP_JSON_LOGS if json_logs is None else json_logs
    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    # No-op when the host (uvicorn, pytest) already installed root handlers.
    logging.basicConfig(level=level or LOG_LEVEL, handlers=[handler])

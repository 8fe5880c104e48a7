import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("prepfox")

_SENSITIVE_KEYS = (
    "client_secret",
    "access_token",
    "refresh_token",
    "password",
    "authorization",
    "api_key",
    "api_secret",
    "token",
    "secret",
)


class CarrierEventLogger:
    """Keeps a bounded trail of partner API exchanges (carriers, Shopify, Stripe).

    Admin screens read it back through ``get_logs`` when a user reports a
    broken integration.
    """

    def __init__(self, max_logs: int = 1000):
        self.logs = []
        self.max_logs = max_logs

    def log_carrier_event(
        self,
        event_type: str,
        description: str,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None
    ):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "description": description,
            "request_data": self._sanitize_credentials(request_data) if request_data else None,
            "response_data": self._sanitize_credentials(response_data) if response_data else None,
            "status": status,
            "error": error
        }

        self.logs.append(log_entry)
        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        log_msg = f"[{event_type}] {description}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return log_entry

    def _sanitize_credentials(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return {}

        sanitized = {}
        for key, value in data.items():
            if isinstance(value, dict):
                sanitized[key] = self._sanitize_credentials(value)
            elif key.lower() in _SENSITIVE_KEYS and value is not None:
                text = str(value)
                sanitized[key] = f"{text[:4]}...{text[-4:]}" if len(text) > 8 else "***"
            else:
                sanitized[key] = value
        return sanitized

    def get_logs(self, limit: Optional[int] = None) -> list:
        if limit:
            return self.logs[-limit:]
        return self.logs

    def clear_logs(self):
        self.logs = []
        logger.info("Cleared carrier event logs")


carrier_logger = CarrierEventLogger()


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Short preview of a secret suitable for API responses."""
    if not value:
        return None
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"

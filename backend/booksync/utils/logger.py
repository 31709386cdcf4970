import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("booksync")


class ConnectionEventLog:
    """Bounded in-memory log of calls made against the accounting API.

    Entries are what the connection screen shows when an operator asks why a
    sync failed, so credential-like values are masked before storing.
    """

    SENSITIVE_KEYS = (
        "client_secret", "access_token", "refresh_token",
        "authorization", "client_id", "code",
    )

    def __init__(self, max_logs: int = 1000):
        self.logs: List[Dict[str, Any]] = []
        self.max_logs = max_logs

    def log_event(
        self,
        event_type: str,
        description: str,
        context: Optional[Dict[str, Any]] = None,
        request_data: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "description": description,
            "context": context or {},
            "request_data": self._sanitize_credentials(request_data) if request_data else None,
            "status": status,
            "error": error,
        }

        self.logs.append(entry)
        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        if error:
            logger.error("[%s] %s - Error: %s", event_type, description, error)
        else:
            logger.info("[%s] %s", event_type, description)
        return entry

    def _sanitize_credentials(self, data: Dict[str, Any]) -> Dict[str, Any]:
        sanitized = dict(data)
        for key in self.SENSITIVE_KEYS:
            if key in sanitized and sanitized[key] is not None:
                value = str(sanitized[key])
                if len(value) > 8:
                    sanitized[key] = f"{value[:4]}...{value[-4:]}"
                else:
                    sanitized[key] = "***"
        return sanitized

    def get_logs(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if limit:
            return self.logs[-limit:]
        return list(self.logs)

    def clear(self) -> None:
        self.logs = []


connection_log = ConnectionEventLog()

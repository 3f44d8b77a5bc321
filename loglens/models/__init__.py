from loglens.models.alert import Alert, AlertSeverity, AlertStatus
from loglens.models.log_record import LogRecordRow

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertStatus",
    "LogRecordRow",
]

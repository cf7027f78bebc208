# app/services/error_log_service.py
import logging
from datetime import datetime, timezone
from typing import Optional

from app.services.firestore_client import get_db
from app.services.token_refresh import format_timestamp

logger = logging.getLogger(__name__)

ERROR_LOGS_COLLECTION = "error_logs"


def log_error_event(
    error_type: str,
    message: str,
    user_id: Optional[str] = None,
    stack_trace: Optional[str] = None,
    request_path: Optional[str] = None,
) -> bool:
    """
    把錯誤寫進 Firestore error_logs。
    best-effort：寫不進去只記 log，不要讓 request 因為 log 失敗而爆掉。
    """
    try:
        db = get_db()
        db.collection(ERROR_LOGS_COLLECTION).add({
            "user_id": user_id,
            "error_type": error_type or "UNKNOWN",
            "error_message": message or "Unknown error",
            "stack_trace": stack_trace,
            "request_path": request_path,
            "created_at": format_timestamp(datetime.now(timezone.utc)),
        })
        return True
    except Exception as e:
        logger.warning(f"Failed to write error log ({error_type}): {e}")
        return False


def log_rate_limit_event(key: str, path: str) -> bool:
    return log_error_event(
        "RATE_LIMITED",
        f"Rate limit exceeded for {key}",
        request_path=path,
    )

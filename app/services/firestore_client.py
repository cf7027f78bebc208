# app/services/firestore_client.py
import base64
import json
import logging
import threading

from google.cloud import firestore
from google.oauth2 import service_account

from app.config import settings

logger = logging.getLogger(__name__)

_cached_client = None
_client_lock = threading.Lock()


class FirestoreUnavailable(RuntimeError):
    """GOOGLE_CLOUD_CREDENTIALS 沒設定或解不開"""


def _load_credentials():
    raw = settings.GOOGLE_CLOUD_CREDENTIALS
    if not raw:
        raise FirestoreUnavailable("GOOGLE_CLOUD_CREDENTIALS is missing in environment variables")

    try:
        creds_json = json.loads(base64.b64decode(raw))
    except (ValueError, TypeError) as e:
        raise FirestoreUnavailable(f"Failed to decode GOOGLE_CLOUD_CREDENTIALS: {e}") from e

    try:
        return service_account.Credentials.from_service_account_info(creds_json)
    except ValueError as e:
        raise FirestoreUnavailable(f"Failed to create service account credentials: {e}") from e


def get_db() -> firestore.Client:
    """
    Lazy-load Firestore client（credentials 放在 base64 的 GOOGLE_CLOUD_CREDENTIALS）。
    route 跑在 threadpool 裡，所以初始化要上鎖。
    """
    global _cached_client

    if _cached_client is not None:
        return _cached_client

    with _client_lock:
        if _cached_client is None:
            creds = _load_credentials()
            _cached_client = firestore.Client(credentials=creds, project=creds.project_id)
            logger.info(f"Firestore client initialised for project {creds.project_id}")

    return _cached_client

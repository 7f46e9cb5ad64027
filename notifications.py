from typing import Optional

import structlog
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, get_documents
from schemas import Notification

logger = structlog.get_logger(__name__)


def notify(db: Database, user_id: str, title: str, message: str, type: str = "system",
           reference_id: Optional[str] = None) -> None:
    """Best effort: a failed notification never fails the caller."""
    try:
        create_document(db, "notification", Notification(
            user_id=user_id, title=title, message=message, type=type, reference_id=reference_id,
        ))
    except PyMongoError as e:
        logger.warning("notification_failed", user_id=user_id, reference_id=reference_id, error=str(e))


def list_notifications(db: Database, user_id: str, limit: int = 50):
    return get_documents(db, "notification", {"user_id": user_id}, limit=limit, sort=[("created_at", -1)])

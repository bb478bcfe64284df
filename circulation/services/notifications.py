"""Notification dispatch.

Every notification is stored in the member's inbox. When a webhook URL is
configured the same payload is also POSTed there; delivery problems are
logged and never reach the caller.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

import httpx

from config import settings
from circulation.database import get_db_connection
from circulation.errors import NotFound
from circulation.models import Notification, NotificationCategory, to_iso, utcnow
from circulation.services.http_client import get_http_client

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(self, clock: Callable[[], datetime] = utcnow, webhook_url: Optional[str] = None):
        self.clock = clock
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url

    def notify(self, user_id: str, title: str, message: str, category: NotificationCategory) -> Notification:
        notification = Notification(
            id=None,
            user_id=user_id,
            title=title,
            message=message,
            category=category,
            created_at=self.clock(),
        )
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO notifications (user_id, title, message, category, is_read, created_at) "
                "VALUES (?, ?, ?, ?, 0, ?)",
                (user_id, title, message, category.value, to_iso(notification.created_at)),
            )
            conn.commit()
            notification.id = cursor.lastrowid
        finally:
            conn.close()

        logger.info(f"Notification {notification.id} ({category.value}) queued for user {user_id}")
        if self.webhook_url:
            self._post_webhook(notification)
        return notification

    def _post_webhook(self, notification: Notification) -> None:
        client = get_http_client()
        try:
            resp = client.post_with_retry(self.webhook_url, json=notification.to_dict())
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery for notification {notification.id} failed: {e}")
            return
        if resp is not None and resp.status_code >= 400:
            logger.warning(f"Webhook rejected notification {notification.id}: {resp.status_code}")

    # ------------------------- Inbox ------------------------- #
    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        sql = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY created_at DESC, id DESC"
        conn = get_db_connection()
        try:
            rows = conn.execute(sql, (user_id,)).fetchall()
            return [Notification.from_row(r) for r in rows]
        finally:
            conn.close()

    def unread_count(self, user_id: str) -> int:
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)
            ).fetchone()
            return row[0]
        finally:
            conn.close()

    def mark_read(self, notification_id: int, user_id: str) -> Notification:
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?", (notification_id, user_id)
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFound(f"Notification {notification_id} not found")
            row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
            return Notification.from_row(row)
        finally:
            conn.close()

    def mark_all_read(self, user_id: str) -> int:
        conn = get_db_connection()
        try:
            cursor = conn.execute("UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0", (user_id,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

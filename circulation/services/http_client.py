import logging
import threading
import time
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


class WebhookHTTPClient:
    """Pooled HTTP client with retry logic for outbound webhooks."""

    def __init__(self, timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20,
            keepalive_expiry=30.0
        )
        self._client = httpx.Client(
            limits=limits,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            follow_redirects=True,
            transport=transport,
        )

    def post(self, url: str, **kwargs) -> httpx.Response:
        return self._client.post(url, **kwargs)

    def post_with_retry(self, url: str, retries: int = 3, backoff: float = 0.5, **kwargs) -> Optional[httpx.Response]:
        """POST with exponential backoff on transport errors. Returns None when every attempt failed."""
        for attempt in range(retries):
            try:
                return self.post(url, **kwargs)
            except httpx.RequestError as e:
                if attempt < retries - 1:
                    time.sleep(backoff * (2 ** attempt))
                    continue
                logger.warning(f"Webhook POST to {url} failed after {retries} attempts: {e}")
                return None
        return None

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# Global client instance
_global_client: Optional[WebhookHTTPClient] = None
_client_lock = threading.Lock()


def get_http_client() -> WebhookHTTPClient:
    """Return the shared client, creating it on first use.

    Event handlers call this from worker threads, so creation is serialised.
    """
    global _global_client
    with _client_lock:
        if _global_client is None:
            _global_client = WebhookHTTPClient(timeout=settings.notification_timeout)
        return _global_client


def cleanup_http_client():
    """Close the shared client."""
    global _global_client
    with _client_lock:
        if _global_client:
            _global_client.close()
            _global_client = None

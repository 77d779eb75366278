import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests
from sqlalchemy.orm import sessionmaker

from config import settings
from db import SessionLocal
from models import WebhookConfig

logger = logging.getLogger(__name__)

MAX_RESPONSE_BYTES = 512

EVENT_TO_CONFIG_KEY = {
    "verification_approved": "verificationApproved",
    "verification_rejected": "verificationRejected",
    "manual_review_required": "manualReviewRequired",
    "document_uploaded": "documentUploaded",
    "verification_started": "verificationStarted",
}


def send_webhook_once(url: str, payload: dict, headers=None, timeout=None):
    """
    Single attempt, no retry.
    The whole exchange must finish within `timeout` seconds; the response body
    is read a byte at a time (capped) so a slow-dripping endpoint is cut off.
    """
    timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
    deadline = time.monotonic() + timeout
    headers = headers or {"Content-Type": "application/json"}

    r = requests.post(url, json=payload, headers=headers, timeout=timeout, stream=True)
    try:
        body = bytearray()
        for chunk in r.iter_content(chunk_size=1):
            if time.monotonic() > deadline:
                raise requests.Timeout(f"{url} did not finish responding within {timeout}s")
            body.extend(chunk)
            if len(body) >= MAX_RESPONSE_BYTES:
                break
        if time.monotonic() > deadline:
            raise requests.Timeout(f"{url} did not finish responding within {timeout}s")
        return r.status_code, body.decode("utf-8", errors="replace")
    finally:
        r.close()


class WebhookNotifier:
    """
    Best-effort delivery of verification events to an organization's endpoint.
    The verification row stays the source of truth; failures are only logged.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal, timeout: Optional[float] = None):
        self.session_factory = session_factory
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS

    def _load_target(self, organization_id: str, event: str) -> Optional[str]:
        with self.session_factory() as session:
            config = session.get(WebhookConfig, organization_id)
            if config is None:
                logger.info(f"[WEBHOOK] no config for org {organization_id}, event {event}")
                return None

            url = (config.url or "").strip()
            if not url:
                logger.info(f"[WEBHOOK] org {organization_id} has no url, event {event}")
                return None

            events = config.events if isinstance(config.events, dict) else {}
            config_key = EVENT_TO_CONFIG_KEY.get(event)
            if config_key and events.get(config_key) is False:
                logger.info(f"[WEBHOOK] event {event} disabled for org {organization_id}")
                return None
            return url

    def deliver(self, organization_id: str, event: str, payload: Dict[str, Any]) -> None:
        try:
            url = self._load_target(organization_id, event)
        except Exception:
            logger.exception(f"[WEBHOOK] could not load config for org {organization_id}")
            return
        if url is None:
            return

        body = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **payload,
        }

        try:
            code, text = send_webhook_once(url, body, timeout=self.timeout)
        except requests.Timeout:
            logger.warning(f"[WEBHOOK] {event} delivery to {url} timed out")
            return
        except requests.RequestException as e:
            logger.warning(f"[WEBHOOK] {event} delivery to {url} error={e}")
            return

        if 200 <= code < 300:
            logger.info(f"[WEBHOOK] {event} delivered to {url} -> {code}")
        else:
            logger.warning(f"[WEBHOOK] {event} delivery to {url} failed: {code} {text[:200]}")

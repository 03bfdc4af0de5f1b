"""Outbound transactional email via the EmailJS REST API.

Both sends are fire-and-forget: the HTTP call runs in a worker thread
scheduled on the running loop, failures are logged and never propagate
into the data mutation that triggered them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Optional

import requests

from src.common.config import EmailSettings, get_emailjs_public_key, settings

logger = logging.getLogger(__name__)


@dataclass
class RequestCreatedEmail:
    """Template fields for the "new service request" mail to staff."""
    full_name: str
    email: str
    phone: str
    brand: str
    model: str
    product_date: str
    description: str


@dataclass
class StatusUpdateEmail:
    """Template fields for the "status changed" mail to the customer."""
    to_email: str
    full_name: str
    brand: str
    model: str
    new_status: str
    latest_note: str


class EmailNotifier:
    """Sends EmailJS template mails without blocking the caller."""

    def __init__(
        self,
        public_key: Optional[str] = None,
        config: Optional[EmailSettings] = None,
        session: Optional[requests.Session] = None,
    ):
        self._public_key = public_key if public_key is not None else get_emailjs_public_key()
        self._config = config or settings.email
        self._session = session or requests.Session()
        self._pending: set[asyncio.Future] = set()

    @property
    def enabled(self) -> bool:
        return bool(self._public_key)

    def send_service_request_created(self, fields: RequestCreatedEmail) -> Optional[asyncio.Future]:
        return self._schedule(self._config.created_template_id, asdict(fields))

    def send_status_update(self, fields: StatusUpdateEmail) -> Optional[asyncio.Future]:
        if not fields.to_email:
            logger.debug("Status email skipped: no recipient")
            return None
        return self._schedule(self._config.update_template_id, asdict(fields))

    def _schedule(self, template_id: str, params: dict) -> Optional[asyncio.Future]:
        if not self.enabled:
            logger.debug("EMAILJS_PUBLIC_KEY not set, skipping %s", template_id)
            return None
        task = asyncio.ensure_future(asyncio.to_thread(self._post, template_id, params))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _post(self, template_id: str, params: dict) -> int:
        resp = self._session.post(
            self._config.endpoint,
            json={
                "service_id": self._config.service_id,
                "template_id": template_id,
                "user_id": self._public_key,
                "template_params": params,
            },
            timeout=self._config.timeout_seconds,
        )
        resp.raise_for_status()
        return resp.status_code

    def _on_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Email sending failed: %s", exc)
        else:
            logger.info("Email sent (HTTP %s)", task.result())

    async def drain(self) -> None:
        """Wait for queued sends (CLI shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        self._session.close()

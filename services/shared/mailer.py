"""
Mail relay client: transactional email through the MailChannels send API.
"""
from __future__ import annotations

import logging

import requests

from shared.errors import MailerError

logger = logging.getLogger(__name__)

MAILCHANNELS_SEND_URL = "https://api.mailchannels.net/tx/v1/send"
DEFAULT_TIMEOUT_SECONDS = 10


class MailerClient:
    def __init__(
        self,
        sender: str,
        reply_to: str | None = None,
        bcc: str | None = None,
        api_key: str | None = None,
        endpoint: str = MAILCHANNELS_SEND_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self.sender = sender
        self.reply_to = reply_to or None
        self.bcc = bcc or None
        self._api_key = api_key or None
        self._endpoint = endpoint
        self._timeout = timeout
        self._session = session or requests.Session()

    def send_message(self, to: str, subject: str, text_body: str, html_body: str) -> None:
        personalization: dict = {"to": [{"email": to}]}
        if self.bcc:
            personalization["bcc"] = [{"email": self.bcc}]

        payload: dict = {
            "personalizations": [personalization],
            "from": {"email": self.sender},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text_body or ""},
                {"type": "text/html", "value": html_body or ""},
            ],
        }
        if self.reply_to:
            payload["reply_to"] = {"email": self.reply_to}

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["X-Api-Key"] = self._api_key

        try:
            resp = self._session.post(self._endpoint, json=payload, headers=headers, timeout=self._timeout)
        except requests.RequestException as e:
            raise MailerError(f"Mail send failed: {e}") from e

        if not resp.ok:
            raise MailerError(
                f"Mail send failed: {resp.status_code} {resp.text}",
                status_code=resp.status_code,
                detail=resp.text,
            )
        logger.info("Email sent", extra={"subject": subject})

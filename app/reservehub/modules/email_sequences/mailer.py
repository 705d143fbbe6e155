from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Protocol

from app.reservehub.errors import DeliveryError


class Mailer(Protocol):
    def send(self, *, to: str, subject: str, body: str) -> None: ...


@dataclass(frozen=True)
class ResendMailer:
    api_key: str
    sender: str
    base_url: str = "https://api.resend.com"
    timeout_seconds: int = 15

    def send(self, *, to: str, subject: str, body: str) -> None:
        if not self.api_key:
            raise DeliveryError("RESEND_API_KEY is not configured")
        payload = json.dumps({"from": self.sender, "to": [to], "subject": subject, "text": body}).encode("utf-8")
        req = urllib.request.Request(self.base_url.rstrip("/") + "/emails", data=payload, method="POST")
        req.add_header("Authorization", f"Bearer {self.api_key}")
        req.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp.read()
        except urllib.error.HTTPError as e:
            try:
                detail = e.read().decode("utf-8", errors="ignore")
            except OSError:
                detail = ""
            raise DeliveryError(f"HTTP {e.code} from Resend: {detail[:300]}") from e
        except OSError as e:
            raise DeliveryError(f"Resend request failed: {e}") from e

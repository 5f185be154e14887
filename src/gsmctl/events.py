"""Broadcast lifecycle events to local listeners and HTTP webhooks.

Every event is one JSON document. Local listeners receive it, newline
terminated, over a Unix stream socket; webhooks receive the same document as
the body of a ``POST`` request. When ``webhook_secret`` is set the body is
signed with HMAC-SHA256 and the base64 digest is sent in
``X-Gsmctl-Signature`` so receivers can authenticate the sender.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import socket
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import requests

from . import __version__
from .errors import GsmError

INSTANCE_CREATED = "instance_created"
INSTANCE_INSTALLED = "instance_installed"
INSTANCE_STARTED = "instance_started"
INSTANCE_STOPPED = "instance_stopped"
INSTANCE_UPDATED = "instance_updated"
INSTANCE_UNINSTALLED = "instance_uninstalled"
INSTANCE_BACKUP_CREATED = "instance_backup_created"
INSTANCE_BACKUP_RESTORED = "instance_backup_restored"

SEND_TIMEOUT = 2.0
SIGNATURE_HEADER = "X-Gsmctl-Signature"


class EventDeliveryError(GsmError):
    """Raised when a configured transport could not deliver an event."""


def encode_event(event: str, instance: str, data: Mapping[str, object] | None = None) -> bytes:
    """Return the wire form of an event: one JSON document and a newline."""
    payload: dict[str, object] = {"InstanceName": instance}
    for key, value in (data or {}).items():
        payload[key] = value
    message = {"EventType": event, "Data": payload}
    return (json.dumps(message, sort_keys=False, default=str) + "\n").encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """Return the ``sha256=<base64>`` signature of *body*."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return "sha256=" + base64.b64encode(digest).decode("ascii")


@dataclass
class WebhookSender:
    """POST events to one or more HTTP endpoints, retrying with backoff."""

    urls: Sequence[str]
    timeout: float = 10.0
    retries: int = 2
    secret: str | None = None
    session: requests.Session = field(default_factory=requests.Session)
    sleep: Callable[[float], None] = time.sleep

    def send(self, body: bytes) -> list[str]:
        """Deliver *body* to every URL; returns one message per failed URL."""
        return [
            failure
            for failure in (self._post(url, body) for url in self.urls)
            if failure is not None
        ]

    def _post(self, url: str, body: bytes) -> str | None:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"gsmctl/{__version__}",
            "X-Gsmctl-Timestamp": str(int(time.time())),
        }
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, self.secret)
        last_error = ""
        for attempt in range(self.retries + 1):
            headers["X-Gsmctl-Retry-Count"] = str(attempt)
            try:
                response = self.session.post(url, data=body, headers=headers, timeout=self.timeout)
                response.raise_for_status()
                return None
            except requests.RequestException as exc:
                last_error = str(exc)
            if attempt < self.retries:
                self.sleep(2**attempt)
        return f"POST {url} failed after {self.retries + 1} attempts: {last_error}"


class EventBroadcaster:
    """Send events to the socket at *socket_path* and any webhooks when enabled."""

    def __init__(
        self,
        socket_path: Path,
        *,
        enabled: bool = False,
        webhooks: WebhookSender | None = None,
    ) -> None:
        self.socket_path = socket_path
        self.enabled = enabled
        self.webhooks = webhooks

    def emit(self, event: str, instance: str, **data: object) -> bool:
        """Send *event*; returns False when disabled or nothing received it.

        A missing socket file means nobody listens and is skipped. Every
        configured transport is attempted before failures are raised together.
        """
        if not self.enabled:
            return False
        message = encode_event(event, instance, data)
        delivered = False
        failures: list[str] = []
        if self.socket_path.exists():
            try:
                self._send_socket(message)
                delivered = True
            except OSError as exc:
                failures.append(f"{self.socket_path}: {exc}")
        if self.webhooks is not None and self.webhooks.urls:
            webhook_failures = self.webhooks.send(message)
            failures.extend(webhook_failures)
            delivered = delivered or len(webhook_failures) < len(self.webhooks.urls)
        if failures:
            raise EventDeliveryError(
                f"Unable to deliver {event}: {'; '.join(failures)}",
                operation="events.emit",
                target=instance,
            )
        return delivered

    def _send_socket(self, message: bytes) -> None:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(SEND_TIMEOUT)
            client.connect(str(self.socket_path))
            client.sendall(message)


__all__ = [
    "EventBroadcaster",
    "EventDeliveryError",
    "INSTANCE_BACKUP_CREATED",
    "INSTANCE_BACKUP_RESTORED",
    "INSTANCE_CREATED",
    "INSTANCE_INSTALLED",
    "INSTANCE_STARTED",
    "INSTANCE_STOPPED",
    "INSTANCE_UNINSTALLED",
    "INSTANCE_UPDATED",
    "SIGNATURE_HEADER",
    "WebhookSender",
    "encode_event",
    "sign_payload",
]

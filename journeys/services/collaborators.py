"""Interfaces to the systems the engine drives but does not own.

The engine only talks to email delivery, webhook delivery and the contact
store through these protocols. Default adapters are provided for local runs:
an httpx-backed webhook caller, an email sender that only logs, and an
in-memory contact directory.
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

MAX_RESPONSE_BODY_LENGTH = 10_000


def encode_json_body(payload: Any) -> bytes:
    """Canonical webhook body; signatures are computed over exactly these bytes."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


@dataclass(frozen=True)
class EmailResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass(frozen=True)
class WebhookResponse:
    status_code: Optional[int]
    body: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


@dataclass
class ContactSnapshot:
    contact_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    segments: list[str] = field(default_factory=list)


class EmailSender(Protocol):
    def send(
        self,
        contact_id: str,
        template_id: str,
        context: dict,
        *,
        idempotency_key: Optional[str] = None,
    ) -> EmailResult: ...


class WebhookCaller(Protocol):
    def call(
        self,
        url: str,
        payload: Optional[dict],
        headers: dict,
        *,
        method: str = "POST",
        idempotency_key: Optional[str] = None,
    ) -> WebhookResponse: ...


class ContactDirectory(Protocol):
    def get_contact(self, contact_id: str) -> ContactSnapshot: ...

    def add_tag(self, contact_id: str, tag: str) -> None: ...

    def remove_tag(self, contact_id: str, tag: str) -> None: ...

    def update_field(self, contact_id: str, key: str, value: Any) -> None: ...


@runtime_checkable
class SupportsDeliveryLookup(Protocol):
    """Collaborators that can answer "was key X already delivered?"."""

    def find_delivery(self, idempotency_key: str) -> Optional[dict]: ...


@dataclass
class Collaborators:
    email: EmailSender
    webhooks: WebhookCaller
    contacts: ContactDirectory


class LoggingEmailSender:
    """Records sends in memory and logs them. Remembers idempotency keys."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sent: dict[str, dict] = {}

    def send(self, contact_id, template_id, context, *, idempotency_key=None) -> EmailResult:
        message_id = f"log-{uuid.uuid4()}"
        with self._lock:
            if idempotency_key and idempotency_key in self._sent:
                return EmailResult(success=True, provider_message_id=self._sent[idempotency_key]["provider_message_id"])
            if idempotency_key:
                self._sent[idempotency_key] = {"provider_message_id": message_id, "template_id": template_id}
        logger.info(
            "Email send recorded",
            extra={"contact_id": contact_id, "template_id": template_id, "idempotency_key": idempotency_key},
        )
        return EmailResult(success=True, provider_message_id=message_id)

    def find_delivery(self, idempotency_key: str) -> Optional[dict]:
        with self._lock:
            found = self._sent.get(idempotency_key)
            return None if found is None else dict(found)


class HttpxWebhookCaller:
    def __init__(self, *, timeout_seconds: float = 30.0, client: Optional[httpx.Client] = None):
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def call(self, url, payload, headers, *, method="POST", idempotency_key=None) -> WebhookResponse:
        request_headers = dict(headers or {})
        if idempotency_key:
            request_headers.setdefault("Idempotency-Key", idempotency_key)

        try:
            if method == "GET":
                response = self._client.request(method, url, headers=request_headers, params=payload or None)
            else:
                request_headers.setdefault("Content-Type", "application/json")
                response = self._client.request(
                    method,
                    url,
                    headers=request_headers,
                    content=encode_json_body(payload if payload is not None else {}),
                )
        except httpx.HTTPError as exc:
            return WebhookResponse(status_code=None, error=f"{type(exc).__name__}: {exc}")

        body = response.text or ""
        if len(body) > MAX_RESPONSE_BODY_LENGTH:
            body = body[:MAX_RESPONSE_BODY_LENGTH] + "... (truncated)"

        error = None
        if not response.is_success:
            error = f"HTTP {response.status_code}: {response.reason_phrase}"
        return WebhookResponse(status_code=response.status_code, body=body, error=error)

    def close(self) -> None:
        self._client.close()


class InMemoryContactDirectory:
    def __init__(self, contacts: Optional[dict[str, ContactSnapshot]] = None):
        self._lock = threading.Lock()
        self._contacts: dict[str, ContactSnapshot] = dict(contacts or {})

    def put(self, snapshot: ContactSnapshot) -> None:
        with self._lock:
            self._contacts[snapshot.contact_id] = snapshot

    def _require(self, contact_id: str) -> ContactSnapshot:
        contact = self._contacts.get(contact_id)
        if contact is None:
            contact = ContactSnapshot(contact_id=contact_id)
            self._contacts[contact_id] = contact
        return contact

    def get_contact(self, contact_id: str) -> ContactSnapshot:
        with self._lock:
            c = self._require(contact_id)
            return ContactSnapshot(
                contact_id=c.contact_id,
                fields=dict(c.fields),
                tags=list(c.tags),
                segments=list(c.segments),
            )

    def add_tag(self, contact_id: str, tag: str) -> None:
        with self._lock:
            c = self._require(contact_id)
            if tag not in c.tags:
                c.tags.append(tag)

    def remove_tag(self, contact_id: str, tag: str) -> None:
        with self._lock:
            c = self._require(contact_id)
            c.tags = [t for t in c.tags if t != tag]

    def update_field(self, contact_id: str, key: str, value: Any) -> None:
        with self._lock:
            self._require(contact_id).fields[key] = value


def default_collaborators(*, webhook_timeout_seconds: float = 30.0) -> Collaborators:
    return Collaborators(
        email=LoggingEmailSender(),
        webhooks=HttpxWebhookCaller(timeout_seconds=webhook_timeout_seconds),
        contacts=InMemoryContactDirectory(),
    )

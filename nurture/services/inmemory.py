"""In-process collaborators for tests and local runs."""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Tuple

from ..contracts import EmailRequest
from ..errors import DeliveryError
from .base import ContactStore, EmailDispatcher, WebhookCaller


class InMemoryContactStore(ContactStore):
    """Contacts kept as plain dicts with ``tags`` and ``lists`` members."""

    def __init__(self, contacts: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._contacts: Dict[str, Dict[str, Any]] = {}
        for contact_id, record in (contacts or {}).items():
            self.add_contact(contact_id, **record)

    def add_contact(self, contact_id: str, **fields: Any) -> Dict[str, Any]:
        record = {"id": contact_id, "tags": [], "lists": [], **fields}
        record["tags"] = list(record["tags"])
        record["lists"] = list(record["lists"])
        self._contacts[contact_id] = record
        return record

    def _require(self, contact_id: str) -> Dict[str, Any]:
        record = self._contacts.get(contact_id)
        if record is None:
            raise KeyError(f"Unknown contact {contact_id}")
        return record

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        record = self._contacts.get(contact_id)
        return dict(record) if record is not None else None

    async def has_tag(self, contact_id: str, tag: str) -> bool:
        record = self._contacts.get(contact_id)
        return bool(record) and tag in record["tags"]

    async def add_tag(self, contact_id: str, tag: str) -> None:
        record = self._require(contact_id)
        if tag not in record["tags"]:
            record["tags"].append(tag)

    async def remove_tag(self, contact_id: str, tag: str) -> None:
        record = self._require(contact_id)
        record["tags"] = [t for t in record["tags"] if t != tag]

    async def add_to_list(self, contact_id: str, list_id: str) -> None:
        record = self._require(contact_id)
        if list_id not in record["lists"]:
            record["lists"].append(list_id)

    async def remove_from_list(self, contact_id: str, list_id: str) -> None:
        record = self._require(contact_id)
        record["lists"] = [l for l in record["lists"] if l != list_id]

    async def update_field(self, contact_id: str, field: str, value: Any) -> None:
        self._require(contact_id)[field] = value


class InMemoryEmailDispatcher(EmailDispatcher):
    """Records requests instead of delivering them.

    ``fail_times`` makes the first N sends raise ``DeliveryError``.
    """

    def __init__(self, fail_times: int = 0) -> None:
        self.sent: List[Tuple[str, EmailRequest]] = []
        self.fail_times = fail_times
        self.attempts = 0

    async def send(self, request: EmailRequest) -> str:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DeliveryError(f"Dispatch rejected message to {request.to}")
        delivery_id = f"dlv-{uuid.uuid4()}"
        self.sent.append((delivery_id, request))
        return delivery_id

    def templates_sent(self) -> List[str]:
        return [request.template_ref for _, request in self.sent]


class InMemoryWebhookCaller(WebhookCaller):
    """Records webhook calls and answers with a fixed status code."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def post(self, url: str, body: Dict[str, Any], timeout_ms: int) -> int:
        self.calls.append((url, body))
        return self.status_code

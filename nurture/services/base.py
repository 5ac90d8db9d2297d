"""Interfaces of the collaborators the engine drives."""

from __future__ import annotations

import abc
from typing import Any, Dict, Optional

from ..contracts import EmailRequest


class ContactStore(metaclass=abc.ABCMeta):
    """Lookup and mutation of contact records."""

    @abc.abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        """Return the contact record or ``None`` when it does not exist."""
        raise NotImplementedError

    @abc.abstractmethod
    async def has_tag(self, contact_id: str, tag: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def add_tag(self, contact_id: str, tag: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def remove_tag(self, contact_id: str, tag: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def add_to_list(self, contact_id: str, list_id: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def remove_from_list(self, contact_id: str, list_id: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def update_field(self, contact_id: str, field: str, value: Any) -> None:
        raise NotImplementedError


class EmailDispatcher(metaclass=abc.ABCMeta):
    """Accepts render requests and hands back a delivery identifier."""

    @abc.abstractmethod
    async def send(self, request: EmailRequest) -> str:
        """Queue ``request`` for delivery.

        Raises:
            DeliveryError: when the service rejects the request.
        """
        raise NotImplementedError


class WebhookCaller(metaclass=abc.ABCMeta):
    """Outbound JSON POST."""

    @abc.abstractmethod
    async def post(self, url: str, body: Dict[str, Any], timeout_ms: int) -> int:
        """POST ``body`` to ``url`` and return the HTTP status code.

        Raises:
            DeliveryError: when the request cannot be completed.
        """
        raise NotImplementedError

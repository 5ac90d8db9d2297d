"""Collaborator factory and initialization."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import yaml

from ..config import NurtureConfig, load_config
from .base import ContactStore, EmailDispatcher, WebhookCaller
from .inmemory import InMemoryContactStore, InMemoryEmailDispatcher, InMemoryWebhookCaller
from .webhook import HttpWebhookCaller


@dataclass
class Services:
    """The external collaborators one engine instance talks to."""

    contacts: ContactStore
    email: EmailDispatcher
    webhooks: WebhookCaller


def _load_contacts(path: Optional[str]) -> Dict[str, Dict[str, Any]]:
    """Read a YAML mapping of contact id to contact fields."""
    if not path:
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def get_services(config: Optional[NurtureConfig] = None) -> Services:
    """Factory function to build the configured collaborators."""

    config = config or load_config()
    if config.services.contact_store == "inmemory":
        contacts: ContactStore = InMemoryContactStore(
            _load_contacts(config.services.contacts_path)
        )
    else:
        raise ValueError(
            f"Unsupported contact store backend: {config.services.contact_store}"
        )
    if config.services.email == "inmemory":
        email: EmailDispatcher = InMemoryEmailDispatcher()
    else:
        raise ValueError(f"Unsupported email backend: {config.services.email}")
    return Services(contacts=contacts, email=email, webhooks=HttpWebhookCaller())


__all__ = [
    "ContactStore",
    "EmailDispatcher",
    "WebhookCaller",
    "InMemoryContactStore",
    "InMemoryEmailDispatcher",
    "InMemoryWebhookCaller",
    "HttpWebhookCaller",
    "Services",
    "get_services",
]

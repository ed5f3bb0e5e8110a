"""
directory.py — Resolves who should hear about an alert.

    contacts_for(owner_id) -> phone numbers of the owner's emergency contacts
    tokens_for(scope)      -> push tokens of devices subscribed to a scope

Both return sets; an empty set is a normal answer, not an error.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Protocol, Set, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ContactDirectory(Protocol):
    """Contact resolution contract consumed by the notification sinks."""

    async def contacts_for(self, owner_id: str) -> Set[str]: ...

    async def tokens_for(self, scope: str) -> Set[str]: ...


class InMemoryContactDirectory:
    """
    Process-local directory.

    Mirrors two collections:
        users/{owner_id}/contacts       — emergency-contact phone numbers
        devices (subscription == scope) — one push token per device
    """

    def __init__(self) -> None:
        self._contacts: Dict[str, Set[str]] = defaultdict(set)
        # scope -> device_id -> token
        self._devices: Dict[str, Dict[str, str]] = defaultdict(dict)

    def add_contact(self, owner_id: str, phone: str) -> None:
        self._contacts[owner_id].add(phone.strip())

    def remove_contact(self, owner_id: str, phone: str) -> None:
        self._contacts[owner_id].discard(phone.strip())

    def register_device(self, device_id: str, token: str, scope: str = "campus") -> None:
        """Subscribe a device; re-registering replaces its token."""
        self._devices[scope][device_id] = token
        logger.debug("Device %s subscribed to %s", device_id, scope)

    def unregister_device(self, device_id: str, scope: str = "campus") -> None:
        self._devices[scope].pop(device_id, None)

    async def contacts_for(self, owner_id: str) -> Set[str]:
        return {p for p in self._contacts.get(owner_id, set()) if p}

    async def tokens_for(self, scope: str) -> Set[str]:
        return {t for t in self._devices.get(scope, {}).values() if t}

from __future__ import annotations

import threading
from datetime import datetime

from aigateway.app.providers.types import Capability, ModelDescriptor


class ModelCache:
    """Read-mostly store of classified models, keyed by provider.

    Writers replace a provider's whole entry tuple under that provider's lock,
    so readers see either the old or the new listing, never a mix.
    """

    def __init__(self):
        self._entries: dict[str, tuple[ModelDescriptor, ...]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self.synced_at: datetime | None = None

    def _lock_for(self, provider_id: str) -> threading.Lock:
        return self._locks.setdefault(provider_id, threading.Lock())

    def replace(self, provider_id: str, descriptors: list[ModelDescriptor]) -> None:
        entries = tuple(sorted(descriptors, key=lambda d: d.model_id))
        with self._lock_for(provider_id):
            self._entries[provider_id] = entries

    def drop(self, provider_id: str) -> None:
        with self._lock_for(provider_id):
            self._entries.pop(provider_id, None)

    def provider_models(self, provider_id: str) -> tuple[ModelDescriptor, ...]:
        return self._entries.get(provider_id, ())

    def list(self, capability: Capability | None = None) -> list[ModelDescriptor]:
        result = []
        for provider_id in sorted(self._entries):
            for descriptor in self.provider_models(provider_id):
                if capability is None or descriptor.capability == capability:
                    result.append(descriptor)
        return result

    def get(self, provider_id: str, model_id: str) -> ModelDescriptor | None:
        for descriptor in self.provider_models(provider_id):
            if descriptor.model_id == model_id:
                return descriptor
        return None

    def find(self, model_id: str, capability: Capability | None = None) -> list[ModelDescriptor]:
        return [
            d for d in self.list()
            if d.model_id == model_id and (capability is None or d.capability.serves(capability))
        ]

    def counts(self) -> dict[str, int]:
        counts = {c.value: 0 for c in Capability}
        for descriptor in self.list():
            counts[descriptor.capability.value] += 1
        return counts

    def clear(self) -> None:
        for provider_id in list(self._entries):
            self.drop(provider_id)
        self.synced_at = None

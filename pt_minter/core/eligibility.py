"""Device eligibility checks that run before any nonce or signature work."""

from __future__ import annotations

import sqlite3

import structlog

from pt_minter.core.errors import DeviceNotBound, DeviceNotFound, DeviceNotInitialized, StorageError
from pt_minter.core.registry import DeviceRegistry

log = structlog.get_logger()


class EligibilityGate:
    """Rejects requests for unknown, uninitialized, or unbound devices."""

    def __init__(self, registry: DeviceRegistry) -> None:
        self._registry = registry

    def check(self, claimant: str, publisher_name: str) -> None:
        try:
            device = self._registry.get_device(publisher_name)
            if device is None:
                raise DeviceNotFound()
            if not device.initialized:
                raise DeviceNotInitialized()
            if not self._registry.find_bindings(claimant, publisher_name):
                raise DeviceNotBound()
        except sqlite3.Error as e:
            log.error("device_registry_error", publisher_name=publisher_name, err=str(e))
            raise StorageError("Device registry unavailable") from e

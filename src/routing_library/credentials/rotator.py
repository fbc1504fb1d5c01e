# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential rotation per provider.

Each provider holds an ordered list of credential slots and a sticky current
index: requests keep using the healthy credential until it fails, then the
rotator moves on and stays there.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set, Tuple

from ..core.errors import mask_credential
from ..core.types import CredentialSlot, CredentialStatus

if TYPE_CHECKING:
    from ..config.catalog import ProviderCatalog

lib_logger = logging.getLogger("routing_library")


class _ProviderCredentials:
    """
    Slots, values and the sticky index of one provider.

    One lock guards all of them: next() scans every slot and moves
    current_index in a single step, so a per-slot lock would still need a
    provider-wide one around the scan.
    """

    def __init__(self, values: Tuple[str, ...]):
        self.values = values
        self.slots: List[CredentialSlot] = [
            CredentialSlot(index=i) for i in range(len(values))
        ]
        self.current_index = 0
        self.lock = asyncio.Lock()


class CredentialRotator:
    """
    Holds the credential slots of every provider.

    Example:
        rotator = CredentialRotator(catalog)
        selected = await rotator.next("openai")
        if selected:
            index, api_key = selected
    """

    def __init__(
        self,
        catalog: Optional["ProviderCatalog"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._providers: Dict[str, _ProviderCredentials] = {}
        self._dirty = False
        if catalog is not None:
            self.configure(catalog)

    def configure(self, catalog: "ProviderCatalog") -> None:
        """
        Create slots for every provider in the catalog.

        Providers whose credential values did not change keep their slot
        state; changed or new providers start fresh.
        """
        updated: Dict[str, _ProviderCredentials] = {}
        for provider in catalog.providers_in_order(enabled_only=False):
            existing = self._providers.get(provider.name)
            if existing is not None and existing.values == provider.credentials:
                updated[provider.name] = existing
            else:
                updated[provider.name] = _ProviderCredentials(provider.credentials)
        self._providers = updated

    def _eligible(self, entry: _ProviderCredentials, index: int, now: float) -> bool:
        """Eligibility check that promotes expired cooldowns."""
        slot = entry.slots[index]
        if not entry.values[index]:
            return False
        if slot.status in (CredentialStatus.DISABLED, CredentialStatus.INVALID):
            return False
        if slot.status == CredentialStatus.RATE_LIMITED:
            if slot.cooldown_until is not None and slot.cooldown_until > now:
                return False
            slot.status = CredentialStatus.ACTIVE
            slot.cooldown_until = None
            self._dirty = True
            lib_logger.debug(f"Cooldown expired for credential slot {index}")
        return True

    @staticmethod
    def _usable(entry: _ProviderCredentials, index: int, now: float) -> bool:
        """Eligibility check without side effects."""
        slot = entry.slots[index]
        if not entry.values[index]:
            return False
        if slot.status in (CredentialStatus.DISABLED, CredentialStatus.INVALID):
            return False
        if slot.status == CredentialStatus.RATE_LIMITED:
            return slot.cooldown_until is None or slot.cooldown_until <= now
        return True

    async def next(
        self,
        provider: str,
        exclude_current: bool = False,
        exclude: Optional[Set[int]] = None,
    ) -> Optional[Tuple[int, str]]:
        """
        Find the next usable credential, starting at the current index.

        Args:
            provider: Provider name
            exclude_current: Start after the current slot and never return it
            exclude: Slot indexes to skip (e.g. already tried in this request)

        Returns:
            (index, credential value), or None if no slot is usable
        """
        entry = self._providers.get(provider)
        if entry is None or not entry.slots:
            return None

        async with entry.lock:
            now = self._clock()
            count = len(entry.slots)
            start = entry.current_index + (1 if exclude_current else 0)
            span = count - 1 if exclude_current else count
            for offset in range(span):
                index = (start + offset) % count
                if exclude and index in exclude:
                    continue
                if self._eligible(entry, index, now):
                    if index != entry.current_index:
                        lib_logger.info(
                            f"Rotating {provider} credential "
                            f"{entry.current_index} -> {index} "
                            f"({mask_credential(entry.values[index])})"
                        )
                        entry.current_index = index
                        self._dirty = True
                    return index, entry.values[index]
        return None

    def has_usable(self, provider: str, exclude: Optional[Set[int]] = None) -> bool:
        """Read-only check for at least one usable slot outside ``exclude``."""
        entry = self._providers.get(provider)
        if entry is None:
            return False
        now = self._clock()
        return any(
            self._usable(entry, i, now)
            for i in range(len(entry.slots))
            if not exclude or i not in exclude
        )

    def current_index(self, provider: str) -> Optional[int]:
        entry = self._providers.get(provider)
        return entry.current_index if entry and entry.slots else None

    def slots(self, provider: str) -> List[CredentialSlot]:
        entry = self._providers.get(provider)
        return [slot.copy() for slot in entry.slots] if entry else []

    async def _update(
        self, provider: str, index: int, fn: Callable[[CredentialSlot], None]
    ) -> bool:
        entry = self._providers.get(provider)
        if entry is None or not 0 <= index < len(entry.slots):
            lib_logger.warning(f"Unknown credential slot {provider}[{index}]")
            return False
        async with entry.lock:
            fn(entry.slots[index])
            self._dirty = True
        return True

    async def mark_rate_limited(
        self,
        provider: str,
        index: int,
        cooldown_minutes: float,
        reason: Optional[str] = None,
    ) -> None:
        until = self._clock() + cooldown_minutes * 60

        def apply(slot: CredentialSlot) -> None:
            slot.status = CredentialStatus.RATE_LIMITED
            slot.cooldown_until = until
            slot.failure_count += 1
            slot.last_error = reason

        if await self._update(provider, index, apply):
            lib_logger.info(
                f"Credential {provider}[{index}] rate limited; "
                f"cooling down for {cooldown_minutes * 60:.0f}s"
            )

    async def mark_invalid(
        self, provider: str, index: int, reason: Optional[str] = None
    ) -> None:
        def apply(slot: CredentialSlot) -> None:
            slot.status = CredentialStatus.INVALID
            slot.cooldown_until = None
            slot.failure_count += 1
            slot.last_error = reason

        if await self._update(provider, index, apply):
            lib_logger.warning(f"Credential {provider}[{index}] marked invalid")

    async def mark_active(self, provider: str, index: int) -> None:
        def apply(slot: CredentialSlot) -> None:
            slot.status = CredentialStatus.ACTIVE
            slot.cooldown_until = None
            slot.failure_count = 0
            slot.last_error = None

        await self._update(provider, index, apply)

    async def mark_disabled(self, provider: str, index: int) -> None:
        def apply(slot: CredentialSlot) -> None:
            slot.status = CredentialStatus.DISABLED
            slot.cooldown_until = None

        if await self._update(provider, index, apply):
            lib_logger.info(f"Credential {provider}[{index}] disabled")

    async def record_success(self, provider: str, index: int) -> None:
        """Reset the failure streak of a slot after a successful call."""
        entry = self._providers.get(provider)
        if entry is None or not 0 <= index < len(entry.slots):
            return
        if entry.slots[index].failure_count:
            await self._update(provider, index, lambda s: setattr(s, "failure_count", 0))

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    @property
    def dirty(self) -> bool:
        return self._dirty

    def mark_clean(self) -> None:
        self._dirty = False

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "current_index": entry.current_index,
                "slots": [slot.to_dict() for slot in entry.slots],
            }
            for name, entry in self._providers.items()
        }

    def load_dict(self, data: Dict[str, Dict[str, Any]]) -> int:
        """
        Restore slot state for providers whose slot count still matches.

        Returns:
            Number of providers restored
        """
        restored = 0
        for name, raw in (data or {}).items():
            entry = self._providers.get(name)
            if entry is None:
                continue
            try:
                slots = [CredentialSlot.from_dict(s) for s in raw.get("slots", [])]
            except (KeyError, TypeError, ValueError) as e:
                lib_logger.warning(f"Skipping corrupt credential state for {name}: {e}")
                continue
            if len(slots) != len(entry.slots):
                lib_logger.info(
                    f"Credential count changed for {name}; discarding saved slot state"
                )
                continue
            entry.slots = slots
            current = int(raw.get("current_index", 0))
            entry.current_index = current if 0 <= current < len(slots) else 0
            restored += 1
        return restored

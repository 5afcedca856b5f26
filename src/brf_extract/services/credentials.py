# [Shared: External Collaborators]
"""
Credential Pool: hands out API credentials shared by all tenants.

The pool itself is an external collaborator (provisioning and persistence
live elsewhere); this module defines the interface the gateway relies on,
an in-memory implementation used by the service and the tests, and the
gateway-owned secret cache that keeps decrypted keys for a short TTL.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from cryptography.fernet import Fernet, InvalidToken

from brf_extract.models.schemas import CredentialHandle

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CredentialPool(Protocol):
    async def acquire(self, tenant_id: str) -> Optional[CredentialHandle]: ...

    async def cooldown(self, credential_id: str, duration_ms: int) -> None: ...

    async def record_usage(
        self,
        credential_id: str,
        log_id: str,
        cost: float,
        success: bool,
        total_tokens: int,
        model: str,
        latency_ms: int,
    ) -> None: ...


@dataclass
class CredentialUsage:
    log_id: str
    cost: float
    success: bool
    total_tokens: int
    model: str
    latency_ms: int


class InMemoryCredentialPool:
    """
    Least-recently-used selection over credentials that are not cooling down.

    All mutations happen between awaits, so each operation is atomic with
    respect to other tasks on the same event loop.
    """

    def __init__(self, credentials: List[CredentialHandle], clock: Clock = time.time):
        self._credentials: Dict[str, CredentialHandle] = {c.id: c for c in credentials}
        self._clock = clock
        self.usage: Dict[str, List[CredentialUsage]] = {c.id: [] for c in credentials}

    @classmethod
    def from_mapping(cls, mapping: Dict[str, str], clock: Clock = time.time) -> "InMemoryCredentialPool":
        return cls(
            [CredentialHandle(id=cid, encrypted_secret=secret) for cid, secret in mapping.items()],
            clock=clock,
        )

    async def acquire(self, tenant_id: str) -> Optional[CredentialHandle]:
        now = self._clock()
        available = [c for c in self._credentials.values() if c.cooldown_until <= now]
        if not available:
            logger.warning(f"No credential available for tenant {tenant_id}: all {len(self._credentials)} cooling down")
            return None
        chosen = min(available, key=lambda c: c.last_used_at)
        chosen.last_used_at = now
        return chosen.model_copy()

    async def cooldown(self, credential_id: str, duration_ms: int) -> None:
        credential = self._credentials.get(credential_id)
        if credential is None:
            return
        credential.cooldown_until = self._clock() + duration_ms / 1000.0
        logger.info(f"Credential {credential_id} cooling down for {duration_ms}ms")

    async def record_usage(
        self,
        credential_id: str,
        log_id: str,
        cost: float,
        success: bool,
        total_tokens: int,
        model: str,
        latency_ms: int,
    ) -> None:
        self.usage.setdefault(credential_id, []).append(
            CredentialUsage(
                log_id=log_id,
                cost=cost,
                success=success,
                total_tokens=total_tokens,
                model=model,
                latency_ms=latency_ms,
            )
        )

    def get(self, credential_id: str) -> Optional[CredentialHandle]:
        return self._credentials.get(credential_id)


# ──────────────────────────────────────────────
# Secret decryption and caching
# ──────────────────────────────────────────────

class SecretCipher:
    """Fernet wrapper used for credential secrets at rest."""

    def __init__(self, key: str):
        if not key:
            raise ValueError("credential_encryption_key is not configured")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Credential secret could not be decrypted") from e


@dataclass
class SecretCache:
    """
    Decrypted secrets keyed by their encrypted form, expiring after ``ttl``.

    Owned by one gateway instance. Entries are written once and then only
    read until they expire; ``sweep()`` drops expired entries and runs
    opportunistically on lookups.
    """
    decrypt: Callable[[str], str]
    ttl: float = 300.0
    clock: Clock = time.monotonic
    _entries: Dict[str, Tuple[str, float]] = field(default_factory=dict)
    _last_sweep: float = 0.0
    decrypt_count: int = 0

    def get(self, encrypted: str) -> str:
        now = self.clock()
        if now - self._last_sweep >= self.ttl:
            self.sweep(now)
        entry = self._entries.get(encrypted)
        if entry is not None and entry[1] > now:
            return entry[0]
        plaintext = self.decrypt(encrypted)
        self.decrypt_count += 1
        self._entries[encrypted] = (plaintext, now + self.ttl)
        return plaintext

    def sweep(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
        self._last_sweep = now
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

"""
auth/keys.py -- Signing key ring with epoch-based rotation.

Lifecycle of a key:
  1. Loaded at startup from SECRET_KEY (current) and PREVIOUS_SECRET_KEYS.
  2. Signs every new token while it is current.
  3. rotate() demotes it to the grace period. It no longer signs, but tokens
     it signed still verify until key_grace_seconds have passed.
  4. Discarded by the next rotate() or prune() after the grace period.

The active set is an immutable tuple. Writers build a new tuple under a lock
and swap the attribute; readers (TokenCodec.verify on every request) take the
current tuple without locking and see a consistent snapshot.

Key material never leaves this module except through SigningKey.secret,
which TokenCodec reads to sign and verify. SigningKey.__repr__ omits it so a
stray log line cannot print a secret.

Layer rule: no imports from api/, events/, or core/.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

logger = logging.getLogger("hitime.auth.keys")

MIN_SECRET_LENGTH = 32


def key_id_for(secret: str) -> str:
    """Stable, non-reversible identifier for a secret (JWT "kid" header)."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: str = field(repr=False)
    created_at: int = 0
    retired_at: int | None = None

    @classmethod
    def from_secret(cls, secret: str, created_at: int = 0) -> SigningKey:
        if len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"Signing secrets must be at least {MIN_SECRET_LENGTH} characters.")
        return cls(kid=key_id_for(secret), secret=secret, created_at=created_at)


class KeyRing:
    """Current signing key plus grace-period keys.

    Usage:
        ring = KeyRing.from_secrets(settings.secret_key, settings.previous_secret_keys)
        ring.current.kid
        ring.rotate(new_secret)
    """

    def __init__(
        self,
        keys: Iterable[SigningKey],
        grace_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        keys = tuple(keys)
        if not keys:
            raise ValueError("KeyRing requires at least one signing key.")
        self._keys: tuple[SigningKey, ...] = keys
        self._grace_seconds = grace_seconds
        self._clock = clock
        self._lock = threading.Lock()

    @classmethod
    def from_secrets(
        cls,
        current: str,
        previous: Iterable[str] = (),
        grace_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> KeyRing:
        """Build the startup ring.

        Previous keys start their grace period at load time: a restart does
        not know when they were retired, so they get a full grace window.
        """
        now = int(clock())
        keys = [SigningKey.from_secret(current, created_at=now)]
        for secret in previous:
            if secret == current:
                continue
            key = SigningKey.from_secret(secret, created_at=now)
            keys.append(SigningKey(kid=key.kid, secret=key.secret, created_at=now, retired_at=now))
        return cls(keys, grace_seconds=grace_seconds, clock=clock)

    @property
    def current(self) -> SigningKey:
        return self._keys[0]

    def active(self) -> tuple[SigningKey, ...]:
        """Snapshot of every key accepted for verification, current first."""
        return self._keys

    def rotate(self, new_secret: str) -> SigningKey:
        """Make new_secret the signing key and demote the old one."""
        now = int(self._clock())
        new_key = SigningKey.from_secret(new_secret, created_at=now)
        with self._lock:
            old = self._keys[0]
            if old.kid == new_key.kid:
                return old
            demoted = SigningKey(kid=old.kid, secret=old.secret, created_at=old.created_at, retired_at=now)
            rest = tuple(k for k in self._keys[1:] if k.kid != new_key.kid)
            self._keys = self._without_expired((new_key, demoted) + rest, now)
        logger.info("Signing key rotated (kid=%s, previous kid=%s)", new_key.kid, old.kid)
        return new_key

    def prune(self) -> int:
        """Drop grace-period keys whose window has closed. Returns the count removed."""
        now = int(self._clock())
        with self._lock:
            before = len(self._keys)
            self._keys = self._without_expired(self._keys, now)
            removed = before - len(self._keys)
        if removed:
            logger.info("Discarded %d retired signing key(s)", removed)
        return removed

    def _without_expired(self, keys: tuple[SigningKey, ...], now: int) -> tuple[SigningKey, ...]:
        return tuple(k for k in keys if k.retired_at is None or now < k.retired_at + self._grace_seconds)

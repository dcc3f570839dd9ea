"""
Credential pool
===============

Round-robin hand-out of provider API keys. Keys that hit a quota are parked
for a cooldown window (provider quotas usually reset), keys rejected as
unauthorized are dropped for the rest of the process. Nothing is persisted:
a restart puts every key back to ``active``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List

from .errors import PoolExhausted
from .models import Credential, CredentialStatus

logger = logging.getLogger(__name__)


class CredentialPool:
    """Thread-safe status table plus round-robin cursor."""

    def __init__(
        self,
        secrets: Iterable[str],
        *,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._credentials: List[Credential] = []
        seen: set[str] = set()
        for secret in secrets:
            secret = secret.strip()
            if secret and secret not in seen:
                seen.add(secret)
                self._credentials.append(Credential(secret))
        if not self._credentials:
            raise ValueError("CredentialPool needs at least one credential")

        self._cooldown = cooldown
        self._clock = clock
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    def acquire(self) -> Credential:
        """
        Return the next usable credential after the last one handed out.

        :raises PoolExhausted: every credential is invalid or cooling down.
        """
        with self._lock:
            now = self._clock()
            size = len(self._credentials)
            for step in range(size):
                idx = (self._cursor + step) % size
                cred = self._credentials[idx]
                if self._eligible(cred, now):
                    self._cursor = (idx + 1) % size
                    return cred

            waits = [
                self._cooldown - (now - c.exhausted_at)
                for c in self._credentials
                if c.status is CredentialStatus.EXHAUSTED and c.exhausted_at is not None
            ]
            retry_after = max(0.0, min(waits)) if waits else None
            raise PoolExhausted(
                f"All {size} provider credentials are invalid or cooling down",
                retry_after=retry_after,
            )

    def _eligible(self, cred: Credential, now: float) -> bool:
        # Caller holds the lock.
        if cred.status is CredentialStatus.ACTIVE:
            return True
        if cred.status is CredentialStatus.EXHAUSTED:
            if cred.exhausted_at is None or now - cred.exhausted_at >= self._cooldown:
                cred.status = CredentialStatus.ACTIVE
                cred.exhausted_at = None
                logger.info("Credential %s cooled down; back in rotation", cred.masked)
                return True
        return False

    def mark_exhausted(self, credential: Credential) -> None:
        """Park ``credential`` until the cooldown elapses."""
        with self._lock:
            if credential.status is CredentialStatus.INVALID:
                return
            credential.status = CredentialStatus.EXHAUSTED
            credential.exhausted_at = self._clock()
        logger.warning(
            "Credential %s exhausted; cooling down for %.0fs", credential.masked, self._cooldown
        )

    def mark_invalid(self, credential: Credential) -> None:
        """Drop ``credential`` from rotation for the process lifetime."""
        with self._lock:
            already = credential.status is CredentialStatus.INVALID
            credential.status = CredentialStatus.INVALID
            credential.exhausted_at = None
        if not already:
            logger.error("Credential %s rejected by provider; marked invalid", credential.masked)

    def mark_success(self, credential: Credential) -> None:
        """Resume rotation right after ``credential``."""
        with self._lock:
            for idx, cred in enumerate(self._credentials):
                if cred is credential:
                    self._cursor = (idx + 1) % len(self._credentials)
                    break

    def snapshot(self) -> Dict[str, str]:
        """Masked key -> status, for diagnostics."""
        with self._lock:
            return {f"#{i} {c.masked}": c.status.value for i, c in enumerate(self._credentials)}


__all__ = ["CredentialPool"]

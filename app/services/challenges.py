"""Pending one-time-code challenges.

A challenge is an in-flight OTP exchange for one identity and one action kind.
Each (kind, identity) pair has a single slot: issuing again replaces the
previous code. Expiry is evaluated lazily by callers through
``PendingChallenge.is_expired``; ``purge_expired`` only bounds memory.
"""

from __future__ import annotations

import enum
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.models import PendingChallengeRow
from app.services.attendance import _normalize_ts
from app.services.otp import digest_code
from app.settings import get_settings

logger = logging.getLogger("app.challenges")


class ChallengeKind(str, enum.Enum):
    REGISTRATION = "REGISTRATION"
    CLOCK_IN = "CLOCK_IN"
    CLOCK_OUT = "CLOCK_OUT"


@dataclass(frozen=True, slots=True)
class PendingChallenge:
    kind: ChallengeKind
    identity: str
    code_digest: str
    expires_at: datetime
    context: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0

    def is_expired(self, now_utc: datetime | None = None) -> bool:
        return _normalize_ts(now_utc) > _normalize_ts(self.expires_at)


class ChallengeStore(ABC):
    backend_name = "abstract"

    @abstractmethod
    def issue(
        self,
        kind: ChallengeKind,
        identity: str,
        code: str,
        ttl: timedelta,
        context: dict[str, Any] | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> PendingChallenge:
        raise NotImplementedError

    @abstractmethod
    def lookup(self, kind: ChallengeKind, identity: str) -> PendingChallenge | None:
        raise NotImplementedError

    @abstractmethod
    def consume(self, kind: ChallengeKind, identity: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def record_failed_attempt(self, kind: ChallengeKind, identity: str) -> int:
        """Increment and return the wrong-code counter (0 when no slot exists)."""
        raise NotImplementedError

    @abstractmethod
    def purge_expired(self, now_utc: datetime | None = None) -> int:
        raise NotImplementedError


class InMemoryChallengeStore(ChallengeStore):
    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # One map per kind so an employee's clock-in and clock-out codes never collide.
        self._slots: dict[ChallengeKind, dict[str, PendingChallenge]] = {kind: {} for kind in ChallengeKind}

    def issue(
        self,
        kind: ChallengeKind,
        identity: str,
        code: str,
        ttl: timedelta,
        context: dict[str, Any] | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> PendingChallenge:
        challenge = PendingChallenge(
            kind=kind,
            identity=identity,
            code_digest=digest_code(code),
            expires_at=_normalize_ts(now_utc) + ttl,
            context=dict(context or {}),
        )
        with self._lock:
            self._slots[kind][identity] = challenge
        return challenge

    def lookup(self, kind: ChallengeKind, identity: str) -> PendingChallenge | None:
        with self._lock:
            return self._slots[kind].get(identity)

    def consume(self, kind: ChallengeKind, identity: str) -> None:
        with self._lock:
            self._slots[kind].pop(identity, None)

    def record_failed_attempt(self, kind: ChallengeKind, identity: str) -> int:
        with self._lock:
            challenge = self._slots[kind].get(identity)
            if challenge is None:
                return 0
            updated = replace(challenge, attempts=challenge.attempts + 1)
            self._slots[kind][identity] = updated
            return updated.attempts

    def purge_expired(self, now_utc: datetime | None = None) -> int:
        now = _normalize_ts(now_utc)
        removed = 0
        with self._lock:
            for slots in self._slots.values():
                expired = [identity for identity, item in slots.items() if item.is_expired(now)]
                for identity in expired:
                    del slots[identity]
                removed += len(expired)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return sum(len(slots) for slots in self._slots.values())


class DatabaseChallengeStore(ChallengeStore):
    """Challenge slots in ``pending_challenges`` for multi-instance deployments."""

    backend_name = "database"

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_challenge(row: PendingChallengeRow) -> PendingChallenge:
        return PendingChallenge(
            kind=ChallengeKind(row.kind),
            identity=row.identity,
            code_digest=row.code_digest,
            expires_at=_normalize_ts(row.expires_at),
            context=dict(row.context or {}),
            attempts=int(row.attempts or 0),
        )

    def issue(
        self,
        kind: ChallengeKind,
        identity: str,
        code: str,
        ttl: timedelta,
        context: dict[str, Any] | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> PendingChallenge:
        row = PendingChallengeRow(
            kind=kind.value,
            identity=identity,
            code_digest=digest_code(code),
            expires_at=_normalize_ts(now_utc) + ttl,
            attempts=0,
            context=dict(context or {}),
        )
        with self._session_factory() as session:
            session.execute(
                delete(PendingChallengeRow).where(
                    PendingChallengeRow.kind == kind.value,
                    PendingChallengeRow.identity == identity,
                )
            )
            session.add(row)
            session.commit()
            return self._to_challenge(row)

    def lookup(self, kind: ChallengeKind, identity: str) -> PendingChallenge | None:
        with self._session_factory() as session:
            row = session.scalar(
                select(PendingChallengeRow).where(
                    PendingChallengeRow.kind == kind.value,
                    PendingChallengeRow.identity == identity,
                )
            )
            if row is None:
                return None
            return self._to_challenge(row)

    def consume(self, kind: ChallengeKind, identity: str) -> None:
        with self._session_factory() as session:
            session.execute(
                delete(PendingChallengeRow).where(
                    PendingChallengeRow.kind == kind.value,
                    PendingChallengeRow.identity == identity,
                )
            )
            session.commit()

    def record_failed_attempt(self, kind: ChallengeKind, identity: str) -> int:
        with self._session_factory() as session:
            session.execute(
                update(PendingChallengeRow)
                .where(
                    PendingChallengeRow.kind == kind.value,
                    PendingChallengeRow.identity == identity,
                )
                .values(attempts=PendingChallengeRow.attempts + 1)
            )
            session.commit()
            attempts = session.scalar(
                select(PendingChallengeRow.attempts).where(
                    PendingChallengeRow.kind == kind.value,
                    PendingChallengeRow.identity == identity,
                )
            )
            return int(attempts or 0)

    def purge_expired(self, now_utc: datetime | None = None) -> int:
        now = _normalize_ts(now_utc)
        with self._session_factory() as session:
            result = session.execute(
                delete(PendingChallengeRow).where(PendingChallengeRow.expires_at < now)
            )
            session.commit()
            return int(result.rowcount or 0)


def build_challenge_store(backend: str) -> ChallengeStore:
    normalized = (backend or "").strip().lower() or "memory"
    if normalized == "memory":
        return InMemoryChallengeStore()
    if normalized == "database":
        return DatabaseChallengeStore(SessionLocal)
    raise ValueError(f"Unknown challenge store backend: {backend}")


@lru_cache
def get_challenge_store() -> ChallengeStore:
    store = build_challenge_store(get_settings().challenge_store_backend)
    logger.info("challenge_store_ready", extra={"backend": store.backend_name})
    return store

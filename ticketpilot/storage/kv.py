"""Keyed string store with per-key expiry."""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, col

from .db import Clock, as_utc, utc_now
from .models import KeyValue

logger = logging.getLogger(__name__)


class TTLStore:
    """Key/value store where each record expires after its TTL.

    Expired rows are treated as absent on read and removed lazily. Writes
    overwrite any previous value and reset the expiry.
    """

    def __init__(self, engine: Engine, clock: Clock = utc_now):
        self.engine = engine
        self.clock = clock

    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        """Store value under key.

        Args:
            key: Record key
            value: Serialized value
            ttl_seconds: Lifetime in seconds (None keeps the record forever)
        """
        now = self.clock()
        expires_at = None
        if ttl_seconds is not None:
            expires_at = as_utc(now + timedelta(seconds=ttl_seconds))

        with Session(self.engine) as session:
            row = session.get(KeyValue, key)
            if row is None:
                row = KeyValue(key=key, value=value, updated_at=as_utc(now))
            row.value = value
            row.expires_at = expires_at
            row.updated_at = as_utc(now)
            session.add(row)
            session.commit()

    def get(self, key: str) -> Optional[str]:
        """Return the live value for key, or None when absent or expired."""
        with Session(self.engine) as session:
            row = session.get(KeyValue, key)
            if row is None:
                return None
            if self._expired(row):
                session.delete(row)
                session.commit()
                logger.debug("Key expired: %s", key)
                return None
            return row.value

    def delete(self, key: str) -> bool:
        """Delete key. Returns True if a live record was removed."""
        with Session(self.engine) as session:
            row = session.get(KeyValue, key)
            if row is None:
                return False
            live = not self._expired(row)
            session.delete(row)
            session.commit()
            return live

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until key expires (inf for no expiry, None when absent)."""
        with Session(self.engine) as session:
            row = session.get(KeyValue, key)
            if row is None or self._expired(row):
                return None
            if row.expires_at is None:
                return float("inf")
            remaining = as_utc(row.expires_at) - self.clock()
            return remaining.total_seconds()

    def purge_expired(self) -> int:
        """Remove every expired record. Returns the number removed."""
        now = as_utc(self.clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(KeyValue).where(
                    col(KeyValue.expires_at).is_not(None),
                    col(KeyValue.expires_at) <= now,
                )
            )
            session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info("Purged %s expired keys", removed)
        return removed

    def _expired(self, row: KeyValue) -> bool:
        if row.expires_at is None:
            return False
        return as_utc(row.expires_at) <= self.clock()

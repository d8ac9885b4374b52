"""
link_store.py
=============
Persistence for Polymart account links.

A link starts as a *pending* record (random state, no token) when a user
begins the authorization handshake, gains a token when Polymart redirects
back with a matching state, and is deleted on disconnect.

Records are kept in polymart_links.json next to the other gateway data.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
#  Link Record
# ──────────────────────────────────────────────

class LinkRecord:
    """One row of the link table."""

    def __init__(
        self,
        id: int,
        user_id: str,
        random_state: str,
        token: Optional[str] = None,
        created_at: float = 0.0,
    ) -> None:
        self.id = id
        self.user_id = user_id
        self.random_state = random_state
        self.token = token
        self.created_at = created_at

    @property
    def pending(self) -> bool:
        return self.token is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "random_state": self.random_state,
            "token": self.token,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LinkRecord":
        return cls(
            id=int(data.get("id", 0)),
            user_id=str(data.get("user_id", "")),
            random_state=data.get("random_state", ""),
            token=data.get("token"),
            created_at=float(data.get("created_at", 0.0)),
        )


# ──────────────────────────────────────────────
#  Link Store
# ──────────────────────────────────────────────

class LinkStore:
    """
    JSON-file backed table of Polymart links.

    Args:
        path:        Path to polymart_links.json (None keeps records in memory)
        pending_ttl: Seconds a pending record stays valid for a callback
        clock:       Time source, injectable for tests
    """

    def __init__(
        self,
        path: Optional[str | Path] = None,
        pending_ttl: float = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path) if path else None
        self.pending_ttl = pending_ttl
        self._clock = clock
        self.records: List[LinkRecord] = []
        self._lock = threading.RLock()
        self._load()

    # ================================================================
    #  QUERIES
    # ================================================================

    def for_user(self, user_id: str) -> List[LinkRecord]:
        return [r for r in self.records if r.user_id == user_id]

    def find_by_state(self, state: str) -> Optional[LinkRecord]:
        """Most recent pending record for ``state`` that has not expired."""
        with self._lock:
            self.prune_expired()
            matches = [r for r in self.records if r.random_state == state and r.pending]
        if not matches:
            return None
        return max(matches, key=lambda r: r.id)

    def get_token(self, user_id: str) -> Optional[str]:
        """Token of the user's most recent completed link, if any."""
        linked = [r for r in self.for_user(user_id) if r.token]
        if not linked:
            return None
        return max(linked, key=lambda r: r.id).token

    def is_linked(self, user_id: str) -> bool:
        return self.get_token(user_id) is not None

    # ================================================================
    #  MUTATIONS
    # ================================================================
    # Flask serves requests on several threads; every mutation holds the
    # lock until its snapshot is on disk.

    def create_pending(self, user_id: str, state: str) -> LinkRecord:
        with self._lock:
            next_id = max((r.id for r in self.records), default=0) + 1
            record = LinkRecord(
                id=next_id,
                user_id=user_id,
                random_state=state,
                created_at=self._clock(),
            )
            self.records.append(record)
            self._save()
        return record

    def set_token(self, record_id: int, token: str) -> None:
        with self._lock:
            for record in self.records:
                if record.id == record_id:
                    record.token = token
                    self._save()
                    return
        raise KeyError(record_id)

    def delete(self, record_id: int) -> None:
        with self._lock:
            self.records = [r for r in self.records if r.id != record_id]
            self._save()

    def delete_for_user(self, user_id: str) -> int:
        with self._lock:
            before = len(self.records)
            self.records = [r for r in self.records if r.user_id != user_id]
            removed = before - len(self.records)
            if removed:
                self._save()
        return removed

    def prune_expired(self) -> int:
        """Drop pending records older than ``pending_ttl``."""
        with self._lock:
            cutoff = self._clock() - self.pending_ttl
            before = len(self.records)
            self.records = [
                r for r in self.records if not (r.pending and r.created_at < cutoff)
            ]
            removed = before - len(self.records)
            if removed:
                self._save()
        if removed:
            logger.info("Pruned %d expired Polymart link requests", removed)
        return removed

    # ================================================================
    #  PERSISTENCE
    # ================================================================

    def _load(self) -> None:
        """Load links from polymart_links.json."""
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            self.records = [LinkRecord.from_dict(r) for r in data.get("links", [])]
            logger.debug("Loaded %d Polymart links", len(self.records))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not load Polymart link store: %s", exc)

    def _save(self) -> None:
        """Persist links to polymart_links.json. Caller holds the lock."""
        if self.path is None:
            return
        data = {
            "links": [r.to_dict() for r in self.records],
            "last_updated": datetime.now(tz=timezone.utc).isoformat(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.path.parent,
            prefix=self.path.name, suffix=".tmp", delete=False,
        ) as fh:
            json.dump(data, fh, indent=2)
        try:
            os.replace(fh.name, self.path)
        except OSError:
            os.unlink(fh.name)
            raise

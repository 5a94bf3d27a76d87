"""
symbolic_swarm/evolution/recorder.py

Append-only lineage ledger.

Each candidate id maps to a record of what it was (equation, loss,
score, parent) and an ordered list of events: mutations it took part in,
tuning passes, and its death. Population snapshots per output and
iteration are stored alongside. Entries are never removed or rewritten;
only new events are appended.

Access is serialised with a lock because generation steps for different
populations record into the same ledger concurrently.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class LedgerEvent:
    """One thing that happened to a candidate."""
    type: str  # "mutate", "crossover", "tuning", "death", ...
    time: float = field(default_factory=time.time)
    child: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "time": self.time}
        if self.child is not None:
            data["child"] = self.child
        data.update(self.detail)
        return data


class RecordLedger:
    """Nested id -> events mapping, plus population snapshots."""

    def __init__(self):
        self._entries: Dict[int, Dict[str, Any]] = {}
        self._events: Dict[int, List[LedgerEvent]] = {}
        self._populations: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def __contains__(self, member_id: int) -> bool:
        with self._lock:
            return member_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def ensure(self, member_id: int, **info: Any) -> None:
        """Create the entry for member_id if it does not exist yet."""
        with self._lock:
            if member_id not in self._entries:
                self._entries[member_id] = dict(info)
                self._events[member_id] = []

    def append(self, member_id: int, event: LedgerEvent) -> None:
        with self._lock:
            if member_id not in self._entries:
                self._entries[member_id] = {}
                self._events[member_id] = []
            self._events[member_id].append(event)

    def record_event(
        self,
        member_id: int,
        event_type: str,
        child: Optional[int] = None,
        **detail: Any,
    ) -> None:
        self.append(member_id, LedgerEvent(type=event_type, child=child, detail=detail))

    def record_population(
        self,
        key: str,
        iteration: int,
        members: List[Dict[str, Any]],
    ) -> None:
        """Store a snapshot of a population under key/iteration."""
        with self._lock:
            snapshots = self._populations.setdefault(key, {})
            snapshots[f"iteration{iteration}"] = {
                "time": time.time(),
                "members": list(members),
            }

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            lineage = {
                str(member_id): {
                    **info,
                    "events": [e.to_dict() for e in self._events[member_id]],
                }
                for member_id, info in self._entries.items()
            }
            return {"lineage": lineage, "populations": dict(self._populations)}

    def export_json(self, path: Union[str, Path]) -> None:
        data = self.to_dict()
        with open(path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        logger.info(f"Record ledger with {len(data['lineage'])} entries saved to {path}")

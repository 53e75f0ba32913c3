"""
Presence Reconciler: raw presence table -> stable, ordered RoomMembership.

The table is recomputed from scratch on every sync/join/leave, never
patched incrementally. Only the first record under each presence key
counts, and members are ordered by (join_ts, id) so every client that has
seen the same table gets the same list.

Resubscription races can briefly report an empty table. An empty result
that replaces a non-empty one within the grace window is suppressed and
the cached list is re-emitted. Joins bypass the guard. Once the window has
passed an empty table is the truth: the room really is empty.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from config import settings
from models.room import Member, RoomMembership
from utils.ids import now_ms

logger = logging.getLogger(__name__)

PresenceTable = Dict[str, List[Dict[str, Any]]]


def members_from_table(table: PresenceTable) -> List[Member]:
    """First valid record per key, deduplicated by member id, sorted."""
    by_id: Dict[str, Member] = {}
    for key, metas in (table or {}).items():
        if not metas:
            continue
        try:
            member = Member.model_validate(metas[0])
        except ValidationError:
            logger.warning(f"Ignoring malformed presence record under key {key}")
            continue
        current = by_id.get(member.id)
        if current is None or member.order_key < current.order_key:
            by_id[member.id] = member
    return sorted(by_id.values(), key=lambda m: m.order_key)


class PresenceReconciler:
    """One per channel. Feed it presence events, read `membership`."""

    def __init__(
        self,
        room_id: str,
        grace_ms: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.room_id = room_id
        self.grace_ms = grace_ms if grace_ms is not None else settings.empty_snapshot_grace_ms
        self._clock = clock
        self._last = RoomMembership(room_id=room_id)
        self._last_at: int = 0
        self._listeners: List[Callable[[RoomMembership], None]] = []

    @property
    def membership(self) -> RoomMembership:
        return self._last

    def listen(self, fn: Callable[[RoomMembership], None]) -> Callable[[], None]:
        self._listeners.append(fn)

        def dispose() -> None:
            if fn in self._listeners:
                self._listeners.remove(fn)

        return dispose

    def handle(self, event: str, table: PresenceTable) -> RoomMembership:
        """Presence callback: recompute and emit. Returns what was emitted."""
        return self.reconcile(table, guard=(event != "join"))

    def reconcile(self, table: PresenceTable, guard: bool = True) -> RoomMembership:
        now = self._clock()
        members = members_from_table(table)

        if guard and not members and len(self._last) > 0:
            age = now - self._last_at
            if age < self.grace_ms:
                logger.debug(
                    f"[{self.room_id}] suppressed empty presence snapshot ({age}ms after last)"
                )
                self._emit(self._last)
                return self._last

        self._last = RoomMembership(room_id=self.room_id, members=members)
        self._last_at = now
        self._emit(self._last)
        return self._last

    def _emit(self, membership: RoomMembership) -> None:
        for fn in list(self._listeners):
            fn(membership)

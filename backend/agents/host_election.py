"""
Host election: a pure function of the current membership.

No handoff protocol and no memory of who was host before. Every client
recomputes from its reconciled list on each change, so clients holding
the same snapshot always agree.
"""
from typing import Iterable, Optional

from models.room import Member, RoomMembership


def elect_host(members: Iterable[Member]) -> Optional[Member]:
    """Earliest joiner wins; equal join times fall back to the lower id."""
    ordered = sorted(members, key=lambda m: m.order_key)
    return ordered[0] if ordered else None


def is_host(membership: RoomMembership, member_id: str) -> bool:
    host = elect_host(membership.members)
    return host is not None and host.id == member_id

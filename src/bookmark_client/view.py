"""
In-memory view of one user's bookmarks.

The view merges three independent producers into one ordered collection:
the initial snapshot, local mutation results (optimistic inserts and delete
confirmations), and realtime change events. Every merge is keyed by the
server-assigned id, so an insert (or delete) delivered by both the local path
and the realtime feed takes effect exactly once, whichever arrives first.

Entries are ordered by created_at, newest first. Among equal timestamps the
entry merged later comes first.
"""
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from enum import StrEnum
from uuid import UUID, uuid4

from schemas.bookmark import BookmarkResponse
from schemas.change_event import ChangeEvent, ChangeType


class EntryState(StrEnum):
    """Lifecycle of one logical bookmark as seen by this client."""

    ABSENT = "absent"
    PENDING = "pending"  # create sent, no response yet (keyed by a local token)
    PRESENT = "present"
    DELETING = "deleting"  # delete sent, entry still shown with a busy marker


def _sort_key(created_at: datetime) -> datetime:
    # Naive timestamps (e.g. from SQLite) are UTC
    if created_at.tzinfo is None:
        return created_at.replace(tzinfo=UTC)
    return created_at


class BookmarkView:
    """Single-writer ordered collection of bookmarks, unique by id."""

    def __init__(self, records: Iterable[BookmarkResponse] = ()) -> None:
        self._entries: list[BookmarkResponse] = []
        self._by_id: dict[UUID, BookmarkResponse] = {}
        self._deleting: set[UUID] = set()
        self._pending_creates: set[UUID] = set()
        self.load_snapshot(records)

    @property
    def items(self) -> list[BookmarkResponse]:
        """Visible bookmarks, newest first."""
        return list(self._entries)

    @property
    def ids(self) -> list[UUID]:
        """Ids of visible bookmarks, in display order."""
        return [entry.id for entry in self._entries]

    @property
    def is_creating(self) -> bool:
        """True while at least one create is awaiting its response."""
        return bool(self._pending_creates)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[BookmarkResponse]:
        return iter(list(self._entries))

    def __contains__(self, bookmark_id: object) -> bool:
        return bookmark_id in self._by_id

    def get(self, bookmark_id: UUID) -> BookmarkResponse | None:
        """Look up a visible bookmark by id."""
        return self._by_id.get(bookmark_id)

    def state_of(self, key: UUID) -> EntryState:
        """State of a bookmark id, or of a pending-create token from begin_create()."""
        if key in self._pending_creates:
            return EntryState.PENDING
        if key not in self._by_id:
            return EntryState.ABSENT
        if key in self._deleting:
            return EntryState.DELETING
        return EntryState.PRESENT

    def is_deleting(self, bookmark_id: UUID) -> bool:
        """True while a delete for this id is in flight."""
        return bookmark_id in self._deleting

    # -- snapshot ---------------------------------------------------------------

    def load_snapshot(self, records: Iterable[BookmarkResponse]) -> None:
        """Replace the collection with a full snapshot (duplicates keep the first copy)."""
        unique: dict[UUID, BookmarkResponse] = {}
        for record in records:
            unique.setdefault(record.id, record)
        # Stable sort keeps the store's order among equal timestamps
        self._entries = sorted(
            unique.values(), key=lambda r: _sort_key(r.created_at), reverse=True,
        )
        self._by_id = unique

    def resync(self, records: Iterable[BookmarkResponse]) -> None:
        """Replace the collection with a fresh snapshot, keeping busy markers still relevant."""
        self.load_snapshot(records)
        self._deleting &= self._by_id.keys()

    # -- merges -----------------------------------------------------------------

    def merge_insert(self, record: BookmarkResponse) -> bool:
        """
        Add a bookmark unless one with the same id is already visible.

        Returns:
            True if the view changed.
        """
        if record.id in self._by_id:
            return False
        key = _sort_key(record.created_at)
        position = len(self._entries)
        for index, entry in enumerate(self._entries):
            if _sort_key(entry.created_at) <= key:
                position = index
                break
        self._entries.insert(position, record)
        self._by_id[record.id] = record
        return True

    def merge_delete(self, bookmark_id: UUID) -> bool:
        """
        Remove a bookmark by id; removing an absent id is a no-op.

        Returns:
            True if the view changed.
        """
        record = self._by_id.pop(bookmark_id, None)
        if record is None:
            return False
        self._entries = [entry for entry in self._entries if entry.id != bookmark_id]
        return True

    def apply(self, change: ChangeEvent) -> bool:
        """Merge a realtime change event."""
        if change.type == ChangeType.INSERT:
            return self.merge_insert(change.record)
        return self.merge_delete(change.old_record.id)

    # -- local mutation bookkeeping ----------------------------------------------

    def begin_create(self) -> UUID:
        """Mark a create as in flight; returns a local token for its pending state."""
        token = uuid4()
        self._pending_creates.add(token)
        return token

    def complete_create(self, token: UUID, record: BookmarkResponse) -> bool:
        """Merge the server-confirmed record of a pending create."""
        self._pending_creates.discard(token)
        return self.merge_insert(record)

    def fail_create(self, token: UUID) -> None:
        """Drop a pending create; nothing was shown for it, so the view is unchanged."""
        self._pending_creates.discard(token)

    def begin_delete(self, bookmark_id: UUID) -> bool:
        """Show the busy marker on a visible entry; returns False if it is not visible."""
        if bookmark_id not in self._by_id:
            return False
        self._deleting.add(bookmark_id)
        return True

    def end_delete(self, bookmark_id: UUID) -> None:
        """Clear the busy marker, whether or not the entry is still visible."""
        self._deleting.discard(bookmark_id)

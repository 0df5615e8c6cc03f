"""
Cursor paging over the ``users`` collection.

``RankingPager`` pages the global leaderboard by ``totalSpots``. The store
only moves forward from a cursor, so the last snapshot of every visited page
is kept and going back replays the cursor of the page before it.

``SearchPager`` finds users whose username contains a term. Substring match
has no index, so batches ordered by username are scanned and filtered here.
The scan cursor only moves forward for a given term and the total number of
scanned documents per term is capped.
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Tuple

from wildspot.core.exceptions import DocumentStoreError, QueryError
from wildspot.documents.base import Direction, DocumentStore, Snapshot
from wildspot.schemas.sighting import RankingUser

logger = logging.getLogger(__name__)

USERS = "users"
SCORE_FIELD = "totalSpots"
PAGE_SIZE = 10
SEARCH_BATCH_SIZE = 50
SEARCH_SCAN_CAP = 500


def ranking_user(snapshot: Snapshot, global_rank: Optional[int] = None) -> RankingUser:
    return RankingUser(
        id=snapshot.id,
        username=snapshot.get("username") or "Unknown",
        spots=snapshot.get(SCORE_FIELD) or 0,
        steps=snapshot.get("totalSteps") or 0,
        global_rank=global_rank,
    )


def record_cursor(cursors: Tuple[Snapshot, ...], page: int, last: Snapshot) -> Tuple[Snapshot, ...]:
    """Remember ``last`` as the end of ``page``, dropping cursors past it"""
    return cursors[:page] + (last,)


async def global_rank(store: DocumentStore, score: int, collection: str = USERS) -> int:
    """1 + number of users with a strictly greater score"""
    higher = await store.count(store.collection(collection).where(SCORE_FIELD, ">", score))
    return higher + 1


# =====================================
# Leaderboard
# =====================================
@dataclass(frozen=True)
class RankingState:
    users: Tuple[RankingUser, ...] = ()
    page: int = 0
    cursors: Tuple[Snapshot, ...] = ()
    loading: bool = False
    error: Optional[str] = None

    def can_go_next(self) -> bool:
        return len(self.users) == PAGE_SIZE and len(self.cursors) > self.page

    def can_go_previous(self) -> bool:
        return self.page > 0

    def cursor_for(self, page: int) -> Optional[Snapshot]:
        """``start_after`` cursor that opens ``page``"""
        return None if page == 0 else self.cursors[page - 1]


class RankingPager:
    def __init__(self, store: DocumentStore, collection: str = USERS):
        self._store = store
        self._collection = collection
        self.state = RankingState()

    async def first_page(self) -> List[RankingUser]:
        return await self._load(0, reset=True)

    async def next_page(self) -> Optional[List[RankingUser]]:
        if not self.state.can_go_next():
            return None
        return await self._load(self.state.page + 1)

    async def previous_page(self) -> Optional[List[RankingUser]]:
        if not self.state.can_go_previous():
            return None
        return await self._load(self.state.page - 1)

    async def _load(self, page: int, reset: bool = False) -> List[RankingUser]:
        cursor = None if reset else self.state.cursor_for(page)
        query = (
            self._store.collection(self._collection)
            .order_by(SCORE_FIELD, Direction.DESCENDING)
            .limit(PAGE_SIZE)
        )
        if cursor is not None:
            query = query.start_after(cursor)

        self.state = replace(self.state, loading=True, error=None)
        try:
            snapshots = await self._store.run(query)
        except DocumentStoreError as e:
            logger.error(f"Failed to load rankings page {page}: {e}")
            self.state = replace(self.state, loading=False, error=str(e) or "Failed to load rankings")
            raise QueryError(f"Failed to load rankings: {e}") from e

        cursors = () if reset else self.state.cursors
        if snapshots:
            cursors = record_cursor(cursors, page, snapshots[-1])
        self.state = RankingState(
            users=tuple(ranking_user(s) for s in snapshots),
            page=page,
            cursors=cursors,
        )
        return list(self.state.users)


# =====================================
# Username search
# =====================================
def normalize_term(term: str) -> str:
    return term.strip().lower()


def match_batch(snapshots: Iterable[Snapshot], term: str) -> List[Snapshot]:
    """Case-insensitive substring match on ``username``"""
    return [s for s in snapshots if term in (s.get("username") or "").lower()]


def merge_matches(existing: Sequence[RankingUser], new: Iterable[RankingUser]) -> Tuple[RankingUser, ...]:
    seen = {user.id for user in existing}
    merged = list(existing)
    for user in new:
        if user.id not in seen:
            seen.add(user.id)
            merged.append(user)
    return tuple(merged)


@dataclass(frozen=True)
class SearchState:
    term: str = ""
    matches: Tuple[RankingUser, ...] = ()
    cursor: Optional[Snapshot] = None
    scanned: int = 0
    done: bool = False
    page: int = 0
    loading: bool = False
    error: Optional[str] = None

    @property
    def needed(self) -> int:
        return (self.page + 1) * PAGE_SIZE

    def page_results(self) -> List[RankingUser]:
        return list(self.matches[self.page * PAGE_SIZE:self.needed])

    def can_go_next(self) -> bool:
        return not self.done or self.needed < len(self.matches)

    def with_term(self, term: str) -> "SearchState":
        """Same state for the same term, a fresh one otherwise"""
        term = normalize_term(term)
        return self if term == self.term else SearchState(term=term)


class SearchPager:
    def __init__(
            self,
            store: DocumentStore,
            collection: str = USERS,
            batch_size: int = SEARCH_BATCH_SIZE,
            scan_cap: int = SEARCH_SCAN_CAP,
    ):
        self._store = store
        self._collection = collection
        self._batch_size = batch_size
        self._scan_cap = scan_cap
        self.state = SearchState()

    async def search(self, term: str) -> List[RankingUser]:
        self.state = replace(self.state.with_term(term), page=0)
        return await self._fill()

    async def next_page(self) -> List[RankingUser]:
        if not self.state.can_go_next():
            return self.state.page_results()
        self.state = replace(self.state, page=self.state.page + 1)
        return await self._fill()

    def previous_page(self) -> List[RankingUser]:
        if self.state.page > 0:
            self.state = replace(self.state, page=self.state.page - 1)
        return self.state.page_results()

    async def _fill(self) -> List[RankingUser]:
        """Scan batches until the current page is full or the term is exhausted"""
        state = self.state
        if not state.term:
            self.state = replace(state, done=True)
            return []

        state = replace(state, loading=True, error=None)
        self.state = state
        try:
            while len(state.matches) < state.needed and not state.done:
                remaining = self._scan_cap - state.scanned
                if remaining <= 0:
                    logger.info(f"Search for {state.term!r} stopped after {state.scanned} documents")
                    state = replace(state, done=True)
                    break

                limit = min(self._batch_size, remaining)
                batch = await self._fetch_batch(state.cursor, limit)
                if self.state.term != state.term:
                    return self.state.page_results()
                if not batch:
                    state = replace(state, done=True)
                    break

                ranked = []
                for snapshot in match_batch(batch, state.term):
                    rank = await global_rank(self._store, snapshot.get(SCORE_FIELD) or 0, self._collection)
                    ranked.append(ranking_user(snapshot, rank))

                if self.state.term != state.term:
                    # Superseded by a new term while awaiting
                    return self.state.page_results()

                state = replace(
                    state,
                    matches=merge_matches(state.matches, ranked),
                    cursor=batch[-1],
                    scanned=state.scanned + len(batch),
                    done=len(batch) < limit,
                )
                self.state = state
        except DocumentStoreError as e:
            logger.error(f"Search batch for {state.term!r} failed: {e}")
            if self.state.term == state.term:
                self.state = replace(state, loading=False, error=str(e) or "Search failed")
            raise QueryError(f"Search failed: {e}") from e

        self.state = replace(state, loading=False)
        return self.state.page_results()

    async def _fetch_batch(self, cursor: Optional[Snapshot], limit: int) -> List[Snapshot]:
        query = self._store.collection(self._collection).order_by("username").limit(limit)
        if cursor is not None:
            query = query.start_after(cursor)
        return await self._store.run(query)

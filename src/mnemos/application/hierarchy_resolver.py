"""
Hierarchy resolver for deriving deck membership from the subject tree.

Subjects are stored flat and addressed by materialized paths ("bio.cell.mito").
Descendant lookups are range queries over the sorted path index, so no
recursive traversal is needed.

Concurrency: all structural state lives in an immutable _TreeState and all
cached membership lives in dicts of frozensets. Writers build replacements and
swap references under a lock; readers only ever dereference, so they see a
consistent (possibly slightly stale) snapshot and never wait on a writer.
"""

import logging
import re
import threading
from bisect import bisect_left, insort
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import MappingProxyType

from mnemos.domain.constants import (
    DEFAULT_STALENESS_TOLERANCE_SECONDS,
    PATH_RANGE_SENTINEL,
    PATH_SEPARATOR,
)
from mnemos.domain.errors import InvalidSubjectPath, UnknownDeck, UnknownSubject
from mnemos.domain.models import CardTemplate, Deck, DeckSelector, Subject

logger = logging.getLogger(__name__)

LABEL_RE = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(frozen=True)
class _TreeState:
    generation: int = 0
    subjects: Mapping[str, Subject] = field(default_factory=dict)
    paths: tuple[str, ...] = ()
    by_path: Mapping[str, str] = field(default_factory=dict)
    cards_by_subject: Mapping[str, frozenset[str]] = field(default_factory=dict)
    card_subject: Mapping[str, str] = field(default_factory=dict)
    decks: Mapping[str, Deck] = field(default_factory=dict)


@dataclass(frozen=True)
class MembershipSnapshot:
    subject_id: str
    card_ids: frozenset[str]
    generation: int
    computed_at: datetime


@dataclass(frozen=True)
class _Invalidation:
    generation: int
    at: datetime


class HierarchyResolver:
    """
    Maintains the subject tree and the cached card membership per subject.

    Args:
        staleness_tolerance: How long a cached set may be served after it was
            invalidated before a read forces recomputation.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        staleness_tolerance: timedelta = timedelta(seconds=DEFAULT_STALENESS_TOLERANCE_SECONDS),
        clock: Callable[[], datetime] | None = None,
    ):
        self.staleness_tolerance = staleness_tolerance
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._state = _TreeState()
        self._snapshots: Mapping[str, MembershipSnapshot] = MappingProxyType({})
        self._invalidated: Mapping[str, _Invalidation] = MappingProxyType({})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._state.generation

    def get_subject(self, subject_id: str) -> Subject:
        subject = self._state.subjects.get(subject_id)
        if subject is None:
            raise UnknownSubject(subject_id)
        return subject

    def has_subject(self, subject_id: str) -> bool:
        return subject_id in self._state.subjects

    def subjects(self) -> list[Subject]:
        """All subjects in path order (parents before children)."""
        state = self._state
        return [state.subjects[state.by_path[p]] for p in state.paths]

    def descendants(self, subject_id: str) -> list[Subject]:
        state = self._state
        subject = state.subjects.get(subject_id)
        if subject is None:
            raise UnknownSubject(subject_id)
        return [state.subjects[state.by_path[p]] for p in _descendant_paths(state, subject.path)]

    def subject_of(self, card_id: str) -> Subject | None:
        state = self._state
        subject_id = state.card_subject.get(card_id)
        return state.subjects.get(subject_id) if subject_id else None

    def resolve_deck_membership(self, subject_id: str) -> frozenset[str]:
        """
        Cards assigned to the subject or any descendant.

        Serves the cached set when it is fresh, or stale but still inside the
        tolerance window. Past the window the stale set is logged and
        recomputed eagerly.
        """
        state = self._state
        if subject_id not in state.subjects:
            raise UnknownSubject(subject_id)

        snapshot = self._snapshots.get(subject_id)
        if snapshot is None:
            return self._compute_and_install(state, subject_id).card_ids

        invalidation = self._invalidated.get(subject_id)
        if invalidation is None or invalidation.generation <= snapshot.generation:
            return snapshot.card_ids

        age = self._clock() - invalidation.at
        if age <= self.staleness_tolerance:
            return snapshot.card_ids

        logger.warning(
            f"Stale membership for subject {subject_id}: cached at generation "
            f"{snapshot.generation}, invalidated at {invalidation.generation} "
            f"({age.total_seconds():.1f}s ago); recomputing"
        )
        return self._compute_and_install(state, subject_id).card_ids

    def deck_members(self, deck_id: str) -> frozenset[str]:
        deck = self._state.decks.get(deck_id)
        if deck is None:
            raise UnknownDeck(deck_id)
        return self._members_of(deck)

    def cards_for(self, selector: DeckSelector) -> frozenset[str]:
        """
        Union of the membership of every deck and subject the selector names.

        An empty selector matches everything the resolver knows about.
        """
        state = self._state
        if selector.is_empty:
            cards: set[str] = set(state.card_subject)
            for deck in state.decks.values():
                cards |= deck.card_ids
            return frozenset(cards)

        result: set[str] = set()
        for deck_id in sorted(selector.deck_ids):
            deck = state.decks.get(deck_id)
            if deck is None:
                logger.warning(f"Selector names unknown deck {deck_id}; skipping")
                continue
            result |= self._members_of(deck)
        for subject_id in sorted(selector.subject_ids):
            try:
                result |= self.resolve_deck_membership(subject_id)
            except UnknownSubject:
                logger.warning(f"Selector names unknown subject {subject_id}; skipping")
        return frozenset(result)

    def deck_membership(self) -> set[tuple[str, str]]:
        """The denormalized (deck_id, card_id) assignment relation."""
        pairs: set[tuple[str, str]] = set()
        for deck in self._state.decks.values():
            pairs.update((deck.id, card_id) for card_id in self._members_of(deck))
        return pairs

    def sequence_key(self, template: CardTemplate) -> tuple[str, int, str]:
        """Curator order for new cards: subject path, then position, then id."""
        subject = self._state.subjects.get(template.subject_id or "")
        path = subject.path if subject else PATH_RANGE_SENTINEL
        return (path, template.position, template.id)

    def is_stale(self, subject_id: str) -> bool:
        snapshot = self._snapshots.get(subject_id)
        invalidation = self._invalidated.get(subject_id)
        if snapshot is None:
            return True
        return invalidation is not None and invalidation.generation > snapshot.generation

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def invalidate(self, subject_id: str) -> None:
        """Mark the subject and its ancestor chain as needing recomputation."""
        with self._lock:
            subject = self._state.subjects.get(subject_id)
            if subject is None:
                raise UnknownSubject(subject_id)
            self._commit(self._state)
            self._mark_invalid(_chain(subject.path), self._state.generation)

    def recompute(self, subject_id: str) -> frozenset[str]:
        """Eagerly rebuild one subject's cached membership. Idempotent."""
        state = self._state
        if subject_id not in state.subjects:
            raise UnknownSubject(subject_id)
        return self._compute_and_install(state, subject_id, wait=True).card_ids

    def reconcile(self) -> int:
        """
        Recompute every stale or missing cached set. Returns how many were rebuilt.

        Meant to run periodically so stale reads are never permanent.
        """
        state = self._state
        rebuilt = 0
        for subject_id in state.subjects:
            if self.is_stale(subject_id):
                self._compute_and_install(state, subject_id, wait=True)
                rebuilt += 1
        if rebuilt:
            logger.info(f"Reconciled {rebuilt} membership set(s) at generation {state.generation}")
        return rebuilt

    def _compute_and_install(
        self, state: _TreeState, subject_id: str, wait: bool = False
    ) -> MembershipSnapshot:
        snapshot = MembershipSnapshot(
            subject_id=subject_id,
            card_ids=_compute_membership(state, subject_id),
            generation=state.generation,
            computed_at=self._clock(),
        )
        # Readers never wait: if a writer holds the lock, serve uncached.
        if not self._lock.acquire(blocking=wait):
            return snapshot
        try:
            current = self._snapshots.get(subject_id)
            if current is None or current.generation <= snapshot.generation:
                snapshots = dict(self._snapshots)
                snapshots[subject_id] = snapshot
                self._snapshots = MappingProxyType(snapshots)
        finally:
            self._lock.release()
        return snapshot

    # ------------------------------------------------------------------
    # Structural writes
    # ------------------------------------------------------------------

    def add_subject(
        self,
        subject_id: str,
        name: str | None = None,
        parent_id: str | None = None,
        is_active: bool = True,
    ) -> Subject:
        _check_label(subject_id)
        with self._lock:
            state = self._state
            if subject_id in state.subjects:
                raise InvalidSubjectPath(f"Subject {subject_id} already exists")
            if parent_id is not None:
                parent = state.subjects.get(parent_id)
                if parent is None:
                    raise UnknownSubject(parent_id)
                path = f"{parent.path}{PATH_SEPARATOR}{subject_id}"
            else:
                path = subject_id

            subject = Subject(
                id=subject_id, name=name or subject_id, path=path, is_active=is_active
            )
            subjects = dict(state.subjects)
            subjects[subject_id] = subject
            by_path = dict(state.by_path)
            by_path[path] = subject_id
            paths = list(state.paths)
            insort(paths, path)

            self._commit(state, subjects=subjects, by_path=by_path, paths=tuple(paths))
            self._mark_invalid(_chain(path), self._state.generation)
        logger.debug(f"Added subject {subject_id} at {path}")
        return subject

    def move_subject(self, subject_id: str, new_parent_id: str | None) -> Subject:
        """
        Re-parent a subject, rewriting the paths of its whole subtree.

        Moving a subject under itself or one of its descendants is rejected:
        the resulting path would contain its own label.
        """
        with self._lock:
            state = self._state
            subject = state.subjects.get(subject_id)
            if subject is None:
                raise UnknownSubject(subject_id)

            if new_parent_id is None:
                new_path = subject_id
            else:
                parent = state.subjects.get(new_parent_id)
                if parent is None:
                    raise UnknownSubject(new_parent_id)
                if parent.path == subject.path or parent.path.startswith(
                    subject.path + PATH_SEPARATOR
                ):
                    raise InvalidSubjectPath(
                        f"Cannot move {subject_id} under its own subtree ({parent.path})"
                    )
                new_path = f"{parent.path}{PATH_SEPARATOR}{subject_id}"

            old_path = subject.path
            if new_path == old_path:
                return subject

            moved_paths = [old_path, *_descendant_paths(state, old_path)]
            subjects = dict(state.subjects)
            by_path = dict(state.by_path)
            for path in moved_paths:
                sid = by_path.pop(path)
                rewritten = new_path + path[len(old_path) :]
                subjects[sid] = Subject(
                    id=sid,
                    name=subjects[sid].name,
                    path=rewritten,
                    is_active=subjects[sid].is_active,
                )
                by_path[rewritten] = sid

            self._commit(state, subjects=subjects, by_path=by_path, paths=tuple(sorted(by_path)))
            generation = self._state.generation
            self._mark_invalid(_chain(old_path)[:-1] + _chain(new_path), generation)
        logger.info(f"Moved subject {subject_id}: {old_path} -> {new_path}")
        return self._state.subjects[subject_id]

    def remove_subject(self, subject_id: str) -> list[str]:
        """
        Delete a subject and its subtree. Cards filed there become unassigned.

        Returns:
            Ids of the removed subjects.
        """
        with self._lock:
            state = self._state
            subject = state.subjects.get(subject_id)
            if subject is None:
                raise UnknownSubject(subject_id)

            removed_paths = [subject.path, *_descendant_paths(state, subject.path)]
            removed_ids = [state.by_path[p] for p in removed_paths]
            removed_set = set(removed_ids)

            subjects = {k: v for k, v in state.subjects.items() if k not in removed_set}
            by_path = {p: sid for p, sid in state.by_path.items() if sid not in removed_set}
            cards_by_subject = {
                k: v for k, v in state.cards_by_subject.items() if k not in removed_set
            }
            card_subject = {
                card: sid for card, sid in state.card_subject.items() if sid not in removed_set
            }

            self._commit(
                state,
                subjects=subjects,
                by_path=by_path,
                paths=tuple(sorted(by_path)),
                cards_by_subject=cards_by_subject,
                card_subject=card_subject,
            )
            self._snapshots = MappingProxyType(
                {k: v for k, v in self._snapshots.items() if k not in removed_set}
            )
            self._invalidated = MappingProxyType(
                {k: v for k, v in self._invalidated.items() if k not in removed_set}
            )
            self._mark_invalid(_chain(subject.path)[:-1], self._state.generation)
        logger.info(f"Removed subject {subject_id} and {len(removed_ids) - 1} descendant(s)")
        return removed_ids

    def assign_card(self, card_id: str, subject_id: str | None) -> None:
        """File a card under a subject (None unassigns it)."""
        with self._lock:
            state = self._state
            if subject_id is not None and subject_id not in state.subjects:
                raise UnknownSubject(subject_id)

            previous = state.card_subject.get(card_id)
            if previous == subject_id:
                return

            cards_by_subject = dict(state.cards_by_subject)
            card_subject = dict(state.card_subject)
            affected: list[str] = []

            if previous is not None:
                cards_by_subject[previous] = cards_by_subject[previous] - {card_id}
                card_subject.pop(card_id)
                affected += _chain(state.subjects[previous].path)
            if subject_id is not None:
                cards_by_subject[subject_id] = cards_by_subject.get(
                    subject_id, frozenset()
                ) | {card_id}
                card_subject[card_id] = subject_id
                affected += _chain(state.subjects[subject_id].path)

            self._commit(state, cards_by_subject=cards_by_subject, card_subject=card_subject)
            self._mark_invalid(affected, self._state.generation)

    def unassign_card(self, card_id: str) -> None:
        self.assign_card(card_id, None)

    def register_deck(self, deck: Deck) -> None:
        with self._lock:
            decks = dict(self._state.decks)
            decks[deck.id] = deck
            self._commit(self._state, decks=decks)

    def remove_deck(self, deck_id: str) -> None:
        with self._lock:
            decks = {k: v for k, v in self._state.decks.items() if k != deck_id}
            self._commit(self._state, decks=decks)

    def load(
        self,
        subjects: Iterable[tuple[str, str, str | None]],
        templates: Iterable[CardTemplate],
        decks: Iterable[Deck] = (),
    ) -> None:
        """
        Bulk-load (id, name, parent_id) subjects, card assignments and decks.

        Subjects may come in any order as long as every parent is present.
        """
        pending = list(subjects)
        while pending:
            remaining = []
            for subject_id, name, parent_id in pending:
                if parent_id is None or self.has_subject(parent_id):
                    self.add_subject(subject_id, name, parent_id)
                else:
                    remaining.append((subject_id, name, parent_id))
            if len(remaining) == len(pending):
                missing = sorted({p for _, _, p in remaining if p is not None})
                raise UnknownSubject(", ".join(missing))
            pending = remaining

        for template in templates:
            if template.subject_id is not None:
                self.assign_card(template.id, template.subject_id)
        for deck in decks:
            self.register_deck(deck)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _members_of(self, deck: Deck) -> frozenset[str]:
        cards = set(deck.card_ids)
        for subject_id in sorted(deck.subject_ids):
            try:
                cards |= self.resolve_deck_membership(subject_id)
            except UnknownSubject:
                logger.warning(f"Deck {deck.id} references missing subject {subject_id}")
        return frozenset(cards)

    def _commit(self, previous: _TreeState, **changes) -> None:
        """Swap in a new tree state. Caller holds the lock."""
        fields = {
            "subjects": previous.subjects,
            "paths": previous.paths,
            "by_path": previous.by_path,
            "cards_by_subject": previous.cards_by_subject,
            "card_subject": previous.card_subject,
            "decks": previous.decks,
        }
        fields.update(changes)
        frozen = {
            k: MappingProxyType(v) if isinstance(v, dict) else v for k, v in fields.items()
        }
        self._state = _TreeState(generation=previous.generation + 1, **frozen)

    def _mark_invalid(self, subject_ids: Iterable[str], generation: int) -> None:
        """Caller holds the lock."""
        now = self._clock()
        invalidated = dict(self._invalidated)
        for subject_id in subject_ids:
            invalidated[subject_id] = _Invalidation(generation=generation, at=now)
        self._invalidated = MappingProxyType(invalidated)


def _check_label(subject_id: str) -> None:
    if not LABEL_RE.match(subject_id):
        raise InvalidSubjectPath(
            f"Invalid subject id {subject_id!r}: use letters, digits and underscores"
        )


def _chain(path: str) -> list[str]:
    """Ids from the root down to the node itself; labels are subject ids."""
    return path.split(PATH_SEPARATOR)


def _descendant_paths(state: _TreeState, path: str) -> list[str]:
    prefix = path + PATH_SEPARATOR
    lo = bisect_left(state.paths, prefix)
    hi = bisect_left(state.paths, prefix + PATH_RANGE_SENTINEL, lo)
    return list(state.paths[lo:hi])


def _compute_membership(state: _TreeState, subject_id: str) -> frozenset[str]:
    subject = state.subjects[subject_id]
    cards: set[str] = set(state.cards_by_subject.get(subject_id, frozenset()))
    for path in _descendant_paths(state, subject.path):
        cards |= state.cards_by_subject.get(state.by_path[path], frozenset())
    return frozenset(cards)

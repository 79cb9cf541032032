"""
Typed errors raised by the mnemos core.

Every error carries a stable snake_case code used by the HTTP boundary and the
CLI. None of them is fatal to a study session: callers skip the offending card.
"""

from typing import Any


class MnemosError(Exception):
    code = "mnemos_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRating(MnemosError):
    code = "invalid_rating"

    def __init__(self, value: Any):
        super().__init__(f"Invalid rating {value!r}; expected one of again, hard, good, easy")
        self.value = value


class UnknownCard(MnemosError):
    code = "unknown_card"

    def __init__(self, card_id: str):
        super().__init__(f"Unknown card: {card_id}")
        self.card_id = card_id


class UnknownLearner(MnemosError):
    code = "unknown_learner"

    def __init__(self, learner_id: str):
        super().__init__(f"Unknown learner: {learner_id}")
        self.learner_id = learner_id


class UnknownSubject(MnemosError):
    code = "unknown_subject"

    def __init__(self, subject_id: str):
        super().__init__(f"Unknown subject: {subject_id}")
        self.subject_id = subject_id


class InvalidSubjectPath(MnemosError):
    code = "invalid_subject_path"


class SessionNotFound(MnemosError):
    code = "session_not_found"

    def __init__(self, token: str):
        super().__init__(f"Session not found: {token}")
        self.token = token


class CardNotInSession(MnemosError):
    code = "card_not_in_session"

    def __init__(self, card_id: str):
        super().__init__(f"Card {card_id} is not eligible for this session")
        self.card_id = card_id


class DuplicateRating(MnemosError):
    code = "duplicate_rating"

    def __init__(self, card_id: str, presented_version: int, current_version: int):
        super().__init__(
            f"Rating for card {card_id} was already recorded "
            f"(presented v{presented_version}, current v{current_version})"
        )
        self.card_id = card_id


class VersionConflict(MnemosError):
    """Raised by stores when a compare-and-swap write loses a race."""

    code = "version_conflict"

    def __init__(self, key: tuple, expected: int, actual: int):
        super().__init__(f"Version conflict on {key}: expected v{expected}, found v{actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


class ConcurrentRatingConflict(MnemosError):
    """Transient: two ratings raced for the same progress row and the retry lost too."""

    code = "concurrent_rating_conflict"

    def __init__(self, learner_id: str, card_id: str):
        super().__init__(
            f"Concurrent rating conflict for learner {learner_id} on card {card_id}; retry later"
        )
        self.learner_id = learner_id
        self.card_id = card_id


class UnknownDeck(MnemosError):
    code = "unknown_deck"

    def __init__(self, deck_id: str):
        super().__init__(f"Unknown deck: {deck_id}")
        self.deck_id = deck_id


class InvalidCatalog(MnemosError):
    code = "invalid_catalog"


class DuplicateFlag(MnemosError):
    code = "duplicate_flag"

    def __init__(self, learner_id: str, card_id: str):
        super().__init__(f"Card {card_id} already flagged by {learner_id}")
        self.learner_id = learner_id
        self.card_id = card_id


class InvalidFlag(MnemosError):
    code = "invalid_flag"

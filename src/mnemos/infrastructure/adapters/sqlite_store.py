"""
SQLite Store: Infrastructure adapter for a local SQLite database.

Persists:
- card_progress rows keyed by (learner_id, card_id)
- session_state counters keyed by (learner_id, day)
- the append-only rating_event log
- learner card flags and reached streak milestones

Timestamps are stored as ISO-8601 strings, intervals as seconds.
"""

import logging
import sqlite3
from datetime import date, datetime, timedelta
from pathlib import Path

from mnemos.domain.errors import DuplicateFlag, VersionConflict
from mnemos.domain.models import (
    CardFlag,
    CardProgress,
    CardState,
    FlagReason,
    Rating,
    SessionState,
    StreakMilestone,
)
from mnemos.domain.ports import (
    FlagRepository,
    MilestoneRepository,
    ProgressRepository,
    SessionStateRepository,
)
from mnemos.domain.stats.models import AnalyticsWindow, RatingEvent
from mnemos.domain.stats.ports import RatingEventLog

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS card_progress (
    learner_id TEXT NOT NULL,
    card_id TEXT NOT NULL,
    state TEXT NOT NULL,
    interval_seconds REAL NOT NULL DEFAULT 0,
    ease REAL NOT NULL,
    due_at TEXT,
    repetitions INTEGER NOT NULL DEFAULT 0,
    lapses INTEGER NOT NULL DEFAULT 0,
    last_reviewed_at TEXT,
    step INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL,
    PRIMARY KEY (learner_id, card_id)
);

CREATE TABLE IF NOT EXISTS session_state (
    learner_id TEXT NOT NULL,
    day TEXT NOT NULL,
    new_introduced INTEGER NOT NULL DEFAULT 0,
    reviews_done INTEGER NOT NULL DEFAULT 0,
    ratings INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL,
    PRIMARY KEY (learner_id, day)
);

CREATE TABLE IF NOT EXISTS rating_event (
    id TEXT PRIMARY KEY,
    learner_id TEXT NOT NULL,
    card_id TEXT NOT NULL,
    rating INTEGER NOT NULL,
    occurred_at TEXT NOT NULL,
    state_before TEXT NOT NULL,
    state_after TEXT NOT NULL,
    ease_before REAL NOT NULL,
    ease_after REAL NOT NULL,
    interval_before REAL NOT NULL DEFAULT 0,
    interval_after REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS card_flag (
    id TEXT PRIMARY KEY,
    learner_id TEXT NOT NULL,
    card_id TEXT NOT NULL,
    reason TEXT NOT NULL,
    comment TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (learner_id, card_id)
);

CREATE TABLE IF NOT EXISTS streak_milestone (
    learner_id TEXT NOT NULL,
    days INTEGER NOT NULL,
    reached_on TEXT NOT NULL,
    PRIMARY KEY (learner_id, days)
);

CREATE INDEX IF NOT EXISTS idx_rating_event_occurred ON rating_event (occurred_at);
CREATE INDEX IF NOT EXISTS idx_card_progress_due ON card_progress (learner_id, due_at);
CREATE INDEX IF NOT EXISTS idx_card_flag_card ON card_flag (card_id);
"""


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteStore(
    ProgressRepository,
    SessionStateRepository,
    RatingEventLog,
    FlagRepository,
    MilestoneRepository,
):
    """
    SQLite-backed persistence for learner progress and rating history.

    Compare-and-swap writes are single UPDATE ... WHERE version = ? statements,
    so concurrent processes sharing the file cannot overwrite each other.
    Content (templates, learners) comes from the catalog, not from here.
    """

    def __init__(self, db_path: Path | str = ":memory:"):
        """
        Args:
            db_path: Database file, or ":memory:" for a throwaway database.
        """
        self.db_path = db_path
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: sqlite3.Connection | None = None
        self._init_schema()
        logger.info(f"SqliteStore initialized at {self.db_path}")

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.executescript(SCHEMA)
            columns = {row["name"] for row in self.conn.execute("PRAGMA table_info(session_state)")}
            if "ratings" not in columns:
                logger.info("Adding ratings column to session_state")
                self.conn.execute(
                    "ALTER TABLE session_state ADD COLUMN ratings INTEGER NOT NULL DEFAULT 0"
                )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ---------- Progress ----------

    async def get_progress(self, learner_id: str, card_id: str) -> CardProgress | None:
        row = self.conn.execute(
            "SELECT * FROM card_progress WHERE learner_id = ? AND card_id = ?",
            (learner_id, card_id),
        ).fetchone()
        return self._row_to_progress(row) if row else None

    async def get_progress_many(
        self, learner_id: str, card_ids: list[str]
    ) -> dict[str, CardProgress]:
        if not card_ids:
            return {}
        wanted = set(card_ids)
        rows = self.conn.execute(
            "SELECT * FROM card_progress WHERE learner_id = ?", (learner_id,)
        ).fetchall()
        return {
            row["card_id"]: self._row_to_progress(row) for row in rows if row["card_id"] in wanted
        }

    async def save_progress(self, progress: CardProgress, expected_version: int) -> CardProgress:
        new_version = expected_version + 1
        values = (
            progress.state.value,
            progress.interval.total_seconds(),
            progress.ease,
            _ts(progress.due_at),
            progress.repetitions,
            progress.lapses,
            _ts(progress.last_reviewed_at),
            progress.step,
            new_version,
        )
        with self.conn:
            if expected_version == 0:
                cursor = self.conn.execute(
                    """
                    INSERT OR IGNORE INTO card_progress
                        (learner_id, card_id, state, interval_seconds, ease, due_at,
                         repetitions, lapses, last_reviewed_at, step, version)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (progress.learner_id, progress.card_id, *values),
                )
            else:
                cursor = self.conn.execute(
                    """
                    UPDATE card_progress
                    SET state = ?, interval_seconds = ?, ease = ?, due_at = ?,
                        repetitions = ?, lapses = ?, last_reviewed_at = ?, step = ?,
                        version = ?
                    WHERE learner_id = ? AND card_id = ? AND version = ?
                    """,
                    (*values, progress.learner_id, progress.card_id, expected_version),
                )
        if cursor.rowcount != 1:
            current = await self.get_progress(progress.learner_id, progress.card_id)
            actual = current.version if current else 0
            raise VersionConflict((progress.learner_id, progress.card_id), expected_version, actual)

        stored = await self.get_progress(progress.learner_id, progress.card_id)
        if stored is None:
            # Deleted by another process between the write and the read back
            raise VersionConflict((progress.learner_id, progress.card_id), new_version, 0)
        return stored

    def _row_to_progress(self, row: sqlite3.Row) -> CardProgress:
        return CardProgress(
            learner_id=row["learner_id"],
            card_id=row["card_id"],
            state=CardState(row["state"]),
            interval=timedelta(seconds=row["interval_seconds"]),
            ease=row["ease"],
            due_at=_parse_ts(row["due_at"]),
            repetitions=row["repetitions"],
            lapses=row["lapses"],
            last_reviewed_at=_parse_ts(row["last_reviewed_at"]),
            step=row["step"],
            version=row["version"],
        )

    # ---------- Session state ----------

    async def get_session_state(self, learner_id: str, day: date) -> SessionState:
        row = self.conn.execute(
            "SELECT * FROM session_state WHERE learner_id = ? AND day = ?",
            (learner_id, day.isoformat()),
        ).fetchone()
        if row is None:
            return SessionState(learner_id, day)
        return SessionState(
            learner_id=row["learner_id"],
            day=date.fromisoformat(row["day"]),
            new_introduced=row["new_introduced"],
            reviews_done=row["reviews_done"],
            ratings=row["ratings"],
            version=row["version"],
        )

    async def save_session_state(self, state: SessionState, expected_version: int) -> SessionState:
        new_version = expected_version + 1
        with self.conn:
            if expected_version == 0:
                cursor = self.conn.execute(
                    """
                    INSERT OR IGNORE INTO session_state
                        (learner_id, day, new_introduced, reviews_done, ratings, version)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        state.learner_id,
                        state.day.isoformat(),
                        state.new_introduced,
                        state.reviews_done,
                        state.ratings,
                        new_version,
                    ),
                )
            else:
                cursor = self.conn.execute(
                    """
                    UPDATE session_state
                    SET new_introduced = ?, reviews_done = ?, ratings = ?, version = ?
                    WHERE learner_id = ? AND day = ? AND version = ?
                    """,
                    (
                        state.new_introduced,
                        state.reviews_done,
                        state.ratings,
                        new_version,
                        state.learner_id,
                        state.day.isoformat(),
                        expected_version,
                    ),
                )
        if cursor.rowcount != 1:
            current = await self.get_session_state(state.learner_id, state.day)
            raise VersionConflict((state.learner_id, state.day), expected_version, current.version)
        return await self.get_session_state(state.learner_id, state.day)

    async def active_days(self, learner_id: str, until: date) -> list[date]:
        rows = self.conn.execute(
            """
            SELECT day FROM session_state
            WHERE learner_id = ? AND day <= ? AND ratings > 0
            ORDER BY day DESC
            """,
            (learner_id, until.isoformat()),
        ).fetchall()
        return [date.fromisoformat(row["day"]) for row in rows]

    # ---------- Rating events ----------

    async def append(self, event: RatingEvent) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO rating_event
                    (id, learner_id, card_id, rating, occurred_at, state_before,
                     state_after, ease_before, ease_after, interval_before, interval_after)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.learner_id,
                    event.card_id,
                    int(event.rating),
                    event.occurred_at.isoformat(),
                    event.state_before.value,
                    event.state_after.value,
                    event.ease_before,
                    event.ease_after,
                    event.interval_before.total_seconds(),
                    event.interval_after.total_seconds(),
                ),
            )

    async def list_events(self, window: AnalyticsWindow | None = None) -> list[RatingEvent]:
        # Filtering happens in Python: ISO strings with different UTC offsets
        # do not compare correctly as text.
        rows = self.conn.execute("SELECT * FROM rating_event").fetchall()
        events = [self._row_to_event(row) for row in rows]
        if window is not None:
            events = [e for e in events if window.contains(e.occurred_at)]
        return sorted(events, key=lambda e: (e.occurred_at, e.id))

    def _row_to_event(self, row: sqlite3.Row) -> RatingEvent:
        return RatingEvent(
            id=row["id"],
            learner_id=row["learner_id"],
            card_id=row["card_id"],
            rating=Rating(row["rating"]),
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            state_before=CardState(row["state_before"]),
            state_after=CardState(row["state_after"]),
            ease_before=row["ease_before"],
            ease_after=row["ease_after"],
            interval_before=timedelta(seconds=row["interval_before"]),
            interval_after=timedelta(seconds=row["interval_after"]),
        )

    # ---------- Flags ----------

    async def add_flag(self, flag: CardFlag) -> None:
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO card_flag (id, learner_id, card_id, reason, comment, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        flag.id,
                        flag.learner_id,
                        flag.card_id,
                        flag.reason.value,
                        flag.comment,
                        flag.created_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateFlag(flag.learner_id, flag.card_id) from e

    async def flag_counts(self, card_ids: list[str]) -> dict[str, int]:
        if not card_ids:
            return {}
        placeholders = ", ".join("?" for _ in card_ids)
        rows = self.conn.execute(
            f"SELECT card_id, COUNT(*) AS n FROM card_flag "
            f"WHERE card_id IN ({placeholders}) GROUP BY card_id",
            list(card_ids),
        ).fetchall()
        return {row["card_id"]: row["n"] for row in rows}

    async def list_flags(self, card_id: str) -> list[CardFlag]:
        rows = self.conn.execute(
            "SELECT * FROM card_flag WHERE card_id = ? ORDER BY created_at, id", (card_id,)
        ).fetchall()
        return [
            CardFlag(
                id=row["id"],
                learner_id=row["learner_id"],
                card_id=row["card_id"],
                reason=FlagReason(row["reason"]),
                created_at=datetime.fromisoformat(row["created_at"]),
                comment=row["comment"],
            )
            for row in rows
        ]

    # ---------- Streak milestones ----------

    async def add_milestone(self, milestone: StreakMilestone) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT OR IGNORE INTO streak_milestone (learner_id, days, reached_on)
                VALUES (?, ?, ?)
                """,
                (milestone.learner_id, milestone.days, milestone.reached_on.isoformat()),
            )
        return cursor.rowcount == 1

    async def list_milestones(self, learner_id: str) -> list[StreakMilestone]:
        rows = self.conn.execute(
            "SELECT * FROM streak_milestone WHERE learner_id = ? ORDER BY days", (learner_id,)
        ).fetchall()
        return [
            StreakMilestone(
                learner_id=row["learner_id"],
                days=row["days"],
                reached_on=date.fromisoformat(row["reached_on"]),
            )
            for row in rows
        ]

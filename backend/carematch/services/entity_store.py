import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from carematch.models import ConversationEntry, MatchRecord, ProviderProfile, SeekerProfile
from carematch.services.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)


PROVIDER_TEXT_FIELDS = (
    "name",
    "experience",
    "location",
    "availability",
    "specializations",
    "certifications",
)
PROVIDER_NUMERIC_FIELDS = ("rate_expectations",)

SEEKER_TEXT_FIELDS = (
    "name",
    "care_needs",
    "location",
    "schedule_requirements",
    "special_requirements",
    "phone_number",
)
SEEKER_NUMERIC_FIELDS = ("budget",)

CONVERSATION_ROLES = {"user", "assistant", "system"}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def merge_profile_fields(
    existing: Dict[str, Any],
    incoming: Dict[str, Any],
    text_fields: Sequence[str],
    numeric_fields: Sequence[str],
) -> Dict[str, Any]:
    """Overlay the non-empty text and positive numeric values of ``incoming`` onto ``existing``.

    A field the caller did not learn this turn arrives as "" or 0 and must not blank out a
    value stored by an earlier turn.
    """
    merged = dict(existing)
    for name in text_fields:
        value = incoming.get(name)
        if isinstance(value, str) and value.strip():
            merged[name] = value.strip()
        else:
            merged.setdefault(name, "")
    for name in numeric_fields:
        value = incoming.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            merged[name] = float(value)
        else:
            merged.setdefault(name, 0.0)
    return merged


class EntityStore:
    """SQLite-backed store for profiles, skills, matches and the per-email conversation log."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        # Every read-modify-write runs inside this critical section.
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            except (sqlite3.Error, OverflowError) as exc:
                raise StorageError(f"storage failure: {exc}") from exc
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    email TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    experience TEXT NOT NULL DEFAULT '',
                    location TEXT NOT NULL DEFAULT '',
                    availability TEXT NOT NULL DEFAULT '',
                    specializations TEXT NOT NULL DEFAULT '',
                    rate_expectations REAL NOT NULL DEFAULT 0,
                    certifications TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS seekers (
                    email TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    care_needs TEXT NOT NULL DEFAULT '',
                    location TEXT NOT NULL DEFAULT '',
                    schedule_requirements TEXT NOT NULL DEFAULT '',
                    budget REAL NOT NULL DEFAULT 0,
                    special_requirements TEXT NOT NULL DEFAULT '',
                    phone_number TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS matches (
                    provider_email TEXT NOT NULL,
                    seeker_email TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (provider_email, seeker_email)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS skills (
                    email TEXT NOT NULL,
                    skill TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (email, skill)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    recipient TEXT NOT NULL DEFAULT 'admin',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_conversation_log_email ON conversation_log(email, id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_matches_seeker_email ON matches(seeker_email)")

    # Profiles

    def upsert_provider(self, profile: ProviderProfile) -> ProviderProfile:
        email = self._require_email(profile.email)
        with self._session() as conn:
            row = conn.execute("SELECT * FROM providers WHERE email = ?", (email,)).fetchone()
            existing = dict(row) if row else {"email": email, "created_at": _utc_now()}
            merged = merge_profile_fields(
                existing,
                profile.model_dump(),
                PROVIDER_TEXT_FIELDS,
                PROVIDER_NUMERIC_FIELDS,
            )
            conn.execute(
                """
                INSERT INTO providers (
                    email, name, experience, location, availability,
                    specializations, rate_expectations, certifications, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    name = excluded.name,
                    experience = excluded.experience,
                    location = excluded.location,
                    availability = excluded.availability,
                    specializations = excluded.specializations,
                    rate_expectations = excluded.rate_expectations,
                    certifications = excluded.certifications
                """,
                (
                    email,
                    merged["name"],
                    merged["experience"],
                    merged["location"],
                    merged["availability"],
                    merged["specializations"],
                    merged["rate_expectations"],
                    merged["certifications"],
                    merged["created_at"],
                ),
            )
        logger.info("provider upserted email=%s created=%s", email, row is None)
        return ProviderProfile(**merged)

    def upsert_seeker(self, profile: SeekerProfile) -> SeekerProfile:
        email = self._require_email(profile.email)
        with self._session() as conn:
            row = conn.execute("SELECT * FROM seekers WHERE email = ?", (email,)).fetchone()
            existing = dict(row) if row else {"email": email, "created_at": _utc_now()}
            merged = merge_profile_fields(
                existing,
                profile.model_dump(),
                SEEKER_TEXT_FIELDS,
                SEEKER_NUMERIC_FIELDS,
            )
            conn.execute(
                """
                INSERT INTO seekers (
                    email, name, care_needs, location, schedule_requirements,
                    budget, special_requirements, phone_number, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    name = excluded.name,
                    care_needs = excluded.care_needs,
                    location = excluded.location,
                    schedule_requirements = excluded.schedule_requirements,
                    budget = excluded.budget,
                    special_requirements = excluded.special_requirements,
                    phone_number = excluded.phone_number
                """,
                (
                    email,
                    merged["name"],
                    merged["care_needs"],
                    merged["location"],
                    merged["schedule_requirements"],
                    merged["budget"],
                    merged["special_requirements"],
                    merged["phone_number"],
                    merged["created_at"],
                ),
            )
        logger.info("seeker upserted email=%s created=%s", email, row is None)
        return SeekerProfile(**merged)

    def get_provider(self, email: str) -> ProviderProfile:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM providers WHERE email = ?", (email,)).fetchone()
        if not row:
            raise NotFoundError(f"provider not found: {email}")
        return ProviderProfile(**dict(row))

    def get_seeker(self, email: str) -> SeekerProfile:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM seekers WHERE email = ?", (email,)).fetchone()
        if not row:
            raise NotFoundError(f"seeker not found: {email}")
        return SeekerProfile(**dict(row))

    def find_provider(self, email: str) -> Optional[ProviderProfile]:
        try:
            return self.get_provider(email)
        except NotFoundError:
            return None

    def find_seeker(self, email: str) -> Optional[SeekerProfile]:
        try:
            return self.get_seeker(email)
        except NotFoundError:
            return None

    def list_providers(self) -> List[ProviderProfile]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM providers ORDER BY email").fetchall()
        return [ProviderProfile(**dict(row)) for row in rows]

    def list_seekers(self) -> List[SeekerProfile]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM seekers ORDER BY email").fetchall()
        return [SeekerProfile(**dict(row)) for row in rows]

    # Skills

    def add_skill(self, email: str, skill: str) -> None:
        email = self._require_email(email)
        tag = skill.strip()
        if not tag:
            return
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO skills (email, skill, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(email, skill) DO NOTHING
                """,
                (email, tag, _utc_now()),
            )

    def remove_skill(self, email: str, skill: str) -> None:
        with self._session() as conn:
            conn.execute("DELETE FROM skills WHERE email = ? AND skill = ?", (email, skill.strip()))

    def get_skills(self, email: str) -> List[str]:
        with self._session() as conn:
            rows = conn.execute("SELECT skill FROM skills WHERE email = ? ORDER BY skill", (email,)).fetchall()
        return [row["skill"] for row in rows]

    # Matches

    def record_match(self, provider_email: str, seeker_email: str, status: str = "proposed") -> MatchRecord:
        try:
            record = MatchRecord(
                provider_email=self._require_email(provider_email),
                seeker_email=self._require_email(seeker_email),
                status=status,  # type: ignore[arg-type]
            )
        except ValidationError as exc:
            raise StorageError(f"invalid match record: {exc}") from exc
        now = _utc_now()
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO matches (provider_email, seeker_email, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(provider_email, seeker_email) DO UPDATE SET
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (record.provider_email, record.seeker_email, record.status, now, now),
            )
            row = conn.execute(
                "SELECT * FROM matches WHERE provider_email = ? AND seeker_email = ?",
                (record.provider_email, record.seeker_email),
            ).fetchone()
        return MatchRecord(**dict(row))

    def list_matches(self, email: str) -> List[MatchRecord]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM matches
                WHERE provider_email = ? OR seeker_email = ?
                ORDER BY created_at, provider_email, seeker_email
                """,
                (email, email),
            ).fetchall()
        return [MatchRecord(**dict(row)) for row in rows]

    # Conversation log

    def append_conversation_entry(
        self,
        email: str,
        role: str,
        content: str,
        recipient: str = "admin",
    ) -> ConversationEntry:
        email = self._require_email(email)
        if role not in CONVERSATION_ROLES:
            raise StorageError(f"unknown conversation role: {role}")
        created_at = _utc_now()
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO conversation_log (email, role, content, recipient, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (email, role, content, recipient, created_at),
            )
            entry_id = cursor.lastrowid
        return ConversationEntry(
            id=entry_id,
            email=email,
            role=role,  # type: ignore[arg-type]
            content=content,
            recipient=recipient,
            created_at=created_at,
        )

    def load_conversation(self, email: str, limit: Optional[int] = None) -> List[ConversationEntry]:
        if limit is not None and limit <= 0:
            return []
        with self._session() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM conversation_log WHERE email = ? ORDER BY id ASC",
                    (email,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM conversation_log WHERE email = ? ORDER BY id DESC LIMIT ?",
                    (email, limit),
                ).fetchall()
                rows = list(reversed(rows))
        return [ConversationEntry(**dict(row)) for row in rows]

    def has_conversation(self, email: str) -> bool:
        with self._session() as conn:
            row = conn.execute("SELECT 1 FROM conversation_log WHERE email = ? LIMIT 1", (email,)).fetchone()
        return row is not None

    # Ad hoc reads

    def run_select(self, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        """Run a read-only statement produced by the query builder."""
        if not sql.lstrip().upper().startswith("SELECT"):
            raise StorageError("only SELECT statements may be run ad hoc")
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    def _require_email(email: str) -> str:
        value = (email or "").strip()
        if not value:
            raise StorageError("email is required")
        return value

"""
SlotState persistence.

Row shape (one per touched slot):
    {session_id, slot_name, value (JSON), confidence, provenance (JSON list),
     last_asked_at, attempts}
plus one reserved row slot_name = "_session_metadata" whose value holds
    {totalQuestions, askedTemplateIds, schemaVersion, history,
     pendingQuestion, completed, explicitlyAsked}

Adapters:
- InMemoryPersistence: dict of row tuples (tests, console harness)
- JsonFilePersistence: one JSON file per session, temp file + atomic replace
- SqlitePersistence: one table, delete + insert in a single transaction,
  one connection per operation

Every save replaces ALL rows of the session at once, so a crash mid-save
leaves the previous committed state intact.
"""

import json
import logging
import os
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from slot_engine.contracts import ConversationTurn, ProvenanceEntry, Question
from slot_engine.core.slot_state import SlotState, SlotValue
from slot_engine.errors import SchemaViolation
from slot_engine.values import value_from_json, value_to_json

logger = logging.getLogger(__name__)

METADATA_SLOT = "_session_metadata"


@dataclass(frozen=True)
class SlotRow:
    """One persisted row; value and provenance are JSON-compatible objects"""
    session_id: str
    slot_name: str
    value: Any
    confidence: float
    provenance: List[Dict[str, Any]]
    last_asked_at: Optional[str]
    attempts: int

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "SlotRow":
        return SlotRow(
            session_id=data['session_id'],
            slot_name=data['slot_name'],
            value=data.get('value'),
            confidence=float(data.get('confidence', 0.0)),
            provenance=list(data.get('provenance') or []),
            last_asked_at=data.get('last_asked_at'),
            attempts=int(data.get('attempts', 0)),
        )


# =========================================================================
# Row codec
# =========================================================================

def state_to_rows(state: SlotState) -> List[SlotRow]:
    """Flatten a SlotState into rows (touched slots + metadata row)"""
    rows = []
    for name, record in state.slots.items():
        untouched = (
            record.value is None and record.attempts == 0
            and record.last_asked_at is None and not record.provenance
        )
        if untouched:
            continue
        rows.append(SlotRow(
            session_id=state.session_id,
            slot_name=name,
            value=value_to_json(record.value),
            confidence=record.confidence,
            provenance=[entry.to_json() for entry in record.provenance],
            last_asked_at=record.last_asked_at,
            attempts=record.attempts,
        ))

    metadata = {
        'totalQuestions': state.total_questions,
        'askedTemplateIds': list(state.asked_template_ids),
        'schemaVersion': state.schema_version,
        'history': [turn.to_json() for turn in state.history],
        'pendingQuestion': state.pending_question.to_json() if state.pending_question else None,
        'completed': state.completed,
        'explicitlyAsked': [name for name, r in state.slots.items() if r.explicitly_asked],
    }
    rows.append(SlotRow(
        session_id=state.session_id,
        slot_name=METADATA_SLOT,
        value=metadata,
        confidence=0.0,
        provenance=[],
        last_asked_at=None,
        attempts=0,
    ))
    return rows


def state_from_rows(rows: Sequence[SlotRow], session_id: str, schema) -> SlotState:
    """
    Rebuild a SlotState from rows.

    Raises:
        SchemaViolation: If a row names a slot the schema does not define,
            or holds a value of the wrong kind
    """
    state = SlotState(schema, session_id)
    metadata: Dict[str, Any] = {}

    for row in rows:
        if row.slot_name == METADATA_SLOT:
            metadata = row.value or {}
            continue
        if row.slot_name not in schema:
            raise SchemaViolation(
                f"Persisted row for unknown slot '{row.slot_name}' in session {session_id}",
                slot_name=row.slot_name,
            )
        try:
            value = value_from_json(row.value)
        except (KeyError, ValueError) as e:
            raise SchemaViolation(
                f"Persisted value for '{row.slot_name}' is unreadable: {e}",
                slot_name=row.slot_name,
            )
        state.restore_slot(row.slot_name, SlotValue(
            value=value,
            confidence=row.confidence,
            provenance=[ProvenanceEntry.from_json(p) for p in row.provenance],
            attempts=row.attempts,
            last_asked_at=row.last_asked_at,
        ))

    for name in metadata.get('explicitlyAsked', []):
        state.get_slot(name).explicitly_asked = True

    saved_version = metadata.get('schemaVersion')
    if saved_version is not None and str(saved_version) != schema.version:
        logger.warning(
            f"Session {session_id} saved with schema v{saved_version}, "
            f"loading with v{schema.version}"
        )

    state.total_questions = int(metadata.get('totalQuestions', 0))
    state.asked_template_ids = list(metadata.get('askedTemplateIds', []))
    state.history = [ConversationTurn.from_json(t) for t in metadata.get('history', [])]
    pending = metadata.get('pendingQuestion')
    state.pending_question = Question.from_json(pending) if pending else None
    state.completed = bool(metadata.get('completed', False))
    return state


# =========================================================================
# Adapters
# =========================================================================

class PersistenceAdapter(ABC):
    """
    Load/save contract used by the engine.

    Subclasses only move rows; encoding lives in the row codec.
    """

    def load_state(self, session_id: str, schema) -> SlotState:
        """
        Load a session, or a fresh empty SlotState if it was never saved.

        Raises:
            SchemaViolation: If persisted rows do not fit the schema
        """
        rows = self._read_rows(session_id)
        if not rows:
            logger.debug(f"No saved state for session {session_id}, starting empty")
            return SlotState(schema, session_id)
        state = state_from_rows(rows, session_id, schema)
        logger.debug(f"Loaded session {session_id} ({len(rows)} rows)")
        return state

    def save_state(self, state: SlotState) -> None:
        """Replace every row of the session in one all-or-nothing write"""
        rows = state_to_rows(state)
        self._write_rows(state.session_id, rows)
        logger.info(f"Saved session {state.session_id} ({len(rows)} rows)")

    def session_exists(self, session_id: str) -> bool:
        return bool(self._read_rows(session_id))

    @abstractmethod
    def _read_rows(self, session_id: str) -> List[SlotRow]:
        ...

    @abstractmethod
    def _write_rows(self, session_id: str, rows: List[SlotRow]) -> None:
        ...


class InMemoryPersistence(PersistenceAdapter):
    """Rows held in a dict; each save swaps the whole tuple"""

    def __init__(self):
        self._sessions: Dict[str, tuple] = {}

    def _read_rows(self, session_id: str) -> List[SlotRow]:
        return list(self._sessions.get(session_id, ()))

    def _write_rows(self, session_id: str, rows: List[SlotRow]) -> None:
        self._sessions[session_id] = tuple(rows)


class JsonFilePersistence(PersistenceAdapter):
    """
    One JSON document per session.

    Layout:
        outputs/sessions/SESSION-abc123.json

    Writes go to a temp file in the same directory, then os.replace()
    swaps it in atomically.
    """

    def __init__(self, base_dir: str = "outputs/sessions"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"JsonFilePersistence initialized: {self.base_dir}")

    def _path(self, session_id: str) -> Path:
        return self.base_dir / f"SESSION-{session_id}.json"

    def _read_rows(self, session_id: str) -> List[SlotRow]:
        path = self._path(session_id)
        if not path.exists():
            return []
        with open(path, 'r') as f:
            data = json.load(f)
        return [SlotRow.from_json(row) for row in data.get('rows', [])]

    def _write_rows(self, session_id: str, rows: List[SlotRow]) -> None:
        document = {
            'sessionId': session_id,
            'rows': [row.to_json() for row in rows],
        }
        fd, tmp_path = tempfile.mkstemp(dir=self.base_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self._path(session_id))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


class SqlitePersistence(PersistenceAdapter):
    """
    SQLite table of slot rows.

    Every operation opens its own connection and closes it when done, so
    one adapter can serve several threads. Save = DELETE all rows of the
    session + INSERT the new rows inside one transaction on that
    connection.
    """

    def __init__(self, db_path: str = "data/slot_engine.db", timeout: float = 5.0):
        """
        Args:
            db_path: Database file (created with its directory if missing)
            timeout: Seconds a writer waits for another writer's lock
        """
        self.db_path = db_path
        self.timeout = timeout
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._init_sqlite()
        logger.info(f"SqlitePersistence initialized: {db_path}")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=self.timeout)

    def _init_sqlite(self) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute('''
                    CREATE TABLE IF NOT EXISTS slot_state (
                        session_id TEXT NOT NULL,
                        slot_name TEXT NOT NULL,
                        value TEXT,
                        confidence REAL NOT NULL DEFAULT 0,
                        provenance TEXT NOT NULL DEFAULT '[]',
                        last_asked_at TEXT,
                        attempts INTEGER NOT NULL DEFAULT 0,
                        PRIMARY KEY (session_id, slot_name)
                    )
                ''')
        finally:
            conn.close()

    def _read_rows(self, session_id: str) -> List[SlotRow]:
        conn = self._connect()
        try:
            fetched = conn.execute(
                '''SELECT slot_name, value, confidence, provenance, last_asked_at, attempts
                   FROM slot_state WHERE session_id = ? ORDER BY rowid''',
                (session_id,)
            ).fetchall()
        finally:
            conn.close()

        rows = []
        for slot_name, value, confidence, provenance, last_asked_at, attempts in fetched:
            rows.append(SlotRow(
                session_id=session_id,
                slot_name=slot_name,
                value=json.loads(value) if value is not None else None,
                confidence=confidence,
                provenance=json.loads(provenance) if provenance else [],
                last_asked_at=last_asked_at,
                attempts=attempts,
            ))
        return rows

    def _write_rows(self, session_id: str, rows: List[SlotRow]) -> None:
        params = [
            (
                row.session_id,
                row.slot_name,
                json.dumps(row.value) if row.value is not None else None,
                row.confidence,
                json.dumps(row.provenance),
                row.last_asked_at,
                row.attempts,
            )
            for row in rows
        ]
        conn = self._connect()
        try:
            # Commits on success, rolls back on error
            with conn:
                conn.execute('DELETE FROM slot_state WHERE session_id = ?', (session_id,))
                conn.executemany(
                    '''INSERT INTO slot_state
                       (session_id, slot_name, value, confidence, provenance, last_asked_at, attempts)
                       VALUES (?, ?, ?, ?, ?, ?, ?)''',
                    params
                )
        finally:
            conn.close()

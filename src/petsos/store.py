from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from petsos.models import CaseStatus, Coordinates, DistressCase, ResponderPresence


class CaseStore(ABC):
    """Durable documents for cases and responder presence."""

    @abstractmethod
    def load_case(self, case_id: str) -> Optional[DistressCase]:
        ...

    @abstractmethod
    def save_case(self, case: DistressCase) -> None:
        ...

    @abstractmethod
    def list_cases(self, statuses: Optional[Iterable[CaseStatus]] = None) -> List[DistressCase]:
        ...

    @abstractmethod
    def load_responder(self, responder_id: str) -> Optional[ResponderPresence]:
        ...

    @abstractmethod
    def save_responder_presence(
        self,
        responder_id: str,
        location: Optional[Coordinates],
        available: bool,
        last_heartbeat: Optional[datetime] = None,
    ) -> None:
        ...

    @abstractmethod
    def list_responders(self) -> List[ResponderPresence]:
        ...


class InMemoryStore(CaseStore):
    """Keeps serialized documents so loads never alias live objects."""

    def __init__(self) -> None:
        self._cases: Dict[str, str] = {}
        self._responders: Dict[str, str] = {}
        self._lock = threading.Lock()

    def load_case(self, case_id: str) -> Optional[DistressCase]:
        raw = self._cases.get(case_id)
        return DistressCase.from_dict(json.loads(raw)) if raw else None

    def save_case(self, case: DistressCase) -> None:
        raw = json.dumps(case.to_dict())
        with self._lock:
            self._cases[case.case_id] = raw

    def list_cases(self, statuses: Optional[Iterable[CaseStatus]] = None) -> List[DistressCase]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            docs = list(self._cases.values())
        cases = [DistressCase.from_dict(json.loads(raw)) for raw in docs]
        return [case for case in cases if wanted is None or case.status in wanted]

    def load_responder(self, responder_id: str) -> Optional[ResponderPresence]:
        raw = self._responders.get(responder_id)
        return ResponderPresence.from_dict(json.loads(raw)) if raw else None

    def save_responder_presence(
        self,
        responder_id: str,
        location: Optional[Coordinates],
        available: bool,
        last_heartbeat: Optional[datetime] = None,
    ) -> None:
        presence = ResponderPresence(
            responder_id=responder_id, location=location, available=available, last_heartbeat=last_heartbeat
        )
        raw = json.dumps(presence.to_dict())
        with self._lock:
            self._responders[responder_id] = raw

    def list_responders(self) -> List[ResponderPresence]:
        with self._lock:
            docs = list(self._responders.values())
        return [ResponderPresence.from_dict(json.loads(raw)) for raw in docs]


class SQLiteStore(CaseStore):
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.init_db()

    def init_db(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cases (
                    id TEXT PRIMARY KEY,
                    reporter_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    document TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS responder_presence (
                    responder_id TEXT PRIMARY KEY,
                    latitude REAL,
                    longitude REAL,
                    available INTEGER NOT NULL DEFAULT 0,
                    last_heartbeat TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_cases_status ON cases(status)")

    @contextmanager
    def get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def load_case(self, case_id: str) -> Optional[DistressCase]:
        with self.get_conn() as conn:
            row = conn.execute("SELECT document FROM cases WHERE id=?", (case_id,)).fetchone()
        return DistressCase.from_dict(json.loads(row["document"])) if row else None

    def save_case(self, case: DistressCase) -> None:
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO cases (id,reporter_id,status,document,created_at,updated_at) VALUES (?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET status=excluded.status, document=excluded.document,
                    updated_at=excluded.updated_at
                """,
                (
                    case.case_id,
                    case.reporter_id,
                    case.status.value,
                    json.dumps(case.to_dict()),
                    case.created_at.isoformat(),
                    case.updated_at.isoformat(),
                ),
            )

    def list_cases(self, statuses: Optional[Iterable[CaseStatus]] = None) -> List[DistressCase]:
        with self.get_conn() as conn:
            if statuses is None:
                rows = conn.execute("SELECT document FROM cases ORDER BY created_at").fetchall()
            else:
                values = [status.value for status in statuses]
                if not values:
                    return []
                marks = ",".join("?" for _ in values)
                rows = conn.execute(
                    f"SELECT document FROM cases WHERE status IN ({marks}) ORDER BY created_at", values
                ).fetchall()
        return [DistressCase.from_dict(json.loads(row["document"])) for row in rows]

    def load_responder(self, responder_id: str) -> Optional[ResponderPresence]:
        with self.get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM responder_presence WHERE responder_id=?", (responder_id,)
            ).fetchone()
        return self._row_to_presence(row) if row else None

    def save_responder_presence(
        self,
        responder_id: str,
        location: Optional[Coordinates],
        available: bool,
        last_heartbeat: Optional[datetime] = None,
    ) -> None:
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO responder_presence (responder_id,latitude,longitude,available,last_heartbeat)
                VALUES (?,?,?,?,?)
                ON CONFLICT(responder_id) DO UPDATE SET latitude=excluded.latitude,
                    longitude=excluded.longitude, available=excluded.available,
                    last_heartbeat=excluded.last_heartbeat
                """,
                (
                    responder_id,
                    location.latitude if location else None,
                    location.longitude if location else None,
                    int(available),
                    last_heartbeat.isoformat() if last_heartbeat else None,
                ),
            )

    def list_responders(self) -> List[ResponderPresence]:
        with self.get_conn() as conn:
            rows = conn.execute("SELECT * FROM responder_presence").fetchall()
        return [self._row_to_presence(row) for row in rows]

    @staticmethod
    def _row_to_presence(row: sqlite3.Row) -> ResponderPresence:
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = Coordinates(latitude=row["latitude"], longitude=row["longitude"])
        return ResponderPresence(
            responder_id=row["responder_id"],
            location=location,
            available=bool(row["available"]),
            last_heartbeat=datetime.fromisoformat(row["last_heartbeat"]) if row["last_heartbeat"] else None,
        )

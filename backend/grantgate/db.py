from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Iterable, Iterator
from uuid import uuid4


SQLITE_PREFIX = "sqlite:///"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    title TEXT NOT NULL,
    funder_name TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sections (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    name TEXT NOT NULL,
    sort_order INTEGER NOT NULL DEFAULT 0,
    content TEXT NOT NULL DEFAULT '',
    generated_content TEXT NOT NULL DEFAULT '',
    citations_json TEXT NOT NULL DEFAULT '[]',
    exported_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(proposal_id) REFERENCES proposals(id)
);

CREATE INDEX IF NOT EXISTS idx_sections_proposal ON sections(proposal_id, sort_order ASC);

CREATE TABLE IF NOT EXISTS placeholders (
    section_id TEXT NOT NULL,
    placeholder_id TEXT NOT NULL,
    placeholder_type TEXT NOT NULL,
    description TEXT NOT NULL,
    status TEXT NOT NULL,
    suggested_sources_json TEXT NOT NULL DEFAULT '[]',
    resolved_value TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY(section_id, placeholder_id),
    FOREIGN KEY(section_id) REFERENCES sections(id)
);

CREATE TABLE IF NOT EXISTS placeholder_attestations (
    section_id TEXT NOT NULL,
    placeholder_id TEXT NOT NULL,
    proposal_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    attested_at TEXT NOT NULL,
    PRIMARY KEY(section_id, placeholder_id),
    FOREIGN KEY(section_id) REFERENCES sections(id)
);

CREATE TABLE IF NOT EXISTS claims (
    id TEXT PRIMARY KEY,
    section_id TEXT NOT NULL,
    claim_type TEXT NOT NULL,
    value TEXT NOT NULL,
    context TEXT NOT NULL,
    start_offset INTEGER NOT NULL,
    end_offset INTEGER NOT NULL,
    risk_level TEXT NOT NULL,
    status TEXT NOT NULL,
    evidence_json TEXT,
    error TEXT,
    verified_at TEXT NOT NULL,
    FOREIGN KEY(section_id) REFERENCES sections(id)
);

CREATE INDEX IF NOT EXISTS idx_claims_section ON claims(section_id, start_offset ASC);

CREATE TABLE IF NOT EXISTS paragraph_attributions (
    section_id TEXT NOT NULL,
    paragraph_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    status TEXT NOT NULL,
    best_similarity REAL NOT NULL DEFAULT 0,
    supporting_chunks_json TEXT NOT NULL DEFAULT '[]',
    error TEXT,
    computed_at TEXT NOT NULL,
    PRIMARY KEY(section_id, paragraph_index),
    FOREIGN KEY(section_id) REFERENCES sections(id)
);

CREATE TABLE IF NOT EXISTS checklist_items (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    is_required INTEGER NOT NULL DEFAULT 1,
    word_limit INTEGER,
    char_limit INTEGER,
    page_limit INTEGER,
    point_value REAL,
    parser_confidence REAL,
    sort_order INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(proposal_id) REFERENCES proposals(id)
);

CREATE INDEX IF NOT EXISTS idx_checklist_items_proposal ON checklist_items(proposal_id, sort_order ASC);

CREATE TABLE IF NOT EXISTS section_mappings (
    id TEXT PRIMARY KEY,
    checklist_item_id TEXT NOT NULL,
    section_id TEXT NOT NULL,
    mapping_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(checklist_item_id, section_id),
    FOREIGN KEY(checklist_item_id) REFERENCES checklist_items(id),
    FOREIGN KEY(section_id) REFERENCES sections(id)
);

CREATE TABLE IF NOT EXISTS export_audit_logs (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    export_format TEXT NOT NULL,
    decision TEXT NOT NULL,
    state TEXT NOT NULL,
    primary_rule_id TEXT,
    blocks_json TEXT NOT NULL,
    warnings_json TEXT NOT NULL,
    snapshot_json TEXT NOT NULL,
    state_fingerprint TEXT NOT NULL,
    attestation_required INTEGER NOT NULL DEFAULT 0,
    issued_attestation_text TEXT,
    attested_claim_keys_json TEXT NOT NULL DEFAULT '[]',
    timestamp TEXT NOT NULL,
    attestation_text TEXT,
    attested_at TEXT,
    finalized_at TEXT,
    FOREIGN KEY(proposal_id) REFERENCES proposals(id)
);

CREATE INDEX IF NOT EXISTS idx_export_audit_proposal ON export_audit_logs(proposal_id, timestamp DESC);
"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def database_path_from_url(database_url: str) -> Path:
    if not database_url.startswith(SQLITE_PREFIX):
        raise RuntimeError("Only sqlite:/// DATABASE_URL is supported.")
    return Path(database_url[len(SQLITE_PREFIX) :])


def _loads(value: str | None, fallback: object) -> object:
    if value is None or value == "":
        return fallback
    return json.loads(value)


def _section_row(row: sqlite3.Row) -> dict[str, object]:
    item = dict(row)
    item["citations"] = _loads(item.pop("citations_json"), [])
    return item


def _placeholder_row(row: sqlite3.Row) -> dict[str, object]:
    item = dict(row)
    item["suggested_sources"] = _loads(item.pop("suggested_sources_json"), [])
    return item


def _claim_row(row: sqlite3.Row) -> dict[str, object]:
    item = dict(row)
    item["evidence"] = _loads(item.pop("evidence_json"), None)
    return item


def _attribution_row(row: sqlite3.Row) -> dict[str, object]:
    item = dict(row)
    item["supporting_chunks"] = _loads(item.pop("supporting_chunks_json"), [])
    return item


def _checklist_row(row: sqlite3.Row) -> dict[str, object]:
    item = dict(row)
    item["is_required"] = bool(item["is_required"])
    return item


def _audit_row(row: sqlite3.Row) -> dict[str, object]:
    item = dict(row)
    item["blocks"] = _loads(item["blocks_json"], [])
    item["warnings"] = _loads(item["warnings_json"], [])
    item["snapshot"] = _loads(item.pop("snapshot_json"), {})
    item["attested_claim_keys"] = _loads(item.pop("attested_claim_keys_json"), [])
    item["attestation_required"] = bool(item["attestation_required"])
    return item


class Database:
    """SQLite-backed store for proposals and every gate signal.

    One connection per unit of work; a ``get_conn`` block is a transaction that
    commits on success and rolls back when the block raises.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    @classmethod
    def from_url(cls, database_url: str) -> "Database":
        return cls(database_path_from_url(database_url))

    def init_schema(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.path) as conn:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(_SCHEMA)

    @contextmanager
    def get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Proposals and sections

    def create_proposal(
        self,
        *,
        organization_id: str,
        title: str,
        funder_name: str | None = None,
    ) -> dict[str, object]:
        proposal = {
            "id": str(uuid4()),
            "organization_id": organization_id,
            "title": title,
            "funder_name": funder_name,
            "created_at": utc_now_iso(),
        }
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO proposals (id, organization_id, title, funder_name, created_at)
                VALUES (:id, :organization_id, :title, :funder_name, :created_at)
                """,
                proposal,
            )
        return proposal

    def get_proposal(self, proposal_id: str) -> dict[str, object] | None:
        with self.get_conn() as conn:
            row = conn.execute(
                "SELECT id, organization_id, title, funder_name, created_at FROM proposals WHERE id = ?",
                (proposal_id,),
            ).fetchone()
        return dict(row) if row is not None else None

    def create_section(
        self,
        *,
        proposal_id: str,
        name: str,
        content: str = "",
        generated_content: str | None = None,
        citations: list[dict[str, object]] | None = None,
        sort_order: int | None = None,
    ) -> dict[str, object]:
        now = utc_now_iso()
        with self.get_conn() as conn:
            if sort_order is None:
                row = conn.execute(
                    "SELECT COALESCE(MAX(sort_order), -1) + 1 AS next_order FROM sections WHERE proposal_id = ?",
                    (proposal_id,),
                ).fetchone()
                sort_order = int(row["next_order"])
            section = {
                "id": str(uuid4()),
                "proposal_id": proposal_id,
                "name": name,
                "sort_order": sort_order,
                "content": content,
                "generated_content": generated_content if generated_content is not None else content,
                "citations_json": json.dumps(citations or []),
                "created_at": now,
                "updated_at": now,
            }
            conn.execute(
                """
                INSERT INTO sections (
                    id, proposal_id, name, sort_order, content, generated_content, citations_json, created_at, updated_at
                )
                VALUES (
                    :id, :proposal_id, :name, :sort_order, :content, :generated_content, :citations_json,
                    :created_at, :updated_at
                )
                """,
                section,
            )
        created = dict(section)
        created["citations"] = json.loads(str(created.pop("citations_json")))
        created["exported_at"] = None
        return created

    def get_section(self, section_id: str) -> dict[str, object] | None:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM sections WHERE id = ?", (section_id,)).fetchone()
        return _section_row(row) if row is not None else None

    def list_sections(self, proposal_id: str) -> list[dict[str, object]]:
        with self.get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM sections WHERE proposal_id = ? ORDER BY sort_order ASC, created_at ASC",
                (proposal_id,),
            ).fetchall()
        return [_section_row(row) for row in rows]

    def update_section_content(
        self,
        section_id: str,
        *,
        content: str,
        generated_content: str | None = None,
        citations: list[dict[str, object]] | None = None,
    ) -> bool:
        """Write new content unless the section was already exported."""
        assignments = ["content = ?", "updated_at = ?"]
        params: list[object] = [content, utc_now_iso()]
        if generated_content is not None:
            assignments.append("generated_content = ?")
            params.append(generated_content)
        if citations is not None:
            assignments.append("citations_json = ?")
            params.append(json.dumps(citations))
        params.append(section_id)
        with self.get_conn() as conn:
            cursor = conn.execute(
                f"UPDATE sections SET {', '.join(assignments)} WHERE id = ? AND exported_at IS NULL",
                tuple(params),
            )
        return cursor.rowcount == 1

    # Placeholders

    def list_placeholders(
        self,
        *,
        section_id: str | None = None,
        proposal_id: str | None = None,
    ) -> list[dict[str, object]]:
        query = """
            SELECT p.*, s.proposal_id, s.name AS section_name
            FROM placeholders p
            JOIN sections s ON s.id = p.section_id
            WHERE 1 = 1
        """
        params: list[object] = []
        if section_id is not None:
            query += " AND p.section_id = ?"
            params.append(section_id)
        if proposal_id is not None:
            query += " AND s.proposal_id = ?"
            params.append(proposal_id)
        query += " ORDER BY s.sort_order ASC, p.created_at ASC, p.placeholder_id ASC"
        with self.get_conn() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_placeholder_row(row) for row in rows]

    def sync_placeholders(
        self,
        section_id: str,
        found: Iterable[dict[str, object]],
        *,
        resolved_values: dict[str, str] | None = None,
        dismissed_ids: Iterable[str] = (),
    ) -> None:
        """Upsert the placeholders found by a scan and retire the ones that vanished.

        Found placeholders become UNRESOLVED. Stored ones that were not found become
        RESOLVED, except those already DISMISSED or named in ``dismissed_ids``.
        """
        now = utc_now_iso()
        resolved_values = resolved_values or {}
        dismissed = set(dismissed_ids)
        found_rows = list(found)
        found_ids = {str(item["placeholder_id"]) for item in found_rows}

        with self.get_conn() as conn:
            for item in found_rows:
                conn.execute(
                    """
                    INSERT INTO placeholders (
                        section_id, placeholder_id, placeholder_type, description, status,
                        suggested_sources_json, resolved_value, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, 'UNRESOLVED', ?, NULL, ?, ?)
                    ON CONFLICT(section_id, placeholder_id) DO UPDATE SET
                        placeholder_type = excluded.placeholder_type,
                        description = excluded.description,
                        status = 'UNRESOLVED',
                        suggested_sources_json = excluded.suggested_sources_json,
                        resolved_value = NULL,
                        updated_at = excluded.updated_at
                    """,
                    (
                        section_id,
                        str(item["placeholder_id"]),
                        str(item["placeholder_type"]),
                        str(item["description"]),
                        json.dumps(item.get("suggested_sources") or []),
                        now,
                        now,
                    ),
                )

            stored = conn.execute(
                "SELECT placeholder_id, status FROM placeholders WHERE section_id = ?",
                (section_id,),
            ).fetchall()
            for row in stored:
                placeholder_id = str(row["placeholder_id"])
                if placeholder_id in found_ids:
                    continue
                if placeholder_id in dismissed:
                    conn.execute(
                        """
                        UPDATE placeholders SET status = 'DISMISSED', resolved_value = '', updated_at = ?
                        WHERE section_id = ? AND placeholder_id = ?
                        """,
                        (now, section_id, placeholder_id),
                    )
                    continue
                if row["status"] != "UNRESOLVED":
                    continue
                conn.execute(
                    """
                    UPDATE placeholders SET status = 'RESOLVED', resolved_value = ?, updated_at = ?
                    WHERE section_id = ? AND placeholder_id = ?
                    """,
                    (resolved_values.get(placeholder_id), now, section_id, placeholder_id),
                )

    def attest_placeholder(
        self,
        *,
        proposal_id: str,
        section_id: str,
        placeholder_id: str,
        user_id: str,
    ) -> dict[str, object]:
        record = {
            "proposal_id": proposal_id,
            "section_id": section_id,
            "placeholder_id": placeholder_id,
            "user_id": user_id,
            "attested_at": utc_now_iso(),
        }
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO placeholder_attestations (section_id, placeholder_id, proposal_id, user_id, attested_at)
                VALUES (:section_id, :placeholder_id, :proposal_id, :user_id, :attested_at)
                ON CONFLICT(section_id, placeholder_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    attested_at = excluded.attested_at
                """,
                record,
            )
        return record

    def list_placeholder_attestations(self, proposal_id: str) -> list[dict[str, object]]:
        with self.get_conn() as conn:
            rows = conn.execute(
                """
                SELECT section_id, placeholder_id, proposal_id, user_id, attested_at
                FROM placeholder_attestations
                WHERE proposal_id = ?
                ORDER BY attested_at ASC
                """,
                (proposal_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    # Claims and paragraph attributions

    def replace_claims(self, section_id: str, claims: list[dict[str, object]]) -> None:
        now = utc_now_iso()
        with self.get_conn() as conn:
            conn.execute("DELETE FROM claims WHERE section_id = ?", (section_id,))
            conn.executemany(
                """
                INSERT INTO claims (
                    id, section_id, claim_type, value, context, start_offset, end_offset,
                    risk_level, status, evidence_json, error, verified_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        str(uuid4()),
                        section_id,
                        str(claim["claim_type"]),
                        str(claim["value"]),
                        str(claim["context"]),
                        int(claim["start_offset"]),
                        int(claim["end_offset"]),
                        str(claim["risk_level"]),
                        str(claim["status"]),
                        json.dumps(claim["evidence"]) if claim.get("evidence") is not None else None,
                        claim.get("error"),
                        now,
                    )
                    for claim in claims
                ],
            )

    def list_claims(
        self,
        *,
        section_id: str | None = None,
        proposal_id: str | None = None,
    ) -> list[dict[str, object]]:
        query = """
            SELECT c.*, s.proposal_id, s.name AS section_name
            FROM claims c
            JOIN sections s ON s.id = c.section_id
            WHERE 1 = 1
        """
        params: list[object] = []
        if section_id is not None:
            query += " AND c.section_id = ?"
            params.append(section_id)
        if proposal_id is not None:
            query += " AND s.proposal_id = ?"
            params.append(proposal_id)
        query += " ORDER BY s.sort_order ASC, c.start_offset ASC, c.claim_type ASC"
        with self.get_conn() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_claim_row(row) for row in rows]

    def replace_paragraph_attributions(self, section_id: str, paragraphs: list[dict[str, object]]) -> None:
        now = utc_now_iso()
        with self.get_conn() as conn:
            conn.execute("DELETE FROM paragraph_attributions WHERE section_id = ?", (section_id,))
            conn.executemany(
                """
                INSERT INTO paragraph_attributions (
                    section_id, paragraph_index, text, status, best_similarity,
                    supporting_chunks_json, error, computed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        section_id,
                        int(paragraph["paragraph_index"]),
                        str(paragraph["text"]),
                        str(paragraph["status"]),
                        float(paragraph["best_similarity"]),
                        json.dumps(paragraph.get("supporting_chunks") or []),
                        paragraph.get("error"),
                        now,
                    )
                    for paragraph in paragraphs
                ],
            )

    def list_paragraph_attributions(
        self,
        *,
        section_id: str | None = None,
        proposal_id: str | None = None,
    ) -> list[dict[str, object]]:
        query = """
            SELECT a.*, s.proposal_id, s.name AS section_name
            FROM paragraph_attributions a
            JOIN sections s ON s.id = a.section_id
            WHERE 1 = 1
        """
        params: list[object] = []
        if section_id is not None:
            query += " AND a.section_id = ?"
            params.append(section_id)
        if proposal_id is not None:
            query += " AND s.proposal_id = ?"
            params.append(proposal_id)
        query += " ORDER BY s.sort_order ASC, a.paragraph_index ASC"
        with self.get_conn() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_attribution_row(row) for row in rows]

    # Checklist

    def create_checklist_items(self, proposal_id: str, items: list[dict[str, object]]) -> list[dict[str, object]]:
        now = utc_now_iso()
        with self.get_conn() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(sort_order), -1) + 1 AS next_order FROM checklist_items WHERE proposal_id = ?",
                (proposal_id,),
            ).fetchone()
            next_order = int(row["next_order"])
            created: list[dict[str, object]] = []
            for offset, item in enumerate(items):
                record = {
                    "id": str(uuid4()),
                    "proposal_id": proposal_id,
                    "name": str(item["name"]),
                    "description": str(item.get("description") or ""),
                    "is_required": bool(item.get("is_required", True)),
                    "word_limit": item.get("word_limit"),
                    "char_limit": item.get("char_limit"),
                    "page_limit": item.get("page_limit"),
                    "point_value": item.get("point_value"),
                    "parser_confidence": item.get("parser_confidence"),
                    "sort_order": next_order + offset,
                    "created_at": now,
                }
                conn.execute(
                    """
                    INSERT INTO checklist_items (
                        id, proposal_id, name, description, is_required, word_limit, char_limit,
                        page_limit, point_value, parser_confidence, sort_order, created_at
                    )
                    VALUES (
                        :id, :proposal_id, :name, :description, :is_required, :word_limit, :char_limit,
                        :page_limit, :point_value, :parser_confidence, :sort_order, :created_at
                    )
                    """,
                    record,
                )
                created.append(record)
        return created

    def get_checklist_item(self, item_id: str) -> dict[str, object] | None:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM checklist_items WHERE id = ?", (item_id,)).fetchone()
        return _checklist_row(row) if row is not None else None

    def list_checklist_items(self, proposal_id: str) -> list[dict[str, object]]:
        with self.get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM checklist_items WHERE proposal_id = ? ORDER BY sort_order ASC",
                (proposal_id,),
            ).fetchall()
        return [_checklist_row(row) for row in rows]

    def list_section_mappings(self, proposal_id: str) -> list[dict[str, object]]:
        with self.get_conn() as conn:
            rows = conn.execute(
                """
                SELECT m.id, m.checklist_item_id, m.section_id, m.mapping_type, m.confidence,
                       m.created_at, m.updated_at
                FROM section_mappings m
                JOIN checklist_items i ON i.id = m.checklist_item_id
                WHERE i.proposal_id = ?
                ORDER BY i.sort_order ASC, m.created_at ASC, m.section_id ASC
                """,
                (proposal_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def apply_auto_mapping(self, checklist_item_id: str, section_id: str, confidence: float) -> bool:
        """Record an AUTO mapping unless the item gained a MANUAL one meanwhile.

        Other AUTO rows for the item are dropped, and an existing row for the pair
        is left untouched. Returns True when a new row was inserted.
        """
        now = utc_now_iso()
        with self.get_conn() as conn:
            manual = conn.execute(
                "SELECT 1 FROM section_mappings WHERE checklist_item_id = ? AND mapping_type = 'MANUAL' LIMIT 1",
                (checklist_item_id,),
            ).fetchone()
            if manual is not None:
                return False
            conn.execute(
                """
                DELETE FROM section_mappings
                WHERE checklist_item_id = ? AND mapping_type = 'AUTO' AND section_id <> ?
                """,
                (checklist_item_id, section_id),
            )
            cursor = conn.execute(
                """
                INSERT INTO section_mappings (
                    id, checklist_item_id, section_id, mapping_type, confidence, created_at, updated_at
                )
                VALUES (?, ?, ?, 'AUTO', ?, ?, ?)
                ON CONFLICT(checklist_item_id, section_id) DO NOTHING
                """,
                (str(uuid4()), checklist_item_id, section_id, confidence, now, now),
            )
        return cursor.rowcount == 1

    def set_manual_mapping(self, checklist_item_id: str, section_id: str) -> dict[str, object]:
        now = utc_now_iso()
        with self.get_conn() as conn:
            conn.execute(
                "DELETE FROM section_mappings WHERE checklist_item_id = ? AND mapping_type = 'AUTO'",
                (checklist_item_id,),
            )
            conn.execute(
                """
                INSERT INTO section_mappings (
                    id, checklist_item_id, section_id, mapping_type, confidence, created_at, updated_at
                )
                VALUES (?, ?, ?, 'MANUAL', 1.0, ?, ?)
                ON CONFLICT(checklist_item_id, section_id) DO UPDATE SET
                    mapping_type = 'MANUAL',
                    confidence = 1.0,
                    updated_at = excluded.updated_at
                """,
                (str(uuid4()), checklist_item_id, section_id, now, now),
            )
            row = conn.execute(
                """
                SELECT id, checklist_item_id, section_id, mapping_type, confidence, created_at, updated_at
                FROM section_mappings WHERE checklist_item_id = ? AND section_id = ?
                """,
                (checklist_item_id, section_id),
            ).fetchone()
        return dict(row)

    # Export audit trail

    def create_audit_record(self, record: dict[str, object]) -> dict[str, object]:
        row = {
            "id": str(uuid4()),
            "proposal_id": record["proposal_id"],
            "user_id": record["user_id"],
            "export_format": record["export_format"],
            "decision": record["decision"],
            "state": record["state"],
            "primary_rule_id": record.get("primary_rule_id"),
            "blocks_json": json.dumps(record.get("blocks") or []),
            "warnings_json": json.dumps(record.get("warnings") or []),
            "snapshot_json": json.dumps(record.get("snapshot") or {}),
            "state_fingerprint": record["state_fingerprint"],
            "attestation_required": bool(record.get("attestation_required")),
            "issued_attestation_text": record.get("issued_attestation_text"),
            "attested_claim_keys_json": json.dumps(record.get("attested_claim_keys") or []),
            "timestamp": utc_now_iso(),
        }
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO export_audit_logs (
                    id, proposal_id, user_id, export_format, decision, state, primary_rule_id,
                    blocks_json, warnings_json, snapshot_json, state_fingerprint, attestation_required,
                    issued_attestation_text, attested_claim_keys_json, timestamp
                )
                VALUES (
                    :id, :proposal_id, :user_id, :export_format, :decision, :state, :primary_rule_id,
                    :blocks_json, :warnings_json, :snapshot_json, :state_fingerprint, :attestation_required,
                    :issued_attestation_text, :attested_claim_keys_json, :timestamp
                )
                """,
                row,
            )
            created = conn.execute("SELECT * FROM export_audit_logs WHERE id = ?", (row["id"],)).fetchone()
        return _audit_row(created)

    def get_audit_record(self, audit_record_id: str) -> dict[str, object] | None:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM export_audit_logs WHERE id = ?", (audit_record_id,)).fetchone()
        return _audit_row(row) if row is not None else None

    def list_audit_records(self, proposal_id: str) -> list[dict[str, object]]:
        with self.get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM export_audit_logs WHERE proposal_id = ? ORDER BY timestamp DESC",
                (proposal_id,),
            ).fetchall()
        return [_audit_row(row) for row in rows]

    def record_attestation(
        self,
        audit_record_id: str,
        *,
        attestation_text: str,
        expected_state: str,
        next_state: str,
    ) -> bool:
        with self.get_conn() as conn:
            cursor = conn.execute(
                """
                UPDATE export_audit_logs
                SET attestation_text = ?, attested_at = ?, state = ?
                WHERE id = ? AND state = ? AND issued_attestation_text = ? AND attested_at IS NULL
                """,
                (attestation_text, utc_now_iso(), next_state, audit_record_id, expected_state, attestation_text),
            )
        return cursor.rowcount == 1

    def finalize_export(self, audit_record_id: str, *, proposal_id: str, allowed_states: Iterable[str]) -> bool:
        """Stamp the audit record as finalized and lock the proposal's sections together."""
        states = list(allowed_states)
        now = utc_now_iso()
        placeholders = ", ".join("?" for _ in states)
        with self.get_conn() as conn:
            cursor = conn.execute(
                f"""
                UPDATE export_audit_logs
                SET finalized_at = ?
                WHERE id = ? AND finalized_at IS NULL AND state IN ({placeholders})
                """,
                (now, audit_record_id, *states),
            )
            if cursor.rowcount != 1:
                return False
            conn.execute(
                "UPDATE sections SET exported_at = ? WHERE proposal_id = ? AND exported_at IS NULL",
                (now, proposal_id),
            )
        return True

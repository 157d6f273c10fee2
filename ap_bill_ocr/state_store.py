import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from .ocr_models import RunState


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("RUN_STATE_DB", "run_state.db")


@contextmanager
def _conn():
    con = sqlite3.connect(_get_db_path())
    con.execute("PRAGMA journal_mode=WAL;")
    try:
        yield con
        con.commit()
    finally:
        con.close()


def init_db():
    with _conn() as con:
        # 連携先ごとのウォーターマーク（処理済み最大の書類ID）
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS run_state (
              target_key TEXT PRIMARY KEY,
              last_doc_id INTEGER,
              updated_at TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
              ts TEXT,
              target_key TEXT,
              doc_id INTEGER,
              action TEXT,
              result TEXT,
              bill_id INTEGER,
              detail_json TEXT,
              error TEXT
            );
            """
        )


def load_state(target_key: str) -> RunState:
    with _conn() as con:
        cur = con.execute("SELECT last_doc_id FROM run_state WHERE target_key=?", (target_key,))
        row = cur.fetchone()
        return RunState(last_doc_id=int(row[0] or 0)) if row else RunState()


def save_state(target_key: str, state: RunState):
    with _conn() as con:
        con.execute(
            "INSERT OR REPLACE INTO run_state(target_key, last_doc_id, updated_at) VALUES (?,?,?)",
            (target_key, int(state.last_doc_id), datetime.utcnow().isoformat()),
        )


def write_audit(target_key: str, doc_id: int, action: str, result: str, bill_id: int = 0,
                detail: Optional[Dict] = None, error: Optional[str] = None):
    with _conn() as con:
        con.execute(
            "INSERT INTO audit_log(ts, target_key, doc_id, action, result, bill_id, detail_json, error) VALUES (?,?,?,?,?,?,?,?)",
            (
                datetime.utcnow().isoformat(),
                target_key,
                int(doc_id),
                action,
                result,
                int(bill_id or 0),
                json.dumps(detail or {}, ensure_ascii=False),
                error,
            ),
        )


def list_audit(target_key: str, limit: int = 100) -> List[Dict]:
    with _conn() as con:
        cur = con.execute(
            "SELECT ts, doc_id, action, result, bill_id, detail_json, error FROM audit_log "
            "WHERE target_key=? ORDER BY rowid DESC LIMIT ?",
            (target_key, limit),
        )
        rows = []
        for ts, doc_id, action, result, bill_id, detail_json, error in cur.fetchall():
            rows.append({
                "ts": ts,
                "doc_id": doc_id,
                "action": action,
                "result": result,
                "bill_id": bill_id,
                "detail": json.loads(detail_json or "{}"),
                "error": error,
            })
        return rows

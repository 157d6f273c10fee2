import copy
import itertools

import pytest

from ap_bill_ocr.config_loader import DEFAULTS, Settings
from ap_bill_ocr.errors import OdooRPCError
from ap_bill_ocr.ocr_models import RoutingTarget


WRITE_METHODS = ("create", "write", "message_post")


def _match(value, op, expected):
    if op == "=":
        return value == expected
    if op == "!=":
        return value != expected
    if op == "in":
        return value in expected
    if op == ">":
        return (value or 0) > expected
    if op in ("ilike", "not ilike"):
        pattern = str(expected).lower()
        text = str(value or "").lower()
        if pattern.endswith("%"):
            hit = text.startswith(pattern[:-1])
        else:
            hit = pattern in text
        return hit if op == "ilike" else not hit
    raise AssertionError(f"unsupported operator: {op}")


class FakeOdoo:
    """Odoo JSON-RPC クライアントのインメモリ代替（呼び出しを記録する）"""

    def __init__(self, base_url="https://erp.example.com", db="demo"):
        self.base_url = base_url
        self.db = db
        self.records = {}
        self.calls = []
        self.messages = []
        self.link_fields = ["res_model", "res_id"]
        self.failing_models = set()
        self._ids = itertools.count(1000)

    def add(self, model, **vals):
        rec_id = vals.pop("id", None) or next(self._ids)
        rec = dict(vals, id=rec_id)
        self.records.setdefault(model, {})[rec_id] = rec
        return rec_id

    def get(self, model, rec_id):
        return self.records.get(model, {}).get(rec_id)

    def all(self, model):
        return list(self.records.get(model, {}).values())

    def ledger_writes(self):
        return [c for c in self.calls if c[0] in WRITE_METHODS]

    def _filter(self, model, domain):
        if model in self.failing_models:
            raise OdooRPCError(f"{model} is not available")
        rows = []
        for rec in self.records.get(model, {}).values():
            ok = True
            for field_name, op, expected in domain:
                value = rec.get(field_name, True if field_name == "active" else None)
                if not _match(value, op, expected):
                    ok = False
                    break
            if ok:
                rows.append(rec)
        return rows

    def search_read(self, model, domain, fields, company_id=None, limit=None, order=None, **kwargs):
        self.calls.append(("search_read", model, domain))
        rows = self._filter(model, domain)
        rows.sort(key=lambda r: r["id"], reverse=bool(order and order.startswith("id desc")))
        if limit:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    def search(self, model, domain, company_id=None, **kwargs):
        self.calls.append(("search", model, domain))
        return [r["id"] for r in self._filter(model, domain)]

    def create(self, model, vals, company_id=None):
        self.calls.append(("create", model, vals))
        return self.add(model, **copy.deepcopy(vals))

    def write(self, model, ids, vals, company_id=None):
        self.calls.append(("write", model, (list(ids), vals)))
        for rec_id in ids:
            self.records.setdefault(model, {}).setdefault(rec_id, {"id": rec_id}).update(copy.deepcopy(vals))
        return True

    def fields_get(self, model, field_names):
        self.calls.append(("fields_get", model, field_names))
        return {name: {"type": "char"} for name in field_names if name in self.link_fields}

    def message_post(self, model, res_id, body, company_id=None, **extra):
        self.calls.append(("message_post", model, res_id))
        self.messages.append((model, res_id, body))
        return next(self._ids)

    def execute_kw(self, model, method, args=None, kwargs=None, company_id=None):
        self.calls.append(("execute_kw", model, method))
        return None


@pytest.fixture
def odoo():
    return FakeOdoo()


@pytest.fixture
def make_odoo():
    return FakeOdoo


@pytest.fixture
def policy():
    return copy.deepcopy(DEFAULTS)


@pytest.fixture
def target():
    return RoutingTarget(
        base_url="https://erp.example.com",
        db="demo",
        login="bot@example.com",
        password="secret",
        company_id=1,
        vat_ids={"goods": 11, "services": 12, "generic": 13},
        purchase_journal_id=7,
        ap_folder_id=50,
        industry="Restaurant",
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        run_budget_sec=600,
        reserve_sec=10,
        routing_csv=str(tmp_path / "routing.csv"),
        account_mapping_csv=str(tmp_path / "account_mapping.csv"),
        lock_dir=str(tmp_path),
        vision_api_key="vision-key",
        gemini_api_key="gemini-key",
    )


@pytest.fixture
def state_db(tmp_path, monkeypatch):
    db = tmp_path / "state.db"
    monkeypatch.setenv("RUN_STATE_DB", str(db))
    from ap_bill_ocr.state_store import init_db
    init_db()
    return db

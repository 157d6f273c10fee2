import copy
from unittest.mock import MagicMock

import pytest

from ap_bill_ocr.execution_lock import ExecutionLock
from ap_bill_ocr.markers import encode_job, encode_processed, is_processed
from ap_bill_ocr.ocr_models import ExtractedBill, RunState
from ap_bill_ocr.routing import save_routing_csv
from ap_bill_ocr.state_store import list_audit, load_state, save_state
from ap_bill_ocr.worker import (
    LOCK_NAME,
    WorkerContext,
    list_candidate_documents,
    order_documents,
    process_one_document,
    process_target_group,
    run_one,
    run_worker,
)

OCR_TEXT = """JOLLIBEE FOODS
Branch: Makati Ave
Chickenjoy bucket 1 x 1,000.00
VATable Sales 1,000.00
VAT 120.00
TOTAL 1,120.00
Thank you"""

BILL = {
    "vendor": {"name": "Jollibee Foods", "confidence": 0.95, "source": "header"},
    "vendor_details": {"tin": "000-388-474-000", "entity_type": "corporation"},
    "invoice": {"number": "SI-1001", "date": "2025-03-14", "currency": "PHP"},
    "vat": {"classification": "vatable", "goods_or_services": "goods", "vatable_base": 1000, "vat_amount": 120},
    "totals": {"grand_total": 1120, "grand_total_confidence": 0.9, "net_total": 1000, "tax_total": 120},
    "line_items": [{"description": "Chickenjoy bucket", "quantity": 1, "unit_price": 1000, "amount": 1000,
                    "expense_category": "meals"}],
    "expense_account_hint": {"category": "meals", "suggested_account_name": "Meals and Representation"},
}


def seed(odoo, doc_id=101, attachment_id=201, description=""):
    odoo.add("documents.document", id=doc_id, name=f"scan-{doc_id}.jpg", attachment_id=attachment_id,
             folder_id=50, is_folder=False)
    odoo.add("ir.attachment", id=attachment_id, name=f"scan-{doc_id}.jpg", datas="aGVsbG8=",
             mimetype="image/jpeg", description=description)


@pytest.fixture
def ledger(odoo):
    odoo.add("res.partner", id=301, name="Jollibee Foods", supplier_rank=1)
    odoo.add("account.account", id=401, code="6100", name="Meals and Representation",
             company_id=1, account_type="expense", deprecated=False)
    odoo.add("account.tax", id=11, amount=12.0, price_include=False)
    seed(odoo)
    return odoo


@pytest.fixture
def ctx(settings, policy, ledger):
    vision = MagicMock()
    vision.ocr_attachment.return_value = OCR_TEXT
    gemini = MagicMock()
    gemini.extract_invoice.side_effect = lambda *a, **k: ExtractedBill.from_dict(copy.deepcopy(BILL))
    gemini.assign_accounts.return_value = None
    return WorkerContext(
        settings=settings,
        vision=vision,
        gemini=gemini,
        client_factory=lambda target: ledger,
        policy=policy,
        clock=lambda: 0.0,
        sleep=lambda seconds: None,
    )


def doc(odoo, doc_id=101):
    return odoo.get("documents.document", doc_id)


def description(odoo, attachment_id=201):
    return odoo.get("ir.attachment", attachment_id)["description"]


def test_creates_bill_and_writes_marker(ledger, target, ctx):
    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result["status"] == "ok"
    bills = ledger.all("account.move")
    assert len(bills) == 1
    bill = bills[0]
    assert result["bill_id"] == bill["id"]
    assert bill["partner_id"] == 301
    assert bill["journal_id"] == 7
    assert bill["ref"] == "SI-1001"
    line = bill["invoice_line_ids"][0][2]
    assert line["price_unit"] == 1000.0
    assert line["tax_ids"] == [(6, 0, [11])]
    assert line["account_id"] == 401

    desc = description(ledger)
    assert is_processed(desc, ctx.settings.processed_marker_prefix, target.target_key, 101)
    assert f"BILL={bill['id']}|" in desc
    # 作成直後にマーカーを書く（後続のチャター投稿より前）
    create_idx = next(i for i, c in enumerate(ledger.calls) if c[:2] == ("create", "account.move"))
    marker_idx = next(
        i for i, c in enumerate(ledger.calls)
        if c[:2] == ("write", "ir.attachment") and "BILL=" in c[2][1]["description"]
    )
    assert marker_idx == create_idx + 1
    assert any(model == "account.move" and "Vendor extraction" in body for model, _, body in ledger.messages)


def test_already_processed_makes_no_ledger_changes(ledger, target, ctx):
    ledger.add("account.move", id=555, move_type="in_invoice")
    marker = encode_processed(ctx.settings.processed_marker_prefix, target.target_key, 101, 555, "scan-101.jpg")
    ledger.get("ir.attachment", 201)["description"] = marker

    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result == {"status": "skip", "reason": "already_processed", "bill_id": 555}
    assert ledger.ledger_writes() == []
    ctx.vision.ocr_attachment.assert_not_called()
    ctx.gemini.extract_invoice.assert_not_called()


def test_stale_marker_is_stripped_and_bill_recreated(ledger, target, ctx):
    prefix = ctx.settings.processed_marker_prefix
    stale = encode_processed(prefix, target.target_key, 101, 999, "scan-101.jpg")
    ledger.get("ir.attachment", 201)["description"] = f"uploaded by scanner\n{stale}"

    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result["status"] == "ok"
    assert len(ledger.all("account.move")) == 1
    desc = description(ledger)
    assert "BILL=999|" not in desc
    assert f"BILL={result['bill_id']}|" in desc
    assert "uploaded by scanner" in desc


def test_reprocess_ignores_existing_marker(ledger, target, ctx):
    ledger.add("account.move", id=555, move_type="in_invoice")
    prefix = ctx.settings.processed_marker_prefix
    ledger.get("ir.attachment", 201)["description"] = encode_processed(prefix, target.target_key, 101, 555, "x")

    result = process_one_document(ledger, target, doc(ledger), ctx, reprocess=True)

    assert result["status"] == "ok"
    assert "BILL=555|" not in description(ledger)


def test_marker_for_other_target_does_not_count(ledger, target, ctx):
    other = encode_processed(ctx.settings.processed_marker_prefix, "https://other|db|x|1", 101, 555, "x")
    ledger.add("account.move", id=555, move_type="in_invoice")
    ledger.get("ir.attachment", 201)["description"] = other

    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result["status"] == "ok"
    assert other in description(ledger)


def test_job_marker_written_before_ocr(ledger, target, ctx):
    seen = {}

    def ocr(mimetype, datas):
        seen["description"] = description(ledger)
        return "too short"

    ctx.vision.ocr_attachment.side_effect = ocr
    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result == {"status": "skip", "reason": "ocr_too_short"}
    assert "BILL_OCR_JOB|V1|" in seen["description"]
    assert ledger.all("account.move") == []


def test_existing_job_marker_is_not_duplicated(ledger, target, ctx):
    job = encode_job(ctx.settings.ocr_job_marker_prefix, target.target_key, 101, 201, "inline-1", "inline")
    ledger.get("ir.attachment", 201)["description"] = job

    process_one_document(ledger, target, doc(ledger), ctx)

    assert description(ledger).count("BILL_OCR_JOB|V1|") == 1


def test_missing_attachment(ledger, target, ctx):
    ledger.add("documents.document", id=102, name="orphan.pdf", attachment_id=999, folder_id=50, is_folder=False)
    assert process_one_document(ledger, target, doc(ledger, 102), ctx)["reason"] == "attachment_not_found"
    assert process_one_document(ledger, target, {"id": 103, "attachment_id": False}, ctx)["reason"] == "no_attachment"


def test_vendor_not_found_posts_manual_review(ledger, target, ctx):
    unknown = copy.deepcopy(BILL)
    unknown["vendor"] = {"name": "Aling Nena Sari-Sari", "confidence": 0.6, "source": "header"}
    ctx.gemini.extract_invoice.side_effect = lambda *a, **k: ExtractedBill.from_dict(copy.deepcopy(unknown))

    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result["reason"] == "vendor_not_found"
    assert result["manual_review"] is True
    assert ledger.all("account.move") == []
    assert any(model == "documents.document" and "Manual review" in body for model, _, body in ledger.messages)


def test_confident_new_vendor_is_created(ledger, target, ctx):
    new_vendor = copy.deepcopy(BILL)
    new_vendor["vendor"] = {"name": "Mang Inasal Makati", "confidence": 0.97, "source": "header"}
    ctx.gemini.extract_invoice.side_effect = lambda *a, **k: ExtractedBill.from_dict(copy.deepcopy(new_vendor))

    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result["status"] == "ok"
    assert result["vendor_created"] is True
    partners = [p for p in ledger.all("res.partner") if p["name"] == "Mang Inasal Makati"]
    assert len(partners) == 1
    assert partners[0]["company_type"] == "company"


def test_duplicate_bill_records_existing_id(ledger, target, ctx):
    ledger.add("account.move", id=777, move_type="in_invoice", partner_id=301, ref="SI-1001", amount_total=1120.0)

    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result == {"status": "skip", "reason": "duplicate", "bill_id": 777}
    assert len(ledger.all("account.move")) == 1
    assert "BILL=777|" in description(ledger)


def test_amount_correction_flows_into_bill(ledger, target, ctx):
    misread = copy.deepcopy(BILL)
    misread["totals"] = {"grand_total": 1045, "grand_total_confidence": 0.9}
    misread["vat"] = {"classification": "exempt"}
    misread["line_items"] = [
        {"description": "Rice sack", "quantity": 1, "unit_price": 5000, "amount": 5000},
        {"description": "Sugar", "quantity": 1, "unit_price": 5505, "amount": 5505},
    ]
    ctx.gemini.extract_invoice.side_effect = lambda *a, **k: ExtractedBill.from_dict(copy.deepcopy(misread))
    ctx.vision.ocr_attachment.return_value = "SUPPLIER\nRice sack 5,000.00\nSugar 5,505.00\nThank you for your purchase"

    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result["correction_rule"] == "truncated_total"
    assert result["grand_total"] == 10505.0
    lines = ledger.all("account.move")[0]["invoice_line_ids"]
    assert sum(vals["price_unit"] for _, _, vals in lines) == 10505.0


def test_dry_run_writes_nothing(ledger, target, ctx):
    ctx.settings.dry_run = True
    result = process_one_document(ledger, target, doc(ledger), ctx)

    assert result["status"] == "dry_run"
    assert result["vals"]["partner_id"] == 301
    assert ledger.ledger_writes() == []


def test_candidate_listing_and_order(ledger, settings):
    seed(ledger, 102, 202)
    ledger.add("documents.document", id=103, name="BILL-2025-0001", attachment_id=203, folder_id=50, is_folder=False)
    ledger.add("documents.document", id=104, name="receipt.jpg", attachment_id=False, folder_id=50, is_folder=False)
    ledger.add("documents.document", id=105, name="elsewhere.jpg", attachment_id=205, folder_id=60, is_folder=False)

    docs = list_candidate_documents(ledger, 1, 50, settings)

    assert [d["id"] for d in docs] == [101, 102, 103]
    assert [d["id"] for d in order_documents(docs, 101)] == [102, 103, 101]


def test_order_documents():
    docs = [{"id": i} for i in (7, 3, 12, 9, 1)]
    assert [d["id"] for d in order_documents(docs, 7)] == [9, 12, 1, 3, 7]
    assert [d["id"] for d in order_documents(docs, 0)] == [1, 3, 7, 9, 12]


def test_target_group_runs_twice_without_duplicates(ledger, target, ctx, state_db):
    first = process_target_group(target, ctx, deadline=100.0)
    second = process_target_group(target, ctx, deadline=100.0)

    assert (first.created, first.skipped) == (1, 0)
    assert (second.created, second.skipped) == (0, 1)
    assert len(ledger.all("account.move")) == 1
    assert load_state(target.target_key).last_doc_id == 101
    results = [row["result"] for row in list_audit(target.target_key)]
    assert results == ["skip:already_processed", "ok"]


def test_budget_cutoff_keeps_completed_watermark(ledger, target, ctx, state_db):
    for doc_id in (102, 103):
        ledger.add("documents.document", id=doc_id, name=f"scan-{doc_id}.jpg", attachment_id=9000 + doc_id,
                   folder_id=50, is_folder=False)
    ticks = iter([0.0, 10.0, 100.0])
    ctx.clock = lambda: next(ticks)

    stats = process_target_group(target, ctx, deadline=50.0)

    assert stats.stopped_by_budget is True
    assert stats.scanned == 2
    assert stats.last_doc_id == 102
    assert load_state(target.target_key).last_doc_id == 102


def test_document_error_is_counted_and_not_watermarked(ledger, target, ctx, state_db):
    save_state(target.target_key, RunState(last_doc_id=50))
    ctx.vision.ocr_attachment.side_effect = RuntimeError("vision down")

    stats = process_target_group(target, ctx, deadline=100.0)

    assert stats.errors == 1
    assert stats.last_doc_id == 50
    assert load_state(target.target_key).last_doc_id == 50


def write_routing(settings, rows):
    headers = ["enabled", "target_base_url", "target_db", "target_login", "target_password",
               "target_company_id", "ap_folder_id"]
    save_routing_csv(settings.routing_csv, headers, rows)


def routing_row(db, company_id=1):
    return {
        "enabled": "TRUE", "target_base_url": "https://erp.example.com", "target_db": db,
        "target_login": "bot@example.com", "target_password": "secret",
        "target_company_id": str(company_id), "ap_folder_id": "50",
    }


def test_run_worker_isolates_failing_target(ledger, ctx, settings, state_db):
    write_routing(settings, [routing_row("demo"), routing_row("broken")])

    def factory(target):
        if target.db == "broken":
            raise ConnectionError("cannot reach broken")
        return ledger

    ctx.client_factory = factory
    result = run_worker(settings, ctx=ctx)

    assert result["ok"] is True
    assert result["totals"]["targets"] == 2
    assert result["totals"]["created"] == 1
    assert result["totals"]["errors"] == 1
    broken = next(t for t in result["targets"] if "|broken|" in t["target_key"])
    assert "cannot reach broken" in broken["error"]
    assert ExecutionLock(LOCK_NAME, lock_dir=settings.lock_dir).get_lock_info() is None


def test_run_worker_rejects_concurrent_run(ctx, settings, state_db):
    lock = ExecutionLock(LOCK_NAME, lock_dir=settings.lock_dir)
    assert lock.acquire_lock("other-run")

    result = run_worker(settings, ctx=ctx)

    assert result == {"ok": False, "status": "already_running"}
    assert lock.get_lock_info()["process_id"] == "other-run"


def test_run_one_clears_stale_document_link(ledger, ctx, settings, state_db):
    write_routing(settings, [routing_row("demo")])
    ledger.get("documents.document", 101).update(res_model="account.move", res_id=888)

    result = run_one(settings, doc_id=101, ctx=ctx)

    assert result["result"]["status"] == "ok"
    new_bill_id = result["result"]["bill_id"]
    assert ledger.get("documents.document", 101)["res_id"] == new_bill_id
    cleared = [c for c in ledger.calls if c[:2] == ("write", "documents.document") and c[2][1].get("res_id") is False]
    assert len(cleared) == 1


def test_run_one_requires_document_reference(settings):
    with pytest.raises(ValueError):
        run_one(settings)

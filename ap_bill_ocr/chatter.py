"""
Odoo チャター（メッセージ）への記録
請求書作成後の原本添付・書類とのリンク・監査用ノートはすべてベストエフォート
"""

import time
from html import escape
from typing import Callable, Dict, List, Optional, Sequence

from .errors import OdooRPCError
from .ocr_models import Account, ExtractedBill, ResolvedAccount
from .vendor_resolver import VendorMatch


LINK_FIELDS = ["res_model", "res_id", "account_move_id", "invoice_id"]
FOLDER_RESTORE_DELAYS = (1.5, 2.5, 4.0)
MANUAL_REVIEW_CONFIDENCE = 0.9

ENTITY_LABELS = {
    "sole_proprietor": "Sole Proprietor",
    "corporation": "Corporation",
    "individual": "Individual",
}


def safe_message_post(odoo, company_id: int, model: str, res_id: int, body: str) -> bool:
    """内部メモとして投稿（失敗しても処理は止めない）"""
    try:
        odoo.message_post(
            model, int(res_id), str(body or ""), company_id=company_id,
            subtype_xmlid="mail.mt_note", body_is_html=True,
        )
        return True
    except Exception as e:
        print(f"  ⚠️ チャター投稿に失敗: {model}#{res_id}: {e}")
        return False


def attach_file_to_bill_chatter(odoo, company_id: int, att: Dict, bill_id: int, doc_id: int) -> bool:
    """原本ファイルを請求書のチャターに添付"""
    if not att.get("datas"):
        return False
    try:
        chat_att_id = odoo.create("ir.attachment", {
            "name": att.get("name") or f"document-{doc_id}",
            "mimetype": att.get("mimetype") or "",
            "datas": att["datas"],
            "res_model": "mail.compose.message",
            "res_id": 0,
            "description": f"Source: documents.document#{doc_id} attachment#{att.get('id')}",
        }, company_id=company_id)
        odoo.message_post(
            "account.move", int(bill_id), f"📄 Original document file attached (doc #{doc_id})",
            company_id=company_id, attachment_ids=[int(chat_att_id)],
        )
        return True
    except Exception as e:
        print(f"  ⚠️ 原本の添付に失敗: bill#{bill_id}: {e}")
        return False


def _folder_id(row: Optional[Dict]) -> int:
    raw = (row or {}).get("folder_id")
    if isinstance(raw, (list, tuple)):
        return int(raw[0]) if raw else 0
    return int(raw or 0)


def _read_folder_id(odoo, company_id: int, doc_id: int) -> int:
    rows = odoo.search_read(
        "documents.document", [["id", "=", int(doc_id)]], ["id", "folder_id"], company_id=company_id, limit=1
    )
    return _folder_id(rows[0] if rows else None)


def supported_link_fields(odoo) -> List[str]:
    """documents.document に存在するリンク用フィールド（バージョンで異なる）"""
    try:
        fields = odoo.fields_get("documents.document", LINK_FIELDS)
    except OdooRPCError:
        return []
    return [name for name in LINK_FIELDS if name in fields]


def link_document_to_bill(odoo, company_id: int, doc_id: int, bill_id: int,
                          delays: Sequence[float] = FOLDER_RESTORE_DELAYS,
                          sleep: Callable[[float], None] = time.sleep):
    """書類を請求書にリンクする

    リンクすると Odoo が書類を会計フォルダへ移動することがあるので、元のフォルダに戻す。
    """
    original_folder_id = _read_folder_id(odoo, company_id, doc_id)

    values = {
        "res_model": "account.move",
        "res_id": int(bill_id),
        "account_move_id": int(bill_id),
        "invoice_id": int(bill_id),
    }
    link_vals = {name: values[name] for name in supported_link_fields(odoo)}
    if link_vals:
        odoo.write("documents.document", [int(doc_id)], link_vals, company_id=company_id)

    if original_folder_id:
        for attempt, delay in enumerate(delays, 1):
            sleep(delay)
            try:
                current = _read_folder_id(odoo, company_id, doc_id)
                if current == original_folder_id:
                    break
                odoo.write("documents.document", [int(doc_id)], {"folder_id": original_folder_id}, company_id=company_id)
                print(f"  📁 書類フォルダを戻しました: doc#{doc_id} {current} → {original_folder_id} (試行{attempt})")
            except OdooRPCError as e:
                print(f"  ⚠️ フォルダの復元に失敗: doc#{doc_id}: {e}")

    doc_link = f"{odoo.base_url}/odoo/documents/{doc_id}"
    safe_message_post(
        odoo, company_id, "account.move", bill_id,
        f'📎 Source document: <a href="{doc_link}">Document #{doc_id}</a> (Documents app)',
    )


def clear_document_link(odoo, company_id: int, doc_id: int):
    """削除済み請求書へのリンクを書類から外す"""
    fields = supported_link_fields(odoo)
    if fields:
        odoo.write("documents.document", [int(doc_id)], {name: False for name in fields}, company_id=company_id)


# ---- 監査ノート ----

def vendor_not_found_note(bill: ExtractedBill) -> str:
    v = bill.vendor
    d = bill.vendor_details
    return (
        "⚠️ Manual review required: vendor not confidently matched.<br/>"
        f"Extracted vendor={escape(v.name) or '(blank)'} conf={v.confidence} source={v.source}<br/>"
        f"TIN={escape(d.tin) or '(none)'} Address={escape(d.address) or '(none)'}"
    )


def vendor_resolved_note(vendor: VendorMatch) -> str:
    action = "created" if vendor.created else "matched"
    return f"✅ Vendor auto-{action}: {escape(vendor.name)} (#{vendor.id})."


def bill_created_note(bill_id: int, vendor: VendorMatch) -> str:
    return f"✅ Draft Vendor Bill created: account.move #{bill_id}<br/>Vendor={escape(vendor.name) or '(unknown)'}"


def vendor_extraction_note(bill: ExtractedBill, vendor: VendorMatch) -> str:
    d = bill.vendor_details
    entity_type = (d.entity_type or "unknown").lower()
    is_person = entity_type in ("sole_proprietor", "individual")
    lines = [
        "<b>🔍 Vendor extraction</b>",
        f"Name: {escape(vendor.name) or '(unknown)'} | Confidence: {bill.vendor.confidence:.2f}",
        f"Entity type: <b>{ENTITY_LABELS.get(entity_type, 'Unknown')}</b>",
    ]
    if d.trade_name and d.trade_name.lower() != (vendor.name or "").lower():
        lines.append(f"Trade name: {escape(d.trade_name)}")
    if d.proprietor_name:
        lines.append(f"Proprietor/Owner: {escape(d.proprietor_name)}")
    if d.tin:
        lines.append(f"TIN: {escape(d.tin)}")
    if d.address:
        lines.append(f"Address: {escape(d.address)}")
    if vendor.created:
        lines.append(f"<i>Vendor auto-created in Odoo (as {'Individual' if is_person else 'Company'})</i>")
    return "<br/>".join(lines)


def account_suggestions_note(bill: ExtractedBill, resolved: List[ResolvedAccount],
                             accounts: List[Account], use_lines: bool) -> str:
    by_id = {a.id: a for a in accounts}
    lines = ["<b>💡 Account suggestions</b>"]
    for i, r in enumerate(resolved):
        item = bill.line_items[i] if use_lines and i < len(bill.line_items) else None
        desc = escape(item.description[:60]) if item else "Single line"
        account = by_id.get(r.account_id)
        if account:
            target = f"<b>{escape(account.code)} {escape(account.name)}</b> <i>({r.source})</i>"
        else:
            target = f"(account #{r.account_id or 'default'})"
        lines.append(f"Line {i + 1}: {desc} → {target}")
    return "<br/>".join(lines)


def extracted_amounts_note(bill: ExtractedBill) -> str:
    t = bill.totals
    lines = [
        "<b>📊 Extracted amounts</b>",
        f"Grand total: {t.grand_total:.2f} | Net total: {t.net_total:.2f} | Tax: {t.tax_total:.2f}",
        f"VAT-inclusive prices: {'Yes' if t.amounts_are_vat_inclusive else 'No'}"
        f" | Currency: {escape(bill.invoice.currency) or '(not detected)'}",
    ]
    if t.correction_rule:
        lines.append(f"Total corrected by rule: <b>{t.correction_rule}</b> (confidence {t.grand_total_confidence:.2f})")
    if bill.invoice.number:
        lines.append(f"Invoice #: {escape(bill.invoice.number)}")
    if bill.invoice.date:
        lines.append(f"Invoice date: {escape(bill.invoice.date)}")
    return "<br/>".join(lines)


def needs_manual_review(bill: ExtractedBill) -> bool:
    return bool(bill.warnings) or bill.vendor.confidence < MANUAL_REVIEW_CONFIDENCE


def manual_review_note(bill: ExtractedBill) -> str:
    warnings = "<br/>- ".join(escape(w) for w in bill.warnings) or "(none)"
    return (
        f"<b>⚠️ Manual review recommended.</b> Vendor confidence={bill.vendor.confidence:.2f}"
        f"<br/>Warnings:<br/>- {warnings}"
    )


def post_bill_audit_notes(odoo, company_id: int, bill_id: int, bill: ExtractedBill, vendor: VendorMatch,
                          resolved: List[ResolvedAccount], accounts: List[Account], use_lines: bool):
    notes = [
        vendor_extraction_note(bill, vendor),
        account_suggestions_note(bill, resolved, accounts, use_lines),
        extracted_amounts_note(bill),
    ]
    if needs_manual_review(bill):
        notes.append(manual_review_note(bill))
    for body in notes:
        safe_message_post(odoo, company_id, "account.move", bill_id, body)

"""
仕入先の特定・自動作成、重複請求書の検出、通貨の解決
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from rapidfuzz.distance import JaroWinkler

from .errors import OdooRPCError
from .ocr_models import ExtractedBill, VendorCandidate


# ATP（印刷業者の認可）欄の業者名は仕入先ではない
ATP_BAD_TOKENS = ["printer", "printing", "press", "graphic", "publishing", "accreditation", "permit", "atp", "bir", "authority"]
ATP_HINTS = ["atp", "bir permit", "printer", "accreditation", "date issued", "permit no"]
ATP_WINDOW = 180
DUPLICATE_AMOUNT_TOLERANCE = 0.02


@dataclass
class VendorMatch:
    id: int = 0
    name: str = ""
    confidence: float = 0.0
    source: str = "unknown"
    created: bool = False
    status: str = ""  # matched|created|missing|blocked_printer|needs_confirmation


def _normalize_name(text: str) -> str:
    if not text:
        return ""
    s = text.upper()
    s = re.sub(r"[.,]", "", s)
    s = re.sub(r"\b(INC|CORP|CORPORATION|CO|LTD|OPC)\b", "", s)
    return re.sub(r"\s+", " ", s).strip()


def _similarity(a: str, b: str) -> float:
    a, b = _normalize_name(a), _normalize_name(b)
    if not a or not b:
        return 0.0
    return JaroWinkler.normalized_similarity(a, b)


def looks_like_atp_printer(name: str, ocr_text: str = "") -> bool:
    n = str(name or "").lower()
    if not n:
        return False
    if any(t in n for t in ATP_BAD_TOKENS):
        return True
    text = str(ocr_text or "").lower()
    idx = text.find(n[:12])
    if idx >= 0:
        window = text[max(0, idx - ATP_WINDOW):idx + ATP_WINDOW]
        if any(h in window for h in ATP_HINTS):
            return True
    return False


def _is_atp(candidate: VendorCandidate, ocr_text: str) -> bool:
    return candidate.source == "atp_printer_box" or looks_like_atp_printer(candidate.name, ocr_text)


def pick_vendor(bill: ExtractedBill, ocr_text: str = "") -> VendorCandidate:
    """抽出された仕入先（ATP欄なら候補の中から信頼度の高い順に代替を探す）"""
    primary = bill.vendor
    if primary.name and not _is_atp(primary, ocr_text):
        return primary
    alternatives = sorted(
        (c for c in bill.vendor_candidates if c.name and not _is_atp(c, ocr_text)),
        key=lambda c: -c.confidence,
    )
    return alternatives[0] if alternatives else VendorCandidate("")


def _search_names(*names: str) -> List[str]:
    result = []
    for name in names:
        name = str(name or "").strip()
        if name and name.lower() not in [r.lower() for r in result]:
            result.append(name)
    return result


def _search_partner(odoo, company_id: int, name: str, limit: int = 5) -> Optional[Dict]:
    """ilike 検索の結果から名前の類似度が最も高い仕入先を返す"""
    rows = odoo.search_read(
        "res.partner",
        [["name", "ilike", name], ["supplier_rank", ">", 0]],
        ["id", "name"],
        company_id=company_id,
        limit=limit,
        order="supplier_rank desc,id asc",
    )
    if not rows:
        return None
    return max(rows, key=lambda r: _similarity(name, r.get("name") or ""))


def find_vendor(odoo, company_id: int, bill: ExtractedBill, ocr_text: str = "") -> VendorMatch:
    picked = pick_vendor(bill, ocr_text)
    if not picked.name:
        return VendorMatch(source=picked.source, status="missing")
    details = bill.vendor_details
    for name in _search_names(picked.name, details.trade_name, details.proprietor_name):
        row = _search_partner(odoo, company_id, name)
        if row:
            return VendorMatch(
                id=int(row["id"]), name=str(row.get("name") or ""), confidence=picked.confidence,
                source=picked.source, status="matched",
            )
    return VendorMatch(name=picked.name, confidence=picked.confidence, source=picked.source)


def create_vendor_if_missing(odoo, company_id: int, bill: ExtractedBill, ocr_text: str = "",
                             min_confidence: float = 0.9) -> VendorMatch:
    """信頼度が閾値以上なら仕入先を作成（個人事業主・個人は person として作成）"""
    picked = pick_vendor(bill, ocr_text)
    raw_name = picked.name.strip()
    if not raw_name:
        return VendorMatch(status="missing")
    if _is_atp(picked, ocr_text):
        return VendorMatch(name=raw_name, status="blocked_printer")
    if picked.confidence < min_confidence:
        return VendorMatch(name=raw_name, confidence=picked.confidence, source=picked.source, status="needs_confirmation")

    details = bill.vendor_details
    is_person = details.entity_type in ("sole_proprietor", "individual")
    name = details.proprietor_name if is_person and details.proprietor_name else raw_name

    for search_name in _search_names(name, raw_name, details.trade_name):
        row = _search_partner(odoo, company_id, search_name, limit=1)
        if row:
            return VendorMatch(
                id=int(row["id"]), name=str(row.get("name") or ""), confidence=picked.confidence,
                source=picked.source, status="matched",
            )

    vals = {"name": name, "supplier_rank": 1}
    if details.address:
        vals["street"] = details.address[:255]
    if details.tin:
        vals["vat"] = details.tin
    notes = []
    if is_person and details.trade_name:
        notes.append(f"Trade name: {details.trade_name}")
    if not is_person and details.trade_name and details.trade_name.lower() != name.lower():
        notes.append(f"DBA: {details.trade_name}")
    if notes:
        vals["comment"] = "\n".join(notes)

    try:
        partner_id = odoo.create("res.partner", dict(vals, company_type="person" if is_person else "company"))
    except OdooRPCError as e:
        if "company_type" not in str(e):
            raise
        # company_type が無いバージョンは is_company で代替
        partner_id = odoo.create("res.partner", dict(vals, is_company=not is_person))
    print(f"  🆕 仕入先を作成しました: {name} (#{partner_id})")
    return VendorMatch(
        id=int(partner_id), name=name, confidence=picked.confidence, source=picked.source,
        created=True, status="created",
    )


def find_duplicate_bill(odoo, company_id: int, vendor_id: int, bill: ExtractedBill) -> Optional[Dict]:
    """同じ仕入先・請求書番号で金額差0.02以内の既存請求書"""
    domain = [["move_type", "=", "in_invoice"]]
    if vendor_id:
        domain.append(["partner_id", "=", vendor_id])
    if bill.invoice.number:
        domain.append(["ref", "=", bill.invoice.number])
    rows = odoo.search_read(
        "account.move", domain, ["id", "ref", "amount_total", "state"],
        company_id=company_id, limit=20, order="id desc",
    )
    total = bill.totals.grand_total
    for row in rows:
        if abs(float(row.get("amount_total") or 0) - total) <= DUPLICATE_AMOUNT_TOLERANCE:
            return row
    return None


def resolve_currency_id(odoo, company_id: int, currency_code: str) -> int:
    """PHP（会社通貨）や空なら0、それ以外は res.currency のID"""
    code = str(currency_code or "").strip().upper()
    if not code or code == "PHP":
        return 0
    rows = odoo.search_read(
        "res.currency", [["name", "=", code], ["active", "=", True]], ["id"], company_id=company_id, limit=1
    )
    return int(rows[0]["id"]) if rows else 0


"""
税区分と単価の正規化
請求書のVAT区分・明細ごとの税込フラグから、account.move 作成用の明細行を組み立てる
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from .ocr_models import ExtractedBill, LineItem


DEFAULT_TAX_RATE = 12.0
LINE_ITEM_TOLERANCE = 0.05
# 端数調整を許す差額の上限（期待合計に対する比率）
RESIDUAL_LIMIT = 0.01


@dataclass
class TaxMeta:
    """account.tax の税率と税込設定"""
    amount: float = DEFAULT_TAX_RATE
    price_include: bool = False

    @classmethod
    def from_record(cls, row: Optional[Dict]) -> Optional["TaxMeta"]:
        if not row:
            return None
        return cls(amount=float(row.get("amount") or DEFAULT_TAX_RATE), price_include=bool(row.get("price_include")))


def load_tax_meta(odoo, company_id: int, tax_ids: List[int]) -> Optional[TaxMeta]:
    if not tax_ids:
        return None
    rows = odoo.search_read(
        "account.tax", [["id", "in", list(tax_ids)]], ["id", "amount", "price_include"],
        company_id=company_id, limit=10,
    )
    return TaxMeta.from_record(rows[0] if rows else None)


def pick_tax_ids(vat_ids: Dict[str, int], bill: ExtractedBill) -> List[int]:
    """請求書に適用する税IDを選ぶ（最大1件）

    免税・ゼロ税率・不明の請求書でも、課税明細が1行でもあれば課税扱いにする。
    """
    vat_ids = vat_ids or {}
    any_vatable_line = any(li.vat_code == "vatable" for li in bill.line_items)
    if bill.vat.classification in ("exempt", "zero_rated", "unknown") and not any_vatable_line:
        return []

    gs = bill.vat.goods_or_services
    if gs in ("goods", "services") and int(vat_ids.get(gs) or 0):
        return [int(vat_ids[gs])]
    generic = int(vat_ids.get("generic") or 0)
    return [generic] if generic else []


def line_is_taxed(line: LineItem, tax_ids: List[int]) -> bool:
    return bool(tax_ids) and line.vat_code in ("", "vatable")


def to_tax_included(price: float, rate: float) -> float:
    return price * (1 + rate / 100)


def to_tax_excluded(price: float, rate: float) -> float:
    return price / (1 + rate / 100)


def adjust_price_for_tax(price: float, invoice_vat_inclusive: bool, tax_price_include: bool, rate: float) -> float:
    """請求書の税込/税抜表示と税マスタの設定が食い違う場合だけ単価を換算する"""
    if not price:
        return price
    if invoice_vat_inclusive and not tax_price_include:
        return to_tax_excluded(price, rate)
    if not invoice_vat_inclusive and tax_price_include:
        return to_tax_included(price, rate)
    return price


def line_items_match_total(line_items: List[LineItem], grand_total: float, net_total: float = 0.0,
                           tolerance: float = LINE_ITEM_TOLERANCE) -> bool:
    """明細合計が総額または税抜合計の±5%以内か"""
    line_sum = sum(li.amount for li in line_items)
    if not line_items or not line_sum:
        return False
    for expected in (grand_total, net_total):
        if expected > 0 and abs(line_sum - expected) / expected < tolerance:
            return True
    return False


def uses_line_items(bill: ExtractedBill) -> bool:
    return bool(bill.line_items) and line_items_match_total(
        bill.line_items, bill.totals.grand_total, bill.totals.net_total
    )


def _line_price(line: LineItem) -> float:
    if line.unit_price:
        return line.unit_price
    return line.amount / (line.quantity or 1.0)


def _single_line_total(bill: ExtractedBill, has_tax: bool, meta: TaxMeta) -> float:
    gross = bill.totals.grand_total
    net = bill.totals.net_total
    if has_tax and not meta.price_include:
        if net > 0 and (not gross or net <= gross):
            return net
        return to_tax_excluded(gross, meta.amount)
    if has_tax:
        return gross or to_tax_included(net, meta.amount)
    return gross or net


def _expected_line_total(bill: ExtractedBill, has_tax: bool, meta: TaxMeta) -> float:
    if has_tax and not meta.price_include:
        net = bill.totals.net_total
        if net > 0 and abs(net - bill.line_sum()) / net < LINE_ITEM_TOLERANCE:
            return net
        # 明細が税込表示なら総額から税抜合計を逆算
        if bill.totals.amounts_are_vat_inclusive:
            return to_tax_excluded(bill.totals.grand_total, meta.amount)
        return bill.line_sum()
    return bill.totals.grand_total or bill.line_sum()


def _push_residual(lines: List[Dict], expected: float):
    """税抜明細合計と期待合計の端数差を1行に寄せる（数量1の行を優先）"""
    if not lines or expected <= 0:
        return
    computed = sum(round(line["price_unit"] * line["quantity"], 2) for line in lines)
    residual = round(expected - computed, 2)
    if not residual or abs(residual) > expected * RESIDUAL_LIMIT:
        return
    target = next((line for line in lines if line["quantity"] == 1), None)
    if target is None:
        target = max(lines, key=lambda line: line["price_unit"] * line["quantity"])
    target["price_unit"] = round(target["price_unit"] + residual / target["quantity"], 2)


def build_bill_lines(bill: ExtractedBill, tax_ids: List[int], tax_meta: Optional[TaxMeta] = None,
                     line_account_ids: Optional[List[int]] = None) -> List[tuple]:
    """invoice_line_ids 用の (0, 0, vals) コマンドを組み立てる"""
    meta = tax_meta or TaxMeta()
    account_ids = line_account_ids or []
    has_tax = bool(tax_ids)
    global_inclusive = bill.totals.amounts_are_vat_inclusive

    lines = []
    if uses_line_items(bill):
        for i, item in enumerate(bill.line_items):
            taxed = line_is_taxed(item, tax_ids)
            price = _line_price(item)
            if taxed:
                inclusive = global_inclusive if item.unit_price_includes_vat is None else item.unit_price_includes_vat
                price = adjust_price_for_tax(price, inclusive, meta.price_include, meta.amount)
            line = {
                "name": (item.description or "Line item")[:256],
                "quantity": item.quantity or 1.0,
                "price_unit": round(price, 2),
                "tax_ids": [(6, 0, list(tax_ids) if taxed else [])],
            }
            if i < len(account_ids) and account_ids[i]:
                line["account_id"] = int(account_ids[i])
            lines.append(line)
        if not bill.has_line_vat_codes():
            _push_residual(lines, round(_expected_line_total(bill, has_tax, meta), 2))
    else:
        line = {
            "name": (bill.expense_account_hint.suggested_account_name or "OCR Vendor Bill")[:256],
            "quantity": 1.0,
            "price_unit": round(_single_line_total(bill, has_tax, meta), 2),
            "tax_ids": [(6, 0, list(tax_ids))],
        }
        if account_ids and account_ids[0]:
            line["account_id"] = int(account_ids[0])
        lines.append(line)

    return [(0, 0, line) for line in lines]


def build_bill_vals(bill: ExtractedBill, vendor_id: int, company_id: int, tax_ids: List[int],
                    purchase_journal_id: int = 0, currency_id: int = 0, tax_meta: Optional[TaxMeta] = None,
                    line_account_ids: Optional[List[int]] = None) -> Dict:
    """account.move（仕入請求書）の作成値"""
    vals = {
        "move_type": "in_invoice",
        "partner_id": int(vendor_id),
        "company_id": int(company_id),
        "invoice_line_ids": build_bill_lines(bill, tax_ids, tax_meta, line_account_ids),
    }
    if purchase_journal_id:
        vals["journal_id"] = int(purchase_journal_id)
    if currency_id:
        vals["currency_id"] = int(currency_id)
    if bill.invoice.number:
        vals["ref"] = bill.invoice.number
    if bill.invoice.date:
        vals["invoice_date"] = bill.invoice.date
    return vals

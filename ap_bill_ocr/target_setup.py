"""
連携先の自動取得項目
会社ごとの12%仕入VAT（物品・役務・汎用）、仕入仕訳帳、APフォルダ、業種をOdooから推定し、
ルーティングCSVに書き戻す
"""

import re
from typing import Callable, Dict, List, Optional

from .errors import OdooRPCError
from .ocr_models import RoutingTarget
from .odoo_client import OdooClient
from .routing import ensure_auto_columns, group_rows_by_target


AP_FOLDER_NAMES = ["Accounts Payable", "Account Payables", "AP", "Vendor Bills"]

WITHHOLDING_RE = re.compile(r"fwvat|ewvat|withhold|withholding|\bwht\b|designated|\bds\b")
IMPORT_RE = re.compile(r"\bimport\b|\bimportation\b|\b12%\s*i\b")
NON_CREDIT_RE = re.compile(r"\bncr\b|non[-\s]?credit")
CAPITAL_GOODS_RE = re.compile(r"capital\s*goods|capital\s*asset|\bcapital\b.*\bgoods\b|\b12%\s*c\b")
SERVICE_RE = re.compile(r"service|consult|professional|repair|rent|labor|contract|freight")
GOODS_RE = re.compile(r"goods|supply|material|inventory|product|merch")


def _tax_text(tax: Dict) -> str:
    group = tax.get("tax_group_id")
    group_name = group[1] if isinstance(group, (list, tuple)) and len(group) > 1 else ""
    return f"{tax.get('name') or ''} {tax.get('description') or ''} {group_name}".lower()


def _top(taxes: List[Dict], scorer: Callable[[Dict], int]) -> Optional[Dict]:
    best, best_score = None, None
    for tax in taxes:
        score = scorer(tax)
        if best_score is None or score > best_score:
            best, best_score = tax, score
    return best


def pick_vat_taxes(taxes: List[Dict]) -> Dict[str, int]:
    """12%仕入VATから物品・役務・汎用の税IDを選ぶ（源泉・輸入・控除不可・資本財は除外）"""
    vat12 = []
    for tax in taxes:
        text = _tax_text(tax)
        if tax.get("amount_type") != "percent" or abs(float(tax.get("amount") or 0) - 12) > 0.0001:
            continue
        if WITHHOLDING_RE.search(text) or IMPORT_RE.search(text) or NON_CREDIT_RE.search(text):
            continue
        vat12.append(tax)
    if not vat12:
        return {"goods": 0, "services": 0, "generic": 0}

    def capital(t):
        return bool(CAPITAL_GOODS_RE.search(_tax_text(t)))

    def service_like(t):
        return bool(SERVICE_RE.search(_tax_text(t))) and not capital(t)

    def goods_like(t):
        return bool(GOODS_RE.search(_tax_text(t))) and not capital(t)

    def generic_score(t):
        if capital(t):
            return -100
        return (5 if str(t.get("type_tax_use") or "").lower() == "purchase" else 0) \
            + (2 if not t.get("price_include") else 0) \
            + (1 if service_like(t) or goods_like(t) else 0)

    def services_score(t):
        if capital(t):
            return -100
        return (10 if service_like(t) else 0) + (2 if not goods_like(t) else 0) + (1 if not t.get("price_include") else 0)

    def goods_score(t):
        if capital(t):
            return -100
        return (10 if goods_like(t) else 0) + (2 if not service_like(t) else 0) + (1 if not t.get("price_include") else 0)

    generic = _top(vat12, generic_score)
    services = _top(vat12, services_score)
    goods = _top(vat12, goods_score)
    generic_id = int(generic["id"]) if generic else 0
    return {
        "goods": int(goods["id"]) if goods else generic_id,
        "services": int(services["id"]) if services else generic_id,
        "generic": generic_id,
    }


def pick_vat_taxes_for_company(odoo, company_id: int) -> Dict[str, int]:
    taxes = odoo.search_read(
        "account.tax",
        [["company_id", "=", company_id], ["active", "=", True], ["type_tax_use", "in", ["purchase", "none"]]],
        ["id", "name", "amount", "amount_type", "type_tax_use", "price_include", "description", "tax_group_id"],
        company_id=company_id,
        limit=2000,
        order="name asc",
    )
    return pick_vat_taxes(taxes)


def resolve_purchase_journal_id(odoo, company_id: int) -> int:
    journals = odoo.search_read(
        "account.journal",
        [["type", "=", "purchase"], ["company_id", "=", company_id]],
        ["id", "name", "code"],
        company_id=company_id,
        limit=20,
        order="id asc",
    )
    if not journals:
        return 0
    for j in journals:
        name = str(j.get("name") or "").lower()
        code = str(j.get("code") or "").lower()
        if "vendor bill" in name or "vendor invoice" in name or "bills" in name or code in ("bill", "vb"):
            return int(j["id"])
    not_receipt = next((j for j in journals if "receipt" not in str(j.get("name") or "").lower()), journals[0])
    return int(not_receipt["id"])


def resolve_ap_folder_id(odoo, company_id: int) -> int:
    """APフォルダ（Odoo 17+ は documents.document の is_folder、旧版は documents.folder）"""
    for name in AP_FOLDER_NAMES:
        rows = odoo.search_read(
            "documents.document",
            [["is_folder", "=", True], ["name", "=", name]],
            ["id", "name"],
            company_id=company_id,
            limit=1,
        )
        if rows:
            return int(rows[0]["id"])
    try:
        for name in AP_FOLDER_NAMES:
            rows = odoo.search_read(
                "documents.folder", [["name", "=", name]], ["id", "name"], company_id=company_id, limit=1
            )
            if rows:
                return int(rows[0]["id"])
    except OdooRPCError:
        # documents.folder が無いバージョン
        pass
    return 0


def resolve_industry(odoo, company_id: int) -> str:
    try:
        rows = odoo.search_read("res.company", [["id", "=", company_id]], ["id", "x_studio_industry"], limit=1)
    except OdooRPCError:
        # Studio のカスタム項目が無い
        return ""
    value = rows[0].get("x_studio_industry") if rows else ""
    if isinstance(value, (list, tuple)):
        value = value[1] if len(value) > 1 else value[0]
    return str(value or "").strip()


def _auto_signature(row: Dict) -> str:
    return "|".join(str(row.get(c) or "").strip() for c in (
        "vat_purchase_tax_id_goods", "vat_purchase_tax_id_services", "vat_purchase_tax_id_generic",
        "purchase_journal_id", "ap_folder_id", "industry",
    ))


def refresh_routing_auto_fields(headers: List[str], rows: List[Dict],
                                client_factory: Callable[[RoutingTarget], object] = OdooClient.from_target) -> Dict:
    """連携先ごとに自動取得項目を更新（1つの連携先の失敗は他に影響させない）"""
    ensure_auto_columns(headers, rows)
    groups = group_rows_by_target(rows)
    updated = 0
    for key, (target, group_rows) in groups.items():
        try:
            odoo = client_factory(target)
            vat_ids = pick_vat_taxes_for_company(odoo, target.company_id)
            journal_id = resolve_purchase_journal_id(odoo, target.company_id)
            folder_id = resolve_ap_folder_id(odoo, target.company_id)
            industry = resolve_industry(odoo, target.company_id)
        except Exception as e:
            print(f"⚠️ 自動取得項目の更新に失敗: {key}: {e}")
            continue

        for row in group_rows:
            before = _auto_signature(row)
            row["vat_purchase_tax_id_goods"] = str(vat_ids["goods"] or "")
            row["vat_purchase_tax_id_services"] = str(vat_ids["services"] or "")
            row["vat_purchase_tax_id_generic"] = str(vat_ids["generic"] or "")
            if journal_id:
                row["purchase_journal_id"] = str(journal_id)
            if folder_id:
                row["ap_folder_id"] = str(folder_id)
            if industry:
                row["industry"] = industry
            if _auto_signature(row) != before:
                updated += 1
    return {"updated": updated, "group_count": len(groups)}

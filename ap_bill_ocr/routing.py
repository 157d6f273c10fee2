"""
連携先（ルーティング）設定とカテゴリ→勘定科目の対応表
どちらもCSVで管理する。ルーティングCSVには自動取得した列（税ID・仕訳帳・フォルダ・業種）を書き戻す
"""

import csv
import os
from typing import Dict, List, Optional, Tuple

from .odoo_client import normalize_base_url
from .ocr_models import RoutingTarget


AUTO_COLUMNS = [
    "vat_purchase_tax_id_goods",
    "vat_purchase_tax_id_services",
    "vat_purchase_tax_id_generic",
    "purchase_journal_id",
    "ap_folder_id",
    "industry",
]


def _to_int(value) -> int:
    try:
        return int(float(str(value or "").strip() or 0))
    except ValueError:
        return 0


def is_enabled(row: Dict) -> bool:
    return str(row.get("enabled") or "").strip().lower() in ("true", "1", "yes", "y")


def load_routing_csv(path: str) -> Tuple[List[str], List[Dict]]:
    """ルーティングCSVを読み込む（ヘッダーは小文字に正規化）"""
    if not os.path.exists(path):
        print(f"⚠️ ルーティングCSVが見つかりません: {path}")
        return [], []
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        headers = [str(h or "").strip().lower() for h in reader.fieldnames or []]
        rows = []
        for raw in reader:
            rows.append({str(k or "").strip().lower(): (v or "").strip() for k, v in raw.items() if k})
    return headers, rows


def save_routing_csv(path: str, headers: List[str], rows: List[Dict]):
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=headers, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({h: row.get(h, "") for h in headers})


def ensure_auto_columns(headers: List[str], rows: List[Dict]) -> bool:
    """自動取得列が無ければ追加（追加したらTrue）"""
    changed = False
    for column in AUTO_COLUMNS:
        if column not in headers:
            headers.append(column)
            changed = True
    if changed:
        for row in rows:
            for column in AUTO_COLUMNS:
                row.setdefault(column, "")
    return changed


def to_routing_target(row: Dict) -> Optional[RoutingTarget]:
    """有効で必須項目が揃った行だけを RoutingTarget にする（それ以外は None）"""
    if not is_enabled(row):
        return None
    base_url = normalize_base_url(row.get("target_base_url"))
    db = str(row.get("target_db") or "").strip()
    login = str(row.get("target_login") or "").strip()
    password = str(row.get("target_password") or "").strip()
    company_id = _to_int(row.get("target_company_id"))
    if not (base_url and db and login and password and company_id):
        return None
    return RoutingTarget(
        base_url=base_url,
        db=db,
        login=login,
        password=password,
        company_id=company_id,
        vat_ids={
            "goods": _to_int(row.get("vat_purchase_tax_id_goods")),
            "services": _to_int(row.get("vat_purchase_tax_id_services")),
            "generic": _to_int(row.get("vat_purchase_tax_id_generic")),
        },
        purchase_journal_id=_to_int(row.get("purchase_journal_id")),
        ap_folder_id=_to_int(row.get("ap_folder_id")),
        industry=str(row.get("industry") or "").strip(),
    )


def group_targets(rows: List[Dict]) -> List[RoutingTarget]:
    """同じ連携先（target_key）の行を1つにまとめる（先勝ち・出現順）"""
    targets: Dict[str, RoutingTarget] = {}
    for row in rows:
        target = to_routing_target(row)
        if target and target.target_key not in targets:
            targets[target.target_key] = target
    return list(targets.values())


def group_rows_by_target(rows: List[Dict]) -> Dict[str, Tuple[RoutingTarget, List[Dict]]]:
    """自動取得列の書き戻し用に、連携先ごとの元の行をまとめる"""
    groups: Dict[str, Tuple[RoutingTarget, List[Dict]]] = {}
    for row in rows:
        target = to_routing_target(row)
        if not target:
            continue
        if target.target_key not in groups:
            groups[target.target_key] = (target, [])
        groups[target.target_key][1].append(row)
    return groups


def load_account_mapping(path: str) -> List[Dict]:
    """カテゴリ→勘定科目の対応表（列: category, company_id, target_db, account_id）"""
    if not path or not os.path.exists(path):
        return []
    mapping = []
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        for raw in csv.DictReader(f):
            row = {str(k or "").strip().lower(): (v or "").strip() for k, v in raw.items() if k}
            category = row.get("category", "").lower()
            account_id = _to_int(row.get("account_id"))
            if not category or not account_id:
                continue
            mapping.append({
                "category": category,
                "company_id": _to_int(row.get("company_id")),
                "target_db": row.get("target_db", "").lower(),
                "account_id": account_id,
            })
    return mapping

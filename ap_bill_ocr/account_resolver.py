"""
勘定科目の解決カスケード
明細ごとに、固定順の戦略（ティア）を順に試し、最初に汎用でない科目を返した戦略を採用する。
結果は (account_id, source) で、source にはどのティアで決まったかを残す（監査用）。
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from rapidfuzz.distance import JaroWinkler

from .errors import OdooRPCError
from .ocr_models import (
    Account,
    AccountAssignments,
    AccountPick,
    ExtractedBill,
    ResolvedAccount,
    m2o_id,
)


GENERIC_ACCOUNT_WORDS = {
    "expense", "expenses", "admin", "administrative", "general", "miscellaneous",
    "other", "misc", "sundry", "various",
}

CATEGORY_KEYWORDS = {
    "fuel": ["fuel", "gas", "oil", "lpg", "diesel", "petroleum", "gasoline", "petrol"],
    "office_supplies": ["office", "supplies", "stationery", "paper", "toner", "ink"],
    "meals": ["meals", "food", "representation", "entertainment", "catering"],
    "repairs": ["repairs", "maintenance", "repair"],
    "rent": ["rent", "rental", "lease"],
    "professional_fees": ["professional", "fees", "consulting", "legal", "audit", "advisory"],
    "freight": ["freight", "shipping", "delivery", "transport", "logistics", "courier"],
    "utilities": ["utilities", "electricity", "water", "power", "telephone", "internet", "communication", "telecom"],
    "inventory": ["inventory", "cost of goods", "cogs", "merchandise", "stock", "cost of sales"],
}

# 仕入先名に含まれる語 → 科目名の検索語（上から順に評価）
VENDOR_NAME_ACCOUNT_KEYWORDS = {
    "fabric": ["supplies", "raw materials", "inventory", "cost of sales", "cost of goods"],
    "textile": ["supplies", "raw materials", "inventory", "cost of sales"],
    "cloth": ["supplies", "raw materials", "inventory"],
    "hardware": ["supplies", "repairs", "maintenance", "hardware"],
    "lumber": ["raw materials", "supplies", "cost of sales", "construction"],
    "gas": ["fuel", "oil", "gas", "transportation"],
    "fuel": ["fuel", "oil", "gas", "transportation"],
    "petroleum": ["fuel", "oil", "gas", "petroleum"],
    "food": ["meals", "food", "representation", "entertainment"],
    "catering": ["meals", "food", "representation", "catering"],
    "restaurant": ["meals", "food", "representation"],
    "electrical": ["supplies", "electrical", "utilities"],
    "plumbing": ["supplies", "plumbing", "repairs"],
    "printing": ["printing", "supplies", "office"],
    "stationery": ["office supplies", "stationery"],
    "pharmacy": ["medical", "supplies", "medicine"],
    "auto": ["repairs", "maintenance", "transportation"],
    "tire": ["repairs", "maintenance", "transportation"],
    "cement": ["raw materials", "construction", "supplies"],
    "steel": ["raw materials", "construction", "supplies"],
    "paint": ["supplies", "paint", "maintenance"],
    "chemical": ["supplies", "chemicals", "raw materials"],
    "laundry": ["laundry", "supplies", "services"],
    "cleaning": ["janitorial", "cleaning", "supplies"],
}

EXPENSE_ACCOUNT_TYPES = ["expense", "expense_direct_cost", "expense_depreciation", "asset_current"]
WORD_SPLIT_RE = re.compile(r"[\s&,/_\-()]+")
NAME_SIMILARITY_MIN = 0.92
FUZZY_MIN_SCORE = 4
GENERIC_SCORE_PENALTY = 0.4


def _words(text: str) -> List[str]:
    return [w for w in WORD_SPLIT_RE.split(str(text or "").lower()) if len(w) > 2]


def is_generic_account(account: Optional[Account]) -> bool:
    """科目名の単語（3文字以上）の過半数が汎用語なら汎用科目"""
    if not account:
        return False
    words = _words(account.name)
    generic = [w for w in words if w in GENERIC_ACCOUNT_WORDS]
    return len(generic) / (len(words) or 1) > 0.5


def lookup_account_mapping(mapping: List[Dict], company_id: int, category: str, target_db: str = "") -> int:
    """カテゴリ→科目の対応表を具体的な順に引く: (DB+会社+カテゴリ) > (会社+カテゴリ) > (カテゴリのみ)"""
    cat = str(category or "").strip().lower()
    if not cat:
        return 0
    db = str(target_db or "").strip().lower()
    rows = [m for m in mapping if m.get("category") == cat]
    for row in rows:
        if row.get("company_id") == company_id and db and row.get("target_db") == db:
            return int(row["account_id"])
    for row in rows:
        if row.get("company_id") == company_id and not row.get("target_db"):
            return int(row["account_id"])
    for row in rows:
        if not row.get("company_id") and not row.get("target_db"):
            return int(row["account_id"])
    return 0


class RunCache:
    """1回の実行の間だけ有効な参照キャッシュ（実行ごとに新しく作る）"""

    def __init__(self, mapping_loader: Optional[Callable[[], List[Dict]]] = None):
        self._mapping_loader = mapping_loader
        self._accounts: Dict[int, List[Account]] = {}
        self._vendor_defaults: Dict[tuple, int] = {}
        self._mapping: Optional[List[Dict]] = None

    def expense_accounts(self, odoo, company_id: int) -> List[Account]:
        if company_id in self._accounts:
            return self._accounts[company_id]
        try:
            rows = odoo.search_read(
                "account.account",
                [
                    ["company_id", "=", company_id],
                    ["account_type", "in", EXPENSE_ACCOUNT_TYPES],
                    ["deprecated", "=", False],
                ],
                ["id", "code", "name"],
                company_id=company_id,
                limit=500,
                order="code asc",
            )
        except OdooRPCError:
            # account_type が無い旧バージョン
            rows = odoo.search_read(
                "account.account",
                [
                    ["company_id", "=", company_id],
                    ["internal_type", "=", "other"],
                    ["deprecated", "=", False],
                    ["code", "like", "6%"],
                ],
                ["id", "code", "name"],
                company_id=company_id,
                limit=500,
                order="code asc",
            )
        accounts = [Account(id=int(r["id"]), code=str(r.get("code") or ""), name=str(r.get("name") or "")) for r in rows]
        self._accounts[company_id] = accounts
        return accounts

    def vendor_default_account(self, odoo, company_id: int, vendor_id: int) -> int:
        if not vendor_id:
            return 0
        key = (company_id, vendor_id)
        if key in self._vendor_defaults:
            return self._vendor_defaults[key]
        try:
            rows = odoo.search_read(
                "res.partner",
                [["id", "=", vendor_id]],
                ["id", "property_account_expense_id"],
                company_id=company_id,
                limit=1,
            )
            account_id = m2o_id(rows[0].get("property_account_expense_id")) if rows else 0
        except OdooRPCError as e:
            print(f"  ⚠️ 仕入先の既定科目を取得できません (partner #{vendor_id}): {e}")
            account_id = 0
        self._vendor_defaults[key] = account_id
        return account_id

    def account_mapping(self) -> List[Dict]:
        if self._mapping is None:
            self._mapping = list(self._mapping_loader()) if self._mapping_loader else []
        return self._mapping


@dataclass
class CascadeInputs:
    """カスケード1回分の入力（外部参照は解決済み）"""
    accounts: List[Account]
    company_id: int = 0
    target_db: str = ""
    vendor_name: str = ""
    vendor_default_id: int = 0
    category: str = ""
    suggested_name: str = ""
    line_description: str = ""
    pick: Optional[AccountPick] = None
    mapping: List[Dict] = field(default_factory=list)
    default_account_id: int = 0

    def account(self, account_id: int) -> Optional[Account]:
        return next((a for a in self.accounts if a.id == account_id), None)


def match_pick(pick: Optional[AccountPick], accounts: List[Account]) -> int:
    """提案された科目を実在の科目表に照合（ID → コード → 名前一致 → 部分一致 → 類似度）"""
    if not pick or not accounts:
        return 0
    if pick.account_id and any(a.id == pick.account_id for a in accounts):
        return pick.account_id
    code = pick.account_code.strip()
    if code:
        by_code = next((a for a in accounts if a.code == code), None)
        if by_code:
            return by_code.id
    name = pick.account_name.strip().lower()
    if not name:
        return 0
    exact = next((a for a in accounts if a.name.lower() == name), None)
    if exact:
        return exact.id
    partial = next((a for a in accounts if a.name.lower() in name or name in a.name.lower()), None)
    if partial:
        return partial.id
    best_id, best_sim = 0, 0.0
    for a in accounts:
        sim = JaroWinkler.normalized_similarity(name, a.name.lower())
        if sim > best_sim:
            best_id, best_sim = a.id, sim
    return best_id if best_sim >= NAME_SIMILARITY_MIN else 0


def _vendor_default(inp: CascadeInputs) -> Optional[ResolvedAccount]:
    account = inp.account(inp.vendor_default_id) if inp.vendor_default_id else None
    if account and not is_generic_account(account):
        return ResolvedAccount(account.id, "vendor_default")
    return None


def _model_pick(inp: CascadeInputs) -> Optional[ResolvedAccount]:
    if not inp.pick:
        return None
    primary = match_pick(inp.pick, inp.accounts)
    if primary and not is_generic_account(inp.account(primary)):
        return ResolvedAccount(primary, "model")
    for alt in inp.pick.alternatives:
        alt_id = match_pick(alt, inp.accounts)
        if alt_id and not is_generic_account(inp.account(alt_id)):
            return ResolvedAccount(alt_id, "model_alt")
    return None


def _vendor_name_hint(inp: CascadeInputs) -> Optional[ResolvedAccount]:
    vendor_name = inp.vendor_name.lower()
    if not vendor_name:
        return None
    for keyword, terms in VENDOR_NAME_ACCOUNT_KEYWORDS.items():
        if keyword not in vendor_name:
            continue
        for term in terms:
            match = next((a for a in inp.accounts if term in a.name.lower() and not is_generic_account(a)), None)
            if match:
                return ResolvedAccount(match.id, "vendor_name_hint")
    return None


def _category_mapping(inp: CascadeInputs) -> Optional[ResolvedAccount]:
    mapped = lookup_account_mapping(inp.mapping, inp.company_id, inp.category, inp.target_db)
    if not mapped:
        return None
    # 科目表に無いIDは（種別違い等で）そのまま採用、汎用と分かる場合のみ除外
    if is_generic_account(inp.account(mapped)):
        return None
    return ResolvedAccount(mapped, "category_mapping")


def _fuzzy_match(inp: CascadeInputs) -> Optional[ResolvedAccount]:
    tokens = _words(inp.suggested_name or inp.line_description or inp.category)
    if not tokens:
        return None
    all_tokens = list(dict.fromkeys(tokens + CATEGORY_KEYWORDS.get(inp.category.lower(), [])))

    best, best_key = None, (0, 0)
    for account in inp.accounts:
        haystack = f"{account.code} {account.name}".lower()
        score, specific_hits = 0, 0
        for t in all_tokens:
            if t in haystack:
                if t in GENERIC_ACCOUNT_WORDS:
                    score += 1
                else:
                    score += len(t)
                    specific_hits += 1
        if is_generic_account(account):
            score = int(score * GENERIC_SCORE_PENALTY)
        if (score, specific_hits) > best_key:
            best, best_key = account, (score, specific_hits)

    if best and best_key[0] >= FUZZY_MIN_SCORE and not is_generic_account(best):
        return ResolvedAccount(best.id, "fuzzy_match")
    return None


def _model_last_resort(inp: CascadeInputs) -> Optional[ResolvedAccount]:
    if not inp.pick:
        return None
    primary = match_pick(inp.pick, inp.accounts)
    if primary:
        return ResolvedAccount(primary, "model_last_resort")
    for alt in inp.pick.alternatives:
        alt_id = match_pick(alt, inp.accounts)
        if alt_id:
            return ResolvedAccount(alt_id, "model_last_resort")
    return None


def _keyword_last_resort(inp: CascadeInputs) -> Optional[ResolvedAccount]:
    if not inp.accounts:
        return None
    words = _words(" ".join(filter(None, [inp.suggested_name, inp.line_description, inp.category, inp.vendor_name])))
    non_generic = [a for a in inp.accounts if not is_generic_account(a)]
    if not non_generic:
        return ResolvedAccount(inp.accounts[0].id, "first_available")
    best_id, best_hits = 0, 0
    for account in non_generic:
        haystack = f"{account.code} {account.name}".lower()
        hits = sum(1 for w in words if w in haystack)
        if hits > best_hits:
            best_id, best_hits = account.id, hits
    if best_id:
        return ResolvedAccount(best_id, "keyword_last_resort")
    return ResolvedAccount(non_generic[0].id, "first_non_generic")


def _configured_default(inp: CascadeInputs) -> Optional[ResolvedAccount]:
    if inp.default_account_id > 0:
        return ResolvedAccount(inp.default_account_id, "configured_default")
    return None


CASCADE: List[Callable[[CascadeInputs], Optional[ResolvedAccount]]] = [
    _vendor_default,
    _model_pick,
    _vendor_name_hint,
    _category_mapping,
    _fuzzy_match,
    _model_last_resort,
    _keyword_last_resort,
    _configured_default,
]


def run_cascade(inp: CascadeInputs) -> ResolvedAccount:
    for tier in CASCADE:
        resolved = tier(inp)
        if resolved and resolved.account_id:
            return resolved
    return ResolvedAccount(0, "none")


def resolve_line_accounts(
    odoo,
    cache: RunCache,
    bill: ExtractedBill,
    assignments: Optional[AccountAssignments],
    company_id: int,
    vendor_id: int,
    vendor_name: str,
    use_lines: bool,
    target_db: str = "",
    default_account_id: int = 0,
) -> List[ResolvedAccount]:
    """請求書の各明細（明細を使わない場合は1行）の勘定科目を解決"""
    accounts = cache.expense_accounts(odoo, company_id)
    vendor_default_id = cache.vendor_default_account(odoo, company_id, vendor_id)
    mapping = cache.account_mapping()
    hint = bill.expense_account_hint
    hint_vendor = bill.vendor_details.trade_name or bill.vendor.name or vendor_name

    results = []
    line_count = len(bill.line_items) if use_lines else 1
    for i in range(line_count):
        item = bill.line_items[i] if use_lines else None
        description = item.description if item else ""
        inp = CascadeInputs(
            accounts=accounts,
            company_id=company_id,
            target_db=target_db,
            vendor_name=hint_vendor,
            vendor_default_id=vendor_default_id,
            category=(item.expense_category if item else "") or hint.category or "other",
            suggested_name=hint.suggested_account_name or description,
            line_description=description,
            pick=assignments.pick_for_line(i) if assignments else None,
            mapping=mapping,
            default_account_id=default_account_id,
        )
        results.append(run_cascade(inp))
    return results

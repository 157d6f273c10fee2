"""
金額補正エンジン
抽出サービスの総額（grand_total）を、明細合計・金額候補・OCR生テキストの数値と突き合わせ、
「読み違い」とみなせる比率帯に入った場合だけ補正する。

ルールは (名前, 判定関数) の順序付きリストで、最初に発動した1つだけを適用する。
どのルールも比率1付近では発動しないため、補正済みの請求書に再適用しても変化しない。
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .config_loader import load_policy_config
from .ocr_models import AmountCandidate, ExtractedBill


TOTAL_LABEL_RE = re.compile(r"total|grand|due|payable|amount\s*to\s*pay", re.IGNORECASE)
NON_TOTAL_LABEL_RE = re.compile(
    r"line|item|vat|tax|exempt|zero|sub\s*-?\s*total|discount|cash|tender|change|qty|unit",
    re.IGNORECASE,
)
NUMBER_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")
# 識別番号・日付・受領額が載る行の数値は金額として扱わない
IDENTIFIER_LINE_RE = re.compile(
    r"#|\b(?:tin|tel|phone|mobile|fax|permit|atp|bir|ptu|serial|s/n|acct|date|no\.?|cash|tendered|change)\b",
    re.IGNORECASE,
)


@dataclass
class Correction:
    rule: str
    old_total: float
    new_total: float


@dataclass
class Signals:
    """ルール判定に使う入力（請求書から一度だけ計算する）"""
    grand_total: float
    line_sum: float
    line_count: int
    tax_total: float
    vatable_base: float
    vat_inclusive: bool
    total_candidates: List[AmountCandidate]
    ocr_amounts: List[float]


def is_total_like(label: str) -> bool:
    label = str(label or "")
    return bool(TOTAL_LABEL_RE.search(label)) and not NON_TOTAL_LABEL_RE.search(label)


def total_like_candidates(bill: ExtractedBill) -> List[AmountCandidate]:
    cands = [c for c in bill.amount_candidates if c.amount > 0 and is_total_like(c.label)]
    return sorted(cands, key=lambda c: (-c.confidence, -c.amount))


def extract_ocr_amounts(ocr_text: str, policy: Optional[Dict] = None) -> List[float]:
    """OCR生テキストから金額らしい数値（min_ocr_token以上）を取り出す"""
    policy = policy or load_policy_config()
    lo_year, hi_year = policy["year_range"]
    amounts = []
    for line in str(ocr_text or "").splitlines():
        if IDENTIFIER_LINE_RE.search(line):
            continue
        for token in NUMBER_RE.findall(line):
            try:
                value = float(token.replace(",", ""))
            except ValueError:
                continue
            # 区切りも小数点もない年号はスキップ
            if "," not in token and "." not in token and lo_year <= value <= hi_year:
                continue
            if value >= policy["min_ocr_token"]:
                amounts.append(value)
    return amounts


def build_signals(bill: ExtractedBill, ocr_text: str = "", policy: Optional[Dict] = None) -> Signals:
    policy = policy or load_policy_config()
    totals = bill.totals
    return Signals(
        grand_total=totals.grand_total,
        line_sum=bill.line_sum(),
        line_count=len(bill.line_items),
        tax_total=totals.tax_total or bill.vat.vat_amount,
        vatable_base=bill.vat.vatable_base,
        vat_inclusive=totals.amounts_are_vat_inclusive,
        total_candidates=total_like_candidates(bill),
        ocr_amounts=extract_ocr_amounts(ocr_text, policy),
    )


def _in_band(ratio: float, band) -> bool:
    lo, hi = band
    return lo <= ratio <= hi


def _close(a: float, b: float, tol: float) -> bool:
    return b > 0 and abs(a - b) / b <= tol


def _candidate_agrees(s: Signals, value: float, tol: float) -> bool:
    return any(_close(c.amount, value, tol) for c in s.total_candidates)


def _lines_corroborate(s: Signals, policy: Dict) -> bool:
    """明細合計が総額を裏付けているか（税抜明細 + VAT の差も許容）"""
    if s.line_sum <= 0 or s.grand_total <= 0:
        return False
    ratio = s.grand_total / s.line_sum
    tol = policy["tolerance"]
    return 1 - tol <= ratio <= 1 + policy["vat_rate"] / 100 + tol


def _year_confusion(s: Signals, policy: Dict) -> Optional[float]:
    g = s.grand_total
    lo, hi = policy["year_range"]
    tol = policy["tolerance"]
    if not (float(g).is_integer() and lo <= g <= hi):
        return None
    if _candidate_agrees(s, g, tol) or _close(s.line_sum, g, tol):
        return None
    if s.line_sum > 0:
        return s.line_sum
    if s.total_candidates:
        return s.total_candidates[0].amount
    return None


def _truncated_total(s: Signals, policy: Dict) -> Optional[float]:
    if not s.line_count or s.line_sum < policy["min_line_sum"]:
        return None
    if s.grand_total <= 0:
        return s.line_sum
    if _in_band(s.line_sum / s.grand_total, policy["bands"]["wide"]):
        return s.line_sum
    return None


def _inflated_total(s: Signals, policy: Dict) -> Optional[float]:
    if not s.line_count or s.line_sum < policy["min_line_sum"] or s.grand_total <= 0:
        return None
    if not _in_band(s.grand_total / s.line_sum, policy["bands"]["narrow"]):
        return None
    tol = policy["tolerance"]
    upper = s.line_sum * (1 + policy["vat_rate"] / 100 + tol)
    near = [c for c in s.total_candidates if s.line_sum * (1 - tol) <= c.amount <= upper]
    if near:
        return min(near, key=lambda c: (abs(c.amount - s.line_sum), -c.confidence)).amount
    return s.line_sum


def _candidate_cross_check(s: Signals, policy: Dict) -> Optional[float]:
    g = s.grand_total
    if g <= 0 or not s.total_candidates:
        return None
    # 総額と一致する候補があれば補正しない
    if _candidate_agrees(s, g, policy["tolerance"]):
        return None
    for c in s.total_candidates:
        if _in_band(c.amount / g, policy["bands"]["wide"]):
            return c.amount
        if _in_band(g / c.amount, policy["bands"]["narrow"]):
            return c.amount
    return None


def _ocr_cross_check(s: Signals, policy: Dict) -> Optional[float]:
    g = s.grand_total
    if g <= 0 or not s.ocr_amounts:
        return None
    if _candidate_agrees(s, g, policy["tolerance"]):
        return None
    ocr_max = max(s.ocr_amounts)
    if _in_band(ocr_max / g, policy["bands"]["wide"]):
        return ocr_max
    if _in_band(g / ocr_max, policy["bands"]["narrow"]):
        return ocr_max
    return None


def _rebuild_from_tax(s: Signals, policy: Dict, tax: float) -> Optional[float]:
    """税額を総額と取り違えた場合の総額再構成: 課税標準+税 → 総額候補 → 明細合計 → 税額から逆算"""
    g = s.grand_total
    min_ratio = policy["bands"]["wide"][0]
    max_tax_ratio = policy["impossible_tax_ratio"]
    rate = policy["vat_rate"] / 100

    if s.vatable_base > tax:
        return round(s.vatable_base + tax, 2)

    for c in s.total_candidates:
        if c.amount >= g * min_ratio and tax / c.amount <= max_tax_ratio:
            return c.amount

    if s.line_sum >= g * min_ratio:
        line_total = s.line_sum if s.vat_inclusive else s.line_sum + tax
        if tax / line_total <= max_tax_ratio:
            return round(line_total, 2)

    if rate > 0:
        return round(tax / rate * (1 + rate), 2)
    return None


def _vat_component_confusion(s: Signals, policy: Dict) -> Optional[float]:
    tax = s.tax_total
    if tax <= 0 or s.grand_total <= 0:
        return None
    if abs(s.grand_total - tax) / tax > policy["vat_confusion"]:
        return None
    return _rebuild_from_tax(s, policy, tax)


def _impossible_tax(s: Signals, policy: Dict) -> Optional[float]:
    tax = s.tax_total
    if tax <= 0 or s.grand_total <= 0:
        return None
    if tax <= s.grand_total * policy["impossible_tax_ratio"]:
        return None
    return _rebuild_from_tax(s, policy, tax)


def _decimal_misread(s: Signals, policy: Dict) -> Optional[float]:
    g = s.grand_total
    tol = policy["tolerance"]
    if g <= 0:
        return None
    corroborated = _candidate_agrees(s, g, tol)
    for divisor in policy["decimal_divisors"]:
        value = round(g / float(divisor), 2)
        if s.line_sum > 0 and _close(value, s.line_sum, tol):
            return value
        if not corroborated and _candidate_agrees(s, value, tol):
            return value
    return None


RULES: List[Tuple[str, Callable[[Signals, Dict], Optional[float]]]] = [
    ("year_confusion", _year_confusion),
    ("truncated_total", _truncated_total),
    ("inflated_total", _inflated_total),
    ("candidate_cross_check", _candidate_cross_check),
    ("ocr_cross_check", _ocr_cross_check),
    ("vat_component_confusion", _vat_component_confusion),
    ("impossible_tax", _impossible_tax),
    ("decimal_misread", _decimal_misread),
]


def find_correction(bill: ExtractedBill, ocr_text: str = "", policy: Optional[Dict] = None) -> Optional[Correction]:
    """補正内容だけを判定する（請求書は変更しない）"""
    policy = policy or load_policy_config()
    s = build_signals(bill, ocr_text, policy)
    if _lines_corroborate(s, policy):
        return None
    for name, rule in RULES:
        new_total = rule(s, policy)
        if new_total is None or new_total <= 0 or abs(new_total - s.grand_total) < 0.01:
            continue
        return Correction(rule=name, old_total=s.grand_total, new_total=round(new_total, 2))
    return None


def _fix_net_total(bill: ExtractedBill, new_total: float, policy: Dict):
    totals = bill.totals
    tol = policy["tolerance"]
    rate = policy["vat_rate"] / 100
    if totals.net_total > 0:
        ratio = totals.net_total / new_total
        if 1 / (1 + rate) - tol <= ratio <= 1 + tol:
            return
    tax = totals.tax_total or bill.vat.vat_amount
    if 0 < tax <= new_total * policy["impossible_tax_ratio"]:
        totals.net_total = round(new_total - tax, 2)
    elif bill.vat.classification == "vatable":
        totals.net_total = round(new_total / (1 + rate), 2)
    else:
        totals.net_total = new_total


def _rescale_single_line(bill: ExtractedBill, old_total: float, new_total: float):
    if len(bill.line_items) != 1:
        return
    li = bill.line_items[0]
    qty = li.quantity or 1.0
    if li.amount <= 0 or old_total <= 0:
        li.amount = new_total
        li.unit_price = round(new_total / qty, 2)
        return
    share_old = li.amount / old_total
    share_new = li.amount / new_total
    if abs(share_new - 1) > 0.5 and abs(share_old - 1) < abs(share_new - 1):
        li.amount = round(li.amount * new_total / old_total, 2)
        li.unit_price = round(li.amount / qty, 2)


def reconcile_amounts(
    bill: ExtractedBill,
    ocr_text: str = "",
    log: Optional[Callable[[str], None]] = None,
    policy: Optional[Dict] = None,
) -> Optional[Correction]:
    """抽出結果の総額を検証し、必要なら補正する（請求書をその場で更新）

    Returns:
        Correction: 補正した場合のルール名と新旧総額。補正なしは None
    """
    policy = policy or load_policy_config()
    correction = find_correction(bill, ocr_text, policy)
    if not correction:
        return None

    totals = bill.totals
    totals.grand_total = correction.new_total
    totals.grand_total_confidence = min(totals.grand_total_confidence or 0.5, policy["confidence_cap"])
    totals.correction_rule = correction.rule
    _fix_net_total(bill, correction.new_total, policy)
    _rescale_single_line(bill, correction.old_total, correction.new_total)

    if log:
        log(
            f"  🔧 金額補正 [{correction.rule}]: "
            f"{correction.old_total:,.2f} → {correction.new_total:,.2f} (信頼度 {totals.grand_total_confidence:.2f})"
        )
    return correction

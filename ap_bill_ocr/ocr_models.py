from dataclasses import dataclass, field
from typing import Dict, List, Optional


VAT_CLASSIFICATIONS = ("vatable", "exempt", "zero_rated", "unknown")
LINE_VAT_CODES = ("vatable", "exempt", "zero_rated", "no_vat")
GOODS_OR_SERVICES = ("goods", "services", "unknown")
ENTITY_TYPES = ("corporation", "sole_proprietor", "individual", "unknown")


def to_amount(value, default: float = 0.0) -> float:
    """金額を非負のfloatに正規化（"1,234.50" のような文字列も許容）"""
    if value is None or isinstance(value, bool):
        return default
    try:
        num = float(str(value).replace(",", "").strip())
    except ValueError:
        return default
    if num != num or num in (float("inf"), float("-inf")):
        return default
    return abs(num)


def to_confidence(value, default: float = 0.0) -> float:
    num = to_amount(value, default)
    return max(0.0, min(1.0, num))


def to_text(value, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip()


def to_choice(value, allowed, default: str = "unknown") -> str:
    s = to_text(value).lower().replace("-", "_").replace(" ", "_")
    return s if s in allowed else default


def to_flag(value) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in ("true", "1", "yes", "y"):
        return True
    if s in ("false", "0", "no", "n"):
        return False
    return None


def m2o_id(value) -> int:
    """many2one値（[id, name] / id / False）からIDを取り出す"""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class VendorCandidate:
    name: str
    confidence: float = 0.0
    source: str = "unknown"  # header|body|atp_printer_box|unknown

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "VendorCandidate":
        data = data or {}
        return cls(
            name=to_text(data.get("name")),
            confidence=to_confidence(data.get("confidence")),
            source=to_text(data.get("source"), "unknown") or "unknown",
        )


@dataclass
class VendorDetails:
    tin: str = ""
    branch_code: str = ""
    address: str = ""
    entity_type: str = "unknown"
    trade_name: str = ""
    proprietor_name: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "VendorDetails":
        data = data or {}
        return cls(
            tin=to_text(data.get("tin")),
            branch_code=to_text(data.get("branch_code")),
            address=to_text(data.get("address")),
            entity_type=to_choice(data.get("entity_type"), ENTITY_TYPES),
            trade_name=to_text(data.get("trade_name")),
            proprietor_name=to_text(data.get("proprietor_name")),
        )


@dataclass
class InvoiceInfo:
    number: str = ""
    date: str = ""
    currency: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "InvoiceInfo":
        data = data or {}
        return cls(
            number=to_text(data.get("number")),
            date=to_text(data.get("date"))[:10],
            currency=to_text(data.get("currency")).upper(),
        )


@dataclass
class VatInfo:
    classification: str = "unknown"
    goods_or_services: str = "unknown"
    vatable_base: float = 0.0
    vat_amount: float = 0.0
    exempt_amount: float = 0.0
    zero_rated_amount: float = 0.0

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "VatInfo":
        data = data or {}
        return cls(
            classification=to_choice(data.get("classification"), VAT_CLASSIFICATIONS),
            goods_or_services=to_choice(data.get("goods_or_services"), GOODS_OR_SERVICES),
            vatable_base=to_amount(data.get("vatable_base")),
            vat_amount=to_amount(data.get("vat_amount")),
            exempt_amount=to_amount(data.get("exempt_amount")),
            zero_rated_amount=to_amount(data.get("zero_rated_amount")),
        )


@dataclass
class AmountCandidate:
    label: str
    amount: float
    confidence: float = 0.0
    snippet: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "AmountCandidate":
        data = data or {}
        return cls(
            label=to_text(data.get("label")),
            amount=to_amount(data.get("amount")),
            confidence=to_confidence(data.get("confidence")),
            snippet=to_text(data.get("snippet")),
        )


@dataclass
class LineItem:
    description: str = ""
    quantity: float = 1.0
    unit_price: float = 0.0
    amount: float = 0.0
    vat_code: str = ""  # 空 = 明細別の区分なし（請求書単位の判定に従う）
    expense_category: str = ""
    unit_price_includes_vat: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "LineItem":
        data = data or {}
        qty = to_amount(data.get("quantity"), 1.0) or 1.0
        unit_price = to_amount(data.get("unit_price"))
        amount = to_amount(data.get("amount"))
        if not amount and unit_price:
            amount = round(unit_price * qty, 2)
        return cls(
            description=to_text(data.get("description")),
            quantity=qty,
            unit_price=unit_price,
            amount=amount,
            vat_code=to_choice(data.get("vat_code"), LINE_VAT_CODES, default=""),
            expense_category=to_text(data.get("expense_category")).lower(),
            unit_price_includes_vat=to_flag(data.get("unit_price_includes_vat")),
        )


@dataclass
class Totals:
    grand_total: float = 0.0
    grand_total_confidence: float = 0.0
    net_total: float = 0.0
    tax_total: float = 0.0
    amounts_are_vat_inclusive: bool = False
    vat_exempt_amount: float = 0.0
    zero_rated_amount: float = 0.0
    correction_rule: str = ""  # 金額補正が発動した場合のルール名

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "Totals":
        data = data or {}
        return cls(
            grand_total=to_amount(data.get("grand_total")),
            grand_total_confidence=to_confidence(data.get("grand_total_confidence")),
            net_total=to_amount(data.get("net_total")),
            tax_total=to_amount(data.get("tax_total")),
            amounts_are_vat_inclusive=bool(to_flag(data.get("amounts_are_vat_inclusive"))),
            vat_exempt_amount=to_amount(data.get("vat_exempt_amount")),
            zero_rated_amount=to_amount(data.get("zero_rated_amount")),
        )


@dataclass
class ExpenseAccountHint:
    category: str = "other"
    suggested_account_name: str = ""
    confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ExpenseAccountHint":
        data = data or {}
        return cls(
            category=to_text(data.get("category"), "other").lower() or "other",
            suggested_account_name=to_text(data.get("suggested_account_name")),
            confidence=to_confidence(data.get("confidence")),
        )


@dataclass
class ExtractedBill:
    """抽出サービスが返す請求書（信頼できない入力として扱う）"""
    vendor: VendorCandidate = field(default_factory=lambda: VendorCandidate(""))
    vendor_candidates: List[VendorCandidate] = field(default_factory=list)
    vendor_details: VendorDetails = field(default_factory=VendorDetails)
    invoice: InvoiceInfo = field(default_factory=InvoiceInfo)
    vat: VatInfo = field(default_factory=VatInfo)
    totals: Totals = field(default_factory=Totals)
    amount_candidates: List[AmountCandidate] = field(default_factory=list)
    line_items: List[LineItem] = field(default_factory=list)
    expense_account_hint: ExpenseAccountHint = field(default_factory=ExpenseAccountHint)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ExtractedBill":
        data = data if isinstance(data, dict) else {}
        return cls(
            vendor=VendorCandidate.from_dict(data.get("vendor")),
            vendor_candidates=[VendorCandidate.from_dict(v) for v in data.get("vendor_candidates") or [] if isinstance(v, dict)],
            vendor_details=VendorDetails.from_dict(data.get("vendor_details")),
            invoice=InvoiceInfo.from_dict(data.get("invoice")),
            vat=VatInfo.from_dict(data.get("vat")),
            totals=Totals.from_dict(data.get("totals")),
            amount_candidates=[AmountCandidate.from_dict(c) for c in data.get("amount_candidates") or [] if isinstance(c, dict)],
            line_items=[LineItem.from_dict(li) for li in data.get("line_items") or [] if isinstance(li, dict)],
            expense_account_hint=ExpenseAccountHint.from_dict(data.get("expense_account_hint")),
            warnings=[to_text(w) for w in data.get("warnings") or [] if to_text(w)],
        )

    def line_sum(self) -> float:
        return round(sum(li.amount for li in self.line_items), 2)

    def has_line_vat_codes(self) -> bool:
        return any(li.vat_code for li in self.line_items)


@dataclass
class Account:
    id: int
    code: str
    name: str


@dataclass
class AccountPick:
    """抽出サービスの勘定科目提案（第2・第3候補を含む）"""
    account_id: int = 0
    account_code: str = ""
    account_name: str = ""
    confidence: float = 0.0
    reasoning: str = ""
    alternatives: List["AccountPick"] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "AccountPick":
        data = data or {}
        return cls(
            account_id=int(to_amount(data.get("account_id"))),
            account_code=to_text(data.get("account_code")),
            account_name=to_text(data.get("account_name")),
            confidence=to_confidence(data.get("confidence")),
            reasoning=to_text(data.get("reasoning")),
            alternatives=[cls.from_dict(a) for a in data.get("alternatives") or [] if isinstance(a, dict)],
        )


@dataclass
class AccountAssignments:
    line_picks: Dict[int, AccountPick] = field(default_factory=dict)
    bill_level: Optional[AccountPick] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "AccountAssignments":
        data = data or {}
        picks = {}
        for a in data.get("assignments") or []:
            if not isinstance(a, dict):
                continue
            idx = int(to_amount(a.get("line_index"), -1))
            if idx >= 0 and idx not in picks:
                picks[idx] = AccountPick.from_dict(a)
        bill_level = None
        if data.get("bill_level_account_id") or data.get("bill_level_account_name"):
            bill_level = AccountPick(
                account_id=int(to_amount(data.get("bill_level_account_id"))),
                account_code=to_text(data.get("bill_level_account_code")),
                account_name=to_text(data.get("bill_level_account_name")),
                confidence=to_confidence(data.get("bill_level_confidence")),
                reasoning="bill-level fallback",
            )
        return cls(line_picks=picks, bill_level=bill_level)

    def pick_for_line(self, index: int) -> Optional[AccountPick]:
        pick = self.line_picks.get(index)
        if pick:
            return pick
        return self.bill_level if index == 0 else None


@dataclass
class ResolvedAccount:
    account_id: int
    source: str


@dataclass
class RoutingTarget:
    base_url: str
    db: str
    login: str
    password: str
    company_id: int
    vat_ids: Dict[str, int] = field(default_factory=lambda: {"goods": 0, "services": 0, "generic": 0})
    purchase_journal_id: int = 0
    ap_folder_id: int = 0
    industry: str = ""

    @property
    def target_key(self) -> str:
        return "|".join([self.base_url, self.db, self.login.lower(), str(self.company_id)])


@dataclass
class RunState:
    last_doc_id: int = 0


@dataclass
class TargetStats:
    target_key: str
    scanned: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0
    last_doc_id: int = 0
    stopped_by_budget: bool = False
    error: Optional[str] = None

"""
Gemini generateContent クライアント
1回目: OCRテキスト（＋画像/PDF）から請求書を構造化抽出
2回目: 抽出結果と科目表から明細ごとの勘定科目を提案
"""

import json
import time
from typing import Dict, List, Optional

import requests

from .errors import ExtractionError, TransientError
from .ocr_models import Account, AccountAssignments, ExtractedBill


API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
RETRY_STATUS = (429, 500, 503)
MAX_RETRIES = 2
RETRY_BASE_SEC = 3
RETRY_MAX_SEC = 10


def _vendor_schema() -> Dict:
    return {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "confidence": {"type": "number"},
            "source": {"type": "string", "description": "header|body|atp_printer_box|unknown"},
        },
        "required": ["name", "confidence", "source"],
    }


EXTRACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "vendor": _vendor_schema(),
        "vendor_candidates": {"type": "array", "items": _vendor_schema()},
        "vendor_details": {
            "type": "object",
            "properties": {
                "tin": {"type": "string"},
                "branch_code": {"type": "string"},
                "address": {"type": "string"},
                "entity_type": {"type": "string", "description": "corporation|sole_proprietor|individual|unknown"},
                "trade_name": {"type": "string"},
                "proprietor_name": {"type": "string"},
            },
            "required": ["tin", "branch_code", "address", "entity_type", "trade_name", "proprietor_name"],
        },
        "expense_account_hint": {
            "type": "object",
            "properties": {
                "category": {"type": "string", "description": "office_supplies|meals|repairs|rent|fuel|professional_fees|freight|utilities|inventory|other"},
                "suggested_account_name": {"type": "string"},
                "confidence": {"type": "number"},
            },
            "required": ["category", "suggested_account_name", "confidence"],
        },
        "invoice": {
            "type": "object",
            "properties": {
                "number": {"type": "string"},
                "date": {"type": "string", "description": "YYYY-MM-DD"},
                "currency": {"type": "string"},
            },
            "required": ["number", "date", "currency"],
        },
        "vat": {
            "type": "object",
            "properties": {
                "classification": {"type": "string", "description": "vatable|exempt|zero_rated|unknown"},
                "goods_or_services": {"type": "string", "description": "goods|services|unknown"},
                "vatable_base": {"type": "number"},
                "vat_amount": {"type": "number"},
                "exempt_amount": {"type": "number"},
                "zero_rated_amount": {"type": "number"},
            },
            "required": ["classification", "goods_or_services", "vatable_base", "vat_amount", "exempt_amount", "zero_rated_amount"],
        },
        "totals": {
            "type": "object",
            "properties": {
                "grand_total": {"type": "number", "description": "Final amount due, VAT-inclusive if applicable"},
                "grand_total_confidence": {"type": "number"},
                "tax_total": {"type": "number"},
                "net_total": {"type": "number", "description": "Total before VAT"},
                "vat_exempt_amount": {"type": "number"},
                "zero_rated_amount": {"type": "number"},
                "amounts_are_vat_inclusive": {"type": "boolean"},
            },
            "required": ["grand_total", "grand_total_confidence", "tax_total", "net_total",
                         "vat_exempt_amount", "zero_rated_amount", "amounts_are_vat_inclusive"],
        },
        "amount_candidates": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "label": {"type": "string"},
                    "amount": {"type": "number"},
                    "confidence": {"type": "number"},
                    "snippet": {"type": "string"},
                },
                "required": ["label", "amount", "confidence", "snippet"],
            },
        },
        "line_items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "description": {"type": "string"},
                    "quantity": {"type": "number"},
                    "unit_price": {"type": "number"},
                    "amount": {"type": "number"},
                    "unit_price_includes_vat": {"type": "boolean"},
                    "expense_category": {"type": "string"},
                    "vat_code": {"type": "string", "description": "vatable|exempt|zero_rated|no_vat"},
                },
                "required": ["description", "quantity", "unit_price", "amount",
                             "unit_price_includes_vat", "expense_category", "vat_code"],
            },
        },
        "warnings": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["vendor", "vendor_candidates", "vendor_details", "invoice", "vat", "totals",
                 "amount_candidates", "line_items", "expense_account_hint"],
}


def _account_candidate_schema() -> Dict:
    return {
        "type": "object",
        "properties": {
            "account_id": {"type": "number"},
            "account_code": {"type": "string"},
            "account_name": {"type": "string"},
            "confidence": {"type": "number"},
        },
        "required": ["account_id", "account_code", "account_name", "confidence"],
    }


ASSIGNMENT_SCHEMA = {
    "type": "object",
    "properties": {
        "assignments": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "line_index": {"type": "number", "description": "0-based index into line_items"},
                    "account_id": {"type": "number"},
                    "account_code": {"type": "string"},
                    "account_name": {"type": "string"},
                    "confidence": {"type": "number"},
                    "reasoning": {"type": "string"},
                    "alternatives": {"type": "array", "items": _account_candidate_schema()},
                },
                "required": ["line_index", "account_id", "account_code", "account_name",
                             "confidence", "reasoning", "alternatives"],
            },
        },
        "bill_level_account_id": {"type": "number"},
        "bill_level_account_code": {"type": "string"},
        "bill_level_account_name": {"type": "string"},
        "bill_level_confidence": {"type": "number"},
    },
    "required": ["assignments", "bill_level_account_id", "bill_level_account_code",
                 "bill_level_account_name", "bill_level_confidence"],
}


EXTRACTION_PROMPT = """Extract a vendor bill/receipt for Accounts Payable (Philippines).
Return JSON strictly matching the provided schema. All confidence fields must be between 0 and 1.

VENDOR:
- The "ATP / BIR Permit / Printer's Accreditation" box is NOT the vendor. The vendor is the seller/issuer
  (top header near "OFFICIAL RECEIPT" / "SALES INVOICE", or the name on the bank "Account Name").
- vendor.source must be one of header|body|atp_printer_box|unknown. List up to 5 vendor_candidates.
- vendor_details.entity_type: corporation (Inc., Corp., Co.), sole_proprietor (trade name AND owner name,
  e.g. "Prop."), individual, or unknown. trade_name is the shop/business name; proprietor_name the owner.

AMOUNTS:
- grand_total is the FINAL amount due. It is never a subtotal, a single line, or the VAT amount.
- If line items exist, grand_total must be >= their sum (possibly plus VAT).
- Never use a year (2024, 2025, ...) from a date string as an amount.
- Handwritten amounts: watch for dropped trailing zeros ("1045" vs "10450") and missed decimal points.
- List ALL plausible total readings in amount_candidates with label, confidence and a short snippet.
- Extract ALL line items. qty x unit_price should equal the line amount.

VAT:
- vat.classification: vatable if ANY line has 12% VAT, exempt / zero_rated if ALL lines are, else unknown.
- vat.goods_or_services: services for fees/rentals/repairs/labor, goods for products, else unknown.
- line_items[].vat_code: vatable | exempt | zero_rated | no_vat (lines can differ).
- totals.amounts_are_vat_inclusive: true when prices and grand_total include VAT (typical in PH).
- totals.net_total is always the VAT-exclusive amount (grand_total / 1.12 when only the inclusive total is shown).

CURRENCY: use the symbol/code on the document (PHP for "P"/"Php"/peso sign, S$ -> SGD, ...).
CATEGORIES: office_supplies, meals, repairs, rent, fuel, professional_fees, freight, utilities, inventory, other.
Use the vendor name as context (a "FABRIC TRADING" vendor sells fabric -> inventory/supplies).
invoice.date must be YYYY-MM-DD (empty if unknown).

OCR TEXT:
{ocr_text}
"""


ASSIGNMENT_PROMPT = """You are a senior Filipino accountant recording a vendor bill in Odoo.
Assign each line to an account FROM THIS LIST ONLY. Copy account_id, account_code and account_name exactly.

AVAILABLE ACCOUNTS (id: [code] name):
{accounts}

LINE ITEMS TO CLASSIFY:
{lines}

Bill-level category hint: {category}
Bill-level suggested account name: {suggested}
Vendor name: {vendor}
Vendor trade name: {trade_name}
Company industry: {industry}
{ocr_section}
RULES:
1. Always pick an account from the list. account_id 0 is not allowed.
2. Purchases that serve the company's core business (see industry) go to inventory / cost of sales accounts.
3. Avoid generic accounts (Admin Expense, Miscellaneous, General Expense, Sundry) when any specific account fits.
4. Always give 2nd and 3rd best choices in alternatives.
5. Give the single best account for the whole bill in bill_level_account_*.
"""


class GeminiClient:
    """Gemini API クライアント（リトライ + フォールバックモデル）"""

    def __init__(self, api_key: str, model: str = "gemini-2.5-pro", fallback_model: str = "",
                 timeout: int = 180):
        self.api_key = api_key
        self.model = model
        self.fallback_model = fallback_model
        self.timeout = timeout

    def _models(self) -> List[str]:
        if self.fallback_model and self.fallback_model != self.model:
            return [self.model, self.fallback_model]
        return [self.model]

    def _generate(self, body: Dict) -> Dict:
        """generateContent を呼び出す。429/500/503 は待機して再試行し、尽きたら次のモデルへ"""
        last_error: Exception = ExtractionError("Gemini request was not sent")
        for model in self._models():
            url = f"{API_BASE}/{model}:generateContent"
            for attempt in range(MAX_RETRIES + 1):
                try:
                    r = requests.post(url, params={"key": self.api_key}, json=body, timeout=self.timeout)
                except (requests.ConnectionError, requests.Timeout) as e:
                    last_error = TransientError(f"Gemini接続エラー ({model}): {e}")
                else:
                    if r.ok:
                        return r.json()
                    if r.status_code not in RETRY_STATUS:
                        last_error = ExtractionError(f"Gemini request failed: HTTP {r.status_code} {r.text[:600]}")
                        break
                    last_error = TransientError(
                        f"Gemini request failed: HTTP {r.status_code} ({model})", status_code=r.status_code
                    )
                if attempt < MAX_RETRIES:
                    wait = min(RETRY_BASE_SEC * (attempt + 1), RETRY_MAX_SEC)
                    print(f"  ⏳ Gemini再試行 {attempt + 1}/{MAX_RETRIES} ({model}) {wait}秒待機")
                    time.sleep(wait)
            if self.fallback_model and model != self.fallback_model:
                print(f"  🔄 フォールバックモデルに切り替え: {self.fallback_model}")
        raise last_error

    @staticmethod
    def _response_json(data: Dict) -> Dict:
        """レスポンスの candidates[0].content.parts からJSON本文を取り出す"""
        parts = ((data.get("candidates") or [{}])[0].get("content") or {}).get("parts") or []
        text = "\n".join(p.get("text", "") for p in parts if isinstance(p, dict)).strip()
        if not text:
            raise ExtractionError("Geminiの応答が空です")
        if text.startswith("```"):
            text = text.strip("`").strip()
            if text.startswith("json"):
                text = text[4:].strip()
        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, ValueError) as e:
            raise ExtractionError(f"Geminiの応答をJSONとして解析できません: {e}") from e
        if not isinstance(parsed, dict):
            raise ExtractionError("Geminiの応答がJSONオブジェクトではありません")
        return parsed

    def extract_invoice(self, ocr_text: str, mimetype: str = "", datas: str = "") -> ExtractedBill:
        """請求書を抽出（画像/PDFがあれば base64 のまま添付する）"""
        parts = [{"text": EXTRACTION_PROMPT.format(ocr_text=ocr_text or "(no OCR text available)")}]
        mimetype = (mimetype or "").lower()
        if datas and (mimetype.startswith("image/") or mimetype == "application/pdf"):
            parts.append({"inlineData": {"mimeType": mimetype, "data": datas}})
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"responseMimeType": "application/json", "responseSchema": EXTRACTION_SCHEMA},
        }
        return ExtractedBill.from_dict(self._response_json(self._generate(body)))

    def assign_accounts(self, bill: ExtractedBill, accounts: List[Account], industry: str = "",
                        ocr_text: str = "") -> Optional[AccountAssignments]:
        """明細ごとの勘定科目提案（失敗しても処理は続けるので None を返す）"""
        if not accounts:
            return None
        hint = bill.expense_account_hint
        if bill.line_items:
            lines = "\n".join(
                f'  {i}: "{li.description or "?"}" (category: {li.expense_category or hint.category}, amount: {li.amount})'
                for i, li in enumerate(bill.line_items)
            )
        else:
            lines = (
                f'  0: "{hint.suggested_account_name or "Vendor Bill"}" '
                f"(category: {hint.category}, amount: {bill.totals.grand_total})"
            )
        prompt = ASSIGNMENT_PROMPT.format(
            accounts="\n".join(f"  {a.id}: [{a.code}] {a.name}" for a in accounts),
            lines=lines,
            category=hint.category,
            suggested=hint.suggested_account_name or "(none)",
            vendor=bill.vendor.name or "(unknown)",
            trade_name=bill.vendor_details.trade_name or "(same)",
            industry=industry or "(not specified)",
            ocr_section=f"\nORIGINAL OCR TEXT:\n{ocr_text[:3000]}\n" if ocr_text else "",
        )
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseMimeType": "application/json", "responseSchema": ASSIGNMENT_SCHEMA},
        }
        try:
            return AccountAssignments.from_dict(self._response_json(self._generate(body)))
        except (TransientError, ExtractionError) as e:
            print(f"  ⚠️ 勘定科目の提案取得に失敗（処理は続行）: {e}")
            return None

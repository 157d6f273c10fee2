import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError


# 金額補正の閾値はフィリピンのレシートOCRで経験的に調整した値。導入先ごとに config/reconcile.yml で上書きする
DEFAULTS = {
    "bands": {"wide": [2.0, 20.0], "narrow": [5.0, 15.0]},
    "tolerance": 0.05,
    "vat_confusion": 0.10,
    "impossible_tax_ratio": 0.20,
    "vat_rate": 12.0,
    "confidence_cap": 0.7,
    "year_range": [2020, 2030],
    "min_ocr_token": 100.0,
    "min_line_sum": 100.0,
    "decimal_divisors": [10, 100],
}


def _policy_path() -> str:
    return os.getenv(
        "RECONCILE_CONFIG",
        os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "reconcile.yml"),
    )


def load_policy_config(path: Optional[str] = None) -> dict:
    path = path or _policy_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return DEFAULTS

    # shallow merge defaults
    merged = dict(DEFAULTS)
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "")).strip())
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [v.strip() for v in raw.split(",") if v.strip()]


@dataclass
class Settings:
    run_budget_sec: int = 25 * 60
    reserve_sec: int = 25
    docs_batch_limit: int = 50
    pass1_unrenamed_limit: int = 50
    pass2_marked_limit: int = 50
    rename_prefix: str = "BILL"
    processed_marker_prefix: str = "BILL_OCR_PROCESSED|V1|"
    ocr_job_marker_prefix: str = "BILL_OCR_JOB|V1|"
    ocr_min_text_len: int = 40
    pdf_ocr_max_pages: int = 20
    vision_api_key: str = ""
    vision_lang_hints: List[str] = field(default_factory=lambda: ["en", "fil"])
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-pro"
    gemini_fallback_model: str = ""
    default_expense_account_id: int = 0
    vendor_autocreate_min: float = 0.9
    routing_csv: str = "config/routing.csv"
    account_mapping_csv: str = "config/account_mapping.csv"
    lock_dir: str = "."
    dry_run: bool = False


def load_settings() -> Settings:
    """環境変数（.env含む）から設定を読み込む"""
    load_dotenv()
    return Settings(
        run_budget_sec=_env_int("RUN_BUDGET_SEC", 25 * 60),
        reserve_sec=_env_int("TIME_RESERVE_SEC", 25),
        docs_batch_limit=_env_int("DOCS_BATCH_LIMIT", 50),
        pass1_unrenamed_limit=_env_int("PASS1_UNRENAMED_LIMIT", 50),
        pass2_marked_limit=_env_int("PASS2_MARKED_LIMIT", 50),
        rename_prefix=os.getenv("SCAN_UNRENAMED_PREFIX", "BILL"),
        processed_marker_prefix=os.getenv("PROCESSED_MARKER_PREFIX", "BILL_OCR_PROCESSED|V1|"),
        ocr_job_marker_prefix=os.getenv("OCR_JOB_MARKER_PREFIX", "BILL_OCR_JOB|V1|"),
        ocr_min_text_len=_env_int("OCR_MIN_TEXT_LEN", 40),
        pdf_ocr_max_pages=_env_int("PDF_OCR_MAX_PAGES", 20),
        vision_api_key=os.getenv("VISION_API_KEY", ""),
        vision_lang_hints=_env_list("VISION_LANG_HINTS", ["en", "fil"]),
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-pro"),
        gemini_fallback_model=os.getenv("GEMINI_FALLBACK_MODEL", ""),
        default_expense_account_id=_env_int("DEFAULT_EXPENSE_ACCOUNT_ID", 0),
        routing_csv=os.getenv("ROUTING_CSV", "config/routing.csv"),
        account_mapping_csv=os.getenv("ACCOUNT_MAPPING_CSV", "config/account_mapping.csv"),
        lock_dir=os.getenv("LOCK_DIR", "."),
        dry_run=os.getenv("DRY_RUN", "false").lower() == "true",
    )


def validate_settings(settings: Settings):
    missing = []
    if not settings.gemini_api_key:
        missing.append("GEMINI_API_KEY")
    if not settings.vision_api_key:
        missing.append("VISION_API_KEY")
    if not settings.routing_csv:
        missing.append("ROUTING_CSV")
    if missing:
        raise ConfigError(f"必須の環境変数が設定されていません: {', '.join(missing)}")

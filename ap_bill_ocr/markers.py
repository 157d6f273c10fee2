"""
処理済みマーカー / OCRジョブマーカー
ir.attachment.description（自由記述欄）に1行1マーカーで埋め込み、
同じ添付ファイルでも連携先（target_key）と書類IDごとに独立して判定する
"""

import re
from typing import Dict, Optional


def _clean_name(name: str) -> str:
    return str(name or "").replace("|", "/").replace("\r", " ").replace("\n", " ").strip()


def _head(prefix: str, target_key: str, doc_id) -> str:
    return f"{prefix}{target_key}|DOC={int(doc_id)}|"


def _processed_pattern(prefix: str, target_key: str, doc_id) -> "re.Pattern":
    # 行頭アンカー + 区切り文字込みで照合（DOC=12 が DOC=123 に一致しないように）
    return re.compile(r"^[ \t]*" + re.escape(_head(prefix, target_key, doc_id)) + r"BILL=(\d+)\|", re.MULTILINE)


def encode_processed(prefix: str, target_key: str, doc_id, ledger_id, doc_name: str = "") -> str:
    return f"{_head(prefix, target_key, doc_id)}BILL={int(ledger_id or 0)}|NAME={_clean_name(doc_name)}"


def is_processed(metadata: Optional[str], prefix: str, target_key: str, doc_id) -> bool:
    return _processed_pattern(prefix, target_key, doc_id).search(str(metadata or "")) is not None


def extract_ledger_id(metadata: Optional[str], prefix: str, target_key: str, doc_id) -> int:
    match = _processed_pattern(prefix, target_key, doc_id).search(str(metadata or ""))
    return int(match.group(1)) if match else 0


def encode_job(prefix: str, target_key: str, doc_id, attachment_id, op_name: str, output_ref: str) -> str:
    return (
        f"{_head(prefix, target_key, doc_id)}ATT={int(attachment_id)}"
        f"|OP={_clean_name(op_name)}|OUT={_clean_name(output_ref)}"
    )


def decode_job(metadata: Optional[str], prefix: str, target_key: str, doc_id, attachment_id) -> Optional[Dict[str, str]]:
    pattern = re.compile(
        r"^[ \t]*"
        + re.escape(f"{_head(prefix, target_key, doc_id)}ATT={int(attachment_id)}|")
        + r"OP=([^|\n]*)\|OUT=([^|\n]*)",
        re.MULTILINE,
    )
    match = pattern.search(str(metadata or ""))
    if not match:
        return None
    return {"op_name": match.group(1).strip(), "output_ref": match.group(2).strip()}


def append(metadata: Optional[str], marker: str) -> str:
    """マーカーを追記（既にあれば何もしない）"""
    clean = str(metadata or "").strip()
    if not clean:
        return marker
    if any(line.strip() == marker for line in clean.splitlines()):
        return metadata
    return f"{clean}\n{marker}"


def strip_processed(metadata: Optional[str], prefix: str, target_key: str, doc_id) -> str:
    """対象書類の処理済みマーカーを全て除去（請求書が削除された等で無効化する場合）

    書類名が変わっていても除去できるよう NAME 部分は照合しない。
    """
    pattern = _processed_pattern(prefix, target_key, doc_id)
    lines = [line for line in str(metadata or "").splitlines() if not pattern.match(line)]
    return "\n".join(line for line in lines if line.strip()).strip()

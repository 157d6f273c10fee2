"""
APフォルダの書類を請求書に変換するワーカー

連携先ごとに書類を列挙し、1件ずつ OCR → 抽出 → 金額補正 → 仕入先/税/勘定科目の解決 →
仕入請求書の作成 → 処理済みマーカーの書き込みを行う。
実行時間の予算を書類ごとに確認し、処理し終えた書類までのウォーターマークを保存する。
"""

import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .account_resolver import RunCache, resolve_line_accounts
from .chatter import (
    attach_file_to_bill_chatter,
    bill_created_note,
    clear_document_link,
    link_document_to_bill,
    post_bill_audit_notes,
    safe_message_post,
    vendor_not_found_note,
    vendor_resolved_note,
)
from .config_loader import Settings, load_policy_config
from .errors import ConfigError
from .execution_lock import ExecutionLock
from .gemini_client import GeminiClient
from .markers import append, decode_job, encode_job, encode_processed, extract_ledger_id, is_processed, strip_processed
from .amount_reconciler import reconcile_amounts
from .ocr_models import RoutingTarget, RunState, TargetStats, m2o_id
from .odoo_client import OdooClient
from .routing import group_targets, load_account_mapping, load_routing_csv, save_routing_csv
from .state_store import init_db, load_state, save_state, write_audit
from .target_setup import refresh_routing_auto_fields, resolve_ap_folder_id
from .tax_normalizer import build_bill_vals, load_tax_meta, pick_tax_ids, uses_line_items
from .vendor_resolver import create_vendor_if_missing, find_duplicate_bill, find_vendor, resolve_currency_id
from .vision_client import VisionClient


LOCK_NAME = "ap_bill_ocr"
DOC_FIELDS = ["id", "name", "attachment_id", "folder_id", "company_id", "create_date"]
ATTACHMENT_FIELDS = ["id", "name", "datas", "mimetype", "description", "res_model", "res_id"]


@dataclass
class WorkerContext:
    """1回の実行で共有する外部クライアントとキャッシュ"""
    settings: Settings
    vision: VisionClient
    gemini: GeminiClient
    client_factory: Callable[[RoutingTarget], object] = OdooClient.from_target
    policy: Dict = field(default_factory=load_policy_config)
    cache: RunCache = field(default_factory=RunCache)
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep

    def reset_cache(self):
        path = self.settings.account_mapping_csv
        self.cache = RunCache(mapping_loader=lambda: load_account_mapping(path))


def build_context(settings: Settings,
                  client_factory: Callable[[RoutingTarget], object] = OdooClient.from_target) -> WorkerContext:
    ctx = WorkerContext(
        settings=settings,
        vision=VisionClient(
            settings.vision_api_key,
            lang_hints=settings.vision_lang_hints,
            min_text_len=settings.ocr_min_text_len,
            pdf_max_pages=settings.pdf_ocr_max_pages,
        ),
        gemini=GeminiClient(
            settings.gemini_api_key,
            model=settings.gemini_model,
            fallback_model=settings.gemini_fallback_model,
        ),
        client_factory=client_factory,
    )
    ctx.reset_cache()
    return ctx


def _skip(reason: str, **extra) -> Dict:
    result = {"status": "skip", "reason": reason}
    result.update(extra)
    return result


def list_candidate_documents(odoo, company_id: int, ap_folder_id: int, settings: Settings) -> List[Dict]:
    """未リネームの書類（ID昇順）とリネーム済みの書類（ID降順）を件数上限付きで取得し、重複を除いて結合"""
    base_domain = [
        ["folder_id", "=", ap_folder_id],
        ["is_folder", "=", False],
        ["attachment_id", "!=", False],
    ]
    pattern = f"{settings.rename_prefix}%"
    pass1 = odoo.search_read(
        "documents.document",
        base_domain + [["name", "not ilike", pattern]],
        DOC_FIELDS,
        company_id=company_id,
        limit=settings.pass1_unrenamed_limit or settings.docs_batch_limit,
        order="id asc",
    )
    pass2 = odoo.search_read(
        "documents.document",
        base_domain + [["name", "ilike", pattern]],
        DOC_FIELDS,
        company_id=company_id,
        limit=settings.pass2_marked_limit,
        order="id desc",
    )
    seen = set()
    merged = []
    for doc in list(pass1) + list(pass2):
        if doc["id"] in seen:
            continue
        seen.add(doc["id"])
        merged.append(doc)
    return merged


def order_documents(docs: List[Dict], last_doc_id: int) -> List[Dict]:
    """ウォーターマークより新しい書類を先に（昇順）、その後に古い書類を（昇順）"""
    new_docs = sorted((d for d in docs if int(d["id"]) > last_doc_id), key=lambda d: int(d["id"]))
    revisit = sorted((d for d in docs if int(d["id"]) <= last_doc_id), key=lambda d: int(d["id"]))
    return new_docs + revisit


def load_attachment(odoo, company_id: int, attachment_id: int) -> Optional[Dict]:
    rows = odoo.search_read(
        "ir.attachment", [["id", "=", attachment_id]], ATTACHMENT_FIELDS, company_id=company_id, limit=1
    )
    return rows[0] if rows else None


def _write_description(odoo, company_id: int, att: Dict, description: str):
    odoo.write("ir.attachment", [att["id"]], {"description": description}, company_id=company_id)
    att["description"] = description


def _bill_exists(odoo, company_id: int, bill_id: int) -> bool:
    if not bill_id:
        return False
    rows = odoo.search_read("account.move", [["id", "=", bill_id]], ["id"], company_id=company_id, limit=1)
    return bool(rows)


def process_one_document(odoo, target: RoutingTarget, doc: Dict, ctx: WorkerContext,
                         reprocess: bool = False) -> Dict:
    """書類1件を処理して結果の dict を返す

    status は ok / skip / dry_run。スキップ理由は reason に入る。
    処理済みマーカーは請求書の作成直後に書き込み、その後の添付・チャター投稿はベストエフォート。
    """
    settings = ctx.settings
    company_id = target.company_id
    target_key = target.target_key
    doc_id = int(doc["id"])
    prefix = settings.processed_marker_prefix

    attachment_id = m2o_id(doc.get("attachment_id"))
    if not attachment_id:
        return _skip("no_attachment")
    att = load_attachment(odoo, company_id, attachment_id)
    if not att:
        return _skip("attachment_not_found")

    if is_processed(att.get("description"), prefix, target_key, doc_id):
        bill_id = extract_ledger_id(att.get("description"), prefix, target_key, doc_id)
        if not reprocess and _bill_exists(odoo, company_id, bill_id):
            return _skip("already_processed", bill_id=bill_id)
        if reprocess:
            print(f"  🔁 再処理のため処理済みマーカーを削除: doc#{doc_id}")
        else:
            print(f"  🧹 請求書 #{bill_id} が削除済みのためマーカーを削除: doc#{doc_id}")
        if not settings.dry_run:
            _write_description(odoo, company_id, att, strip_processed(att.get("description"), prefix, target_key, doc_id))

    existing_job = decode_job(att.get("description"), settings.ocr_job_marker_prefix, target_key, doc_id, att["id"])
    if existing_job:
        print(f"  ♻️ 前回のOCRジョブ({existing_job['op_name']})が未完了のため再実行します: doc#{doc_id}")
    elif not settings.dry_run:
        job_marker = encode_job(
            settings.ocr_job_marker_prefix, target_key, doc_id, att["id"],
            f"inline-{int(time.time() * 1000)}", "inline",
        )
        _write_description(odoo, company_id, att, append(att.get("description"), job_marker))

    mimetype = att.get("mimetype") or ""
    datas = att.get("datas") or ""
    ocr_text = ctx.vision.ocr_attachment(mimetype, datas)
    if not ocr_text or len(ocr_text.strip()) < settings.ocr_min_text_len:
        return _skip("ocr_too_short")

    bill = ctx.gemini.extract_invoice(ocr_text, mimetype, datas)
    correction = reconcile_amounts(bill, ocr_text, log=print, policy=ctx.policy)

    vendor = find_vendor(odoo, company_id, bill, ocr_text)
    if not vendor.id and not settings.dry_run:
        created = create_vendor_if_missing(odoo, company_id, bill, ocr_text, settings.vendor_autocreate_min)
        if created.id:
            safe_message_post(odoo, company_id, "documents.document", doc_id, vendor_resolved_note(created))
        vendor = created
    if not vendor.id:
        if not settings.dry_run:
            safe_message_post(odoo, company_id, "documents.document", doc_id, vendor_not_found_note(bill))
        return _skip("vendor_not_found", manual_review=True, vendor_status=vendor.status or "missing")

    if not reprocess:
        duplicate = find_duplicate_bill(odoo, company_id, vendor.id, bill)
        if duplicate:
            dup_id = int(duplicate["id"])
            if not settings.dry_run:
                marker = encode_processed(prefix, target_key, doc_id, dup_id, doc.get("name") or "")
                _write_description(odoo, company_id, att, append(att.get("description"), marker))
            return _skip("duplicate", bill_id=dup_id)

    currency_id = resolve_currency_id(odoo, company_id, bill.invoice.currency)
    tax_ids = pick_tax_ids(target.vat_ids, bill)
    tax_meta = load_tax_meta(odoo, company_id, tax_ids)

    accounts = ctx.cache.expense_accounts(odoo, company_id)
    assignments = ctx.gemini.assign_accounts(bill, accounts, target.industry, ocr_text)
    if assignments is None:
        print(f"  ⚠️ 勘定科目の提案を取得できませんでした: doc#{doc_id}")
    use_lines = uses_line_items(bill)
    resolved = resolve_line_accounts(
        odoo, ctx.cache, bill, assignments, company_id, vendor.id, vendor.name, use_lines,
        target_db=target.db, default_account_id=settings.default_expense_account_id,
    )
    for i, r in enumerate(resolved):
        print(f"    勘定科目 line{i}: #{r.account_id} ({r.source})")

    vals = build_bill_vals(
        bill, vendor.id, company_id, tax_ids,
        purchase_journal_id=target.purchase_journal_id,
        currency_id=currency_id,
        tax_meta=tax_meta,
        line_account_ids=[r.account_id for r in resolved],
    )
    summary = {
        "vendor_id": vendor.id,
        "vendor_created": vendor.created,
        "grand_total": bill.totals.grand_total,
        "correction_rule": correction.rule if correction else "",
        "account_sources": [r.source for r in resolved],
    }
    if settings.dry_run:
        print(f"  [DRY_RUN] 請求書を作成します: doc#{doc_id} 仕入先={vendor.name} 合計={bill.totals.grand_total}")
        return dict(summary, status="dry_run", vals=vals)

    bill_id = odoo.create("account.move", vals, company_id=company_id)
    marker = encode_processed(prefix, target_key, doc_id, bill_id, doc.get("name") or "")
    _write_description(odoo, company_id, att, append(att.get("description"), marker))
    print(f"  ✅ 仕入請求書を作成しました: account.move #{bill_id} (doc#{doc_id})")

    try:
        attach_file_to_bill_chatter(odoo, company_id, att, bill_id, doc_id)
        link_document_to_bill(odoo, company_id, doc_id, bill_id, sleep=ctx.sleep)
        safe_message_post(odoo, company_id, "documents.document", doc_id, bill_created_note(bill_id, vendor))
        post_bill_audit_notes(odoo, company_id, bill_id, bill, vendor, resolved, accounts, use_lines)
    except Exception as e:
        print(f"  ⚠️ 作成後の後処理に失敗しました (bill #{bill_id}): {e}")

    return dict(summary, status="ok", bill_id=bill_id)


def _out_of_time(ctx: WorkerContext, deadline: float) -> bool:
    return ctx.clock() >= deadline


def _audit(target_key: str, doc_id: int, result: Dict, error: Optional[str] = None):
    outcome = result.get("status", "error")
    if outcome == "skip":
        outcome = f"skip:{result.get('reason')}"
    detail = {k: v for k, v in result.items() if k not in ("status", "reason", "bill_id", "vals")}
    write_audit(target_key, doc_id, "process", outcome, bill_id=result.get("bill_id", 0), detail=detail, error=error)


def process_target_group(target: RoutingTarget, ctx: WorkerContext, deadline: float) -> TargetStats:
    """1つの連携先の書類を予算内で処理する"""
    odoo = ctx.client_factory(target)
    state = load_state(target.target_key)
    stats = TargetStats(target_key=target.target_key, last_doc_id=state.last_doc_id)

    ap_folder_id = target.ap_folder_id or resolve_ap_folder_id(odoo, target.company_id)
    if not ap_folder_id:
        raise ConfigError(f"APフォルダが見つかりません: {target.target_key}")

    docs = order_documents(
        list_candidate_documents(odoo, target.company_id, ap_folder_id, ctx.settings), state.last_doc_id
    )
    print(f"📂 {target.target_key}: 対象書類 {len(docs)}件 (前回の最終ID: {state.last_doc_id})")

    for doc in docs:
        if _out_of_time(ctx, deadline):
            print(f"⏱️ 実行時間の上限に達したため中断します: {target.target_key}")
            stats.stopped_by_budget = True
            break
        doc_id = int(doc["id"])
        stats.scanned += 1
        print(f"\n[{stats.scanned}/{len(docs)}] 書類 #{doc_id}: {doc.get('name') or ''}")
        try:
            result = process_one_document(odoo, target, doc, ctx)
        except Exception as e:
            stats.errors += 1
            print(f"  ❌ 書類の処理に失敗しました: doc#{doc_id}: {e}")
            _audit(target.target_key, doc_id, {"status": "error"}, error=str(e))
            continue

        if result["status"] == "ok":
            stats.created += 1
        else:
            stats.skipped += 1
            if result["status"] == "skip":
                print(f"  ⏭️ スキップ: {result['reason']}")
        stats.last_doc_id = max(stats.last_doc_id, doc_id)
        _audit(target.target_key, doc_id, result)

    if not ctx.settings.dry_run:
        save_state(target.target_key, RunState(last_doc_id=stats.last_doc_id))
    return stats


def _process_id(mode: str) -> str:
    return f"{mode}_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{os.getpid()}"


def _load_targets(ctx: WorkerContext, refresh: bool = True) -> List[RoutingTarget]:
    """ルーティングCSVを読み込み、自動取得項目を更新して書き戻す"""
    path = ctx.settings.routing_csv
    headers, rows = load_routing_csv(path)
    if refresh and rows:
        result = refresh_routing_auto_fields(headers, rows, client_factory=ctx.client_factory)
        print(f"🔄 自動取得項目を更新しました: {result['updated']}行 / {result['group_count']}連携先")
        if not ctx.settings.dry_run:
            save_routing_csv(path, headers, rows)
    return group_targets(rows)


def _select_target(targets: List[RoutingTarget], target_key: str = "") -> RoutingTarget:
    if not targets:
        raise ConfigError("有効な連携先がありません")
    if target_key:
        for target in targets:
            if target.target_key == target_key:
                return target
        raise ConfigError(f"連携先が見つかりません: {target_key}")
    if len(targets) > 1:
        raise ConfigError("有効な連携先が複数あります。target_key を指定してください")
    return targets[0]


def run_worker(settings: Settings, ctx: Optional[WorkerContext] = None,
               lock: Optional[ExecutionLock] = None) -> Dict:
    """全連携先を処理する（同時に実行できるのは1つだけ）"""
    lock = lock or ExecutionLock(LOCK_NAME, timeout=settings.run_budget_sec * 2, lock_dir=settings.lock_dir)
    process_id = _process_id("run")
    if not lock.acquire_lock(process_id, {"mode": "run"}):
        info = lock.get_lock_info() or {}
        print(f"⏳ 別の実行が進行中です: {info.get('process_id')}")
        return {"ok": False, "status": "already_running"}

    try:
        ctx = ctx or build_context(settings)
        ctx.reset_cache()
        init_db()
        deadline = ctx.clock() + settings.run_budget_sec - settings.reserve_sec

        targets = _load_targets(ctx)
        totals = {"targets": len(targets), "scanned": 0, "created": 0, "skipped": 0, "errors": 0}
        target_stats = []
        stopped = False
        for target in targets:
            if _out_of_time(ctx, deadline):
                stopped = True
                break
            try:
                stats = process_target_group(target, ctx, deadline)
            except Exception as e:
                print(f"❌ 連携先の処理に失敗しました: {target.target_key}: {e}")
                stats = TargetStats(target_key=target.target_key, errors=1, error=str(e))
            stopped = stopped or stats.stopped_by_budget
            for key in ("scanned", "created", "skipped", "errors"):
                totals[key] += getattr(stats, key)
            target_stats.append(asdict(stats))

        print("\n=== 処理完了 ===")
        print(f"  作成: {totals['created']}件 / スキップ: {totals['skipped']}件 / エラー: {totals['errors']}件")
        return {
            "ok": True,
            "status": "budget_exceeded" if stopped else "done",
            "totals": totals,
            "targets": target_stats,
        }
    finally:
        lock.release_lock(process_id)


def _find_document(odoo, company_id: int, doc_id: int = 0, attachment_id: int = 0) -> Optional[Dict]:
    fields = DOC_FIELDS + ["res_model", "res_id"]
    if doc_id:
        rows = odoo.search_read(
            "documents.document", [["id", "=", doc_id], ["is_folder", "=", False]], fields,
            company_id=company_id, limit=1,
        )
        if not rows:
            # アーカイブ済みの書類も対象にする
            rows = odoo.search_read(
                "documents.document", [["id", "=", doc_id], ["active", "in", [True, False]]], fields, limit=1
            )
    else:
        rows = odoo.search_read(
            "documents.document", [["attachment_id", "=", attachment_id], ["is_folder", "=", False]], fields,
            company_id=company_id, limit=1, order="id desc",
        )
    return rows[0] if rows else None


def run_one(settings: Settings, doc_id: int = 0, attachment_id: int = 0, target_key: str = "",
            reprocess: bool = False, ctx: Optional[WorkerContext] = None,
            lock: Optional[ExecutionLock] = None) -> Dict:
    """書類1件を指定して処理する（reprocess=True で処理済みでも作り直す）"""
    if not doc_id and not attachment_id:
        raise ValueError("doc_id か attachment_id のどちらかを指定してください")

    lock = lock or ExecutionLock(LOCK_NAME, timeout=settings.run_budget_sec * 2, lock_dir=settings.lock_dir)
    process_id = _process_id("run_one")
    if not lock.acquire_lock(process_id, {"mode": "run_one", "doc_id": doc_id, "attachment_id": attachment_id}):
        return {"ok": False, "status": "already_running"}

    try:
        ctx = ctx or build_context(settings)
        ctx.reset_cache()
        init_db()
        target = _select_target(_load_targets(ctx, refresh=False), target_key)
        odoo = ctx.client_factory(target)
        company_id = target.company_id

        doc = _find_document(odoo, company_id, doc_id, attachment_id)
        if not doc:
            raise ConfigError(
                f"書類が見つかりません: doc_id={doc_id}" if doc_id else f"書類が見つかりません: attachment_id={attachment_id}"
            )

        linked_bill_id = int(doc.get("res_id") or 0)
        if doc.get("res_model") == "account.move" and linked_bill_id and not _bill_exists(odoo, company_id, linked_bill_id):
            print(f"🧹 削除済み請求書 #{linked_bill_id} へのリンクを解除します: doc#{doc['id']}")
            if not settings.dry_run:
                clear_document_link(odoo, company_id, int(doc["id"]))

        result = process_one_document(odoo, target, doc, ctx, reprocess=reprocess)
        _audit(target.target_key, int(doc["id"]), result)
        return {
            "ok": True,
            "mode": "run-one",
            "target_key": target.target_key,
            "doc": {"id": int(doc["id"]), "name": str(doc.get("name") or ""), "attachment_id": m2o_id(doc.get("attachment_id"))},
            "result": result,
        }
    finally:
        lock.release_lock(process_id)


def list_ap_documents(settings: Settings, target_key: str = "", ctx: Optional[WorkerContext] = None) -> Dict:
    """APフォルダ内の書類一覧"""
    ctx = ctx or build_context(settings)
    target = _select_target(_load_targets(ctx, refresh=False), target_key)
    odoo = ctx.client_factory(target)
    ap_folder_id = target.ap_folder_id or resolve_ap_folder_id(odoo, target.company_id)
    if not ap_folder_id:
        raise ConfigError(f"APフォルダが見つかりません: {target.target_key}")
    docs = odoo.search_read(
        "documents.document",
        [["folder_id", "=", ap_folder_id], ["is_folder", "=", False], ["attachment_id", "!=", False]],
        ["id", "name", "attachment_id", "create_date"],
        company_id=target.company_id,
        limit=5000,
        order="id desc",
    )
    return {
        "ok": True,
        "target_key": target.target_key,
        "ap_folder_id": ap_folder_id,
        "count": len(docs),
        "documents": [
            {
                "doc_id": int(d["id"]),
                "name": str(d.get("name") or ""),
                "attachment_id": m2o_id(d.get("attachment_id")),
                "create_date": d.get("create_date") or None,
            }
            for d in docs
        ],
    }

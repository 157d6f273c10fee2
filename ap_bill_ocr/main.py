import argparse
import json
import sys
from datetime import datetime
from typing import Dict, List, Optional

from .config_loader import load_settings, validate_settings
from .errors import ConfigError
from .worker import list_ap_documents, run_one, run_worker


def save_results(result: Dict, prefix: str = "results") -> str:
    """処理結果をJSONファイルに保存"""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"{prefix}_{timestamp}.json"

    with open(filename, "w", encoding="utf-8") as f:
        json.dump({
            "timestamp": datetime.now().isoformat(),
            "result": result,
        }, f, ensure_ascii=False, indent=2, default=str)

    print(f"\n結果を {filename} に保存しました")
    return filename


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ap-bill-ocr", description="APフォルダの書類から仕入請求書を作成します")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="全連携先を処理")
    run.add_argument("--no-save", action="store_true", help="結果のJSONを保存しない")

    one = sub.add_parser("run-one", help="書類を1件だけ処理")
    one.add_argument("--doc-id", type=int, default=0)
    one.add_argument("--attachment-id", type=int, default=0)
    one.add_argument("--target-key", default="")
    one.add_argument("--reprocess", action="store_true", help="処理済みでも作り直す")

    ls = sub.add_parser("list", help="APフォルダの書類一覧")
    ls.add_argument("--target-key", default="")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()

    print(f"=== AP請求書OCR ({args.command}) ===")
    print(f"実行時刻: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    if settings.dry_run:
        print("\n*** DRY_RUNモード: 実際の登録は行いません ***\n")

    try:
        if args.command == "list":
            result = list_ap_documents(settings, target_key=args.target_key)
            for d in result["documents"]:
                print(f"  #{d['doc_id']}  {d['name']}  (attachment #{d['attachment_id']})")
            print(f"{result['count']}件")
            return 0

        validate_settings(settings)
        if args.command == "run":
            result = run_worker(settings)
            if not args.no_save:
                save_results(result)
        else:
            if not args.doc_id and not args.attachment_id:
                print("❌ --doc-id か --attachment-id のどちらかを指定してください")
                return 2
            result = run_one(
                settings,
                doc_id=args.doc_id,
                attachment_id=args.attachment_id,
                target_key=args.target_key,
                reprocess=args.reprocess,
            )
            print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    except ConfigError as e:
        print(f"❌ {e}")
        return 2

    if result.get("status") == "already_running":
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

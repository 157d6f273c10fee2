"""
実行ロック
同時に1つの実行だけを許可する（2つ目の実行は待たずに拒否）
"""

import json
import os
from datetime import datetime, timedelta
from typing import Any, Dict, Optional


class ExecutionLock:
    """実行ロック管理クラス"""

    def __init__(self, lock_name: str, timeout: int = 3600, lock_dir: str = "."):
        """
        Args:
            lock_name: ロック名
            timeout: ロックのタイムアウト時間（秒）。超えたロックは異常終了の残骸とみなす
            lock_dir: ロックファイルを置くディレクトリ
        """
        self.lock_name = lock_name
        self.timeout = timeout
        self.lock_file = os.path.join(lock_dir, f".{lock_name}_lock.json")

    def acquire_lock(self, process_id: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """ロックを取得する

        Returns:
            bool: ロック取得成功時True（有効なロックが既にあればFalse）
        """
        existing_lock = self._load_lock()
        if existing_lock:
            try:
                lock_time = datetime.fromisoformat(existing_lock.get("timestamp", ""))
            except ValueError:
                lock_time = datetime.min
            if datetime.now() - lock_time < timedelta(seconds=self.timeout):
                return False
            print(f"⏰ ロックがタイムアウトしました: {existing_lock.get('process_id')}")
            self._remove_lock()

        lock_data = {
            "process_id": process_id,
            "timestamp": datetime.now().isoformat(),
            "timeout": self.timeout,
            "metadata": metadata or {},
        }
        if not self._create_lock(lock_data):
            return False
        print(f"🔒 ロックを取得しました: {process_id}")
        return True

    def release_lock(self, process_id: str) -> bool:
        existing_lock = self._load_lock()
        if not existing_lock:
            print(f"⚠️ ロックが存在しません: {process_id}")
            return False
        if existing_lock.get("process_id") != process_id:
            print(f"❌ ロックの所有者が異なります: {process_id}")
            return False
        self._remove_lock()
        print(f"🔓 ロックを解除しました: {process_id}")
        return True

    def get_lock_info(self) -> Optional[Dict[str, Any]]:
        return self._load_lock()

    def _load_lock(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.lock_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            # 書き込み途中のファイル。タイムアウト判定で回収されるよう空扱いにしない
            return {"process_id": "unknown", "timestamp": datetime.now().isoformat()}

    def _create_lock(self, lock_data: Dict[str, Any]) -> bool:
        """O_EXCL で作成（同時に取得しようとした2つ目は失敗する）"""
        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(lock_data, f, ensure_ascii=False, indent=2)
        return True

    def _remove_lock(self):
        try:
            os.remove(self.lock_file)
        except FileNotFoundError:
            pass

import time
from typing import Dict, List, Optional

import requests

from .errors import OdooRPCError, TransientError
from .ocr_models import RoutingTarget


RETRY_STATUS = (429, 500, 502, 503, 504)
# サーバ側で反映済みかもしれない呼び出しは再送しない
NON_IDEMPOTENT_METHODS = ("create", "message_post")


def normalize_base_url(raw: str) -> str:
    return str(raw or "").strip().rstrip("/")


def kw_with_company(company_id: Optional[int], **extra) -> Dict:
    """会社コンテキスト付きのkwargs（マルチカンパニーで対象会社に固定する）"""
    kwargs = dict(extra)
    if company_id:
        cid = int(company_id)
        kwargs["context"] = {
            "allowed_company_ids": [cid],
            "force_company": cid,
            "company_id": cid,
        }
    return kwargs


class OdooClient:
    """Odoo JSON-RPC クライアント（/jsonrpc）"""

    def __init__(self, base_url: str, db: str, login: str, password: str,
                 timeout: int = 60, max_retries: int = 4):
        self.base_url = normalize_base_url(base_url)
        self.db = db
        self.login = login
        self.password = password
        self.timeout = timeout
        self.max_retries = max_retries
        self.endpoint = f"{self.base_url}/jsonrpc"
        self.uid = 0
        self.session = requests.Session()
        self._request_id = 0

    @classmethod
    def from_target(cls, target: RoutingTarget) -> "OdooClient":
        return cls(target.base_url, target.db, target.login, target.password)

    def _post(self, payload: Dict, retry: bool = True) -> requests.Response:
        """接続エラー・429/5xx は上限付き指数バックオフで再試行

        retry=False の場合は送信前の接続失敗と 429 だけを再試行する
        """
        backoff = 1
        last_error = ""
        for attempt in range(self.max_retries):
            try:
                r = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = str(e)
                status = 0
                # ConnectTimeout は未送信なので再試行してよい
                if not retry and isinstance(e, requests.Timeout) and not isinstance(e, requests.ConnectTimeout):
                    raise TransientError(
                        f"Odoo {self.base_url} の応答待ちで失敗しました（再送しません）: {last_error}"
                    ) from e
            else:
                if r.status_code not in RETRY_STATUS:
                    r.raise_for_status()
                    return r
                last_error = r.text[:300]
                status = r.status_code
                if not retry and status != 429:
                    raise TransientError(
                        f"Odoo {self.base_url} がエラーを返しました（再送しません）: {last_error}",
                        status_code=status,
                    )
            if attempt < self.max_retries - 1:
                print(f"  ⏳ Odoo再試行 {attempt + 1}/{self.max_retries - 1} (status={status}) {backoff}秒待機")
                time.sleep(backoff)
                backoff = min(backoff * 2, 16)
        raise TransientError(f"Odoo {self.base_url} への接続に失敗しました: {last_error}", status_code=status)

    def _json_rpc(self, service: str, method: str, args: List, retry: bool = True):
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": args},
            "id": self._request_id,
        }
        data = self._post(payload, retry=retry).json()
        if data.get("error"):
            err = data["error"]
            message = (err.get("data") or {}).get("message") or err.get("message") or str(err)
            raise OdooRPCError(f"Odoo RPC error: {message}")
        return data.get("result")

    def authenticate(self) -> int:
        if self.uid:
            return self.uid
        uid = self._json_rpc("common", "authenticate", [self.db, self.login, self.password, {}])
        self.uid = int(uid or 0)
        if not self.uid:
            raise OdooRPCError(f"Odoo認証に失敗しました: {self.base_url} / {self.db} / {self.login}")
        return self.uid

    def execute_kw(self, model: str, method: str, args: Optional[List] = None,
                   kwargs: Optional[Dict] = None, company_id: Optional[int] = None):
        uid = self.authenticate()
        kw = dict(kwargs or {})
        if company_id:
            kw.update(kw_with_company(company_id))
        return self._json_rpc(
            "object", "execute_kw", [self.db, uid, self.password, model, method, args or [], kw],
            retry=method not in NON_IDEMPOTENT_METHODS,
        )

    def search_read(self, model: str, domain: List, fields: List[str],
                    company_id: Optional[int] = None, **kwargs) -> List[Dict]:
        return self.execute_kw(model, "search_read", [domain, fields], kwargs, company_id=company_id) or []

    def search(self, model: str, domain: List, company_id: Optional[int] = None, **kwargs) -> List[int]:
        return self.execute_kw(model, "search", [domain], kwargs, company_id=company_id) or []

    def create(self, model: str, vals: Dict, company_id: Optional[int] = None) -> int:
        return int(self.execute_kw(model, "create", [vals], company_id=company_id))

    def write(self, model: str, ids: List[int], vals: Dict, company_id: Optional[int] = None) -> bool:
        return bool(self.execute_kw(model, "write", [[int(i) for i in ids], vals], company_id=company_id))

    def fields_get(self, model: str, field_names: List[str]) -> Dict:
        return self.execute_kw(model, "fields_get", [field_names, ["type"]]) or {}

    def message_post(self, model: str, res_id: int, body: str,
                     company_id: Optional[int] = None, **extra):
        kwargs = {"body": body, "message_type": "comment"}
        kwargs.update(extra)
        return self.execute_kw(model, "message_post", [[int(res_id)]], kwargs, company_id=company_id)

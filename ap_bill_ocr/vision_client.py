import time
from typing import Dict, List, Optional

import requests

from .errors import TransientError


IMAGES_URL = "https://vision.googleapis.com/v1/images:annotate"
FILES_URL = "https://vision.googleapis.com/v1/files:annotate"
# files:annotate（同期）は1リクエスト5ページまで
PAGES_PER_REQUEST = 5
RETRY_STATUS = (429, 500, 502, 503, 504)


class VisionClient:
    """Google Cloud Vision OCR クライアント（APIキー認証）"""

    def __init__(self, api_key: str, lang_hints: Optional[List[str]] = None, min_text_len: int = 40,
                 pdf_max_pages: int = 20, timeout: int = 120, max_retries: int = 3):
        self.api_key = api_key
        self.lang_hints = lang_hints or ["en"]
        self.min_text_len = min_text_len
        self.pdf_max_pages = pdf_max_pages
        self.timeout = timeout
        self.max_retries = max_retries

    def _post(self, url: str, payload: Dict) -> Dict:
        backoff = 1
        for attempt in range(self.max_retries):
            try:
                r = requests.post(url, params={"key": self.api_key}, json=payload, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt == self.max_retries - 1:
                    raise TransientError(f"Vision接続エラー: {e}") from e
            else:
                if r.status_code not in RETRY_STATUS:
                    r.raise_for_status()
                    return r.json()
                if attempt == self.max_retries - 1:
                    raise TransientError(f"Vision annotate failed: HTTP {r.status_code}", status_code=r.status_code)
            time.sleep(backoff)
            backoff = min(backoff * 2, 16)
        raise TransientError("Vision annotate failed")

    def _annotate_image(self, content_b64: str, feature: str) -> Dict:
        payload = {
            "requests": [{
                "image": {"content": content_b64},
                "features": [{"type": feature}],
                "imageContext": {"languageHints": self.lang_hints},
            }]
        }
        data = self._post(IMAGES_URL, payload)
        return (data.get("responses") or [{}])[0]

    def ocr_image(self, content_b64: str) -> str:
        """画像OCR。文字数が少なければ TEXT_DETECTION で再試行"""
        first = self._annotate_image(content_b64, "DOCUMENT_TEXT_DETECTION")
        text = (first.get("fullTextAnnotation") or {}).get("text", "")
        if len(text.strip()) >= self.min_text_len:
            return text

        second = self._annotate_image(content_b64, "TEXT_DETECTION")
        annotations = second.get("textAnnotations") or [{}]
        return (
            (second.get("fullTextAnnotation") or {}).get("text")
            or annotations[0].get("description")
            or text
            or ""
        )

    def ocr_pdf(self, content_b64: str) -> str:
        """PDFの先頭 pdf_max_pages ページをOCRし、ページ順に連結"""
        texts = []
        for start in range(1, self.pdf_max_pages + 1, PAGES_PER_REQUEST):
            pages = list(range(start, min(start + PAGES_PER_REQUEST, self.pdf_max_pages + 1)))
            payload = {
                "requests": [{
                    "inputConfig": {"content": content_b64, "mimeType": "application/pdf"},
                    "features": [{"type": "DOCUMENT_TEXT_DETECTION"}],
                    "imageContext": {"languageHints": self.lang_hints},
                    "pages": pages,
                }]
            }
            try:
                data = self._post(FILES_URL, payload)
            except requests.HTTPError as e:
                # 存在しないページを指定すると400になるので、2回目以降はそこで打ち切る
                if texts and e.response is not None and e.response.status_code == 400:
                    break
                raise
            file_response = (data.get("responses") or [{}])[0]
            page_responses = file_response.get("responses") or []
            for page in page_responses:
                text = (page.get("fullTextAnnotation") or {}).get("text", "")
                if text:
                    texts.append(text)
            total_pages = int(file_response.get("totalPages") or 0)
            if not page_responses or (total_pages and pages[-1] >= total_pages):
                break
        return "\n\n".join(texts)

    def ocr_attachment(self, mimetype: str, content_b64: str) -> str:
        mimetype = (mimetype or "").lower()
        if not content_b64:
            return ""
        if mimetype.startswith("image/"):
            return self.ocr_image(content_b64)
        if mimetype == "application/pdf":
            return self.ocr_pdf(content_b64)
        return ""

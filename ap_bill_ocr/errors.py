class TransientError(RuntimeError):
    """リトライ上限まで失敗した一時的な外部エラー（429/5xx/通信断）"""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class OdooRPCError(RuntimeError):
    """Odoo JSON-RPC がエラーを返した"""


class ExtractionError(RuntimeError):
    """抽出サービスの応答を解釈できない"""


class ConfigError(ValueError):
    """ルーティング対象や環境変数の設定不備（対象単位で致命的）"""

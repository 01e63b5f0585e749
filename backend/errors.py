"""
例外定義
- セッション設定エラー
- セッション多重起動
- トランスポート障害
- 分析API障害
"""


class SessionConfigError(ValueError):
    """開始パラメータの検証エラー (トランスポートへは何も送らない)"""


class SessionBusyError(RuntimeError):
    """セッション or トランスポートが既に使用中"""


class TransportError(RuntimeError):
    """リアルタイム音声トランスポートの障害"""


class AnalysisError(RuntimeError):
    """通話分析の取得失敗"""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code

"""
通話分析の取得
- 短命のJWT (HS256, 1時間) を秘密鍵で署名して認証
- GET {api_url}/call/{call_id} の analysis.structuredData をレポートとして返す
- リトライはしない (UIから手動で再取得)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
import jwt

from errors import AnalysisError
from models import AnalysisReport

logger = logging.getLogger(__name__)

TOKEN_LIFETIME = timedelta(hours=1)


class AnalysisClient:
    """通話分析APIのクライアント"""

    def __init__(
        self,
        private_key: str,
        org_id: str = "",
        api_url: str = "https://api.vapi.ai",
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.private_key = private_key
        self.org_id = org_id
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.private_key)

    def _token(self) -> str:
        payload = {
            "orgId": self.org_id,
            "token": {"tag": "private"},
            "exp": datetime.now(timezone.utc) + TOKEN_LIFETIME,
        }
        return jwt.encode(payload, self.private_key, algorithm="HS256")

    async def fetch_raw(self, call_id: str) -> Dict[str, Any]:
        """通話詳細をそのまま取得"""
        if not self.enabled:
            raise AnalysisError("Analysis API key is not configured", status_code=503)

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._token()}",
        }
        async with httpx.AsyncClient(
            base_url=self.api_url,
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport
        ) as client:
            try:
                response = await client.get(f"/call/{call_id}", headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(f"❌ Analysis fetch failed for {call_id}: HTTP {e.response.status_code}")
                raise AnalysisError(f"Analysis service returned {e.response.status_code}") from e
            except httpx.HTTPError as e:
                logger.error(f"❌ Analysis fetch failed for {call_id}: {e}")
                raise AnalysisError(f"Analysis service unreachable: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise AnalysisError("Analysis service returned invalid JSON") from e

    async def fetch_analysis(self, call_id: str) -> AnalysisReport:
        """
        通話分析レポートを取得

        Raises:
            AnalysisError: 取得失敗 (HTTPエラー / 通信エラー / 不正な応答)
        """
        data = await self.fetch_raw(call_id)
        analysis = data.get("analysis") or {}
        report = AnalysisReport(
            call_id=call_id,
            structured_report=analysis.get("structuredData"),
            transcript_text=data.get("transcript") or "",
            summary=analysis.get("summary") or ""
        )
        logger.info(
            "📊 Analysis fetched for %s (report=%s)",
            call_id,
            "yes" if report.structured_report else "pending"
        )
        return report

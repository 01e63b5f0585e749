"""
挙手 (発言リクエスト) キュー
- 追加は重複チェックなし、上限なし
- 承認で発言権を移動、却下は破棄のみ
- 自動失効なし (司会役が明示的に処理する)
"""

import logging
from typing import List, Optional

from models import FloorRequest
from speaker_engine import SpeakerResolutionEngine

logger = logging.getLogger(__name__)


class FloorRequestQueue:
    """
    リクエストIDは追加順の連番で、他のリクエストを処理しても変わらない
    """

    def __init__(self, engine: SpeakerResolutionEngine):
        self.engine = engine
        self.requests: List[FloorRequest] = []
        self._next_id = 0

    def request(
        self,
        participant_id: str,
        question_type: str = "clarification",
        preview: str = "",
        urgency: str = "medium",
        target_speaker: Optional[str] = None,
        requester_name: Optional[str] = None
    ) -> FloorRequest:
        """挙手を追加 (ロスター外の参加者は ValueError)"""
        if participant_id not in self.engine.roster:
            raise ValueError(f"Unknown participant: {participant_id}")
        if not requester_name:
            requester_name = self.engine.roster[participant_id].display_name

        hand = FloorRequest(
            request_id=self._next_id,
            requester_id=participant_id,
            requester_name=requester_name,
            question_type=question_type,
            target_speaker=target_speaker,
            urgency=urgency,
            preview=preview
        )
        self._next_id += 1
        self.requests.append(hand)
        logger.info("🙋 Hand raised by %s (%s, %s)", participant_id, question_type, urgency)
        return hand

    def _pop(self, request_id: int) -> Optional[FloorRequest]:
        for i, hand in enumerate(self.requests):
            if hand.request_id == request_id:
                return self.requests.pop(i)
        logger.warning("Floor request not found: %s", request_id)
        return None

    def acknowledge(self, request_id: int) -> Optional[FloorRequest]:
        """承認: キューから外して発言権を渡す"""
        hand = self._pop(request_id)
        if hand is None:
            return None
        if not self.engine.transfer_to(hand.requester_id):
            logger.warning("Floor not moved, %s is not in the roster", hand.requester_id)
            return None
        logger.info("✅ Acknowledged hand from %s", hand.requester_id)
        return hand

    def dismiss(self, request_id: int) -> Optional[FloorRequest]:
        """却下: キューから外すだけ"""
        hand = self._pop(request_id)
        if hand is not None:
            logger.info("🗑️ Dismissed hand from %s", hand.requester_id)
        return hand

    def clear(self) -> None:
        self.requests = []
        self._next_id = 0

    def __len__(self) -> int:
        return len(self.requests)

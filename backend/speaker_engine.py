"""
話者解決エンジン (ターンテイキング状態機械)
- transfer / speech start / speech end / 部分文字起こし の3系統の信号を突き合わせる
- 「今だれが発言権を持っているか」を一つの値として公開する
- 順序の乱れたイベントはエラーにせず後勝ちで処理する
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, List, Optional

from models import HUMAN_ID, Participant, SpeakerSnapshot

logger = logging.getLogger(__name__)

DEFAULT_MIN_PARTIAL_CHARS = 3


@dataclass
class SpeakerState:
    """発言権の単一の真実"""
    current_speaker: Optional[str] = None
    is_speech_active: bool = False
    pending_floor_transfer_to_human: bool = False
    last_ai_speaker: Optional[str] = None
    user_is_speaking: bool = False
    is_user_turn: bool = False


class SpeakerResolutionEngine:
    """
    参加者ロスターでパラメータ化された汎用エンジン
    Lincoln-Douglas / パネルのどちらの形式でも同じものを使う
    """

    def __init__(
        self,
        participants: Optional[Iterable[Participant]] = None,
        min_partial_chars: int = DEFAULT_MIN_PARTIAL_CHARS
    ):
        self.min_partial_chars = min_partial_chars
        self.state = SpeakerState()
        self.roster: Dict[str, Participant] = {}
        self.human_id = HUMAN_ID
        self.reset(participants or [])

    def reset(self, participants: Iterable[Participant], initial_speaker: Optional[str] = None) -> None:
        """ロスターを入れ替えて状態を初期化"""
        self.roster = {p.participant_id: p.model_copy() for p in participants}
        humans = [p.participant_id for p in self.roster.values() if p.is_human]
        self.human_id = humans[0] if humans else HUMAN_ID
        self.state = SpeakerState()

        ais = [pid for pid in self.roster if pid != self.human_id]
        if len(ais) == 1:
            # AIが1人だけの形式では speech-start の声は常にそのAI
            self.state.last_ai_speaker = ais[0]

        if initial_speaker and initial_speaker in self.roster:
            self.state.current_speaker = initial_speaker
            if initial_speaker != self.human_id:
                # 最初にしゃべるAIを speech-start の補正先として覚えておく
                self.state.last_ai_speaker = initial_speaker
            self._mark_active(initial_speaker)

    @property
    def participants(self) -> List[Participant]:
        return list(self.roster.values())

    @property
    def current_speaker(self) -> Optional[str]:
        return self.state.current_speaker

    def is_ai(self, participant_id: Optional[str]) -> bool:
        p = self.roster.get(participant_id or "")
        return p is not None and not p.is_human

    # ========== 内部ヘルパー ==========

    def _set_speaker(self, speaker: Optional[str], reason: str) -> None:
        if speaker != self.state.current_speaker:
            logger.info("🎯 SPEAKER CHANGE: %s → %s (%s)", self.state.current_speaker, speaker, reason)
        self.state.current_speaker = speaker
        self.state.is_user_turn = speaker == self.human_id
        self._mark_active(speaker)

    def _mark_active(self, speaker: Optional[str]) -> None:
        for pid, participant in self.roster.items():
            participant.is_active = pid == speaker

    def _give_floor_to_human(self, reason: str) -> None:
        self.state.pending_floor_transfer_to_human = False
        self.state.user_is_speaking = True
        self._set_speaker(self.human_id, reason)

    # ========== トランスポートからの信号 ==========

    def on_transfer_confirmed(self, destination_id: str) -> None:
        """トランスポートが音声ルーティングを切り替えた"""
        if destination_id == self.human_id:
            # AIの音声がまだ流れている可能性があるので speech-end まで待つ
            self.on_human_transfer_requested()
            return

        if destination_id not in self.roster:
            logger.warning("Transfer to unknown participant ignored: %s", destination_id)
            return

        if self.state.pending_floor_transfer_to_human:
            logger.info("🚫 Clearing pending user transfer due to AI-to-AI transfer")
        self.state.pending_floor_transfer_to_human = False
        self.state.user_is_speaking = False
        self.state.last_ai_speaker = destination_id
        self._set_speaker(destination_id, "transfer_confirmed")

    def on_human_transfer_requested(self) -> None:
        """AIがユーザーへの引き渡しを宣言 (発言権はまだ動かさない)"""
        self.state.pending_floor_transfer_to_human = True
        logger.info("⏳ Pending transfer to user, awaiting end of AI speech")

    def on_speech_start(self) -> None:
        """音声の再生開始 (誰の声かは不明)"""
        if not self.state.user_is_speaking and self.state.last_ai_speaker:
            # transfer 直後に新しいAIがしゃべり始めたケース
            self._set_speaker(self.state.last_ai_speaker, "speech_start")
        elif self.state.user_is_speaking:
            logger.debug("Not correcting speaker on speech start - user is speaking")

        self.state.is_speech_active = self.state.current_speaker is not None
        if not self.state.is_speech_active:
            logger.debug("Speech start with no attributable speaker, floor stays unassigned")

    def on_speech_end(self) -> None:
        """音声の停止"""
        self.state.is_speech_active = False

        if self.state.pending_floor_transfer_to_human:
            self._give_floor_to_human("speech_end_after_transfer")
            return

        # 次の明示的な信号が来るまで発言権は動かさない
        logger.debug("Speech ended with no pending transfer, waiting for next speaker assignment")

    def on_partial_transcript(self, role: str, text: str) -> None:
        """途中経過の文字起こし (ユーザー発話の強い証拠)"""
        if role != "human":
            return
        if len((text or "").strip()) < self.min_partial_chars:
            return
        self._give_floor_to_human("partial_transcript")

    def on_final_transcript(self, role: str, text: str) -> None:
        """確定した文字起こし"""
        if role != "human":
            self.state.user_is_speaking = False
            return
        if (text or "").strip():
            self._give_floor_to_human("final_transcript")

    # ========== 手動操作 ==========

    def request_human_floor(self) -> None:
        """UIからの「発言する」操作 (引き渡し待ちをスキップ)"""
        self._give_floor_to_human("manual_override")

    def transfer_to(self, participant_id: str) -> bool:
        """手動の発言権移動"""
        if participant_id == self.human_id:
            self.request_human_floor()
            return True
        if participant_id not in self.roster:
            logger.warning("Manual transfer to unknown participant ignored: %s", participant_id)
            return False
        self.on_transfer_confirmed(participant_id)
        return True

    # ========== 読み取り ==========

    def snapshot(self) -> SpeakerSnapshot:
        return SpeakerSnapshot(
            current_speaker=self.state.current_speaker,
            is_speech_active=self.state.is_speech_active,
            is_user_turn=self.state.is_user_turn
        )

    def debug_state(self) -> dict:
        return asdict(self.state)

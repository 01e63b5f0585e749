"""
データモデル定義
- 参加者 / 発話 / 議題フェーズ / 発言リクエスト
- セッション開始パラメータ
- プレゼンテーション層へのスナップショット
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    INACTIVE = "inactive"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDING = "ending"


class DebateFormat(str, Enum):
    LINCOLN_DOUGLAS = "lincoln_douglas"
    PANEL = "panel"


class ParticipantKind(str, Enum):
    HUMAN = "human"
    AI_MODERATOR = "ai_moderator"
    AI_PANELIST = "ai_panelist"


# 固定の参加者ID
HUMAN_ID = "user"
MODERATOR_ID = "moderator"
OPPONENT_ID = "opponent"


def panelist_id(index: int) -> str:
    return f"panelist_{index}"


class Participant(BaseModel):
    """音声で参加する話者"""
    participant_id: str
    kind: ParticipantKind
    display_name: str
    is_active: bool = False

    @property
    def is_human(self) -> bool:
        return self.kind == ParticipantKind.HUMAN


class TranscriptEntry(BaseModel):
    """確定済みの1発話"""
    entry_id: str
    speaker_id: str
    role: Literal["human", "other"]
    text: str
    occurred_at: datetime
    is_partial: bool = False


class ActivePartial(BaseModel):
    """表示中の途中経過 (debounce適用後)"""
    speaker_id: str
    role: Literal["human", "other"]
    text: str
    received_at: datetime


class AgendaPhase(BaseModel):
    """ディベート形式の1フェーズ"""
    code: str
    display_name: str
    nominal_duration_seconds: int
    expected_speaker_role: str
    description: str = ""
    tips: str = ""


QuestionType = Literal["clarification", "challenge", "follow-up", "counterpoint"]
Urgency = Literal["low", "medium", "high"]


class FloorRequest(BaseModel):
    """挙手 (発言リクエスト)"""
    request_id: int
    requester_id: str
    requester_name: str
    question_type: QuestionType = "clarification"
    target_speaker: Optional[str] = None
    urgency: Urgency = "medium"
    preview: str = ""
    created_at: datetime = Field(default_factory=datetime.now)


class PanelistConfig(BaseModel):
    name: str
    archetype: str = "pragmatist"
    custom_stance: Optional[str] = None


class SessionConfig(BaseModel):
    """セッション開始パラメータ"""
    format: DebateFormat
    resolution: str = ""
    # Lincoln-Douglas
    user_side: Optional[Literal["affirmative", "negative"]] = None
    # Panel
    user_stance: str = ""
    moderator_style: str = "neutral"
    ai_panelists: List[PanelistConfig] = Field(default_factory=list)


class SpeakerSnapshot(BaseModel):
    current_speaker: Optional[str] = None
    is_speech_active: bool = False
    is_user_turn: bool = False


class PhaseSnapshot(BaseModel):
    index: int
    total: int
    phase: AgendaPhase
    elapsed_seconds: int
    time_remaining_seconds: int
    is_last_phase: bool


class TranscriptLine(BaseModel):
    speaker_id: str
    text: str
    elapsed: str


class SessionSnapshot(BaseModel):
    """プレゼンテーション層に公開する読み取り専用の状態"""
    status: SessionStatus
    format: Optional[DebateFormat] = None
    call_id: Optional[str] = None
    error: Optional[str] = None
    audio_level: float = 0.0
    participants: List[Participant] = []
    speaker: SpeakerSnapshot = Field(default_factory=SpeakerSnapshot)
    active_partial: Optional[ActivePartial] = None
    transcript: List[TranscriptLine] = []
    phase: Optional[PhaseSnapshot] = None
    raised_hands: List[FloorRequest] = []


class SessionRecord(BaseModel):
    """終了したセッションの保存用レコード"""
    format: DebateFormat
    resolution: str
    user_side: Optional[str] = None
    user_stance: str = ""
    moderator_style: str = ""
    participants: List[Participant] = []
    transcript: str = ""
    duration_seconds: int = 0
    phases_reached: int = 0
    call_id: Optional[str] = None
    ended_at: str  # ISO 8601


class AnalysisReport(BaseModel):
    """通話分析の結果"""
    call_id: str
    structured_report: Optional[Dict[str, Any]] = None
    transcript_text: str = ""
    summary: str = ""


# リクエスト/レスポンス用モデル
class NotesBody(BaseModel):
    text: str = ""

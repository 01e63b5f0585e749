"""
議題 (フェーズ) の進行管理
- 形式ごとの固定フェーズ表 (Lincoln-Douglas / パネル)
- 前進のみのカーソルとフェーズ内タイマー
- 期待される話者は表示用のヒントであり、発言の強制はしない
"""

import logging
import time
from typing import Callable, List, Optional

from models import AgendaPhase, DebateFormat

logger = logging.getLogger(__name__)


LINCOLN_DOUGLAS_PHASES: List[AgendaPhase] = [
    AgendaPhase(
        code="AC",
        display_name="Affirmative Constructive",
        nominal_duration_seconds=360,
        expected_speaker_role="affirmative",
        description="6 minutes - Present your case supporting the resolution",
        tips="Define key terms, present 2-3 strong contentions with evidence",
    ),
    AgendaPhase(
        code="CX1",
        display_name="Cross Examination (Neg questions Aff)",
        nominal_duration_seconds=180,
        expected_speaker_role="negative",
        description="3 minutes - Question your opponent's arguments",
        tips="Ask strategic questions to expose weaknesses in framework",
    ),
    AgendaPhase(
        code="NC",
        display_name="Negative Constructive",
        nominal_duration_seconds=420,
        expected_speaker_role="negative",
        description="7 minutes - Present case against resolution and refute affirmative",
        tips="Present competing framework, directly clash with affirmative case",
    ),
    AgendaPhase(
        code="CX2",
        display_name="Cross Examination (Aff questions Neg)",
        nominal_duration_seconds=180,
        expected_speaker_role="affirmative",
        description="3 minutes - Affirmative questions negative",
        tips="Get concessions that help rebuild your case",
    ),
    AgendaPhase(
        code="1AR",
        display_name="First Affirmative Rebuttal",
        nominal_duration_seconds=240,
        expected_speaker_role="affirmative",
        description="4 minutes - Rebuild affirmative case",
        tips="Prioritize strongest arguments, group attacks efficiently",
    ),
    AgendaPhase(
        code="NR",
        display_name="Negative Rebuttal",
        nominal_duration_seconds=360,
        expected_speaker_role="negative",
        description="6 minutes - Extend negative arguments",
        tips="Extend strongest impacts, highlight dropped arguments",
    ),
    AgendaPhase(
        code="2AR",
        display_name="Second Affirmative Rebuttal",
        nominal_duration_seconds=180,
        expected_speaker_role="affirmative",
        description="3 minutes - Final affirmative speech",
        tips="Focus on key voting issues, strong closing call to action",
    ),
]

PANEL_PHASES: List[AgendaPhase] = [
    AgendaPhase(
        code="INTRO",
        display_name="Introduction",
        nominal_duration_seconds=120,
        expected_speaker_role="moderator",
        description="2 minutes - Moderator introduces topic and panelists",
        tips="Set the stage, introduce participants, establish ground rules",
    ),
    AgendaPhase(
        code="OPENING",
        display_name="Opening Statements",
        nominal_duration_seconds=300,
        expected_speaker_role="panelist",
        description="5 minutes - Each panelist gives opening statement",
        tips="Present your core position clearly and compellingly",
    ),
    AgendaPhase(
        code="DISCUSSION",
        display_name="Open Discussion",
        nominal_duration_seconds=900,
        expected_speaker_role="panelist",
        description="15 minutes - Free-flowing discussion between panelists",
        tips="Engage with others' points, build on ideas, challenge respectfully",
    ),
    AgendaPhase(
        code="QA",
        display_name="Q&A Session",
        nominal_duration_seconds=600,
        expected_speaker_role="moderator",
        description="10 minutes - Structured questions and answers",
        tips="Use hand-raising system, ask clarifying questions",
    ),
    AgendaPhase(
        code="CLOSING",
        display_name="Closing Statements",
        nominal_duration_seconds=240,
        expected_speaker_role="panelist",
        description="4 minutes - Final statements from each panelist",
        tips="Summarize your position, address key counterarguments",
    ),
    AgendaPhase(
        code="WRAP",
        display_name="Wrap-up",
        nominal_duration_seconds=120,
        expected_speaker_role="moderator",
        description="2 minutes - Moderator concludes discussion",
        tips="Synthesize key points, thank participants",
    ),
]


def phases_for(debate_format: DebateFormat) -> List[AgendaPhase]:
    if debate_format == DebateFormat.PANEL:
        return list(PANEL_PHASES)
    return list(LINCOLN_DOUGLAS_PHASES)


class AgendaSequencer:
    """固定フェーズ列の前進専用カーソル"""

    def __init__(self, phases: List[AgendaPhase], clock: Callable[[], float] = time.monotonic):
        if not phases:
            raise ValueError("Agenda requires at least one phase")
        self.phases = list(phases)
        self.clock = clock
        self.index = 0
        self.phase_started_at: Optional[float] = None

    @property
    def current(self) -> AgendaPhase:
        return self.phases[self.index]

    @property
    def current_phase_id(self) -> str:
        return self.current.code

    @property
    def is_last_phase(self) -> bool:
        return self.index >= len(self.phases) - 1

    @property
    def expected_speaker_role(self) -> str:
        return self.current.expected_speaker_role

    def start_clock(self) -> None:
        """フェーズタイマーを0から開始"""
        self.phase_started_at = self.clock()

    def advance(self) -> bool:
        """
        次のフェーズへ進む
        最後のフェーズでは何もしない (エラーにも先頭への巻き戻しにもならない)
        """
        if self.is_last_phase:
            logger.debug("Agenda already at last phase %s", self.current.code)
            return False
        self.index += 1
        if self.phase_started_at is not None:
            self.phase_started_at = self.clock()
        logger.info("⏭️ Advanced to phase %s (%s)", self.current.code, self.current.display_name)
        return True

    def elapsed_seconds(self) -> int:
        if self.phase_started_at is None:
            return 0
        return max(0, int(self.clock() - self.phase_started_at))

    def time_remaining(self) -> int:
        return max(0, self.current.nominal_duration_seconds - self.elapsed_seconds())


# ========== Lincoln-Douglas のフェーズ別の役割 ==========

def opposite_side(side: str) -> str:
    return "negative" if side == "affirmative" else "affirmative"


def ai_phase_role(phase_code: str, ai_stance: str) -> str:
    """AIのフェーズ内の役割: speak / question / answer / listen"""
    affirmative = ai_stance == "affirmative"
    if phase_code in ("AC", "1AR", "2AR"):
        return "speak" if affirmative else "listen"
    if phase_code in ("NC", "NR"):
        return "listen" if affirmative else "speak"
    if phase_code == "CX1":
        return "answer" if affirmative else "question"
    if phase_code == "CX2":
        return "question" if affirmative else "answer"
    return "listen"


def ai_waits_for_human(phase_code: str, user_side: Optional[str]) -> bool:
    """このフェーズでAIがユーザーの先行発話を待つべきか"""
    if user_side not in ("affirmative", "negative"):
        return False
    ai_stance = opposite_side(user_side)

    if phase_code in ("AC", "1AR", "2AR"):
        return ai_stance == "affirmative"
    if phase_code in ("NC", "NR"):
        return ai_stance == "negative"
    if phase_code == "CX1":
        # 質問側が相手の発話を待つ
        return ai_stance == "negative"
    if phase_code == "CX2":
        return ai_stance == "affirmative"
    return False

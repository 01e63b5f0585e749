"""
アシスタント設定の組み立て
- Lincoln-Douglas: 単一アシスタント
- パネル: 司会 + パネリストのスクワッド
- 通話中に送るステージ指示 (フェーズ更新 / 残り時間 / マイク受け渡し)
コアはこのペイロードの中身を解釈しない
"""

from typing import Any, Dict, List

from agenda import LINCOLN_DOUGLAS_PHASES, PANEL_PHASES, ai_phase_role, ai_waits_for_human, opposite_side
from models import DebateFormat, PanelistConfig, SessionConfig
from transcript_accumulator import format_clock

DEFAULT_VOICE_ID = "UgBBYS2sOqTuMpoF3BR0"

MODERATOR_PERSONALITIES = {
    "neutral": "You maintain strict neutrality and ensure equal speaking time for all participants.",
    "probing": "You ask insightful follow-up questions and challenge participants to defend their positions.",
    "strict": "You enforce time limits strictly and keep discussions tightly focused on the resolution.",
    "conversational": "You facilitate natural conversation flow while gently guiding the discussion.",
}

PANELIST_ARCHETYPES = {
    "pragmatist": "You focus on practical solutions and what actually works in practice.",
    "idealist": "You emphasize principles, moral considerations, and what ought to be.",
    "skeptic": "You question assumptions, demand strong evidence and point out flaws in reasoning.",
    "analyst": "You rely on statistics, data, and empirical evidence.",
    "advocate": "You argue with passion, conviction and personal stories.",
    "economist": "You view issues through market forces and cost-benefit analysis.",
    "philosopher": "You examine fundamental principles and the deeper meaning behind issues.",
    "historian": "You draw on historical precedent and patterns.",
    "scientist": "You apply scientific methodology and evidence-based reasoning.",
    "activist": "You are passionate about social change and addressing injustices.",
}

PASS_MICROPHONE_TEXT = "I pass the microphone to you. Please proceed with your speech."
INTERRUPT_TEXT = "STOP speaking immediately. The user wants to speak now. Do not respond or say anything else."

_LD_PHASE_BY_CODE = {p.code: p for p in LINCOLN_DOUGLAS_PHASES}
_PANEL_PHASE_BY_CODE = {p.code: p for p in PANEL_PHASES}


def ld_ai_name(user_side: str) -> str:
    # ユーザーが肯定側なら AI は Douglas (否定側)
    return "Douglas" if user_side == "affirmative" else "Lincoln"


def archetype_description(panelist: PanelistConfig) -> str:
    if panelist.archetype == "custom" and panelist.custom_stance:
        return panelist.custom_stance
    return PANELIST_ARCHETYPES.get(panelist.archetype, panelist.archetype)


def _voice() -> Dict[str, Any]:
    return {
        "provider": "11labs",
        "voiceId": DEFAULT_VOICE_ID,
        "stability": 0.5,
        "similarityBoost": 0.75,
    }


def _model(system_prompt: str, tools: List[Dict[str, Any]] = None) -> Dict[str, Any]:
    model = {
        "provider": "openai",
        "model": "gpt-4.1",
        "temperature": 0.7,
        "maxTokens": 500,
        "messages": [{"role": "system", "content": system_prompt}],
    }
    if tools:
        model["tools"] = tools
    return model


def build_lincoln_douglas_assistant(config: SessionConfig) -> Dict[str, Any]:
    """Lincoln-Douglas 形式の単一アシスタント"""
    ai_stance = opposite_side(config.user_side)
    name = ld_ai_name(config.user_side)
    first_phase = LINCOLN_DOUGLAS_PHASES[0]
    waits = ai_waits_for_human(first_phase.code, config.user_side)

    system_prompt = (
        f'You are {name}, a competitive Lincoln-Douglas debater arguing the {ai_stance.upper()} '
        f'side of the resolution: "{config.resolution}".\n'
        f"The user argues the {config.user_side.upper()} side. Follow the phase updates you receive "
        "as system messages; speak only in your phases, answer in cross-examination when questioned, "
        "and stay silent while listening. Keep speech conversational yet substantive."
    )
    if waits:
        first_message = f"I'm {name}. Whenever you're ready, please begin."
    else:
        first_message = f"I'm {name}, ready to present the {ai_stance} position in this debate."

    return {
        "name": name,
        "firstMessage": first_message,
        "model": _model(system_prompt),
        "voice": _voice(),
        "transcriber": {"provider": "deepgram", "model": "nova-2", "language": "en-US"},
        "stopSpeakingPlan": {"numWords": 2, "voiceSeconds": 0.3, "backoffSeconds": 2},
        "metadata": {
            "debateRole": name.lower(),
            "stance": ai_stance,
            "resolution": config.resolution,
            "shouldWaitForUser": waits,
        },
    }


def build_panel_squad(config: SessionConfig) -> Dict[str, Any]:
    """司会 + パネリストのスクワッド (司会が最初に話す)"""
    personality = MODERATOR_PERSONALITIES.get(config.moderator_style, MODERATOR_PERSONALITIES["neutral"])
    roster = "\n".join(f"- {p.name}: {archetype_description(p)}" for p in config.ai_panelists)
    phases = "\n".join(
        f"{i + 1}. {p.code} ({p.nominal_duration_seconds // 60} min): {p.description}"
        for i, p in enumerate(PANEL_PHASES)
    )
    transfer_tool = {
        "type": "function",
        "function": {
            "name": "transferToUser",
            "description": "Hand the floor to the human panelist once you finish speaking.",
            "parameters": {"type": "object", "properties": {}},
        },
    }
    all_names = ["Moderator"] + [p.name for p in config.ai_panelists]

    moderator_prompt = (
        f'You are an expert panel debate moderator facilitating a discussion on: "{config.resolution}"\n'
        f"MODERATOR PERSONALITY: {personality}\n"
        f"PANELISTS:\n- User: {config.user_stance}\n{roster}\n"
        f"PHASES:\n{phases}\n"
        "Ensure equal participation, keep the discussion on the resolution and transfer naturally."
    )
    members = [{
        "assistant": {
            "name": "Moderator",
            "firstMessageMode": "assistant-speaks-first-with-model-generated-message",
            "model": _model(moderator_prompt, [transfer_tool]),
            "voice": _voice(),
        },
        "assistantDestinations": [
            {"type": "assistant", "assistantName": n} for n in all_names if n != "Moderator"
        ],
    }]

    for panelist in config.ai_panelists:
        prompt = (
            f'You are {panelist.name}, a panelist discussing: "{config.resolution}"\n'
            f"PERSPECTIVE: {archetype_description(panelist)}\n"
            "Speak when the moderator hands you the floor, keep contributions focused, "
            "and hand back to the moderator when finished."
        )
        members.append({
            "assistant": {
                "name": panelist.name,
                "firstMessageMode": "assistant-waits-for-user",
                "model": _model(prompt, [transfer_tool]),
                "voice": _voice(),
            },
            "assistantDestinations": [
                {"type": "assistant", "assistantName": n} for n in all_names if n != panelist.name
            ],
        })

    return {"members": members}


def build_session_payload(config: SessionConfig) -> Dict[str, Any]:
    """connect() に渡す不透明なペイロード"""
    if config.format == DebateFormat.PANEL:
        return {"squad": build_panel_squad(config)}
    return {"assistant": build_lincoln_douglas_assistant(config)}


# ========== ステージ指示 ==========

def _mode_description(role: str, waits: bool) -> str:
    if role == "speak":
        return "WAIT MODE: User speaks first, then you present your speech." if waits else "SPEAK MODE: This is your speaking phase."
    if role == "question":
        return "WAIT MODE: User starts, then you ask questions." if waits else "QUESTION MODE: Ask strategic questions."
    if role == "answer":
        return "ANSWER MODE: Respond to user's questions strategically."
    return "LISTEN MODE: This is not your speaking phase. Listen carefully and take notes."


def phase_update_message(config: SessionConfig, phase_code: str) -> str:
    """フェーズ切り替え時のシステムメッセージ"""
    if config.format == DebateFormat.PANEL:
        phase = _PANEL_PHASE_BY_CODE.get(phase_code)
        name = phase.display_name if phase else phase_code
        return (
            f"PHASE UPDATE - {phase_code}: {name}\n"
            f"Moderator, guide the panel into this phase. {phase.tips if phase else ''}".rstrip()
        )

    phase = _LD_PHASE_BY_CODE.get(phase_code)
    ai_stance = opposite_side(config.user_side)
    role = ai_phase_role(phase_code, ai_stance)
    waits = ai_waits_for_human(phase_code, config.user_side)
    duration = f"{phase.nominal_duration_seconds // 60}" if phase else "?"
    return (
        f"PHASE UPDATE - {phase_code}: {phase.display_name if phase else 'Unknown Phase'}\n\n"
        "CURRENT PHASE INSTRUCTIONS:\n"
        f"- Phase: {phase_code} ({phase.description if phase else ''})\n"
        f"- Duration: {duration} minutes\n"
        f"- Your Role: {role.upper()}\n"
        f"- Behavior: {_mode_description(role, waits)}\n\n"
        f"Phase Tips: {phase.tips if phase else 'Adapt to the current situation'}"
    )


def context_update_message(
    config: SessionConfig,
    action: str,
    phase_code: str,
    elapsed_seconds: int,
    remaining_seconds: int,
    additional_info: str = ""
) -> str:
    """通話中の状況更新 (開始通知や残り時間警告)"""
    lines = [
        "DEBATE CONTEXT UPDATE:",
        "",
        f"ACTION: {action}",
        f'RESOLUTION: "{config.resolution}"',
        f"CURRENT PHASE: {phase_code}",
        f"TIME ELAPSED: {format_clock(elapsed_seconds)}",
        f"TIME REMAINING: {format_clock(remaining_seconds)}",
    ]
    if config.format == DebateFormat.LINCOLN_DOUGLAS:
        lines.insert(4, f"YOUR STANCE: {opposite_side(config.user_side).upper()}")
        lines.insert(5, f"USER STANCE: {config.user_side.upper()}")
    if additional_info:
        lines += ["", f"ADDITIONAL INFO: {additional_info}"]
    lines += ["", "Remember your role and respond appropriately to this context."]
    return "\n".join(lines)


def transfer_intent_message(display_name: str) -> str:
    return f"The moderator has recognized {display_name}. Transfer the floor to {display_name} now."


def debate_started_message(config: SessionConfig, phase_code: str, remaining_seconds: int) -> str:
    """通話開始直後に送る状況更新"""
    if config.format == DebateFormat.LINCOLN_DOUGLAS:
        info = f'Resolution: "{config.resolution}" | Your stance: {opposite_side(config.user_side).upper()}'
    else:
        names = ", ".join(p.name.strip() for p in config.ai_panelists)
        info = f'Resolution: "{config.resolution}" | Panelists: {names}'
    return context_update_message(
        config,
        action="Debate started",
        phase_code=phase_code,
        elapsed_seconds=0,
        remaining_seconds=remaining_seconds,
        additional_info=info
    )

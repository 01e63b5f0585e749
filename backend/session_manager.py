"""
セッション管理
- ライフサイクル: INACTIVE → CONNECTING → ACTIVE → ENDING → INACTIVE
- トランスポートイベントを話者エンジン・文字起こしへ振り分け
- フェーズ進行 / 挙手キュー / 手動操作コマンド
- タイマー (無発話時のマイク受け渡し、フェーズ残り時間警告)
- 終了時にセッション記録を保存
"""

import asyncio
import logging
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import assistants
from agenda import AgendaSequencer, ai_waits_for_human, phases_for
from errors import SessionBusyError, SessionConfigError, TransportError
from floor_queue import FloorRequestQueue
from models import (
    HUMAN_ID,
    MODERATOR_ID,
    OPPONENT_ID,
    DebateFormat,
    FloorRequest,
    Participant,
    ParticipantKind,
    PhaseSnapshot,
    SessionConfig,
    SessionRecord,
    SessionSnapshot,
    SessionStatus,
    TranscriptLine,
    panelist_id,
)
from settings_manager import TUNABLE_DEFAULTS
from speaker_engine import SpeakerResolutionEngine
from storage import LAST_SESSION_KEY, StorageBackend
from transcript_accumulator import TranscriptAccumulator
from transport import (
    CallEnded,
    CallStarted,
    HumanTransferRequested,
    RealtimeTransport,
    SpeechEnd,
    SpeechStart,
    Transcript,
    TransferConfirmed,
    TransportErrorEvent,
    VolumeLevel,
)

logger = logging.getLogger(__name__)

IDLE_TIMER = "idle_auto_pass"
WARNING_TIMER = "time_warning"


# 参加者IDや人間側の表示名と衝突するパネリスト名
RESERVED_NAMES = {HUMAN_ID, "you", MODERATOR_ID, OPPONENT_ID}
RESERVED_NAME_PATTERN = re.compile(r"panelist_\d+")


def validate_config(config: SessionConfig) -> None:
    """開始パラメータの検証 (失敗時は SessionConfigError)"""
    if not config.resolution.strip():
        raise SessionConfigError("Resolution text is required")

    if config.format == DebateFormat.LINCOLN_DOUGLAS:
        if config.user_side not in ("affirmative", "negative"):
            raise SessionConfigError("Choose a side (affirmative or negative)")
        return

    if not config.ai_panelists:
        raise SessionConfigError("Add at least one AI panelist")
    if config.moderator_style not in assistants.MODERATOR_PERSONALITIES:
        raise SessionConfigError(f"Unknown moderator style: {config.moderator_style}")

    seen = set()
    for panelist in config.ai_panelists:
        name = panelist.name.strip()
        if not name:
            raise SessionConfigError("Every panelist needs a name")
        if name.lower() in RESERVED_NAMES or RESERVED_NAME_PATTERN.fullmatch(name.lower()):
            raise SessionConfigError(f"Panelist name is reserved: {name}")
        if name.lower() in seen:
            raise SessionConfigError(f"Duplicate panelist name: {name}")
        seen.add(name.lower())
        if panelist.archetype == "custom":
            if not (panelist.custom_stance or "").strip():
                raise SessionConfigError(f"Custom panelist {name} needs a stance")
        elif panelist.archetype not in assistants.PANELIST_ARCHETYPES:
            raise SessionConfigError(f"Unknown archetype: {panelist.archetype}")


def build_roster(config: SessionConfig) -> List[Participant]:
    """形式ごとの参加者ロスター (セッション中は不変)"""
    roster = [Participant(participant_id=HUMAN_ID, kind=ParticipantKind.HUMAN, display_name="You")]

    if config.format == DebateFormat.LINCOLN_DOUGLAS:
        roster.append(Participant(
            participant_id=OPPONENT_ID,
            kind=ParticipantKind.AI_PANELIST,
            display_name=assistants.ld_ai_name(config.user_side)
        ))
        return roster

    roster.append(Participant(
        participant_id=MODERATOR_ID,
        kind=ParticipantKind.AI_MODERATOR,
        display_name="Moderator"
    ))
    for i, panelist in enumerate(config.ai_panelists):
        roster.append(Participant(
            participant_id=panelist_id(i),
            kind=ParticipantKind.AI_PANELIST,
            display_name=panelist.name.strip()
        ))
    return roster


class SessionController:
    """
    1プロセス1セッション・1トランスポートのコントローラ

    イベント処理は同期、start() / stop() だけが await する
    """

    def __init__(
        self,
        settings: Optional[Dict[str, Any]] = None,
        storage: Optional[StorageBackend] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        tunables = {**TUNABLE_DEFAULTS, **(settings or {})}
        self.idle_auto_pass_seconds = float(tunables["idle_auto_pass_seconds"])
        self.time_warning_seconds = int(tunables["time_warning_seconds"])
        self.connect_timeout = float(tunables["connect_timeout_seconds"])
        self.disconnect_timeout = float(tunables["disconnect_timeout_seconds"])
        min_chars = int(tunables["min_partial_chars"])

        self.storage = storage
        self.clock = clock

        self.engine = SpeakerResolutionEngine(min_partial_chars=min_chars)
        self.accumulator = TranscriptAccumulator(
            debounce_seconds=float(tunables["partial_debounce_ms"]) / 1000,
            min_partial_chars=min_chars,
            on_change=self._notify
        )
        self.queue = FloorRequestQueue(self.engine)
        self.agenda: Optional[AgendaSequencer] = None

        self.status = SessionStatus.INACTIVE
        self.config: Optional[SessionConfig] = None
        self.call_id: Optional[str] = None
        self.error: Optional[str] = None
        self.audio_level = 0.0
        self.transport: Optional[RealtimeTransport] = None

        self._attempt = 0
        self._started_at: Optional[float] = None
        self._timers: Dict[str, asyncio.Task] = {}
        self._listeners: List[Callable[[], None]] = []

    # ========== トランスポートの接続 ==========

    @asynccontextmanager
    async def attached(self, transport: RealtimeTransport):
        """
        トランスポートを接続し、どの経路で抜けても切り離す

        Usage:
            async with controller.attached(transport):
                ...
        """
        if self.transport is not None:
            raise SessionBusyError("A transport is already attached")
        self.transport = transport
        logger.info("🔌 Transport attached")
        try:
            yield self
        finally:
            try:
                await self.stop()
            finally:
                self.transport = None
                logger.info("🔌 Transport detached")

    # ========== ライフサイクル ==========

    async def start(self, config: SessionConfig) -> Optional[str]:
        """
        セッション開始

        Returns:
            通話ID (途中で stop() された場合は None)

        Raises:
            SessionBusyError: INACTIVE 以外で呼ばれた
            SessionConfigError: 開始パラメータが不正
            TransportError: 接続に失敗した
        """
        if self.status != SessionStatus.INACTIVE:
            raise SessionBusyError(f"Session is {self.status.value}")
        if self.transport is None:
            raise TransportError("No transport attached")
        validate_config(config)

        self._attempt += 1
        attempt = self._attempt

        self.config = config
        self.call_id = None
        self.error = None
        self.audio_level = 0.0
        initial = MODERATOR_ID if config.format == DebateFormat.PANEL else None
        self.engine.reset(build_roster(config), initial_speaker=initial)
        self.accumulator.start()
        self.queue.clear()
        self.agenda = AgendaSequencer(phases_for(config.format), clock=self.clock)
        self._started_at = self.clock()
        self._set_status(SessionStatus.CONNECTING)

        payload = assistants.build_session_payload(config)
        try:
            call_id = await asyncio.wait_for(self.transport.connect(payload), timeout=self.connect_timeout)
        except Exception as e:
            if attempt != self._attempt:
                logger.info("Discarding failed connect from superseded start: %s", e)
                return None
            message = str(e) or "Failed to start the call"
            logger.error(f"❌ Failed to connect: {message}")
            self._teardown(error=message)
            raise TransportError(message) from e

        if attempt != self._attempt or self.status != SessionStatus.CONNECTING:
            logger.info("Discarding stale connect result (call %s)", call_id)
            return None

        self.call_id = call_id or self.call_id
        await self._activate()
        return self.call_id

    async def stop(self) -> None:
        """セッション終了 (何度呼んでも安全)"""
        if self.status in (SessionStatus.INACTIVE, SessionStatus.ENDING):
            logger.debug("stop() ignored, session is %s", self.status.value)
            return

        needs_disconnect = self.transport is not None
        self._attempt += 1
        record = self._build_record()
        self._set_status(SessionStatus.ENDING)

        await self._cancel_timers()
        await self.accumulator.aclose()
        self._clear_state()
        self._archive(record)

        if needs_disconnect:
            try:
                await asyncio.wait_for(self.transport.disconnect(), timeout=self.disconnect_timeout)
            except Exception as e:
                logger.warning(f"Transport disconnect failed: {e}")

        self._set_status(SessionStatus.INACTIVE)
        logger.info("🛑 Session stopped")

    async def _activate(self) -> None:
        self.agenda.start_clock()
        self._set_status(SessionStatus.ACTIVE)
        logger.info("✅ Session active: format=%s call=%s", self.config.format.value, self.call_id)
        self._arm_phase_timers()

        # 開始通知と最初のフェーズの指示
        phase_code = self.agenda.current_phase_id
        await self._send(assistants.debate_started_message(self.config, phase_code, self.agenda.time_remaining()))
        if self.status == SessionStatus.ACTIVE:
            await self._send(assistants.phase_update_message(self.config, phase_code))

    def _teardown(self, error: Optional[str] = None) -> None:
        """リモート切断・エラー時の同期的な後始末 (disconnect は送らない)"""
        self._attempt += 1
        record = self._build_record()
        for task in self._timers.values():
            if task is not asyncio.current_task():
                task.cancel()
        self._timers.clear()
        self._clear_state()
        self._archive(record)
        self.error = error
        self._set_status(SessionStatus.INACTIVE)

    def _clear_state(self) -> None:
        self.queue.clear()
        self.engine.reset([])
        self.accumulator.reset()
        self.agenda = None
        self.config = None
        self.audio_level = 0.0
        self._started_at = None

    # ========== トランスポートイベント ==========

    def handle_event(self, event) -> None:
        """デコード済みのトランスポートイベントを処理"""
        if isinstance(event, CallStarted):
            if self.status == SessionStatus.CONNECTING and event.call_id:
                self.call_id = event.call_id
            return

        if isinstance(event, CallEnded):
            if self.status in (SessionStatus.CONNECTING, SessionStatus.ACTIVE):
                logger.info("📞 Call ended by remote side")
                self._teardown()
            return

        if isinstance(event, TransportErrorEvent):
            if self.status in (SessionStatus.CONNECTING, SessionStatus.ACTIVE):
                logger.error(f"❌ Transport error: {event.message}")
                self._teardown(error=event.message)
            return

        if self.status != SessionStatus.ACTIVE:
            logger.debug("Dropping %s event, session is %s", event.kind, self.status.value)
            return

        if isinstance(event, SpeechStart):
            self.engine.on_speech_start()
        elif isinstance(event, SpeechEnd):
            self.engine.on_speech_end()
            self.audio_level = 0.0
        elif isinstance(event, VolumeLevel):
            self.audio_level = event.level
        elif isinstance(event, Transcript):
            self._on_transcript(event)
        elif isinstance(event, TransferConfirmed):
            target = self.resolve_participant(event.destination)
            if target is None:
                logger.warning("Transfer to unknown destination ignored: %s", event.destination)
            else:
                self.engine.on_transfer_confirmed(target)
        elif isinstance(event, HumanTransferRequested):
            self.engine.on_human_transfer_requested()

        self._notify()

    def _on_transcript(self, event: Transcript) -> None:
        if event.is_partial:
            self.engine.on_partial_transcript(event.role, event.text)
        else:
            self.engine.on_final_transcript(event.role, event.text)

        speaker_id = self._attribute(event.role)
        self.accumulator.on_transcript_event(
            speaker_id, event.role, event.text, event.is_partial, event.timestamp
        )

        if event.role == "human" and len(event.text.strip()) >= self.engine.min_partial_chars:
            # ユーザーが話し始めたので自動受け渡しは不要
            self._cancel_timer(IDLE_TIMER)

    def _attribute(self, role: str) -> str:
        """文字起こしの話者ID"""
        if role == "human":
            return self.engine.human_id
        current = self.engine.current_speaker
        if self.engine.is_ai(current):
            return current
        if self.engine.state.last_ai_speaker:
            return self.engine.state.last_ai_speaker
        for participant in self.engine.participants:
            if not participant.is_human:
                return participant.participant_id
        return "assistant"

    def resolve_participant(self, destination: str) -> Optional[str]:
        """参加者ID or 表示名 (大文字小文字無視) → 参加者ID"""
        if destination in self.engine.roster:
            return destination
        wanted = (destination or "").strip().lower()
        for participant in self.engine.participants:
            if participant.display_name.lower() == wanted:
                return participant.participant_id
        return None

    # ========== コマンド ==========

    def _require_active(self, command: str) -> bool:
        if self.status != SessionStatus.ACTIVE:
            logger.warning("%s ignored, session is %s", command, self.status.value)
            return False
        return True

    async def _send(self, text: str, role: str = "system") -> None:
        try:
            if role == "user":
                await self.transport.send_user_message(text)
            else:
                await self.transport.send_system_message(text)
        except Exception as e:
            message = f"Failed to send message: {e}"
            logger.error(f"❌ {message}")
            self._teardown(error=message)
            raise TransportError(message) from e

    async def send_message(self, text: str, role: str = "system") -> bool:
        """アシスタントへ任意のメッセージを送る"""
        if not self._require_active("send_message"):
            return False
        await self._send(text, role)
        return True

    async def pass_microphone(self) -> bool:
        """AIに話すよう促す"""
        if not self._require_active("pass_microphone"):
            return False
        self._cancel_timer(IDLE_TIMER)
        await self._send(assistants.PASS_MICROPHONE_TEXT)
        logger.info("🎤 Microphone passed to AI")
        return True

    async def interrupt_assistant(self) -> bool:
        """AIの発話を止めてユーザーに発言権を渡す"""
        if not self._require_active("interrupt_assistant"):
            return False
        await self._send(assistants.INTERRUPT_TEXT)
        self.engine.request_human_floor()
        self._notify()
        return True

    async def take_floor(self) -> bool:
        """「発言する」ボタン (引き渡し待ちをスキップ)"""
        if not self._require_active("take_floor"):
            return False
        self.engine.request_human_floor()
        self._cancel_timer(IDLE_TIMER)
        self._notify()
        return True

    async def transfer_to(self, participant_id: str) -> bool:
        """手動の発言権移動"""
        if not self._require_active("transfer_to"):
            return False
        target = self.resolve_participant(participant_id)
        if target is None or not self.engine.transfer_to(target):
            logger.warning("Manual transfer to unknown participant ignored: %s", participant_id)
            return False
        await self._announce_transfer(target)
        self._notify()
        return True

    async def _announce_transfer(self, target: str) -> None:
        if self.engine.is_ai(target) and self.config.format == DebateFormat.PANEL:
            name = self.engine.roster[target].display_name
            await self._send(assistants.transfer_intent_message(name))

    async def advance_phase(self) -> bool:
        """次のフェーズへ (最後のフェーズでは何もしない)"""
        if not self._require_active("advance_phase"):
            return False
        if not self.agenda.advance():
            return False
        await self._send(assistants.phase_update_message(self.config, self.agenda.current_phase_id))
        self._arm_phase_timers()
        self._notify()
        return True

    async def raise_hand(
        self,
        participant_id: str = HUMAN_ID,
        question_type: str = "clarification",
        preview: str = "",
        urgency: str = "medium",
        target_speaker: Optional[str] = None
    ) -> Optional[FloorRequest]:
        if not self._require_active("raise_hand"):
            return None
        if participant_id not in self.engine.roster:
            logger.warning("raise_hand ignored, unknown participant: %s", participant_id)
            return None
        hand = self.queue.request(
            participant_id,
            question_type=question_type,
            preview=preview,
            urgency=urgency,
            target_speaker=target_speaker
        )
        self._notify()
        return hand

    async def acknowledge_request(self, request_id: int) -> Optional[FloorRequest]:
        if not self._require_active("acknowledge_request"):
            return None
        hand = self.queue.acknowledge(request_id)
        if hand is not None:
            await self._announce_transfer(hand.requester_id)
            self._notify()
        return hand

    async def dismiss_request(self, request_id: int) -> Optional[FloorRequest]:
        if not self._require_active("dismiss_request"):
            return None
        hand = self.queue.dismiss(request_id)
        if hand is not None:
            self._notify()
        return hand

    # ========== タイマー ==========

    def _arm_timer(self, name: str, coro) -> None:
        self._cancel_timer(name)
        self._timers[name] = asyncio.create_task(coro)

    def _cancel_timer(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _cancel_timers(self) -> None:
        tasks = [t for t in self._timers.values() if t is not asyncio.current_task()]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _arm_phase_timers(self) -> None:
        phase = self.agenda.current
        if self.config.format == DebateFormat.LINCOLN_DOUGLAS and ai_waits_for_human(phase.code, self.config.user_side):
            self._arm_timer(IDLE_TIMER, self._idle_auto_pass(phase.code))
        else:
            self._cancel_timer(IDLE_TIMER)

        if phase.nominal_duration_seconds > self.time_warning_seconds:
            self._arm_timer(WARNING_TIMER, self._time_warning(phase.code))
        else:
            self._cancel_timer(WARNING_TIMER)

    def _still_in(self, phase_code: str) -> bool:
        return (
            self.status == SessionStatus.ACTIVE
            and self.agenda is not None
            and self.agenda.current_phase_id == phase_code
        )

    async def _idle_auto_pass(self, phase_code: str) -> None:
        await asyncio.sleep(self.idle_auto_pass_seconds)
        if not self._still_in(phase_code):
            return
        self._timers.pop(IDLE_TIMER, None)
        logger.info(f"⏰ No user speech for {self.idle_auto_pass_seconds:.0f}s in {phase_code}, passing microphone")
        try:
            await self.pass_microphone()
        except TransportError as e:
            logger.error(f"Auto-pass failed: {e}")

    async def _time_warning(self, phase_code: str) -> None:
        await asyncio.sleep(max(0, self.agenda.time_remaining() - self.time_warning_seconds))
        if not self._still_in(phase_code):
            return
        self._timers.pop(WARNING_TIMER, None)
        text = assistants.context_update_message(
            self.config,
            action="Time warning",
            phase_code=phase_code,
            elapsed_seconds=self.agenda.elapsed_seconds(),
            remaining_seconds=self.agenda.time_remaining(),
            additional_info=f"{self.time_warning_seconds} seconds remaining in this phase. Begin wrapping up."
        )
        logger.info("⏳ %ss left in %s", self.time_warning_seconds, phase_code)
        try:
            await self._send(text)
        except TransportError as e:
            logger.error(f"Time warning failed: {e}")

    # ========== 記録 ==========

    def _build_record(self) -> Optional[SessionRecord]:
        # ACTIVE に到達したセッションだけ記録する
        if self.status != SessionStatus.ACTIVE or self.config is None:
            return None
        names = {p.participant_id: p.display_name for p in self.engine.participants}
        return SessionRecord(
            format=self.config.format,
            resolution=self.config.resolution,
            user_side=self.config.user_side,
            user_stance=self.config.user_stance,
            moderator_style=self.config.moderator_style,
            participants=self.engine.participants,
            transcript=self.accumulator.full_transcript_text(names),
            duration_seconds=int(self.clock() - self._started_at) if self._started_at is not None else 0,
            phases_reached=self.agenda.index + 1 if self.agenda else 0,
            call_id=self.call_id,
            ended_at=datetime.now().isoformat()
        )

    def _archive(self, record: Optional[SessionRecord]) -> None:
        if record is None or self.storage is None:
            return
        self.storage.save(LAST_SESSION_KEY, record.model_dump(mode="json"))
        logger.info("💾 Saved session record (%d chars of transcript)", len(record.transcript))

    def last_record(self) -> Optional[SessionRecord]:
        if self.storage is None:
            return None
        data = self.storage.load(LAST_SESSION_KEY)
        return SessionRecord(**data) if data else None

    # ========== 読み取り / 通知 ==========

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            callback()

    def _set_status(self, status: SessionStatus) -> None:
        if status != self.status:
            logger.info("🔄 Session status: %s → %s", self.status.value, status.value)
        self.status = status
        self._notify()

    def phase_snapshot(self) -> Optional[PhaseSnapshot]:
        if self.agenda is None:
            return None
        return PhaseSnapshot(
            index=self.agenda.index,
            total=len(self.agenda.phases),
            phase=self.agenda.current,
            elapsed_seconds=self.agenda.elapsed_seconds(),
            time_remaining_seconds=self.agenda.time_remaining(),
            is_last_phase=self.agenda.is_last_phase
        )

    def snapshot(self) -> SessionSnapshot:
        """プレゼンテーション層向けの読み取り専用スナップショット"""
        return SessionSnapshot(
            status=self.status,
            format=self.config.format if self.config else None,
            call_id=self.call_id,
            error=self.error,
            audio_level=self.audio_level,
            participants=self.engine.participants,
            speaker=self.engine.snapshot(),
            active_partial=self.accumulator.active_partial,
            transcript=[
                TranscriptLine(
                    speaker_id=entry.speaker_id,
                    text=entry.text,
                    elapsed=self.accumulator.elapsed_label(entry)
                )
                for entry in self.accumulator.history
            ],
            phase=self.phase_snapshot(),
            raised_hands=list(self.queue.requests)
        )

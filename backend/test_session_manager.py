import asyncio

import pytest

import assistants
from errors import SessionBusyError, SessionConfigError, TransportError
from models import DebateFormat, PanelistConfig, SessionConfig, SessionStatus
from session_manager import SessionController, validate_config
from storage import LAST_SESSION_KEY, FileStorageBackend
from transport import (
    CallEnded,
    HumanTransferRequested,
    RealtimeTransport,
    SpeechEnd,
    SpeechStart,
    Transcript,
    TransferConfirmed,
    TransportErrorEvent,
    VolumeLevel,
)

FAST = {"partial_debounce_ms": 10, "idle_auto_pass_seconds": 0.05}


class FakeTransport(RealtimeTransport):
    def __init__(self, call_id="call-1", fail_connect=False, hold_connect=False):
        self.call_id = call_id
        self.fail_connect = fail_connect
        self.hold = asyncio.Event() if hold_connect else None
        self.payloads = []
        self.system_messages = []
        self.user_messages = []
        self.disconnects = 0

    async def connect(self, session_config):
        self.payloads.append(session_config)
        if self.hold is not None:
            await self.hold.wait()
        if self.fail_connect:
            raise ConnectionError("microphone permission denied")
        return self.call_id

    async def disconnect(self):
        self.disconnects += 1

    async def send_system_message(self, text):
        self.system_messages.append(text)

    async def send_user_message(self, text):
        self.user_messages.append(text)


def panel_config(**overrides):
    data = dict(
        format=DebateFormat.PANEL,
        resolution="Cities should ban cars downtown",
        user_stance="Car bans help local business",
        ai_panelists=[PanelistConfig(name="Dr. Chen", archetype="analyst")],
    )
    data.update(overrides)
    return SessionConfig(**data)


def ld_config(user_side="affirmative"):
    return SessionConfig(format=DebateFormat.LINCOLN_DOUGLAS, resolution="Privacy outweighs security", user_side=user_side)


def run(coro):
    return asyncio.run(coro)


def test_panel_session_scenario():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport()
        async with controller.attached(transport):
            call_id = await controller.start(panel_config())
            assert call_id == "call-1"
            assert controller.status == SessionStatus.ACTIVE
            assert controller.engine.current_speaker == "moderator"
            assert "squad" in transport.payloads[0]

            controller.handle_event(TransferConfirmed(destination="panelist_0"))
            assert controller.engine.current_speaker == "panelist_0"

            controller.handle_event(SpeechEnd())
            assert controller.engine.current_speaker == "panelist_0"

            controller.handle_event(Transcript(role="human", text="I disagree", is_partial=True))
            assert controller.engine.current_speaker == "user"
        return controller, transport

    controller, transport = run(scenario())
    assert controller.status == SessionStatus.INACTIVE
    assert transport.disconnects == 1
    assert controller.transport is None


def test_transfer_destination_resolved_by_display_name():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            await controller.start(panel_config())
            controller.handle_event(TransferConfirmed(destination="dr. chen"))
            return controller.engine.current_speaker

    assert run(scenario()) == "panelist_0"


def test_pending_human_transfer_waits_for_speech_end():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            await controller.start(panel_config())
            controller.handle_event(HumanTransferRequested())
            controller.handle_event(SpeechStart())
            before = controller.engine.current_speaker
            controller.handle_event(SpeechEnd())
            return before, controller.engine.current_speaker

    assert run(scenario()) == ("moderator", "user")


def test_transcripts_are_attributed_and_snapshotted():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            await controller.start(panel_config())
            controller.handle_event(Transcript(role="other", text="Welcome to the panel.", is_partial=False))
            controller.handle_event(TransferConfirmed(destination="panelist_0"))
            controller.handle_event(Transcript(role="other", text="Thank you.", is_partial=False))
            controller.handle_event(Transcript(role="other", text="Thank you.", is_partial=False))
            controller.handle_event(VolumeLevel(level=0.6))
            return controller.snapshot()

    snapshot = run(scenario())
    assert [(line.speaker_id, line.text) for line in snapshot.transcript] == [
        ("moderator", "Welcome to the panel."),
        ("panelist_0", "Thank you."),
    ]
    assert snapshot.audio_level == 0.6
    assert snapshot.phase.phase.code == "INTRO"
    assert snapshot.speaker.current_speaker == "panelist_0"


def test_stop_is_idempotent():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport()
        async with controller.attached(transport):
            await controller.start(ld_config())
            await controller.stop()
            first = controller.status
            await controller.stop()
            return first, controller.status, transport.disconnects

    assert run(scenario()) == (SessionStatus.INACTIVE, SessionStatus.INACTIVE, 1)


def test_events_are_dropped_when_not_active():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            controller.handle_event(TransferConfirmed(destination="opponent"))
            controller.handle_event(Transcript(role="human", text="Hello there", is_partial=False))
            return controller.snapshot()

    snapshot = run(scenario())
    assert snapshot.speaker.current_speaker is None
    assert snapshot.transcript == []


def test_invalid_config_sends_nothing():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport()
        async with controller.attached(transport):
            with pytest.raises(SessionConfigError):
                await controller.start(panel_config(resolution="  "))
            with pytest.raises(SessionConfigError):
                await controller.start(panel_config(ai_panelists=[]))
            with pytest.raises(SessionConfigError):
                await controller.start(SessionConfig(format=DebateFormat.LINCOLN_DOUGLAS, resolution="x"))
            return controller.status, transport.payloads

    status, payloads = run(scenario())
    assert status == SessionStatus.INACTIVE
    assert payloads == []


def test_start_while_active_is_rejected():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            await controller.start(ld_config())
            with pytest.raises(SessionBusyError):
                await controller.start(ld_config())
            return controller.status

    assert run(scenario()) == SessionStatus.ACTIVE


def test_second_transport_attach_is_rejected():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            with pytest.raises(SessionBusyError):
                async with controller.attached(FakeTransport()):
                    pass
            return controller.transport is not None

    assert run(scenario())


def test_connect_failure_surfaces_error():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport(fail_connect=True)):
            with pytest.raises(TransportError):
                await controller.start(ld_config())
            return controller.snapshot()

    snapshot = run(scenario())
    assert snapshot.status == SessionStatus.INACTIVE
    assert "microphone" in snapshot.error


def test_late_connect_result_after_stop_is_discarded():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport(hold_connect=True)
        async with controller.attached(transport):
            start_task = asyncio.create_task(controller.start(ld_config()))
            await asyncio.sleep(0.01)
            assert controller.status == SessionStatus.CONNECTING
            await controller.stop()
            transport.hold.set()
            result = await start_task
            return result, controller.status

    assert run(scenario()) == (None, SessionStatus.INACTIVE)


def test_remote_hangup_and_error_tear_down():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            await controller.start(ld_config())
            controller.handle_event(CallEnded())
            ended = controller.status

            await controller.start(ld_config())
            controller.handle_event(TransportErrorEvent(message="Meeting ended due to ejection"))
            return ended, controller.snapshot()

    ended, snapshot = run(scenario())
    assert ended == SessionStatus.INACTIVE
    assert snapshot.status == SessionStatus.INACTIVE
    assert snapshot.error == "Meeting ended due to ejection"


def test_commands_require_active_session():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport()
        async with controller.attached(transport):
            results = [
                await controller.send_message("hello"),
                await controller.pass_microphone(),
                await controller.interrupt_assistant(),
                await controller.take_floor(),
                await controller.transfer_to("opponent"),
                await controller.advance_phase(),
            ]
            return results, transport.system_messages

    results, messages = run(scenario())
    assert results == [False] * 6
    assert messages == []


def test_advance_phase_sends_phase_update():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport()
        async with controller.attached(transport):
            await controller.start(ld_config("affirmative"))
            advanced = await controller.advance_phase()
            return advanced, controller.agenda.current_phase_id, transport.system_messages

    advanced, phase, messages = run(scenario())
    assert advanced
    assert phase == "CX1"
    assert messages[-1].startswith("PHASE UPDATE - CX1")
    assert "QUESTION" in messages[-1]


def test_idle_auto_pass_when_user_stays_silent():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport()
        async with controller.attached(transport):
            # user negative → AI affirmative waits for the user in AC
            await controller.start(ld_config("negative"))
            await asyncio.sleep(0.15)
            return list(transport.system_messages)

    messages = run(scenario())
    assert messages[-1] == assistants.PASS_MICROPHONE_TEXT
    assert messages.count(assistants.PASS_MICROPHONE_TEXT) == 1


def test_idle_auto_pass_cancelled_by_user_speech():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport()
        async with controller.attached(transport):
            await controller.start(ld_config("negative"))
            controller.handle_event(Transcript(role="human", text="Let me begin", is_partial=True))
            await asyncio.sleep(0.15)
            return list(transport.system_messages)

    assert assistants.PASS_MICROPHONE_TEXT not in run(scenario())


def test_take_floor_and_interrupt():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport()
        async with controller.attached(transport):
            await controller.start(panel_config())
            await controller.interrupt_assistant()
            interrupted = controller.engine.current_speaker
            await controller.transfer_to("panelist_0")
            transferred = controller.engine.current_speaker
            await controller.take_floor()
            return interrupted, transferred, controller.engine.current_speaker, transport.system_messages

    interrupted, transferred, taken, messages = run(scenario())
    assert (interrupted, transferred, taken) == ("user", "panelist_0", "user")
    assert messages[-2] == assistants.INTERRUPT_TEXT
    assert "Dr. Chen" in messages[-1]


def test_hand_raise_commands():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            await controller.start(panel_config())
            first = await controller.raise_hand("panelist_0", question_type="challenge")
            second = await controller.raise_hand()
            await controller.dismiss_request(first.request_id)
            await controller.acknowledge_request(second.request_id)
            return controller.snapshot()

    snapshot = run(scenario())
    assert snapshot.raised_hands == []
    assert snapshot.speaker.current_speaker == "user"


def test_session_record_is_archived(tmp_path):
    storage = FileStorageBackend(str(tmp_path))

    async def scenario():
        controller = SessionController(settings=FAST, storage=storage)
        async with controller.attached(FakeTransport(call_id="call-42")):
            await controller.start(ld_config("affirmative"))
            controller.handle_event(Transcript(role="human", text="My first contention", is_partial=False))
            controller.handle_event(Transcript(role="other", text="I object", is_partial=False))
            await controller.advance_phase()
        return controller.last_record()

    record = run(scenario())
    assert record.call_id == "call-42"
    assert record.phases_reached == 2
    assert "YOU: My first contention" in record.transcript
    assert "DOUGLAS: I object" in record.transcript
    assert storage.load(LAST_SESSION_KEY)["resolution"] == "Privacy outweighs security"


def test_listeners_are_notified():
    async def scenario():
        calls = []
        controller = SessionController(settings=FAST)
        controller.add_listener(lambda: calls.append(controller.status))
        async with controller.attached(FakeTransport()):
            await controller.start(ld_config())
        return calls

    calls = run(scenario())
    assert SessionStatus.CONNECTING in calls
    assert SessionStatus.ACTIVE in calls
    assert calls[-1] == SessionStatus.INACTIVE


def test_attached_detaches_on_error():
    transport = FakeTransport()
    controller = SessionController(settings=FAST)

    async def scenario():
        async with controller.attached(transport):
            await controller.start(ld_config())
            raise RuntimeError("presentation layer crashed")

    with pytest.raises(RuntimeError):
        run(scenario())
    assert controller.transport is None
    assert controller.status == SessionStatus.INACTIVE
    assert transport.disconnects == 1


def test_ld_speech_start_gives_floor_to_opponent():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            await controller.start(ld_config("affirmative"))
            controller.handle_event(SpeechStart())
            speaking = controller.snapshot().speaker
            controller.handle_event(SpeechEnd())
            return speaking

    speaking = run(scenario())
    assert speaking.current_speaker == "opponent"
    assert speaking.is_speech_active


def test_start_sends_debate_started_and_first_phase():
    async def scenario():
        controller = SessionController(settings=FAST)
        transport = FakeTransport()
        async with controller.attached(transport):
            await controller.start(ld_config("affirmative"))
            return list(transport.system_messages)

    messages = run(scenario())
    assert len(messages) == 2
    assert "ACTION: Debate started" in messages[0]
    assert "Your stance: NEGATIVE" in messages[0]
    assert messages[1].startswith("PHASE UPDATE - AC")


def test_time_warning_near_end_of_phase():
    # AC is 360s, so the warning fires one second in
    settings = dict(FAST, time_warning_seconds=359, idle_auto_pass_seconds=60)

    async def scenario():
        controller = SessionController(settings=settings)
        transport = FakeTransport()
        async with controller.attached(transport):
            await controller.start(ld_config("affirmative"))
            await asyncio.sleep(1.3)
            return list(transport.system_messages)

    warnings = [m for m in run(scenario()) if "ACTION: Time warning" in m]
    assert len(warnings) == 1
    assert "CURRENT PHASE: AC" in warnings[0]
    assert "359 seconds remaining" in warnings[0]


def test_time_warning_skipped_after_phase_change():
    settings = dict(FAST, time_warning_seconds=359, idle_auto_pass_seconds=60)

    async def scenario():
        controller = SessionController(settings=settings)
        transport = FakeTransport()
        async with controller.attached(transport):
            await controller.start(ld_config("affirmative"))
            await controller.advance_phase()
            await controller._time_warning("AC")
            await asyncio.sleep(1.3)
            return list(transport.system_messages)

    assert not any("ACTION: Time warning" in m for m in run(scenario()))


def test_raise_hand_for_unknown_participant_is_ignored():
    async def scenario():
        controller = SessionController(settings=FAST)
        async with controller.attached(FakeTransport()):
            await controller.start(panel_config())
            hand = await controller.raise_hand("ghost")
            return hand, controller.snapshot()

    hand, snapshot = run(scenario())
    assert hand is None
    assert snapshot.raised_hands == []
    assert snapshot.speaker.current_speaker == "moderator"


@pytest.mark.parametrize("name", ["You", "user", "Moderator", "opponent", "panelist_1"])
def test_reserved_panelist_names_are_rejected(name):
    config = panel_config(ai_panelists=[PanelistConfig(name=name, archetype="analyst")])

    with pytest.raises(SessionConfigError):
        validate_config(config)


def test_panelist_list_default_is_not_shared():
    first = SessionConfig(format=DebateFormat.PANEL)
    first.ai_panelists.append(PanelistConfig(name="Dr. Chen", archetype="analyst"))

    assert SessionConfig(format=DebateFormat.PANEL).ai_panelists == []

"""
WebSocket処理
- 接続管理とスナップショットのブロードキャスト
- ブラウザ側の音声SDKを中継するトランスポート (イベント受信 / コマンド送信)
- UIコマンドのルーティング
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from errors import SessionBusyError, SessionConfigError, TransportError
from models import SessionConfig
from transport import CallEnded, CallStarted, RealtimeTransport, TransportErrorEvent, decode_event

logger = logging.getLogger(__name__)


class ConnectionManager:
    """WebSocket接続管理"""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self._pending_broadcast: Optional[asyncio.Task] = None
        self._dirty = False

    async def connect(self, websocket: WebSocket):
        """WebSocket接続を確立"""
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info(f"✅ WebSocket connected: total={len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        """WebSocket接続を切断"""
        if websocket in self.active_connections:
            self.active_connections.discard(websocket)
            logger.info(f"❌ WebSocket disconnected: total={len(self.active_connections)}")

    async def broadcast(self, message: dict, exclude: WebSocket = None):
        """全クライアントにブロードキャスト"""
        dead_connections = set()

        for connection in list(self.active_connections):
            if connection == exclude:
                continue
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Failed to send message: {e}")
                dead_connections.add(connection)

        for connection in dead_connections:
            self.disconnect(connection)

    def schedule_snapshot(self, controller) -> None:
        """
        スナップショット送信を予約
        送信中に届いた変更通知はまとめて次の1回で送る
        """
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        pending = self._pending_broadcast
        if pending is not None and not pending.done() and pending.get_loop() is loop:
            return
        self._pending_broadcast = loop.create_task(self._broadcast_snapshot(controller))

    async def _broadcast_snapshot(self, controller) -> None:
        while self._dirty:
            self._dirty = False
            await asyncio.sleep(0)
            await self.broadcast({
                'type': 'snapshot',
                'data': controller.snapshot().model_dump(mode='json')
            })


# グローバルインスタンス
manager = ConnectionManager()


class WebSocketTransport(RealtimeTransport):
    """
    ブラウザの音声SDKにコマンドを中継するトランスポート

    connect / disconnect はブラウザからの call_started / call_ended を待つ
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.closed = False
        self.connected = False
        self._call_started: Optional[asyncio.Future] = None
        self._call_ended: Optional[asyncio.Future] = None

    async def _command(self, command: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.closed:
            raise TransportError("WebSocket is closed")
        try:
            await self.websocket.send_json({'type': 'command', 'command': command, 'data': data or {}})
        except Exception as e:
            raise TransportError(f"Failed to send {command}: {e}") from e

    async def connect(self, session_config: Dict[str, Any]) -> Optional[str]:
        self._call_started = asyncio.get_running_loop().create_future()
        await self._command('start', session_config)
        call_id = await self._call_started
        self.connected = True
        return call_id

    async def disconnect(self) -> None:
        self._fail_pending_start(TransportError("Call was stopped before it started"))
        if self.closed:
            return
        if not self.connected:
            # 開始待ちのまま止めた場合は確認を待たない
            await self._command('stop')
            return
        self._call_ended = asyncio.get_running_loop().create_future()
        try:
            await self._command('stop')
            await self._call_ended
        finally:
            self.connected = False
            self._call_ended = None

    async def send_system_message(self, text: str) -> None:
        await self._command('send_message', {'role': 'system', 'content': text})

    async def send_user_message(self, text: str) -> None:
        await self._command('send_message', {'role': 'user', 'content': text})

    def on_event(self, event) -> None:
        """接続/切断の確認イベントで待機中のコマンドを解決"""
        if isinstance(event, CallStarted):
            if self._call_started is not None and not self._call_started.done():
                self._call_started.set_result(event.call_id)
        elif isinstance(event, CallEnded):
            self.connected = False
            self._fail_pending_start(TransportError("Call ended before it started"))
            if self._call_ended is not None and not self._call_ended.done():
                self._call_ended.set_result(None)
        elif isinstance(event, TransportErrorEvent):
            self._fail_pending_start(TransportError(event.message))

    def _fail_pending_start(self, error: Exception) -> None:
        if self._call_started is not None and not self._call_started.done():
            self._call_started.set_exception(error)
            # 待ち手がいない場合の "exception was never retrieved" を避ける
            self._call_started.exception()

    def close(self) -> None:
        """ソケットが閉じたので待機中のコマンドを全て終わらせる"""
        self.closed = True
        self.connected = False
        self._fail_pending_start(TransportError("WebSocket closed"))
        if self._call_ended is not None and not self._call_ended.done():
            self._call_ended.set_result(None)


def _handle_task_exception(task: asyncio.Task, command: str) -> None:
    """バックグラウンドで走らせたコマンドの例外を処理"""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("❌ Unhandled exception in %s task: %s", command, exc, exc_info=exc)


_background_tasks: Set[asyncio.Task] = set()


def _spawn(coro, command: str) -> asyncio.Task:
    # start / stop はブラウザからの確認を同じソケットで待つため受信ループを止めない
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(lambda t: _handle_task_exception(t, command))
    return task


async def _send_error(websocket: WebSocket, message: str) -> None:
    try:
        await websocket.send_json({'type': 'error', 'message': message})
    except Exception as e:
        logger.warning(f"Failed to send error to client: {e}")


async def _run_start(websocket: WebSocket, controller, config: SessionConfig) -> None:
    try:
        call_id = await controller.start(config)
    except (SessionBusyError, SessionConfigError, TransportError) as e:
        logger.warning(f"Start failed: {e}")
        await _send_error(websocket, str(e))
        return
    if call_id is not None:
        await websocket.send_json({'type': 'started', 'data': {'call_id': call_id}})


async def handle_websocket(websocket: WebSocket, controller):
    """WebSocket接続ハンドラー"""
    await manager.connect(websocket)
    transport = WebSocketTransport(websocket)

    def on_change():
        manager.schedule_snapshot(controller)

    try:
        async with controller.attached(transport):
            controller.add_listener(on_change)
            # 初期データ送信
            await websocket.send_json({
                'type': 'snapshot',
                'data': controller.snapshot().model_dump(mode='json')
            })
            try:
                # メッセージループ
                while True:
                    try:
                        data = await websocket.receive_json()
                    except json.JSONDecodeError:
                        await _send_error(websocket, 'Invalid JSON')
                        continue
                    await process_message(data, websocket, controller, transport)
            except WebSocketDisconnect:
                logger.info("Client went away")
            finally:
                transport.close()
    except SessionBusyError as e:
        await _send_error(websocket, str(e))
        await websocket.close(code=1013)
    finally:
        controller.remove_listener(on_change)
        manager.disconnect(websocket)


async def process_message(
    message: dict,
    websocket: WebSocket,
    controller,
    transport: WebSocketTransport
):
    """メッセージ処理とルーティング"""
    if not isinstance(message, dict):
        await _send_error(websocket, 'Message must be a JSON object')
        return
    msg_type = message.get('type')
    data = message.get('data') or {}
    if not isinstance(data, dict):
        await _send_error(websocket, 'data must be a JSON object')
        return

    try:
        if msg_type == 'event':
            # 音声SDKのイベントを中継
            event = decode_event(data)
            if event is None:
                return
            transport.on_event(event)
            controller.handle_event(event)

        elif msg_type == 'start':
            try:
                config = SessionConfig(**data)
            except ValidationError as e:
                await _send_error(websocket, f"Invalid session config: {e.errors()[0]['msg']}")
                return
            _spawn(_run_start(websocket, controller, config), 'start')

        elif msg_type == 'stop':
            _spawn(controller.stop(), 'stop')

        elif msg_type == 'advance_phase':
            ok = await controller.advance_phase()
            await websocket.send_json({'type': 'ack', 'command': msg_type, 'ok': ok})

        elif msg_type == 'send_message':
            ok = await controller.send_message(data.get('text', ''), data.get('role', 'system'))
            await websocket.send_json({'type': 'ack', 'command': msg_type, 'ok': ok})

        elif msg_type == 'pass_microphone':
            ok = await controller.pass_microphone()
            await websocket.send_json({'type': 'ack', 'command': msg_type, 'ok': ok})

        elif msg_type == 'interrupt':
            ok = await controller.interrupt_assistant()
            await websocket.send_json({'type': 'ack', 'command': msg_type, 'ok': ok})

        elif msg_type == 'take_floor':
            ok = await controller.take_floor()
            await websocket.send_json({'type': 'ack', 'command': msg_type, 'ok': ok})

        elif msg_type == 'transfer':
            ok = await controller.transfer_to(data.get('participant_id', ''))
            await websocket.send_json({'type': 'ack', 'command': msg_type, 'ok': ok})

        elif msg_type == 'raise_hand':
            hand = await controller.raise_hand(
                participant_id=data.get('participant_id', 'user'),
                question_type=data.get('question_type', 'clarification'),
                preview=data.get('preview', ''),
                urgency=data.get('urgency', 'medium'),
                target_speaker=data.get('target_speaker')
            )
            await websocket.send_json({
                'type': 'ack',
                'command': msg_type,
                'ok': hand is not None,
                'data': hand.model_dump(mode='json') if hand else None
            })

        elif msg_type in ('acknowledge_request', 'dismiss_request'):
            request_id = int(data.get('request_id', -1))
            if msg_type == 'acknowledge_request':
                hand = await controller.acknowledge_request(request_id)
            else:
                hand = await controller.dismiss_request(request_id)
            await websocket.send_json({'type': 'ack', 'command': msg_type, 'ok': hand is not None})

        else:
            logger.warning(f"Unknown message type: {msg_type}")
            await _send_error(websocket, f'Unknown message type: {msg_type}')

    except (TransportError, ValueError, ValidationError) as e:
        logger.error(f"Error processing message {msg_type}: {e}")
        await _send_error(websocket, str(e))

"""
リアルタイム音声トランスポートの境界
- イベント: 種別ごとに型付けした閉じたユニオン (境界で一度だけデコード)
- コマンド: connect / disconnect / system・userメッセージ送信
"""

import abc
import logging
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class SpeechStart(BaseModel):
    kind: Literal["speech_start"] = "speech_start"


class SpeechEnd(BaseModel):
    kind: Literal["speech_end"] = "speech_end"


class VolumeLevel(BaseModel):
    kind: Literal["volume_level"] = "volume_level"
    level: float = Field(ge=0.0, le=1.0)


class Transcript(BaseModel):
    kind: Literal["transcript"] = "transcript"
    role: Literal["human", "other"]
    text: str
    is_partial: bool
    timestamp: Optional[datetime] = None


class TransferConfirmed(BaseModel):
    kind: Literal["transfer_confirmed"] = "transfer_confirmed"
    destination: str  # 参加者ID or アシスタント表示名


class HumanTransferRequested(BaseModel):
    kind: Literal["human_transfer_requested"] = "human_transfer_requested"


class CallStarted(BaseModel):
    kind: Literal["call_started"] = "call_started"
    call_id: Optional[str] = None


class CallEnded(BaseModel):
    kind: Literal["call_ended"] = "call_ended"


class TransportErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    message: str = "An error occurred during the call"


TransportEvent = Annotated[
    Union[
        SpeechStart,
        SpeechEnd,
        VolumeLevel,
        Transcript,
        TransferConfirmed,
        HumanTransferRequested,
        CallStarted,
        CallEnded,
        TransportErrorEvent,
    ],
    Field(discriminator="kind"),
]

_event_adapter = TypeAdapter(TransportEvent)

HUMAN_TRANSFER_TOOL = "transferToUser"


def _role(raw_role: Any) -> str:
    return "human" if raw_role in ("user", "human") else "other"


def _decode_vendor_message(message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """ベンダー形式の "message" ペイロードを正規形に変換"""
    msg_type = message.get("type")

    if msg_type == "transcript":
        return {
            "kind": "transcript",
            "role": _role(message.get("role")),
            "text": message.get("transcript") or "",
            "is_partial": message.get("transcriptType") == "partial",
            "timestamp": message.get("timestamp") or None,
        }

    if msg_type == "transfer-update":
        destination = message.get("destination") or message.get("transfer") or {}
        name = destination.get("assistantName")
        if destination.get("type") == "user":
            return {"kind": "human_transfer_requested"}
        if name:
            return {"kind": "transfer_confirmed", "destination": name}
        return None

    tool_calls = message.get("toolCalls") or message.get("toolCallList")
    if msg_type == "tool-calls" or message.get("role") == "tool_calls" or tool_calls:
        for call in tool_calls or []:
            if (call.get("function") or {}).get("name") == HUMAN_TRANSFER_TOOL:
                return {"kind": "human_transfer_requested"}
        return None

    return None


def _normalize(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if "kind" in raw:
        return raw

    raw_type = raw.get("type")
    if raw_type == "speech-start":
        return {"kind": "speech_start"}
    if raw_type == "speech-end":
        return {"kind": "speech_end"}
    if raw_type == "volume-level":
        try:
            level = float(raw.get("volume", raw.get("level", 0.0)))
        except (TypeError, ValueError):
            return None
        return {"kind": "volume_level", "level": max(0.0, min(1.0, level))}
    if raw_type == "call-start":
        return {"kind": "call_started", "call_id": raw.get("callId") or raw.get("call_id")}
    if raw_type == "call-end":
        return {"kind": "call_ended"}
    if raw_type == "error":
        err = raw.get("error")
        message = raw.get("message")
        if isinstance(err, dict):
            message = err.get("message") or message
        elif isinstance(err, str):
            message = err
        return {"kind": "error", "message": message or "An error occurred during the call"}
    if raw_type == "message" and isinstance(raw.get("message"), dict):
        return _decode_vendor_message(raw["message"])
    if raw_type in ("transcript", "transfer-update", "tool-calls"):
        return _decode_vendor_message(raw)
    return None


def decode_event(raw: Dict[str, Any]) -> Optional[TransportEvent]:
    """
    生のイベントを型付きイベントに変換

    Returns:
        解釈できないイベントは None
    """
    if not isinstance(raw, dict):
        return None
    normalized = _normalize(raw)
    if normalized is None:
        logger.debug("Ignoring transport event: %s", raw.get("type"))
        return None
    try:
        return _event_adapter.validate_python(normalized)
    except ValidationError as e:
        logger.warning(f"Malformed transport event {normalized.get('kind')}: {e}")
        return None


class RealtimeTransport(abc.ABC):
    """コアが依存する最小のトランスポートコマンド"""

    @abc.abstractmethod
    async def connect(self, session_config: Dict[str, Any]) -> Optional[str]:
        """通話を開始し、開始確認まで待つ。通話IDを返す"""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """通話を終了し、終了確認まで待つ"""

    @abc.abstractmethod
    async def send_system_message(self, text: str) -> None:
        pass

    @abc.abstractmethod
    async def send_user_message(self, text: str) -> None:
        pass

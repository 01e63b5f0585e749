"""
文字起こしの蓄積
- 途中経過 (partial) は話者ごとに debounce し、最後のものだけを表示に反映
- 確定 (final) は受信順に履歴へ追加 (話者+本文で重複排除)
- セッション開始からの経過時間ラベル
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from models import ActivePartial, TranscriptEntry

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.1


def format_clock(seconds: float) -> str:
    """秒数を MM:SS に整形"""
    total = max(0, int(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


def _as_local_naive(ts: datetime) -> datetime:
    # タイムゾーン付きの時刻はローカル時刻に揃えてから比較する
    if ts.tzinfo is not None:
        return ts.astimezone().replace(tzinfo=None)
    return ts


class TranscriptAccumulator:
    """
    トランスポートの文字起こしイベントを、表示・記録用の追記専用履歴に変換する
    """

    def __init__(
        self,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        min_partial_chars: int = 3,
        clock: Callable[[], datetime] = datetime.now,
        on_change: Optional[Callable[[], None]] = None
    ):
        self.debounce_seconds = debounce_seconds
        self.min_partial_chars = min_partial_chars
        self.clock = clock
        self.on_change = on_change

        self.history: List[TranscriptEntry] = []
        self.active_partial: Optional[ActivePartial] = None
        self.session_start: Optional[datetime] = None

        self._seen: Set[Tuple[str, str]] = set()
        self._pending: Dict[str, asyncio.Task] = {}
        self._counter = 0

    def start(self, session_start: Optional[datetime] = None) -> None:
        """新しいセッション用に初期化"""
        self.reset()
        self.session_start = session_start or self.clock()

    def on_transcript_event(
        self,
        speaker_id: str,
        role: str,
        text: str,
        is_partial: bool,
        timestamp: Optional[datetime] = None
    ) -> Optional[TranscriptEntry]:
        """文字起こしイベントを処理。確定して追加された場合はその発話を返す"""
        if is_partial:
            self._schedule_partial(speaker_id, role, text)
            return None
        return self._append_final(speaker_id, role, text, timestamp)

    # ========== partial ==========

    def _schedule_partial(self, speaker_id: str, role: str, text: str) -> None:
        # 同じ話者の古い partial は破棄
        self._cancel_pending(speaker_id)

        if len((text or "").strip()) < self.min_partial_chars:
            return

        partial = ActivePartial(
            speaker_id=speaker_id,
            role=role,
            text=text,
            received_at=self.clock()
        )
        task = asyncio.create_task(self._apply_partial_later(partial))
        self._pending[speaker_id] = task

    async def _apply_partial_later(self, partial: ActivePartial) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if self._pending.get(partial.speaker_id) is asyncio.current_task():
            del self._pending[partial.speaker_id]
        self.active_partial = partial
        self._notify()

    def _cancel_pending(self, speaker_id: Optional[str] = None) -> List[asyncio.Task]:
        if speaker_id is None:
            tasks = list(self._pending.values())
            self._pending.clear()
        else:
            task = self._pending.pop(speaker_id, None)
            tasks = [task] if task else []
        for task in tasks:
            task.cancel()
        return tasks

    # ========== final ==========

    def _append_final(
        self,
        speaker_id: str,
        role: str,
        text: str,
        timestamp: Optional[datetime]
    ) -> Optional[TranscriptEntry]:
        self._cancel_pending(speaker_id)
        if self.active_partial and self.active_partial.speaker_id == speaker_id:
            self.active_partial = None

        normalized = (text or "").strip()
        if not normalized:
            self._notify()
            return None

        key = (speaker_id, normalized)
        if key in self._seen:
            logger.info("🚫 Duplicate transcript ignored for %s: '%s'", speaker_id, normalized[:50])
            self._notify()
            return None

        self._counter += 1
        entry = TranscriptEntry(
            entry_id=f"entry_{self._counter:05d}",
            speaker_id=speaker_id,
            role=role,
            text=normalized,
            occurred_at=_as_local_naive(timestamp) if timestamp else self.clock()
        )
        self._seen.add(key)
        self.history.append(entry)
        logger.info("✅ Transcript added for %s: '%s' (%d chars)", speaker_id, normalized[:30], len(normalized))
        self._notify()
        return entry

    # ========== 読み取り ==========

    def running_seconds(self, now: Optional[datetime] = None) -> int:
        if not self.session_start:
            return 0
        return max(0, int(((now or self.clock()) - self.session_start).total_seconds()))

    def elapsed_label(self, entry: TranscriptEntry, now: Optional[datetime] = None) -> str:
        """セッション開始からの経過時間 (MM:SS)"""
        if self.session_start and entry.occurred_at:
            elapsed = (entry.occurred_at - self.session_start).total_seconds()
            return format_clock(max(0, elapsed))
        # 有効な時刻が無いときは経過タイマーで代用
        return format_clock(self.running_seconds(now))

    def full_transcript_text(self, display_names: Optional[Dict[str, str]] = None) -> str:
        """記録用のテキスト: [MM:SS] SPEAKER: text"""
        names = display_names or {}
        lines = []
        for entry in self.history:
            name = names.get(entry.speaker_id, entry.speaker_id)
            lines.append(f"[{self.elapsed_label(entry)}] {name.upper()}: {entry.text}")
        return "\n".join(lines)

    # ========== 後始末 ==========

    def reset(self) -> None:
        """履歴を破棄し、debounce タイマーを取り消す"""
        self._cancel_pending()
        self.history = []
        self.active_partial = None
        self.session_start = None
        self._seen = set()
        self._counter = 0

    async def aclose(self) -> None:
        """debounce タスクを取り消して終了を待つ"""
        tasks = self._cancel_pending()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.reset()

    def _notify(self) -> None:
        if self.on_change:
            self.on_change()

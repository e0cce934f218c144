"""
通話・会議レジストリモジュール (Call/Conference Registry Module)

会議 ID から会議レコード、通話 ID から通話ハンドルへのプロセス内マッピングを提供します。
レジストリは受動的なストアであり、プラットフォームへの操作は一切行いません。
"""

import threading
from typing import Dict, Iterable, List, Optional

from .errors import (
    CallNotFoundError,
    ConferenceNotFoundError,
    DuplicateConferenceError,
    ValidationError,
)
from .models import CALL_STATES, CallHandle, ConferenceRecord, utc_now


class CallRegistry:
    """
    通話と会議の状態を保持するレジストリ

    create_app() で生成され、必要なハンドラーに参照として渡されます。
    保持する状態はプロセスの寿命と同じで、永続化は行いません。
    Flask 開発サーバーはスレッドで動作するため、変更操作はロックで直列化します。
    """

    def __init__(self):
        self._conferences: Dict[str, ConferenceRecord] = {}
        self._calls: Dict[str, CallHandle] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # 会議
    # ------------------------------------------------------------------

    def create_conference(
        self,
        conference_id: str,
        initial_participants: Iterable[str] = (),
        moderator: Optional[str] = None
    ) -> ConferenceRecord:
        """
        会議レコードを作成

        Args:
            conference_id: 会議 ID
            initial_participants: 初期参加者 (指定順に追加、重複は無視)
            moderator: モデレーターのアドレス (オプション)

        Returns:
            作成された会議レコード

        Raises:
            ValidationError: 会議 ID が空の場合
            DuplicateConferenceError: 同じ ID の会議が既に存在する場合
        """
        if not conference_id:
            raise ValidationError("Conference ID is required")

        with self._lock:
            if conference_id in self._conferences:
                raise DuplicateConferenceError(conference_id)

            record = ConferenceRecord(
                conference_id=conference_id,
                moderator=moderator,
                created_at=utc_now(),
            )
            for address in initial_participants:
                if address not in record.participants:
                    record.participants.append(address)

            self._conferences[conference_id] = record
            return record

    def get_conference(self, conference_id: str) -> Optional[ConferenceRecord]:
        """会議レコードを取得 (存在しない場合は None)"""
        with self._lock:
            return self._conferences.get(conference_id)

    def add_participant(self, conference_id: str, address: str) -> ConferenceRecord:
        """
        参加者を追加 (既に参加している場合は何もしない)

        Raises:
            ConferenceNotFoundError: 会議が存在しない場合
        """
        with self._lock:
            record = self._require_conference(conference_id)
            if address not in record.participants:
                record.participants.append(address)
            return record

    def remove_participant(self, conference_id: str, address: str) -> ConferenceRecord:
        """
        参加者を削除 (参加していない場合は何もしない)

        Raises:
            ConferenceNotFoundError: 会議が存在しない場合
        """
        with self._lock:
            record = self._require_conference(conference_id)
            if address in record.participants:
                record.participants.remove(address)
            return record

    def end_conference(self, conference_id: str) -> Optional[ConferenceRecord]:
        """
        会議レコードを削除

        終了通知はローカルでの削除後に届くことがあるため、
        存在しない会議の終了はエラーにしません。

        Returns:
            削除された会議レコード (存在しなかった場合は None)
        """
        with self._lock:
            return self._conferences.pop(conference_id, None)

    def list_conferences(self) -> List[ConferenceRecord]:
        with self._lock:
            return list(self._conferences.values())

    # ------------------------------------------------------------------
    # 通話
    # ------------------------------------------------------------------

    def register_call(self, call_id: str, handle: CallHandle) -> CallHandle:
        if not call_id:
            raise ValidationError("Call ID is required")
        with self._lock:
            self._calls[call_id] = handle
            return handle

    def get_call(self, call_id: str) -> Optional[CallHandle]:
        """通話ハンドルを取得 (存在しない場合は None)"""
        with self._lock:
            return self._calls.get(call_id)

    def remove_call(self, call_id: str) -> Optional[CallHandle]:
        """通話ハンドルを削除 (存在しない場合は None を返す)"""
        with self._lock:
            return self._calls.pop(call_id, None)

    def update_call_state(self, call_id: str, state: str) -> CallHandle:
        """
        通話状態を更新

        Raises:
            ValidationError: 未知の状態の場合
            CallNotFoundError: 通話が存在しない場合
        """
        if state not in CALL_STATES:
            raise ValidationError(f"Unknown call state: {state}")
        with self._lock:
            handle = self._require_call(call_id)
            handle.state = state
            return handle

    def set_muted(self, call_id: str, muted: bool) -> CallHandle:
        """
        ミュート状態を更新 (同じ値の再設定は何もしない)

        Raises:
            CallNotFoundError: 通話が存在しない場合
        """
        with self._lock:
            handle = self._require_call(call_id)
            handle.muted = bool(muted)
            return handle

    def list_calls(self) -> List[CallHandle]:
        with self._lock:
            return list(self._calls.values())

    def find_call_by_address(self, address: str, conference_id: Optional[str] = None) -> Optional[CallHandle]:
        """通話相手のアドレスで通話ハンドルを検索"""
        with self._lock:
            for handle in self._calls.values():
                if handle.remote_address != address:
                    continue
                if conference_id is not None and handle.conference_id != conference_id:
                    continue
                return handle
            return None

    # ------------------------------------------------------------------
    # ライフサイクル
    # ------------------------------------------------------------------

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                "activeConferences": len(self._conferences),
                "activeCalls": len(self._calls),
            }

    def clear(self) -> None:
        """すべての状態を破棄"""
        with self._lock:
            self._conferences.clear()
            self._calls.clear()

    def _require_conference(self, conference_id: str) -> ConferenceRecord:
        record = self._conferences.get(conference_id)
        if record is None:
            raise ConferenceNotFoundError(conference_id)
        return record

    def _require_call(self, call_id: str) -> CallHandle:
        handle = self._calls.get(call_id)
        if handle is None:
            raise CallNotFoundError(call_id)
        return handle

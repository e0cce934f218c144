"""
データモデルモジュール (Data Models Module)

会議レコードと通話ハンドルのデータモデルを定義します。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utc_now() -> datetime:
    """タイムゾーン付きの現在時刻 (UTC)"""
    return datetime.now(timezone.utc)


# 通話状態 (プラットフォームが報告したステータスの写し)
CALL_STATE_IDLE = "idle"
CALL_STATE_CALLING = "calling"
CALL_STATE_RINGING = "ringing"
CALL_STATE_ACTIVE = "active"
CALL_STATE_DISCONNECTED = "disconnected"

CALL_STATES = (
    CALL_STATE_IDLE,
    CALL_STATE_CALLING,
    CALL_STATE_RINGING,
    CALL_STATE_ACTIVE,
    CALL_STATE_DISCONNECTED,
)

# Twilio の CallStatus から通話状態へのマッピング
PLATFORM_STATUS_TO_STATE = {
    "queued": CALL_STATE_CALLING,
    "initiated": CALL_STATE_CALLING,
    "ringing": CALL_STATE_RINGING,
    "answered": CALL_STATE_ACTIVE,
    "in-progress": CALL_STATE_ACTIVE,
    "completed": CALL_STATE_DISCONNECTED,
    "failed": CALL_STATE_DISCONNECTED,
    "busy": CALL_STATE_DISCONNECTED,
    "no-answer": CALL_STATE_DISCONNECTED,
    "canceled": CALL_STATE_DISCONNECTED,
}

TERMINAL_PLATFORM_STATUSES = ("completed", "failed", "busy", "no-answer", "canceled")


@dataclass
class ConferenceRecord:
    """
    会議レコード

    参加者が 0 人になっても自動削除はされません。
    削除は会議終了イベントまたは明示的な終了操作によってのみ行われます。

    Attributes:
        conference_id: 会議 ID (作成時に呼び出し元が指定)
        participants: 参加者アドレスのリスト (挿入順、重複なし)
        moderator: 会議を開始・終了できる参加者のアドレス (オプション)
        created_at: 作成日時
        conference_sid: Twilio の ConferenceSid (会議イベントで設定)
    """
    conference_id: str
    participants: List[str] = field(default_factory=list)
    moderator: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    conference_sid: Optional[str] = None

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    def to_dict(self) -> dict:
        return {
            "id": self.conference_id,
            "participants": list(self.participants),
            "moderator": self.moderator,
            "createdAt": self.created_at.isoformat(),
            "conferenceSid": self.conference_sid,
        }


@dataclass
class CallHandle:
    """
    通話ハンドル

    レジストリが唯一の所有者です。削除後の ID は再利用されません。

    Attributes:
        call_id: Twilio の CallSid
        state: 通話状態 (idle, calling, ringing, active, disconnected)
        muted: 最後に送ったミュート指示 (確認応答を待たずに更新)
        from_address: 発信元アドレス
        to_address: 着信先アドレス
        direction: 通話方向 (inbound, outbound)
        conference_id: 参加中の会議 ID (オプション)
        created_at: 作成日時
    """
    call_id: str
    state: str = CALL_STATE_IDLE
    muted: bool = False
    from_address: str = ""
    to_address: str = ""
    direction: str = "outbound"
    conference_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def remote_address(self) -> str:
        """ビジネス側ではない通話相手のアドレス"""
        return self.from_address if self.direction == "inbound" else self.to_address

    def to_dict(self) -> dict:
        return {
            "callSid": self.call_id,
            "state": self.state,
            "muted": self.muted,
            "from": self.from_address,
            "to": self.to_address,
            "direction": self.direction,
            "conferenceId": self.conference_id,
            "createdAt": self.created_at.isoformat(),
        }

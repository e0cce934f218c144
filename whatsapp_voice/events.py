"""
通知モジュール (Notification Module)

Twilio のステータスコールバックを名前付き通知として配信します。
各イベント種別は固定のペイロード型を持ち、購読者は構築時にハンドラーを登録します。
通知は publish() の呼び出し元のコンテキストで同期的に配信されます。
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Union

from .errors import ValidationError
from .logging_config import get_logger
from .models import (
    CALL_STATE_DISCONNECTED,
    PLATFORM_STATUS_TO_STATE,
    TERMINAL_PLATFORM_STATUSES,
)
from .registry import CallRegistry

CALL_EVENTS = (
    "initiated",
    "ringing",
    "answered",
    "in-progress",
    "completed",
    "failed",
    "busy",
    "no-answer",
    "canceled",
)

CONFERENCE_EVENTS = (
    "conference-start",
    "conference-end",
    "participant-join",
    "participant-leave",
    "participant-mute",
    "participant-unmute",
)


@dataclass(frozen=True)
class CallStatusNotification:
    """
    通話ステータス通知

    Attributes:
        call_sid: 通話 ID
        status: Twilio の CallStatus
        from_address: 発信元
        to_address: 着信先
        raw: 受信した元のパラメータ
    """
    call_sid: str
    status: str
    from_address: str = ""
    to_address: str = ""
    raw: Mapping[str, str] = field(default_factory=dict, compare=False)

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> "CallStatusNotification":
        return cls(
            call_sid=params.get("CallSid", ""),
            status=params.get("CallStatus", ""),
            from_address=params.get("From", ""),
            to_address=params.get("To", ""),
            raw=dict(params),
        )


@dataclass(frozen=True)
class ConferenceNotification:
    """
    会議イベント通知

    Attributes:
        event: StatusCallbackEvent (conference-start など)
        conference_name: 会議名 (FriendlyName)
        conference_sid: Twilio の ConferenceSid
        participant_call_sid: 対象参加者の通話 ID (参加者イベントのみ)
        muted: 参加者のミュート状態 (報告された場合のみ)
        raw: 受信した元のパラメータ
    """
    event: str
    conference_name: str
    conference_sid: str = ""
    participant_call_sid: str = ""
    muted: Optional[bool] = None
    raw: Mapping[str, str] = field(default_factory=dict, compare=False)

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> "ConferenceNotification":
        muted = params.get("Muted")
        return cls(
            event=params.get("StatusCallbackEvent", ""),
            conference_name=params.get("FriendlyName", ""),
            conference_sid=params.get("ConferenceSid", ""),
            participant_call_sid=params.get("CallSid", ""),
            muted=None if muted is None else str(muted).lower() == "true",
            raw=dict(params),
        )


Notification = Union[CallStatusNotification, ConferenceNotification]
Handler = Callable[[Notification], None]


class NotificationHub:
    """
    イベント名ごとのハンドラーを保持する通知配信クラス

    暗黙のグローバルディスパッチャーは持たず、インスタンスごとに購読を管理します。
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {
            event: [] for event in CALL_EVENTS + CONFERENCE_EVENTS
        }
        self.logger = get_logger(__name__)

    def subscribe(self, event: str, handler: Handler) -> None:
        """
        ハンドラーを登録

        Raises:
            ValidationError: 未知のイベント名の場合
        """
        if event not in self._handlers:
            raise ValidationError(f"Unknown event: {event}")
        self._handlers[event].append(handler)

    def publish(self, event: str, notification: Notification) -> int:
        """
        通知を同期的に配信

        未知のイベントは警告をログ出力して無視します。

        Returns:
            呼び出したハンドラーの数
        """
        handlers = self._handlers.get(event)
        if handlers is None:
            self.logger.warning("unknown_event_ignored", event=event)
            return 0

        for handler in handlers:
            handler(notification)
        return len(handlers)


class RegistrySubscriber:
    """
    通知をレジストリに反映する購読者

    レジストリは報告された事実を写すだけなので、
    未知の通話や会議に関する通知はログ出力して無視します。
    """

    def __init__(self, registry: CallRegistry, hub: NotificationHub):
        self.registry = registry
        self.logger = get_logger(__name__)

        for event in CALL_EVENTS:
            hub.subscribe(event, self.on_call_status)
        hub.subscribe("conference-start", self.on_conference_start)
        hub.subscribe("conference-end", self.on_conference_end)
        hub.subscribe("participant-join", self.on_participant_join)
        hub.subscribe("participant-leave", self.on_participant_leave)
        hub.subscribe("participant-mute", self.on_participant_mute)
        hub.subscribe("participant-unmute", self.on_participant_mute)

    def on_call_status(self, notification: CallStatusNotification) -> None:
        call_sid = notification.call_sid
        if notification.status in TERMINAL_PLATFORM_STATUSES:
            handle = self.registry.remove_call(call_sid)
            if handle is not None:
                handle.state = CALL_STATE_DISCONNECTED
            self.logger.info(
                "call_removed",
                call_sid=call_sid,
                status=notification.status,
                known=handle is not None
            )
            return

        if self.registry.get_call(call_sid) is None:
            self.logger.debug("call_status_for_unknown_call", call_sid=call_sid, status=notification.status)
            return

        state = PLATFORM_STATUS_TO_STATE[notification.status]
        self.registry.update_call_state(call_sid, state)
        self.logger.info("call_state_updated", call_sid=call_sid, state=state)

    def on_conference_start(self, notification: ConferenceNotification) -> None:
        self._remember_conference_sid(notification)
        self.logger.info(
            "conference_started",
            conference_id=notification.conference_name,
            conference_sid=notification.conference_sid
        )

    def on_conference_end(self, notification: ConferenceNotification) -> None:
        record = self.registry.end_conference(notification.conference_name)
        self.logger.info(
            "conference_ended",
            conference_id=notification.conference_name,
            known=record is not None
        )

    def on_participant_join(self, notification: ConferenceNotification) -> None:
        handle = self.registry.get_call(notification.participant_call_sid)
        if handle is not None:
            handle.conference_id = notification.conference_name
        self._remember_conference_sid(notification)
        self._apply_participant(notification, joined=True)

    def on_participant_leave(self, notification: ConferenceNotification) -> None:
        self._apply_participant(notification, joined=False)

    def on_participant_mute(self, notification: ConferenceNotification) -> None:
        muted = notification.event == "participant-mute"
        call_sid = notification.participant_call_sid
        if self.registry.get_call(call_sid) is None:
            self.logger.debug("mute_for_unknown_call", call_sid=call_sid, muted=muted)
            return
        self.registry.set_muted(call_sid, muted)
        self.logger.info(
            "participant_mute_updated",
            conference_id=notification.conference_name,
            call_sid=call_sid,
            muted=muted
        )

    def _remember_conference_sid(self, notification: ConferenceNotification) -> None:
        record = self.registry.get_conference(notification.conference_name)
        if record is not None and notification.conference_sid:
            record.conference_sid = notification.conference_sid

    def _apply_participant(self, notification: ConferenceNotification, joined: bool) -> None:
        conference_id = notification.conference_name
        handle = self.registry.get_call(notification.participant_call_sid)
        record = self.registry.get_conference(conference_id)

        if handle is None or record is None:
            self.logger.debug(
                "participant_event_skipped",
                conference_id=conference_id,
                call_sid=notification.participant_call_sid,
                event=notification.event
            )
            return

        if joined:
            self.registry.add_participant(conference_id, handle.remote_address)
        else:
            self.registry.remove_participant(conference_id, handle.remote_address)

        self.logger.info(
            "participant_updated",
            conference_id=conference_id,
            call_sid=handle.call_id,
            address=handle.remote_address,
            event=notification.event
        )

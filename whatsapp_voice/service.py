"""
音声サービスモジュール (Voice Service Module)

Twilio クライアントとレジストリを組み合わせ、WhatsApp 通話の発信や
会議の作成・参加者管理を行います。

Twilio API のエラーはログ出力した上でそのまま呼び出し元に伝播します。
発信済みの通話を取り消す手段はないため、切断は新しい操作として送信します。
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, TYPE_CHECKING

from .addressing import require_valid_address
from .errors import CallNotFoundError, ConferenceNotFoundError, UpstreamError, ValidationError
from .logging_config import get_logger
from .models import CALL_STATE_CALLING, CallHandle, ConferenceRecord
from .registry import CallRegistry
from .twilio_client import TwilioClient

if TYPE_CHECKING:
    from .config import Config


@dataclass
class ConferenceLaunch:
    """
    会議作成の結果

    Attributes:
        conference: 登録された会議レコード
        moderator_call_sid: 最初の参加者 (会議を作成する側) の通話 ID
        participant_call_sids: 残りの参加者の通話 ID
    """
    conference: ConferenceRecord
    moderator_call_sid: str
    participant_call_sids: List[str] = field(default_factory=list)


class VoiceService:
    """
    WhatsApp 音声通話を操作するサービス

    Attributes:
        config: アプリケーション設定
        client: Twilio REST クライアント
        registry: 通話・会議レジストリ
    """

    def __init__(self, config: "Config", client: TwilioClient, registry: CallRegistry):
        self.config = config
        self.client = client
        self.registry = registry
        self.logger = get_logger(__name__)

    def make_call(
        self,
        to: str,
        from_: Optional[str] = None,
        custom_parameters: Optional[Mapping[str, str]] = None
    ) -> CallHandle:
        """
        WhatsApp 通話を発信

        Args:
            to: 着信先アドレス
            from_: 発信元アドレス (省略時は設定の送信元)
            custom_parameters: 応答 TwiML に渡すパラメータ

        Returns:
            登録された通話ハンドル

        Raises:
            ValidationError: アドレスが不正な場合
            UpstreamError: Twilio API 呼び出しが失敗した場合
        """
        to_address = require_valid_address(to)
        from_address = require_valid_address(from_ or self.config.whatsapp_sender)

        call_sid = self._dial(
            from_address,
            to_address,
            "/voice/outbound-twiml",
            custom_parameters
        )
        handle = self.registry.register_call(call_sid, CallHandle(
            call_id=call_sid,
            state=CALL_STATE_CALLING,
            from_address=from_address,
            to_address=to_address,
            direction="outbound",
        ))
        self.logger.info("outbound_call_initiated", call_sid=call_sid, to=to_address)
        return handle

    def create_conference(
        self,
        conference_id: str,
        participants: Iterable[str],
        moderator: bool = False
    ) -> ConferenceLaunch:
        """
        2 人以上の参加者で会議を作成

        最初の参加者には会議作成用の TwiML を、残りの参加者には参加用の TwiML を返す
        URL で発信します。

        Raises:
            ValidationError: 会議 ID が空、参加者が 2 人未満、またはアドレスが不正な場合
            DuplicateConferenceError: 同じ ID の会議が既に存在する場合
            UpstreamError: Twilio API 呼び出しが失敗した場合
        """
        if not conference_id or not str(conference_id).strip():
            raise ValidationError("Conference ID is required")

        addresses: List[str] = []
        invalid: List[str] = []
        for raw in participants:
            try:
                address = require_valid_address(raw)
            except ValidationError:
                invalid.append(str(raw))
                continue
            if address not in addresses:
                addresses.append(address)

        if invalid:
            raise ValidationError(f"Invalid WhatsApp numbers: {', '.join(invalid)}")
        if len(addresses) < 2:
            raise ValidationError("Conference ID and at least 2 participants required")

        record = self.registry.create_conference(
            conference_id,
            addresses,
            moderator=addresses[0] if moderator else None
        )
        self.logger.info(
            "conference_created",
            conference_id=conference_id,
            participants=addresses,
            moderator=record.moderator
        )

        try:
            moderator_call_sid = self._dial_into_conference(
                conference_id,
                addresses[0],
                "/voice/conference/create",
                {"ConferenceName": conference_id, "Moderator": "true" if moderator else "false"}
            )
        except UpstreamError:
            # 会議室を作る発信が失敗した場合は会議自体が成立しない
            self.registry.end_conference(conference_id)
            raise

        participant_call_sids = [
            self._dial_into_conference(
                conference_id,
                address,
                "/voice/conference/join",
                {"ConferenceName": conference_id}
            )
            for address in addresses[1:]
        ]

        return ConferenceLaunch(
            conference=record,
            moderator_call_sid=moderator_call_sid,
            participant_call_sids=participant_call_sids,
        )

    def add_participant(self, conference_id: str, participant: str) -> CallHandle:
        """
        既存の会議に参加者を追加

        Raises:
            ValidationError: アドレスが不正な場合
            ConferenceNotFoundError: 会議が存在しない場合
            UpstreamError: Twilio API 呼び出しが失敗した場合
        """
        address = require_valid_address(participant)
        if self.registry.get_conference(conference_id) is None:
            raise ConferenceNotFoundError(conference_id)

        existing = self.registry.find_call_by_address(address, conference_id)
        if existing is not None:
            self.logger.info("participant_already_dialed", conference_id=conference_id, call_sid=existing.call_id)
            return existing

        call_sid = self._dial_into_conference(
            conference_id,
            address,
            "/voice/conference/join",
            {"ConferenceName": conference_id}
        )
        self.registry.add_participant(conference_id, address)
        self.logger.info("participant_added", conference_id=conference_id, call_sid=call_sid, address=address)
        return self.registry.get_call(call_sid)

    def remove_participant(self, conference_id: str, participant: str) -> ConferenceRecord:
        """
        会議から参加者を削除し、その通話を切断

        Raises:
            ValidationError: アドレスが不正な場合
            ConferenceNotFoundError: 会議が存在しない場合
            UpstreamError: Twilio API 呼び出しが失敗した場合
        """
        address = require_valid_address(participant)
        record = self.registry.remove_participant(conference_id, address)

        handle = self.registry.find_call_by_address(address, conference_id)
        if handle is not None:
            self._hangup(handle.call_id)

        self.logger.info("participant_removed", conference_id=conference_id, address=address)
        return record

    def end_conference(self, conference_id: str) -> bool:
        """
        会議を終了し、参加中の通話をすべて切断

        一部の通話の切断に失敗しても残りの通話の切断を続けます。失敗した通話が
        ある場合、会議と失敗した通話はレジストリに残るため、再度呼び出して
        切断を再試行できます。

        Returns:
            会議が存在した場合 True (存在しない場合は何もせず False)

        Raises:
            UpstreamError: いずれかの通話の切断に失敗した場合 (最初のエラー)
        """
        if self.registry.get_conference(conference_id) is None:
            self.logger.debug("conference_already_ended", conference_id=conference_id)
            return False

        failures: List[UpstreamError] = []
        for handle in self.registry.list_calls():
            if handle.conference_id != conference_id:
                continue
            try:
                self._hangup(handle.call_id)
            except UpstreamError as e:
                self.logger.error(
                    "conference_hangup_failed",
                    conference_id=conference_id,
                    call_sid=handle.call_id,
                    error_message=e.message
                )
                failures.append(e)

        if failures:
            raise failures[0]

        self.registry.end_conference(conference_id)
        self.logger.info("conference_ended", conference_id=conference_id)
        return True

    def mute_call(self, call_id: str, muted: bool) -> CallHandle:
        """
        通話のミュート状態を変更

        ミュートフラグは確認応答を待たずに更新します。会議の ConferenceSid が
        判明している場合は Twilio にも参加者の更新を送信します。

        Raises:
            CallNotFoundError: 通話が存在しない場合
            UpstreamError: Twilio API 呼び出しが失敗した場合
        """
        handle = self.registry.set_muted(call_id, muted)

        record = self.registry.get_conference(handle.conference_id) if handle.conference_id else None
        if record is not None and record.conference_sid:
            self.client.update_participant(record.conference_sid, call_id, muted)

        self.logger.info("call_mute_updated", call_sid=call_id, muted=muted)
        return handle

    def disconnect_call(self, call_id: str) -> CallHandle:
        """
        通話を切断してレジストリから削除

        Raises:
            CallNotFoundError: 通話が存在しない場合
            UpstreamError: Twilio API 呼び出しが失敗した場合
        """
        handle = self.registry.get_call(call_id)
        if handle is None:
            raise CallNotFoundError(call_id)

        self._hangup(call_id)
        if handle.conference_id and self.registry.get_conference(handle.conference_id) is not None:
            self.registry.remove_participant(handle.conference_id, handle.remote_address)
        return handle

    def shutdown(self) -> None:
        """すべての通話を切断し、レジストリを破棄"""
        for handle in self.registry.list_calls():
            try:
                self.client.hangup_call(handle.call_id)
            except UpstreamError as e:
                self.logger.error(
                    "shutdown_hangup_failed",
                    call_sid=handle.call_id,
                    error_message=e.message
                )
        self.registry.clear()
        self.logger.info("voice_service_shutdown")

    def _dial(
        self,
        from_address: str,
        to_address: str,
        twiml_path: str,
        custom_parameters: Optional[Mapping[str, str]] = None
    ) -> str:
        try:
            return self.client.create_call(
                from_=from_address,
                to=to_address,
                url=self.config.url_for(twiml_path),
                status_callback=self.config.url_for("/call-status"),
                custom_params=custom_parameters,
            )
        except UpstreamError as e:
            self.logger.error(
                "outbound_call_failed",
                to=to_address,
                error_message=e.message,
                upstream_status=e.upstream_status
            )
            raise

    def _dial_into_conference(
        self,
        conference_id: str,
        address: str,
        twiml_path: str,
        params: Mapping[str, str]
    ) -> str:
        from_address = self.config.whatsapp_sender
        call_sid = self._dial(from_address, address, twiml_path, params)
        self.registry.register_call(call_sid, CallHandle(
            call_id=call_sid,
            state=CALL_STATE_CALLING,
            from_address=from_address,
            to_address=address,
            direction="outbound",
            conference_id=conference_id,
        ))
        return call_sid

    def _hangup(self, call_id: str) -> None:
        self.client.hangup_call(call_id)
        self.registry.remove_call(call_id)

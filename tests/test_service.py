"""
音声サービスのユニットテスト (Voice Service Tests)

Twilio クライアントをモックして、発信と会議操作を検証します。
"""

from unittest.mock import MagicMock

import pytest

from whatsapp_voice.config import Config
from whatsapp_voice.errors import (
    CallNotFoundError,
    ConferenceNotFoundError,
    DuplicateConferenceError,
    UpstreamError,
    ValidationError,
)
from whatsapp_voice.models import CallHandle
from whatsapp_voice.registry import CallRegistry
from whatsapp_voice.service import VoiceService
from whatsapp_voice.twilio_client import TwilioClient


@pytest.fixture
def test_config():
    return Config(
        twilio_account_sid="ACtest",
        twilio_auth_token="token",
        whatsapp_sender="whatsapp:+15550000000",
        webhook_base_url="https://example.com",
        log_level="DEBUG",
    )


@pytest.fixture
def twilio_client():
    client = MagicMock(spec=TwilioClient)
    sids = iter(f"CA{i}" for i in range(1, 100))
    client.create_call.side_effect = lambda **kwargs: next(sids)
    return client


@pytest.fixture
def registry():
    return CallRegistry()


@pytest.fixture
def service(test_config, twilio_client, registry):
    return VoiceService(test_config, twilio_client, registry)


class TestMakeCall:
    """make_call() のテスト"""

    def test_registers_outbound_call(self, service, twilio_client, registry):
        handle = service.make_call("15551112222", custom_parameters={"reason": "support"})

        assert handle.call_id == "CA1"
        assert handle.state == "calling"
        assert handle.to_address == "whatsapp:+15551112222"
        assert handle.from_address == "whatsapp:+15550000000"
        assert registry.get_call("CA1") is handle

        kwargs = twilio_client.create_call.call_args.kwargs
        assert kwargs["url"] == "https://example.com/voice/outbound-twiml"
        assert kwargs["status_callback"] == "https://example.com/call-status"
        assert kwargs["custom_params"] == {"reason": "support"}

    def test_invalid_address_rejected_before_platform_call(self, service, twilio_client):
        with pytest.raises(ValidationError):
            service.make_call("abc")

        twilio_client.create_call.assert_not_called()

    def test_upstream_error_is_propagated_without_registration(self, service, twilio_client, registry):
        error = UpstreamError("boom", upstream_status=500)
        twilio_client.create_call.side_effect = error

        with pytest.raises(UpstreamError) as exc_info:
            service.make_call("whatsapp:+15551112222")

        assert exc_info.value is error
        assert twilio_client.create_call.call_count == 1
        assert registry.list_calls() == []


class TestConferences:
    """会議操作のテスト"""

    def test_create_conference_dials_all_participants(self, service, twilio_client, registry):
        launch = service.create_conference(
            "room42",
            ["whatsapp:+15551110001", "15551110002", "whatsapp:+15551110003"],
            moderator=True
        )

        assert launch.moderator_call_sid == "CA1"
        assert launch.participant_call_sids == ["CA2", "CA3"]
        assert launch.conference.moderator == "whatsapp:+15551110001"
        assert registry.get_conference("room42").participants == [
            "whatsapp:+15551110001",
            "whatsapp:+15551110002",
            "whatsapp:+15551110003",
        ]

        urls = [call.kwargs["url"] for call in twilio_client.create_call.call_args_list]
        assert urls == [
            "https://example.com/voice/conference/create",
            "https://example.com/voice/conference/join",
            "https://example.com/voice/conference/join",
        ]
        first_params = twilio_client.create_call.call_args_list[0].kwargs["custom_params"]
        assert first_params == {"ConferenceName": "room42", "Moderator": "true"}
        assert all(handle.conference_id == "room42" for handle in registry.list_calls())

    def test_create_conference_requires_two_participants(self, service, twilio_client):
        with pytest.raises(ValidationError):
            service.create_conference("room42", ["whatsapp:+15551110001", "+15551110001"])

        twilio_client.create_call.assert_not_called()

    def test_create_conference_rejects_invalid_numbers(self, service, twilio_client):
        with pytest.raises(ValidationError, match="bad"):
            service.create_conference("room42", ["whatsapp:+15551110001", "bad"])

        twilio_client.create_call.assert_not_called()

    def test_create_duplicate_conference(self, service, registry):
        registry.create_conference("room42", [])

        with pytest.raises(DuplicateConferenceError):
            service.create_conference("room42", ["+15551110001", "+15551110002"])

    def test_failed_first_dial_discards_conference(self, service, twilio_client, registry):
        twilio_client.create_call.side_effect = UpstreamError("down")

        with pytest.raises(UpstreamError):
            service.create_conference("room42", ["+15551110001", "+15551110002"])

        assert registry.get_conference("room42") is None

    def test_add_participant(self, service, registry):
        registry.create_conference("room42", [])

        handle = service.add_participant("room42", "+15551110009")

        assert handle.conference_id == "room42"
        assert registry.get_conference("room42").participants == ["whatsapp:+15551110009"]

    def test_add_participant_already_dialed(self, service, twilio_client, registry):
        registry.create_conference("room42", [])
        first = service.add_participant("room42", "+15551110009")

        second = service.add_participant("room42", "whatsapp:+15551110009")

        assert second is first
        assert twilio_client.create_call.call_count == 1

    def test_add_participant_to_missing_conference(self, service, twilio_client):
        with pytest.raises(ConferenceNotFoundError):
            service.add_participant("missing", "+15551110009")

        twilio_client.create_call.assert_not_called()

    def test_remove_participant_hangs_up_leg(self, service, twilio_client, registry):
        service.create_conference("room42", ["+15551110001", "+15551110002"])

        record = service.remove_participant("room42", "+15551110002")

        assert record.participants == ["whatsapp:+15551110001"]
        twilio_client.hangup_call.assert_called_once_with("CA2")
        assert registry.get_call("CA2") is None

    def test_end_conference_hangs_up_all_legs(self, service, twilio_client, registry):
        service.create_conference("room42", ["+15551110001", "+15551110002"])

        assert service.end_conference("room42") is True
        assert service.end_conference("room42") is False

        assert twilio_client.hangup_call.call_count == 2
        assert registry.list_calls() == []

    def test_end_conference_continues_after_failed_hangup(self, service, twilio_client, registry):
        """切断に失敗した通話があっても残りを切断し、再試行で終了できることを検証"""
        service.create_conference("room42", ["+15551110001", "+15551110002"])
        twilio_client.hangup_call.side_effect = [UpstreamError("gone", upstream_status=500), None]

        with pytest.raises(UpstreamError):
            service.end_conference("room42")

        assert [call.args[0] for call in twilio_client.hangup_call.call_args_list] == ["CA1", "CA2"]
        assert registry.get_conference("room42") is not None
        assert [handle.call_id for handle in registry.list_calls()] == ["CA1"]

        twilio_client.hangup_call.side_effect = None
        assert service.end_conference("room42") is True

        twilio_client.hangup_call.assert_called_with("CA1")
        assert registry.get_conference("room42") is None
        assert registry.list_calls() == []


class TestCallControl:
    """ミュートと切断のテスト"""

    def test_mute_without_conference_sid_is_local(self, service, twilio_client, registry):
        registry.register_call("CA1", CallHandle(call_id="CA1"))

        handle = service.mute_call("CA1", True)

        assert handle.muted is True
        twilio_client.update_participant.assert_not_called()

    def test_mute_in_known_conference_updates_platform(self, service, twilio_client, registry):
        record = registry.create_conference("room42", [])
        record.conference_sid = "CF1"
        registry.register_call("CA1", CallHandle(call_id="CA1", conference_id="room42"))

        service.mute_call("CA1", True)

        twilio_client.update_participant.assert_called_once_with("CF1", "CA1", True)

    def test_mute_missing_call(self, service):
        with pytest.raises(CallNotFoundError):
            service.mute_call("missing", True)

    def test_disconnect_call(self, service, twilio_client, registry):
        handle = service.make_call("+15551112222")

        service.disconnect_call(handle.call_id)

        twilio_client.hangup_call.assert_called_once_with("CA1")
        assert registry.get_call("CA1") is None

    def test_disconnect_missing_call(self, service):
        with pytest.raises(CallNotFoundError):
            service.disconnect_call("missing")

    def test_shutdown_clears_registry(self, service, twilio_client, registry):
        service.make_call("+15551112222")
        registry.create_conference("room42", [])
        twilio_client.hangup_call.side_effect = UpstreamError("gone")

        service.shutdown()

        assert registry.counts() == {"activeConferences": 0, "activeCalls": 0}

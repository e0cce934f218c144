"""
TwiML Builder テストモジュール (TwiML Builder Test Module)

TwiMLBuilder と TwiMLTemplates のユニットテストです。
"""

import xml.etree.ElementTree as ET

import pytest

from whatsapp_voice.config import Config
from whatsapp_voice.errors import ValidationError
from whatsapp_voice.twiml import MenuOption, TwiMLBuilder, TwiMLTemplates, XML_DECLARATION


def parse(document: str) -> ET.Element:
    """TwiML 文字列をパースして <Response> 要素を返す"""
    return ET.fromstring(document.encode("utf-8"))


@pytest.fixture
def templates():
    return TwiMLTemplates()


class TestTwiMLBuilder:
    """TwiMLBuilder のテスト"""

    def test_empty_document(self):
        """要素なしでも単一の Response を持つ文書になることを検証"""
        document = TwiMLBuilder().build()

        assert document.startswith(XML_DECLARATION)
        root = parse(document)
        assert root.tag == "Response"
        assert len(root) == 0

    def test_say_dial_client_sequence(self):
        """say → dial → client の連鎖が期待通りの構造になることを検証"""
        document = TwiMLBuilder().say("hi").dial().client("agent", {"x": "1"}).build()

        assert document.count("<Response>") == 1
        assert document.count("</Response>") == 1

        root = parse(document)
        assert [child.tag for child in root] == ["Say", "Dial"]
        assert root.find("Say").text == "hi"

        dial = root.find("Dial")
        clients = dial.findall("Client")
        assert len(clients) == 1
        assert clients[0].find("Identity").text == "agent"
        parameters = clients[0].findall("Parameter")
        assert len(parameters) == 1
        assert parameters[0].attrib == {"name": "x", "value": "1"}

    def test_build_is_idempotent(self):
        """build() を繰り返しても閉じタグが重複しないことを検証"""
        builder = TwiMLBuilder().say("hello").hangup()

        first = builder.build()
        second = builder.build()

        assert first == second
        assert second.count("</Response>") == 1

    def test_append_after_build_raises(self):
        """build() 後の追加が拒否されることを検証"""
        builder = TwiMLBuilder().say("hello")
        builder.build()

        with pytest.raises(ValidationError):
            builder.say("again")

    def test_say_attributes_are_optional(self):
        """指定されていない属性が出力されないことを検証"""
        root = parse(TwiMLBuilder().say("plain").say("styled", voice="alice", language="en-US", loop=2).build())

        plain, styled = root.findall("Say")
        assert plain.attrib == {}
        assert styled.attrib == {"voice": "alice", "language": "en-US", "loop": "2"}

    def test_text_and_attributes_are_escaped(self):
        """ユーザー入力に含まれる特殊文字がエスケープされることを検証"""
        text = 'Tom & Jerry <script> "quoted"'
        document = (
            TwiMLBuilder()
            .say(text)
            .dial()
            .client("agent", {"note": '"><Hangup/>'})
            .build()
        )

        assert "<script>" not in document
        root = parse(document)
        assert root.find("Say").text == text
        assert root.find("Dial/Client/Parameter").get("value") == '"><Hangup/>'
        assert root.find("Hangup") is None

    def test_control_characters_are_removed(self):
        """XML で使用できない制御文字を含む入力でもパース可能な文書になることを検証"""
        document = (
            TwiMLBuilder()
            .say("a\x01b")
            .dial(caller_id="whatsapp:+1555\x0b0000000")
            .client("agent\x00", {"note": "line\x1fone\ttwo", "bell\x07": "x\x0c"})
            .build()
        )

        root = parse(document)
        assert root.find("Say").text == "ab"
        assert root.find("Dial").get("callerId") == "whatsapp:+15550000000"
        assert root.find("Dial/Client/Identity").text == "agent"
        parameters = {p.get("name"): p.get("value") for p in root.findall("Dial/Client/Parameter")}
        assert parameters == {"note": "lineone\ttwo", "bell": "x"}

    def test_dial_whatsapp_strips_prefix(self):
        root = parse(TwiMLBuilder().dial(caller_id="whatsapp:+15550000000").whatsapp("whatsapp:+15551112222").build())

        dial = root.find("Dial")
        assert dial.get("callerId") == "whatsapp:+15550000000"
        assert dial.find("WhatsApp").text == "+15551112222"

    def test_dial_conference_boolean_attributes(self):
        root = parse(
            TwiMLBuilder()
            .dial()
            .conference("room", start_conference_on_enter=True, end_conference_on_exit=False)
            .build()
        )

        conference = root.find("Dial/Conference")
        assert conference.text == "room"
        assert conference.get("startConferenceOnEnter") == "true"
        assert conference.get("endConferenceOnExit") == "false"
        assert conference.get("muted") is None

    def test_each_dial_emits_one_element(self):
        """dial() ごとに <Dial> が一つだけ追加されることを検証"""
        root = parse(
            TwiMLBuilder()
            .dial(timeout=20)
            .client("a")
            .dial()
            .whatsapp("+15551112222")
            .build()
        )

        dials = root.findall("Dial")
        assert len(dials) == 2
        assert dials[0].get("timeout") == "20"
        assert dials[1].get("timeout") is None

    def test_gather_wraps_say(self):
        root = parse(TwiMLBuilder().gather(input="dtmf", num_digits=1).say("Press 1", voice="alice").build())

        gather = root.find("Gather")
        assert gather.attrib == {"input": "dtmf", "numDigits": "1"}
        assert gather.find("Say").text == "Press 1"

    def test_record_and_hangup(self):
        root = parse(TwiMLBuilder().record(max_length=30, transcribe=True).hangup().build())

        assert [child.tag for child in root] == ["Record", "Hangup"]
        assert root.find("Record").attrib == {"maxLength": "30", "transcribe": "true"}


class TestTwiMLTemplates:
    """TwiMLTemplates のテスト"""

    def test_uses_config_values(self):
        """設定の音声とグリーティングを使用することを検証"""
        config = Config(
            twilio_account_sid="ACtest",
            twilio_auth_token="token",
            whatsapp_sender="whatsapp:+15550000000",
            webhook_base_url="https://example.com",
            voice="alice",
            greeting_message="Hello from tests",
        )
        root = parse(TwiMLTemplates(config).render_answer_and_bridge(None))

        say = root.find("Say")
        assert say.text == "Hello from tests"
        assert say.get("voice") == "alice"
        assert root.find("Dial/Client/Identity").text == "whatsapp-client"

    def test_answer_and_bridge(self, templates):
        document = templates.render_answer_and_bridge(
            "whatsapp:+15550000000",
            "whatsapp-client",
            {"original_caller": "whatsapp:+15551112222", "call_type": "whatsapp_voice"}
        )
        root = parse(document)

        assert root.find("Say").text == "Welcome to WhatsApp Business Calling"
        assert root.find("Dial").get("callerId") == "whatsapp:+15550000000"
        parameters = root.findall("Dial/Client/Parameter")
        assert [(p.get("name"), p.get("value")) for p in parameters] == [
            ("original_caller", "whatsapp:+15551112222"),
            ("call_type", "whatsapp_voice"),
        ]

    def test_answer_and_bridge_omits_absent_fields(self, templates):
        root = parse(templates.render_answer_and_bridge(None))

        assert root.find("Dial").get("callerId") is None
        assert root.find("Dial/Client/Identity").text == "default-client"
        assert root.findall("Dial/Client/Parameter") == []

    def test_conference_create_moderator(self, templates):
        """モデレーターの場合、開始・終了フラグが両方有効になることを検証"""
        conference = parse(templates.render_conference_create("room42", True)).find("Dial/Conference")

        assert conference.text == "room42"
        assert conference.get("startConferenceOnEnter") == "true"
        assert conference.get("endConferenceOnExit") == "true"
        assert conference.get("muted") == "false"
        assert conference.get("statusCallback") == "/conference-events"
        assert conference.get("statusCallbackMethod") == "POST"

    def test_conference_create_non_moderator(self, templates):
        """モデレーターでない場合、開始・終了フラグが両方無効になることを検証"""
        conference = parse(templates.render_conference_create("room42", False)).find("Dial/Conference")

        assert conference.get("startConferenceOnEnter") == "false"
        assert conference.get("endConferenceOnExit") == "false"
        assert conference.get("waitUrl") is None

    def test_conference_create_wait_url(self, templates):
        document = templates.render_conference_create("room42", False, wait_url="/voice/conference/wait?conference=room42&x=1")
        conference = parse(document).find("Dial/Conference")

        assert conference.get("waitUrl") == "/voice/conference/wait?conference=room42&x=1"

    @pytest.mark.parametrize("name", ["", "   "])
    def test_conference_create_rejects_empty_name(self, templates, name):
        with pytest.raises(ValidationError):
            templates.render_conference_create(name, True)

    def test_conference_join(self, templates):
        root = parse(templates.render_conference_join("room42", muted=True))

        assert root.find("Say").text == "Connecting to conference"
        conference = root.find("Dial/Conference")
        assert conference.get("muted") == "true"
        assert conference.get("startConferenceOnEnter") is None
        assert conference.get("endConferenceOnExit") is None

    def test_conference_join_rejects_empty_name(self, templates):
        with pytest.raises(ValidationError):
            templates.render_conference_join("")

    def test_voicemail_prompt_defaults(self, templates):
        root = parse(templates.render_voicemail_prompt())

        assert [child.tag for child in root] == ["Say", "Record", "Say"]
        record = root.find("Record")
        assert record.get("maxLength") == "120"
        assert record.get("transcribe") == "false"
        assert record.get("action") == "/voicemail-completed"
        assert root.findall("Say")[1].text == "Thank you for your message. Goodbye."

    def test_voicemail_prompt_custom(self, templates):
        root = parse(templates.render_voicemail_prompt("Leave a note", max_length_seconds=30, transcribe=True))

        assert root.find("Say").text == "Leave a note"
        assert root.find("Record").get("maxLength") == "30"
        assert root.find("Record").get("transcribe") == "true"

    def test_ivr_menu_announces_options_in_order(self, templates):
        """メニュー項目が渡された順に読み上げられることを検証"""
        document = templates.render_ivr_menu(
            [{"digit": "1", "description": "sales"}, {"digit": "2", "description": "support"}],
            10
        )
        root = parse(document)

        gather = root.find("Gather")
        assert gather.get("numDigits") == "1"
        assert gather.get("timeout") == "10"
        assert gather.get("input") == "dtmf"

        prompt = gather.find("Say").text
        assert prompt.startswith("Please select from the following options:")
        assert prompt.index("Press 1 for sales.") < prompt.index("Press 2 for support.")

        assert [child.tag for child in root] == ["Gather", "Say", "Hangup"]

    def test_ivr_menu_accepts_menu_options(self, templates):
        document = templates.render_ivr_menu([MenuOption("9", "billing")], timeout_seconds=5)
        gather = parse(document).find("Gather")

        assert gather.get("timeout") == "5"
        assert "Press 9 for billing." in gather.find("Say").text

    def test_ivr_menu_rejects_duplicate_digits(self, templates):
        with pytest.raises(ValidationError, match="Duplicate"):
            templates.render_ivr_menu([
                {"digit": "1", "description": "sales"},
                {"digit": "1", "description": "support"},
            ])

    def test_ivr_menu_rejects_empty_menu(self, templates):
        with pytest.raises(ValidationError):
            templates.render_ivr_menu([])

    @pytest.mark.parametrize("digit", ["12", "a", "", " ", "٣"])
    def test_ivr_menu_rejects_non_dtmf_digits(self, templates, digit):
        """1 桁の DTMF (0-9, *, #) 以外の選択肢が拒否されることを検証"""
        with pytest.raises(ValidationError):
            templates.render_ivr_menu([{"digit": digit, "description": "sales"}])

    def test_ivr_menu_accepts_star_and_pound(self, templates):
        document = templates.render_ivr_menu([MenuOption("*", "the menu"), MenuOption("#", "an operator")])

        prompt = parse(document).find("Gather/Say").text
        assert "Press * for the menu." in prompt
        assert "Press # for an operator." in prompt

    def test_ivr_selection_redirects_to_option_action(self, templates):
        menu = [MenuOption("1", "sales", action="/sales"), MenuOption("2", "support")]

        root = parse(templates.render_ivr_selection(menu, "1", "support"))

        assert [child.tag for child in root] == ["Redirect"]
        assert root.find("Redirect").text == "/sales"
        assert root.find("Redirect").get("method") == "POST"

    def test_ivr_selection_without_action_enqueues(self, templates):
        menu = [MenuOption("1", "sales", action="/sales"), MenuOption("2", "support")]

        root = parse(templates.render_ivr_selection(menu, "2", "helpdesk"))

        assert root.find("Enqueue").text == "helpdesk"

    @pytest.mark.parametrize("digits", ["", "9", "12"])
    def test_ivr_selection_unknown_digits_returns_to_menu(self, templates, digits):
        root = parse(templates.render_ivr_selection([MenuOption("1", "sales")], digits, "support"))

        assert root.find("Say").text == "Sorry, that is not a valid option."
        assert root.find("Redirect").text == "/voice/ivr"

    def test_enqueue(self, templates):
        root = parse(templates.render_enqueue("support"))

        enqueue = root.find("Enqueue")
        assert enqueue.text == "support"
        assert enqueue.get("waitUrl") == "/queue-wait"
        assert enqueue.get("maxWait") == "300"

    def test_forward(self, templates):
        root = parse(templates.render_forward("whatsapp:+15550000000", "whatsapp:+15551112222"))

        dial = root.find("Dial")
        assert dial.get("timeout") == "30"
        assert dial.get("action") == "/call-completed"
        assert dial.find("WhatsApp").text == "+15551112222"

    def test_call_permission(self, templates):
        granted = parse(templates.render_call_permission(True)).find("Say").text
        denied = parse(templates.render_call_permission(False)).find("Say").text
        custom = parse(templates.render_call_permission(False, "Maybe later")).find("Say").text

        assert granted.startswith("Thank you for granting call permission")
        assert denied == "Call permission was not granted. Thank you."
        assert custom == "Maybe later"

    def test_recorded_call(self, templates):
        dial = parse(templates.render_recorded_call("dual")).find("Dial")

        assert dial.get("record") == "dual"
        assert dial.get("recordingStatusCallback") == "/recording-completed"
        assert dial.find("Client/Identity").text == "default-client"

    def test_recorded_call_rejects_unknown_channels(self, templates):
        with pytest.raises(ValidationError):
            templates.render_recorded_call("stereo")

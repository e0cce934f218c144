"""
TwiML Builder モジュール (TwiML Builder Module)

Twilio Programmable Voice の通話フローを制御する TwiML ドキュメントを構築します。

ドキュメントは要素の追記専用リストとして組み立てられ、build() で一度だけ
シリアライズされます。テキストと属性値は ElementTree によってエスケープされ、
XML で使用できない制御文字は除去されるため、ユーザー入力を含んでも不正な XML は生成されません。
"""

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Union, TYPE_CHECKING

from .addressing import strip_channel_prefix
from .errors import ValidationError

if TYPE_CHECKING:
    from .config import Config


XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

DEFAULT_VOICE = "Polly.Joanna"
DEFAULT_CLIENT_IDENTITY = "default-client"
DEFAULT_GREETING = "Welcome to WhatsApp Business Calling"
DEFAULT_VOICEMAIL_GREETING = "Sorry we missed your call. Please leave a message after the beep."
DEFAULT_PERMISSION_FALLBACK = "Call permission was not granted. Thank you."

CONFERENCE_EVENTS_PATH = "/conference-events"
VOICEMAIL_COMPLETED_PATH = "/voicemail-completed"
IVR_RESPONSE_PATH = "/ivr-response"
QUEUE_WAIT_PATH = "/queue-wait"
QUEUE_COMPLETED_PATH = "/queue-completed"
CALL_COMPLETED_PATH = "/call-completed"
RECORDING_COMPLETED_PATH = "/recording-completed"

DTMF_KEYS = frozenset("0123456789*#")

# XML 1.0 で使用できない文字 (タブ・改行・復帰以外の制御文字、サロゲート、U+FFFE/U+FFFF)
_INVALID_XML_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return _INVALID_XML_CHARS.sub("", str(value))


def _element(tag: str, text: Optional[str] = None, **attributes: Any) -> ET.Element:
    """None の属性を省略して要素を作成 (XML で使用できない文字は除去)"""
    element = ET.Element(tag)
    for name, value in attributes.items():
        if value is not None:
            element.set(name, _format_value(value))
    if text is not None:
        element.text = _format_value(text)
    return element


@dataclass
class MenuOption:
    """
    IVR メニュー項目

    Attributes:
        digit: 押下する数字
        description: 読み上げる説明
        action: 選択時の遷移先 (オプション)
    """
    digit: str
    description: str
    action: Optional[str] = None


class TwiMLBuilder:
    """
    TwiML を組み立てる追記専用ビルダー

    各メソッドは要素を末尾に追加し、自身 (またはネストしたビルダー) を返します。
    build() は何度呼び出しても同じドキュメントを返し、閉じタグが重複することはありません。
    build() 後の追加は ValidationError になります。

    Example:
        >>> TwiMLBuilder().say("hi").dial().client("agent", {"x": "1"}).build()
    """

    def __init__(self):
        self._elements: List[ET.Element] = []
        self._document: Optional[str] = None

    def _append(self, element: ET.Element) -> "TwiMLBuilder":
        if self._document is not None:
            raise ValidationError("TwiML document has already been built")
        self._elements.append(element)
        return self

    def say(
        self,
        text: str,
        voice: Optional[str] = None,
        language: Optional[str] = None,
        loop: Optional[int] = None
    ) -> "TwiMLBuilder":
        return self._append(_element("Say", text, voice=voice, language=language, loop=loop))

    def dial(
        self,
        caller_id: Optional[str] = None,
        timeout: Optional[int] = None,
        action: Optional[str] = None,
        method: Optional[str] = None,
        record: Optional[str] = None,
        recording_status_callback: Optional[str] = None,
        recording_status_callback_method: Optional[str] = None
    ) -> "DialBuilder":
        return DialBuilder(
            self,
            callerId=caller_id,
            timeout=timeout,
            action=action,
            method=method,
            record=record,
            recordingStatusCallback=recording_status_callback,
            recordingStatusCallbackMethod=recording_status_callback_method,
        )

    def gather(
        self,
        input: Optional[str] = None,
        timeout: Optional[int] = None,
        num_digits: Optional[int] = None,
        action: Optional[str] = None,
        method: Optional[str] = None
    ) -> "GatherBuilder":
        return GatherBuilder(
            self,
            input=input,
            timeout=timeout,
            numDigits=num_digits,
            action=action,
            method=method,
        )

    def record(
        self,
        max_length: Optional[int] = None,
        transcribe: Optional[bool] = None,
        action: Optional[str] = None,
        method: Optional[str] = None
    ) -> "TwiMLBuilder":
        return self._append(_element(
            "Record",
            maxLength=max_length,
            transcribe=transcribe,
            action=action,
            method=method,
        ))

    def enqueue(
        self,
        queue_name: str,
        wait_url: Optional[str] = None,
        max_wait: Optional[int] = None,
        action: Optional[str] = None,
        method: Optional[str] = None
    ) -> "TwiMLBuilder":
        return self._append(_element(
            "Enqueue",
            queue_name,
            waitUrl=wait_url,
            maxWait=max_wait,
            action=action,
            method=method,
        ))

    def hangup(self) -> "TwiMLBuilder":
        return self._append(_element("Hangup"))

    def redirect(self, url: str, method: Optional[str] = None) -> "TwiMLBuilder":
        return self._append(_element("Redirect", url, method=method))

    def build(self) -> str:
        """
        ドキュメントを閉じて XML 文字列を返す

        Returns:
            XML 宣言と単一の <Response> 要素からなる TwiML 文字列
        """
        if self._document is None:
            response = ET.Element("Response")
            response.extend(self._elements)
            ET.indent(response, space="  ")
            self._document = "\n".join([XML_DECLARATION, ET.tostring(response, encoding="unicode")])
        return self._document


class DialBuilder:
    """
    <Dial> 要素のビルダー

    client(), whatsapp(), conference() のいずれかで <Dial> を一つだけ追加し、
    親の TwiMLBuilder に制御を戻します。
    """

    def __init__(self, parent: TwiMLBuilder, **attributes: Any):
        self._parent = parent
        self._attributes = attributes

    def _emit(self, child: ET.Element) -> TwiMLBuilder:
        dial = _element("Dial", **self._attributes)
        dial.append(child)
        return self._parent._append(dial)

    def client(self, identity: str, parameters: Optional[Mapping[str, str]] = None) -> TwiMLBuilder:
        client = _element("Client")
        client.append(_element("Identity", identity))
        for name, value in (parameters or {}).items():
            client.append(_element("Parameter", name=name, value=value))
        return self._emit(client)

    def whatsapp(self, number: str) -> TwiMLBuilder:
        return self._emit(_element("WhatsApp", strip_channel_prefix(number)))

    def conference(
        self,
        name: str,
        start_conference_on_enter: Optional[bool] = None,
        end_conference_on_exit: Optional[bool] = None,
        muted: Optional[bool] = None,
        wait_url: Optional[str] = None,
        status_callback: Optional[str] = None,
        status_callback_event: Optional[str] = None,
        status_callback_method: Optional[str] = None
    ) -> TwiMLBuilder:
        return self._emit(_element(
            "Conference",
            name,
            startConferenceOnEnter=start_conference_on_enter,
            endConferenceOnExit=end_conference_on_exit,
            muted=muted,
            waitUrl=wait_url,
            statusCallback=status_callback,
            statusCallbackEvent=status_callback_event,
            statusCallbackMethod=status_callback_method,
        ))


class GatherBuilder:
    """<Gather> 要素のビルダー (say() で一つだけ追加し、親に制御を戻す)"""

    def __init__(self, parent: TwiMLBuilder, **attributes: Any):
        self._parent = parent
        self._attributes = attributes

    def say(self, text: str, voice: Optional[str] = None) -> TwiMLBuilder:
        gather = _element("Gather", **self._attributes)
        gather.append(_element("Say", text, voice=voice))
        return self._parent._append(gather)


class TwiMLTemplates:
    """
    定型 TwiML を生成するクラス

    設定に基づいて、着信応答・会議・ボイスメール・IVR などの
    TwiML ドキュメントを生成します。すべての render_* メソッドは
    入力検証を出力生成の前に行うため、失敗時に部分的な出力は発生しません。

    Attributes:
        voice: 読み上げに使用する音声
        greeting_message: 着信時のグリーティング
        client_identity: ブリッジ先のデフォルトクライアント ID
    """

    def __init__(self, config: Optional["Config"] = None):
        """
        TwiMLTemplates を初期化

        Args:
            config: アプリケーション設定 (None の場合はデフォルト値を使用)
        """
        self.voice = config.voice if config else DEFAULT_VOICE
        self.greeting_message = config.greeting_message if config else DEFAULT_GREETING
        self.client_identity = config.client_identity if config else DEFAULT_CLIENT_IDENTITY

    def render_answer_and_bridge(
        self,
        caller_address: Optional[str],
        target_client_identity: Optional[str] = None,
        custom_parameters: Optional[Mapping[str, str]] = None
    ) -> str:
        """
        着信をグリーティング後にクライアントへブリッジする TwiML

        Args:
            caller_address: <Dial> の callerId (None の場合は省略)
            target_client_identity: ブリッジ先クライアント ID
            custom_parameters: <Parameter> として埋め込む名前と値

        Returns:
            TwiML 文字列
        """
        return (
            TwiMLBuilder()
            .say(self.greeting_message, voice=self.voice)
            .dial(caller_id=caller_address or None)
            .client(target_client_identity or self.client_identity, custom_parameters)
            .build()
        )

    def render_conference_create(
        self,
        conference_name: str,
        is_moderator: bool,
        wait_url: Optional[str] = None,
        muted: bool = False
    ) -> str:
        """
        会議室を開始または参加する TwiML

        モデレーターの場合は入室で会議を開始し、退室で会議を終了します。
        それ以外の場合は両方とも無効になります。

        Raises:
            ValidationError: 会議名が空の場合
        """
        self._require_conference_name(conference_name)
        return (
            TwiMLBuilder()
            .say("Joining conference room", voice=self.voice)
            .dial()
            .conference(
                conference_name,
                start_conference_on_enter=bool(is_moderator),
                end_conference_on_exit=bool(is_moderator),
                muted=bool(muted),
                wait_url=wait_url,
                status_callback=CONFERENCE_EVENTS_PATH,
                status_callback_event="start end join leave mute hold",
                status_callback_method="POST",
            )
            .build()
        )

    def render_conference_join(self, conference_name: str, muted: bool = False) -> str:
        """
        既存の会議室にモデレーター権限なしで参加する TwiML

        Raises:
            ValidationError: 会議名が空の場合
        """
        self._require_conference_name(conference_name)
        return (
            TwiMLBuilder()
            .say("Connecting to conference", voice=self.voice)
            .dial()
            .conference(
                conference_name,
                muted=bool(muted),
                status_callback=CONFERENCE_EVENTS_PATH,
                status_callback_event="join leave mute hold",
                status_callback_method="POST",
            )
            .build()
        )

    def render_voicemail_prompt(
        self,
        greeting: Optional[str] = None,
        max_length_seconds: int = 120,
        transcribe: bool = False
    ) -> str:
        """グリーティング後に録音し、お礼で締めくくる TwiML"""
        return (
            TwiMLBuilder()
            .say(greeting or DEFAULT_VOICEMAIL_GREETING, voice=self.voice)
            .record(
                max_length=max_length_seconds,
                transcribe=bool(transcribe),
                action=VOICEMAIL_COMPLETED_PATH,
                method="POST",
            )
            .say("Thank you for your message. Goodbye.", voice=self.voice)
            .build()
        )

    def render_ivr_menu(
        self,
        options: Iterable[Union[MenuOption, Mapping[str, str]]],
        timeout_seconds: int = 10
    ) -> str:
        """
        一桁の DTMF 入力を受け付ける IVR メニューの TwiML

        メニューは渡された順に読み上げられます。タイムアウトまたは
        無効な入力の場合はフォールバックを読み上げて通話を終了します。

        Args:
            options: MenuOption または {"digit", "description"} のシーケンス
            timeout_seconds: 入力待ちタイムアウト（秒）

        Raises:
            ValidationError: メニューが空、または数字が重複している場合
        """
        menu = [self._to_menu_option(option) for option in options]
        if not menu:
            raise ValidationError("IVR menu requires at least one option")

        digits = [option.digit for option in menu]
        duplicates = sorted({digit for digit in digits if digits.count(digit) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate IVR menu digits: {', '.join(duplicates)}")

        prompt = " ".join(
            ["Please select from the following options:"]
            + [f"Press {option.digit} for {option.description}." for option in menu]
        )
        return (
            TwiMLBuilder()
            .gather(
                input="dtmf",
                timeout=timeout_seconds,
                num_digits=1,
                action=IVR_RESPONSE_PATH,
                method="POST",
            )
            .say(prompt, voice=self.voice)
            .say("Sorry, I didn't receive a valid input. Goodbye.", voice=self.voice)
            .hangup()
            .build()
        )

    def render_ivr_selection(
        self,
        options: Iterable[Union[MenuOption, Mapping[str, str]]],
        digits: str,
        queue_name: str,
        menu_url: str = "/voice/ivr"
    ) -> str:
        """
        IVR メニューで押された数字に応じた TwiML

        遷移先 (action) を持つ項目はそこへリダイレクトし、持たない項目は
        キューへ入れます。該当する項目がない場合はメニューへ戻します。

        Args:
            options: render_ivr_menu() と同じメニュー項目
            digits: Twilio から送信された Digits
            queue_name: 遷移先のない項目で使用するキュー名
            menu_url: 無効な入力時に戻るメニューの URL
        """
        menu = {option.digit: option for option in map(self._to_menu_option, options)}
        selected = menu.get(digits)
        if selected is None:
            return (
                TwiMLBuilder()
                .say("Sorry, that is not a valid option.", voice=self.voice)
                .redirect(menu_url, method="POST")
                .build()
            )

        if selected.action:
            return TwiMLBuilder().redirect(selected.action, method="POST").build()
        return self.render_enqueue(queue_name)

    def render_enqueue(
        self,
        queue_name: str,
        wait_url: Optional[str] = None,
        max_wait: int = 300
    ) -> str:
        """保留メッセージの後にキューへ入れる TwiML"""
        if not queue_name or not queue_name.strip():
            raise ValidationError("Queue name is required")
        return (
            TwiMLBuilder()
            .say("Please hold while we connect you to the next available agent.", voice=self.voice)
            .enqueue(
                queue_name,
                wait_url=wait_url or QUEUE_WAIT_PATH,
                max_wait=max_wait,
                action=QUEUE_COMPLETED_PATH,
                method="POST",
            )
            .build()
        )

    def render_forward(self, from_address: str, to_address: str, timeout: int = 30) -> str:
        """WhatsApp 通話を別の WhatsApp 番号へ転送する TwiML"""
        return (
            TwiMLBuilder()
            .dial(caller_id=from_address, timeout=timeout, action=CALL_COMPLETED_PATH, method="POST")
            .whatsapp(to_address)
            .build()
        )

    def render_call_permission(
        self,
        permission_granted: bool,
        fallback_message: Optional[str] = None
    ) -> str:
        """通話許可リクエストの結果を読み上げる TwiML"""
        if permission_granted:
            text = "Thank you for granting call permission. You will receive your call shortly."
        else:
            text = fallback_message or DEFAULT_PERMISSION_FALLBACK
        return TwiMLBuilder().say(text, voice=self.voice).build()

    def render_recorded_call(
        self,
        recording_channels: str = "mono",
        recording_status_callback: Optional[str] = None,
        client_identity: Optional[str] = None
    ) -> str:
        """録音付きでクライアントへ接続する TwiML"""
        if recording_channels not in ("mono", "dual"):
            raise ValidationError(f"Invalid recording channels: {recording_channels}")
        return (
            TwiMLBuilder()
            .say("This call may be recorded for quality assurance purposes.", voice=self.voice)
            .dial(
                record=recording_channels,
                recording_status_callback=recording_status_callback or RECORDING_COMPLETED_PATH,
                recording_status_callback_method="POST",
            )
            .client(client_identity or self.client_identity)
            .build()
        )

    @staticmethod
    def _require_conference_name(conference_name: str) -> None:
        if not conference_name or not str(conference_name).strip():
            raise ValidationError("Conference name is required")

    @staticmethod
    def _to_menu_option(option: Union[MenuOption, Mapping[str, str]]) -> MenuOption:
        if isinstance(option, MenuOption):
            menu_option = option
        else:
            menu_option = MenuOption(
                digit=str(option.get("digit", "")),
                description=str(option.get("description", "")),
                action=option.get("action"),
            )
        if menu_option.digit not in DTMF_KEYS:
            raise ValidationError(
                f"IVR menu digit must be a single DTMF key (0-9, *, #): {menu_option.digit!r}"
            )
        return menu_option

"""
Flask アプリケーションモジュール (Flask Application Module)

WhatsApp 音声ゲートウェイの Flask アプリケーションを提供します。
Twilio の Webhook エンドポイント、通話・会議操作の JSON API、
構造化ロギングとエラーハンドラーを設定します。
"""

import traceback
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

from flask import Flask, Response, jsonify, request

from .addressing import normalize_address
from .config import Config
from .errors import UpstreamError, ValidationError, WhatsAppVoiceError
from .events import (
    CallStatusNotification,
    ConferenceNotification,
    NotificationHub,
    RegistrySubscriber,
)
from .logging_config import configure_structlog, get_logger
from .models import CALL_STATE_RINGING, CallHandle, utc_now
from .registry import CallRegistry
from .service import VoiceService
from .twilio_client import TwilioClient
from .twiml import (
    CALL_COMPLETED_PATH,
    IVR_RESPONSE_PATH,
    QUEUE_COMPLETED_PATH,
    QUEUE_WAIT_PATH,
    RECORDING_COMPLETED_PATH,
    VOICEMAIL_COMPLETED_PATH,
    MenuOption,
    TwiMLBuilder,
    TwiMLTemplates,
)

TWIML_MIMETYPE = "text/xml"

DEFAULT_IVR_MENU = (
    MenuOption(digit="1", description="sales"),
    MenuOption(digit="2", description="support"),
    MenuOption(digit="0", description="an operator"),
)


def validate_json_request(data: Any, required_fields: Optional[list] = None) -> Tuple[bool, Optional[str]]:
    """
    JSON リクエストを検証

    Args:
        data: 検証するデータ
        required_fields: 必須フィールドのリスト（オプション）

    Returns:
        (検証結果, エラーメッセージ) のタプル
    """
    if data is None:
        return False, "Invalid JSON: request body is empty or malformed"

    if not isinstance(data, dict):
        return False, "Invalid JSON: request body must be a JSON object"

    if required_fields:
        missing_fields = [field for field in required_fields if field not in data or data[field] is None]
        if missing_fields:
            return False, f"Missing required fields: {', '.join(missing_fields)}"

    return True, None


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None
) -> Tuple[Response, int]:
    """
    エラーレスポンスを作成

    Args:
        error_type: エラーの種類
        message: エラーメッセージ
        status_code: HTTP ステータスコード
        details: 追加の詳細情報（オプション）

    Returns:
        (JSON レスポンス, ステータスコード) のタプル
    """
    response_body = {
        "error": error_type,
        "message": message,
        "status_code": status_code
    }
    if details:
        response_body["details"] = details

    return jsonify(response_body), status_code


def twiml_response(document: str) -> Response:
    """TwiML ドキュメントを text/xml レスポンスとして返す"""
    return Response(document, status=200, mimetype=TWIML_MIMETYPE)


def remote_address(params: Dict[str, str]) -> str:
    """
    Webhook パラメータから通話相手のアドレスを取得

    Twilio が発信した通話 (Direction=outbound-*) では To、着信では From が相手側です。
    """
    direction = params.get("Direction", "inbound")
    raw = params.get("To", "") if direction.startswith("outbound") else params.get("From", "")
    return normalize_address(raw) if raw else ""


def parse_bool(value: Any, field_name: str) -> bool:
    """
    JSON の真偽値を取得

    真偽値と文字列 "true" / "false" (大文字小文字を区別しない) のみを受け付けます。

    Raises:
        ValidationError: それ以外の値の場合
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValidationError(f"{field_name} must be a boolean")


class WebhookHandler:
    """
    Twilio Webhook を処理するハンドラー

    着信、会議の作成・参加、通話ステータス、会議イベントの Webhook を処理します。
    TwiML の生成は状態の更新より先に行うため、生成に失敗した場合に
    レジストリが中途半端に更新されることはありません。

    Attributes:
        config: アプリケーション設定
        templates: TwiML テンプレート
        registry: 通話・会議レジストリ
        hub: 通知ハブ
        ivr_menu: IVR メニュー項目
        logger: 構造化ロガー
    """

    def __init__(
        self,
        config: Config,
        templates: TwiMLTemplates,
        registry: CallRegistry,
        hub: NotificationHub,
        ivr_menu: Sequence[MenuOption] = DEFAULT_IVR_MENU
    ):
        self.config = config
        self.templates = templates
        self.registry = registry
        self.hub = hub
        self.ivr_menu = list(ivr_menu)
        self.logger = get_logger(__name__)

    def handle_incoming(self, params: Dict[str, str]) -> str:
        """
        着信 WhatsApp 通話を処理

        通話をレジストリに登録し、グリーティング後にクライアントへ
        ブリッジする TwiML を返します。

        Args:
            params: Twilio から送信されるパラメータ
                - CallSid: 通話 ID
                - From: 発信者アドレス
                - To: 着信アドレス

        Returns:
            TwiML 文字列
        """
        call_sid = params.get("CallSid", "")
        caller = params.get("From", "")

        self.logger.info(
            "incoming_call_received",
            call_sid=call_sid,
            caller=caller,
            called=params.get("To", ""),
            timestamp=utc_now().isoformat()
        )

        custom_parameters = {
            "original_caller": caller,
            "call_sid": call_sid,
            "call_type": "whatsapp_voice",
        }
        twiml = self.templates.render_answer_and_bridge(
            self.config.whatsapp_sender,
            self.config.client_identity,
            {name: value for name, value in custom_parameters.items() if value}
        )

        if call_sid:
            self.registry.register_call(call_sid, CallHandle(
                call_id=call_sid,
                state=CALL_STATE_RINGING,
                from_address=normalize_address(caller) if caller else "",
                to_address=params.get("To", ""),
                direction="inbound",
            ))

        return twiml

    def handle_conference_create(self, params: Dict[str, str]) -> str:
        """
        会議室を作成する TwiML を返し、会議をレジストリに反映

        Args:
            params: Twilio から送信されるパラメータ
                - ConferenceName: 会議名
                - Moderator: "true" の場合モデレーターとして参加
                - CallSid, From, To, Direction

        Raises:
            ValidationError: 会議名が空の場合
        """
        conference_name = params.get("ConferenceName", "")
        is_moderator = params.get("Moderator", "false").lower() == "true"

        twiml = self.templates.render_conference_create(
            conference_name,
            is_moderator,
            wait_url=f"/voice/conference/wait?conference={quote(conference_name)}"
        )

        address = remote_address(params)
        if self.registry.get_conference(conference_name) is None:
            self.registry.create_conference(
                conference_name,
                [address] if address else [],
                moderator=address if is_moderator and address else None
            )
        elif address:
            self.registry.add_participant(conference_name, address)

        self._attach_call(params.get("CallSid", ""), conference_name)

        self.logger.info(
            "conference_create_requested",
            conference_id=conference_name,
            moderator=is_moderator,
            participant=address
        )
        return twiml

    def handle_conference_join(self, params: Dict[str, str]) -> str:
        """
        既存の会議に参加する TwiML を返す

        会議がレジストリに存在する場合のみ参加者を追加します。

        Raises:
            ValidationError: 会議名が空の場合
        """
        conference_name = params.get("ConferenceName", "")
        muted = params.get("Muted", "false").lower() == "true"

        twiml = self.templates.render_conference_join(conference_name, muted=muted)

        address = remote_address(params)
        if address and self.registry.get_conference(conference_name) is not None:
            self.registry.add_participant(conference_name, address)
        self._attach_call(params.get("CallSid", ""), conference_name)

        self.logger.info("conference_join_requested", conference_id=conference_name, participant=address)
        return twiml

    def handle_conference_wait(self, params: Dict[str, str]) -> str:
        return (
            TwiMLBuilder()
            .say("Please wait while other participants join the conference.", voice=self.config.voice)
            .build()
        )

    def handle_outbound_twiml(
        self,
        params: Dict[str, str],
        custom_parameters: Optional[Dict[str, str]] = None
    ) -> str:
        """
        発信した通話が応答された際にクライアントへ接続する TwiML

        Args:
            params: Twilio から送信されるパラメータ
            custom_parameters: 発信時に TwiML URL のクエリ文字列へ付与された
                カスタムパラメータ (<Parameter> としてクライアントへ渡す)
        """
        caller = params.get("From", "")
        parameters = {"call_type": "outbound_whatsapp"}
        if caller:
            parameters = {"caller": caller, **parameters}
        for name, value in (custom_parameters or {}).items():
            parameters.setdefault(name, value)

        return (
            TwiMLBuilder()
            .say(
                "Hello, this is a WhatsApp Business call. Please hold while we connect you.",
                voice=self.config.voice
            )
            .dial(caller_id=self.config.whatsapp_sender)
            .client(self.config.client_identity, parameters)
            .build()
        )

    def handle_voicemail(self, params: Dict[str, str]) -> str:
        return self.templates.render_voicemail_prompt(
            max_length_seconds=self.config.voicemail_max_length,
            transcribe=params.get("Transcribe", "false").lower() == "true"
        )

    def handle_ivr(self, params: Dict[str, str]) -> str:
        return self.templates.render_ivr_menu(self.ivr_menu, timeout_seconds=self.config.ivr_timeout)

    def handle_ivr_response(self, params: Dict[str, str]) -> str:
        """IVR メニューで押された数字 (Digits) に応じて振り分ける"""
        digits = params.get("Digits", "")
        self.logger.info("ivr_selection_received", call_sid=params.get("CallSid", ""), digits=digits)
        return self.templates.render_ivr_selection(self.ivr_menu, digits, self.config.queue_name)

    def handle_voicemail_completed(self, params: Dict[str, str]) -> str:
        """録音完了後にお礼を読み上げて通話を終了する TwiML"""
        self.logger.info(
            "voicemail_recorded",
            call_sid=params.get("CallSid", ""),
            recording_url=params.get("RecordingUrl", ""),
            recording_duration=params.get("RecordingDuration", "")
        )
        return (
            TwiMLBuilder()
            .say("Thank you for your message. Goodbye.", voice=self.config.voice)
            .hangup()
            .build()
        )

    def handle_queue_wait(self, params: Dict[str, str]) -> str:
        """キュー待機中に再生する TwiML"""
        return (
            TwiMLBuilder()
            .say(
                "All of our agents are currently busy. Please stay on the line.",
                voice=self.config.voice
            )
            .build()
        )

    def handle_queue_completed(self, params: Dict[str, str]) -> str:
        self.logger.info(
            "queue_completed",
            call_sid=params.get("CallSid", ""),
            queue_result=params.get("QueueResult", ""),
            queue_time=params.get("QueueTime", "")
        )
        return TwiMLBuilder().hangup().build()

    def handle_call_completed(self, params: Dict[str, str]) -> str:
        """転送した通話 (<Dial>) の終了後に通話を終了する TwiML"""
        self.logger.info(
            "forwarded_call_completed",
            call_sid=params.get("CallSid", ""),
            dial_call_status=params.get("DialCallStatus", ""),
            dial_call_duration=params.get("DialCallDuration", "")
        )
        return TwiMLBuilder().hangup().build()

    def handle_recording_completed(self, params: Dict[str, str]) -> None:
        self.logger.info(
            "call_recording_completed",
            call_sid=params.get("CallSid", ""),
            recording_sid=params.get("RecordingSid", ""),
            recording_url=params.get("RecordingUrl", ""),
            recording_status=params.get("RecordingStatus", "")
        )

    def handle_queue(self, params: Dict[str, str]) -> str:
        return self.templates.render_enqueue(self.config.queue_name)

    def handle_forward(self, params: Dict[str, str]) -> str:
        """
        通話を別の WhatsApp 番号へ転送する TwiML

        Raises:
            ValidationError: 転送先が指定されていない場合
        """
        forward_to = params.get("ForwardTo", "")
        if not forward_to:
            raise ValidationError("ForwardTo is required")
        return self.templates.render_forward(self.config.whatsapp_sender, normalize_address(forward_to))

    def handle_call_permission(self, params: Dict[str, str]) -> str:
        granted = params.get("PermissionGranted", "false").lower() == "true"
        return self.templates.render_call_permission(granted)

    def handle_call_status(self, params: Dict[str, str]) -> None:
        """
        通話ステータス Webhook を処理

        Args:
            params: Twilio から送信されるパラメータ
                - CallSid: 通話 ID
                - CallStatus: 通話ステータス
                - From, To
        """
        notification = CallStatusNotification.from_params(params)
        self.logger.info(
            "call_status_received",
            call_sid=notification.call_sid,
            status=notification.status,
            caller=notification.from_address,
            called=notification.to_address
        )
        self.hub.publish(notification.status, notification)

    def handle_conference_event(self, params: Dict[str, str]) -> None:
        """
        会議イベント Webhook を処理

        Args:
            params: Twilio から送信されるパラメータ
                - StatusCallbackEvent: イベント名
                - FriendlyName: 会議名
                - ConferenceSid, CallSid, Muted
        """
        notification = ConferenceNotification.from_params(params)
        self.logger.info(
            "conference_event_received",
            conference_id=notification.conference_name,
            conference_event=notification.event,
            call_sid=notification.participant_call_sid
        )
        self.hub.publish(notification.event, notification)

    def _attach_call(self, call_sid: str, conference_name: str) -> None:
        handle = self.registry.get_call(call_sid) if call_sid else None
        if handle is not None:
            handle.conference_id = conference_name


def _get_json_body(required_fields: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    JSON リクエストボディを取得して検証

    Raises:
        ValidationError: JSON が不正、または必須フィールドが欠落している場合
    """
    try:
        data = request.get_json(force=True, silent=False)
    except Exception:
        raise ValidationError("Invalid JSON: request body is malformed")

    is_valid, error_message = validate_json_request(data, required_fields)
    if not is_valid:
        raise ValidationError(error_message)
    return data


def create_app(
    config: Optional[Config] = None,
    twilio_client: Optional[TwilioClient] = None
) -> Flask:
    """
    Flask アプリケーションを作成

    レジストリ・通知ハブ・サービスを生成し、Webhook と API のエンドポイントを登録します。
    レジストリはアプリケーションの寿命と同じで、各ハンドラーに参照として渡されます。

    Args:
        config: アプリケーション設定（None の場合は環境変数から読み込み）
        twilio_client: Twilio クライアント（None の場合は設定から生成）

    Returns:
        設定済みの Flask アプリケーション
    """
    app = Flask(__name__)

    # 設定を読み込み（テスト時は外部から注入可能）
    if config is None:
        config = Config.from_env()

    app.config["WHATSAPP_VOICE_CONFIG"] = config

    configure_structlog(config.log_level)

    logger = get_logger(__name__)
    logger.info(
        "application_initialized",
        log_level=config.log_level,
        webhook_base_url=config.webhook_base_url,
        whatsapp_sender=config.whatsapp_sender
    )

    if twilio_client is None:
        twilio_client = TwilioClient(
            account_sid=config.twilio_account_sid,
            auth_token=config.twilio_auth_token,
            base_url=config.twilio_api_base_url,
            timeout=config.request_timeout
        )

    registry = CallRegistry()
    app.config["REGISTRY"] = registry

    hub = NotificationHub()
    RegistrySubscriber(registry, hub)
    app.config["NOTIFICATION_HUB"] = hub

    templates = TwiMLTemplates(config)
    app.config["TWIML_TEMPLATES"] = templates

    voice_service = VoiceService(config, twilio_client, registry)
    app.config["VOICE_SERVICE"] = voice_service

    webhook_handler = WebhookHandler(
        config=config,
        templates=templates,
        registry=registry,
        hub=hub
    )
    app.config["WEBHOOK_HANDLER"] = webhook_handler

    # ==========================================================================
    # エラーハンドラー (Error Handlers)
    # ==========================================================================

    @app.errorhandler(400)
    def handle_bad_request(error):
        logger.error(
            "bad_request_error",
            error_type="bad_request",
            error_message=str(error),
            path=request.path,
            method=request.method,
            content_type=request.content_type
        )
        return create_error_response(
            error_type="bad_request",
            message=str(error.description) if hasattr(error, 'description') else "Bad Request",
            status_code=400
        )

    @app.errorhandler(404)
    def handle_not_found(error):
        logger.warning("route_not_found", path=request.path, method=request.method)
        return create_error_response(
            error_type="not_found",
            message="Not Found",
            status_code=404
        )

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        logger.warning(
            "method_not_allowed_error",
            error_type="method_not_allowed",
            error_message=str(error),
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="method_not_allowed",
            message=str(error.description) if hasattr(error, 'description') else "Method Not Allowed",
            status_code=405
        )

    @app.errorhandler(UpstreamError)
    def handle_upstream_error(error):
        """
        UpstreamError エラーハンドラー

        Twilio API のエラーをそのまま呼び出し元に返します。
        """
        logger.error(
            "twilio_upstream_error",
            error_type=error.error_type,
            error_message=error.message,
            upstream_status=error.upstream_status,
            details=error.details,
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type=error.error_type,
            message=error.message,
            status_code=error.status_code,
            details=error.details
        )

    @app.errorhandler(WhatsAppVoiceError)
    def handle_whatsapp_voice_error(error):
        """
        検証・未検出・重複エラーハンドラー

        呼び出し元で対処すべきエラーを対応する HTTP ステータスで返します。
        """
        logger.warning(
            "request_rejected",
            error_type=error.error_type,
            error_message=error.message,
            status_code=error.status_code,
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type=error.error_type,
            message=error.message,
            status_code=error.status_code
        )

    @app.errorhandler(500)
    def handle_internal_error(error):
        logger.error(
            "internal_server_error",
            error_type="internal_error",
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc()
        )
        return create_error_response(
            error_type="internal_error",
            message="Internal Server Error",
            status_code=500
        )

    @app.errorhandler(Exception)
    def handle_generic_exception(error):
        """
        汎用例外ハンドラー

        予期しない例外を処理し、スタックトレースをログ出力します。
        """
        logger.error(
            "unhandled_exception",
            error_type=type(error).__name__,
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="internal_error",
            message="An unexpected error occurred",
            status_code=500
        )

    # ==========================================================================
    # TwiML Webhook エンドポイント (TwiML Webhook Endpoints)
    # ==========================================================================

    @app.route("/voice/incoming", methods=["POST"])
    def incoming_call_webhook():
        """着信 WhatsApp 通話の Webhook"""
        params = request.values.to_dict()
        logger.debug("incoming_webhook_received", params=params)

        try:
            twiml = webhook_handler.handle_incoming(params)
        except WhatsAppVoiceError:
            raise
        except Exception as e:
            logger.error(
                "incoming_webhook_error",
                error_type=type(e).__name__,
                error_message=str(e),
                params=params,
                stack_trace=traceback.format_exc()
            )
            raise

        return twiml_response(twiml)

    @app.route("/voice/conference/create", methods=["POST"])
    def conference_create_webhook():
        params = request.values.to_dict()
        logger.debug("conference_create_webhook_received", params=params)
        return twiml_response(webhook_handler.handle_conference_create(params))

    @app.route("/voice/conference/join", methods=["POST"])
    def conference_join_webhook():
        params = request.values.to_dict()
        logger.debug("conference_join_webhook_received", params=params)
        return twiml_response(webhook_handler.handle_conference_join(params))

    @app.route("/voice/conference/wait", methods=["GET", "POST"])
    def conference_wait_webhook():
        return twiml_response(webhook_handler.handle_conference_wait(request.values.to_dict()))

    @app.route("/voice/outbound-twiml", methods=["POST"])
    def outbound_twiml_webhook():
        # 発信時のカスタムパラメータは TwiML URL のクエリ文字列で渡される
        return twiml_response(webhook_handler.handle_outbound_twiml(
            request.values.to_dict(),
            request.args.to_dict()
        ))

    @app.route("/voice/voicemail", methods=["POST"])
    def voicemail_webhook():
        return twiml_response(webhook_handler.handle_voicemail(request.values.to_dict()))

    @app.route("/voice/ivr", methods=["POST"])
    def ivr_webhook():
        return twiml_response(webhook_handler.handle_ivr(request.values.to_dict()))

    @app.route("/voice/queue", methods=["POST"])
    def queue_webhook():
        return twiml_response(webhook_handler.handle_queue(request.values.to_dict()))

    @app.route("/voice/forward", methods=["POST"])
    def forward_webhook():
        return twiml_response(webhook_handler.handle_forward(request.values.to_dict()))

    @app.route("/voice/call-permission", methods=["POST"])
    def call_permission_webhook():
        return twiml_response(webhook_handler.handle_call_permission(request.values.to_dict()))

    # ==========================================================================
    # TwiML コールバックエンドポイント (TwiML Callback Endpoints)
    # ==========================================================================

    @app.route(IVR_RESPONSE_PATH, methods=["POST"])
    def ivr_response_webhook():
        return twiml_response(webhook_handler.handle_ivr_response(request.values.to_dict()))

    @app.route(VOICEMAIL_COMPLETED_PATH, methods=["POST"])
    def voicemail_completed_webhook():
        return twiml_response(webhook_handler.handle_voicemail_completed(request.values.to_dict()))

    @app.route(QUEUE_WAIT_PATH, methods=["GET", "POST"])
    def queue_wait_webhook():
        return twiml_response(webhook_handler.handle_queue_wait(request.values.to_dict()))

    @app.route(QUEUE_COMPLETED_PATH, methods=["POST"])
    def queue_completed_webhook():
        return twiml_response(webhook_handler.handle_queue_completed(request.values.to_dict()))

    @app.route(CALL_COMPLETED_PATH, methods=["POST"])
    def call_completed_webhook():
        return twiml_response(webhook_handler.handle_call_completed(request.values.to_dict()))

    @app.route(RECORDING_COMPLETED_PATH, methods=["POST"])
    def recording_completed_webhook():
        webhook_handler.handle_recording_completed(request.values.to_dict())
        return Response(status=200)

    # ==========================================================================
    # イベント Webhook エンドポイント (Event Webhook Endpoints)
    # ==========================================================================

    @app.route("/conference-events", methods=["POST"])
    def conference_events_webhook():
        params = request.values.to_dict()
        logger.debug("conference_event_webhook_received", params=params)
        webhook_handler.handle_conference_event(params)
        return Response(status=200)

    @app.route("/call-status", methods=["POST"])
    def call_status_webhook():
        params = request.values.to_dict()
        logger.debug("call_status_webhook_received", params=params)
        webhook_handler.handle_call_status(params)
        return Response(status=200)

    # ==========================================================================
    # API エンドポイント (API Endpoints)
    # ==========================================================================

    @app.route("/api/call/outbound", methods=["POST"])
    def outbound_call():
        data = _get_json_body(["to"])
        handle = voice_service.make_call(
            data["to"],
            from_=data.get("from"),
            custom_parameters=data.get("customParams")
        )
        return jsonify({
            "success": True,
            "callSid": handle.call_id,
            "message": "WhatsApp call initiated successfully"
        }), 200

    @app.route("/api/call/<call_id>/mute", methods=["POST"])
    def mute_call(call_id):
        data = request.get_json(silent=True) or {}
        handle = voice_service.mute_call(call_id, parse_bool(data.get("muted", True), "muted"))
        return jsonify({"success": True, "call": handle.to_dict()}), 200

    @app.route("/api/call/<call_id>/hangup", methods=["POST"])
    def hangup_call(call_id):
        voice_service.disconnect_call(call_id)
        return jsonify({"success": True, "callSid": call_id, "message": "Call disconnected"}), 200

    @app.route("/api/calls", methods=["GET"])
    def list_calls():
        return jsonify({"calls": [handle.to_dict() for handle in registry.list_calls()]}), 200

    @app.route("/api/conference/create", methods=["POST"])
    def create_conference():
        data = _get_json_body(["conferenceId", "participants"])
        participants = data["participants"]
        if not isinstance(participants, list):
            raise ValidationError("participants must be a list")

        launch = voice_service.create_conference(
            data["conferenceId"],
            participants,
            moderator=parse_bool(data.get("moderator", False), "moderator")
        )
        return jsonify({
            "success": True,
            "conferenceId": launch.conference.conference_id,
            "moderatorCallSid": launch.moderator_call_sid,
            "participantCallSids": launch.participant_call_sids,
            "message": "Conference created successfully"
        }), 200

    @app.route("/api/conference/<conference_id>/add-participant", methods=["POST"])
    def add_participant(conference_id):
        data = _get_json_body(["participant"])
        handle = voice_service.add_participant(conference_id, data["participant"])
        return jsonify({
            "success": True,
            "callSid": handle.call_id,
            "message": "Participant added to conference"
        }), 200

    @app.route("/api/conference/<conference_id>/remove-participant", methods=["POST"])
    def remove_participant(conference_id):
        data = _get_json_body(["participant"])
        record = voice_service.remove_participant(conference_id, data["participant"])
        return jsonify({
            "success": True,
            "conference": record.to_dict(),
            "message": "Participant removed from conference"
        }), 200

    @app.route("/api/conference/<conference_id>/end", methods=["POST"])
    def end_conference(conference_id):
        ended = voice_service.end_conference(conference_id)
        return jsonify({"success": True, "conferenceId": conference_id, "ended": ended}), 200

    @app.route("/api/conferences", methods=["GET"])
    def list_conferences():
        conferences = [record.to_dict() for record in registry.list_conferences()]
        return jsonify({"conferences": conferences}), 200

    @app.route("/health", methods=["GET"])
    def health_check():
        """
        ヘルスチェックエンドポイント

        Returns:
            JSON レスポンス: 稼働状態と登録中の会議・通話数
        """
        logger.debug("health_check_requested")
        return jsonify({
            "status": "healthy",
            "timestamp": utc_now().isoformat(),
            **registry.counts()
        }), 200

    logger.info("application_ready", endpoints=sorted(rule.rule for rule in app.url_map.iter_rules()))

    return app

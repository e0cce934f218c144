"""
設定管理モジュール (Configuration Management Module)

環境変数からアプリケーション設定を読み込み、検証を行います。
"""

from dataclasses import dataclass, field
import os

from .addressing import is_valid_address, normalize_address


class ConfigurationError(Exception):
    """設定エラー例外クラス"""
    pass


@dataclass
class Config:
    """
    アプリケーション設定

    環境変数から設定を読み込み、必須設定のバリデーションを行います。
    """
    # Twilio API認証情報 (必須)
    twilio_account_sid: str
    twilio_auth_token: str

    # WhatsApp 送信元 (必須, 例: whatsapp:+15551234567)
    whatsapp_sender: str

    # Webhook URL設定
    webhook_base_url: str

    # 音声設定
    voice: str = "Polly.Joanna"
    client_identity: str = "whatsapp-client"
    greeting_message: str = "Welcome to WhatsApp Business Calling"

    # ボイスメール・IVR・キュー設定
    voicemail_max_length: int = 120
    ivr_timeout: int = 10
    queue_name: str = "support"

    # Twilio REST API設定
    twilio_api_base_url: str = "https://api.twilio.com"
    request_timeout: int = 10

    # ロギング設定
    log_level: str = "INFO"

    DEFAULT_TWILIO_API_BASE_URL: str = field(default="https://api.twilio.com", init=False, repr=False)

    @classmethod
    def from_env(cls) -> 'Config':
        """
        環境変数から設定を読み込む

        必須の環境変数:
            - TWILIO_ACCOUNT_SID: Twilio アカウント SID
            - TWILIO_AUTH_TOKEN: Twilio 認証トークン
            - WHATSAPP_SENDER: WhatsApp 送信元アドレス
            - WEBHOOK_BASE_URL: Webhook のベース URL

        オプションの環境変数:
            - VOICE: 読み上げ音声 (デフォルト: Polly.Joanna)
            - CLIENT_IDENTITY: ブリッジ先クライアント ID (デフォルト: whatsapp-client)
            - GREETING_MESSAGE: 着信時のグリーティング
            - VOICEMAIL_MAX_LENGTH: 最大録音時間（秒） (デフォルト: 120)
            - IVR_TIMEOUT: IVR 入力待ち時間（秒） (デフォルト: 10)
            - QUEUE_NAME: 通話キュー名 (デフォルト: support)
            - TWILIO_API_BASE_URL: Twilio REST API のベース URL
            - REQUEST_TIMEOUT: Twilio API のタイムアウト（秒） (デフォルト: 10)
            - LOG_LEVEL: ログレベル (デフォルト: INFO)

        Returns:
            Config: 設定オブジェクト

        Raises:
            ConfigurationError: 必須設定が欠落している、または値が不正な場合
        """
        try:
            voicemail_max_length = int(os.environ.get("VOICEMAIL_MAX_LENGTH", "120"))
            ivr_timeout = int(os.environ.get("IVR_TIMEOUT", "10"))
            request_timeout = int(os.environ.get("REQUEST_TIMEOUT", "10"))
        except ValueError as e:
            raise ConfigurationError(f"数値設定が不正です: {e}") from e

        whatsapp_sender = os.environ.get("WHATSAPP_SENDER", "")

        config = cls(
            twilio_account_sid=os.environ.get("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.environ.get("TWILIO_AUTH_TOKEN", ""),
            whatsapp_sender=normalize_address(whatsapp_sender) if whatsapp_sender else "",
            webhook_base_url=os.environ.get("WEBHOOK_BASE_URL", "").rstrip("/"),
            voice=os.environ.get("VOICE", "Polly.Joanna"),
            client_identity=os.environ.get("CLIENT_IDENTITY", "whatsapp-client"),
            greeting_message=os.environ.get("GREETING_MESSAGE", "Welcome to WhatsApp Business Calling"),
            voicemail_max_length=voicemail_max_length,
            ivr_timeout=ivr_timeout,
            queue_name=os.environ.get("QUEUE_NAME", "support"),
            twilio_api_base_url=os.environ.get("TWILIO_API_BASE_URL", cls.DEFAULT_TWILIO_API_BASE_URL).rstrip("/"),
            request_timeout=request_timeout,
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

        # バリデーション実行
        config.validate()

        return config

    def url_for(self, path: str) -> str:
        """Webhook のベース URL からコールバック URL を生成"""
        return f"{self.webhook_base_url.rstrip('/')}/{path.lstrip('/')}"

    def validate(self) -> None:
        """
        設定の妥当性を検証

        Raises:
            ConfigurationError: 必須設定が欠落または無効な場合
        """
        missing_fields = []

        if not self.twilio_account_sid:
            missing_fields.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing_fields.append("TWILIO_AUTH_TOKEN")
        if not self.whatsapp_sender:
            missing_fields.append("WHATSAPP_SENDER")
        if not self.webhook_base_url:
            missing_fields.append("WEBHOOK_BASE_URL")

        if missing_fields:
            error_message = (
                f"必須の設定が欠落しています。以下の環境変数を設定してください: "
                f"{', '.join(missing_fields)}"
            )
            raise ConfigurationError(error_message)

        if not is_valid_address(self.whatsapp_sender):
            raise ConfigurationError(
                f"WHATSAPP_SENDER は whatsapp:+<国番号><番号> の形式である必要があります: {self.whatsapp_sender}"
            )

        if self.voicemail_max_length <= 0:
            raise ConfigurationError(
                f"VOICEMAIL_MAX_LENGTH は正の整数である必要があります: {self.voicemail_max_length}"
            )

        if self.ivr_timeout <= 0:
            raise ConfigurationError(
                f"IVR_TIMEOUT は正の整数である必要があります: {self.ivr_timeout}"
            )

        if self.request_timeout <= 0:
            raise ConfigurationError(
                f"REQUEST_TIMEOUT は正の整数である必要があります: {self.request_timeout}"
            )

        # ログレベルの検証
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"LOG_LEVEL は {valid_log_levels} のいずれかである必要があります: {self.log_level}"
            )

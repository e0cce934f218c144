"""
エラー定義モジュール (Error Definitions Module)

WhatsApp 音声ゲートウェイ全体で使用する例外クラスを定義します。
各例外は HTTP ステータスコードと API レスポンス用のエラー種別を持ちます。
"""

from typing import Any, Dict, Optional


class WhatsAppVoiceError(Exception):
    """
    WhatsApp 音声ゲートウェイの基底例外

    Attributes:
        message: エラーメッセージ
        error_type: API レスポンスに含めるエラーの種類
        status_code: HTTP ステータスコード
    """

    error_type = "internal_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(WhatsAppVoiceError):
    """不正なアドレスや必須フィールドの欠落 (プラットフォーム呼び出し前に拒否)"""

    error_type = "validation_error"
    status_code = 400


class NotFoundError(WhatsAppVoiceError):
    """未知の会議 ID または通話 ID への参照"""

    error_type = "not_found"
    status_code = 404


class ConferenceNotFoundError(NotFoundError):
    """会議が登録されていない"""

    def __init__(self, conference_id: str):
        super().__init__(f"Conference {conference_id} not found")
        self.conference_id = conference_id


class CallNotFoundError(NotFoundError):
    """通話が登録されていない"""

    def __init__(self, call_id: str):
        super().__init__(f"Call {call_id} not found")
        self.call_id = call_id


class DuplicateError(WhatsAppVoiceError):
    """既に存在する ID での作成"""

    error_type = "duplicate"
    status_code = 409


class DuplicateConferenceError(DuplicateError):
    """同じ ID の会議が既に存在する"""

    def __init__(self, conference_id: str):
        super().__init__(f"Conference {conference_id} already exists")
        self.conference_id = conference_id


class UpstreamError(WhatsAppVoiceError):
    """
    Twilio API エラー

    外部プラットフォームの呼び出しが失敗した場合に発生します。
    自動リトライは行わず、そのまま呼び出し元に伝播します。

    Attributes:
        message: エラーメッセージ
        upstream_status: Twilio から返された HTTP ステータスコード (通信失敗時は None)
        details: 追加の詳細情報
    """

    error_type = "upstream_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.details = details or {}

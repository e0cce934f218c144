"""
Twilio クライアントモジュール (Twilio Client Module)

Twilio REST API を呼び出して通話の発信・切断を行います。
失敗はすべて UpstreamError として呼び出し元に伝播し、自動リトライは行いません。
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import requests

from .errors import UpstreamError
from .logging_config import get_logger


DEFAULT_STATUS_CALLBACK_EVENTS = ("initiated", "ringing", "answered", "completed")


class TwilioClient:
    """
    Twilio Programmable Voice の REST クライアント

    Attributes:
        account_sid: Twilio アカウント SID
        base_url: REST API のベース URL
        timeout: リクエストタイムアウト（秒）
    """

    API_VERSION = "2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        base_url: str = "https://api.twilio.com",
        timeout: int = 10,
        session: Optional[requests.Session] = None
    ):
        self.account_sid = account_sid
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (account_sid, auth_token)
        self.logger = get_logger(__name__)

    @property
    def calls_url(self) -> str:
        return f"{self.base_url}/{self.API_VERSION}/Accounts/{self.account_sid}/Calls.json"

    def create_call(
        self,
        from_: str,
        to: str,
        url: str,
        status_callback: Optional[str] = None,
        status_callback_events: Optional[Iterable[str]] = DEFAULT_STATUS_CALLBACK_EVENTS,
        custom_params: Optional[Mapping[str, str]] = None,
        method: str = "POST"
    ) -> str:
        """
        通話を発信

        カスタムパラメータは TwiML URL のクエリ文字列として渡され、
        Webhook で受け取れるようになります。

        Args:
            from_: 発信元アドレス
            to: 着信先アドレス
            url: 応答時に TwiML を取得する URL
            status_callback: ステータスコールバック URL (オプション)
            status_callback_events: 通知を受けるステータスのリスト
            custom_params: TwiML URL に付与するパラメータ
            method: TwiML URL の HTTP メソッド

        Returns:
            Twilio が発行した CallSid

        Raises:
            UpstreamError: API 呼び出しが失敗した場合
        """
        if custom_params:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}{urlencode(dict(custom_params))}"

        form: List[Tuple[str, str]] = [
            ("From", from_),
            ("To", to),
            ("Url", url),
            ("Method", method),
        ]
        if status_callback:
            form.append(("StatusCallback", status_callback))
            form.append(("StatusCallbackMethod", "POST"))
            for event in status_callback_events or ():
                form.append(("StatusCallbackEvent", event))

        self.logger.debug("twilio_create_call_request", to=to, from_=from_, url=url)
        payload = self._post(self.calls_url, form)

        call_sid = payload.get("sid")
        if not call_sid:
            raise UpstreamError(
                "Twilio response did not include a call SID",
                details={"response": payload}
            )

        self.logger.info("twilio_call_created", call_sid=call_sid, to=to, status=payload.get("status"))
        return call_sid

    def hangup_call(self, call_sid: str) -> None:
        """
        進行中の通話を切断

        Raises:
            UpstreamError: API 呼び出しが失敗した場合
        """
        url = f"{self.base_url}/{self.API_VERSION}/Accounts/{self.account_sid}/Calls/{call_sid}.json"
        self._post(url, [("Status", "completed")])
        self.logger.info("twilio_call_hung_up", call_sid=call_sid)

    def update_participant(self, conference_sid: str, call_sid: str, muted: bool) -> None:
        """
        会議参加者のミュート状態を変更

        Raises:
            UpstreamError: API 呼び出しが失敗した場合
        """
        url = (
            f"{self.base_url}/{self.API_VERSION}/Accounts/{self.account_sid}"
            f"/Conferences/{conference_sid}/Participants/{call_sid}.json"
        )
        self._post(url, [("Muted", "true" if muted else "false")])
        self.logger.info(
            "twilio_participant_updated",
            conference_sid=conference_sid,
            call_sid=call_sid,
            muted=muted
        )

    def _post(self, url: str, form: List[Tuple[str, str]]) -> Dict[str, Any]:
        try:
            response = self.session.post(url, data=form, timeout=self.timeout)
        except requests.RequestException as e:
            self.logger.error(
                "twilio_request_failed",
                url=url,
                error_type=type(e).__name__,
                error_message=str(e)
            )
            raise UpstreamError(f"Twilio request failed: {e}") from e

        if response.status_code >= 400:
            try:
                details = response.json()
            except ValueError:
                details = {"body": response.text}
            if not isinstance(details, dict):
                details = {"body": details}
            self.logger.error(
                "twilio_api_error",
                url=url,
                status_code=response.status_code,
                details=details
            )
            raise UpstreamError(
                details.get("message") or f"Twilio API returned {response.status_code}",
                upstream_status=response.status_code,
                details=details
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError("Twilio returned a malformed response") from e

"""
アドレス検証モジュール (Address Validation Module)

WhatsApp 音声チャネルのアドレス (``whatsapp:+<E.164 番号>``) を
正規化・検証する純粋関数を提供します。
"""

import re

from .errors import ValidationError

CHANNEL_PREFIX = "whatsapp:"

_ADDRESS_PATTERN = re.compile(r"^whatsapp:\+[1-9][0-9]{1,14}$")


def strip_channel_prefix(address: str) -> str:
    """
    チャネルプレフィックスを除去

    プレフィックスを持たない入力はそのまま返します。

    Args:
        address: WhatsApp アドレスまたは電話番号

    Returns:
        プレフィックスを除いた番号
    """
    if address.startswith(CHANNEL_PREFIX):
        return address[len(CHANNEL_PREFIX):]
    return address


def normalize_address(raw: str) -> str:
    """
    アドレスを正規形に変換

    既存のプレフィックスを除去し、先頭の ``+`` を補い、
    プレフィックスを付け直します。不正な入力でも必ず文字列を返します
    (妥当性の判定は is_valid_address で行います)。

    Args:
        raw: 入力アドレス (例: ``15551234567``, ``whatsapp:+15551234567``)

    Returns:
        正規化されたアドレス
    """
    number = strip_channel_prefix(raw.strip()).strip()
    if not number.startswith("+"):
        number = f"+{number}"
    return f"{CHANNEL_PREFIX}{number}"


def is_valid_address(candidate: str) -> bool:
    """正規形 ``whatsapp:+`` + 2〜15 桁の数字に完全一致する場合 True"""
    return bool(_ADDRESS_PATTERN.fullmatch(candidate))


def require_valid_address(raw: str) -> str:
    """
    アドレスを正規化し、不正な場合は ValidationError を発生させる

    Args:
        raw: 入力アドレス

    Returns:
        正規化されたアドレス

    Raises:
        ValidationError: 正規化後も形式が不正な場合
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("WhatsApp address is required")

    address = normalize_address(raw)
    if not is_valid_address(address):
        raise ValidationError(f"Invalid WhatsApp number format: {raw}")
    return address

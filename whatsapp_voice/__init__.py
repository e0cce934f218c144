"""
WhatsApp Voice Gateway

Twilio を使用した WhatsApp 音声通話ゲートウェイ
"""

__version__ = "0.1.0"

from whatsapp_voice.config import Config, ConfigurationError

__all__ = ["Config", "ConfigurationError"]

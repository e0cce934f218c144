#!/usr/bin/env python3
"""
WhatsApp Voice Gateway アプリケーションエントリーポイント

設定の読み込み、検証、コンポーネントの初期化を行い、
Flask 開発サーバーを起動します。終了時には進行中の通話を切断し、
レジストリを破棄します。

Usage:
    python main.py

環境変数はカレントディレクトリの .env ファイルからも読み込まれます。

Environment Variables (Required):
    - TWILIO_ACCOUNT_SID: Twilio アカウント SID
    - TWILIO_AUTH_TOKEN: Twilio 認証トークン
    - WHATSAPP_SENDER: WhatsApp 送信元アドレス (例: whatsapp:+15551234567)
    - WEBHOOK_BASE_URL: Webhook のベース URL

Environment Variables (Optional):
    - VOICE: 読み上げ音声 (デフォルト: Polly.Joanna)
    - CLIENT_IDENTITY: ブリッジ先クライアント ID (デフォルト: whatsapp-client)
    - GREETING_MESSAGE: 着信時のグリーティング
    - VOICEMAIL_MAX_LENGTH: 最大録音時間（秒） (デフォルト: 120)
    - IVR_TIMEOUT: IVR 入力待ち時間（秒） (デフォルト: 10)
    - QUEUE_NAME: 通話キュー名 (デフォルト: support)
    - LOG_LEVEL: ログレベル (デフォルト: INFO)
    - HOST: サーバーホスト (デフォルト: 0.0.0.0)
    - PORT: サーバーポート (デフォルト: 3000)
    - DEBUG: デバッグモード (デフォルト: False)
"""

import os
import sys

from dotenv import load_dotenv

from whatsapp_voice.app import create_app
from whatsapp_voice.config import Config, ConfigurationError


def main() -> int:
    """
    アプリケーションのメインエントリーポイント

    Returns:
        int: 終了コード (0: 正常終了, 1: エラー終了)
    """
    # .env ファイルがあれば環境変数として読み込む
    load_dotenv()

    try:
        print("設定を読み込んでいます...")
        config = Config.from_env()
        print("設定の読み込みが完了しました。")
    except ConfigurationError as e:
        print(f"\n[エラー] 設定エラーが発生しました:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print("\n必須の環境変数:", file=sys.stderr)
        print("  - TWILIO_ACCOUNT_SID: Twilio アカウント SID", file=sys.stderr)
        print("  - TWILIO_AUTH_TOKEN: Twilio 認証トークン", file=sys.stderr)
        print("  - WHATSAPP_SENDER: WhatsApp 送信元アドレス", file=sys.stderr)
        print("  - WEBHOOK_BASE_URL: Webhook のベース URL", file=sys.stderr)
        return 1

    app = create_app(config)

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "3000"))
    debug = os.environ.get("DEBUG", "").lower() in ("true", "1", "yes")

    print(f"サーバーを起動しています... (host={host}, port={port}, debug={debug})")
    print(f"WhatsApp Sender: {config.whatsapp_sender}")
    print("サーバーを停止するには Ctrl+C を押してください。")

    try:
        app.run(host=host, port=port, debug=debug)
        return 0

    except KeyboardInterrupt:
        print("\nサーバーを停止しました。")
        return 0

    except Exception as e:
        print(f"\n[エラー] 予期しないエラーが発生しました:", file=sys.stderr)
        print(f"  {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    finally:
        # 進行中の通話を切断し、レジストリを破棄
        app.config["VOICE_SERVICE"].shutdown()


if __name__ == "__main__":
    sys.exit(main())

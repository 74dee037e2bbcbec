"""
FlightBot - 例外定義

失敗の種別は ErrorKind で表し、呼び出し側はメッセージ文字列ではなく
kind で分岐する。
"""
from enum import Enum, auto
from typing import Optional


class ErrorKind(Enum):
    EMPTY_INPUT = auto()            # 識別子が未入力
    IDENTIFIER_TOO_SHORT = auto()   # 英数字が2文字未満
    INVALID_FORMAT = auto()         # 便名にも機体記号にも一致しない
    QUOTA_EXCEEDED = auto()         # 月間上限に到達（通信前に拒否）
    AUTHENTICATION_FAILED = auto()  # HTTP 401
    RATE_LIMIT_EXCEEDED = auto()    # HTTP 429
    NOT_FOUND = auto()              # 該当なし（例外ではなく None で返す）
    TRANSPORT_ERROR = auto()        # その他の通信・サーバーエラー
    DELIVERY_FAILED = auto()        # Slackへの投稿失敗


class FlightLookupError(Exception):
    """フライト検索の失敗"""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class QuotaExceededError(FlightLookupError):
    """月間上限到達。利用者に再開日を伝えるため使用量を保持する"""

    def __init__(self, used: int, limit: int, resets_on: str):
        super().__init__(
            ErrorKind.QUOTA_EXCEEDED,
            f"API usage limit reached ({used}/{limit}). Resets on {resets_on}.",
        )
        self.used = used
        self.limit = limit
        self.resets_on = resets_on


class ApiHttpError(Exception):
    """AeroAPIが2xx以外を返した"""

    def __init__(self, status: int, body: Optional[str] = None):
        super().__init__(f"HTTP {status}: {body or ''}".strip())
        self.status = status
        self.body = body


class DeliveryError(Exception):
    """Slackへのメッセージ投稿失敗"""
    kind = ErrorKind.DELIVERY_FAILED

    def __init__(self, channel_id: str, reason: str):
        super().__init__(f"delivery to {channel_id} failed: {reason}")
        self.channel_id = channel_id
        self.reason = reason

"""
FlightBot - コマンドハンドラ

/flightbot と /flightbot-status の応答内容を組み立てる。
Slack への送信は行わず、応答データを返すだけにする。
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import ErrorKind, FlightLookupError, QuotaExceededError
from formatter import format_flight_message, quota_warning_block, tracking_confirmation_text

logger = logging.getLogger(__name__)

IN_CHANNEL = "in_channel"
EPHEMERAL = "ephemeral"

EMPTY_INPUT_MESSAGE = (
    "Please provide a flight number (e.g., `/flightbot UA400`) "
    "or aircraft tail number (e.g., `/flightbot N300DG`)"
)
INVALID_FORMAT_MESSAGE = (
    'Invalid format. Please use a flight number (e.g., "UA400") '
    'or tail number (e.g., "N300DG").'
)
TOO_SHORT_MESSAGE = (
    "Flight identifier too short. Please provide a valid flight number or tail number."
)
AUTH_FAILED_MESSAGE = "Service temporarily unavailable. Please try again later."
RATE_LIMITED_MESSAGE = "Service busy. Please wait a moment and try again."

ERROR_MESSAGES = {
    ErrorKind.EMPTY_INPUT: EMPTY_INPUT_MESSAGE,
    ErrorKind.IDENTIFIER_TOO_SHORT: TOO_SHORT_MESSAGE,
    ErrorKind.INVALID_FORMAT: INVALID_FORMAT_MESSAGE,
    ErrorKind.AUTHENTICATION_FAILED: AUTH_FAILED_MESSAGE,
    ErrorKind.RATE_LIMIT_EXCEEDED: RATE_LIMITED_MESSAGE,
}


@dataclass
class CommandResponse:
    text: str
    response_type: str = EPHEMERAL
    blocks: List[Dict[str, Any]] = field(default_factory=list)
    kind: Optional[ErrorKind] = None   # 失敗時の種別（成功時はNone）

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"text": self.text, "response_type": self.response_type}
        if self.blocks:
            payload["blocks"] = self.blocks
        return payload


def not_found_message(identifier: str) -> str:
    return (
        f'Flight "{identifier}" not found. Please check the flight number '
        f"or tail number and try again."
    )


def quota_exhausted_message(error: QuotaExceededError) -> str:
    return (
        f"*Monthly API limit reached* ({error.used}/{error.limit} requests used).\n\n"
        f"Flight tracking is temporarily unavailable. Usage resets on *{error.resets_on}*."
    )


def generic_error_response(identifier: str) -> CommandResponse:
    """ハンドラで扱えなかった失敗に対する応答（呼び出し側でログを取ってから使う）"""
    return CommandResponse(
        text=(
            f'Error retrieving flight information for "{identifier}". '
            f"Please try again later."
        ),
        kind=ErrorKind.TRANSPORT_ERROR,
    )


async def handle_flightbot_command(
    identifier: str,
    channel_id: str,
    user_id: str,
    flight_client,
    monitor,
    usage_tracker,
) -> CommandResponse:
    """
    /flightbot <便名|機体記号>

    検証エラー・上限到達・認証/レート制限は利用者向けメッセージに変換する。
    それ以外の失敗は上位（Webハンドラ）でログを取るためそのまま送出する。
    """
    identifier = (identifier or "").strip()
    if not identifier:
        return CommandResponse(text=EMPTY_INPUT_MESSAGE, kind=ErrorKind.EMPTY_INPUT)

    try:
        flight = await flight_client.get_flight_data(identifier)
    except QuotaExceededError as e:
        logger.warning(f"月間上限のため検索を拒否: {identifier}")
        return CommandResponse(text=quota_exhausted_message(e), kind=e.kind)
    except FlightLookupError as e:
        message = ERROR_MESSAGES.get(e.kind)
        if message is None:
            raise
        if e.kind in (ErrorKind.AUTHENTICATION_FAILED, ErrorKind.RATE_LIMIT_EXCEEDED):
            logger.error(f"AeroAPI エラー ({identifier}): {e}")
        return CommandResponse(text=message, kind=e.kind)

    if flight is None:
        return CommandResponse(text=not_found_message(identifier), kind=ErrorKind.NOT_FOUND)

    monitor.start_tracking(flight, channel_id, user_id, identifier)

    blocks = format_flight_message(flight, identifier)
    usage = await usage_tracker.get_usage_status()
    if usage.should_warn:
        advice = (
            "Flight tracking may be limited."
            if usage.status == "critical"
            else "Monitoring may be reduced to preserve API quota."
        )
        blocks.append(quota_warning_block(usage, advice))

    return CommandResponse(
        text=tracking_confirmation_text(flight, identifier),
        response_type=IN_CHANNEL,
        blocks=blocks,
    )


async def handle_status_command(monitor, usage_tracker) -> CommandResponse:
    """/flightbot-status"""
    usage_message = await usage_tracker.get_usage_message()
    count = monitor.get_tracked_flights_count()
    return CommandResponse(
        text=f"*FlightBot Status*\n\n{usage_message}\n\nCurrently tracking: {count} flights",
    )

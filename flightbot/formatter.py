"""
FlightBot - Slackメッセージ整形

責務:
  - NormalizedFlight から Slack Block Kit のブロック列を組み立てる
  - ステータス変化通知の見出し文の選択
  - 使用量警告ブロック・追跡開始メッセージの生成
  - 通信やAPI使用量の更新は一切行わない（純粋関数のみ）

ブロックの並び順:
  見出し → 出発/到着（または非飛行中の案内） → 機体/進捗/欠航・ダイバート
  → 経路 → 追跡リンク
  呼び出し側は末尾に使用量警告などを追加するため、この順序を崩さないこと。
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from identifiers import clean_identifier, is_tail_search
from models import (
    AirportInfo,
    NormalizedFlight,
    UsageStatus,
    GROUNDED_STATUSES,
    UNKNOWN_AIRPORT,
    is_private_aviation,
)

Block = Dict[str, object]

FLIGHTAWARE_URL = "https://flightaware.com/live/flight/{}"
FLIGHTRADAR24_URL = "https://www.flightradar24.com/data/flights/{}"

STATUS_LABELS = {
    "scheduled": "Scheduled",
    "active": "In Flight",
    "landed": "Landed",
    "cancelled": "Cancelled",
    "incident": "Incident",
    "diverted": "Diverted",
    "result unknown": "Not Currently Flying",
    "result_unknown": "Not Currently Flying",
    "unknown": "Status Unknown",
}

STATUS_EMOJI = {
    "scheduled": ":calendar:",
    "active": ":airplane:",
    "landed": ":airplane_arriving:",
    "cancelled": ":x:",
    "incident": ":rotating_light:",
    "diverted": ":twisted_rightwards_arrows:",
    "result unknown": ":parking:",
    "result_unknown": ":parking:",
    "unknown": ":grey_question:",
}

# ステータス変化通知の見出し（{} は表示名）
UPDATE_TEMPLATES = {
    "active": "*{}* is now airborne!",
    "landed": "*{}* has landed safely.",
    "cancelled": "*{}* has been cancelled.",
    "diverted": "*{}* has been diverted.",
    "incident": "*{}* has reported an incident.",
}

GROUNDED_NOTICE = (
    "*Status:* Aircraft is currently not in flight\n\n"
    "_Check the tracking links below for flight history and future scheduled flights._"
)


def section(text: str) -> Block:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


# ─────────────────────────────────
# ステータス表示
# ─────────────────────────────────
def format_status(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def format_status_line(status: str) -> str:
    emoji = STATUS_EMOJI.get(status, ":small_blue_diamond:")
    return f"{emoji} {format_status(status)}"


# ─────────────────────────────────
# 表示名
# ─────────────────────────────────
def display_title(flight: NormalizedFlight, searched_identifier: Optional[str] = None) -> str:
    """
    自家用機: 機体記号 → (機体記号で検索した場合) 検索文字列 → 便名
    定期便:   "Flight 便名"
    """
    code = flight.flight.display_code()
    if not is_private_aviation(flight):
        return f"Flight {code}"
    if flight.registration:
        return flight.registration
    if is_tail_search(searched_identifier):
        return searched_identifier.upper()
    return code


def tracking_confirmation_text(flight: NormalizedFlight, identifier: str) -> str:
    """追跡開始時の短いテキスト"""
    if is_private_aviation(flight):
        return f"Now tracking *{display_title(flight, identifier)}*"
    return f"Now tracking flight *{flight.flight.display_code()}*"


# ─────────────────────────────────
# 空港・時刻
# ─────────────────────────────────
def format_airport_info(airport: Optional[AirportInfo]) -> str:
    """ICAO（IATAが異なれば併記） → IATA → 空港名のみ"""
    if airport is None:
        return UNKNOWN_AIRPORT

    name = airport.airport or "Unknown Airport"
    codes = ""
    if airport.icao:
        codes = airport.icao
        if airport.iata and airport.iata != airport.icao:
            codes += f" / {airport.iata}"
    elif airport.iata:
        codes = airport.iata

    return f"{name} ({codes})" if codes else name


def _format_timestamp(value: str) -> str:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).strftime("%b %d, %Y %H:%M UTC")
    return dt.strftime("%b %d, %Y %H:%M")


def format_flight_time(airport: Optional[AirportInfo]) -> str:
    """実績 → 予測 → 定刻 の順に採用し、どれを使ったかを併記する。"""
    if airport is None:
        return "Unknown"
    if airport.actual:
        return f"{_format_timestamp(airport.actual)} (Actual)"
    if airport.estimated:
        return f"{_format_timestamp(airport.estimated)} (Est)"
    if airport.scheduled:
        return f"{_format_timestamp(airport.scheduled)} (Sched)"
    return "Unknown"


def is_grounded(flight: NormalizedFlight) -> bool:
    if flight.flight_status in GROUNDED_STATUSES:
        return True
    return (
        format_airport_info(flight.departure) == UNKNOWN_AIRPORT
        and format_airport_info(flight.arrival) == UNKNOWN_AIRPORT
    )


# ─────────────────────────────────
# 追跡リンク
# ─────────────────────────────────
def tracking_link_identifier(flight: NormalizedFlight, searched_identifier: Optional[str] = None) -> str:
    # URLに埋め込むため検索文字列は英数字のみにする
    return (
        flight.registration
        or clean_identifier(searched_identifier)
        or flight.flight.display_code()
    )


def tracking_links(flight: NormalizedFlight, searched_identifier: Optional[str] = None) -> str:
    ident = tracking_link_identifier(flight, searched_identifier)
    flightaware = FLIGHTAWARE_URL.format(ident)
    fr24 = FLIGHTRADAR24_URL.format(ident.lower())
    return f"Track on <{flightaware}|FlightAware> | <{fr24}|Flightradar24>"


def format_aircraft_info(flight: NormalizedFlight, searched_identifier: Optional[str] = None) -> Optional[str]:
    parts: List[str] = []
    aircraft_type = flight.aircraft.type if flight.aircraft else None

    if flight.registration:
        text = f"*Aircraft:* {flight.registration}"
        if aircraft_type:
            text += f" ({aircraft_type})"
        parts.append(text)
    elif aircraft_type and is_tail_search(searched_identifier):
        parts.append(f"*Aircraft:* {searched_identifier.upper()} ({aircraft_type})")

    if flight.progress_percent and flight.progress_percent > 0:
        parts.append(f"*Progress:* {flight.progress_percent}%")

    indicators = []
    if flight.cancelled:
        indicators.append("Cancelled")
    if flight.diverted:
        indicators.append("Diverted")
    if indicators:
        parts.append(" - ".join(indicators))

    return "\n".join(parts) if parts else None


# ═══════════════════════════════════════
# メッセージ本体
# ═══════════════════════════════════════

def format_flight_message(flight: NormalizedFlight, searched_identifier: Optional[str] = None) -> List[Block]:
    """フライト情報のブロック列を返す。"""
    header = f"*{display_title(flight, searched_identifier)}*"
    if not is_private_aviation(flight):
        header += f" - {flight.airline.name}"
    header += f"\n{format_status_line(flight.flight_status)}"

    blocks: List[Block] = [section(header)]

    if is_grounded(flight):
        blocks.append(section(GROUNDED_NOTICE))
    else:
        blocks.append({
            "type": "section",
            "fields": [
                {
                    "type": "mrkdwn",
                    "text": (
                        f"*Departure:*\n{format_airport_info(flight.departure)}\n"
                        f"*Time:* {format_flight_time(flight.departure)}"
                    ),
                },
                {
                    "type": "mrkdwn",
                    "text": (
                        f"*Arrival:*\n{format_airport_info(flight.arrival)}\n"
                        f"*Time:* {format_flight_time(flight.arrival)}"
                    ),
                },
            ],
        })

    aircraft_info = format_aircraft_info(flight, searched_identifier)
    if aircraft_info:
        blocks.append(section(aircraft_info))

    if flight.route:
        blocks.append(section(f"*Route:* {flight.route}"))

    blocks.append(section(tracking_links(flight, searched_identifier)))
    return blocks


def get_update_message(flight: NormalizedFlight, update_type: str, searched_identifier: Optional[str] = None) -> str:
    """ステータス変化通知の見出し文"""
    name = display_title(flight, searched_identifier)
    template = UPDATE_TEMPLATES.get(update_type)
    if template:
        return template.format(name)
    return f"*{name}* status update: {format_status_line(flight.flight_status)}"


def quota_warning_block(usage: UsageStatus, advice: Optional[str] = None) -> Block:
    """使用量が warning / critical のときにメッセージ末尾へ付けるブロック"""
    if advice is None:
        advice = (
            "Flight tracking may be limited."
            if usage.status == "critical"
            else "Consider limiting new flight tracking."
        )
    return section(
        f"{usage.emoji} *API Usage {usage.status}*: {usage.used}/{usage.limit} "
        f"requests ({usage.percentage}%). {advice}"
    )

"""
FlightBot - フライト情報取得

責務:
  - FlightAware AeroAPI への非同期HTTP通信（aiohttp）
  - 識別子の検証と検索種別の判定
  - API使用量の事前チェックと計上
  - 応答の NormalizedFlight への正規化とエラー分類

設計方針:
  - 自動リトライは行わない。例外は機体記号検索で 400 が返った場合の
    代替エンドポイントへの1回だけの再問い合わせ
  - タイムアウトは aiohttp.ClientTimeout に任せる
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from bot_config import AEROAPI_BASE_URL, FLIGHTAWARE_API_KEY, REQUEST_TIMEOUT
from errors import ApiHttpError, ErrorKind, FlightLookupError, QuotaExceededError
from identifiers import MIN_IDENTIFIER_LENGTH, classify_identifier, clean_identifier
from models import (
    AircraftInfo,
    AirlineInfo,
    AirportInfo,
    FlightCode,
    NormalizedFlight,
    FLIGHT_NUMBER,
    UNKNOWN,
    UNKNOWN_AIRLINE,
    UNKNOWN_AIRPORT,
)

logger = logging.getLogger(__name__)

# 上流ステータス → 正規化ステータス（ここに無い値は小文字化して素通し）
STATUS_MAP = {
    "Scheduled": "scheduled",
    "Active": "active",
    "Completed": "landed",
    "Cancelled": "cancelled",
    "Diverted": "diverted",
}

FLIGHT_CALL_TYPE = "flight_lookup"
TAIL_CALL_TYPE = "tail_lookup"


# ═══════════════════════════════════════
# 正規化（純粋関数）
# ═══════════════════════════════════════

def map_status(status: Optional[str]) -> str:
    if not status:
        return UNKNOWN
    return STATUS_MAP.get(status, status.lower())


def _airport(place: Optional[Dict[str, Any]], raw: Dict[str, Any], suffix: str, side: str) -> AirportInfo:
    place = place or {}
    return AirportInfo(
        airport=place.get("name") or place.get("code_iata") or UNKNOWN_AIRPORT,
        iata=place.get("code_iata"),
        icao=place.get("code_icao"),
        scheduled=raw.get(f"scheduled_{suffix}"),
        estimated=raw.get(f"estimated_{suffix}"),
        actual=raw.get(f"actual_{suffix}"),
        gate=raw.get(f"gate_{side}"),
        terminal=raw.get(f"terminal_{side}"),
    )


def _progress(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_flight(raw: Dict[str, Any], search_type: str) -> NormalizedFlight:
    """AeroAPIのフライト1件を NormalizedFlight に変換する。"""
    return NormalizedFlight(
        flight=FlightCode(
            iata=raw.get("ident_iata"),
            icao=raw.get("ident_icao"),
            number=raw.get("ident"),
            flight_number=raw.get("flight_number"),
        ),
        flight_status=map_status(raw.get("status")),
        airline=AirlineInfo(
            name=raw.get("operator") or UNKNOWN_AIRLINE,
            iata=raw.get("operator_iata"),
            icao=raw.get("operator_icao"),
        ),
        departure=_airport(raw.get("origin"), raw, "out", "origin"),
        arrival=_airport(raw.get("destination"), raw, "in", "destination"),
        aircraft=AircraftInfo(
            registration=raw.get("registration"),
            type=raw.get("aircraft_type"),
        ),
        progress_percent=_progress(raw.get("progress_percent")),
        route=raw.get("route") or None,
        cancelled=bool(raw.get("cancelled")),
        diverted=bool(raw.get("diverted")),
        search_type=search_type,
        fa_flight_id=raw.get("fa_flight_id"),
    )


# ═══════════════════════════════════════
# HTTP通信
# ═══════════════════════════════════════

class AeroApiClient:
    """AeroAPI v4 の薄いラッパー。2xx以外は ApiHttpError を送出する。"""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: str = FLIGHTAWARE_API_KEY,
        base_url: str = AEROAPI_BASE_URL,
        timeout: int = REQUEST_TIMEOUT,
    ):
        self._session = session
        self._base_url = base_url.rstrip('/')
        self._headers = {
            "x-apikey": api_key or "",
            "Accept": "application/json",
        }
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get(self, path: str) -> Dict[str, Any]:
        url = self._base_url + path
        t0 = time.monotonic()
        async with self._session.get(
            url, headers=self._headers, timeout=self._timeout
        ) as resp:
            if resp.status >= 300:
                body = await resp.text()
                raise ApiHttpError(resp.status, body[:200])
            data = await resp.json(content_type=None)
        logger.debug(f"AeroAPI GET {path} ({time.monotonic() - t0:.2f}秒)")
        if not isinstance(data, dict):
            raise ApiHttpError(resp.status, "unexpected payload")
        return data

    async def get_flights(self, ident: str) -> List[Dict[str, Any]]:
        """便名・機体記号による検索 (/flights/{ident})"""
        data = await self._get(f"/flights/{quote(ident)}")
        return list(data.get("flights") or [])

    async def get_aircraft_flights(self, ident: str) -> List[Dict[str, Any]]:
        """機体の運航履歴 (/aircraft/{ident}/flights)"""
        data = await self._get(f"/aircraft/{quote(ident)}/flights")
        return list(data.get("flights") or [])


# ═══════════════════════════════════════
# 検索の本体
# ═══════════════════════════════════════

class FlightDataClient:
    def __init__(self, api, usage_tracker):
        self._api = api
        self._usage = usage_tracker

    @property
    def usage_tracker(self):
        return self._usage

    async def get_flight_data(self, identifier: str) -> Optional[NormalizedFlight]:
        """
        識別子でフライトを検索する。
        該当なしは None（例外ではない）。失敗は FlightLookupError。
        """
        if not identifier or len(identifier) < MIN_IDENTIFIER_LENGTH:
            raise FlightLookupError(ErrorKind.IDENTIFIER_TOO_SHORT, "Flight identifier too short")

        clean = clean_identifier(identifier)
        if len(clean) < MIN_IDENTIFIER_LENGTH:
            raise FlightLookupError(ErrorKind.IDENTIFIER_TOO_SHORT, "Flight identifier too short")

        search_type = classify_identifier(clean)
        if search_type is None:
            raise FlightLookupError(ErrorKind.INVALID_FORMAT, "Invalid flight identifier format")

        # 上限到達時は通信しない
        if not await self._usage.can_make_request():
            status = await self._usage.get_usage_status()
            raise QuotaExceededError(status.used, status.limit, status.resets_on)

        try:
            if search_type == FLIGHT_NUMBER:
                call_type = FLIGHT_CALL_TYPE
                flights = await self._api.get_flights(clean)
            else:
                call_type = TAIL_CALL_TYPE
                flights = await self._lookup_tail(clean)
        except ApiHttpError as e:
            logger.warning(f"フライト取得失敗 {clean}: {e}")
            raise self._classify_http_error(e) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"フライト取得 通信エラー {clean}: {e.__class__.__name__}: {e}")
            raise FlightLookupError(
                ErrorKind.TRANSPORT_ERROR, f"{e.__class__.__name__}: {e}"
            ) from e

        # 相手サービスまで届いた呼び出しは0件でも計上する
        await self._usage.record_request(call_type, clean)

        if not flights:
            logger.info(f"該当フライトなし: {clean}")
            return None
        return normalize_flight(flights[0], search_type)

    async def _lookup_tail(self, tail_number: str) -> List[Dict[str, Any]]:
        """
        機体記号で検索する。
        一部の国籍記号は /flights が 400 を返すため、
        その場合のみ /aircraft/{ident}/flights に1回だけ問い合わせ直す。
        """
        try:
            return await self._api.get_flights(tail_number)
        except ApiHttpError as e:
            if e.status != 400:
                raise
            logger.info(f"機体記号 {tail_number}: /flights が 400 のため機体履歴APIで再検索")
            return await self._api.get_aircraft_flights(tail_number)

    @staticmethod
    def _classify_http_error(error: ApiHttpError) -> FlightLookupError:
        if error.status == 401:
            return FlightLookupError(ErrorKind.AUTHENTICATION_FAILED, "API authentication failed")
        if error.status == 429:
            return FlightLookupError(ErrorKind.RATE_LIMIT_EXCEEDED, "API rate limit exceeded")
        return FlightLookupError(ErrorKind.TRANSPORT_ERROR, str(error))

"""
FlightBot - データモデル定義

各Entityの責務:
  - NormalizedFlight: AeroAPIの応答を正規化したフライト情報（取得ごとに作り直す不変値）
  - TrackedFlight: 追跡中フライト（(識別子, チャンネル) 単位で1件）
  - UsageState / UsageStatus: 月間API使用量の状態と集計結果
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple


# ─────────────────────────────────
# フライトステータス（正規化後の値）
# ─────────────────────────────────
SCHEDULED = "scheduled"
ACTIVE = "active"
LANDED = "landed"
CANCELLED = "cancelled"
DIVERTED = "diverted"
INCIDENT = "incident"
UNKNOWN = "unknown"
RESULT_UNKNOWN = "result_unknown"

# 通知対象となるステータス（これ以外への遷移では通知しない）
TRIGGER_STATUSES = (SCHEDULED, ACTIVE, LANDED, CANCELLED, INCIDENT, DIVERTED)

# 現在飛行中でないことを示すステータス
# 上流の "Result Unknown" は小文字化のみで素通しされるため空白区切りも含める
GROUNDED_STATUSES = (UNKNOWN, RESULT_UNKNOWN, "result unknown")

# ─────────────────────────────────
# 検索種別
# ─────────────────────────────────
FLIGHT_NUMBER = "flight_number"
TAIL_NUMBER = "tail_number"
SEARCH_TYPES = (FLIGHT_NUMBER, TAIL_NUMBER)

# ─────────────────────────────────
# 番兵値
# ─────────────────────────────────
UNKNOWN_AIRLINE = "Unknown Airline"   # 運航会社なし = 自家用機・ビジネス機
UNKNOWN_AIRPORT = "Unknown"           # 空港名が解決できなかった

# 着陸済みフライトを追跡から外す通知回数のしきい値（この値を「超えた」ら削除）
LANDED_DRAIN_THRESHOLD = 10

# 呼び出しログの保持件数
REQUEST_LOG_LIMIT = 100


@dataclass(frozen=True)
class FlightCode:
    """便名の各表記"""
    iata: Optional[str] = None
    icao: Optional[str] = None
    number: Optional[str] = None
    flight_number: Optional[str] = None

    def display_code(self) -> str:
        return self.iata or self.icao or self.number or "Unknown"


@dataclass(frozen=True)
class AirlineInfo:
    """運航会社"""
    name: str = UNKNOWN_AIRLINE
    iata: Optional[str] = None
    icao: Optional[str] = None


@dataclass(frozen=True)
class AirportInfo:
    """出発地・到着地（時刻は ISO 8601 文字列のまま保持する）"""
    airport: str = UNKNOWN_AIRPORT
    iata: Optional[str] = None
    icao: Optional[str] = None
    scheduled: Optional[str] = None
    estimated: Optional[str] = None
    actual: Optional[str] = None
    gate: Optional[str] = None
    terminal: Optional[str] = None


@dataclass(frozen=True)
class AircraftInfo:
    """機体情報"""
    registration: Optional[str] = None
    type: Optional[str] = None


@dataclass(frozen=True)
class NormalizedFlight:
    """正規化済みフライト情報"""
    flight: FlightCode
    flight_status: str
    airline: Optional[AirlineInfo] = None
    departure: Optional[AirportInfo] = None
    arrival: Optional[AirportInfo] = None
    aircraft: Optional[AircraftInfo] = None
    progress_percent: Optional[int] = None
    route: Optional[str] = None
    cancelled: bool = False
    diverted: bool = False
    search_type: str = FLIGHT_NUMBER
    fa_flight_id: Optional[str] = None

    def __post_init__(self):
        if not self.flight_status:
            raise ValueError("flight_status must not be empty")
        if self.search_type not in SEARCH_TYPES:
            raise ValueError(f"unsupported search_type: {self.search_type}")

    @property
    def registration(self) -> Optional[str]:
        return self.aircraft.registration if self.aircraft else None


def is_private_aviation(flight: NormalizedFlight) -> bool:
    """
    運航会社名が無い、または番兵値のままなら自家用機とみなす。
    表示名・更新通知・追跡開始メッセージの判定はすべてこの関数を通す。
    """
    name = flight.airline.name if flight.airline else None
    return not name or name == UNKNOWN_AIRLINE


@dataclass
class TrackedFlight:
    """追跡中フライト（1識別子 × 1チャンネル = 1レコード）"""
    flight: NormalizedFlight
    identifier: str
    channel_id: str
    user_id: str
    last_status: str
    last_updated: datetime
    update_count: int = 0
    has_landed: bool = False

    def __post_init__(self):
        if not self.identifier or not self.identifier.strip():
            raise ValueError("identifier must not be empty")
        if not self.channel_id:
            raise ValueError(f"channel_id must not be empty for {self.identifier}")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.identifier, self.channel_id)

    def is_drained(self) -> bool:
        """着陸済みかつ通知回数がしきい値を超えたら追跡終了"""
        return self.has_landed and self.update_count > LANDED_DRAIN_THRESHOLD


@dataclass
class ApiRequest:
    """API呼び出しログ1件（診断用）"""
    timestamp: str
    type: str
    flight_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "type": self.type, "flightId": self.flight_id}

    @classmethod
    def from_dict(cls, data: dict) -> "ApiRequest":
        return cls(
            timestamp=str(data.get("timestamp", "")),
            type=str(data.get("type", "")),
            flight_id=data.get("flightId"),
        )


@dataclass
class UsageState:
    """月間API使用量。month は 0〜11"""
    month: int
    year: int
    count: int = 0
    requests: List[ApiRequest] = field(default_factory=list)
    last_reset: Optional[str] = None

    def __post_init__(self):
        if not 0 <= self.month <= 11:
            raise ValueError(f"month must be 0-11: {self.month}")
        if self.count < 0:
            raise ValueError(f"count must not be negative: {self.count}")

    @classmethod
    def fresh(cls, now: datetime) -> "UsageState":
        return cls(
            month=now.month - 1,
            year=now.year,
            count=0,
            requests=[],
            last_reset=now.isoformat(),
        )

    def is_stale(self, now: datetime) -> bool:
        return self.month != now.month - 1 or self.year != now.year

    def to_dict(self) -> dict:
        return {
            "month": self.month,
            "year": self.year,
            "count": self.count,
            "requests": [r.to_dict() for r in self.requests],
            "lastReset": self.last_reset,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UsageState":
        return cls(
            month=int(data["month"]),
            year=int(data["year"]),
            count=int(data.get("count", 0)),
            requests=[ApiRequest.from_dict(r) for r in data.get("requests") or []],
            last_reset=data.get("lastReset"),
        )


@dataclass(frozen=True)
class UsageStatus:
    """使用量の集計結果"""
    status: str          # healthy / warning / critical
    emoji: str
    used: int
    remaining: int
    limit: int
    percentage: int      # 四捨五入済み
    resets_on: str       # 翌月1日 (YYYY-MM-DD)

    @property
    def should_warn(self) -> bool:
        return self.status in ("warning", "critical")

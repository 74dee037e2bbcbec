"""
FlightBot - 月間API使用量トラッカー

責務:
  - AeroAPIの月間呼び出し回数の計上と上限判定
  - 使用率に応じた状態（healthy / warning / critical）の算出
  - 月替わりの自動リセット

設計方針:
  - 永続化はコンストラクタで受け取ったストアに委譲する（load / save のみ）
  - 永続化の失敗は呼び出し側に伝えない。メモリ上のカウントを正とし、
    フライト追跡そのものは止めない
  - 月替わり判定は全ての公開メソッドの先頭で行う
"""
import asyncio
import logging
import math
from datetime import date, datetime
from typing import Callable, Optional

from bot_config import API_MONTHLY_LIMIT
from models import ApiRequest, UsageState, UsageStatus, REQUEST_LOG_LIMIT

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 0.80
CRITICAL_THRESHOLD = 0.95

STATUS_EMOJI = {
    "healthy": ":white_check_mark:",
    "warning": ":warning:",
    "critical": ":rotating_light:",
}


class ApiUsageTracker:
    def __init__(
        self,
        store,
        monthly_limit: int = API_MONTHLY_LIMIT,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if monthly_limit <= 0:
            raise ValueError(f"monthly_limit must be positive: {monthly_limit}")
        self._store = store
        self._limit = monthly_limit
        self._clock = clock
        self._usage = UsageState.fresh(clock())
        self._save_lock = asyncio.Lock()

    @property
    def monthly_limit(self) -> int:
        return self._limit

    # ─────────────────────────────────
    # 読み込み・保存
    # ─────────────────────────────────
    async def load(self):
        """
        保存済みの使用量を読み込む。
        未保存・読み込み失敗・前月以前のデータはいずれも0件から始める。
        """
        try:
            state = await self._store.load()
        except Exception as e:
            logger.error(f"API使用量の読み込みに失敗: {e.__class__.__name__}: {e}")
            state = None

        if state is None:
            await self._reset()
            return

        self._usage = state
        await self._check_rollover()
        logger.info(
            f"API使用量読み込み: {self._usage.count}/{self._limit} "
            f"({self._usage.year}-{self._usage.month + 1:02d})"
        )

    async def _save(self):
        async with self._save_lock:
            try:
                await self._store.save(self._usage)
            except Exception as e:
                logger.error(f"API使用量の保存に失敗: {e.__class__.__name__}: {e}")

    async def _reset(self):
        self._usage = UsageState.fresh(self._clock())
        await self._save()

    async def _check_rollover(self):
        """月または年が変わっていれば0件にリセットする。"""
        if self._usage.is_stale(self._clock()):
            logger.info(
                f"月替わりのためAPI使用量をリセット "
                f"(前回 {self._usage.year}-{self._usage.month + 1:02d}: {self._usage.count}件)"
            )
            await self._reset()

    # ─────────────────────────────────
    # 判定
    # ─────────────────────────────────
    def _percentage(self) -> float:
        return self._usage.count / self._limit * 100

    async def can_make_request(self) -> bool:
        await self._check_rollover()
        return self._usage.count < self._limit

    async def get_remaining_requests(self) -> int:
        await self._check_rollover()
        return max(0, self._limit - self._usage.count)

    async def get_usage_percentage(self) -> float:
        await self._check_rollover()
        return self._percentage()

    async def should_limit_tracking(self) -> bool:
        """使用率が critical 域（95%以上）なら追跡対象を絞る。"""
        await self._check_rollover()
        return self._percentage() >= CRITICAL_THRESHOLD * 100

    # ─────────────────────────────────
    # 計上
    # ─────────────────────────────────
    async def record_request(self, call_type: str = "flight_lookup", flight_id: Optional[str] = None):
        """
        呼び出し1回を計上する。
        既に行われた呼び出しの記録なので、上限を超えていても拒否はしない。
        """
        await self._check_rollover()

        self._usage.count += 1
        self._usage.requests.append(ApiRequest(
            timestamp=self._clock().isoformat(),
            type=call_type,
            flight_id=flight_id,
        ))
        if len(self._usage.requests) > REQUEST_LOG_LIMIT:
            self._usage.requests = self._usage.requests[-REQUEST_LOG_LIMIT:]

        await self._save()

        percentage = self._percentage()
        if percentage >= CRITICAL_THRESHOLD * 100:
            logger.critical(
                f"API使用量 CRITICAL: {self._usage.count}/{self._limit} ({percentage:.1f}%)"
            )
        elif percentage >= WARNING_THRESHOLD * 100:
            logger.warning(
                f"API使用量 WARNING: {self._usage.count}/{self._limit} ({percentage:.1f}%)"
            )

    # ─────────────────────────────────
    # 集計
    # ─────────────────────────────────
    async def get_usage_status(self) -> UsageStatus:
        await self._check_rollover()
        percentage = self._percentage()

        if percentage >= CRITICAL_THRESHOLD * 100:
            status = "critical"
        elif percentage >= WARNING_THRESHOLD * 100:
            status = "warning"
        else:
            status = "healthy"

        return UsageStatus(
            status=status,
            emoji=STATUS_EMOJI[status],
            used=self._usage.count,
            remaining=max(0, self._limit - self._usage.count),
            limit=self._limit,
            percentage=int(math.floor(percentage + 0.5)),
            resets_on=self._next_reset_date().isoformat(),
        )

    def _next_reset_date(self) -> date:
        today = self._clock().date()
        if today.month == 12:
            return date(today.year + 1, 1, 1)
        return date(today.year, today.month + 1, 1)

    async def get_usage_message(self) -> str:
        """/flightbot-status 向けの使用量メッセージ"""
        s = await self.get_usage_status()

        if s.status == "critical":
            return (
                f"{s.emoji} *API Usage Critical*: {s.used}/{s.limit} requests used "
                f"({s.percentage}%). Flight tracking may be limited to preserve "
                f"remaining requests. Resets on {s.resets_on}."
            )
        if s.status == "warning":
            return (
                f"{s.emoji} *API Usage Warning*: {s.used}/{s.limit} requests used "
                f"({s.percentage}%). Consider limiting flight tracking. "
                f"Resets on {s.resets_on}."
            )
        return (
            f"{s.emoji} API Usage: {s.used}/{s.limit} requests used "
            f"({s.percentage}%). {s.remaining} requests remaining."
        )

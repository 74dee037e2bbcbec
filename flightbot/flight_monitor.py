"""
FlightBot - 追跡レジストリと定期チェック

責務:
  - 追跡中フライトの管理（キーは (識別子, チャンネルID)）
  - 定期チェック対象の選定と、API使用量が逼迫した際の対象の絞り込み
  - 対象フライトの並列再取得とステータス変化の検出
  - 変化があった場合の Slack への通知

状態遷移（フライト1件あたり）:
  追跡中 → (landed を取得) → 着陸済み（has_landed は以後戻らない）
        → (通知回数 > 10) → 削除
  通知回数は通知対象の遷移でのみ増えるため、着陸後にステータスが変わらない
  フライトはプロセス終了まで残り続ける。
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Tuple

from bot_config import POLL_INTERVAL_SEC
from formatter import format_flight_message, get_update_message, quota_warning_block, section
from models import NormalizedFlight, TrackedFlight, LANDED, TRIGGER_STATUSES

logger = logging.getLogger(__name__)

# 使用量 critical 時に1サイクルでチェックする最大件数
LIMITED_CHECK_COUNT = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def should_send_update(current_status: str, previous_status: str) -> bool:
    """ステータスが変わり、かつ通知対象のステータスになった場合のみ通知する。"""
    return current_status != previous_status and current_status in TRIGGER_STATUSES


class FlightMonitor:
    def __init__(
        self,
        flight_client,
        usage_tracker,
        poster,
        poll_interval: int = POLL_INTERVAL_SEC,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._flights = flight_client
        self._usage = usage_tracker
        self._poster = poster
        self._interval = poll_interval
        self._clock = clock
        self._tracked: Dict[Tuple[str, str], TrackedFlight] = {}
        self._stats = {
            "cycles": 0,
            "skipped_cycles": 0,
            "checked": 0,
            "updates_sent": 0,
            "fetch_errors": 0,
            "delivery_errors": 0,
            "pruned": 0,
        }

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    # ─────────────────────────────────
    # レジストリ操作
    #   await を挟まないため、asyncioタスク切替が途中で発生しない
    # ─────────────────────────────────
    def start_tracking(
        self,
        flight: NormalizedFlight,
        channel_id: str,
        user_id: str,
        identifier: str,
    ) -> TrackedFlight:
        """
        追跡を開始する。同じキーが既にあれば、
        通知回数・基準ステータスごと新しいスナップショットで置き換える。
        """
        tracking = TrackedFlight(
            flight=flight,
            identifier=identifier,
            channel_id=channel_id,
            user_id=user_id,
            last_status=flight.flight_status,
            last_updated=self._clock(),
            update_count=0,
            has_landed=flight.flight_status == LANDED,
        )
        self._tracked[tracking.key] = tracking
        logger.info(f"追跡開始: {identifier} (チャンネル {channel_id}, 依頼者 {user_id})")
        return tracking

    def stop_tracking(self, identifier: str, channel_id: str) -> bool:
        removed = self._tracked.pop((identifier, channel_id), None)
        if removed is not None:
            logger.info(f"追跡停止: {identifier} (チャンネル {channel_id})")
        return removed is not None

    def is_tracking(self, identifier: str, channel_id: str) -> bool:
        return (identifier, channel_id) in self._tracked

    def get_tracked_flights_count(self) -> int:
        return len(self._tracked)

    def tracked_flights(self) -> List[TrackedFlight]:
        return list(self._tracked.values())

    # ─────────────────────────────────
    # 定期チェック
    # ─────────────────────────────────
    async def check_flight_updates(self):
        """
        1サイクル分のチェック。
        月間上限に達している場合は、着陸済みフライトの整理も含めて何もしない。
        """
        now = self._clock()
        self._stats["cycles"] += 1

        if not await self._usage.can_make_request():
            self._stats["skipped_cycles"] += 1
            logger.warning("API月間上限に到達。フライト追跡の更新を一時停止します")
            return

        limit_tracking = await self._usage.should_limit_tracking()

        candidates: List[TrackedFlight] = []
        for key, tracking in list(self._tracked.items()):
            if tracking.is_drained():
                logger.info(f"着陸済みフライトの追跡を終了: {tracking.identifier}")
                del self._tracked[key]
                self._stats["pruned"] += 1
                continue

            elapsed = (now - tracking.last_updated).total_seconds()
            if elapsed > self._interval:
                candidates.append(tracking)

        # 使用量 critical: 直近に更新されたもの（= 追跡開始が新しいもの）を優先
        if limit_tracking and len(candidates) > LIMITED_CHECK_COUNT:
            candidates = sorted(
                candidates, key=lambda t: t.last_updated, reverse=True
            )[:LIMITED_CHECK_COUNT]
            logger.warning(
                f"API使用量 critical。直近の {len(candidates)} 件のみチェックします"
            )

        if not candidates:
            return

        results = await asyncio.gather(
            *(self._check_single_flight(t) for t in candidates),
            return_exceptions=True,
        )
        for tracking, result in zip(candidates, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"チェック処理エラー ({tracking.identifier}): "
                    f"{result.__class__.__name__}: {result}"
                )

    async def _check_single_flight(self, tracking: TrackedFlight):
        """1件を再取得し、通知対象の遷移なら通知する。"""
        self._stats["checked"] += 1
        try:
            updated = await self._flights.get_flight_data(tracking.identifier)
        except Exception as e:
            self._stats["fetch_errors"] += 1
            logger.error(f"フライト更新チェック失敗 {tracking.identifier}: {e}")
            return

        if updated is None:
            logger.info(f"更新チェックでフライトが見つからない: {tracking.identifier}")
            return

        # 取得中に停止・再登録されたものは反映しない
        if self._tracked.get(tracking.key) is not tracking:
            logger.debug(f"取得中に追跡が変更されたためスキップ: {tracking.identifier}")
            return

        current = updated.flight_status
        notify = should_send_update(current, tracking.last_status)
        if notify:
            tracking.last_status = current
            tracking.update_count += 1
            if current == LANDED:
                tracking.has_landed = True

        tracking.last_updated = self._clock()
        tracking.flight = updated

        if notify:
            await self._send_flight_update(tracking, updated, current)

    async def _send_flight_update(self, tracking: TrackedFlight, flight: NormalizedFlight, update_type: str):
        """
        ステータス変化を通知する。
        投稿に失敗しても追跡状態は巻き戻さない。
        """
        try:
            message = get_update_message(flight, update_type, tracking.identifier)
            blocks = [section(message)] + format_flight_message(flight, tracking.identifier)

            usage = await self._usage.get_usage_status()
            if usage.should_warn:
                blocks.append(quota_warning_block(usage))

            await self._poster.post_message(tracking.channel_id, message, blocks)
            self._stats["updates_sent"] += 1
            logger.info(
                f"更新通知送信: {tracking.identifier} → {update_type} "
                f"(チャンネル {tracking.channel_id})"
            )
        except Exception as e:
            self._stats["delivery_errors"] += 1
            logger.error(f"更新通知の送信失敗 (チャンネル {tracking.channel_id}): {e}")

    # ─────────────────────────────────
    # 定期実行ループ
    # ─────────────────────────────────
    async def run(self, shutdown_event: asyncio.Event):
        """shutdown_event がセットされるまで poll_interval ごとにチェックする。"""
        logger.info(f"定期チェック開始 (間隔 {self._interval}秒)")
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if shutdown_event.is_set():
                break

            try:
                await self.check_flight_updates()
            except Exception as e:
                logger.error(f"定期チェックで予期しないエラー: {e}", exc_info=True)

            s = self._stats
            logger.info(
                f"━━ 定期チェック #{s['cycles']} ━━ "
                f"追跡中={len(self._tracked)} | チェック={s['checked']} | "
                f"通知={s['updates_sent']} | 取得エラー={s['fetch_errors']} | "
                f"送信エラー={s['delivery_errors']} | 終了={s['pruned']}"
            )
        logger.info("定期チェック停止")

"""
追跡レジストリと定期チェックのテスト

検証項目:
  1. 追跡の開始・停止（キーは 識別子 × チャンネル）
  2. ステータス変化の通知（通知対象の遷移のみ、1回だけ）
  3. チェック対象の選定（経過時間・着陸済みの整理・critical時の絞り込み）
  4. 月間上限到達時の全スキップ
  5. 取得・送信エラーの隔離
"""
import asyncio
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from datetime import datetime, timedelta, timezone

from errors import DeliveryError, ErrorKind, FlightLookupError
from flight_monitor import FlightMonitor, should_send_update
from models import AirlineInfo, AirportInfo, FlightCode, NormalizedFlight, UsageState
from quota_tracker import ApiUsageTracker
from repository import MemoryUsageRepository

passed = 0
failed = 0


def run_test(name, func):
    global passed, failed
    try:
        func()
        passed += 1
        print(f"  ✅ {name}")
    except AssertionError as e:
        failed += 1
        print(f"  ❌ {name}: {e}")
    except Exception as e:
        failed += 1
        print(f"  ❌ {name}: 例外発生 {e.__class__.__name__}: {e}")


INTERVAL = 300
START = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeFlightClient:
    """識別子ごとに返す値（NormalizedFlight / None / 例外）を設定できる"""
    def __init__(self, results=None, on_fetch=None):
        self.results = results or {}
        self.on_fetch = on_fetch
        self.calls = []

    async def get_flight_data(self, identifier):
        self.calls.append(identifier)
        if self.on_fetch:
            self.on_fetch(identifier)
        result = self.results.get(identifier)
        if isinstance(result, Exception):
            raise result
        return result


class FakePoster:
    def __init__(self, fail=False, fail_channels=()):
        self.fail = fail
        self.fail_channels = set(fail_channels)
        self.posts = []

    async def post_message(self, channel_id, text, blocks=None):
        if self.fail or channel_id in self.fail_channels:
            raise DeliveryError(channel_id, "channel_not_found")
        self.posts.append((channel_id, text, blocks))


def flight(ident="UA400", status="scheduled") -> NormalizedFlight:
    return NormalizedFlight(
        flight=FlightCode(iata=ident, number=ident),
        flight_status=status,
        airline=AirlineInfo(name="United Airlines"),
        departure=AirportInfo(airport="San Francisco International", iata="SFO"),
        arrival=AirportInfo(airport="New York JFK", iata="JFK"),
    )


async def make_monitor(client, poster=None, count=0, limit=1000):
    """使用量 count/limit で読み込み済みのトラッカーを持つ FlightMonitor"""
    store = MemoryUsageRepository(UsageState(month=9, year=2026, count=count))
    tracker = ApiUsageTracker(store, monthly_limit=limit, clock=lambda: datetime(2026, 10, 19, 12, 0))
    await tracker.load()
    clock = Clock(START)
    monitor = FlightMonitor(
        client, tracker, poster or FakePoster(), poll_interval=INTERVAL, clock=clock,
    )
    return monitor, clock


# ═══════════════════════════════════════
# 1. 追跡の開始・停止
# ═══════════════════════════════════════
def test_start_and_stop():
    async def scenario():
        monitor, _ = await make_monitor(FakeFlightClient())
        monitor.start_tracking(flight(), "C1", "U1", "UA400")
        assert monitor.is_tracking("UA400", "C1")
        assert monitor.get_tracked_flights_count() == 1
        assert monitor.stop_tracking("UA400", "C1") is True
        assert monitor.stop_tracking("UA400", "C1") is False
        assert monitor.get_tracked_flights_count() == 0

    asyncio.run(scenario())

def test_channels_are_independent():
    """同じ便でもチャンネルが違えば別の追跡"""
    async def scenario():
        monitor, _ = await make_monitor(FakeFlightClient())
        monitor.start_tracking(flight(), "C1", "U1", "UA400")
        monitor.start_tracking(flight(), "C2", "U2", "UA400")
        assert monitor.get_tracked_flights_count() == 2
        monitor.stop_tracking("UA400", "C1")
        assert monitor.is_tracking("UA400", "C2")

    asyncio.run(scenario())

def test_retrack_resets_state():
    async def scenario():
        monitor, _ = await make_monitor(FakeFlightClient())
        first = monitor.start_tracking(flight(status="active"), "C1", "U1", "UA400")
        first.update_count = 5
        second = monitor.start_tracking(flight(status="landed"), "C1", "U9", "UA400")
        assert monitor.get_tracked_flights_count() == 1
        assert second.update_count == 0
        assert second.last_status == "landed"
        assert second.has_landed is True
        assert second.user_id == "U9"

    asyncio.run(scenario())


# ═══════════════════════════════════════
# 2. ステータス変化の通知
# ═══════════════════════════════════════
def test_should_send_update():
    assert should_send_update("active", "scheduled")
    assert not should_send_update("active", "active")
    assert not should_send_update("unknown", "active")
    assert not should_send_update("en route", "scheduled")

def test_transition_sends_once():
    client = FakeFlightClient({"UA400": flight(status="active")})
    poster = FakePoster()

    async def scenario():
        monitor, clock = await make_monitor(client, poster)
        tracking = monitor.start_tracking(flight(), "C1", "U1", "UA400")

        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert len(poster.posts) == 1
        channel, text, blocks = poster.posts[0]
        assert channel == "C1"
        assert text == "*Flight UA400* is now airborne!"
        assert blocks[0]["text"]["text"] == text
        assert "Flight UA400" in blocks[1]["text"]["text"]
        assert tracking.last_status == "active"
        assert tracking.update_count == 1
        assert tracking.last_updated == clock.now

        # 同じステータスのままなら通知しない
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert len(poster.posts) == 1
        assert tracking.update_count == 1
        assert monitor.stats["updates_sent"] == 1

    asyncio.run(scenario())

def test_non_trigger_status_is_silent():
    """unknown への変化は通知せず、基準ステータスも変えない"""
    client = FakeFlightClient({"UA400": flight(status="unknown")})
    poster = FakePoster()

    async def scenario():
        monitor, clock = await make_monitor(client, poster)
        tracking = monitor.start_tracking(flight(status="active"), "C1", "U1", "UA400")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert poster.posts == []
        assert tracking.last_status == "active"
        assert tracking.flight.flight_status == "unknown"
        assert tracking.last_updated == clock.now

    asyncio.run(scenario())

def test_landed_marks_has_landed():
    client = FakeFlightClient({"UA400": flight(status="landed")})

    async def scenario():
        monitor, clock = await make_monitor(client)
        tracking = monitor.start_tracking(flight(status="active"), "C1", "U1", "UA400")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert tracking.has_landed is True
        assert monitor.is_tracking("UA400", "C1")

    asyncio.run(scenario())

def test_has_landed_is_sticky():
    """着陸後に別のステータスへ変わっても has_landed は戻らない"""
    client = FakeFlightClient({"UA400": flight(status="landed")})

    async def scenario():
        monitor, clock = await make_monitor(client)
        tracking = monitor.start_tracking(flight(status="active"), "C1", "U1", "UA400")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert tracking.has_landed is True

        client.results["UA400"] = flight(status="diverted")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert tracking.last_status == "diverted"
        assert tracking.update_count == 2
        assert tracking.has_landed is True

    asyncio.run(scenario())

def test_warning_block_appended_last():
    client = FakeFlightClient({"UA400": flight(status="active")})
    poster = FakePoster()

    async def scenario():
        monitor, clock = await make_monitor(client, poster, count=85, limit=100)
        monitor.start_tracking(flight(), "C1", "U1", "UA400")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        blocks = poster.posts[0][2]
        assert "API Usage warning" in blocks[-1]["text"]["text"]

    asyncio.run(scenario())


# ═══════════════════════════════════════
# 3. チェック対象の選定
# ═══════════════════════════════════════
def test_recent_entries_not_fetched():
    client = FakeFlightClient({"UA400": flight(status="active")})

    async def scenario():
        monitor, clock = await make_monitor(client)
        monitor.start_tracking(flight(), "C1", "U1", "UA400")
        clock.advance(INTERVAL)
        await monitor.check_flight_updates()
        assert client.calls == []

    asyncio.run(scenario())

def test_prune_boundary():
    """着陸済みで通知11回は削除、10回は残す"""
    async def scenario():
        monitor, _ = await make_monitor(FakeFlightClient())
        drained = monitor.start_tracking(flight("UA1", "landed"), "C1", "U1", "UA1")
        drained.update_count = 11
        kept = monitor.start_tracking(flight("UA2", "landed"), "C1", "U1", "UA2")
        kept.update_count = 10
        not_landed = monitor.start_tracking(flight("UA3", "active"), "C1", "U1", "UA3")
        not_landed.update_count = 50

        await monitor.check_flight_updates()
        assert not monitor.is_tracking("UA1", "C1")
        assert monitor.is_tracking("UA2", "C1")
        assert monitor.is_tracking("UA3", "C1")
        assert monitor.stats["pruned"] == 1

    asyncio.run(scenario())

def test_critical_usage_limits_checks():
    """使用量 critical では直近に更新された2件のみ取得する"""
    idents = [f"UA40{i}" for i in range(1, 6)]
    client = FakeFlightClient({i: flight(i, "scheduled") for i in idents})

    async def scenario():
        monitor, clock = await make_monitor(client, count=96, limit=100)
        started = {}
        for ident in idents:
            tracking = monitor.start_tracking(flight(ident), "C1", "U1", ident)
            started[ident] = tracking.last_updated
            clock.advance(10)

        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert sorted(client.calls) == ["UA404", "UA405"], client.calls
        for tracking in monitor.tracked_flights():
            if tracking.identifier in ("UA404", "UA405"):
                assert tracking.last_updated == clock.now
            else:
                assert tracking.last_updated == started[tracking.identifier]

    asyncio.run(scenario())

def test_healthy_usage_checks_all():
    idents = [f"UA40{i}" for i in range(1, 6)]
    client = FakeFlightClient({i: flight(i) for i in idents})

    async def scenario():
        monitor, clock = await make_monitor(client, count=50, limit=100)
        for ident in idents:
            monitor.start_tracking(flight(ident), "C1", "U1", ident)
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert sorted(client.calls) == idents

    asyncio.run(scenario())


# ═══════════════════════════════════════
# 4. 月間上限到達
# ═══════════════════════════════════════
def test_exhausted_quota_skips_everything():
    client = FakeFlightClient({"UA400": flight(status="active")})

    async def scenario():
        monitor, clock = await make_monitor(client, count=100, limit=100)
        monitor.start_tracking(flight(), "C1", "U1", "UA400")
        drained = monitor.start_tracking(flight("UA1", "landed"), "C1", "U1", "UA1")
        drained.update_count = 11
        clock.advance(INTERVAL + 1)

        await monitor.check_flight_updates()
        assert client.calls == []
        assert monitor.is_tracking("UA1", "C1")
        assert monitor.stats["skipped_cycles"] == 1

    asyncio.run(scenario())


# ═══════════════════════════════════════
# 5. エラーの隔離
# ═══════════════════════════════════════
def test_fetch_error_isolated():
    client = FakeFlightClient({
        "UA400": FlightLookupError(ErrorKind.TRANSPORT_ERROR, "HTTP 503"),
        "DL1": flight("DL1", "active"),
    })
    poster = FakePoster()

    async def scenario():
        monitor, clock = await make_monitor(client, poster)
        failing = monitor.start_tracking(flight(), "C1", "U1", "UA400")
        monitor.start_tracking(flight("DL1"), "C1", "U1", "DL1")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert len(poster.posts) == 1
        assert "DL1" in poster.posts[0][1]
        assert failing.last_status == "scheduled"
        assert failing.last_updated == START
        assert monitor.stats["fetch_errors"] == 1

    asyncio.run(scenario())

def test_delivery_failure_keeps_state():
    """投稿に失敗しても遷移は反映済みのまま（再通知しない）"""
    client = FakeFlightClient({"UA400": flight(status="active")})
    poster = FakePoster(fail=True)

    async def scenario():
        monitor, clock = await make_monitor(client, poster)
        tracking = monitor.start_tracking(flight(), "C1", "U1", "UA400")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert tracking.last_status == "active"
        assert tracking.update_count == 1
        assert monitor.stats["delivery_errors"] == 1
        assert monitor.stats["updates_sent"] == 0

    asyncio.run(scenario())

def test_delivery_failure_isolated():
    """1チャンネルへの投稿失敗は他チャンネルへの通知を止めない"""
    client = FakeFlightClient({"UA400": flight(status="active")})
    poster = FakePoster(fail_channels=["C1"])

    async def scenario():
        monitor, clock = await make_monitor(client, poster)
        failing = monitor.start_tracking(flight(), "C1", "U1", "UA400")
        other = monitor.start_tracking(flight(), "C2", "U2", "UA400")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert [p[0] for p in poster.posts] == ["C2"]
        assert failing.last_status == "active"
        assert other.last_status == "active"
        assert monitor.stats["delivery_errors"] == 1
        assert monitor.stats["updates_sent"] == 1

    asyncio.run(scenario())

def test_not_found_leaves_entry():
    client = FakeFlightClient({"UA400": None})

    async def scenario():
        monitor, clock = await make_monitor(client)
        original = flight()
        tracking = monitor.start_tracking(original, "C1", "U1", "UA400")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert client.calls == ["UA400"]
        assert tracking.last_updated == START
        assert tracking.flight is original
        assert monitor.is_tracking("UA400", "C1")

    asyncio.run(scenario())

def test_retracked_during_fetch_is_skipped():
    """取得中に再登録されたフライトには古い結果を反映しない"""
    poster = FakePoster()
    holder = {}

    def retrack(identifier):
        holder["new"] = holder["monitor"].start_tracking(flight(status="scheduled"), "C1", "U2", identifier)

    client = FakeFlightClient({"UA400": flight(status="active")}, on_fetch=retrack)

    async def scenario():
        monitor, clock = await make_monitor(client, poster)
        holder["monitor"] = monitor
        monitor.start_tracking(flight(), "C1", "U1", "UA400")
        clock.advance(INTERVAL + 1)
        await monitor.check_flight_updates()
        assert poster.posts == []
        assert holder["new"].update_count == 0
        assert holder["new"].last_status == "scheduled"

    asyncio.run(scenario())


if __name__ == '__main__':
    sections = [
        ("追跡の開始・停止", [
            ("開始と停止", test_start_and_stop),
            ("チャンネル別", test_channels_are_independent),
            ("再登録", test_retrack_resets_state),
        ]),
        ("ステータス変化の通知", [
            ("通知判定", test_should_send_update),
            ("1回だけ通知", test_transition_sends_once),
            ("通知対象外", test_non_trigger_status_is_silent),
            ("着陸", test_landed_marks_has_landed),
            ("着陸フラグは戻らない", test_has_landed_is_sticky),
            ("使用量警告", test_warning_block_appended_last),
        ]),
        ("チェック対象の選定", [
            ("間隔未満", test_recent_entries_not_fetched),
            ("着陸済みの整理", test_prune_boundary),
            ("critical時の絞り込み", test_critical_usage_limits_checks),
            ("通常時は全件", test_healthy_usage_checks_all),
        ]),
        ("月間上限到達", [
            ("全スキップ", test_exhausted_quota_skips_everything),
        ]),
        ("エラーの隔離", [
            ("取得エラー", test_fetch_error_isolated),
            ("送信エラー", test_delivery_failure_keeps_state),
            ("送信エラーの隔離", test_delivery_failure_isolated),
            ("該当なし", test_not_found_leaves_entry),
            ("取得中の再登録", test_retracked_during_fetch_is_skipped),
        ]),
    ]

    for section_name, tests in sections:
        print(f"\n[{section_name}]")
        for test_name, test_func in tests:
            run_test(test_name, test_func)

    print(f"\n{'='*50}")
    print(f"結果: {passed} 件通過, {failed} 件失敗 / 全 {passed+failed} 件")
    if failed > 0:
        print("❌ テスト失敗あり")
        sys.exit(1)
    else:
        print("✅ 全テスト通過")

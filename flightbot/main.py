"""
FlightBot - メインサーバー

責務:
  - Slackスラッシュコマンドの受付（aiohttp.web）と即時ACK + response_url への応答
  - 追跡中フライトの定期チェックループの起動
  - API使用量ストア（PostgreSQL、不達時はメモリ）の準備
  - 稼働状況の公開（/ と /health）
  - グレースフルシャットダウン

コマンド:
  /flightbot <便名|機体記号>   フライト検索 + 追跡開始
  /flightbot-status            API使用量と追跡件数
"""
import asyncio
import logging
import signal
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Set
from urllib.parse import parse_qs

import aiohttp
import asyncpg
from aiohttp import web

from bot_config import (
    API_MONTHLY_LIMIT,
    PORT,
    POLL_INTERVAL_SEC,
    REQUEST_TIMEOUT,
    SLACK_SIGNING_SECRET,
    create_pool,
)
from database import init_db
from flight_client import AeroApiClient, FlightDataClient
from flight_monitor import FlightMonitor
from handlers import (
    CommandResponse,
    generic_error_response,
    handle_flightbot_command,
    handle_status_command,
)
from quota_tracker import ApiUsageTracker
from repository import MemoryUsageRepository, UsageRepository
from slack_client import SlackPoster, verify_slack_signature

# ─────────────────────────────────
# ロガー
# ─────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("flightbot")

LOOKUP_COMMAND = "/flightbot"
STATUS_COMMAND = "/flightbot-status"


# ═══════════════════════════════════════
# サーバー本体
# ═══════════════════════════════════════

class FlightBot:
    def __init__(
        self,
        port: int = PORT,
        poll_interval: int = POLL_INTERVAL_SEC,
        monthly_limit: int = API_MONTHLY_LIMIT,
        signing_secret: str = SLACK_SIGNING_SECRET,
        insecure: bool = False,
    ):
        self._port = port
        self._poll_interval = poll_interval
        self._monthly_limit = monthly_limit
        self._signing_secret = signing_secret
        # 署名検証を省略するのは明示的に指定された場合のみ（ローカル開発用）
        self._insecure = insecure
        self._shutdown_event = asyncio.Event()
        self._background: Set[asyncio.Task] = set()
        self._start_time = time.monotonic()
        self._tracker: Optional[ApiUsageTracker] = None
        self._flight_client: Optional[FlightDataClient] = None
        self._poster: Optional[SlackPoster] = None
        self._monitor: Optional[FlightMonitor] = None

    def wire(self, tracker, flight_client, poster, monitor):
        """依存コンポーネントを組み込む（テストではフェイクを渡す）。"""
        self._tracker = tracker
        self._flight_client = flight_client
        self._poster = poster
        self._monitor = monitor

    # ─────────────────────────────────
    # API使用量ストア
    # ─────────────────────────────────
    async def _open_usage_store(self):
        """
        PostgreSQLに接続できればそこへ保存する。
        接続できなければメモリのみで動かす（追跡は止めない）。
        """
        try:
            pool = await create_pool()
            await init_db(pool)
        except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
            logger.warning(
                f"DB接続失敗のためAPI使用量はメモリのみで保持します "
                f"({e.__class__.__name__}: {e})"
            )
            return MemoryUsageRepository(), None
        return UsageRepository(pool), pool

    # ─────────────────────────────────
    # HTTPハンドラ
    # ─────────────────────────────────
    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/slack/commands", self._handle_command)
        app.router.add_get("/", self._handle_root)
        app.router.add_get("/health", self._handle_health)
        return app

    async def _handle_command(self, request: web.Request) -> web.Response:
        """
        Slackへは3秒以内にACKを返し、処理結果は response_url で送る。
        署名シークレット未設定時は --insecure 指定がない限り全て拒否する。
        """
        body = await request.read()

        if not self._insecure and not verify_slack_signature(
            self._signing_secret,
            request.headers.get("X-Slack-Request-Timestamp", ""),
            body,
            request.headers.get("X-Slack-Signature", ""),
        ):
            logger.warning("Slack署名の検証に失敗したリクエストを拒否")
            return web.Response(status=401, text="invalid signature")

        text = body.decode("utf-8", errors="replace")
        form = {k: v[0] for k, v in parse_qs(text).items()}
        task = asyncio.create_task(self._process_command(
            command=form.get("command", ""),
            text=form.get("text", ""),
            channel_id=form.get("channel_id", ""),
            user_id=form.get("user_id", ""),
            response_url=form.get("response_url", ""),
        ))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return web.Response(status=200)

    async def _process_command(
        self,
        command: str,
        text: str,
        channel_id: str,
        user_id: str,
        response_url: str,
    ) -> CommandResponse:
        t0 = time.monotonic()
        identifier = text.strip()

        if command == STATUS_COMMAND:
            result = await handle_status_command(self._monitor, self._tracker)
        elif command == LOOKUP_COMMAND:
            try:
                result = await handle_flightbot_command(
                    identifier, channel_id, user_id,
                    self._flight_client, self._monitor, self._tracker,
                )
            except Exception as e:
                logger.error(f"フライト検索エラー ({identifier}): {e}", exc_info=True)
                result = generic_error_response(identifier)
        else:
            result = CommandResponse(text=f"Unknown command: {command}")

        if response_url:
            try:
                await self._poster.respond(response_url, result.to_payload())
            except Exception as e:
                logger.error(f"コマンド応答の送信失敗 ({command}): {e}")

        logger.info(
            f"{command} {identifier} → {result.response_type} "
            f"({(time.monotonic() - t0) * 1000:.0f}ms)"
        )
        return result

    async def _handle_root(self, request: web.Request) -> web.Response:
        usage = await self._tracker.get_usage_status()
        return web.json_response({
            "status": "FlightBot is running!",
            "trackedFlights": self._monitor.get_tracked_flights_count(),
            "uptime": round(time.monotonic() - self._start_time, 1),
            "apiUsage": {
                "used": usage.used,
                "remaining": usage.remaining,
                "limit": usage.limit,
                "percentage": usage.percentage,
                "status": usage.status,
                "resetsOn": usage.resets_on,
            },
            "polling": self._monitor.stats,
        })

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    # ─────────────────────────────────
    # エントリポイント
    # ─────────────────────────────────
    async def run(self):
        """サーバーのメインエントリポイント。"""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                pass

        if self._insecure:
            logger.warning("--insecure 指定: Slack署名を検証せずにコマンドを受け付けます")
        elif not self._signing_secret:
            logger.error("SLACK_SIGNING_SECRET 未設定のため、全てのコマンドを拒否します")

        store, pool = await self._open_usage_store()
        try:
            tracker = ApiUsageTracker(store, monthly_limit=self._monthly_limit)
            await tracker.load()

            timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                flight_client = FlightDataClient(AeroApiClient(session), tracker)
                poster = SlackPoster(session)
                monitor = FlightMonitor(
                    flight_client, tracker, poster, poll_interval=self._poll_interval,
                )
                self.wire(tracker, flight_client, poster, monitor)

                runner = web.AppRunner(self.build_app())
                await runner.setup()
                try:
                    site = web.TCPSite(runner, "0.0.0.0", self._port)
                    await site.start()
                    logger.info(
                        f"FlightBot 起動 | ポート={self._port} | "
                        f"チェック間隔={self._poll_interval}秒 | "
                        f"月間上限={self._monthly_limit} | "
                        f"署名検証={'無効' if self._insecure else '有効'}"
                    )

                    poller = asyncio.create_task(monitor.run(self._shutdown_event))
                    await self._shutdown_event.wait()
                    await poller
                finally:
                    await runner.cleanup()
                    if self._background:
                        await asyncio.gather(*self._background, return_exceptions=True)

            logger.info(f"FlightBot 停止 | 追跡中だったフライト={monitor.get_tracked_flights_count()}件")
        finally:
            if pool is not None:
                await pool.close()

    def _handle_shutdown(self):
        """シグナルハンドラ: グレースフルシャットダウンを要請する。"""
        logger.warning("停止シグナル受信。実行中の処理を完了して終了します...")
        self._shutdown_event.set()


# ─────────────────────────────────
# CLI
# ─────────────────────────────────
def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="FlightBot Slack フライト追跡ボット")
    parser.add_argument(
        "--port",
        type=int,
        default=PORT,
        help=f"HTTP待ち受けポート (デフォルト: {PORT})",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=POLL_INTERVAL_SEC,
        help=f"定期チェック間隔・秒 (デフォルト: {POLL_INTERVAL_SEC})",
    )
    parser.add_argument(
        "--monthly-limit",
        type=int,
        default=API_MONTHLY_LIMIT,
        help=f"AeroAPI 月間呼び出し上限 (デフォルト: {API_MONTHLY_LIMIT})",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="DEBUGログを出力する",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Slack署名を検証しない（ローカル開発用）",
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        import uvloop
        uvloop.install()
        logger.info("uvloop 有効化")
    except ImportError:
        pass

    bot = FlightBot(
        port=args.port,
        poll_interval=args.interval,
        monthly_limit=args.monthly_limit,
        insecure=args.insecure,
    )
    asyncio.run(bot.run())


if __name__ == "__main__":
    main()

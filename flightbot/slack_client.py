"""
FlightBot - Slack通信

責務:
  - chat.postMessage によるチャンネルへの投稿
  - スラッシュコマンドの response_url への応答
  - リクエスト署名（X-Slack-Signature）の検証
"""
import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from bot_config import REQUEST_TIMEOUT, SLACK_API_URL, SLACK_BOT_TOKEN
from errors import DeliveryError

logger = logging.getLogger(__name__)

# 署名タイムスタンプの許容ずれ（リプレイ攻撃対策）
SIGNATURE_MAX_AGE_SEC = 60 * 5


def verify_slack_signature(
    signing_secret: str,
    timestamp: str,
    body: bytes,
    signature: str,
    now: Optional[float] = None,
) -> bool:
    """v0 形式の HMAC-SHA256 署名を検証する。"""
    if not signing_secret or not timestamp or not signature:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > SIGNATURE_MAX_AGE_SEC:
        return False

    basestring = b"v0:" + timestamp.encode() + b":" + body
    expected = "v0=" + hmac.new(
        signing_secret.encode(), basestring, hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


class SlackPoster:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str = SLACK_BOT_TOKEN,
        api_url: str = SLACK_API_URL,
        timeout: int = REQUEST_TIMEOUT,
    ):
        self._session = session
        self._token = token
        self._api_url = api_url.rstrip('/')
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def post_message(self, channel_id: str, text: str, blocks: List[Dict[str, Any]]):
        """
        チャンネルへ投稿する。
        Slack は失敗時も HTTP 200 + ok=false を返すため両方を確認する。
        """
        payload = {"channel": channel_id, "text": text, "blocks": blocks}
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json; charset=utf-8",
        }
        try:
            async with self._session.post(
                f"{self._api_url}/chat.postMessage",
                json=payload, headers=headers, timeout=self._timeout,
            ) as resp:
                if resp.status >= 300:
                    raise DeliveryError(channel_id, f"HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError(channel_id, f"{e.__class__.__name__}: {e}") from e

        if not isinstance(data, dict) or not data.get("ok"):
            error = data.get("error") if isinstance(data, dict) else "unexpected payload"
            raise DeliveryError(channel_id, str(error))

    async def respond(self, response_url: str, payload: Dict[str, Any]):
        """スラッシュコマンドの遅延応答"""
        try:
            async with self._session.post(
                response_url, json=payload, timeout=self._timeout,
            ) as resp:
                if resp.status >= 300:
                    raise DeliveryError("response_url", f"HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError("response_url", f"{e.__class__.__name__}: {e}") from e

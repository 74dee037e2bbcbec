"""
FlightBot - リポジトリ層

責務:
  - API使用量（UsageState）の丸ごと読み込み・丸ごと保存
  - UPSERT（1行のみのテーブルへの挿入/更新）

設計方針:
  - asyncpg コネクションプールから接続を取得して操作する
  - 呼び出し側は load() / save() しか知らない。
    テストやDB不達時は同じインターフェースの MemoryUsageRepository を使う
"""
import json
from typing import Optional

import asyncpg

from models import UsageState


class UsageRepository:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    # ─────────────────────────────────
    # 読み込み
    # ─────────────────────────────────
    async def load(self) -> Optional[UsageState]:
        """保存済みの使用量を返す。未保存ならNone。"""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                SELECT month, year, count, requests, last_reset
                FROM api_usage
                WHERE id = 1
                '''
            )
        if row is None:
            return None

        requests = row["requests"]
        if isinstance(requests, str):
            requests = json.loads(requests)
        return UsageState.from_dict({
            "month": row["month"],
            "year": row["year"],
            "count": row["count"],
            "requests": requests,
            "lastReset": row["last_reset"],
        })

    # ─────────────────────────────────
    # UPSERT
    # ─────────────────────────────────
    async def save(self, state: UsageState):
        """使用量を丸ごと上書き保存する。"""
        data = state.to_dict()
        async with self._pool.acquire() as conn:
            await conn.execute(
                '''
                INSERT INTO api_usage (id, month, year, count, requests, last_reset)
                VALUES (1, $1, $2, $3, $4::jsonb, $5)
                ON CONFLICT(id) DO UPDATE SET
                    month      = EXCLUDED.month,
                    year       = EXCLUDED.year,
                    count      = EXCLUDED.count,
                    requests   = EXCLUDED.requests,
                    last_reset = EXCLUDED.last_reset,
                    updated_at = NOW()
                ''',
                data["month"],
                data["year"],
                data["count"],
                json.dumps(data["requests"]),
                data["lastReset"],
            )


class MemoryUsageRepository:
    """プロセス内にだけ保持する使用量ストア"""

    def __init__(self, state: Optional[UsageState] = None):
        self._data = state.to_dict() if state else None
        self.saves = 0

    async def load(self) -> Optional[UsageState]:
        if self._data is None:
            return None
        return UsageState.from_dict(self._data)

    async def save(self, state: UsageState):
        # 呼び出し側の以後の変更が混ざらないよう辞書化して保持する
        self._data = json.loads(json.dumps(state.to_dict()))
        self.saves += 1

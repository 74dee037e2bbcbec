"""
FlightBot - データベース初期化・テーブル定義

責務:
  - API使用量テーブルの生成
"""
import asyncpg


async def init_db(pool: asyncpg.Pool):
    """データベースのテーブルを初期化する。"""
    async with pool.acquire() as conn:
        async with conn.transaction():
            # ══════════════════════════════════════
            # 1. API使用量テーブル
            #    月間カウンタは常に1行（id = 1）だけを保持する。
            #    直近の呼び出しログは診断用のため JSONB にまとめて格納
            # ══════════════════════════════════════
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS api_usage (
                    id          SMALLINT PRIMARY KEY DEFAULT 1,
                    month       SMALLINT NOT NULL,
                    year        INTEGER  NOT NULL,
                    count       INTEGER  NOT NULL DEFAULT 0,
                    requests    JSONB    NOT NULL DEFAULT '[]'::jsonb,
                    last_reset  TEXT,
                    updated_at  TIMESTAMPTZ DEFAULT NOW(),
                    CHECK (id = 1)
                )
            ''')

"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。

所有业务状态（用户、订单、会话、充值申请等）都以 JSON 值的形式
保存在 kv_store 表中，由 services/store.py 负责读写。
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/smmpanel.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式。"""
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS kv_store (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    store_key       VARCHAR(64)  NOT NULL UNIQUE,
    store_value     TEXT         NOT NULL,
    encrypted       INTEGER      DEFAULT 0,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_kv_store_key
    ON kv_store(store_key);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表和索引（幂等）。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)
        _migrate_schema(conn)
        conn.commit()
    finally:
        conn.close()


def _migrate_schema(conn: sqlite3.Connection) -> None:
    """为已有数据库添加新列（幂等操作）。"""
    try:
        conn.execute("SELECT encrypted FROM kv_store LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute("ALTER TABLE kv_store ADD COLUMN encrypted INTEGER DEFAULT 0")

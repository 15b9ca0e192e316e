"""
账本存储：基于 kv_store 表的键值持久化。

每个键保存一个可 JSON 序列化的值（外层包裹 version / timestamp / expires）。
encrypted=True 时使用 Fernet 对称加密（AES-128-CBC + HMAC-SHA256），
密钥由 JWT_SECRET 通过 PBKDF2 派生。这是真实的认证加密，用于防止直接查看
数据库文件时读到用户凭证和会话，但它不是访问控制手段：任何持有 JWT_SECRET
的进程都能解密。

读取时数据损坏、无法解密或无法解析，一律回退为调用方给出的默认值，
保证本地存储损坏时退化为"空"而不是让应用崩溃。
"""

import base64
import copy
import json
import logging
import os
import threading
import time
from datetime import datetime
from typing import Any, Callable

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from smmpanel.database import get_db

logger = logging.getLogger(__name__)

STORE_VERSION = "2.0"

# 进程内读-改-写互斥锁：同一进程内每次集合修改都是原子的
_lock = threading.RLock()

_fernet_cache: dict[str, Fernet] = {}


class StoreError(Exception):
    """写入存储失败（值无法 JSON 序列化）。"""
    pass


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥（按密钥缓存）。"""
    secret = os.getenv("JWT_SECRET", "change-me-to-a-random-secret-key")
    cached = _fernet_cache.get(secret)
    if cached:
        return cached
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"smmpanel-store-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    fernet = Fernet(key)
    _fernet_cache[secret] = fernet
    return fernet


def _encrypt(plaintext: str) -> str:
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def _decrypt(ciphertext: str) -> str:
    return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")


class LedgerStore:
    """键值存储：get / set / remove，支持加密与过期。"""

    # ── 原始读写 ──────────────────────────────────────────

    def _read_raw(self, key: str) -> str | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT store_value FROM kv_store WHERE store_key = ?", (key,)
            ).fetchone()
            return row["store_value"] if row else None
        finally:
            db.close()

    def _write_raw(self, key: str, text: str, encrypted: bool) -> None:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                """INSERT INTO kv_store (store_key, store_value, encrypted, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(store_key) DO UPDATE SET
                       store_value = excluded.store_value,
                       encrypted = excluded.encrypted,
                       updated_at = excluded.updated_at""",
                (key, text, 1 if encrypted else 0, now),
            )
            db.commit()
        finally:
            db.close()

    # ── 公共接口 ──────────────────────────────────────────

    def get(self, key: str, default: Any = None, encrypted: bool = False) -> Any:
        """
        读取键值。

        不存在、已过期、损坏或解密失败时返回 default。
        """
        serialized = self._read_raw(key)
        if serialized is None:
            return default

        try:
            if encrypted:
                serialized = _decrypt(serialized)
            data = json.loads(serialized)
            if not isinstance(data, dict) or "value" not in data:
                raise ValueError("missing value envelope")
        except (InvalidToken, ValueError, TypeError) as e:
            logger.warning("存储数据损坏，使用默认值: key=%s, error=%s", key, e)
            return default

        expires = data.get("expires")
        if expires and time.time() > expires:
            self.remove(key)
            return default

        return data["value"]

    def set(
        self,
        key: str,
        value: Any,
        encrypted: bool = False,
        expires_in: float | None = None,
    ) -> bool:
        """
        写入键值。

        Args:
            key: 存储键。
            value: 可 JSON 序列化的值。
            encrypted: 是否使用 Fernet 加密后存储。
            expires_in: 过期秒数，None 表示不过期。

        Raises:
            StoreError: 值无法 JSON 序列化。
        """
        now = time.time()
        envelope = {
            "value": value,
            "version": STORE_VERSION,
            "timestamp": now,
            "expires": now + expires_in if expires_in else None,
        }
        try:
            serialized = json.dumps(envelope, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StoreError(f"值无法序列化 (key={key}): {e}") from e

        if encrypted:
            serialized = _encrypt(serialized)

        self._write_raw(key, serialized, encrypted)
        return True

    def remove(self, key: str) -> None:
        db = get_db()
        try:
            db.execute("DELETE FROM kv_store WHERE store_key = ?", (key,))
            db.commit()
        finally:
            db.close()

    def has(self, key: str) -> bool:
        return self._read_raw(key) is not None

    def keys(self) -> list[str]:
        db = get_db()
        try:
            rows = db.execute(
                "SELECT store_key FROM kv_store ORDER BY store_key"
            ).fetchall()
            return [row["store_key"] for row in rows]
        finally:
            db.close()

    def clear(self) -> None:
        db = get_db()
        try:
            db.execute("DELETE FROM kv_store")
            db.commit()
        finally:
            db.close()

    def update(
        self,
        key: str,
        fn: Callable[[Any], Any],
        default: Any = None,
        encrypted: bool = False,
    ) -> Any:
        """
        在进程锁内完成一次"读取整个集合 → 原地修改 → 写回整个集合"。

        fn 接收当前值（不存在时为 default 的深拷贝）并原地修改它，
        其返回值作为 update 的返回值；写回的是被修改后的集合。
        """
        with _lock:
            current = self.get(key, copy.deepcopy(default), encrypted=encrypted)
            result = fn(current)
            self.set(key, current, encrypted=encrypted)
            return result

"""
SMM Panel 应用入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)

RECONCILE_INTERVAL_SECONDS = 60
SESSION_PURGE_INTERVAL_SECONDS = 3600


# ── 后台任务 ──────────────────────────────────────────────

async def _supplier_reconcile_task() -> None:
    """定期把待同步订单转发给供应商（每 60 秒）。

    单个订单按 [30, 60, 300, 900, 1800] 秒间隔重试，5 次失败后标记 failed。
    """
    from smmpanel.services.supplier_sync import SupplierSyncService

    svc = SupplierSyncService()
    while True:
        try:
            await asyncio.to_thread(svc.reconcile_pending)
            logger.debug("供应商对账完成")
        except Exception as e:
            logger.error("供应商对账任务异常: %s", e)
        await asyncio.sleep(RECONCILE_INTERVAL_SECONDS)


async def _session_purge_task() -> None:
    """定期清理已过期的会话记录（每小时）。"""
    from smmpanel.services.repository import LedgerRepository

    repo = LedgerRepository()
    while True:
        try:
            removed = await asyncio.to_thread(repo.purge_expired_sessions, time.time())
            if removed:
                logger.info("已清理过期会话: %d", removed)
        except Exception as e:
            logger.error("会话清理任务异常: %s", e)
        await asyncio.sleep(SESSION_PURGE_INTERVAL_SECONDS)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from smmpanel.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_supplier_reconcile_task()))
        tasks.append(asyncio.create_task(_session_purge_task()))
        logger.info("后台任务已启动：供应商对账、过期会话清理")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="SMM Panel", description="社交媒体营销服务转售平台", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from smmpanel.routes.auth import router as auth_router
from smmpanel.routes.catalog import router as catalog_router
from smmpanel.routes.orders import router as orders_router
from smmpanel.routes.payments import router as payments_router
from smmpanel.routes.tickets import router as tickets_router
from smmpanel.routes.admin import router as admin_router

app.include_router(auth_router)
app.include_router(catalog_router)
app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(tickets_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}

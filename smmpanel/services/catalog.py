"""
服务目录适配：把供应商原始目录转换为带零售价的 Service 列表，并做进程内缓存。

单条记录格式错误只丢弃该条（记录 WARNING），整个目录形状错误则抛出
BadCatalogShapeError，由路由返回可见错误，目录不会静默变空。
"""

import logging
import os
import threading
import time
from decimal import Decimal

from smmpanel.models.schemas import Service
from smmpanel.services.pricing import PricingError, convert_and_mark, to_decimal
from smmpanel.services.settings import get_pricing_settings
from smmpanel.services.supplier_client import SupplierClient

logger = logging.getLogger(__name__)

CATALOG_TTL_SECONDS = int(os.getenv("CATALOG_TTL_SECONDS", "300"))

# 按服务名关键字匹配描述，顺序即优先级
SERVICE_DESCRIPTIONS = (
    ("followers", "Real-looking followers with profile pictures. Safe for your account."),
    ("likes", "High-quality likes from active accounts. Fast delivery."),
    ("views", "Real video views with high retention. Helps with algorithm."),
    ("comments", "Custom or random comments from real-looking accounts."),
    ("subscribers", "Real YouTube subscribers. Helps with monetization."),
    ("watch time", "4000+ hours watch time for monetization requirements."),
    ("shares", "Social shares to boost your content reach."),
    ("saves", "Saves help boost your content in the algorithm."),
    ("story views", "Views on your Instagram/Facebook stories."),
    ("live views", "Viewers for your live streams."),
    ("members", "Group/channel members for Telegram, Discord, etc."),
)
DEFAULT_DESCRIPTION = "Quality service with fast delivery and refill guarantee."


class BadCatalogShapeError(Exception):
    """供应商目录不是列表。"""
    pass


def describe_service(name: str) -> str:
    lowered = name.lower()
    for keyword, description in SERVICE_DESCRIPTIONS:
        if keyword in lowered:
            return description
    return DEFAULT_DESCRIPTION


def _to_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _int_or_zero(value) -> int:
    try:
        return int(Decimal(str(value)))
    except (ArithmeticError, ValueError, TypeError):
        return 0


def _normalize_one(raw: dict, fx_rate, margin, min_floor: int) -> Service:
    """
    转换单条服务记录。

    Raises:
        ValueError: 记录缺少名称、ID 非数字或单价无效。
    """
    name = str(raw.get("name") or "").strip()
    if not name:
        raise ValueError("missing name")

    try:
        service_id = int(str(raw.get("service")).strip())
    except (TypeError, ValueError):
        raise ValueError(f"non-numeric service id {raw.get('service')!r}")

    original_rate = to_decimal(raw.get("rate"), "rate")
    if original_rate < 0:
        raise ValueError("negative rate")

    min_qty = max(min_floor, _int_or_zero(raw.get("min")))
    max_qty = max(min_qty, _int_or_zero(raw.get("max")))

    return Service(
        service=service_id,
        name=name,
        category=str(raw.get("category") or "").strip() or "Other",
        min=min_qty,
        max=max_qty,
        rate=convert_and_mark(original_rate, fx_rate, margin),
        original_rate=original_rate,
        refill=_to_bool(raw.get("refill", False)),
        description=describe_service(name),
    )


def normalize_services(raw, fx_rate, margin, min_floor: int = 250) -> list[Service]:
    """
    供应商原始目录 → Service 列表。

    Args:
        raw: 供应商 services 接口返回值。
        fx_rate: 美元兑本地货币汇率。
        margin: 利润倍数。
        min_floor: 平台最低下单量，服务 min 不低于此值。

    Raises:
        BadCatalogShapeError: raw 不是列表。
    """
    if not isinstance(raw, list):
        raise BadCatalogShapeError(
            f"expected a list of services, got {type(raw).__name__}"
        )

    services = []
    for record in raw:
        if not isinstance(record, dict):
            logger.warning("丢弃格式错误的服务记录: %r", record)
            continue
        try:
            services.append(_normalize_one(record, fx_rate, margin, min_floor))
        except (PricingError, ValueError) as e:
            logger.warning("丢弃无效服务记录 (service=%s): %s", record.get("service"), e)
    return services


class CatalogService:
    """带 TTL 缓存的服务目录。"""

    def __init__(self, client: SupplierClient | None = None, ttl: int = CATALOG_TTL_SECONDS):
        self.client = client or SupplierClient()
        self.ttl = ttl
        self._lock = threading.Lock()
        self._cache: list[Service] | None = None
        self._fetched_at = 0.0

    def get_services(self, force: bool = False) -> list[Service]:
        """
        返回当前目录，缓存过期或 force=True 时向供应商重新拉取。

        Raises:
            BadCatalogShapeError / SupplierClientError: 拉取失败，缓存保持不变。
        """
        with self._lock:
            if (
                not force
                and self._cache is not None
                and time.time() - self._fetched_at < self.ttl
            ):
                return list(self._cache)

        raw = self.client.services()
        settings = get_pricing_settings()
        services = normalize_services(
            raw,
            settings["fx_rate"],
            settings["profit_multiplier"],
            settings["min_order_floor"],
        )
        logger.info("服务目录已刷新: %d 条", len(services))

        with self._lock:
            self._cache = services
            self._fetched_at = time.time()
        return list(services)

    def get_service(self, service_id) -> Service | None:
        try:
            wanted = int(service_id)
        except (TypeError, ValueError):
            return None
        for service in self.get_services():
            if service.service == wanted:
                return service
        return None

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None
            self._fetched_at = 0.0


_catalog: CatalogService | None = None


def get_catalog() -> CatalogService:
    """进程级共享目录实例。"""
    global _catalog
    if _catalog is None:
        _catalog = CatalogService()
    return _catalog

"""
服务目录路由：GET /v1/services

供应商目录格式错误或无法访问时返回 502，目录不会静默显示为空。
"""

import logging

from fastapi import APIRouter, Query

from smmpanel.routes.responses import error_response
from smmpanel.services.catalog import BadCatalogShapeError, get_catalog
from smmpanel.services.pricing import format_price
from smmpanel.services.supplier_client import SupplierClientError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/v1/services")
async def list_services(
    category: str | None = Query(None),
    q: str | None = Query(None, description="按名称或描述搜索"),
):
    try:
        services = get_catalog().get_services()
    except BadCatalogShapeError as e:
        logger.error("供应商目录格式错误: %s", e)
        return error_response("Supplier catalog is malformed", "supplier_error")
    except SupplierClientError as e:
        logger.warning("获取供应商目录失败: %s", e)
        return error_response("Supplier catalog is unavailable", "supplier_error")

    if category:
        services = [s for s in services if s.category.lower() == category.lower()]
    if q:
        needle = q.lower()
        services = [
            s for s in services
            if needle in s.name.lower() or needle in s.description.lower()
        ]

    items = []
    for service in services:
        item = service.to_dict()
        item["display_rate"] = format_price(service.rate)
        items.append(item)

    categories = sorted({s["category"] for s in items})
    return {"code": 1, "count": len(items), "categories": categories, "services": items}

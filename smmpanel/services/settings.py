"""
运行时定价配置：汇率、利润倍数、最低下单量。

环境变量提供默认值，管理员修改后的值保存在账本存储的 settings 键下，
读取时覆盖默认值。
"""

import logging
import os
from decimal import Decimal

from dotenv import load_dotenv

from smmpanel.services.pricing import PricingError, to_decimal
from smmpanel.services.repository import LedgerRepository

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_FX_RATE = os.getenv("FX_RATE", "56")
DEFAULT_PROFIT_MULTIPLIER = os.getenv("PROFIT_MULTIPLIER", "2.5")
DEFAULT_MIN_ORDER_FLOOR = int(os.getenv("MIN_ORDER_FLOOR", "250"))


class SettingsError(Exception):
    """配置值无效。"""
    pass


def get_pricing_settings(repo: LedgerRepository | None = None) -> dict:
    """
    返回当前生效的定价配置。

    Returns:
        dict: {"fx_rate": Decimal, "profit_multiplier": Decimal, "min_order_floor": int}
    """
    repo = repo or LedgerRepository()
    stored = repo.get_settings()
    try:
        return {
            "fx_rate": to_decimal(stored.get("fx_rate", DEFAULT_FX_RATE), "fx_rate"),
            "profit_multiplier": to_decimal(
                stored.get("profit_multiplier", DEFAULT_PROFIT_MULTIPLIER),
                "profit_multiplier",
            ),
            "min_order_floor": int(stored.get("min_order_floor", DEFAULT_MIN_ORDER_FLOOR)),
        }
    except (PricingError, ValueError, TypeError) as e:
        logger.warning("存储的定价配置无效，使用默认值: %s", e)
        return {
            "fx_rate": Decimal(DEFAULT_FX_RATE),
            "profit_multiplier": Decimal(DEFAULT_PROFIT_MULTIPLIER),
            "min_order_floor": DEFAULT_MIN_ORDER_FLOOR,
        }


def update_pricing_settings(values: dict, repo: LedgerRepository | None = None) -> dict:
    """
    校验并保存定价配置，只更新传入的字段。

    Raises:
        SettingsError: 数值无效（非数字、非正数）。
    """
    repo = repo or LedgerRepository()
    updates = {}

    for name in ("fx_rate", "profit_multiplier"):
        if values.get(name) is None:
            continue
        try:
            value = to_decimal(values[name], name)
        except PricingError as e:
            raise SettingsError(str(e))
        if value <= 0:
            raise SettingsError(f"{name} must be greater than 0")
        updates[name] = str(value)

    if values.get("min_order_floor") is not None:
        try:
            floor = int(values["min_order_floor"])
        except (TypeError, ValueError):
            raise SettingsError("min_order_floor must be an integer")
        if floor < 1:
            raise SettingsError("min_order_floor must be at least 1")
        updates["min_order_floor"] = floor

    if not updates:
        raise SettingsError("no settings to update")

    repo.save_settings(updates)
    logger.info("定价配置已更新: %s", updates)
    return get_pricing_settings(repo)


def settings_to_dict(settings: dict) -> dict:
    """JSON 响应用：Decimal 转字符串。"""
    return {
        "fx_rate": str(settings["fx_rate"]),
        "profit_multiplier": str(settings["profit_multiplier"]),
        "min_order_floor": settings["min_order_floor"],
    }

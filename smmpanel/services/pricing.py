"""
定价工具：供应商美元单价 → 本地零售价、"友好价"取整、按数量计费。

纯函数，无状态。所有金额使用 Decimal 计算，保证同一输入多次调用结果一致
（目录刷新幂等依赖这一点）。

友好价取整是展示策略而非数学意义上的四舍五入：
小数部分吸附到 .00/.25/.49/.50/.75/.99 中最近的一个，距离相同时取较小锚点；
若最近锚点为 .00 且小数部分大于 .50，则进位到下一个整数。
"""

from decimal import ROUND_FLOOR, Decimal, InvalidOperation

CENT = Decimal("0.01")

# 升序排列，平局时取第一个达到最小距离的锚点
FLAT_POINTS = (
    Decimal("0.00"),
    Decimal("0.25"),
    Decimal("0.49"),
    Decimal("0.50"),
    Decimal("0.75"),
    Decimal("0.99"),
)

UNITS_PER_RATE = Decimal("1000")


class PricingError(ValueError):
    """定价输入无效（非数字、NaN、无穷大或负数）。"""
    pass


def to_decimal(value, name: str = "value") -> Decimal:
    """
    将数字或数字字符串转换为有限 Decimal。

    Raises:
        PricingError: 布尔值、非数字字符串、NaN 或无穷大。
    """
    if isinstance(value, bool):
        raise PricingError(f"{name} must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        # 经 str() 转换，避免二进制浮点的长尾
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise PricingError(f"{name} must be a number, got {value!r}")
    else:
        raise PricingError(f"{name} must be a number, got {type(value).__name__}")

    if not result.is_finite():
        raise PricingError(f"{name} must be a finite number")
    return result


def friendly_round(raw_price) -> Decimal:
    """将价格的小数部分吸附到最近的友好锚点，返回两位小数的 Decimal。"""
    price = to_decimal(raw_price, "raw_price")
    whole = price.to_integral_value(rounding=ROUND_FLOOR)
    fraction = price - whole

    closest = FLAT_POINTS[0]
    min_diff = abs(fraction - closest)
    for point in FLAT_POINTS[1:]:
        diff = abs(fraction - point)
        if diff < min_diff:
            min_diff = diff
            closest = point

    if closest == FLAT_POINTS[0] and fraction > Decimal("0.50"):
        return (whole + 1).quantize(CENT)

    return (whole + closest).quantize(CENT)


def convert_and_mark(base_rate_usd_per_1000, fx_rate, margin_multiplier) -> Decimal:
    """
    供应商美元单价（每 1000）→ 本地零售单价（每 1000）。

    先乘汇率，再乘利润倍数，最后做友好价取整。
    """
    base = to_decimal(base_rate_usd_per_1000, "base_rate")
    fx = to_decimal(fx_rate, "fx_rate")
    margin = to_decimal(margin_multiplier, "margin_multiplier")
    if base < 0 or fx < 0 or margin < 0:
        raise PricingError("rates must not be negative")
    return friendly_round(base * fx * margin)


def charge_for_quantity(rate_per_1000, quantity) -> Decimal:
    """按数量计算应扣金额：friendly_round(rate / 1000 * quantity)。"""
    rate = to_decimal(rate_per_1000, "rate_per_1000")
    qty = to_decimal(quantity, "quantity")
    if rate < 0 or qty < 0:
        raise PricingError("rate and quantity must not be negative")
    return friendly_round(rate / UNITS_PER_RATE * qty)


def format_price(amount, symbol: str = "₱") -> str:
    """展示用金额：货币符号 + 千分位 + 两位小数。"""
    value = to_decimal(amount, "amount").quantize(CENT)
    return f"{symbol}{value:,.2f}"

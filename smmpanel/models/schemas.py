"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。

金额在内存中一律为 Decimal，持久化到 kv_store 时转为字符串。
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Optional


# ── 订单状态 ──────────────────────────────────────────────

STATUS_PENDING = "Pending"
STATUS_PROCESSING = "Processing"
STATUS_IN_PROGRESS = "In progress"
STATUS_PARTIAL = "Partial"
STATUS_COMPLETED = "Completed"
STATUS_CANCELED = "Canceled"
STATUS_REFUNDED = "Refunded"

ORDER_STATUSES = (
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_IN_PROGRESS,
    STATUS_PARTIAL,
    STATUS_COMPLETED,
    STATUS_CANCELED,
    STATUS_REFUNDED,
)

# 仍在交付中、需要向供应商刷新状态的订单
ACTIVE_STATUSES = (
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_IN_PROGRESS,
    STATUS_PARTIAL,
)

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELED, STATUS_REFUNDED)

# 供应商同步（outbox）状态
SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"
SYNC_FAILED = "failed"

ROLE_USER = "user"
ROLE_ADMIN = "admin"

ADMIN_USER_ID = "ADMIN"


def _dec(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


def _money_str(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return str(value.quantize(Decimal("0.01")))


@dataclass
class Actor:
    """请求发起者：在 HTTP 边界解析一次，显式传入各服务方法。"""
    user_id: str
    email: str
    role: str = ROLE_USER
    name: str = ""
    session_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class OperationResult:
    """服务层统一返回值：不向调用方抛出校验类异常。"""
    success: bool
    data: dict = field(default_factory=dict)
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, **data) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: str, error: str, **data) -> "OperationResult":
        return cls(success=False, data=data, error=error, code=code)


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    balance: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0")
    total_orders: int = 0
    role: str = ROLE_USER
    is_verified: bool = False
    preferences: dict = field(default_factory=lambda: {"theme": "light", "notifications": True})
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["balance"] = _money_str(self.balance)
        data["total_spent"] = _money_str(self.total_spent)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            email=data.get("email", ""),
            password_hash=data.get("password_hash", ""),
            balance=_dec(data.get("balance")),
            total_spent=_dec(data.get("total_spent")),
            total_orders=int(data.get("total_orders") or 0),
            role=data.get("role", ROLE_USER),
            is_verified=bool(data.get("is_verified", False)),
            preferences=dict(data.get("preferences") or {}),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            last_login=data.get("last_login"),
        )

    def sanitized(self) -> dict:
        """去除凭证字段后的用户信息。"""
        data = self.to_dict()
        data.pop("password_hash", None)
        return data


@dataclass
class Session:
    token: str
    session_id: str
    user_id: str
    email: str
    role: str
    issued_at: float
    expires_at: float
    last_activity: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__})


@dataclass
class Service:
    """供应商服务目录条目（零售价已换算）。"""
    service: int
    name: str
    category: str
    min: int
    max: int
    rate: Decimal
    original_rate: Decimal
    refill: bool = False
    description: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["rate"] = _money_str(self.rate)
        data["original_rate"] = str(self.original_rate)
        return data


@dataclass
class Order:
    id: str
    user_id: str
    service: int
    service_name: str
    link: str
    quantity: int
    charge: Decimal
    price_per_k: Decimal
    user_email: str = ""
    status: str = STATUS_PENDING
    supplier_order_id: Optional[str] = None
    start_count: Optional[int] = None
    remains: Optional[int] = None
    is_mass_order: bool = False
    is_drip_feed: bool = False
    drip_feed: Optional[dict] = None
    sync_status: str = SYNC_PENDING
    sync_attempts: int = 0
    last_sync_error: Optional[str] = None
    last_sync_at: Optional[str] = None
    refill_requested: bool = False
    refill_status: Optional[str] = None
    refill_requested_at: Optional[str] = None
    refill_processed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["charge"] = _money_str(self.charge)
        data["price_per_k"] = _money_str(self.price_per_k)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Order":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        known["charge"] = _dec(data.get("charge"))
        known["price_per_k"] = _dec(data.get("price_per_k"))
        known["quantity"] = int(data.get("quantity") or 0)
        known["service"] = int(data.get("service") or 0)
        return cls(**known)

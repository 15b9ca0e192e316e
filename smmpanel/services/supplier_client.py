"""
供应商（SMMGen v2 兼容）API 客户端。

所有请求都是表单编码的 POST，携带 key 和 action 两个公共参数：
- services: 服务目录
- add: 下单，返回 {"order": 供应商订单号}
- status: 订单状态
- balance: 供应商账户余额
- refill: 补单
- cancel: 取消
"""

import json
import logging
import os
from decimal import Decimal, InvalidOperation

import httpx
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SUPPLIER_API_URL = os.getenv("SUPPLIER_API_URL", "https://smmgen.com/api/v2")
SUPPLIER_API_KEY = os.getenv("SUPPLIER_API_KEY", "")


class SupplierClientError(Exception):
    """供应商接口调用失败（网络、HTTP 状态、响应格式或业务错误）。"""
    pass


class SupplierClient:
    """供应商 API 客户端。"""

    def __init__(self, api_url: str | None = None, api_key: str | None = None):
        self.api_url = api_url or SUPPLIER_API_URL
        self.api_key = api_key if api_key is not None else SUPPLIER_API_KEY

    def _request(self, action: str, **params):
        """
        发送一次 action 请求并返回解析后的 JSON。

        Raises:
            SupplierClientError: 请求失败、响应不是 JSON 或响应包含 error 字段。
        """
        form = {"key": self.api_key, "action": action}
        for k, v in params.items():
            if v is not None:
                form[k] = str(v)

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(self.api_url, data=form)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise SupplierClientError(f"supplier request failed: {e}")

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise SupplierClientError(f"invalid supplier response: {e}")

        if isinstance(data, dict) and data.get("error"):
            raise SupplierClientError(str(data["error"]))

        return data

    def services(self):
        """返回原始服务目录（正常情况下是 list，形状由调用方校验）。"""
        return self._request("services")

    def add(self, service: int, link: str, quantity: int, **extra) -> dict:
        """
        向供应商下单。

        Returns:
            dict: {"order": 供应商订单号}
        """
        data = self._request(
            "add", service=service, link=link, quantity=quantity, **extra
        )
        if not isinstance(data, dict) or not data.get("order"):
            raise SupplierClientError("supplier response missing order id")
        return data

    def status(self, order_id) -> dict:
        data = self._request("status", order=order_id)
        if not isinstance(data, dict):
            raise SupplierClientError("unexpected status response")
        return data

    def balance(self) -> dict:
        """
        查询供应商账户余额。

        Returns:
            dict: {"balance": Decimal, "currency": str}
        """
        data = self._request("balance")
        if not isinstance(data, dict):
            raise SupplierClientError("unexpected balance response")
        try:
            amount = Decimal(str(data.get("balance", "0")))
        except InvalidOperation as e:
            raise SupplierClientError(f"invalid balance amount: {e}")
        return {"balance": amount, "currency": data.get("currency", "USD")}

    def refill(self, order_id) -> dict:
        return self._request("refill", order=order_id)

    def cancel(self, order_id) -> dict:
        return self._request("cancel", orders=order_id)

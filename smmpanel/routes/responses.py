"""
路由公共工具：把服务层 OperationResult 转换为 JSON 响应。

成功：{"code": 1, ...data}
失败：{"code": -1, "msg": 错误信息, "error": 错误码, ...data}
"""

from fastapi.responses import JSONResponse

from smmpanel.models.schemas import OperationResult

# 错误码 → HTTP 状态码，未列出的错误码返回 200
_HTTP_STATUS = {
    "not_authenticated": 401,
    "forbidden": 403,
    "not_found": 404,
    "supplier_error": 502,
    "ledger_inconsistency": 500,
    "store_error": 500,
}


def result_response(result: OperationResult) -> JSONResponse:
    if result.success:
        return JSONResponse(content={"code": 1, **result.data})
    return error_response(result.error, result.code, **result.data)


def error_response(msg: str | None, error: str | None = None, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=_HTTP_STATUS.get(error, 200),
        content={"code": -1, "msg": msg, "error": error, **extra},
    )

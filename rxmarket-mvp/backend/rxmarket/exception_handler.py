"""
统一异常处理器。

挂到 DRF 的 EXCEPTION_HANDLER setting 上。
成功和失败响应都带 success 字段，前端用同一套逻辑判断：
  response.success === true   → data 里是结果
  response.success === false  → message 是给用户看的短描述

统一错误响应格式：
{
    "success": false,
    "type":    "validation_error" | "not_found" | "forbidden" | "invalid_state" | "error",
    "code":    "PHARMACY_NOT_TARGETED",
    "message": "Pharmacy was not targeted by this request",
    "detail":  { ... },   // 可选
    "error":   "..."      // 仅 DEBUG 下出现，生产环境不泄漏内部信息
}
"""

import logging

from django.conf import settings
from django.http import Http404, JsonResponse
from rest_framework.exceptions import APIException
from rest_framework.exceptions import ValidationError as DRFValidationError

from .exceptions import BaseAppException

logger = logging.getLogger(__name__)


def error_body(type_, code, message, detail=None):
    body = {
        'success': False,
        'type': type_,
        'code': code,
        'message': message,
    }
    if detail is not None:
        body['detail'] = detail
    return body


def unified_exception_handler(exc, context):
    """
    DRF exception handler entry point.

    优先级：
    1. BaseAppException 及其子类 → 统一格式
    2. DRF 自带的 ValidationError（serializer.is_valid raise 的）→ 400
    3. 其他 DRF APIException（未登录、权限、方法不允许...）→ 保留原状态码
    4. Http404 → 404
    5. 其他一切 → 500 + 通用 message，不把内部错误暴露给调用方
    """

    # --- 1. 我们自己的异常体系 ---
    if isinstance(exc, BaseAppException):
        body = error_body(exc.type, exc.code, exc.message, exc.detail)
        return JsonResponse(body, status=exc.http_status)

    # --- 2. DRF 自带的 ValidationError ---
    if isinstance(exc, DRFValidationError):
        body = error_body('validation_error', 'VALIDATION_ERROR', 'Request validation failed', exc.detail)
        return JsonResponse(body, status=400)

    # --- 3. 其他 DRF 异常 ---
    if isinstance(exc, APIException):
        code = exc.get_codes()
        if not isinstance(code, str):
            code = 'api_error'
        body = error_body('error', code.upper(), str(exc.detail))
        return JsonResponse(body, status=exc.status_code)

    # --- 4. Django 的 404 ---
    if isinstance(exc, Http404):
        return JsonResponse(error_body('not_found', 'NOT_FOUND', 'Resource not found'), status=404)

    # --- 5. 未预期的异常 ---
    view = context.get('view')
    logger.exception("Unhandled exception in %s", type(view).__name__ if view else 'unknown view')
    body = error_body('error', 'INTERNAL_ERROR', 'Internal server error')
    if settings.DEBUG:
        body['error'] = f"{type(exc).__name__}: {exc}"
    return JsonResponse(body, status=500)

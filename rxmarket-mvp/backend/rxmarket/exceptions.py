"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / not_found / forbidden / invalid_state / external_service）
- code:        业务错误码（MEDICATIONS_REQUIRED / PHARMACY_NOT_TARGETED / PHARMACY_ALREADY_SELECTED / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

Service 层只管 raise，View 层不 catch，exception_handler 统一格式化响应。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class ValidationError(BaseAppException):
    """输入缺失或格式不对，400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class NotFoundError(BaseAppException):
    """id 不存在，404。"""

    type = 'not_found'
    code = 'NOT_FOUND'
    http_status = 404


class AuthorizationError(BaseAppException):
    """当前用户对这个对象 / 这个状态没有操作权限，403。"""

    type = 'forbidden'
    code = 'FORBIDDEN'
    http_status = 403


class InvalidStateError(BaseAppException):
    """
    当前生命周期状态下不允许该操作。

    例如：选中一个没有 accept 的药房、重复取消、对已 fulfilled 的请求取消。
    按照约定用 400，而不是 409。
    """

    type = 'invalid_state'
    code = 'INVALID_STATE'
    http_status = 400


class ExternalServiceError(BaseAppException):
    """下游服务（短信 / 邮件 / 数据库 / 支付）不可用。"""

    type = 'external_service'
    code = 'EXTERNAL_SERVICE_ERROR'
    http_status = 500

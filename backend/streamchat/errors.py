"""错误类型定义

所有业务错误都继承 StreamChatError，由 main.py 中注册的异常处理器
统一转换为 JSON 响应 {"detail": ...}。
"""
from typing import Optional


class StreamChatError(Exception):
    """业务错误基类"""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class UnauthorizedError(StreamChatError):
    """无法识别调用者身份（在访问存储之前拒绝）"""

    status_code = 401

    def __init__(self, message: str = "未授权"):
        super().__init__(message)


class NotFoundError(StreamChatError):
    """对话或消息不存在，或不属于当前用户（不泄露是否存在）"""

    status_code = 404


class ValidationFailedError(StreamChatError):
    """缺少必填字段"""

    status_code = 400

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"{field} is required")
        self.field = field


class UpstreamProviderError(StreamChatError):
    """模型服务或文件存储服务调用失败"""

    status_code = 502


class PersistenceError(StreamChatError):
    """存储写入失败"""

    status_code = 500

"""身份识别

登录与会话由外部身份服务负责，网关校验通过后把用户ID写入请求头；
这里只读取该请求头，读不到时拒绝请求（在访问存储之前）。
"""
from typing import Optional

from fastapi import Request

from .config import config
from .errors import UnauthorizedError
from .utils.structured_logger import user_id_var


class HeaderIdentityProvider:
    """从请求头读取用户ID"""

    def __init__(self, header_name: Optional[str] = None):
        self.header_name = header_name or config.USER_ID_HEADER

    def require_user_id(self, request: Request) -> str:
        user_id = (request.headers.get(self.header_name) or "").strip()
        if not user_id:
            raise UnauthorizedError()
        return user_id


async def require_user_id(request: Request) -> str:
    """FastAPI 依赖：返回当前用户ID，并绑定到本请求的日志上下文

    需保持为协程：同步依赖运行在线程池中，在那里设置的 contextvar 对路由不可见
    """
    identity = request.app.state.identity
    user_id = identity.require_user_id(request)
    user_id_var.set(user_id)
    return user_id

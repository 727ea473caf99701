"""LangFuse 追踪（v3.x）

模型调用通过 LangChain 回调上报到 LangFuse：对话ID 作为 session，
调用者作为 user。未配置密钥时所有函数退化为空操作。
"""
import os
from typing import Any, Dict, List, Optional

from langfuse.langchain import CallbackHandler

from ..config import config
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

_langfuse_enabled: bool = False


def init_langfuse() -> bool:
    """
    在应用启动时检查 LangFuse 配置

    CallbackHandler 从环境变量读取密钥，这里把 .env 中的配置补写回环境变量。

    Returns:
        bool: 配置完整时返回 True
    """
    global _langfuse_enabled

    if not config.LANGFUSE_PUBLIC_KEY or not config.LANGFUSE_SECRET_KEY:
        logger.info("LangFuse 配置不完整，未启用追踪")
        _langfuse_enabled = False
        return False

    os.environ.setdefault("LANGFUSE_PUBLIC_KEY", config.LANGFUSE_PUBLIC_KEY)
    os.environ.setdefault("LANGFUSE_SECRET_KEY", config.LANGFUSE_SECRET_KEY)
    os.environ["LANGFUSE_HOST"] = config.LANGFUSE_HOST
    _langfuse_enabled = True
    logger.info("LangFuse 已启用追踪", host=config.LANGFUSE_HOST)
    return True


def build_trace_config(
    model_id: str,
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> Optional[Dict[str, Any]]:
    """
    为一次模型调用构造 LangChain RunnableConfig

    v3.x 的 CallbackHandler 不接收参数，session / user / tags 通过 metadata 传递。
    新对话在首轮完成前还没有ID，此时不设置 session。

    Returns:
        可直接传给 astream(config=...) 的字典；未启用时返回 None
    """
    if not _langfuse_enabled:
        return None

    try:
        handler = CallbackHandler()
    except Exception as e:
        # 追踪失败不影响对话
        logger.warning("创建 LangFuse handler 失败", error=str(e))
        return None

    metadata: Dict[str, Any] = {"langfuse_tags": list(tags or []) + [model_id]}
    if session_id:
        metadata["langfuse_session_id"] = session_id
    if user_id:
        metadata["langfuse_user_id"] = user_id

    return {"callbacks": [handler], "metadata": metadata, "run_name": "chat-stream"}


def is_langfuse_enabled() -> bool:
    return _langfuse_enabled

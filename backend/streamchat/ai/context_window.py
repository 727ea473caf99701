"""上下文窗口：控制每轮发送给模型的历史消息数量

目前按消息条数截断；是否改为按 token 预算截断尚未确定，
新的策略实现 ContextWindow.trim 即可替换。
"""
from typing import List, Sequence, TypeVar

from ..config import config

T = TypeVar("T")

DEFAULT_MAX_MESSAGES = 30


class ContextWindow:
    """上下文截断策略接口"""

    def trim(self, messages: Sequence[T]) -> List[T]:
        raise NotImplementedError


class MessageCountWindow(ContextWindow):
    """保留最近 N 条消息（相对顺序不变）"""

    def __init__(self, max_messages: int = DEFAULT_MAX_MESSAGES):
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        self.max_messages = max_messages

    def trim(self, messages: Sequence[T]) -> List[T]:
        if len(messages) <= self.max_messages:
            return list(messages)
        return list(messages[-self.max_messages:])


def trim_messages_for_model(messages: Sequence[T], max_messages: int = DEFAULT_MAX_MESSAGES) -> List[T]:
    return MessageCountWindow(max_messages).trim(messages)


def default_window() -> ContextWindow:
    """按配置创建默认窗口"""
    return MessageCountWindow(config.CONTEXT_MAX_MESSAGES)

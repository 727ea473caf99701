"""核心服务：流式转发、轮次持久化、编辑与重新生成"""
from .completion import CompletedTurn, TurnCompletionHandler, TurnState, derive_title
from .mutations import MutationHandler
from .stream_relay import StreamRelay

__all__ = [
    "CompletedTurn",
    "TurnCompletionHandler",
    "TurnState",
    "derive_title",
    "MutationHandler",
    "StreamRelay",
]

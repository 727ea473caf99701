"""模型服务适配：上下文窗口、多模态消息转换、流式调用"""
from .context_window import ContextWindow, MessageCountWindow, trim_messages_for_model
from .provider import ChatModelProvider, ProviderFileUploader, select_model, to_provider_messages

__all__ = [
    "ContextWindow",
    "MessageCountWindow",
    "trim_messages_for_model",
    "ChatModelProvider",
    "ProviderFileUploader",
    "select_model",
    "to_provider_messages",
]

"""数据库模块 - 管理对话与消息"""
from .database import ConversationStore
from .models import Attachment, Conversation, Message, PromptMessage

__all__ = ['ConversationStore', 'Attachment', 'Conversation', 'Message', 'PromptMessage']

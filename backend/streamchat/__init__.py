"""streamchat - 流式对话后端"""

__version__ = "0.1.0"

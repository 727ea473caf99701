"""编辑 / 重新生成：截断历史消息

两个入口都只修改存储，不调用模型；调用方随后重新发起 /chat 请求获取新的回复。
"""
from ..db.database import ConversationStore
from ..db.models import Message
from ..errors import NotFoundError
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)


class MutationHandler:
    """消息编辑与重新生成"""

    def __init__(self, store: ConversationStore):
        self.store = store

    async def _get_owned_message(self, user_id: str, conversation_id: str, message_id: str, role: str) -> Message:
        conversation = await self.store.get_conversation(user_id, conversation_id)
        if not conversation:
            raise NotFoundError("对话不存在")

        message = await self.store.get_message(conversation_id, message_id)
        if not message or message.role != role:
            raise NotFoundError("消息不存在")
        return message

    async def edit_user_message(self, user_id: str, conversation_id: str, message_id: str, content: str) -> int:
        """
        编辑用户消息，并删除其后的所有消息

        Returns:
            被删除的消息条数
        """
        message = await self._get_owned_message(user_id, conversation_id, message_id, "user")

        pruned = await self.store.edit_message_and_prune(conversation_id, message.id, content, message.created_at)

        logger.info("编辑用户消息", conversation_id=conversation_id, message_id=message_id, pruned=pruned)
        return pruned

    async def regenerate_assistant_message(self, user_id: str, conversation_id: str, message_id: str) -> int:
        """
        删除一条助手消息（重新生成前调用）

        Returns:
            被删除的消息条数（成功时为 1）
        """
        message = await self._get_owned_message(user_id, conversation_id, message_id, "assistant")

        pruned = await self.store.delete_message(message.id)

        logger.info("删除助手消息以重新生成", conversation_id=conversation_id, message_id=message_id)
        return pruned

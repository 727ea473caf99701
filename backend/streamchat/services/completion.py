"""一轮对话完成后的持久化

状态流转：
    RESOLVE_CONVERSATION → DEDUPLICATE_USER_TURN → PERSIST_USER_TURN
    → PERSIST_ASSISTANT_TURN → UPDATE_TITLE → DONE

finalize() 在客户端流结束后执行，任何异常只记录日志，不向外抛出。
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..config import config
from ..db.database import ConversationStore
from ..db.models import Attachment
from ..utils.structured_logger import LogContext, get_logger

logger = get_logger(__name__)


class TurnState(str, Enum):
    RESOLVE_CONVERSATION = "resolve_conversation"
    DEDUPLICATE_USER_TURN = "deduplicate_user_turn"
    PERSIST_USER_TURN = "persist_user_turn"
    PERSIST_ASSISTANT_TURN = "persist_assistant_turn"
    UPDATE_TITLE = "update_title"
    DONE = "done"


@dataclass
class CompletedTurn:
    """一次请求/响应的结果"""
    user_id: str
    model: str
    user_text: str = ""
    assistant_text: str = ""
    attachments: List[Attachment] = field(default_factory=list)
    # 客户端提供的对话ID（None 表示新对话）
    conversation_id: Optional[str] = None


def derive_title(text: str, max_length: Optional[int] = None) -> str:
    """取第一行，截断到 max_length 个字符"""
    max_length = max_length or config.TITLE_MAX_LENGTH
    return text.split("\n")[0][:max_length]


class TurnCompletionHandler:
    """把一轮对话写入存储"""

    def __init__(self, store: ConversationStore):
        self.store = store
        self.state = TurnState.RESOLVE_CONVERSATION
        # 第 1 步解析出的实际对话ID
        self.conversation_id: Optional[str] = None

    async def complete(self, turn: CompletedTurn) -> str:
        """执行完整的持久化流程，返回最终使用的对话ID"""
        conversation_id = await self._resolve_conversation(turn)
        self.conversation_id = conversation_id

        with LogContext(conversation_id=conversation_id):
            await self._persist_turn(turn, conversation_id)
        return conversation_id

    async def _resolve_conversation(self, turn: CompletedTurn) -> str:
        # 1. 解析对话：没有ID或ID不属于当前用户时新建
        self.state = TurnState.RESOLVE_CONVERSATION
        conversation = None
        if turn.conversation_id:
            conversation = await self.store.get_conversation(turn.user_id, turn.conversation_id)
        if conversation:
            return conversation.id

        if turn.conversation_id:
            logger.info("对话不存在或不属于当前用户，新建对话", requested_id=turn.conversation_id)
        return await self.store.create_conversation(turn.user_id, turn.model)

    async def _persist_turn(self, turn: CompletedTurn, conversation_id: str):
        # 2. 去重：最后一条已存消息是内容相同的用户消息 → 视为重新生成
        self.state = TurnState.DEDUPLICATE_USER_TURN
        should_add_user_message = True
        if turn.user_text:
            existing = await self.store.list_messages(turn.user_id, conversation_id)
            last_message = existing[-1] if existing else None
            if last_message and last_message.role == "user" and last_message.content == turn.user_text:
                should_add_user_message = False
                logger.info("检测到重新生成，跳过用户消息")

        # 3. 保存用户消息
        self.state = TurnState.PERSIST_USER_TURN
        if turn.user_text and should_add_user_message:
            await self.store.append_message(conversation_id, "user", turn.user_text, turn.attachments)

        # 4. 保存助手消息（空文本不写入，对话停在用户消息上，可重试）
        self.state = TurnState.PERSIST_ASSISTANT_TURN
        if turn.assistant_text:
            await self.store.append_message(conversation_id, "assistant", turn.assistant_text)

        # 5. 更新标题
        self.state = TurnState.UPDATE_TITLE
        title = derive_title(turn.user_text) if turn.user_text else ""
        if title:
            current = await self.store.get_conversation(turn.user_id, conversation_id)
            if not current or not current.title or not current.title.strip() or not turn.conversation_id:
                await self.store.update_title(conversation_id, title)

        self.state = TurnState.DONE
        logger.info(
            "对话轮次已保存",
            user_saved=bool(turn.user_text) and should_add_user_message,
            assistant_length=len(turn.assistant_text),
        )

    async def finalize(self, turn: CompletedTurn) -> Optional[str]:
        """客户端流结束后的收尾步骤：失败只记录日志"""
        with LogContext(user_id=turn.user_id):
            try:
                return await self.complete(turn)
            except Exception:
                logger.exception(
                    "保存对话轮次失败",
                    failed_state=self.state.value,
                    conversation_id=self.conversation_id or turn.conversation_id,
                    requested_id=turn.conversation_id,
                )
                return None

"""Chat API 接口"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from ..ai.provider import select_model, to_provider_messages
from ..auth import require_user_id
from ..db.models import Attachment, CamelModel, PromptMessage, Role
from ..errors import ValidationFailedError
from ..services.completion import CompletedTurn, TurnCompletionHandler
from ..services.stream_relay import StreamRelay
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

CONVERSATION_ID_HEADER = "x-conversation-id"


class MessagePart(BaseModel):
    """UI 消息片段"""
    type: str
    text: Optional[str] = None


class MessageMetadata(CamelModel):
    """UI 消息元数据（附件、模型偏好）"""
    attachments: List[Attachment] = Field(default_factory=list)
    model: Optional[str] = None


class UIMessage(CamelModel):
    """客户端消息"""
    id: Optional[str] = None
    role: Role
    content: Optional[str] = None
    parts: Optional[List[MessagePart]] = None
    metadata: Optional[MessageMetadata] = None


class ChatRequest(CamelModel):
    """聊天请求"""
    conversation_id: Optional[str] = Field(default=None, description="对话ID（为空表示新对话）")
    messages: List[UIMessage] = Field(default_factory=list, description="完整消息列表")
    model: Optional[str] = Field(default=None, description="模型偏好")


class RelayStreamingResponse(StreamingResponse):
    """SSE 响应

    - 响应结束或客户端断开时都关闭 relay（连同模型流）
    - 客户端断开时仍执行 background，保存已收到的部分文本
    """

    def __init__(self, relay: StreamRelay, **kwargs):
        kwargs.setdefault("media_type", "text/event-stream")
        super().__init__(relay, **kwargs)
        self.relay = relay

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except (ClientDisconnect, OSError):
            logger.info(
                "客户端已断开，停止转发",
                received_events=self.relay.event_count,
                partial_length=len(self.relay.text),
            )
            await self.relay.aclose()
            if self.background is not None:
                await self.background()
        finally:
            await self.relay.aclose()


def _message_text(message: UIMessage) -> str:
    if message.content is not None:
        return message.content
    if message.parts:
        return "\n".join(part.text or "" for part in message.parts if part.type == "text")
    return ""


def normalize_messages(messages: List[UIMessage]) -> List[PromptMessage]:
    """
    把 UI 消息规范化为 PromptMessage

    只有最后一条用户消息携带附件（附件来自该消息的 metadata）
    """
    normalized = []
    last_index = len(messages) - 1
    for index, message in enumerate(messages):
        attachments = []
        if index == last_index and message.role == "user" and message.metadata:
            attachments = message.metadata.attachments
        normalized.append(PromptMessage(
            id=message.id or f"m_{index}",
            role=message.role,
            content=_message_text(message),
            attachments=attachments,
        ))
    return normalized


@router.post("/chat")
async def chat_stream(
    chat_request: ChatRequest,
    request: Request,
    user_id: str = Depends(require_user_id),
):
    """SSE 流式 Chat 接口

    流程：规范化消息 → 上下文截断 → 调用模型 → 实时转发 token
    → 响应结束后（BackgroundTask）保存用户消息与助手回复
    """
    if not chat_request.messages:
        raise ValidationFailedError("messages")

    state = request.app.state
    conversation_id = chat_request.conversation_id or request.headers.get(CONVERSATION_ID_HEADER) or None

    last = chat_request.messages[-1]
    metadata = last.metadata or MessageMetadata()
    model = select_model(metadata.attachments, metadata.model or chat_request.model)

    normalized = normalize_messages(chat_request.messages)
    trimmed = state.context_window.trim(normalized)

    logger.info(
        "收到聊天请求",
        conversation_id=conversation_id,
        model=model,
        message_count=len(normalized),
        sent_count=len(trimmed),
        attachment_count=len(metadata.attachments),
    )

    relay = StreamRelay(
        state.provider.stream(
            model,
            to_provider_messages(trimmed),
            session_id=conversation_id,
            user_id=user_id,
        )
    )

    last_normalized = normalized[-1]
    user_text = last_normalized.content if last_normalized.role == "user" else ""
    user_attachments = last_normalized.attachments if last_normalized.role == "user" else []
    handler = TurnCompletionHandler(state.store)

    async def persist_turn():
        """客户端流结束后保存本轮对话"""
        await handler.finalize(CompletedTurn(
            user_id=user_id,
            model=model,
            user_text=user_text,
            assistant_text=relay.text,
            attachments=user_attachments,
            conversation_id=conversation_id,
        ))

    return RelayStreamingResponse(
        relay,
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
        background=BackgroundTask(persist_turn),
    )

"""对话管理 API"""
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request

from ..auth import require_user_id
from ..config import config
from ..db.models import ConversationCreate, ConversationUpdate
from ..errors import NotFoundError

router = APIRouter()


def _store(request: Request):
    return request.app.state.store


@router.post("/conversations")
async def api_create_conversation(
    request: Request,
    conv: Optional[ConversationCreate] = Body(default=None),
    user_id: str = Depends(require_user_id),
):
    """创建新对话"""
    conv = conv or ConversationCreate()
    conversation_id = await _store(request).create_conversation(
        user_id,
        conv.model or config.DEFAULT_MODEL,
        conv.title,
    )
    return {"id": conversation_id}


@router.get("/conversations")
async def api_list_conversations(request: Request, user_id: str = Depends(require_user_id)):
    """获取当前用户的所有对话（按更新时间倒序）"""
    conversations = await _store(request).list_conversations(user_id)
    return {
        "conversations": [c.model_dump(mode="json", by_alias=True) for c in conversations]
    }


@router.get("/conversations/{conversation_id}")
async def api_get_conversation(conversation_id: str, request: Request, user_id: str = Depends(require_user_id)):
    """获取单个对话详情"""
    conversation = await _store(request).get_conversation(user_id, conversation_id)
    if not conversation:
        raise NotFoundError("对话不存在")
    return conversation.model_dump(mode="json", by_alias=True)


@router.patch("/conversations/{conversation_id}")
async def api_update_conversation(
    conversation_id: str,
    update: ConversationUpdate,
    request: Request,
    user_id: str = Depends(require_user_id),
):
    """修改对话标题"""
    store = _store(request)
    if not await store.get_conversation(user_id, conversation_id):
        raise NotFoundError("对话不存在")
    await store.update_title(conversation_id, update.title)
    return {"ok": True}


@router.delete("/conversations/{conversation_id}")
async def api_delete_conversation(conversation_id: str, request: Request, user_id: str = Depends(require_user_id)):
    """删除对话（连同全部消息）"""
    if not await _store(request).delete_conversation(user_id, conversation_id):
        raise NotFoundError("对话不存在")
    return {"ok": True}


@router.get("/conversations/{conversation_id}/messages")
async def api_get_conversation_messages(
    conversation_id: str,
    request: Request,
    user_id: str = Depends(require_user_id),
):
    """获取对话的完整历史消息（按创建时间升序）"""
    store = _store(request)
    if not await store.get_conversation(user_id, conversation_id):
        raise NotFoundError("对话不存在")

    messages = await store.list_messages(user_id, conversation_id)
    return {
        "messages": [
            m.model_dump(mode="json", by_alias=True, include={"id", "role", "content", "attachments", "created_at"})
            for m in messages
        ]
    }

"""消息编辑 / 重新生成 API"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ..auth import require_user_id
from ..db.models import MessageUpdate
from ..errors import ValidationFailedError
from ..services.mutations import MutationHandler

router = APIRouter()


@router.patch("/messages/{message_id}")
async def api_edit_message(
    message_id: str,
    update: MessageUpdate,
    request: Request,
    user_id: str = Depends(require_user_id),
):
    """编辑用户消息，并删除其后的所有消息"""
    handler = MutationHandler(request.app.state.store)
    pruned = await handler.edit_user_message(user_id, update.conversation_id, message_id, update.content)
    return {"ok": True, "pruned": pruned}


@router.delete("/messages/{message_id}")
async def api_delete_assistant_message(
    message_id: str,
    request: Request,
    conversation_id: Optional[str] = Query(default=None, alias="conversationId"),
    user_id: str = Depends(require_user_id),
):
    """删除助手消息（重新生成）"""
    if not conversation_id:
        raise ValidationFailedError("conversationId")

    handler = MutationHandler(request.app.state.store)
    pruned = await handler.regenerate_assistant_message(user_id, conversation_id, message_id)
    return {"ok": True, "pruned": pruned}

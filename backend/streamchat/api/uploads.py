"""上传相关 API

- /upload/signature: 签发文件存储的直传签名
- /upload/provider-file: 把非图片文件上传到模型服务，返回文件句柄
"""
from typing import Optional

from fastapi import APIRouter, Body, Depends, File, Request, UploadFile
from pydantic import Field

from ..auth import require_user_id
from ..config import config
from ..db.models import CamelModel
from ..errors import StreamChatError, ValidationFailedError

router = APIRouter()


class SignatureRequest(CamelModel):
    """签名请求"""
    folder: str = Field(default_factory=lambda: config.UPLOAD_FOLDER)
    timestamp: Optional[int] = None


@router.post("/upload/signature")
async def api_upload_signature(
    request: Request,
    body: Optional[SignatureRequest] = Body(default=None),
    user_id: str = Depends(require_user_id),
):
    """签发上传签名"""
    body = body or SignatureRequest()
    signature = request.app.state.signer.sign(body.folder, body.timestamp)
    return signature.model_dump(by_alias=True)


@router.post("/upload/provider-file")
async def api_upload_provider_file(
    request: Request,
    file: Optional[UploadFile] = File(default=None),
    user_id: str = Depends(require_user_id),
):
    """上传文件到模型服务"""
    if file is None:
        raise ValidationFailedError("file")

    data = await file.read()
    if len(data) > config.MAX_UPLOAD_SIZE_MB * 1024 * 1024:
        raise StreamChatError(f"文件超过 {config.MAX_UPLOAD_SIZE_MB}MB 限制", status_code=413)

    uploaded = await request.app.state.file_uploader.upload(
        file.filename or "upload",
        data,
        file.content_type or "application/octet-stream",
    )
    return {
        "success": True,
        "file": {
            "name": uploaded.name,
            "handle": uploaded.handle,
            "mimeType": uploaded.mime_type,
            "sizeBytes": uploaded.bytes,
        },
    }

"""数据模型定义"""
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Role = Literal["system", "user", "assistant"]


class CamelModel(BaseModel):
    """JSON 使用 camelCase，Python 侧使用 snake_case"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Attachment(CamelModel):
    """附件描述（嵌入在消息中，不单独存储）

    secure_url 必须始终存在：即使模型侧的文件句柄过期，消息仍然可以渲染。
    """
    id: str = Field(..., description="存储服务中的引用key")
    type: Literal["image", "file"] = Field(..., description="附件类型")
    mime_type: str = Field(..., description="MIME类型")
    bytes: Optional[int] = Field(default=None, description="文件大小（字节）")
    secure_url: str = Field(..., description="可直接访问的持久URL")
    provider: str = Field(default="cloudinary", description="存储服务标识")
    file_handle: Optional[str] = Field(default=None, description="模型服务的文件句柄（仅非图片文件）")
    file_handle_name: Optional[str] = Field(default=None, description="模型服务的文件名称")
    original_file_name: Optional[str] = Field(default=None, description="原始文件名")
    width: Optional[int] = Field(default=None, description="图片宽度")
    height: Optional[int] = Field(default=None, description="图片高度")
    text_extract_summary: Optional[str] = Field(default=None, description="文本摘要")

    @field_validator("secure_url")
    @classmethod
    def _require_url(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("secureUrl must not be empty")
        return value


class Conversation(CamelModel):
    """对话模型"""
    id: str = Field(..., description="对话ID")
    user_id: str = Field(..., description="所属用户ID")
    title: Optional[str] = Field(default=None, description="对话标题（首轮完成前为空）")
    model: str = Field(..., description="使用的模型")
    created_at: datetime = Field(..., description="创建时间")
    updated_at: datetime = Field(..., description="更新时间")


class Message(CamelModel):
    """消息模型"""
    id: str = Field(..., description="消息ID")
    conversation_id: str = Field(..., description="所属对话ID")
    role: Role = Field(..., description="角色")
    content: str = Field(default="", description="文本内容（纯附件消息可为空）")
    attachments: List[Attachment] = Field(default_factory=list, description="附件列表")
    created_at: datetime = Field(..., description="创建时间")
    updated_at: datetime = Field(..., description="更新时间")


class ConversationCreate(CamelModel):
    """创建对话请求"""
    model: Optional[str] = Field(default=None, description="模型（可选，默认使用配置）")
    title: Optional[str] = Field(default=None, description="对话标题（可选）")


class ConversationUpdate(CamelModel):
    """更新对话请求"""
    title: str = Field(..., min_length=1, description="对话标题")


class MessageUpdate(CamelModel):
    """编辑消息请求"""
    conversation_id: str = Field(..., min_length=1, description="对话ID")
    content: str = Field(..., description="新的消息内容")


class PromptMessage(CamelModel):
    """发送给模型的单条消息（客户端请求规范化后的形式）"""
    id: Optional[str] = Field(default=None, description="客户端消息ID")
    role: Role = Field(..., description="角色")
    content: str = Field(default="", description="文本内容")
    attachments: List[Attachment] = Field(default_factory=list, description="附件列表")

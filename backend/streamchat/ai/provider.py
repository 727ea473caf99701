"""模型服务适配

- select_model: 根据附件和用户偏好选择模型
- to_provider_messages: 把对话消息转换为 LangChain 多模态消息
- ChatModelProvider: 流式调用模型，产出 UI 流事件（dict）
- ProviderFileUploader: 把非图片文件上传到模型服务，换取文件句柄
"""
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Union

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_deepseek import ChatDeepSeek
from langchain_openai import ChatOpenAI
from openai import AsyncOpenAI, OpenAIError

from ..config import config
from ..db.models import Attachment
from ..errors import UpstreamProviderError
from ..utils.structured_logger import get_logger
from .langfuse_config import build_trace_config

logger = get_logger(__name__)


def select_model(attachments: Iterable[Attachment], requested: Optional[str] = None) -> str:
    """
    选择本轮使用的模型

    策略：
    1. 用户指定且在支持列表中 → 使用用户指定的模型
    2. 附件中有图片 → 使用视觉模型
    3. 否则使用默认文本模型
    """
    if requested and requested in config.SUPPORTED_MODELS:
        return requested

    if any(a.type == "image" for a in attachments):
        return config.VISION_MODEL

    return config.DEFAULT_MODEL


def get_chat_model(model_id: str) -> BaseChatModel:
    """
    获取 LLM 实例（流式）

    deepseek-* 使用 ChatDeepSeek，其余模型走 OpenAI 兼容接口
    """
    if model_id.startswith("deepseek"):
        if not config.DEEPSEEK_API_KEY:
            raise UpstreamProviderError("DEEPSEEK_API_KEY is not set")
        return ChatDeepSeek(
            model=model_id,
            temperature=config.MODEL_TEMPERATURE,
            max_tokens=config.MODEL_MAX_TOKENS,
            api_key=config.DEEPSEEK_API_KEY,
            streaming=True,
        )

    if not config.OPENAI_API_KEY:
        raise UpstreamProviderError("OPENAI_API_KEY is not set")
    return ChatOpenAI(
        model=model_id,
        temperature=config.MODEL_TEMPERATURE,
        max_tokens=config.MODEL_MAX_TOKENS,
        api_key=config.OPENAI_API_KEY,
        base_url=config.OPENAI_BASE_URL,
        streaming=True,
    )


def describe_file(attachment: Attachment) -> str:
    """没有模型文件句柄时，用一段说明文字代替文件内容"""
    file_name = attachment.original_file_name or attachment.id.split("/")[-1]
    size = f" ({round(attachment.bytes / 1024)} KB)" if attachment.bytes else ""
    mime_type = attachment.mime_type

    if mime_type == "application/pdf":
        return (
            f"[PDF Document: {file_name}{size}] - I can see you've uploaded a PDF document. "
            "Please copy and paste the text content or describe what specific information "
            "you're looking for in the document."
        )
    if "document" in mime_type:
        return (
            f"[Document: {file_name}{size}] - I can see you've uploaded a document. "
            "Please copy and paste the text content or tell me what specific information "
            "you're looking for."
        )
    if mime_type == "text/plain" or "csv" in mime_type:
        return (
            f"[Text/CSV File: {file_name}{size}] - I can see you've uploaded a text or CSV file. "
            "Please copy and paste the content for me to analyze."
        )
    return (
        f"[File: {file_name}{size} - {mime_type}] - I can see you've uploaded a file. "
        "Please describe what's in the file or what you'd like me to help you with."
    )


def build_content(content: str, attachments: Sequence[Attachment]) -> Union[str, List[Dict[str, Any]]]:
    """
    构建多模态消息内容

    只有一个文本部分时返回纯字符串，否则返回 content parts 列表
    """
    parts: List[Dict[str, Any]] = []

    if content and content.strip():
        parts.append({"type": "text", "text": content})

    for attachment in attachments:
        if attachment.type == "image":
            parts.append({
                "type": "image_url",
                "image_url": {"url": attachment.secure_url}
            })
        elif attachment.file_handle:
            parts.append({
                "type": "file",
                "file": {"file_id": attachment.file_handle}
            })
        else:
            parts.append({"type": "text", "text": describe_file(attachment)})

    if not parts:
        return ""
    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    return parts


_MESSAGE_TYPES = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}


def to_provider_messages(messages: Iterable[Any]) -> List[BaseMessage]:
    """把 (role, content, attachments) 形式的消息转换为 LangChain 消息"""
    converted = []
    for message in messages:
        attachments = getattr(message, "attachments", None) or []
        message_cls = _MESSAGE_TYPES[message.role]
        converted.append(message_cls(content=build_content(message.content, attachments)))
    return converted


def _chunk_text(chunk: Any) -> str:
    """从 AIMessageChunk 中提取文本增量"""
    content = getattr(chunk, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for item in content:
            if isinstance(item, str):
                texts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                texts.append(item.get("text", ""))
        return "".join(texts)
    return ""


class ChatModelProvider:
    """流式调用模型，把 token 流转换为 UI 流事件

    事件（dict）：
        {"type": "start"}
        {"type": "text-start", "id": ...}
        {"type": "text-delta", "id": ..., "delta": "..."}
        {"type": "text-end", "id": ...}
        {"type": "finish"}
    """

    def __init__(self, model_factory: Callable[[str], BaseChatModel] = get_chat_model):
        self.model_factory = model_factory

    async def stream(
        self,
        model_id: str,
        messages: Sequence[BaseMessage],
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        llm = self.model_factory(model_id)

        run_config = build_trace_config(model_id, session_id=session_id, user_id=user_id, tags=["chat"])

        text_id = f"txt_{uuid.uuid4().hex[:12]}"
        logger.info("开始调用模型", model=model_id, message_count=len(messages))

        yield {"type": "start"}
        yield {"type": "text-start", "id": text_id}

        async for chunk in llm.astream(list(messages), config=run_config):
            delta = _chunk_text(chunk)
            if not delta:
                continue
            yield {"type": "text-delta", "id": text_id, "delta": delta}

        yield {"type": "text-end", "id": text_id}
        yield {"type": "finish"}


@dataclass
class ProviderFile:
    """模型服务侧的文件句柄"""
    handle: str
    name: str
    mime_type: str
    bytes: Optional[int] = None


class ProviderFileUploader:
    """上传文件到模型服务（OpenAI 兼容的 Files API）"""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not config.OPENAI_API_KEY:
                raise UpstreamProviderError("OPENAI_API_KEY is not set")
            self._client = AsyncOpenAI(api_key=config.OPENAI_API_KEY, base_url=config.OPENAI_BASE_URL)
        return self._client

    async def upload(self, filename: str, data: bytes, mime_type: str) -> ProviderFile:
        try:
            result = await self.client.files.create(
                file=(filename, data, mime_type),
                purpose=config.PROVIDER_FILE_PURPOSE,
            )
        except OpenAIError as e:
            logger.error("上传文件到模型服务失败", filename=filename, error=str(e))
            raise UpstreamProviderError(f"上传文件到模型服务失败: {e}") from e

        logger.info("文件已上传到模型服务", filename=filename, handle=result.id)
        return ProviderFile(
            handle=result.id,
            name=result.filename or filename,
            mime_type=mime_type,
            bytes=getattr(result, "bytes", None) or len(data),
        )

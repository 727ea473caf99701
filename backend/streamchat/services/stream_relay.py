"""流式转发：把模型事件流实时转发给客户端，同时累积完整的助手回复文本

- 每个事件原样编码为一个 SSE 帧，按到达顺序立即转发
- text-delta 事件的 delta 追加到 text（累积器）
- 无法解析的事件不参与累积，转发继续
- 模型连接中途失败：发送 error 帧后结束，text 保留已收到的部分文本
- 关闭 relay（客户端断开）时同时关闭上游事件流
"""
import json
from typing import Annotated, Any, AsyncGenerator, AsyncIterator, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

DONE_FRAME = "data: [DONE]\n\n"


class TextDeltaEvent(BaseModel):
    """文本增量事件"""
    type: Literal["text-delta"]
    id: Optional[str] = None
    delta: str


class ControlEvent(BaseModel):
    """非文本的控制事件"""
    type: Literal[
        "start",
        "start-step",
        "text-start",
        "text-end",
        "finish-step",
        "finish",
        "abort",
        "error",
    ]
    id: Optional[str] = None
    error_text: Optional[str] = Field(default=None, alias="errorText")


StreamEvent = Annotated[Union[TextDeltaEvent, ControlEvent], Field(discriminator="type")]

_event_adapter = TypeAdapter(StreamEvent)


def parse_event(raw: Any) -> Optional[Union[TextDeltaEvent, ControlEvent]]:
    """解析单个事件，未知类型或格式错误时返回 None"""
    try:
        if isinstance(raw, (str, bytes)):
            return _event_adapter.validate_json(raw)
        return _event_adapter.validate_python(raw)
    except ValidationError:
        return None


def encode_frame(raw: Any) -> str:
    """把事件编码为 SSE 帧（字符串事件视为已编码的 JSON 负载）"""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    payload = raw if isinstance(raw, str) else json.dumps(raw, ensure_ascii=False)
    return f"data: {payload}\n\n"


class StreamRelay:
    """把上游事件流桥接到客户端 SSE 流，并累积文本

    用法：
        relay = StreamRelay(provider.stream(...))
        return RelayStreamingResponse(relay, background=BackgroundTask(finalize, relay))
    """

    def __init__(self, source: AsyncIterator[Any]):
        self.source = source
        self.text = ""
        self.event_count = 0
        self.discarded_count = 0
        self.completed = False
        self.failed = False
        self.error: Optional[BaseException] = None
        self._iterator: Optional[AsyncGenerator[str, None]] = None

    def accumulate(self, raw: Any):
        """累积单个事件中的文本增量"""
        event = parse_event(raw)
        if event is None:
            self.discarded_count += 1
            logger.debug("丢弃无法解析的事件", raw=str(raw)[:200])
            return
        if isinstance(event, TextDeltaEvent):
            self.text += event.delta

    def __aiter__(self):
        if self._iterator is None:
            self._iterator = self._relay()
        return self._iterator

    async def aclose(self):
        """停止转发并关闭上游事件流（可重复调用）

        StreamingResponse 在客户端断开时不会关闭 body 迭代器，由响应在结束时调用
        """
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._close_source()

    async def _relay(self) -> AsyncIterator[str]:
        try:
            async for raw in self.source:
                self.event_count += 1
                self.accumulate(raw)
                try:
                    frame = encode_frame(raw)
                except (TypeError, ValueError):
                    logger.debug("事件无法编码，跳过转发", raw=str(raw)[:200])
                    continue
                yield frame
            self.completed = True
        except Exception as e:
            # 上游中途失败：保留已累积的部分文本，通知客户端后结束
            self.failed = True
            self.error = e
            logger.warning(
                "模型流中途失败",
                error=str(e),
                received_events=self.event_count,
                partial_length=len(self.text),
            )
            yield encode_frame({"type": "error", "errorText": str(e)})
        finally:
            await self._close_source()

        yield DONE_FRAME

    async def _close_source(self):
        aclose = getattr(self.source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug("关闭上游流失败", error=str(e))

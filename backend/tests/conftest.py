"""
测试公共夹具

环境变量必须在导入 streamchat 之前设置：config 在导入时读取环境变量，
streamchat.main 在导入时创建 app。
"""
import os
import sqlite3

os.environ["DATABASE_PATH"] = ":memory:"
os.environ["LOG_TO_FILE"] = "false"
os.environ["LOG_JSON"] = "false"
os.environ["LANGFUSE_PUBLIC_KEY"] = ""
os.environ["LANGFUSE_SECRET_KEY"] = ""

from datetime import datetime, timedelta  # noqa: E402
from typing import Any, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from streamchat.db.database import ConversationStore  # noqa: E402
from streamchat.main import create_app  # noqa: E402


# ---------------------------------------------------------------------------
# 时钟
# ---------------------------------------------------------------------------


class FrozenClock:
    """固定时间的时钟（用于验证时间戳单调递增）"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0):
        self.now = self.now + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# 模型服务替身
# ---------------------------------------------------------------------------


def text_events(*deltas: str, text_id: str = "txt_1") -> List[Dict[str, Any]]:
    """构造一条完整的 UI 事件流"""
    events: List[Dict[str, Any]] = [{"type": "start"}, {"type": "text-start", "id": text_id}]
    events.extend({"type": "text-delta", "id": text_id, "delta": d} for d in deltas)
    events.extend([{"type": "text-end", "id": text_id}, {"type": "finish"}])
    return events


class FakeSource:
    """可记录是否被关闭的异步事件源

    fail_after: 产出多少个事件后抛出 error
    """

    def __init__(self, events, fail_after: Optional[int] = None, error: Optional[BaseException] = None):
        self.events = list(events)
        self.fail_after = fail_after
        self.error = error or ConnectionError("provider connection lost")
        self.closed = False
        self.yielded = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.fail_after is not None and self.yielded >= self.fail_after:
            raise self.error
        if self.yielded >= len(self.events):
            raise StopAsyncIteration
        event = self.events[self.yielded]
        self.yielded += 1
        return event

    async def aclose(self):
        self.closed = True


class FakeProvider:
    """替代 ChatModelProvider：按预设事件流返回，并记录调用参数"""

    def __init__(self, events=None, fail_after: Optional[int] = None):
        self.events = events if events is not None else text_events("Hello", ", ", "world")
        self.fail_after = fail_after
        self.calls: List[Dict[str, Any]] = []
        self.sources: List[FakeSource] = []

    def stream(self, model_id, messages, session_id=None, user_id=None):
        self.calls.append({
            "model": model_id,
            "messages": list(messages),
            "session_id": session_id,
            "user_id": user_id,
        })
        source = FakeSource(self.events, fail_after=self.fail_after)
        self.sources.append(source)
        return source


# ---------------------------------------------------------------------------
# 存储故障注入
# ---------------------------------------------------------------------------


def fail_deletes(store, error: Optional[BaseException] = None):
    """让 store 连接上的 DELETE 语句失败，其余语句照常执行"""
    execute = store.db.execute

    async def failing_execute(sql, parameters=None):
        if sql.lstrip().upper().startswith("DELETE"):
            raise error or sqlite3.OperationalError("disk I/O error")
        return await execute(sql, parameters)

    store.db.execute = failing_execute


# ---------------------------------------------------------------------------
# 夹具
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FrozenClock()


@pytest_asyncio.fixture
async def store(clock):
    store = await ConversationStore.open(":memory:", clock=clock)
    yield store
    await store.close()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def app(fake_provider):
    app = create_app(configure_logging=False)
    app.state.provider = fake_provider
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def user_headers():
    return {"X-User-Id": "user_a"}


@pytest.fixture
def other_user_headers():
    return {"X-User-Id": "user_b"}

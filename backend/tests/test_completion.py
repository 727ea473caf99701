"""
TurnCompletionHandler 测试

Covers:
  - 对话解析：无ID新建、ID不属于当前用户时新建
  - 去重：最后一条是相同内容的用户消息时不重复写入，但仍写入助手消息
  - 空助手文本不写入
  - 标题派生（第一行，截断到60字符）
  - 部分流文本仍然保存
  - 持久化失败被吞掉并记录
"""
from unittest.mock import AsyncMock, MagicMock

from streamchat.db.models import Attachment
from streamchat.services import completion
from streamchat.services.completion import (
    CompletedTurn,
    TurnCompletionHandler,
    TurnState,
    derive_title,
)
from streamchat.services.stream_relay import StreamRelay
from streamchat.utils.structured_logger import conversation_id_var, user_id_var

from .conftest import FakeSource, text_events


def _turn(**kwargs):
    defaults = {"user_id": "user_a", "model": "deepseek-chat"}
    defaults.update(kwargs)
    return CompletedTurn(**defaults)


class TestDeriveTitle:

    def test_first_line_truncated(self):
        text = "Hello\nworld, this is a very long first line exceeding sixty characters for sure"
        assert derive_title(text) == "Hello"

    def test_long_first_line(self):
        text = "world, this is a very long first line exceeding sixty characters for sure\nsecond"
        assert derive_title(text) == text.split("\n")[0][:60]
        assert len(derive_title(text)) == 60


class TestResolveConversation:

    async def test_creates_conversation_when_no_id(self, store):
        conversation_id = await TurnCompletionHandler(store).complete(
            _turn(user_text="hi", assistant_text="hello")
        )

        conversation = await store.get_conversation("user_a", conversation_id)
        assert conversation is not None
        assert conversation.model == "deepseek-chat"
        messages = await store.list_messages("user_a", conversation_id)
        assert [(m.role, m.content) for m in messages] == [("user", "hi"), ("assistant", "hello")]

    async def test_uses_existing_conversation(self, store):
        existing = await store.create_conversation("user_a", "deepseek-chat")
        conversation_id = await TurnCompletionHandler(store).complete(
            _turn(user_text="hi", assistant_text="hello", conversation_id=existing)
        )
        assert conversation_id == existing

    async def test_foreign_conversation_id_creates_new(self, store):
        foreign = await store.create_conversation("user_b", "deepseek-chat")
        conversation_id = await TurnCompletionHandler(store).complete(
            _turn(user_text="hi", assistant_text="hello", conversation_id=foreign)
        )

        assert conversation_id != foreign
        assert await store.list_messages("user_b", foreign) == []
        assert len(await store.list_messages("user_a", conversation_id)) == 2

    async def test_unknown_conversation_id_creates_new(self, store):
        conversation_id = await TurnCompletionHandler(store).complete(
            _turn(user_text="hi", assistant_text="hello", conversation_id="conv_gone")
        )
        assert conversation_id != "conv_gone"
        assert await store.get_conversation("user_a", conversation_id) is not None


class TestDeduplication:

    async def test_regeneration_does_not_duplicate_user_message(self, store):
        conversation_id = await store.create_conversation("user_a", "m")
        await store.append_message(conversation_id, "user", "X")

        await TurnCompletionHandler(store).complete(
            _turn(user_text="X", assistant_text="new answer", conversation_id=conversation_id)
        )

        messages = await store.list_messages("user_a", conversation_id)
        assert [(m.role, m.content) for m in messages] == [("user", "X"), ("assistant", "new answer")]

    async def test_different_text_is_appended(self, store):
        conversation_id = await store.create_conversation("user_a", "m")
        await store.append_message(conversation_id, "user", "X")

        await TurnCompletionHandler(store).complete(
            _turn(user_text="Y", assistant_text="answer", conversation_id=conversation_id)
        )

        messages = await store.list_messages("user_a", conversation_id)
        assert [m.content for m in messages] == ["X", "Y", "answer"]

    async def test_same_text_after_assistant_is_a_new_turn(self, store):
        conversation_id = await store.create_conversation("user_a", "m")
        await store.append_message(conversation_id, "user", "X")
        await store.append_message(conversation_id, "assistant", "first")

        await TurnCompletionHandler(store).complete(
            _turn(user_text="X", assistant_text="second", conversation_id=conversation_id)
        )

        messages = await store.list_messages("user_a", conversation_id)
        assert [m.content for m in messages] == ["X", "first", "X", "second"]

    async def test_user_attachments_persisted(self, store):
        attachment = Attachment(
            id="chat-uploads/cat.png",
            type="image",
            mime_type="image/png",
            secure_url="https://res.example.com/cat.png",
        )
        conversation_id = await TurnCompletionHandler(store).complete(
            _turn(user_text="看这张图", assistant_text="一只猫", attachments=[attachment])
        )

        messages = await store.list_messages("user_a", conversation_id)
        assert messages[0].attachments == [attachment]
        assert messages[1].attachments == []


class TestAssistantTurn:

    async def test_empty_assistant_text_not_persisted(self, store):
        conversation_id = await TurnCompletionHandler(store).complete(
            _turn(user_text="hi", assistant_text="")
        )

        messages = await store.list_messages("user_a", conversation_id)
        assert [(m.role, m.content) for m in messages] == [("user", "hi")]

    async def test_partial_stream_text_is_persisted(self, store):
        events = text_events("one ", "two ", "three ", "four ", "five")
        relay = StreamRelay(FakeSource(events, fail_after=4))
        async for _ in relay:
            pass

        conversation_id = await TurnCompletionHandler(store).complete(
            _turn(user_text="count to five", assistant_text=relay.text)
        )

        messages = await store.list_messages("user_a", conversation_id)
        assert messages[-1].role == "assistant"
        assert messages[-1].content == "one two "


class TestTitle:

    async def test_title_from_first_line_on_first_turn(self, store):
        conversation_id = await store.create_conversation("user_a", "m")
        text = "Hello world, this is a very long first line exceeding sixty characters for sure\nsecond line"

        await TurnCompletionHandler(store).complete(
            _turn(user_text=text, assistant_text="ok", conversation_id=conversation_id)
        )

        conversation = await store.get_conversation("user_a", conversation_id)
        assert conversation.title == text.split("\n")[0][:60]

    async def test_multiline_title(self, store):
        conversation_id = await TurnCompletionHandler(store).complete(
            _turn(
                user_text="Hello\nworld, this is a very long first line exceeding sixty characters for sure",
                assistant_text="ok",
            )
        )
        conversation = await store.get_conversation("user_a", conversation_id)
        assert conversation.title == "Hello"

    async def test_existing_title_kept_for_supplied_conversation(self, store):
        conversation_id = await store.create_conversation("user_a", "m", title="My chat")
        await TurnCompletionHandler(store).complete(
            _turn(user_text="another question", assistant_text="ok", conversation_id=conversation_id)
        )
        conversation = await store.get_conversation("user_a", conversation_id)
        assert conversation.title == "My chat"

    async def test_blank_title_replaced(self, store):
        conversation_id = await store.create_conversation("user_a", "m", title="   ")
        await TurnCompletionHandler(store).complete(
            _turn(user_text="question", assistant_text="ok", conversation_id=conversation_id)
        )
        conversation = await store.get_conversation("user_a", conversation_id)
        assert conversation.title == "question"

    async def test_no_user_text_leaves_title(self, store):
        conversation_id = await store.create_conversation("user_a", "m")
        await TurnCompletionHandler(store).complete(
            _turn(user_text="", assistant_text="ok", conversation_id=conversation_id)
        )
        conversation = await store.get_conversation("user_a", conversation_id)
        assert conversation.title is None


class TestFinalize:

    async def test_returns_conversation_id(self, store):
        handler = TurnCompletionHandler(store)
        conversation_id = await handler.finalize(_turn(user_text="hi", assistant_text="hello"))
        assert conversation_id is not None
        assert handler.state == TurnState.DONE

    async def test_persistence_failure_is_swallowed(self, store):
        store.append_message = AsyncMock(side_effect=RuntimeError("disk full"))
        handler = TurnCompletionHandler(store)

        result = await handler.finalize(_turn(user_text="hi", assistant_text="hello"))

        assert result is None
        assert handler.state == TurnState.PERSIST_USER_TURN

    async def test_failure_in_assistant_step_keeps_user_turn(self, store):
        original = store.append_message

        async def fail_on_assistant(conversation_id, role, content, attachments=None):
            if role == "assistant":
                raise RuntimeError("write failed")
            return await original(conversation_id, role, content, attachments)

        store.append_message = fail_on_assistant
        conversation_id = await store.create_conversation("user_a", "m")
        handler = TurnCompletionHandler(store)

        result = await handler.finalize(
            _turn(user_text="hi", assistant_text="hello", conversation_id=conversation_id)
        )

        assert result is None
        assert handler.state == TurnState.PERSIST_ASSISTANT_TURN
        messages = await store.list_messages("user_a", conversation_id)
        assert [m.role for m in messages] == ["user"]

    async def test_failure_log_carries_resolved_conversation_id(self, store, monkeypatch):
        fake_logger = MagicMock()
        monkeypatch.setattr(completion, "logger", fake_logger)
        store.append_message = AsyncMock(side_effect=RuntimeError("disk full"))
        handler = TurnCompletionHandler(store)

        await handler.finalize(_turn(user_text="hi", assistant_text="hello"))

        assert handler.conversation_id.startswith("conv_")
        kwargs = fake_logger.exception.call_args.kwargs
        assert kwargs["conversation_id"] == handler.conversation_id
        assert kwargs["requested_id"] is None

    async def test_persistence_runs_bound_to_resolved_conversation(self, store):
        foreign = await store.create_conversation("user_b", "m")
        original = store.append_message
        bound = []

        async def recording_append(conversation_id, role, content, attachments=None):
            bound.append((conversation_id, conversation_id_var.get(), user_id_var.get()))
            return await original(conversation_id, role, content, attachments)

        store.append_message = recording_append
        handler = TurnCompletionHandler(store)

        conversation_id = await handler.finalize(
            _turn(user_text="hi", assistant_text="hello", conversation_id=foreign)
        )

        assert conversation_id != foreign
        assert bound == [(conversation_id, conversation_id, "user_a")] * 2
        assert conversation_id_var.get() is None

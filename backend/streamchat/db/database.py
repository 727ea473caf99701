"""数据库连接和操作

ConversationStore 持有一个在应用启动时打开的 aiosqlite 连接（lifespan 中创建，
挂在 app.state 上），所有组件通过构造参数拿到同一个 store 实例。
"""
import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import aiosqlite

from ..utils.structured_logger import get_logger
from .models import Attachment, Conversation, Message, Role

logger = get_logger(__name__)

# 定宽时间格式：字符串字典序 == 时间顺序
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT,
    model TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    attachments TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
ON messages(conversation_id, created_at);

CREATE INDEX IF NOT EXISTS idx_conversations_user_updated
ON conversations(user_id, updated_at DESC);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db_time(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def from_db_time(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT)


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        model=row["model"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _row_to_message(row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        attachments=[Attachment.model_validate(a) for a in json.loads(row["attachments"] or "[]")],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


class ConversationStore:
    """对话与消息的持久化存储

    - 对话只对所属用户可见（所有读操作都带 user_id 过滤）
    - 同一对话内消息的 created_at 严格递增，读取按 (created_at, seq) 排序
    - 消息插入与对话 updated_at 更新在同一次提交中完成
    """

    def __init__(self, db: aiosqlite.Connection, clock=utcnow):
        self.db = db
        self._clock = clock
        # 同一连接上的写操作串行执行（保证时间戳单调）
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: str, clock=utcnow) -> "ConversationStore":
        """打开连接并初始化表结构"""
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        db = await aiosqlite.connect(path)
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        store = cls(db, clock=clock)
        await store.init_db()
        logger.info("数据库已连接", path=path)
        return store

    async def close(self):
        await self.db.close()
        logger.info("数据库连接已关闭")

    async def init_db(self):
        """初始化数据库（创建表和索引）"""
        await self.db.executescript(SCHEMA)
        await self.db.commit()

    # ==================== 对话 ====================

    async def create_conversation(self, user_id: str, model: str, title: Optional[str] = None) -> str:
        """创建新对话，返回对话ID"""
        conversation_id = f"conv_{uuid.uuid4().hex}"
        now = to_db_time(self._clock())

        async with self._write_lock:
            await self.db.execute("""
                INSERT INTO conversations (id, user_id, title, model, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (conversation_id, user_id, title, model, now, now))
            await self.db.commit()

        logger.info("创建对话", conversation_id=conversation_id, user_id=user_id, model=model)
        return conversation_id

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        """获取用户的所有对话（按更新时间倒序）"""
        cursor = await self.db.execute("""
            SELECT * FROM conversations
            WHERE user_id = ?
            ORDER BY updated_at DESC
        """, (user_id,))
        rows = await cursor.fetchall()
        return [_row_to_conversation(row) for row in rows]

    async def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        """按所属用户获取单个对话，不属于该用户时返回 None"""
        cursor = await self.db.execute("""
            SELECT * FROM conversations WHERE id = ? AND user_id = ?
        """, (conversation_id, user_id))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_conversation(row)

    async def update_title(self, conversation_id: str, title: str):
        """更新对话标题"""
        async with self._write_lock:
            await self.db.execute("""
                UPDATE conversations SET title = ?, updated_at = MAX(updated_at, ?) WHERE id = ?
            """, (title, to_db_time(self._clock()), conversation_id))
            await self.db.commit()

    async def delete_conversation(self, user_id: str, conversation_id: str) -> bool:
        """删除对话及其全部消息"""
        async with self._write_lock:
            cursor = await self.db.execute("""
                DELETE FROM conversations WHERE id = ? AND user_id = ?
            """, (conversation_id, user_id))
            deleted = cursor.rowcount > 0
            if deleted:
                # 外键级联之外再显式清理一次（兼容未开启 foreign_keys 的连接）
                await self.db.execute("""
                    DELETE FROM messages WHERE conversation_id = ?
                """, (conversation_id,))
            await self.db.commit()

        if deleted:
            logger.info("删除对话", conversation_id=conversation_id)
        return deleted

    # ==================== 消息 ====================

    async def append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> str:
        """追加消息，返回消息ID

        新消息的 created_at 严格大于该对话已有的所有消息；同时刷新对话的 updated_at。
        """
        message_id = f"msg_{uuid.uuid4().hex}"
        attachments_json = json.dumps(
            [a.model_dump(by_alias=True, exclude_none=True) for a in attachments or []],
            ensure_ascii=False,
        )

        async with self._write_lock:
            cursor = await self.db.execute("""
                SELECT MAX(created_at) AS last_created FROM messages WHERE conversation_id = ?
            """, (conversation_id,))
            row = await cursor.fetchone()

            now = self._clock()
            if row and row["last_created"]:
                last = from_db_time(row["last_created"])
                if now <= last:
                    now = last + timedelta(microseconds=1)
            stamp = to_db_time(now)

            await self.db.execute("""
                INSERT INTO messages (id, conversation_id, role, content, attachments, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (message_id, conversation_id, role, content, attachments_json, stamp, stamp))
            await self.db.execute("""
                UPDATE conversations SET updated_at = MAX(updated_at, ?) WHERE id = ?
            """, (stamp, conversation_id))
            await self.db.commit()

        logger.debug("追加消息", conversation_id=conversation_id, message_id=message_id, role=role)
        return message_id

    async def list_messages(self, user_id: str, conversation_id: str) -> List[Message]:
        """获取对话的全部消息（按创建时间升序），对话不存在或不属于该用户时返回空列表"""
        conversation = await self.get_conversation(user_id, conversation_id)
        if not conversation:
            return []

        cursor = await self.db.execute("""
            SELECT * FROM messages
            WHERE conversation_id = ?
            ORDER BY created_at ASC, seq ASC
        """, (conversation_id,))
        rows = await cursor.fetchall()
        return [_row_to_message(row) for row in rows]

    async def get_message(self, conversation_id: str, message_id: str) -> Optional[Message]:
        cursor = await self.db.execute("""
            SELECT * FROM messages WHERE id = ? AND conversation_id = ?
        """, (message_id, conversation_id))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_message(row)

    async def update_message_content(self, message_id: str, content: str):
        """修改消息内容（仅编辑路径使用）"""
        async with self._write_lock:
            await self.db.execute("""
                UPDATE messages SET content = ?, updated_at = ? WHERE id = ?
            """, (content, to_db_time(self._clock()), message_id))
            await self.db.commit()

    async def delete_messages_after(self, conversation_id: str, created_at: datetime) -> int:
        """删除对话中 created_at 严格大于给定时间的所有消息，返回删除条数"""
        async with self._write_lock:
            cursor = await self.db.execute("""
                DELETE FROM messages WHERE conversation_id = ? AND created_at > ?
            """, (conversation_id, to_db_time(created_at)))
            await self.db.commit()
        return cursor.rowcount

    async def edit_message_and_prune(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        created_at: datetime,
    ) -> int:
        """修改消息内容并删除其后的所有消息，返回删除条数

        两条语句在同一事务中提交，任一失败则整体回滚
        """
        async with self._write_lock:
            try:
                await self.db.execute("""
                    UPDATE messages SET content = ?, updated_at = ?
                    WHERE id = ? AND conversation_id = ?
                """, (content, to_db_time(self._clock()), message_id, conversation_id))
                cursor = await self.db.execute("""
                    DELETE FROM messages WHERE conversation_id = ? AND created_at > ?
                """, (conversation_id, to_db_time(created_at)))
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return cursor.rowcount

    async def delete_message(self, message_id: str) -> int:
        """删除单条消息，返回删除条数"""
        async with self._write_lock:
            cursor = await self.db.execute("""
                DELETE FROM messages WHERE id = ?
            """, (message_id,))
            await self.db.commit()
        return cursor.rowcount

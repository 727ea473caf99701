"""FastAPI 主应用"""
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .ai.context_window import default_window
from .ai.langfuse_config import init_langfuse
from .ai.provider import ChatModelProvider, ProviderFileUploader
from .api import chat, conversations, health, messages, uploads
from .auth import HeaderIdentityProvider
from .blob_storage import CloudinarySigner
from .config import config
from .db.database import ConversationStore
from .errors import StreamChatError
from .utils.structured_logger import LogContext, get_logger, setup_structured_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """管理应用生命周期：启动时打开数据库连接，关闭时释放"""
    init_langfuse()
    store = await ConversationStore.open(config.DATABASE_PATH)
    app.state.store = store
    logger.info("应用已启动", database=config.DATABASE_PATH, default_model=config.DEFAULT_MODEL)

    try:
        yield  # 应用运行期间
    finally:
        await store.close()
        logger.info("应用已关闭")


class RequestContextMiddleware:
    """为每个请求分配 request_id，并写入响应头 X-Request-Id

    纯 ASGI 实现，不缓冲流式响应
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers") or [])
        request_id = headers.get(b"x-request-id", b"").decode("latin-1") or f"req_{uuid.uuid4().hex[:16]}"

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                message["headers"] = list(message.get("headers", [])) + [
                    (b"x-request-id", request_id.encode("latin-1"))
                ]
            await send(message)

        with LogContext(request_id=request_id):
            await self.app(scope, receive, send_with_request_id)


async def handle_streamchat_error(request: Request, exc: StreamChatError):
    if exc.status_code >= 500:
        logger.error("请求失败", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def handle_validation_error(request: Request, exc: RequestValidationError):
    """缺少字段或字段类型错误：返回 400 并列出字段名"""
    fields = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append(".".join(loc) or "body")
    detail = f"invalid or missing fields: {', '.join(fields)}" if fields else "invalid request"
    return JSONResponse(status_code=400, content={"detail": detail, "fields": fields})


def create_app(configure_logging: bool = True) -> FastAPI:
    """创建 FastAPI 应用"""
    if configure_logging:
        setup_structured_logging(
            log_level=config.LOG_LEVEL,
            log_dir=config.LOG_DIR,
            enable_json=config.LOG_JSON,
            enable_file=config.LOG_TO_FILE,
            max_bytes=config.LOG_MAX_BYTES,
            backup_count=config.LOG_BACKUP_COUNT,
        )

    app = FastAPI(
        title="StreamChat API",
        description="流式对话后端：对话存储、流式转发、编辑与重新生成",
        version=__version__,
        lifespan=lifespan,
    )

    # 外部协作方（测试中可以替换）
    app.state.identity = HeaderIdentityProvider()
    app.state.provider = ChatModelProvider()
    app.state.file_uploader = ProviderFileUploader()
    app.state.signer = CloudinarySigner()
    app.state.context_window = default_window()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(StreamChatError, handle_streamchat_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    # 注册路由
    app.include_router(health.router, prefix="/api", tags=["健康检查"])
    app.include_router(chat.router, prefix="/api", tags=["聊天"])
    app.include_router(conversations.router, prefix="/api", tags=["对话"])
    app.include_router(messages.router, prefix="/api", tags=["消息"])
    app.include_router(uploads.router, prefix="/api", tags=["上传"])

    @app.get("/")
    async def root():
        """根路径"""
        return {
            "message": "StreamChat API",
            "docs": "/docs",
            "health": "/api/health"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

"""配置管理"""
import os
from pathlib import Path
from dotenv import load_dotenv

# 显式加载 backend/.env 文件（确保无论从哪个目录启动都能找到）
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """应用配置"""

    # 数据库（SQLite 文件路径，测试时可用 :memory:）
    DATABASE_PATH = os.getenv(
        "DATABASE_PATH",
        str(Path(__file__).parent.parent / "data" / "conversations.db")
    )

    # 模型选择
    # DEFAULT_MODEL: 纯文本对话使用的模型
    # VISION_MODEL: 消息带图片时使用的多模态模型
    DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", "deepseek-chat")
    VISION_MODEL = os.getenv("VISION_MODEL", "Qwen/Qwen3-VL-8B-Instruct")
    SUPPORTED_MODELS = [
        m.strip()
        for m in os.getenv(
            "SUPPORTED_MODELS",
            "deepseek-chat,deepseek-reasoner,Qwen/Qwen3-VL-8B-Instruct"
        ).split(",")
        if m.strip()
    ]
    MODEL_TEMPERATURE = float(os.getenv("MODEL_TEMPERATURE", "0.7"))
    MODEL_MAX_TOKENS = int(os.getenv("MODEL_MAX_TOKENS", "2048"))

    # DeepSeek LLM
    DEEPSEEK_API_KEY = os.getenv("DEEPSEEK_API_KEY")

    # OpenAI 兼容接口（视觉模型 + 文件上传）
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.siliconflow.cn/v1")
    PROVIDER_FILE_PURPOSE = os.getenv("PROVIDER_FILE_PURPOSE", "user_data")

    # 上下文窗口：每轮最多发送给模型的消息条数
    CONTEXT_MAX_MESSAGES = int(os.getenv("CONTEXT_MAX_MESSAGES", "30"))

    # 对话标题最大长度（取首条用户消息第一行）
    TITLE_MAX_LENGTH = int(os.getenv("TITLE_MAX_LENGTH", "60"))

    # 身份：上游身份网关写入的用户ID请求头
    USER_ID_HEADER = os.getenv("USER_ID_HEADER", "X-User-Id")

    # Cloudinary 签名上传
    CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
    CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY")
    CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET")
    UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", "chat-uploads")
    UPLOAD_SIGNATURE_TTL = int(os.getenv("UPLOAD_SIGNATURE_TTL", "3600"))
    MAX_UPLOAD_SIZE_MB = int(os.getenv("MAX_UPLOAD_SIZE_MB", "20"))

    # 日志
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", str(Path(__file__).parent.parent / "logs"))
    LOG_JSON = _get_bool("LOG_JSON", "true")
    LOG_TO_FILE = _get_bool("LOG_TO_FILE", "true")
    LOG_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", str(20 * 1024 * 1024)))
    LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))

    # LangFuse 追踪（密钥为空时不启用）
    LANGFUSE_PUBLIC_KEY = os.getenv("LANGFUSE_PUBLIC_KEY")
    LANGFUSE_SECRET_KEY = os.getenv("LANGFUSE_SECRET_KEY")
    LANGFUSE_HOST = os.getenv("LANGFUSE_HOST") or os.getenv("LANGFUSE_BASE_URL", "https://cloud.langfuse.com")

    # CORS
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


config = Config()

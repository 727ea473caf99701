"""文件存储（Cloudinary）签名上传

服务端不接触文件字节：只给客户端签发一次性上传参数，
客户端直传后把得到的 URL 作为 Attachment.secure_url 随消息提交。
"""
import hashlib
import time
from typing import Optional

from pydantic import Field

from .config import config
from .db.models import CamelModel
from .errors import UpstreamProviderError


class UploadSignature(CamelModel):
    """签名上传参数"""
    upload_url: str = Field(..., description="上传地址")
    cloud_name: str
    api_key: str
    folder: str
    timestamp: int
    signature: str
    expires_at: int = Field(..., description="签名过期时间（unix秒）")


class CloudinarySigner:
    """Cloudinary 签名：sha1("folder=<f>&timestamp=<t>" + api_secret)"""

    def __init__(
        self,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        ttl: Optional[int] = None,
    ):
        self.cloud_name = cloud_name or config.CLOUDINARY_CLOUD_NAME
        self.api_key = api_key or config.CLOUDINARY_API_KEY
        self.api_secret = api_secret or config.CLOUDINARY_API_SECRET
        self.ttl = ttl or config.UPLOAD_SIGNATURE_TTL

    def sign(self, folder: str, timestamp: Optional[int] = None) -> UploadSignature:
        if not self.cloud_name or not self.api_key or not self.api_secret:
            raise UpstreamProviderError("Cloudinary env not set", status_code=500)

        timestamp = timestamp or int(time.time())
        params_to_sign = f"folder={folder}&timestamp={timestamp}"
        signature = hashlib.sha1((params_to_sign + self.api_secret).encode("utf-8")).hexdigest()

        return UploadSignature(
            upload_url=f"https://api.cloudinary.com/v1_1/{self.cloud_name}/auto/upload",
            cloud_name=self.cloud_name,
            api_key=self.api_key,
            folder=folder,
            timestamp=timestamp,
            signature=signature,
            expires_at=timestamp + self.ttl,
        )

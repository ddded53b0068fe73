"""
Billing Service — ブロブストア

請求書ドキュメントを S3 互換オブジェクトストレージ (MinIO) に保存する。
boto3 のクライアントは同期 API のため、put_object はスレッドプールで実行する。
"""

import asyncio
import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ...common.errors import UpstreamUnavailable
from .config import Settings

logger = logging.getLogger(__name__)


def make_s3_client(settings: Settings):
    """MinIO 向けにパス形式 (endpoint/bucket/key) でアクセスするクライアント"""
    return boto3.client(
        "s3",
        endpoint_url=settings.blob_endpoint,
        aws_access_key_id=settings.blob_access_key,
        aws_secret_access_key=settings.blob_secret_key,
        region_name=settings.blob_region,
        config=Config(
            s3={"addressing_style": "path"},
            connect_timeout=settings.http_timeout,
            read_timeout=settings.http_timeout,
            retries={"max_attempts": 2},
        ),
    )


class BlobStore:
    def __init__(self, client, bucket: str, public_url: str) -> None:
        self.client = client
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")

    def url_for(self, key: str) -> str:
        """利用者が解決できるドキュメント URL"""
        return f"{self.public_url}/{self.bucket}/{key}"

    async def put(self, key: str, body: bytes, content_type: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self.client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type,
                ),
            )
        except (BotoCoreError, ClientError) as e:
            raise UpstreamUnavailable(f"Blob upload failed for {key}: {e}") from e
        logger.info("Stored s3://%s/%s", self.bucket, key)

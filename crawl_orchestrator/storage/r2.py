"""Raw HTML archive in a Cloudflare R2 bucket, spoken to through the S3 API."""

from __future__ import annotations

from dataclasses import dataclass

import boto3
from botocore.config import Config

from crawl_orchestrator.config import Settings
from crawl_orchestrator.monitoring.logging_utils import get_event_logger

log_event = get_event_logger("r2")


@dataclass(frozen=True)
class R2Config:
    bucket_name: str
    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    region: str


def r2_config_from_settings() -> R2Config | None:
    if not Settings.r2_upload:
        return None
    required = {
        "R2_ACCOUNT_ID": Settings.r2_account_id,
        "R2_ACCESS_KEY_ID": Settings.r2_access_key_id,
        "R2_SECRET_ACCESS_KEY": Settings.r2_secret_access_key,
        "R2_BUCKET_NAME": Settings.r2_bucket_name,
    }
    missing = sorted(name for name, value in required.items() if not value)
    if missing:
        log_event("r2_skip", reason="missing_env", missing=",".join(missing))
        return None
    return R2Config(
        bucket_name=Settings.r2_bucket_name,
        endpoint_url=Settings.r2_endpoint_url
        or f"https://{Settings.r2_account_id}.r2.cloudflarestorage.com",
        access_key_id=Settings.r2_access_key_id,
        secret_access_key=Settings.r2_secret_access_key,
        region=Settings.r2_region,
    )


class RawHtmlArchive:
    """Blocking uploader; callers run it off the event loop."""

    def __init__(self, config: R2Config, client: object | None = None) -> None:
        self.config = config
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.config.endpoint_url,
                aws_access_key_id=self.config.access_key_id,
                aws_secret_access_key=self.config.secret_access_key,
                config=Config(signature_version="s3v4"),
                region_name=self.config.region,
            )
        return self._client

    @staticmethod
    def object_key(crawl_id: str, url_digest: str) -> str:
        return f"raw/{crawl_id}/{url_digest}.html"

    def upload(self, crawl_id: str, url_digest: str, html: str) -> str:
        object_key = self.object_key(crawl_id, url_digest)
        self.client.put_object(
            Bucket=self.config.bucket_name,
            Key=object_key,
            Body=html.encode("utf-8"),
            ContentType="text/html; charset=utf-8",
        )
        return object_key


def archive_from_settings() -> RawHtmlArchive | None:
    config = r2_config_from_settings()
    if config is None:
        return None
    return RawHtmlArchive(config)

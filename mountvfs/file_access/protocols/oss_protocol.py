"""
Aliyun OSS adapter.

OSS exposes an S3-compatible API, so this reuses the S3 adapter with OSS
credentials, virtual-hosted addressing and a region taken from the endpoint
host (``oss-cn-hangzhou.aliyuncs.com`` -> ``oss-cn-hangzhou``).
"""
from typing import Any, Dict
from urllib.parse import urlparse

from botocore.config import Config
from pydantic import Field, field_validator

from mountvfs.file_access.base_fs import DriverConfig
from mountvfs.file_access.protocols.s3_protocol import S3ProtocolAdapter


class OSSConfig(DriverConfig):
    endpoint: str = Field(min_length=1)
    access_key_id: str = Field(alias="accessKeyId", min_length=1)
    access_key_secret: str = Field(alias="accessKeySecret", min_length=1)
    bucket: str = Field(min_length=1)
    prefix: str = ""

    @field_validator("endpoint")
    @classmethod
    def _add_scheme(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if "://" not in value:
            value = f"https://{value}"
        return value


def region_from_endpoint(endpoint: str) -> str:
    host = urlparse(endpoint).hostname or endpoint
    region = host.split(".", 1)[0]
    if region.endswith("-internal"):
        region = region[: -len("-internal")]
    return region


class OSSProtocolAdapter(S3ProtocolAdapter):
    """
    Aliyun OSS adapter (S3-compatible API).

    Configuration:
    {
        "endpoint": "oss-cn-hangzhou.aliyuncs.com",  # Required, scheme optional
        "accessKeyId": "LTAI...",                    # Required
        "accessKeySecret": "...",                    # Required
        "bucket": "media",                           # Required
        "prefix": "tenant_a/"                        # Optional key prefix
    }

    Same parent and move policies as the S3 adapter.
    """

    kind = "oss"
    config_model = OSSConfig

    def _client_kwargs(self) -> Dict[str, Any]:
        opts = self.options
        return {
            "aws_access_key_id": opts.access_key_id,
            "aws_secret_access_key": opts.access_key_secret,
            "endpoint_url": opts.endpoint,
            "config": Config(
                region_name=region_from_endpoint(opts.endpoint),
                signature_version="s3v4",
                s3={"addressing_style": "virtual"},
            ),
        }

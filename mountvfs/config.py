"""
Configuration management using Pydantic Settings.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="MOUNTVFS_", extra="ignore")
    LOG_LEVEL: str = "INFO"
    # JSON lines in production, human readable console output otherwise
    LOG_JSON: bool = True
    # JSON file with the mount table (see MountTable.from_file)
    MOUNTS_FILE: Optional[str] = None
    # Chunk size used by every driver stream and by the relay copy
    STREAM_CHUNK_SIZE: int = 64 * 1024
    # Payloads above this size spill from memory to a temporary file
    SPOOL_MAX_SIZE: int = 8 * 1024 * 1024
    SEARCH_MAX_DEPTH: int = 64
    # S3/OSS: payloads above the threshold go up as a multipart upload
    S3_MULTIPART_THRESHOLD: int = 8 * 1024 * 1024
    S3_PART_SIZE: int = 8 * 1024 * 1024
    # Microsoft Graph / OneDrive configuration
    MS_GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    MS_TOKEN_URL: str = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    ONEDRIVE_COPY_POLL_INTERVAL: float = 1.0

settings = Settings()

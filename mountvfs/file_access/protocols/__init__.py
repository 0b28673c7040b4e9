# mountvfs/file_access/protocols/__init__.py
"""
Protocol adapters for network and object storage.

Each adapter implements the StorageDriver interface for one wire protocol
(S3, OSS, FTP, SFTP, WebDAV).
"""

from mountvfs.file_access.protocols.ftp_protocol import FTPProtocolAdapter
from mountvfs.file_access.protocols.oss_protocol import OSSProtocolAdapter
from mountvfs.file_access.protocols.s3_protocol import S3ProtocolAdapter
from mountvfs.file_access.protocols.sftp_protocol import SFTPProtocolAdapter
from mountvfs.file_access.protocols.webdav_protocol import WebDAVProtocolAdapter

__all__ = [
    "FTPProtocolAdapter",
    "OSSProtocolAdapter",
    "S3ProtocolAdapter",
    "SFTPProtocolAdapter",
    "WebDAVProtocolAdapter",
]

"""Adapter modules for external integrations."""

from .blob_store import BlobStore, HttpBlobStore, download_file, filename_from_url
from .command_pipe import CommandPipeClient, PipeResponse
from .mqtt import MQTTClient, MQTTConnectionError

__all__ = [
    "BlobStore",
    "CommandPipeClient",
    "HttpBlobStore",
    "MQTTClient",
    "MQTTConnectionError",
    "PipeResponse",
    "download_file",
    "filename_from_url",
]

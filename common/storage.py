import json
from pathlib import Path
from typing import Dict, Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

# STORAGE_BACKEND determines which store (local/azure) get_blob_store returns.
from common.config import AZURE_CONN_STR, LOCAL_BLOB_DIR, STORAGE_BACKEND
from common.exceptions import StoreIOError

METADATA_DIR = ".metadata"  # sidecar folder for local blob metadata


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM STORE
# Used when STORAGE_BACKEND="local". One folder per container.
# ------------------------------------------------------------------------------

class LocalBlobStore:
    """Blob store backed by a directory: data/blobs/<container>/<name>."""

    def __init__(self, container: str, root: Optional[Path] = None):
        self.container = container
        self.root = Path(root or LOCAL_BLOB_DIR) / container
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        if not name or name.startswith("/") or ".." in Path(name).parts:
            raise StoreIOError(f"Invalid blob name: {name!r}")
        return self.root / name

    def _metadata_path(self, name: str) -> Path:
        return self.root / METADATA_DIR / f"{name}.json"

    def exists(self, name: str) -> bool:
        return self._path(name).is_file()

    def get(self, name: str) -> bytes:
        try:
            return self._path(name).read_bytes()
        except OSError as e:
            raise StoreIOError(f"Unable to read blob {self.container}/{name}: {e}") from e

    def get_metadata(self, name: str) -> Dict[str, str]:
        meta_path = self._metadata_path(name)
        if not self.exists(name):
            raise StoreIOError(f"Blob {self.container}/{name} does not exist")
        if not meta_path.exists():
            return {}
        return json.loads(meta_path.read_text())["metadata"]

    def put(self, name: str, data: bytes, metadata: Optional[Dict[str, str]] = None,
            content_type: str = "application/octet-stream") -> None:
        dest = self._path(name)
        meta_path = self._metadata_path(name)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(data)
            meta_path.parent.mkdir(parents=True, exist_ok=True)
            meta_path.write_text(json.dumps({"content_type": content_type, "metadata": dict(metadata or {})}, indent=2))
        except OSError as e:
            raise StoreIOError(f"Unable to write blob {self.container}/{name}: {e}") from e

    def delete_if_exists(self, name: str) -> None:
        try:
            self._path(name).unlink(missing_ok=True)
            self._metadata_path(name).unlink(missing_ok=True)
        except OSError as e:
            raise StoreIOError(f"Unable to delete blob {self.container}/{name}: {e}") from e


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE
# Used when STORAGE_BACKEND="azure".
# ------------------------------------------------------------------------------

def _get_azure_client(conn_str: Optional[str] = None) -> BlobServiceClient:
    """Creates a BlobServiceClient using the connection string."""
    conn_str = conn_str or AZURE_CONN_STR
    if not conn_str:
        raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return BlobServiceClient.from_connection_string(conn_str)


class AzureBlobStore:
    """Blob store over one Azure container."""

    def __init__(self, container: str, service_client: Optional[BlobServiceClient] = None):
        self.container = container
        client = service_client or _get_azure_client()
        self.container_client = client.get_container_client(container)

    def exists(self, name: str) -> bool:
        try:
            return self.container_client.get_blob_client(name).exists()
        except AzureError as e:
            raise StoreIOError(f"Unable to check blob {self.container}/{name}: {e}") from e

    def get(self, name: str) -> bytes:
        try:
            return self.container_client.get_blob_client(name).download_blob().readall()
        except ResourceNotFoundError as e:
            raise StoreIOError(f"Blob {self.container}/{name} does not exist") from e
        except AzureError as e:
            raise StoreIOError(f"Unable to read blob {self.container}/{name}: {e}") from e

    def get_metadata(self, name: str) -> Dict[str, str]:
        try:
            props = self.container_client.get_blob_client(name).get_blob_properties()
        except AzureError as e:
            raise StoreIOError(f"Unable to read metadata of {self.container}/{name}: {e}") from e
        return dict(props.metadata or {})

    def put(self, name: str, data: bytes, metadata: Optional[Dict[str, str]] = None,
            content_type: str = "application/octet-stream") -> None:
        blob_client = self.container_client.get_blob_client(name)
        try:
            blob_client.upload_blob(
                data,
                overwrite=True,
                metadata=dict(metadata or {}),
                content_settings=ContentSettings(content_type=content_type),
            )
        except AzureError as e:
            raise StoreIOError(f"Unable to write blob {self.container}/{name}: {e}") from e

    def delete_if_exists(self, name: str) -> None:
        try:
            self.container_client.get_blob_client(name).delete_blob()
        except ResourceNotFoundError:
            # already gone, e.g. a redelivered job
            return
        except AzureError as e:
            raise StoreIOError(f"Unable to delete blob {self.container}/{name}: {e}") from e


def get_blob_store(container: str):
    """Returns the blob store for STORAGE_BACKEND."""
    if STORAGE_BACKEND == "local":
        return LocalBlobStore(container)
    elif STORAGE_BACKEND == "azure":
        return AzureBlobStore(container)
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {STORAGE_BACKEND}")

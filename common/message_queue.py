import json
import time
from pathlib import Path
from typing import Optional

from azure.core.exceptions import AzureError
from azure.storage.queue import QueueClient
from pydantic import BaseModel

from common.config import AZURE_CONN_STR, LOCAL_QUEUE_DIR, STORAGE_BACKEND
from common.exceptions import StoreIOError

# How long a received Azure message stays hidden from other workers.
VISIBILITY_TIMEOUT = 300  # seconds


class QueueMessage(BaseModel):
    id: str
    content: str
    dequeue_count: int = 0
    pop_receipt: Optional[str] = None


# ------------------------------------------------------------------------------
# LOCAL FOLDER QUEUE
# Used when STORAGE_BACKEND="local". Each message is a JSON file; file names
# sort in arrival order.
# ------------------------------------------------------------------------------

class LocalQueue:
    _last_id = 0

    def __init__(self, name: str, root: Optional[Path] = None):
        self.name = name
        self.dir = Path(root or LOCAL_QUEUE_DIR) / name
        self.dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def _new_id(cls) -> str:
        # strictly increasing within the process, so file names keep arrival order
        cls._last_id = max(time.time_ns(), cls._last_id + 1)
        return f"{cls._last_id:020d}"

    def _write(self, message: QueueMessage) -> None:
        try:
            (self.dir / f"{message.id}.json").write_text(
                json.dumps({"content": message.content, "dequeue_count": message.dequeue_count})
            )
        except OSError as e:
            raise StoreIOError(f"Unable to write to queue {self.name}: {e}") from e

    def send(self, content: str) -> QueueMessage:
        message = QueueMessage(id=self._new_id(), content=content)
        self._write(message)
        return message

    def __len__(self) -> int:
        return len(list(self.dir.glob("*.json")))

    def receive(self) -> Optional[QueueMessage]:
        """
        Returns the oldest message, or None when the queue is empty.

        The message is moved to the back of the queue with its dequeue count
        bumped, so a message that keeps failing does not block the others.
        """
        files = sorted(self.dir.glob("*.json"))
        if not files:
            return None
        try:
            data = json.loads(files[0].read_text())
            files[0].unlink()
        except OSError as e:
            raise StoreIOError(f"Unable to read from queue {self.name}: {e}") from e

        message = QueueMessage(
            id=self._new_id(),
            content=data["content"],
            dequeue_count=data.get("dequeue_count", 0) + 1,
        )
        self._write(message)
        return message

    def delete(self, message: QueueMessage) -> None:
        try:
            (self.dir / f"{message.id}.json").unlink(missing_ok=True)
        except OSError as e:
            raise StoreIOError(f"Unable to delete message {message.id} from {self.name}: {e}") from e


# ------------------------------------------------------------------------------
# AZURE STORAGE QUEUE
# Used when STORAGE_BACKEND="azure".
# ------------------------------------------------------------------------------

def _get_queue_client(name: str, conn_str: Optional[str] = None) -> QueueClient:
    conn_str = conn_str or AZURE_CONN_STR
    if not conn_str:
        raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return QueueClient.from_connection_string(conn_str, name)


class AzureQueue:
    def __init__(self, name: str, queue_client: Optional[QueueClient] = None,
                 visibility_timeout: int = VISIBILITY_TIMEOUT):
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.queue_client = queue_client or _get_queue_client(name)

    def send(self, content: str) -> QueueMessage:
        try:
            sent = self.queue_client.send_message(content)
        except AzureError as e:
            raise StoreIOError(f"Unable to send to queue {self.name}: {e}") from e
        return QueueMessage(id=sent.id, content=content, pop_receipt=sent.pop_receipt)

    def receive(self) -> Optional[QueueMessage]:
        try:
            messages = self.queue_client.receive_messages(
                max_messages=1, visibility_timeout=self.visibility_timeout
            )
            msg = next(iter(messages), None)
        except AzureError as e:
            raise StoreIOError(f"Unable to receive from queue {self.name}: {e}") from e
        if msg is None:
            return None
        return QueueMessage(
            id=msg.id,
            content=msg.content,
            dequeue_count=msg.dequeue_count or 0,
            pop_receipt=msg.pop_receipt,
        )

    def delete(self, message: QueueMessage) -> None:
        try:
            self.queue_client.delete_message(message.id, message.pop_receipt)
        except AzureError as e:
            raise StoreIOError(f"Unable to delete message {message.id} from {self.name}: {e}") from e


def get_queue(name: str):
    """Returns the queue for STORAGE_BACKEND."""
    if STORAGE_BACKEND == "local":
        return LocalQueue(name)
    elif STORAGE_BACKEND == "azure":
        return AzureQueue(name)
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {STORAGE_BACKEND}")

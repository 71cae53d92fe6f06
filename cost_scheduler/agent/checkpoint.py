# =============================================================================
# COST OPTIMIZATION SCHEDULER - AGENT CHECKPOINT STORE
# =============================================================================
"""
Checkpoint Store

Durable checkpointing for agent conversations. ``PersistentSaver`` keeps
LangGraph's in-memory checkpointer as the working copy and mirrors every
thread to a ``CheckpointStore``:

    - FileCheckpointStore: one pickle file per thread under ``data_dir``
    - DynamoCheckpointStore: one item per thread in a DynamoDB table

A thread is loaded from the store on first access, so a restarted process
resumes conversations (including ones interrupted for tool approval).
"""

import asyncio
import logging
import os
import pickle
import re
import threading
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Sequence, Tuple

import boto3
from boto3.dynamodb.types import Binary
from botocore.exceptions import BotoCoreError, ClientError
from langgraph.checkpoint.base import BaseCheckpointSaver, CheckpointTuple
from langgraph.checkpoint.memory import InMemorySaver


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class CheckpointError(Exception):
    """Raised when a checkpoint store cannot be read or written."""
    pass


# =============================================================================
# STORES
# =============================================================================

class CheckpointStore(ABC):
    """Stores one opaque snapshot per conversation thread."""

    @abstractmethod
    def load(self, thread_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def save(self, thread_id: str, snapshot: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def delete(self, thread_id: str) -> None:
        pass


class FileCheckpointStore(CheckpointStore):
    """
    File-based checkpoint persistence.

    Each thread lives in ``<data_dir>/checkpoint_<safe thread id>.pkl`` and is
    written atomically through a temporary file.
    """

    def __init__(self, data_dir: str = "./data"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger("cost_scheduler.agent.checkpoint.file")

    def path_for(self, thread_id: str) -> Path:
        safe_id = re.sub(r"[^a-zA-Z0-9-]", "_", thread_id)
        return self.data_dir / f"checkpoint_{safe_id}.pkl"

    def load(self, thread_id: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(thread_id)
        if not path.exists():
            return None
        try:
            with path.open("rb") as f:
                return pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError) as e:
            self.logger.warning(f"Ignoring unreadable checkpoint file {path}: {e}")
            return None

    def save(self, thread_id: str, snapshot: Dict[str, Any]) -> None:
        path = self.path_for(thread_id)
        temp_path = path.with_suffix(".tmp")
        try:
            with temp_path.open("wb") as f:
                pickle.dump(snapshot, f, protocol=pickle.HIGHEST_PROTOCOL)
            temp_path.replace(path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise CheckpointError(f"Failed to write checkpoint for thread {thread_id}: {e}") from e

    def delete(self, thread_id: str) -> None:
        self.path_for(thread_id).unlink(missing_ok=True)


class DynamoCheckpointStore(CheckpointStore):
    """
    DynamoDB checkpoint persistence.

    Items are ``{<key_attribute>: thread_id, "snapshot": <zlib-compressed pickle>}``.
    """

    def __init__(
        self,
        table_name: str,
        region: Optional[str] = None,
        key_attribute: str = "thread_id",
        table=None,
    ):
        self.table_name = table_name
        self.key_attribute = key_attribute
        self.logger = logging.getLogger("cost_scheduler.agent.checkpoint.dynamodb")
        if table is None:
            resource = boto3.resource(
                "dynamodb",
                region_name=region or os.environ.get("AWS_REGION") or "ap-south-1",
            )
            table = resource.Table(table_name)
        self.table = table

    def load(self, thread_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.table.get_item(Key={self.key_attribute: thread_id})
        except (ClientError, BotoCoreError) as e:
            raise CheckpointError(f"Failed to load checkpoint for thread {thread_id}: {e}") from e

        item = response.get("Item")
        if not item:
            return None
        blob = item["snapshot"]
        data = blob.value if isinstance(blob, Binary) else blob
        return pickle.loads(zlib.decompress(data))

    def save(self, thread_id: str, snapshot: Dict[str, Any]) -> None:
        data = zlib.compress(pickle.dumps(snapshot, protocol=pickle.HIGHEST_PROTOCOL))
        try:
            self.table.put_item(Item={self.key_attribute: thread_id, "snapshot": Binary(data)})
        except (ClientError, BotoCoreError) as e:
            raise CheckpointError(f"Failed to save checkpoint for thread {thread_id}: {e}") from e

    def delete(self, thread_id: str) -> None:
        try:
            self.table.delete_item(Key={self.key_attribute: thread_id})
        except (ClientError, BotoCoreError) as e:
            raise CheckpointError(f"Failed to delete checkpoint for thread {thread_id}: {e}") from e


# =============================================================================
# PERSISTENT SAVER
# =============================================================================

class PersistentSaver(InMemorySaver):
    """
    In-memory LangGraph checkpointer mirrored to a ``CheckpointStore``.

    The async API runs the synchronous methods in a worker thread so store
    I/O never blocks the event loop.
    """

    def __init__(self, store: CheckpointStore, **kwargs):
        super().__init__(**kwargs)
        self.store = store
        self._loaded = set()
        self._lock = threading.RLock()

    @staticmethod
    def _thread_id(config) -> Optional[str]:
        return (config or {}).get("configurable", {}).get("thread_id")

    # -- snapshot handling ---------------------------------------------------

    def _snapshot(self, thread_id: str) -> Dict[str, Any]:
        return {
            "storage": {
                ns: dict(checkpoints)
                for ns, checkpoints in self.storage.get(thread_id, {}).items()
            },
            "writes": {key: dict(value) for key, value in self.writes.items() if key[0] == thread_id},
            "blobs": {key: value for key, value in self.blobs.items() if key[0] == thread_id},
        }

    def _restore(self, thread_id: str, snapshot: Dict[str, Any]) -> None:
        for ns, checkpoints in snapshot.get("storage", {}).items():
            self.storage[thread_id][ns].update(checkpoints)
        for key, value in snapshot.get("writes", {}).items():
            self.writes[key] = dict(value)
        self.blobs.update(snapshot.get("blobs", {}))

    def _ensure_loaded(self, thread_id: Optional[str]) -> None:
        if not thread_id or thread_id in self._loaded:
            return
        with self._lock:
            if thread_id in self._loaded:
                return
            snapshot = self.store.load(thread_id)
            if snapshot:
                self._restore(thread_id, snapshot)
                logger.debug(f"Loaded checkpoints for thread {thread_id}")
            self._loaded.add(thread_id)

    def _persist(self, thread_id: Optional[str]) -> None:
        if thread_id:
            with self._lock:
                self.store.save(thread_id, self._snapshot(thread_id))

    # -- sync API -------------------------------------------------------------

    def get_tuple(self, config) -> Optional[CheckpointTuple]:
        self._ensure_loaded(self._thread_id(config))
        return super().get_tuple(config)

    def list(self, config, *, filter=None, before=None, limit=None) -> Iterator[CheckpointTuple]:
        self._ensure_loaded(self._thread_id(config))
        yield from super().list(config, filter=filter, before=before, limit=limit)

    def put(self, config, checkpoint, metadata, new_versions):
        thread_id = self._thread_id(config)
        self._ensure_loaded(thread_id)
        result = super().put(config, checkpoint, metadata, new_versions)
        self._persist(thread_id)
        return result

    def put_writes(self, config, writes: Sequence[Tuple[str, Any]], task_id: str, task_path: str = "") -> None:
        thread_id = self._thread_id(config)
        self._ensure_loaded(thread_id)
        super().put_writes(config, writes, task_id, task_path)
        self._persist(thread_id)

    def delete_thread(self, thread_id: str) -> None:
        super().delete_thread(thread_id)
        with self._lock:
            self.store.delete(thread_id)
            self._loaded.discard(thread_id)

    # -- async API ------------------------------------------------------------

    async def aget_tuple(self, config) -> Optional[CheckpointTuple]:
        return await asyncio.to_thread(self.get_tuple, config)

    async def alist(self, config, *, filter=None, before=None, limit=None) -> AsyncIterator[CheckpointTuple]:
        items = await asyncio.to_thread(
            lambda: list(self.list(config, filter=filter, before=before, limit=limit))
        )
        for item in items:
            yield item

    async def aput(self, config, checkpoint, metadata, new_versions):
        return await asyncio.to_thread(self.put, config, checkpoint, metadata, new_versions)

    async def aput_writes(self, config, writes, task_id: str, task_path: str = "") -> None:
        await asyncio.to_thread(self.put_writes, config, writes, task_id, task_path)

    async def adelete_thread(self, thread_id: str) -> None:
        await asyncio.to_thread(self.delete_thread, thread_id)


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def create_checkpointer(config: Dict[str, Any]) -> BaseCheckpointSaver:
    """
    Create the agent checkpointer from the ``agent`` config section.

    - ``checkpoint_table`` set: DynamoDB-backed
    - ``data_dir`` set: file-backed
    - neither: in-memory only (lost on restart)
    """
    agent_config = config.get("agent", {})
    table_name = agent_config.get("checkpoint_table")
    data_dir = agent_config.get("data_dir")

    if table_name:
        logger.info(f"Using DynamoDB checkpointer with table {table_name}")
        region = agent_config.get("region") or config.get("store", {}).get("region")
        return PersistentSaver(DynamoCheckpointStore(table_name, region=region))

    if data_dir:
        logger.info(f"Using file checkpointer in {data_dir}")
        return PersistentSaver(FileCheckpointStore(data_dir))

    logger.info("Using in-memory checkpointer")
    return InMemorySaver()


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "CheckpointStore",
    "FileCheckpointStore",
    "DynamoCheckpointStore",
    "PersistentSaver",
    "create_checkpointer",
    "CheckpointError",
]

import json
import uuid
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional

from azure.core.exceptions import ResourceExistsError
from azure.identity import DefaultAzureCredential
from azure.storage.queue import QueueClient

logger = logging.getLogger("queue_service")


@dataclass
class QueueMessage:
    id: str
    body: Dict[str, Any]
    dequeue_count: int = 1
    pop_receipt: Optional[str] = None


class BatchQueue(ABC):
    """
    At-least-once task queue. A received message that is neither completed nor
    abandoned becomes visible again after its visibility timeout.
    """

    @abstractmethod
    async def enqueue(self, task: Dict[str, Any], delay: float = 0) -> str:
        ...

    @abstractmethod
    async def receive(self, max_messages: int = 1, visibility_timeout: int = 300) -> List[QueueMessage]:
        ...

    @abstractmethod
    async def complete(self, message: QueueMessage):
        ...

    @abstractmethod
    async def abandon(self, message: QueueMessage, delay: float = 0):
        ...

    async def renew(self, message: QueueMessage, visibility_timeout: int):
        """Keep a long-running message invisible. Queues without visibility timeouts do nothing."""


class AzureBatchQueue(BatchQueue):
    def __init__(self, connection_string: str, queue_name: str, account_name: str = ""):
        if connection_string:
            # Light logging without leaking full secret
            for part in connection_string.split(";"):
                if part.startswith("AccountName="):
                    account_name = part.split("=", 1)[1]
                    break
            self._client = QueueClient.from_connection_string(connection_string, queue_name)
        elif account_name:
            self._client = QueueClient(
                account_url=f"https://{account_name}.queue.core.windows.net",
                queue_name=queue_name,
                credential=DefaultAzureCredential(),
            )
        else:
            raise RuntimeError("AZURE_STORAGE_CONNECTION_STRING or AZURE_STORAGE_ACCOUNT_NAME is required for queue messaging")
        logger.info(f"[queue] connect account={account_name} queue={queue_name}")

        self.queue_name = queue_name
        try:
            self._client.create_queue()
        except ResourceExistsError:
            pass

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def enqueue(self, task, delay=0):
        message = json.dumps(task, ensure_ascii=False)
        logger.info(f"[queue] enqueue len={len(message)} payload_keys={list(task.keys())} delay={delay}s")
        sent = await self._call(
            self._client.send_message,
            message,
            visibility_timeout=int(delay) if delay else None,
        )
        return sent.id

    async def receive(self, max_messages=1, visibility_timeout=300):
        def _receive():
            out = []
            pages = self._client.receive_messages(
                messages_per_page=max_messages,
                visibility_timeout=visibility_timeout,
            )
            for msg in pages:
                out.append(msg)
                if len(out) >= max_messages:
                    break
            return out

        received = []
        for msg in await self._call(_receive):
            try:
                body = json.loads(msg.content)
            except json.JSONDecodeError:
                logger.error(f"[queue] dropping malformed message {msg.id}: {msg.content[:200]!r}")
                await self._call(self._client.delete_message, msg.id, msg.pop_receipt)
                continue
            received.append(
                QueueMessage(
                    id=msg.id,
                    body=body,
                    dequeue_count=msg.dequeue_count or 1,
                    pop_receipt=msg.pop_receipt,
                )
            )
        return received

    async def complete(self, message):
        await self._call(self._client.delete_message, message.id, message.pop_receipt)

    async def abandon(self, message, delay=0):
        updated = await self._call(
            self._client.update_message,
            message.id,
            message.pop_receipt,
            visibility_timeout=int(delay),
        )
        message.pop_receipt = updated.pop_receipt

    async def renew(self, message, visibility_timeout):
        await self.abandon(message, delay=visibility_timeout)


class InProcessBatchQueue(BatchQueue):
    """asyncio-backed queue for dev mode: nothing survives a restart."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Dict[str, QueueMessage] = {}

    def _put_later(self, message: QueueMessage, delay: float):
        loop = asyncio.get_running_loop()
        if delay > 0:
            loop.call_later(delay, self._queue.put_nowait, message)
        else:
            self._queue.put_nowait(message)

    async def enqueue(self, task, delay=0):
        message = QueueMessage(id=str(uuid.uuid4()), body=task, dequeue_count=0)
        self._put_later(message, delay)
        return message.id

    async def receive(self, max_messages=1, visibility_timeout=300):
        received = []
        while len(received) < max_messages and not self._queue.empty():
            message = self._queue.get_nowait()
            message.dequeue_count += 1
            self._pending[message.id] = message
            received.append(message)
        return received

    async def complete(self, message):
        self._pending.pop(message.id, None)

    async def abandon(self, message, delay=0):
        if self._pending.pop(message.id, None) is not None:
            self._put_later(message, delay)

    def qsize(self) -> int:
        return self._queue.qsize()

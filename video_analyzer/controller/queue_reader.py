from typing import List

from loguru import logger

from video_analyzer.services.queue_service import BatchQueue, QueueMessage


async def get_next_messages(queue: BatchQueue, max_messages: int, visibility_timeout: int) -> List[QueueMessage]:
    """
    Poll up to `max_messages` messages.
    Read errors are logged and yield an empty list; the poll loop tries again.
    """
    if max_messages <= 0:
        return []
    try:
        messages = await queue.receive(max_messages=max_messages, visibility_timeout=visibility_timeout)
    except Exception as e:
        logger.error(f"Queue read error: {e}")
        return []

    for msg in messages:
        logger.info(f"Received message {msg.id}: type={msg.body.get('type', 'process_video')} (dequeue #{msg.dequeue_count})")
    return messages


async def complete_safe(queue: BatchQueue, message: QueueMessage) -> bool:
    """Delete a finished message. A failure only means it will be delivered again."""
    try:
        await queue.complete(message)
        return True
    except Exception as e:
        logger.warning(f"Failed to delete message {message.id}: {e}")
        return False


async def abandon_safe(queue: BatchQueue, message: QueueMessage, delay: float = 0) -> bool:
    try:
        await queue.abandon(message, delay=delay)
        return True
    except Exception as e:
        logger.warning(f"Failed to release message {message.id}: {e}")
        return False


async def renew_safe(queue: BatchQueue, message: QueueMessage, visibility_timeout: int) -> bool:
    try:
        await queue.renew(message, visibility_timeout)
        return True
    except Exception as e:
        logger.warning(f"Failed to renew visibility for message {message.id}: {e}")
        return False

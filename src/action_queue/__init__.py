"""Durable, crash-safe work queue of pending pipeline triggers."""

from action_queue.queue import ActionQueue, QueueError, QueueItemSnapshot

__all__ = ["ActionQueue", "QueueError", "QueueItemSnapshot"]

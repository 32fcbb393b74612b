"""
Priority action router.

Critical actions (jog wheels) are sent synchronously on the calling thread.
High and normal actions go to two bounded FIFO queues drained by a dispatch
thread, one action per turn, strictly preferring the high queue. When a queue
is full the new action is dropped and counted; already queued actions are
kept. Delivery is fire-and-forget: a failed send is counted and never
retried.
"""

import threading
from collections import deque
from typing import Any, Callable, Mapping, Optional

from deckbridge.actions import Action, Priority, Target
from deckbridge.logging_config import get_logger

logger = get_logger(__name__)

Sender = Callable[[dict[str, Any]], bool]

DEFAULT_MAX_QUEUE_SIZE = 1000


class ActionRouter:
    """
    Routes actions to downstream senders by priority.

    Either a single ``send`` receives every message (the ``target`` field in
    the message lets the peer re-route), or ``senders`` holds one handle per
    target; a target without its own handle falls back to ``send``.
    """

    def __init__(
        self,
        send: Optional[Sender] = None,
        senders: Optional[Mapping[Target, Sender]] = None,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
    ):
        """
        Args:
            send: Default downstream send(message) -> bool
            senders: Per-target send functions
            max_queue_size: Bound of each of the high and normal queues
        """
        self._default_sender = send
        self._senders = dict(senders or {})
        self.max_queue_size = max_queue_size

        self._queues: dict[Priority, deque[Action]] = {Priority.HIGH: deque(), Priority.NORMAL: deque()}
        self._condition = threading.Condition()
        self._paused = False

        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._stats_lock = threading.Lock()
        self._total_actions = 0
        self._sent = 0
        self._failed = 0
        self._by_priority = {priority.value: 0 for priority in Priority}
        self._by_target = {target.value: 0 for target in Target}
        self._dropped = {priority.value: 0 for priority in Priority}

    # Submission

    def route(self, action: Action) -> bool:
        """
        Submit an action.

        Args:
            action: Translated action

        Returns:
            False if the action was rejected (no target/priority), dropped on
            overflow, or (for critical actions) failed to send
        """
        if action.target is None or action.priority is None:
            logger.warning(f"Invalid action received (missing target or priority): {action.type}/{action.command}")
            return False

        with self._stats_lock:
            self._total_actions += 1
            self._by_priority[action.priority.value] += 1
            self._by_target[action.target.value] += 1

        if action.priority == Priority.CRITICAL:
            return self._send(action)

        with self._condition:
            queue = self._queues[action.priority]
            if len(queue) >= self.max_queue_size:
                with self._stats_lock:
                    self._dropped[action.priority.value] += 1
                logger.warning(
                    f"Queue overflow ({action.priority.value}), dropping action {action.type}/{action.command} "
                    f"(queue size: {len(queue)})"
                )
                return False

            queue.append(action)
            self._condition.notify()

        logger.debug(f"Action queued: {action.priority.value} {action.target.value} {action.type}/{action.command}")
        return True

    # Dispatch

    def _next_action(self) -> Optional[Action]:
        # Strict priority: the normal queue waits until the high queue is empty
        for priority in (Priority.HIGH, Priority.NORMAL):
            queue = self._queues[priority]
            if queue:
                return queue.popleft()
        return None

    def dispatch_next(self) -> bool:
        """
        Send one queued action (high before normal).

        Returns:
            True if an action was taken off a queue
        """
        with self._condition:
            action = self._next_action()
        if action is None:
            return False
        self._send(action)
        return True

    def _send(self, action: Action) -> bool:
        sender = self._senders.get(action.target, self._default_sender)
        if sender is None:
            logger.warning(f"No client available for target: {action.target.value}")
            ok = False
        else:
            try:
                ok = bool(sender(action.to_message()))
            except Exception as e:
                logger.exception(f"Failed to send action {action.type}/{action.command} to {action.target.value}: {e}")
                ok = False

        with self._stats_lock:
            if ok:
                self._sent += 1
            else:
                self._failed += 1

        logger.debug(f"Action sent: {action.target.value} {action.type}/{action.command} success={ok}")
        return ok

    def _dispatch_loop(self) -> None:
        logger.debug("Action dispatch loop started")
        while self._running.is_set():
            with self._condition:
                while self._running.is_set() and (self._paused or not any(self._queues.values())):
                    self._condition.wait(timeout=0.1)
                if not self._running.is_set():
                    break
            self.dispatch_next()
        logger.debug("Action dispatch loop stopped")

    # Lifecycle

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._running.set()
        self._thread = threading.Thread(target=self._dispatch_loop, daemon=True, name="ActionDispatch")
        self._thread.start()
        logger.info("Action router started")

    def stop(self) -> None:
        self._running.clear()
        with self._condition:
            self._condition.notify_all()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
        logger.info("Action router stopped")

    def pause(self) -> None:
        with self._condition:
            self._paused = True
        logger.info("Action router paused")

    def resume(self) -> None:
        with self._condition:
            self._paused = False
            self._condition.notify_all()
        logger.info("Action router resumed")

    @property
    def is_paused(self) -> bool:
        return self._paused

    def clear_queues(self) -> dict[str, int]:
        """
        Discard everything queued.

        Returns:
            Number of actions cleared per queue
        """
        with self._condition:
            cleared = {priority.value: len(queue) for priority, queue in self._queues.items()}
            for queue in self._queues.values():
                queue.clear()
        logger.info(f"Queues cleared: {cleared}")
        return cleared

    # Observability

    def queue_sizes(self) -> dict[str, int]:
        with self._condition:
            return {priority.value: len(queue) for priority, queue in self._queues.items()}

    def queued_actions(self, priority: Priority) -> list[Action]:
        """Snapshot of one queue, oldest first."""
        with self._condition:
            return list(self._queues[priority])

    def get_stats(self) -> dict[str, Any]:
        queue_sizes = self.queue_sizes()
        with self._stats_lock:
            return {
                "total_actions": self._total_actions,
                "dropped_actions": sum(self._dropped.values()),
                "dropped_by_priority": dict(self._dropped),
                "actions_by_priority": dict(self._by_priority),
                "actions_by_target": dict(self._by_target),
                "sent": self._sent,
                "failed": self._failed,
                "queue_sizes": queue_sizes,
            }

    def log_stats(self) -> None:
        stats = self.get_stats()
        logger.info(
            f"Router stats: total={stats['total_actions']} sent={stats['sent']} failed={stats['failed']} "
            f"dropped={stats['dropped_actions']} queued={stats['queue_sizes']}"
        )

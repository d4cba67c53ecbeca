# chat_events.py
import json
import logging
import queue
import threading
import time

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 30
CONNECTION_TIMEOUT_SECONDS = 300

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def format_event(event_type: str, data) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


def format_heartbeat() -> str:
    return f":heartbeat {int(time.time() * 1000)}\n\n"


class EventBroker:
    """In-process fan-out of chat events to every open stream of a user."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers = {}

    def subscribe(self, user_id: int):
        """Returns (queue, is_first_connection)."""
        q = queue.Queue()
        with self._lock:
            queues = self._subscribers.setdefault(user_id, [])
            queues.append(q)
            first = len(queues) == 1
            total = self._total()
        logger.debug("SSE: user %s connected. Total connections: %s", user_id, total)
        return q, first

    def unsubscribe(self, user_id: int, q) -> bool:
        """Returns True when that was the user's last open stream."""
        with self._lock:
            queues = self._subscribers.get(user_id, [])
            if q not in queues:
                return False
            queues.remove(q)
            last = not queues
            if last:
                self._subscribers.pop(user_id, None)
            total = self._total()
        logger.debug("SSE: user %s disconnected. Total connections: %s", user_id, total)
        return last

    def publish(self, user_id: int, event_type: str, data) -> bool:
        with self._lock:
            queues = list(self._subscribers.get(user_id, []))
        for q in queues:
            q.put((event_type, data))
        return bool(queues)

    def publish_many(self, user_ids, event_type: str, data):
        for uid in user_ids:
            self.publish(uid, event_type, data)

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._subscribers.get(user_id))

    def _total(self):
        return sum(len(v) for v in self._subscribers.values())


broker = EventBroker()


# ── STREAM ───────────────────────────────────────────────────────────────
class EventStream:
    """Response body for one SSE connection.

    Subscribes on construction so events published before the first read are
    kept. Presence is announced to teammates on the first stream of a user and
    withdrawn when the last one closes.
    """

    def __init__(self, user_id: int, teammate_ids, event_broker: EventBroker = None,
                 heartbeat_interval=HEARTBEAT_INTERVAL_SECONDS,
                 idle_timeout=CONNECTION_TIMEOUT_SECONDS):
        self.user_id = user_id
        self.teammate_ids = list(teammate_ids)
        self.broker = event_broker or broker
        self.heartbeat_interval = heartbeat_interval
        self.idle_timeout = idle_timeout
        self.queue, first = self.broker.subscribe(user_id)
        if first:
            self.broker.publish_many(self.teammate_ids, "user_online",
                                     {"user_id": user_id, "is_online": True})

    def __iter__(self):
        last_activity = time.monotonic()
        try:
            yield format_event("connected", {"user_id": self.user_id})
            while True:
                try:
                    event_type, data = self.queue.get(timeout=self.heartbeat_interval)
                except queue.Empty:
                    if time.monotonic() - last_activity >= self.idle_timeout:
                        logger.debug("SSE: closing idle stream for user %s", self.user_id)
                        return
                    yield format_heartbeat()
                    continue
                last_activity = time.monotonic()
                yield format_event(event_type, data)
        finally:
            self.close()

    def close(self):
        if self.broker.unsubscribe(self.user_id, self.queue):
            self.broker.publish_many(self.teammate_ids, "user_offline",
                                     {"user_id": self.user_id, "is_online": False})

"""
Progress events: recent uninstall activity for the status API.

Kept in an in-memory ring buffer and, when REDIS_URL is set, appended to a
Redis Stream and published on a channel for dashboards. Redis is optional:
any failure there is logged and never affects the teardown.
"""

import json as _json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Optional

import redis

from uninstall_operator.config import settings
from uninstall_operator.models import ProgressEvent

logger = logging.getLogger("uninstall-operator")

STREAM_KEY = "uninstall:events"
EVENT_LOG_MAX = 50

_events: deque = deque(maxlen=EVENT_LOG_MAX)
_events_lock = threading.Lock()

# ---------------------------------------------------------------------------
# Redis sink (optional, degrades to the local buffer)
# ---------------------------------------------------------------------------
_sink: Optional[redis.Redis] = None
_sink_attempted = False


def _redis_sink() -> Optional[redis.Redis]:
    """Connect on the first event only; a failed connect disables forwarding for the run."""
    global _sink, _sink_attempted
    if _sink_attempted or not settings.REDIS_URL:
        return _sink
    _sink_attempted = True
    try:
        conn = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        conn.ping()
    except (redis.RedisError, ValueError) as e:
        logger.warning(f"Progress events stay local, Redis at {settings.REDIS_URL} unreachable: {e}")
        return None
    logger.info(f"Forwarding progress events to {STREAM_KEY} on {settings.REDIS_URL}")
    _sink = conn
    return _sink


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def publish(event_type: str, message: str, phase: str = ""):
    """Record a progress event locally and forward it to Redis if configured."""
    event = ProgressEvent(timestamp=_now(), event=event_type, phase=phase, message=message)
    with _events_lock:
        _events.append(event)

    r = _redis_sink()
    if r is None:
        return
    try:
        payload = event.model_dump()
        r.xadd(STREAM_KEY, payload, maxlen=500)
        r.publish(STREAM_KEY, _json.dumps(payload))
    except redis.RedisError as e:
        logger.debug(f"Redis publish failed (non-fatal): {e}")


def recent() -> list[ProgressEvent]:
    with _events_lock:
        return list(_events)


def clear():
    with _events_lock:
        _events.clear()

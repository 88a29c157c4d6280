import json
import logging
from datetime import datetime, timezone

import redis

from .config import HEALTH_STREAM_KEY

logger = logging.getLogger(__name__)

DIVERGENCE_CONFIRMED = "divergence-confirmed"
DIVERGENCE_RESOLVED = "divergence-resolved"
HEALTH_CHANGED = "health-changed"


class HealthEventPublisher:
    """Dispatches health transitions to a Redis stream for downstream consumers."""

    def __init__(self, client=None, stream_key: str = HEALTH_STREAM_KEY, node_url: str = ""):
        self.client = client
        self.stream_key = stream_key
        self.node_url = node_url

    @classmethod
    def from_url(cls, redis_url, stream_key: str = HEALTH_STREAM_KEY, node_url: str = ""):
        if not redis_url:
            return cls(None, stream_key, node_url)
        return cls(redis.Redis.from_url(redis_url, decode_responses=True), stream_key, node_url)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def publish(self, event: str, **fields):
        if self.client is None:
            return None
        msg = {"event": event, "node": self.node_url, "timestamp": datetime.now(timezone.utc).isoformat()}
        for key, value in fields.items():
            msg[key] = json.dumps(value) if isinstance(value, (dict, list)) else value
        cleaned_msg = {k: str(v) for k, v in msg.items() if v is not None}
        try:
            msg_id = self.client.xadd(self.stream_key, cleaned_msg)
            logger.info(f"[Events] Dispatched '{event}' to {self.stream_key}: {msg_id}")
            return msg_id
        except redis.exceptions.RedisError as e:
            logger.error(f"[Events] Failed to dispatch '{event}': {e}")
            return None

    def divergence_confirmed(self, details):
        return self.publish(
            DIVERGENCE_CONFIRMED,
            height=details.height,
            cause=details.cause,
            node_app_hash=details.node_app_hash,
            abci_app_hash=details.abci_app_hash,
        )

    def divergence_resolved(self, height=None):
        return self.publish(DIVERGENCE_RESOLVED, height=height)

    def health_changed(self, health):
        return self.publish(
            HEALTH_CHANGED,
            online=health.is_online,
            synced=health.is_synced,
            has_errors=health.has_errors,
            errors=health.error_messages,
        )

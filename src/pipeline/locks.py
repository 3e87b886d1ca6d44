"""Redis-based per-conversation lock guarding reply election and persistence."""

from __future__ import annotations

from dataclasses import dataclass
import uuid

from redis import Redis


LOCK_KEY_TEMPLATE = "relaydesk:{conversation_id}:dispatch:lock"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


def conversation_lock_key(conversation_id: str) -> str:
    return LOCK_KEY_TEMPLATE.format(conversation_id=conversation_id)


@dataclass(frozen=True)
class ConversationLockHandle:
    manager: "ConversationLockManager"
    conversation_id: str
    token: str
    key: str

    def release(self) -> bool:
        return self.manager.release(self.conversation_id, self.token)


class ConversationLockManager:
    """One holder per conversation using Redis SET NX EX; the TTL bounds a crashed holder."""

    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 120) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def acquire(self, conversation_id: str) -> ConversationLockHandle | None:
        key = conversation_lock_key(conversation_id)
        token = str(uuid.uuid4())
        if not self._redis.set(key, token, nx=True, ex=self._ttl_seconds):
            return None
        return ConversationLockHandle(
            manager=self,
            conversation_id=conversation_id,
            token=token,
            key=key,
        )

    def release(self, conversation_id: str, token: str) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, conversation_lock_key(conversation_id), token)
        return int(released) == 1

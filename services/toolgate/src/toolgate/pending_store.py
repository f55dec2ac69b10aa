from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import redis

from .logging import get_logger
from .models import ConfirmationStatus, PendingOperation, RiskLevel
from .settings import PENDING_OPERATION_RETENTION_SECONDS, PENDING_OPERATION_TTL_SECONDS

__all__ = ["PendingOperationStore", "LUA_TRANSITION", "LUA_EXPIRE", "KEY_PREFIX"]

logger = get_logger("toolgate.pending_store")

KEY_PREFIX = "toolgate:pending:"

# ── Atomic check-and-transition (compare-and-swap on status) ──
# KEYS[1] = pending hash
# ARGV    = actor_id, now_ms, target_status, now_iso
# Returns one of: not_found | actor_mismatch | not_pending | expired | <target_status>
LUA_TRANSITION = """
local fields = redis.call('HMGET', KEYS[1], 'actor_id', 'confirmation_status', 'expires_at_ms')
if not fields[2] then
  return 'not_found'
end
if fields[1] ~= ARGV[1] then
  return 'actor_mismatch'
end
if fields[2] ~= 'pending' then
  return 'not_pending'
end
if tonumber(ARGV[2]) > tonumber(fields[3]) then
  redis.call('HSET', KEYS[1], 'confirmation_status', 'expired')
  return 'expired'
end
redis.call('HSET', KEYS[1], 'confirmation_status', ARGV[3], 'confirmed_by', ARGV[1], 'confirmed_at', ARGV[4])
return ARGV[3]
"""

# Marks a pending operation expired once its deadline has passed.
# KEYS[1] = pending hash
# ARGV    = now_ms
# Returns one of: not_found | not_pending | pending | expired
LUA_EXPIRE = """
local fields = redis.call('HMGET', KEYS[1], 'confirmation_status', 'expires_at_ms')
if not fields[1] then
  return 'not_found'
end
if fields[1] ~= 'pending' then
  return 'not_pending'
end
if tonumber(ARGV[1]) > tonumber(fields[2]) then
  redis.call('HSET', KEYS[1], 'confirmation_status', 'expired')
  return 'expired'
end
return 'pending'
"""


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


class PendingOperationStore:
    """
    Redis-backed store of proposed operations awaiting confirmation.

    Each operation is a hash at `toolgate:pending:<id>`.  Status moves
    pending -> approved | rejected | expired exactly once, through the Lua
    script above, so concurrent confirmations of the same id yield a single
    winner.  Expiry is checked at consume time; keys carry a separate
    retention TTL and are never deleted here.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: Any = None,
        ttl_s: int = PENDING_OPERATION_TTL_SECONDS,
        retention_s: int = PENDING_OPERATION_RETENTION_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
        timeout_s: float = 0.5,
    ):
        if client is None:
            if redis_url is None:
                raise ValueError("redis_url or client is required")
            client = redis.Redis.from_url(
                redis_url, socket_timeout=timeout_s, socket_connect_timeout=timeout_s
            )
        self._r = client
        self._ttl = timedelta(seconds=ttl_s)
        self._retention_s = retention_s
        self._clock = clock
        self._transition_script = self._r.register_script(LUA_TRANSITION)
        self._expire_script = self._r.register_script(LUA_EXPIRE)

    @staticmethod
    def _key(operation_id: uuid.UUID | str) -> str:
        return f"{KEY_PREFIX}{operation_id}"

    def create(
        self,
        *,
        tool_name: str,
        actor_id: str,
        patient_id: str,
        args: dict[str, Any],
        risk_level: RiskLevel,
        estimated_duration: str | None = None,
        operation_type: str | None = None,
    ) -> PendingOperation:
        created_at = self._clock()
        op = PendingOperation(
            id=uuid.uuid4(),
            operation_type=operation_type or tool_name,
            tool_name=tool_name,
            actor_id=actor_id,
            patient_id=patient_id,
            args=args,
            risk_level=risk_level,
            estimated_duration=estimated_duration,
            confirmation_status=ConfirmationStatus.PENDING,
            created_at=created_at,
            expires_at=created_at + self._ttl,
        )
        key = self._key(op.id)
        self._r.hset(
            key,
            mapping={
                "id": str(op.id),
                "operation_type": op.operation_type,
                "tool_name": op.tool_name,
                "actor_id": op.actor_id,
                "patient_id": op.patient_id,
                "args": json.dumps(op.args, sort_keys=True, default=str),
                "risk_level": op.risk_level.value,
                "estimated_duration": op.estimated_duration or "",
                "confirmation_status": op.confirmation_status.value,
                "created_at": op.created_at.isoformat(),
                "expires_at": op.expires_at.isoformat(),
                "expires_at_ms": str(_ms(op.expires_at)),
            },
        )
        self._r.expire(key, self._retention_s)
        logger.info(
            "pending_operation_created",
            pending_operation_id=str(op.id),
            tool=tool_name,
            expires_at=op.expires_at.isoformat(),
        )
        return op

    def get(self, operation_id: uuid.UUID | str) -> PendingOperation | None:
        """Non-consuming read."""
        raw = self._r.hgetall(self._key(operation_id))
        if not raw:
            return None
        data = {_text(k): _text(v) for k, v in raw.items()}
        return PendingOperation(
            id=uuid.UUID(data["id"]),
            operation_type=data["operation_type"],
            tool_name=data["tool_name"],
            actor_id=data["actor_id"],
            patient_id=data["patient_id"],
            args=json.loads(data["args"]),
            risk_level=RiskLevel(data["risk_level"]),
            estimated_duration=data.get("estimated_duration") or None,
            confirmation_status=ConfirmationStatus(data["confirmation_status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            confirmed_by=data.get("confirmed_by") or None,
            confirmed_at=datetime.fromisoformat(data["confirmed_at"]) if data.get("confirmed_at") else None,
        )

    def _transition(
        self, operation_id: uuid.UUID | str, actor_id: str, target: ConfirmationStatus
    ) -> PendingOperation | None:
        if not ConfirmationStatus.PENDING.can_become(target):
            raise ValueError(f"invalid transition target: {target.value}")
        now = self._clock()
        outcome = _text(
            self._transition_script(
                keys=[self._key(operation_id)],
                args=[actor_id, str(_ms(now)), target.value, now.isoformat()],
            )
        )
        if outcome != target.value:
            logger.info(
                "pending_operation_refused",
                pending_operation_id=str(operation_id),
                target=target.value,
                outcome=outcome,
            )
            return None
        logger.info("pending_operation_transitioned", pending_operation_id=str(operation_id), status=outcome)
        return self.get(operation_id)

    def validate_and_consume(self, operation_id: uuid.UUID | str, actor_id: str) -> PendingOperation | None:
        """
        Approve a pending operation for its proposing actor.

        None when the id is unknown, the actor differs, the status is no
        longer pending, or the TTL has passed (status becomes expired).
        """
        return self._transition(operation_id, actor_id, ConfirmationStatus.APPROVED)

    def reject(self, operation_id: uuid.UUID | str, actor_id: str) -> PendingOperation | None:
        return self._transition(operation_id, actor_id, ConfirmationStatus.REJECTED)

    def expire_if_due(self, operation_id: uuid.UUID | str) -> bool:
        """Move a still-pending operation past its TTL to expired. True when it is now expired."""
        outcome = _text(
            self._expire_script(keys=[self._key(operation_id)], args=[str(_ms(self._clock()))])
        )
        if outcome == ConfirmationStatus.EXPIRED.value:
            logger.info("pending_operation_transitioned", pending_operation_id=str(operation_id), status=outcome)
            return True
        return False

    def ping(self) -> bool:
        return bool(self._r.ping())

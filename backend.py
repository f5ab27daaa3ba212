import json
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional, Set

import redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REGISTRY_BACKEND
from logging_config import get_logger
from redis_keys import (
    REDIS_CONN_KEY,
    REDIS_CONN_ROOMS_KEY,
    REDIS_INSTANCE_CHANNEL,
    REDIS_ROOM_MEMBERS_KEY,
)
from schemas.messages import Member

logger = get_logger(__name__)


class JoinOutcome(NamedTuple):
    existing: List[Member]  # members present before the join, in join order
    added: bool             # False when the connection was already a member


class LeaveOutcome(NamedTuple):
    removed: Optional[Member]
    remaining: List[Member]


class RegistryStore(ABC):
    """Storage behind the room registry.

    Every mutation is atomic with respect to the snapshot it returns, so
    the registry can derive both the joiner's view and the broadcast list
    from a single call.

    Stores with ``shared = True`` are seen by several gateway instances and
    also provide ``publish_to_instance`` and ``subscribe_to_instance``; the
    gateway only calls those when ``shared`` is set.
    """

    shared = False

    @abstractmethod
    def add_member(self, room_id: str, member: Member) -> JoinOutcome: ...

    @abstractmethod
    def remove_member(self, room_id: str, connection_id: str) -> LeaveOutcome: ...

    @abstractmethod
    def get_members(self, room_id: str) -> List[Member]: ...

    @abstractmethod
    def rooms_for(self, connection_id: str) -> List[str]: ...

    @abstractmethod
    def register_connection(self, connection_id: str, instance_id: str): ...

    @abstractmethod
    def unregister_connection(self, connection_id: str): ...

    @abstractmethod
    def instance_for(self, connection_id: str) -> Optional[str]: ...

    @abstractmethod
    def set_identity(self, connection_id: str, user_id: str): ...

    @abstractmethod
    def get_identity(self, connection_id: str) -> Optional[str]: ...

    def close(self):
        pass


class MemoryStore(RegistryStore):
    """In-process store for a single gateway instance."""

    def __init__(self):
        self.rooms: "OrderedDict[str, List[Member]]" = OrderedDict()
        self.connection_rooms: Dict[str, Set[str]] = {}
        self.connections: Dict[str, dict] = {}

    def add_member(self, room_id, member):
        members = self.rooms.get(room_id, [])
        existing = [m for m in members if m.connection_id != member.connection_id]
        if len(existing) != len(members):
            logger.debug(f"Connection {member.connection_id} already in room {room_id}")
            return JoinOutcome(existing, False)
        self.rooms[room_id] = members + [member]
        self.connection_rooms.setdefault(member.connection_id, set()).add(room_id)
        return JoinOutcome(existing, True)

    def remove_member(self, room_id, connection_id):
        members = self.rooms.get(room_id)
        if not members:
            return LeaveOutcome(None, [])
        removed = next((m for m in members if m.connection_id == connection_id), None)
        if removed is None:
            return LeaveOutcome(None, list(members))
        remaining = [m for m in members if m.connection_id != connection_id]
        if remaining:
            self.rooms[room_id] = remaining
        else:
            del self.rooms[room_id]
            logger.debug(f"Room {room_id} is empty, deleted")
        rooms = self.connection_rooms.get(connection_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self.connection_rooms[connection_id]
        return LeaveOutcome(removed, remaining)

    def get_members(self, room_id):
        return list(self.rooms.get(room_id, []))

    def rooms_for(self, connection_id):
        # Join order of the rooms is not tracked; sorted for determinism
        return sorted(self.connection_rooms.get(connection_id, ()))

    def register_connection(self, connection_id, instance_id):
        self.connections[connection_id] = {
            "instance_id": instance_id,
            "connected_at": datetime.now().isoformat(),
        }

    def unregister_connection(self, connection_id):
        self.connections.pop(connection_id, None)

    def instance_for(self, connection_id):
        conn = self.connections.get(connection_id)
        return conn.get("instance_id") if conn else None

    def set_identity(self, connection_id, user_id):
        conn = self.connections.setdefault(connection_id, {})
        conn["user_id"] = user_id

    def get_identity(self, connection_id):
        conn = self.connections.get(connection_id)
        return conn.get("user_id") if conn else None


class RedisStore(RegistryStore):
    """Registry store shared by several gateway instances through Redis."""

    shared = True
    max_retries = 20

    def __init__(self, redis_client: Optional[redis.Redis] = None, pubsub_client: Optional[redis.Redis] = None):
        if redis_client is None:
            redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        self.redis_client = redis_client
        logger.info(f"Initializing RedisStore with connection to {REDIS_HOST}:{REDIS_PORT}")
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or redis_client

    @staticmethod
    def _dump(member: Member) -> str:
        return json.dumps({"connection_id": member.connection_id, "user_id": member.user_id}, sort_keys=True)

    @staticmethod
    def _load(raw: str) -> Member:
        data = json.loads(raw)
        return Member(connection_id=data["connection_id"], user_id=data.get("user_id"))

    def add_member(self, room_id, member):
        members_key = REDIS_ROOM_MEMBERS_KEY.format(room_id=room_id)
        rooms_key = REDIS_CONN_ROOMS_KEY.format(connection_id=member.connection_id)
        for _ in range(self.max_retries):
            with self.redis_client.pipeline() as pipe:
                try:
                    pipe.watch(members_key)
                    members = [self._load(raw) for raw in pipe.lrange(members_key, 0, -1)]
                    existing = [m for m in members if m.connection_id != member.connection_id]
                    if len(existing) != len(members):
                        pipe.unwatch()
                        return JoinOutcome(existing, False)
                    pipe.multi()
                    pipe.rpush(members_key, self._dump(member))
                    pipe.sadd(rooms_key, room_id)
                    pipe.execute()
                    logger.debug(f"Added {member.connection_id} to room {room_id} ({len(members) + 1} members)")
                    return JoinOutcome(existing, True)
                except redis.WatchError:
                    logger.debug(f"Concurrent update of room {room_id} during join, retrying")
        raise RuntimeError(f"Could not join room {room_id}: too much contention")

    def remove_member(self, room_id, connection_id):
        members_key = REDIS_ROOM_MEMBERS_KEY.format(room_id=room_id)
        rooms_key = REDIS_CONN_ROOMS_KEY.format(connection_id=connection_id)
        for _ in range(self.max_retries):
            with self.redis_client.pipeline() as pipe:
                try:
                    pipe.watch(members_key)
                    raw_members = pipe.lrange(members_key, 0, -1)
                    removed_raw = None
                    remaining = []
                    for raw in raw_members:
                        member = self._load(raw)
                        if member.connection_id == connection_id and removed_raw is None:
                            removed_raw = raw
                        else:
                            remaining.append(member)
                    pipe.multi()
                    if removed_raw is not None:
                        pipe.lrem(members_key, 1, removed_raw)
                    pipe.srem(rooms_key, room_id)
                    pipe.execute()
                    if removed_raw is None:
                        return LeaveOutcome(None, remaining)
                    return LeaveOutcome(self._load(removed_raw), remaining)
                except redis.WatchError:
                    logger.debug(f"Concurrent update of room {room_id} during leave, retrying")
        raise RuntimeError(f"Could not leave room {room_id}: too much contention")

    def get_members(self, room_id):
        members_key = REDIS_ROOM_MEMBERS_KEY.format(room_id=room_id)
        return [self._load(raw) for raw in self.redis_client.lrange(members_key, 0, -1)]

    def rooms_for(self, connection_id):
        rooms_key = REDIS_CONN_ROOMS_KEY.format(connection_id=connection_id)
        return sorted(self.redis_client.smembers(rooms_key))

    def register_connection(self, connection_id, instance_id):
        conn_key = REDIS_CONN_KEY.format(connection_id=connection_id)
        self.redis_client.hset(conn_key, mapping={
            "instance_id": instance_id,
            "connected_at": datetime.now().isoformat(),
        })
        logger.debug(f"Registered connection {connection_id} on instance {instance_id}")

    def unregister_connection(self, connection_id):
        conn_key = REDIS_CONN_KEY.format(connection_id=connection_id)
        rooms_key = REDIS_CONN_ROOMS_KEY.format(connection_id=connection_id)
        deleted = self.redis_client.delete(conn_key, rooms_key)
        logger.debug(f"Unregistered connection {connection_id}: keys={deleted}")

    def instance_for(self, connection_id):
        return self.redis_client.hget(REDIS_CONN_KEY.format(connection_id=connection_id), "instance_id")

    def set_identity(self, connection_id, user_id):
        self.redis_client.hset(REDIS_CONN_KEY.format(connection_id=connection_id), "user_id", user_id)

    def get_identity(self, connection_id):
        return self.redis_client.hget(REDIS_CONN_KEY.format(connection_id=connection_id), "user_id")

    def get_instance_channel_name(self, instance_id: str) -> str:
        return REDIS_INSTANCE_CHANNEL.format(instance_id=instance_id)

    def publish_to_instance(self, instance_id, payload):
        """Publish a delivery to the gateway instance that owns the target connection."""
        channel = self.get_instance_channel_name(instance_id)
        subscribers = self.redis_client.publish(channel, json.dumps(payload))
        logger.debug(f"Published delivery to {channel}, {subscribers} subscribers")
        return subscribers > 0

    def subscribe_to_instance(self, instance_id):
        channel = self.get_instance_channel_name(instance_id)
        pubsub = self.pubsub_client.pubsub()
        pubsub.subscribe(channel)
        logger.debug(f"Subscribed to Redis channel {channel}")
        return pubsub

    def close(self):
        self.redis_client.close()
        if self.pubsub_client is not self.redis_client:
            self.pubsub_client.close()


def build_store(kind: str = REGISTRY_BACKEND) -> RegistryStore:
    if kind == "memory":
        return MemoryStore()
    if kind == "redis":
        try:
            redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            redis_client.ping()
            pubsub_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise
        return RedisStore(redis_client, pubsub_client)
    raise ValueError(f"Unknown registry backend: {kind!r}")

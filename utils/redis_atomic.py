"""
Atomic Redis operations for the discharge follow-up scheduling system

Provides Lua scripts for the read-check-write steps that must not race
between workers: the queued-status guard in the executor, recording a
provider id together with its index entry, the one-active-auto-item-per-case
constraint and lazy config creation.
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import redis

logger = logging.getLogger("redis-atomic")

KEY_PREFIX = "discharge"

# Lua script for a status transition guarded by the current status.
# Returns -1 when the record is missing, 0 on status mismatch, 1 on success.
CONDITIONAL_TRANSITION_SCRIPT = """
local record_key = KEYS[1]
local expected = cjson.decode(ARGV[1])
local new_status = ARGV[2]
local fields = cjson.decode(ARGV[3])

if redis.call('EXISTS', record_key) == 0 then
    return -1
end

local current_status = redis.call('HGET', record_key, 'status')
local allowed = false
for i = 1, #expected do
    if expected[i] == current_status then
        allowed = true
        break
    end
end

if not allowed then
    return 0
end

redis.call('HSET', record_key, 'status', new_status)
for field, value in pairs(fields) do
    redis.call('HSET', record_key, field, value)
end

-- Optionally release a uniqueness key still owned by this record
if KEYS[2] and ARGV[4] and ARGV[4] ~= '' then
    if redis.call('GET', KEYS[2]) == ARGV[4] then
        redis.call('DEL', KEYS[2])
    end
end

return 1
"""

# Lua script that records the provider-assigned id on an item and indexes it
# in one step, guarded by the item's current status. Same return codes as
# the conditional transition.
ATTACH_PROVIDER_ID_SCRIPT = """
local record_key = KEYS[1]
local index_key = KEYS[2]
local expected = cjson.decode(ARGV[1])
local index_value = ARGV[2]
local fields = cjson.decode(ARGV[3])

if redis.call('EXISTS', record_key) == 0 then
    return -1
end

local current_status = redis.call('HGET', record_key, 'status')
local allowed = false
for i = 1, #expected do
    if expected[i] == current_status then
        allowed = true
        break
    end
end

if not allowed then
    return 0
end

for field, value in pairs(fields) do
    redis.call('HSET', record_key, field, value)
end
redis.call('SET', index_key, index_value)
return 1
"""

# Lua script that creates an auto-scheduled item and stamps its case in one
# step. KEYS[5..n] are scheduled-item link keys pointing back at the item.
# Returns 0 when the case already has an active auto-scheduled item.
CREATE_AUTO_ITEM_SCRIPT = """
local active_key = KEYS[1]
local item_key = KEYS[2]
local case_key = KEYS[3]
local clinic_index_key = KEYS[4]
local auto_id = ARGV[1]
local fields = cjson.decode(ARGV[2])
local stamped_at = ARGV[3]
local source = ARGV[4]
local score = ARGV[5]

if redis.call('SET', active_key, auto_id, 'NX') == false then
    return 0
end

for field, value in pairs(fields) do
    redis.call('HSET', item_key, field, value)
end
redis.call('ZADD', clinic_index_key, score, auto_id)

if redis.call('EXISTS', case_key) == 1 then
    redis.call('HSET', case_key, 'auto_scheduled_at', stamped_at)
    redis.call('HSET', case_key, 'scheduling_source', source)
end

for i = 5, #KEYS do
    redis.call('SET', KEYS[i], auto_id)
end

return 1
"""

# Lua script that writes a config hash only when none exists yet
CREATE_CONFIG_IF_ABSENT_SCRIPT = """
local config_key = KEYS[1]
local index_key = KEYS[2]
local clinic_id = ARGV[1]
local fields = cjson.decode(ARGV[2])

if redis.call('EXISTS', config_key) == 1 then
    return 0
end

for field, value in pairs(fields) do
    redis.call('HSET', config_key, field, value)
end
redis.call('SADD', index_key, clinic_id)
return 1
"""


def to_redis_mapping(data: Dict[str, Any]) -> Dict[str, str]:
    """
    Flatten a model dict into string values for a Redis hash

    None becomes an empty string, nested dicts/lists become JSON and
    booleans become "true"/"false".
    """
    mapping = {}
    for key, value in data.items():
        if value is None:
            mapping[key] = ""
        elif isinstance(value, bool):
            mapping[key] = "true" if value else "false"
        elif isinstance(value, (dict, list, tuple)):
            mapping[key] = json.dumps(value)
        else:
            mapping[key] = str(value)
    return mapping


class AtomicRedisOperations:
    """
    Provides atomic Redis operations to prevent race conditions
    """

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize with Redis client

        Args:
            redis_client: Redis client instance (decode_responses=True)
        """
        self.redis = redis_client

        # Register Lua scripts
        self._transition_script = self.redis.register_script(CONDITIONAL_TRANSITION_SCRIPT)
        self._attach_provider_script = self.redis.register_script(ATTACH_PROVIDER_ID_SCRIPT)
        self._create_auto_script = self.redis.register_script(CREATE_AUTO_ITEM_SCRIPT)
        self._create_config_script = self.redis.register_script(CREATE_CONFIG_IF_ABSENT_SCRIPT)

    def conditional_transition(
        self,
        record_key: str,
        expected_statuses: Iterable[str],
        new_status: str,
        fields: Optional[Dict[str, Any]] = None,
        release_key: Optional[str] = None,
        release_value: Optional[str] = None
    ) -> int:
        """
        Atomically move a record to a new status if its current status is allowed

        Args:
            record_key: Hash key of the record
            expected_statuses: Statuses the record may currently be in
            new_status: Status to write
            fields: Extra hash fields written together with the status
            release_key: Uniqueness key to delete if it still holds release_value
            release_value: Owner value for release_key

        Returns:
            1 on success, 0 on status mismatch, -1 if the record does not exist
        """
        keys = [record_key]
        args = [
            json.dumps(list(expected_statuses)),
            new_status,
            json.dumps(to_redis_mapping(fields or {})),
        ]
        if release_key and release_value:
            keys.append(release_key)
            args.append(release_value)

        try:
            result = int(self._transition_script(keys=keys, args=args))
        except redis.RedisError as e:
            logger.error(f"Error transitioning {record_key} to {new_status}: {e}")
            raise

        if result == 1:
            logger.debug(f"Transitioned {record_key} to {new_status}")
        elif result == 0:
            logger.warning(
                f"Status guard rejected {record_key} -> {new_status} "
                f"(expected one of {list(expected_statuses)})"
            )
        return result

    def attach_provider_id(
        self,
        record_key: str,
        index_key: str,
        index_value: str,
        expected_statuses: Iterable[str],
        fields: Dict[str, Any]
    ) -> int:
        """
        Write provider fields onto a record and its provider index entry together

        Returns:
            1 on success, 0 on status mismatch, -1 if the record does not exist
        """
        try:
            result = int(self._attach_provider_script(
                keys=[record_key, index_key],
                args=[
                    json.dumps(list(expected_statuses)),
                    index_value,
                    json.dumps(to_redis_mapping(fields)),
                ],
            ))
        except redis.RedisError as e:
            logger.error(f"Error attaching provider id to {record_key}: {e}")
            raise

        if result == 0:
            logger.warning(f"Status guard rejected provider id for {record_key}")
        return result

    def create_auto_item(
        self,
        active_key: str,
        item_key: str,
        case_key: str,
        clinic_index_key: str,
        auto_id: str,
        fields: Dict[str, Any],
        stamped_at: str,
        scheduling_source: str,
        score: float,
        link_keys: List[str]
    ) -> bool:
        """
        Atomically create an auto-scheduled item and stamp its case

        Returns:
            True if created, False if the case already has an active item
        """
        try:
            created = self._create_auto_script(
                keys=[active_key, item_key, case_key, clinic_index_key] + list(link_keys),
                args=[
                    auto_id,
                    json.dumps(to_redis_mapping(fields)),
                    stamped_at,
                    scheduling_source,
                    score,
                ],
            )
        except redis.RedisError as e:
            logger.error(f"Error creating auto-scheduled item {auto_id}: {e}")
            raise

        if not created:
            logger.warning(f"Active auto-scheduled item already exists ({active_key})")
        return bool(created)

    def create_config_if_absent(
        self,
        config_key: str,
        index_key: str,
        clinic_id: str,
        fields: Dict[str, Any]
    ) -> bool:
        """
        Atomically create a config record unless one exists

        Returns:
            True if this call created the record
        """
        try:
            created = self._create_config_script(
                keys=[config_key, index_key],
                args=[clinic_id, json.dumps(to_redis_mapping(fields))],
            )
        except redis.RedisError as e:
            logger.error(f"Error creating config for clinic {clinic_id}: {e}")
            raise
        return bool(created)


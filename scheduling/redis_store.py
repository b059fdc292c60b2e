"""
Redis-backed scheduling store

Key layout (all under the "discharge" prefix):
    config:{clinic_id}              hash, indexed by the "configs" set
    clinic:{clinic_id}              hash
    case:{case_id}                  hash, indexed per clinic in
                                    "cases:clinic:{clinic_id}" (score = created_at)
    {channel}:{item_id}             hash, indexed per case in
                                    "{channel}:case:{case_id}" (set)
    provider:{provider_id}          "{channel}:{item_id}"
    auto:{auto_id}                  hash, indexed per clinic in
                                    "auto:clinic:{clinic_id}" (score = created_at)
    auto:active:{case_id}           id of the case's active auto-scheduled item
    auto:link:{channel}:{item_id}   id of the owning auto-scheduled item
    run:{run_id}                    JSON, indexed in "runs" (score = started_at)
"""
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import redis

from scheduling.models import (
    AutoScheduledItem,
    CaseSnapshot,
    Channel,
    ClinicInfo,
    Run,
    ScheduledItem,
    SchedulingConfig,
    SchedulingSource,
)
from scheduling.store import SchedulingStore, TransitionOutcome
from utils.redis_atomic import KEY_PREFIX, AtomicRedisOperations, to_redis_mapping
from utils.time_utils import format_iso

logger = logging.getLogger("redis-store")

_OUTCOMES = {
    1: TransitionOutcome.APPLIED,
    0: TransitionOutcome.STATUS_MISMATCH,
    -1: TransitionOutcome.NOT_FOUND,
}


def _serialize_fields(fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Convert model attribute values into their to_dict representation"""
    serialized = {}
    for name, value in (fields or {}).items():
        if isinstance(value, datetime):
            value = format_iso(value)
        elif isinstance(value, Enum):
            value = value.value
        serialized[name] = value
    return serialized


class RedisSchedulingStore(SchedulingStore):
    """Production store on Redis hashes, sets and sorted sets"""

    def __init__(self, redis_client: redis.Redis, atomic_ops: AtomicRedisOperations = None):
        """
        Args:
            redis_client: Redis connection created with decode_responses=True
            atomic_ops: Lua script wrapper (created from redis_client if omitted)
        """
        self.redis = redis_client
        self.atomic = atomic_ops or AtomicRedisOperations(redis_client)

    @staticmethod
    def _key(*parts: str) -> str:
        return ":".join((KEY_PREFIX,) + parts)

    # Clinic scheduling config

    def get_config(self, clinic_id):
        data = self.redis.hgetall(self._key("config", clinic_id))
        return SchedulingConfig.from_dict(data) if data else None

    def create_config_if_absent(self, config):
        created = self.atomic.create_config_if_absent(
            self._key("config", config.clinic_id),
            self._key("configs"),
            config.clinic_id,
            config.to_dict(),
        )
        if created:
            logger.info(f"Created default scheduling config for clinic {config.clinic_id}")
        return self.get_config(config.clinic_id)

    def save_config(self, config):
        pipe = self.redis.pipeline()
        pipe.hset(self._key("config", config.clinic_id), mapping=to_redis_mapping(config.to_dict()))
        pipe.sadd(self._key("configs"), config.clinic_id)
        pipe.execute()

    def list_configs(self):
        configs = []
        for clinic_id in sorted(self.redis.smembers(self._key("configs"))):
            config = self.get_config(clinic_id)
            if config:
                configs.append(config)
        return configs

    # Clinics and cases

    def get_clinic(self, clinic_id):
        data = self.redis.hgetall(self._key("clinic", clinic_id))
        return ClinicInfo.from_dict(data) if data else None

    def save_clinic(self, clinic):
        self.redis.hset(self._key("clinic", clinic.id), mapping=to_redis_mapping(clinic.to_dict()))

    def get_case(self, case_id):
        data = self.redis.hgetall(self._key("case", case_id))
        return CaseSnapshot.from_dict(data) if data else None

    def save_case(self, case):
        pipe = self.redis.pipeline()
        pipe.hset(self._key("case", case.id), mapping=to_redis_mapping(case.to_dict()))
        if case.created_at is not None:
            pipe.zadd(self._key("cases", "clinic", case.clinic_id), {case.id: case.created_at.timestamp()})
        pipe.execute()

    def find_unscheduled_cases(self, clinic_id, statuses, created_after):
        statuses = set(statuses)
        case_ids = self.redis.zrevrangebyscore(
            self._key("cases", "clinic", clinic_id), "+inf", created_after.timestamp()
        )
        cases = []
        for case_id in case_ids:
            case = self.get_case(case_id)
            if case is None:
                continue
            if case.status not in statuses:
                continue
            if case.auto_scheduled_at is not None or case.scheduling_source is not None:
                continue
            cases.append(case)
        return cases

    def stamp_case(self, case_id, auto_scheduled_at, scheduling_source):
        case_key = self._key("case", case_id)
        if not self.redis.exists(case_key):
            return False
        self.redis.hset(case_key, mapping={
            "auto_scheduled_at": format_iso(auto_scheduled_at) or "",
            "scheduling_source": scheduling_source or "",
        })
        return True

    # Scheduled items

    def save_item(self, item):
        channel = item.channel.value
        pipe = self.redis.pipeline()
        pipe.hset(self._key(channel, item.id), mapping=to_redis_mapping(item.to_dict()))
        pipe.sadd(self._key(channel, "case", item.case_id), item.id)
        pipe.execute()

    def get_item(self, channel, item_id):
        data = self.redis.hgetall(self._key(channel.value, item_id))
        return ScheduledItem.from_dict(data) if data else None

    def find_item_by_provider_id(self, provider_id):
        ref = self.redis.get(self._key("provider", provider_id))
        if not ref:
            return None
        channel, item_id = ref.split(":", 1)
        return self.get_item(Channel(channel), item_id)

    def attach_provider_id(self, channel, item_id, provider_id, expected, fields=None):
        attached = dict(fields or {})
        attached["provider_id"] = provider_id
        result = self.atomic.attach_provider_id(
            self._key(channel.value, item_id),
            self._key("provider", provider_id),
            f"{channel.value}:{item_id}",
            [status.value for status in expected],
            _serialize_fields(attached),
        )
        return _OUTCOMES[result]

    def list_items_for_case(self, channel, case_id):
        items = []
        for item_id in self.redis.smembers(self._key(channel.value, "case", case_id)):
            item = self.get_item(channel, item_id)
            if item:
                items.append(item)
        return items

    def transition_item(self, channel, item_id, expected, new_status, fields=None):
        result = self.atomic.conditional_transition(
            self._key(channel.value, item_id),
            [status.value for status in expected],
            new_status.value,
            _serialize_fields(fields),
        )
        return _OUTCOMES[result]

    # Auto-scheduled items

    def create_auto_item(self, auto_item, stamped_at):
        link_keys = []
        if auto_item.scheduled_call_id:
            link_keys.append(self._key("auto", "link", Channel.CALL.value, auto_item.scheduled_call_id))
        if auto_item.scheduled_email_id:
            link_keys.append(self._key("auto", "link", Channel.EMAIL.value, auto_item.scheduled_email_id))

        return self.atomic.create_auto_item(
            active_key=self._key("auto", "active", auto_item.case_id),
            item_key=self._key("auto", auto_item.id),
            case_key=self._key("case", auto_item.case_id),
            clinic_index_key=self._key("auto", "clinic", auto_item.clinic_id),
            auto_id=auto_item.id,
            fields=auto_item.to_dict(),
            stamped_at=format_iso(stamped_at),
            scheduling_source=SchedulingSource.AUTO.value,
            score=auto_item.created_at.timestamp(),
            link_keys=link_keys,
        )

    def get_auto_item(self, auto_id):
        data = self.redis.hgetall(self._key("auto", auto_id))
        return AutoScheduledItem.from_dict(data) if data else None

    def find_active_auto_item(self, case_id):
        auto_id = self.redis.get(self._key("auto", "active", case_id))
        return self.get_auto_item(auto_id) if auto_id else None

    def find_auto_item_for(self, channel, item_id):
        auto_id = self.redis.get(self._key("auto", "link", channel.value, item_id))
        return self.get_auto_item(auto_id) if auto_id else None

    def transition_auto_item(self, auto_id, expected, new_status, fields=None):
        auto_item = self.get_auto_item(auto_id)
        if auto_item is None:
            return TransitionOutcome.NOT_FOUND

        release_key = None
        if new_status.is_terminal:
            release_key = self._key("auto", "active", auto_item.case_id)

        result = self.atomic.conditional_transition(
            self._key("auto", auto_id),
            [status.value for status in expected],
            new_status.value,
            _serialize_fields(fields),
            release_key=release_key,
            release_value=auto_id if release_key else None,
        )
        return _OUTCOMES[result]

    def list_auto_items(self, clinic_id, status=None, limit=100):
        # Over-fetch when filtering so the status filter still fills the page
        fetch = limit if status is None else max(limit * 5, 100)
        auto_ids = self.redis.zrevrange(self._key("auto", "clinic", clinic_id), 0, fetch - 1)
        items = []
        for auto_id in auto_ids:
            auto_item = self.get_auto_item(auto_id)
            if auto_item is None:
                continue
            if status is not None and auto_item.status != status:
                continue
            items.append(auto_item)
            if len(items) >= limit:
                break
        return items

    # Runs

    def save_run(self, run):
        pipe = self.redis.pipeline()
        pipe.set(self._key("run", run.id), json.dumps(run.to_dict()))
        pipe.zadd(self._key("runs"), {run.id: run.started_at.timestamp()})
        pipe.execute()

    def get_run(self, run_id):
        raw = self.redis.get(self._key("run", run_id))
        return Run.from_dict(json.loads(raw)) if raw else None

    def list_runs(self, limit=10):
        runs = []
        for run_id in self.redis.zrevrange(self._key("runs"), 0, limit - 1):
            run = self.get_run(run_id)
            if run:
                runs.append(run)
        return runs


"""
Cache warming for Smart Health Hub.

Proactively loads entity collections into the cache so the first requests
after a restart or an invalidation do not all fall through to the backing
store. Each entity type is an isolated warm task: one failing fetch never
stops the others.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector
from .cache_manager import CacheLevel, CacheManager, tag_prefix
from .cache_service import CacheOptions

# Low-churn entities get long TTLs, volatile ones short.
WARM_TTL_SECONDS: Dict[str, int] = {
    'providers': 3600,
    'patients': 1800,
    'claims': 900,
    'fhir_resources': 3600,
}

DEFAULT_WARM_TTL = 300


class EntityDataSource(ABC):
    """Backing-store collaborator the warmer reads full collections from."""

    @abstractmethod
    async def fetch_all_providers(self) -> List[Any]:
        ...

    @abstractmethod
    async def fetch_all_patients(self) -> List[Any]:
        ...

    @abstractmethod
    async def fetch_all_claims(self) -> List[Any]:
        ...

    @abstractmethod
    async def fetch_all_fhir_resources(self) -> List[Any]:
        ...


def entity_id(item: Any) -> Any:
    """Read `id` from a mapping or an object."""
    if isinstance(item, dict):
        return item['id']
    return getattr(item, 'id')


@dataclass
class WarmTask:
    """One entity collection to keep warm."""
    entity_type: str
    fetch_all: Callable[[], Awaitable[List[Any]]]
    item_id: Optional[Callable[[Any], Any]] = None
    ttl: Optional[int] = None
    level: CacheLevel = CacheLevel.DISTRIBUTED
    enabled: bool = True
    tags: List[str] = field(default_factory=list)
    last_run: Optional[datetime] = None
    run_count: int = 0
    success_count: int = 0
    error_count: int = 0
    items_warmed: int = 0
    avg_duration: float = 0.0

    def __post_init__(self):
        if self.ttl is None:
            self.ttl = WARM_TTL_SECONDS.get(self.entity_type, DEFAULT_WARM_TTL)
        if not self.tags:
            self.tags = [self.entity_type]

    @property
    def list_key(self) -> str:
        return tag_prefix(self.entity_type)

    def item_key(self, item: Any) -> Optional[str]:
        if self.item_id is None:
            return None
        return f"{self.list_key}:{self.item_id(item)}"

    def uncovered_by_tags(self) -> bool:
        """True when no tag prefix reaches the list key, so tag invalidation would miss warmed entries."""
        return not any(self.list_key.startswith(tag_prefix(tag)) for tag in self.tags)


class WarmUpSchedule:
    """Handle for a repeating warm-up.

    Each pass runs as its own task, so `cancel()` stops future ticks without
    interrupting a pass already in flight.
    """

    def __init__(self, warmer: "CacheWarmer", interval_seconds: float, allow_overlap: bool = True):
        self.warmer = warmer
        self.interval_seconds = interval_seconds
        self.allow_overlap = allow_overlap
        self.passes_started = 0
        self.passes_skipped = 0
        self._ticker: Optional[asyncio.Task] = None
        self._passes: Set[asyncio.Task] = set()
        self._cancelled = False

    def start(self) -> None:
        self._launch_pass()
        self._ticker = asyncio.create_task(self._tick())

    @property
    def running(self) -> bool:
        return not self._cancelled

    @property
    def in_flight(self) -> bool:
        return bool(self._passes)

    def cancel(self) -> None:
        """Stop scheduling further passes."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._ticker is not None:
            self._ticker.cancel()
        self.warmer.logger.info("Cache warm-up schedule cancelled", operation="schedule_warm_up")
        self.warmer._forget_schedule(self)

    async def wait_idle(self) -> None:
        """Wait for passes already in flight to finish."""
        if self._passes:
            await asyncio.gather(*list(self._passes), return_exceptions=True)

    async def _tick(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.interval_seconds)
            self._launch_pass()

    def _launch_pass(self) -> None:
        if not self.allow_overlap and self._passes:
            self.passes_skipped += 1
            self.warmer.logger.warning(
                "Previous cache warm-up pass still running, skipping tick", operation="schedule_warm_up"
            )
            return

        task = asyncio.create_task(self.warmer.warm_all())
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)
        self.passes_started += 1


class CacheWarmer:
    """Cache warming system for proactive data loading."""

    def __init__(self, cache_manager: CacheManager, default_interval: float = 300):
        self.cache_manager = cache_manager
        self.default_interval = default_interval
        self.logger = get_logger(__name__, 'cache_warmer')
        self.metrics = get_metrics_collector()

        self.tasks: Dict[str, WarmTask] = {}
        self.schedules: List[WarmUpSchedule] = []

        self.stats = {
            'tasks_registered': 0,
            'tasks_executed': 0,
            'tasks_succeeded': 0,
            'tasks_failed': 0,
            'passes_completed': 0,
            'total_items_warmed': 0,
            'total_warming_time': 0.0,
        }

    def register_task(self, task: WarmTask) -> None:
        self.tasks[task.entity_type] = task
        self.stats['tasks_registered'] += 1
        self.logger.info(f"Registered cache warm task: {task.entity_type}", operation="register_task",
                         ttl=task.ttl, tags=task.tags)
        if task.uncovered_by_tags():
            self.logger.warning(
                f"No tag of warm task {task.entity_type} covers {task.list_key}; tag invalidation will not clear it",
                operation="register_task",
                tags=task.tags,
            )

    def unregister_task(self, entity_type: str) -> bool:
        if entity_type in self.tasks:
            del self.tasks[entity_type]
            self.logger.info(f"Unregistered cache warm task: {entity_type}", operation="unregister_task")
            return True
        return False

    def get_task(self, entity_type: str) -> Optional[WarmTask]:
        return self.tasks.get(entity_type)

    def list_tasks(self, enabled_only: bool = True) -> List[WarmTask]:
        tasks = list(self.tasks.values())
        if enabled_only:
            tasks = [task for task in tasks if task.enabled]
        return tasks

    async def warm_task(self, entity_type: str) -> bool:
        """Fetch one collection and write its list key and per-item keys.

        Never raises; a failure is logged, counted and reported as False.
        """
        task = self.tasks.get(entity_type)
        if not task or not task.enabled:
            self.logger.warning(f"Warm task {entity_type} not found or disabled", operation="warm_task")
            return False

        start_time = time.perf_counter()
        options = CacheOptions(ttl=task.ttl, level=task.level)

        try:
            items = await task.fetch_all()
            success = await self.cache_manager.set(task.list_key, items, options)

            if task.item_id is not None:
                for item in items:
                    item_written = await self.cache_manager.set(task.item_key(item), item, options)
                    success = success and item_written
        except Exception as e:
            duration = time.perf_counter() - start_time
            self._record_run(task, duration, status='error')
            self.logger.error(f"Cache warm task {entity_type} failed: {e}", operation="warm_task",
                              error_type=type(e).__name__)
            return False

        duration = time.perf_counter() - start_time
        self._record_run(task, duration, status='success' if success else 'failed')

        if success:
            task.items_warmed += len(items)
            self.stats['total_items_warmed'] += len(items)
            self.logger.info(
                f"Warmed cache for {len(items)} {entity_type} in {duration:.2f}s",
                operation="warm_task",
                ttl=task.ttl,
            )
        else:
            self.logger.error(f"Cache warm task {entity_type} failed to write cache data", operation="warm_task")

        return success

    def _record_run(self, task: WarmTask, duration: float, status: str) -> None:
        task.run_count += 1
        task.last_run = datetime.utcnow()
        task.avg_duration = (task.avg_duration * (task.run_count - 1) + duration) / task.run_count
        if status == 'success':
            task.success_count += 1
            self.stats['tasks_succeeded'] += 1
        else:
            task.error_count += 1
            self.stats['tasks_failed'] += 1

        self.stats['tasks_executed'] += 1
        self.stats['total_warming_time'] += duration

        self.metrics.get_counter('cache_warming_tasks_total').increment(1, task=task.entity_type, status=status)
        self.metrics.get_histogram('cache_warming_duration_seconds').observe(duration, task=task.entity_type)

    async def warm_all(self) -> int:
        """Run every enabled task concurrently. Returns the number that succeeded."""
        tasks = self.list_tasks()
        if not tasks:
            return 0

        self.logger.info(f"Warming API cache: {len(tasks)} tasks", operation="warm_all")

        results = await asyncio.gather(
            *(self.warm_task(task.entity_type) for task in tasks), return_exceptions=True
        )

        success_count = sum(1 for result in results if result is True)
        self.stats['passes_completed'] += 1
        self.logger.info(f"API cache warming completed: {success_count}/{len(tasks)} successful",
                         operation="warm_all")
        return success_count

    def schedule_warm_up(self, interval_seconds: Optional[float] = None, allow_overlap: bool = True) -> WarmUpSchedule:
        """Run one pass now and then one every interval. Must be called from a running event loop."""
        interval = interval_seconds if interval_seconds is not None else self.default_interval
        if interval <= 0:
            raise ValueError("interval_seconds must be positive")

        self.logger.info(f"Scheduling cache warming every {interval} seconds", operation="schedule_warm_up")
        schedule = WarmUpSchedule(self, interval, allow_overlap=allow_overlap)
        schedule.start()
        self.schedules.append(schedule)
        return schedule

    async def shutdown(self) -> None:
        """Cancel all schedules and wait for in-flight passes."""
        schedules = list(self.schedules)
        for schedule in schedules:
            schedule.cancel()
        for schedule in schedules:
            await schedule.wait_idle()

    def _forget_schedule(self, schedule: WarmUpSchedule) -> None:
        if schedule in self.schedules:
            self.schedules.remove(schedule)

    def get_stats(self) -> Dict[str, Any]:
        task_stats = {}
        for name, task in self.tasks.items():
            task_stats[name] = {
                'enabled': task.enabled,
                'ttl': task.ttl,
                'level': task.level.value,
                'tags': list(task.tags),
                'tags_cover_keys': not task.uncovered_by_tags(),
                'run_count': task.run_count,
                'success_count': task.success_count,
                'error_count': task.error_count,
                'success_rate': task.success_count / task.run_count if task.run_count > 0 else 0,
                'items_warmed': task.items_warmed,
                'avg_duration': task.avg_duration,
                'last_run': task.last_run.isoformat() if task.last_run else None,
            }

        return {
            'overall': self.stats,
            'tasks': task_stats,
            'active_schedules': len(self.schedules),
        }


def create_default_warm_tasks(data_source: EntityDataSource) -> List[WarmTask]:
    """Warm tasks for the standard API entity collections."""
    return [
        WarmTask(entity_type='providers', fetch_all=data_source.fetch_all_providers, item_id=entity_id),
        WarmTask(entity_type='patients', fetch_all=data_source.fetch_all_patients, item_id=entity_id),
        WarmTask(entity_type='claims', fetch_all=data_source.fetch_all_claims),
        WarmTask(entity_type='fhir_resources', fetch_all=data_source.fetch_all_fhir_resources),
    ]

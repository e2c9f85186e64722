from .host_pool import HostPool
from .output import BlockInfo, BlockType, detect_block, extract_state_updates
from .runner import TaskRunner, TriggerResult, TriggerSource, TriggerStatus
from .scheduler import SchedulerService
from .task_store import TaskStore, UpcomingRun

__all__ = [
    "BlockInfo",
    "BlockType",
    "detect_block",
    "HostPool",
    "extract_state_updates",
    "SchedulerService",
    "TaskRunner",
    "TaskStore",
    "TriggerResult",
    "TriggerSource",
    "TriggerStatus",
    "UpcomingRun",
]

"""distribution-engine: scheduled multi-channel content delivery.

Takes a content snapshot, a set of channel targets and a publication time,
and sees every target through to a recorded outcome with bounded retries
and per-channel circuit breaking.
"""

__version__ = "0.1.0"

from distribution_engine.models import (
    ContentSnapshot,
    DistributionJob,
    DistributionResult,
    JobState,
    Target,
    TargetState,
)
from distribution_engine.errors import DistributionError, ErrorClass
from distribution_engine.distributor import Distributor, JobStatus
from distribution_engine.dispatcher import Dispatcher
from distribution_engine.store import JobStore, LocalJobStore
from distribution_engine.config import load_config, EngineConfig
from distribution_engine.factory import build_distributor, build_worker_pool

__all__ = [
    "ContentSnapshot",
    "DistributionJob",
    "DistributionResult",
    "JobState",
    "Target",
    "TargetState",
    "DistributionError",
    "ErrorClass",
    "Distributor",
    "JobStatus",
    "Dispatcher",
    "JobStore",
    "LocalJobStore",
    "load_config",
    "EngineConfig",
    "build_distributor",
    "build_worker_pool",
]

from .artifacts import LockInfo, cache_file_path, find_latest_lock, lock_path, read_lock
from .log_inspector import CompletionVerdict, detect_completion
from .probes import LivenessProbe, ProbeContext, default_probes
from .process_table import ProcessTable, PsutilProcessTable
from .supervisor import ProcessSupervisor

__all__ = [
    "CompletionVerdict",
    "LivenessProbe",
    "LockInfo",
    "ProbeContext",
    "ProcessSupervisor",
    "ProcessTable",
    "PsutilProcessTable",
    "cache_file_path",
    "default_probes",
    "detect_completion",
    "find_latest_lock",
    "lock_path",
    "read_lock",
]

STATE_DIR_NAME = ".wave_orchestrator"
CONFIG_FILE = "config.yaml"
DATABASE_FILE = "waves.db"
WINDOWS_LOCK_BYTES = 4096

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"

TASK_STATUSES = {STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_ERROR}
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_ERROR}

# Worker-reported aliases folded into the four durable statuses.
STATUS_ALIASES = {
    "success": STATUS_COMPLETED,
    "failed": STATUS_ERROR,
}

DEFAULT_BATCH_SIZE = 3
DEFAULT_WORKER_URL = "http://localhost:8080"
DEFAULT_DOCKER_WORKER_URL = "http://127.0.0.1:80"

# Batch launches only need the worker to accept the connection.
BATCH_CONNECT_TIMEOUT = 2.0
BATCH_TOTAL_TIMEOUT = 3.0
SINGLE_CONNECT_TIMEOUT = 5.0
SINGLE_TOTAL_TIMEOUT = 10.0
RESPONSE_PREVIEW_CHARS = 500

STALE_LOCK_SECONDS = 600
KILL_GRACE_SECONDS = 0.5
KILL_FORCE_WAIT_SECONDS = 0.2
PROVISION_RETRY_DELAY_SECONDS = 1.0
LOG_TAIL_CHARS = 1000

MSG_NOT_STARTED = "Migration not started"
MSG_WORKER_VANISHED = "worker process ended without reporting completion"
MSG_STALE_LOCK = "worker process not found, lock file stale"
MSG_LOCK_REMOVED = "Lock file removed manually"
MSG_TERMINATED = "Migration process was terminated manually (PID: {pid})"

DEFAULT_TARGET_API_URL = "https://admin.brizy.io"
TARGET_API_TIMEOUT = 60.0
TARGET_API_CONNECT_TIMEOUT = 50.0
TARGET_API_MAX_ATTEMPTS = 3
TARGET_API_RETRY_DELAY_SECONDS = 2.0

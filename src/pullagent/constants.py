"""Centralized constants for pullagent."""

# Job names (also used as launchd label suffixes and log file names)
JOB_CONVERGENCE = "convergence"
JOB_NIGHTLY_MAINTENANCE = "nightly-maintenance"
JOB_WEEKLY_DEEP_CLEAN = "weekly-deep-clean"
JOB_DISK_CHECK = "disk-check"

# Schedule defaults (seconds)
CONVERGENCE_INTERVAL_SECONDS = 1800
DISK_CHECK_INTERVAL_SECONDS = 3600

# launchd weekday numbering: 0 and 7 are Sunday
DEEP_CLEAN_WEEKDAY = 0
DEEP_CLEAN_HOUR = 4

# Lock older than this is presumed abandoned
LOCK_STALE_SECONDS = 7200

# Interval between lock attempts while a maintenance job waits its turn
LOCK_POLL_SECONDS = 30

# Subprocess timeouts (seconds)
GIT_TIMEOUT = 300
COMMAND_TIMEOUT = 600

# Persisted file names under the state directory
RUN_RECORD_FILE = "last-run.json"
RUN_ERROR_LOG_FILE = "run-errors.jsonl"
LOCK_FILE = "agent.lock"
REBOOT_MARKER_FILE = "reboot-marker.json"
DISK_WARNING_LOG_FILE = "disk-warnings.jsonl"

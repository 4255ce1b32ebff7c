"""Constants used across the Companion daemon.

Timing values are seconds. Anything a user may want to tune is mirrored in
companion.config.schema, which uses these as defaults.
"""

# Tmux operations
TMUX_OPERATION_TIMEOUT_S = 5.0
SESSION_SETTLE_DELAY_S = 0.2  # Shell prompt readiness after new-session
DEFAULT_SESSION_PREFIX = "companion"
DEFAULT_AGENT_COMMAND = "claude"
MANAGED_SESSION_ENV_VAR = "COMPANION_MANAGED"

# Graceful kill sequence
KILL_INTERRUPT_WAIT_S = 0.3
KILL_EOF_WAIT_S = 1.0
KILL_EXIT_WAIT_S = 0.5

# Input injection
POST_TEXT_DELAY_S = 0.15
POST_ENTER_DELAY_S = 0.05
POST_OTHER_SELECT_DELAY_S = 0.2
CHOICE_KEY_DELAY_S = 0.05
DEFAULT_PANE_CAPTURE_LINES = 20
MISSING_SESSION_RETRY_DELAY_S = 0.5

# Work groups
WORKER_BRANCH_PREFIX = "parallel/"
CLI_READY_TIMEOUT_S = 15.0
CLI_READY_POLL_INTERVAL_S = 1.0
MONITOR_INTERVAL_S = 5.0
BASE_BRANCH_CANDIDATES = ("main", "master")
GIT_OPERATION_TIMEOUT_S = 5.0
GIT_MERGE_TIMEOUT_S = 60.0

# Display & truncation
INPUT_LOG_PREVIEW_LENGTH = 80
QUESTION_FALLBACK_LENGTH = 200
ESCALATION_PREVIEW_LENGTH = 200

# Server
DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 9877
SHUTDOWN_TIMEOUT_S = 5.0

"""Constants for the buildfarm client."""

# Subprocess timeouts (seconds)
MAKE_CHECK_TIMEOUT = 10
INIT_TOOL_CHECK_TIMEOUT = 10
TRANSPORT_TIMEOUT = 120

# Grace period between SIGTERM and SIGKILL when cancelling a process group
TERMINATE_GRACE_SECONDS = 5.0

# File names inside <build_root>/<branch>
LOCK_FILE = "builder.LCK"
FORCE_FILE = "force-one-run"
INSTALL_DIR = "inst"
LOG_DIR = "lastrun-logs"
FROM_SOURCE_LOG_DIR = "fromsource-logs"
TXN_FILE = "web-txn.json"
ARCHIVE_FILE = "runlogs.tgz"

# Temporary installs needed before NO_TEMP_INSTALL can be set
TEMP_INSTALL_THRESHOLD = 3

# Default port when neither base_port nor a branch port is configured
DEFAULT_BUILD_PORT = 5999

"""
Configuration settings for the flow engine.

Every value can be overridden with the environment variable named
next to it.
"""

import os


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Generator name/version written into exported flow headers
GENERATOR_NAME = "formflow"
GENERATOR_VERSION = "1.0.0"

# Default per-step timeout in milliseconds (FLOW_DEFAULT_TIMEOUT_MS)
# Used when neither the step nor the flow config sets one
DEFAULT_STEP_TIMEOUT_MS = int(os.environ.get("FLOW_DEFAULT_TIMEOUT_MS", "30000"))

# Base delay between retries in milliseconds (FLOW_RETRY_DELAY_MS)
# Attempt n waits base * 2^(n-1)
DEFAULT_RETRY_DELAY_MS = int(os.environ.get("FLOW_RETRY_DELAY_MS", "1000"))

# Upper bound for a single backoff delay (FLOW_MAX_RETRY_DELAY_MS)
# 0 = no cap
MAX_RETRY_DELAY_MS = int(os.environ.get("FLOW_MAX_RETRY_DELAY_MS", "0"))

# Stop the flow on the first failed step unless the flow or caller says otherwise
STOP_ON_ERROR = _env_bool("FLOW_STOP_ON_ERROR", True)

# Take a full-page screenshot when a step fails (FLOW_SCREENSHOT_ON_ERROR)
SCREENSHOT_ON_ERROR = _env_bool("FLOW_SCREENSHOT_ON_ERROR", False)

# Where error screenshots go when the caller gives no artifacts directory
ARTIFACTS_DIR = os.environ.get("FLOW_ARTIFACTS_DIR", "output/artifacts")

# Directory for persisted execution states (FLOW_STATE_DIR)
# Empty = keep states in memory for the lifetime of the process
STATE_DIR = os.environ.get("FLOW_STATE_DIR", "")

# Directory holding *.flow.yaml definitions addressable by flow key
FLOW_LIBRARY_DIR = os.environ.get("FLOW_LIBRARY_DIR", "flows")

# Browser headless mode for the CLI runner
HEADLESS = _env_bool("FLOW_HEADLESS", True)

# Navigation timeout for actions that load pages (goto, waitForNavigation)
NAVIGATION_TIMEOUT_MS = int(os.environ.get("FLOW_NAVIGATION_TIMEOUT_MS", "60000"))

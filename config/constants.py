"""
Application-wide constants for broadcast scheduling automation.
Centralized location for magic numbers, file names and defaults.
"""

import os
import sys

# Project root directory. When frozen by PyInstaller the exe unpacks to a temp
# dir so __file__ no longer points at the real project folder.  Use the
# directory containing the exe instead.
if getattr(sys, 'frozen', False):
    _PROJECT_ROOT = os.path.dirname(sys.executable)
else:
    _PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Persisted state (three flat JSON documents)
DEFAULT_DATA_DIR = os.path.join(_PROJECT_ROOT, 'data')
ACTIONS_FILE = 'actions.json'
RECURRING_FILE = 'recurring.json'
SCENE_FLOW_FILE = 'scene_flow.json'
DEFAULT_AUDIT_LOG = 'auto_obs.log'

DEFAULT_TIMEZONE = "America/New_York"

# Action types
ACTION_START = "start"
ACTION_SET_SCENE = "setScene"
ACTION_END = "end"
ACTION_TYPES = (ACTION_START, ACTION_SET_SCENE, ACTION_END)

# OBS scene names used when an action payload omits sceneName
DEFAULT_START_SCENE = "intro"
DEFAULT_LIVE_SCENE = "live"

# Encoder gateway
ENCODER_MAX_RETRIES = 3
ENCODER_RETRY_DELAY = 10.0
ENCODER_CONNECT_TIMEOUT = 3

# Broadcast lifecycle
TESTING_MAX_RETRIES = 3
TESTING_RETRY_DELAY = 10.0
TESTING_SETTLE_DELAY = 5.0
GO_LIVE_MAX_ATTEMPTS = 5
GO_LIVE_MAX_ATTEMPTS_AUTO = 60
GO_LIVE_BACKOFF_STEP = 5.0
GO_LIVE_BACKOFF_CAP = 30.0
RATE_LIMIT_BACKOFF_FLOOR = 60.0
GO_LIVE_BUFFER_SECONDS = 5.0

# Clock / watchdog cadence (seconds)
HEARTBEAT_INTERVAL = 30
PROBE_INTERVAL = 60
BROADCAST_POLL_INTERVAL = 60
WATCHDOG_SAMPLE_INTERVAL = 10
HEARTBEAT_GRACE = 30
HEARTBEAT_RESTART_AFTER = 90
CLEANUP_INTERVAL_MINUTES = 30

# Upper bound for a single timer-registry sleep so wall-clock jumps are noticed
TIMER_MAX_SLEEP = 60.0

# Broadcast lifecycle statuses reported by the platform
STATUS_CREATED = "created"
STATUS_READY = "ready"
STATUS_TESTING = "testing"
STATUS_LIVE = "live"
STATUS_COMPLETE = "complete"

# Discord Notification Colors (hex values without 0x prefix)
COLOR_SUCCESS = 0x00FF00
COLOR_ERROR = 0xFF0000
COLOR_WARNING = 0xFF9900
COLOR_INFO = 0x0099FF
COLOR_STREAM_LIVE = 0x9146FF

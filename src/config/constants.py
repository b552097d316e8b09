"""
Application constants and configuration values
"""

# Application directory name for storing user data
APP_DIR = "openvpn-keeper"

# File names for configuration and data storage
APP_SETTINGS_FILE = "settings.yaml"
LOG_FILE = "openvpn-keeper.log"

# Name of the daemon binary looked up on PATH when no explicit path is configured
OPENVPN_EXECUTABLE = "openvpn"

# Management interface defaults
MANAGEMENT_HOST = "127.0.0.1"
MANAGEMENT_PORT_FIRST = 1337
MANAGEMENT_PORT_LAST = 1437

# Seconds to keep retrying the management socket after spawning the daemon
ATTACH_TIMEOUT = 10.0
ATTACH_RETRY_INTERVAL = 0.25

# Hookup probing of already running daemons
HOOKUP_MAX_ATTEMPTS = 3
HOOKUP_PROBE_TIMEOUT = 2.0

# Force-kill escalation, in seconds
FORCE_KILL_TIMEOUT = 10
FORCE_KILL_INTERVAL = 1
FORCE_KILL_MAX_ATTEMPTS = 10

BYTECOUNT_INTERVAL = 1

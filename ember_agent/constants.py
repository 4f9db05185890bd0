"""Constants used across the ember-agent package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "ember-agent"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".ember" / DEFAULT_CONFIG_FILENAME
DEFAULT_STATE_PATH = Path.home() / ".ember" / "device_state.json"

DEFAULT_LOG_PATH = Path("/var/log") / f"{APP_NAME}.log"
DEFAULT_LOG_SOURCES = ["/var/log/syslog", str(DEFAULT_LOG_PATH)]

DEFAULT_COMMAND_SOCKET = Path("/tmp/ember-command.sock")
DEFAULT_PRINT_DATA_DIR = Path("/var/smith/download")
DEFAULT_PRINT_SETTINGS_FILE = Path("/var/smith/print_settings.json")

DEFAULT_POLL_INTERVAL_SECONDS = 60.0

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_TOPIC_PREFIX = "ember/printers"

DEFAULT_BLOB_STORE_URL = "http://localhost:9000"
DEFAULT_BLOB_BUCKET = "printer-logs"

DEFAULT_WIRELESS_INTERFACE = "wlan0"
DEFAULT_WPA_SUPPLICANT_PATH = Path("/etc/wpa_supplicant/wpa_supplicant-wlan0.conf")

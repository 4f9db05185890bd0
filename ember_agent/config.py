"""Configuration loader for ember-agent."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants


@dataclass(slots=True)
class CloudConfig:
    broker_host: str = constants.DEFAULT_BROKER_HOST
    broker_port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    printer_id: str = ""
    topic_prefix: str = constants.DEFAULT_TOPIC_PREFIX

    @property
    def command_topic(self) -> str:
        return f"{self.topic_prefix}/{self.printer_id}/commands"

    @property
    def ack_topic(self) -> str:
        return f"{self.topic_prefix}/{self.printer_id}/acks"


@dataclass(slots=True)
class FirmwareConfig:
    socket_path: Path = constants.DEFAULT_COMMAND_SOCKET
    timeout_seconds: float = 10.0
    poll_interval_seconds: float = constants.DEFAULT_POLL_INTERVAL_SECONDS


@dataclass(slots=True)
class PrintDataConfig:
    directory: Path = constants.DEFAULT_PRINT_DATA_DIR
    settings_file: Path = constants.DEFAULT_PRINT_SETTINGS_FILE
    download_timeout_seconds: float = 300.0


@dataclass(slots=True)
class LogsConfig:
    sources: List[str] = field(
        default_factory=lambda: list(constants.DEFAULT_LOG_SOURCES)
    )
    retain_uploaded: int = 0  # 0 keeps every uploaded archive in the blob store


@dataclass(slots=True)
class BlobStoreConfig:
    base_url: str = constants.DEFAULT_BLOB_STORE_URL
    bucket: str = constants.DEFAULT_BLOB_BUCKET
    token: Optional[str] = None
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class WirelessConfig:
    interface: str = constants.DEFAULT_WIRELESS_INTERFACE
    wpa_supplicant_path: Path = constants.DEFAULT_WPA_SUPPLICANT_PATH


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class AgentConfig:
    cloud: CloudConfig
    firmware: FirmwareConfig
    print_data: PrintDataConfig
    logs: LogsConfig
    blob_store: BlobStoreConfig
    wireless: WirelessConfig
    logging: LoggingConfig
    health: HealthConfig
    state_path: Path
    raw: ConfigParser
    path: Path


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _path(parser: ConfigParser, section: str, option: str, default: Path) -> Path:
    return Path(parser.get(section, option, fallback=str(default))).expanduser()


def load_config(path: Optional[Path] = None) -> AgentConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "cloud": {
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "printer_id": "",
                "topic_prefix": constants.DEFAULT_TOPIC_PREFIX,
            },
            "firmware": {
                "socket_path": str(constants.DEFAULT_COMMAND_SOCKET),
                "timeout_seconds": "10.0",
                "poll_interval_seconds": str(constants.DEFAULT_POLL_INTERVAL_SECONDS),
            },
            "print_data": {
                "directory": str(constants.DEFAULT_PRINT_DATA_DIR),
                "settings_file": str(constants.DEFAULT_PRINT_SETTINGS_FILE),
                "download_timeout_seconds": "300.0",
            },
            "logs": {
                "sources": ",".join(constants.DEFAULT_LOG_SOURCES),
                "retain_uploaded": "0",
            },
            "blob_store": {
                "base_url": constants.DEFAULT_BLOB_STORE_URL,
                "bucket": constants.DEFAULT_BLOB_BUCKET,
                "timeout_seconds": "60.0",
            },
            "state": {
                "path": str(constants.DEFAULT_STATE_PATH),
            },
            "wireless": {
                "interface": constants.DEFAULT_WIRELESS_INTERFACE,
                "wpa_supplicant_path": str(constants.DEFAULT_WPA_SUPPLICANT_PATH),
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    broker_host_value = parser.get("cloud", "broker_host")
    broker_port_value = parser.getint(
        "cloud", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("cloud", "broker_host", host_part)
            parser.set("cloud", "broker_port", str(parsed_port))

    cloud = CloudConfig(
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        username=parser.get("cloud", "username", fallback=None),
        password=parser.get("cloud", "password", fallback=None),
        printer_id=parser.get("cloud", "printer_id", fallback="").strip(),
        topic_prefix=parser.get("cloud", "topic_prefix").strip().rstrip("/"),
    )

    firmware_defaults = FirmwareConfig()
    firmware = FirmwareConfig(
        socket_path=_path(
            parser, "firmware", "socket_path", constants.DEFAULT_COMMAND_SOCKET
        ),
        timeout_seconds=max(
            0.1,
            parser.getfloat(
                "firmware",
                "timeout_seconds",
                fallback=firmware_defaults.timeout_seconds,
            ),
        ),
        poll_interval_seconds=max(
            1.0,
            parser.getfloat(
                "firmware",
                "poll_interval_seconds",
                fallback=firmware_defaults.poll_interval_seconds,
            ),
        ),
    )

    print_data = PrintDataConfig(
        directory=_path(
            parser, "print_data", "directory", constants.DEFAULT_PRINT_DATA_DIR
        ),
        settings_file=_path(
            parser,
            "print_data",
            "settings_file",
            constants.DEFAULT_PRINT_SETTINGS_FILE,
        ),
        download_timeout_seconds=parser.getfloat(
            "print_data", "download_timeout_seconds", fallback=300.0
        ),
    )

    logs = LogsConfig(
        sources=_parse_list(
            parser.get("logs", "sources", fallback=""),
            default=constants.DEFAULT_LOG_SOURCES,
        ),
        retain_uploaded=max(0, parser.getint("logs", "retain_uploaded", fallback=0)),
    )

    blob_store = BlobStoreConfig(
        base_url=parser.get("blob_store", "base_url"),
        bucket=parser.get("blob_store", "bucket"),
        token=parser.get("blob_store", "token", fallback=None),
        timeout_seconds=parser.getfloat(
            "blob_store", "timeout_seconds", fallback=60.0
        ),
    )

    wireless = WirelessConfig(
        interface=parser.get("wireless", "interface"),
        wpa_supplicant_path=_path(
            parser,
            "wireless",
            "wpa_supplicant_path",
            constants.DEFAULT_WPA_SUPPLICANT_PATH,
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return AgentConfig(
        cloud=cloud,
        firmware=firmware,
        print_data=print_data,
        logs=logs,
        blob_store=blob_store,
        wireless=wireless,
        logging=logging_config,
        health=health,
        state_path=_path(parser, "state", "path", constants.DEFAULT_STATE_PATH),
        raw=parser,
        path=config_path,
    )

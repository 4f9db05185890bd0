"""Job handlers, one per remote command kind."""

from .logs import LogsJob, build_log_archive
from .passthrough import PassthroughJob
from .print_data import PrintDataJob
from .wireless import WirelessJob

__all__ = [
    "LogsJob",
    "PassthroughJob",
    "PrintDataJob",
    "WirelessJob",
    "build_log_archive",
]

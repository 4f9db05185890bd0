"""On-device agent bridging a remote fleet service and printer firmware."""

__version__ = "0.1.0"

"""
Core layer: the state that must survive a crash or a second daemon.

Roles:
- message codec (the host's wire format)
- session registry and its snapshots
- port advertisement file, atomic writes, settings
"""

from .codec import encode_message, parse_message, subject_from_message
from .portfile import advertise_port, read_port, release_port
from .registry import SessionRegistry, SweepOutcome, parse_args
from .settings import DaemonConfig, SettingsCache, load_config
from .storage import atomic_write_json, delete_old_files

__all__ = [
    # codec
    "encode_message",
    "parse_message",
    "subject_from_message",
    # portfile
    "advertise_port",
    "read_port",
    "release_port",
    # registry
    "SessionRegistry",
    "SweepOutcome",
    "parse_args",
    # settings
    "DaemonConfig",
    "SettingsCache",
    "load_config",
    # storage
    "atomic_write_json",
    "delete_old_files",
]

"""Utility functions and helpers."""

from acl_socks_proxy.core.utils.log_config import LOG_DIR, configure_logging

__all__ = ["configure_logging", "LOG_DIR"]

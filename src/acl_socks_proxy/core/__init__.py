"""Core proxy server implementation.

This package contains the core components of the SOCKS proxy server:
- Routing rules, config parsing and the rule engine (``acl``)
- Host resolution and GeoIP country lookup
- SOCKS5 protocol handling and the session registry (``lib``)
- Forward proxy chaining
- Exception handling and logging configuration

The core package provides all the fundamental functionality needed
to run a rule-routed SOCKS proxy server, while keeping the implementation
details separate from the command-line interface.
"""

"""Command line interface modules.

This package provides the command-line tools for:
- Starting the rule-routed SOCKS proxy server
- Checking how hosts would be routed by a rule file
- Listing the rules parsed from a config file
- Error reporting and logging

The command modules provide user-friendly interfaces to the core
proxy server functionality, making it easy to start the proxy and
debug routing rules from the command line.
"""

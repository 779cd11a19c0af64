"""
Utility functions and helpers for Sanctionkeeper.

- **logger.py**: Centralized logging configuration with colored console output
  and per-session rotating log files. Uses prompt_toolkit for console output.
- **duration.py**: Parsing of duration strings such as ``30m`` or ``forever``
  and formatting of remaining time.
"""

"""
Text Utility Functions

Helpers for cleaning remote command output before it is logged or stored.
"""

import re

ANSI_ESCAPE = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')


def strip_ansi_codes(text: str | None) -> str:
    """
    Remove ANSI escape sequences from text.

    Example:
        >>> strip_ansi_codes("\x1B[32mStarted\x1B[0m")
        "Started"
        >>> strip_ansi_codes(None)
        ""
    """
    if text is None:
        return ""
    return ANSI_ESCAPE.sub('', text)


def truncate(text: str, limit: int = 4000) -> str:
    """Keep the tail of long command output, which carries the error"""
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]

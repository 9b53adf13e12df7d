"""
Logging configuration, called once by the CLI entry point.

Every module logs through ``logging.getLogger(__name__)`` and inherits this
setup. Output goes to stderr so stdout stays free for diffs and summaries.
"""

import logging
import sys

# WARNING and above: message only
_FMT_MINIMAL = "%(levelname)s: %(message)s"

# INFO: timestamped
_FMT_VERBOSE = "%(asctime)s %(levelname)-7s %(message)s"

# DEBUG: module and line
_FMT_DEBUG = "%(asctime)s %(levelname)-7s %(name)s:%(lineno)d - %(message)s"

_DATEFMT = "%H:%M:%S"

_NOISY_LOGGERS = ("urllib3", "charset_normalizer")


def setup_logging(level: str = "INFO") -> None:
    numeric_level = _parse_level(level)

    if numeric_level <= logging.DEBUG:
        fmt = _FMT_DEBUG
    elif numeric_level <= logging.INFO:
        fmt = _FMT_VERBOSE
    else:
        fmt = _FMT_MINIMAL

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=_DATEFMT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(numeric_level)

    if numeric_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def _parse_level(level: str) -> int:
    numeric = getattr(logging, (level or "").upper(), None)
    if not isinstance(numeric, int):
        return logging.INFO
    return numeric

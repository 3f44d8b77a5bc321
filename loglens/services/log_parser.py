"""
Raw log line parsing.

Recognises Apache common, nginx combined, log4j and syslog lines plus JSON
objects; anything else is kept verbatim with the level sniffed from the text.
"""

import json
import logging
import re
from datetime import UTC, datetime
from typing import Any

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

APACHE_COMMON = re.compile(
    r'^(\S+) \S+ \S+ \[([\w:/]+\s[+\-]\d{4})\] "(\S+) (\S+) (\S+)" (\d{3}) (\d+|-)'
)
NGINX = re.compile(
    r'^(\S+) - \S+ \[([\d/\w: +\-]+)\] "(\w+) ([^"]+) HTTP/[\d.]+" (\d{3}) (\d+) "([^"]*)" "([^"]*)"'
)
LOG4J = re.compile(
    r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}[,.]\d{3}) \[([^\]]+)\] (\w+)\s+(\S+) - (.*)",
    re.DOTALL,
)
SYSLOG = re.compile(r"^(\w{3}\s+\d{1,2} \d{2}:\d{2}:\d{2}) (\S+) ([\w\-.]+)\[(\d+)\]: (.*)")

_LEVEL_HINTS = (
    ("FATAL", "FATAL"),
    ("ERROR", "ERROR"),
    ("WARN", "WARN"),
    ("INFO", "INFO"),
    ("DEBUG", "DEBUG"),
    ("TRACE", "TRACE"),
)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse the timestamp formats seen in log lines; None when unparsable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        # Epoch seconds or milliseconds
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=UTC)

    text = str(value).strip()
    try:
        # Apache / nginx: 10/Oct/2000:13:55:36 -0700
        return datetime.strptime(text, "%d/%b/%Y:%H:%M:%S %z").astimezone(UTC)
    except ValueError:
        pass
    try:
        parsed = date_parser.parse(text.replace(",", "."), default=datetime.now(UTC).replace(microsecond=0))
    except (ValueError, OverflowError):
        logger.debug("Could not parse timestamp: %s", text)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def sniff_level(text: str) -> str:
    upper = text.upper()
    for hint, level in _LEVEL_HINTS:
        if hint in upper:
            return level
    return "INFO"


def _http_level(status: int) -> str:
    if status >= 500:
        return "ERROR"
    if status >= 400:
        return "WARN"
    return "INFO"


def parse_log_line(line: str) -> dict[str, Any]:
    """Split a raw line into LogRecord fields. Always returns at least a message."""
    line = line.rstrip("\r\n")

    match = NGINX.match(line)
    if match:
        status = int(match.group(5))
        return {
            "host": match.group(1),
            "timestamp": parse_timestamp(match.group(2)),
            "http_method": match.group(3),
            "http_url": match.group(4),
            "http_status": status,
            "level": _http_level(status),
            "message": f"{match.group(3)} {match.group(4)}",
            "metadata": {"format": "nginx", "referer": match.group(7), "user_agent": match.group(8)},
        }

    match = APACHE_COMMON.match(line)
    if match:
        status = int(match.group(6))
        return {
            "host": match.group(1),
            "timestamp": parse_timestamp(match.group(2)),
            "http_method": match.group(3),
            "http_url": match.group(4),
            "http_status": status,
            "level": _http_level(status),
            "message": f"{match.group(3)} {match.group(4)} {match.group(5)}",
            "metadata": {"format": "apache_common"},
        }

    match = LOG4J.match(line)
    if match:
        message, _, stack = match.group(5).partition("\n")
        return {
            "timestamp": parse_timestamp(match.group(1)),
            "thread": match.group(2),
            "level": match.group(3),
            "logger": match.group(4),
            "message": message,
            "stack_trace": stack or None,
            "metadata": {"format": "log4j"},
        }

    match = SYSLOG.match(line)
    if match:
        return {
            "timestamp": parse_timestamp(match.group(1)),
            "host": match.group(2),
            "application": match.group(3),
            "level": sniff_level(match.group(5)),
            "message": match.group(5),
            "metadata": {"format": "syslog", "pid": match.group(4)},
        }

    stripped = line.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            logger.debug("Line looked like JSON but did not parse")
        else:
            if isinstance(payload, dict):
                payload.setdefault("metadata", {})
                if isinstance(payload["metadata"], dict):
                    payload["metadata"].setdefault("format", "json")
                return payload

    return {
        "level": sniff_level(line),
        "message": line,
        "metadata": {"format": "generic"},
    }

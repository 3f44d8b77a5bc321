"""
Query-string parsing.

Lifts simple ``field:value`` tokens out of free text::

    level:ERROR host:web-* "disk full"

becomes ``levels=[ERROR]``, ``patterns={"host": "web-*"}`` and the free-text
term ``disk full``. Tokens whose prefix is not a known field (``http://...``)
stay in the free text.
"""

import re
from dataclasses import dataclass, field

from loglens.core.errors import QueryError
from loglens.schemas.log_record import LEVEL_SEVERITY, LogLevel, is_known_field
from loglens.schemas.query import PatternMode, Query

FIELD_ALIASES = {
    "app": "application",
    "env": "environment",
    "lvl": "level",
    "status": "http_status",
    "method": "http_method",
}

# Filter-set fields on Query, keyed by record field
SET_FIELDS = {
    "source": "sources",
    "host": "hosts",
    "application": "applications",
    "environment": "environments",
}

# Modes whose text is taken verbatim
LITERAL_MODES = (PatternMode.EXACT, PatternMode.REGEX)

_TOKEN_RE = re.compile(r'(?:(?P<field>[A-Za-z_][\w.]*):)?(?P<value>"[^"]*"|\S+)')


def _has_glob(value: str) -> bool:
    return "*" in value or "?" in value


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


@dataclass
class ParsedQueryText:
    text: str | None = None
    levels: list[LogLevel] = field(default_factory=list)
    sets: dict[str, list[str]] = field(default_factory=dict)
    filters: dict[str, list[str]] = field(default_factory=dict)
    patterns: dict[str, str] = field(default_factory=dict)

    @property
    def has_field_terms(self) -> bool:
        return bool(self.levels or self.sets or self.filters or self.patterns)


def parse_level(value: str) -> LogLevel:
    try:
        return LogLevel(value)
    except ValueError:
        raise QueryError(
            f"Unknown log level: {value}",
            details={"value": value, "allowed": [lvl.value for lvl in LogLevel]},
        ) from None


def parse_query_text(text: str | None) -> ParsedQueryText:
    """Split ``text`` into field terms and the remaining free-text term."""
    parsed = ParsedQueryText()
    if text is None:
        return parsed

    words: list[str] = []
    for match in _TOKEN_RE.finditer(text):
        name, raw_value = match.group("field"), match.group("value")
        value = _unquote(raw_value)
        if name is not None:
            name = FIELD_ALIASES.get(name.lower(), name)
        if name is None or not is_known_field(name) or not value:
            words.append(match.group(0) if name is not None else value)
            continue

        if _has_glob(value):
            if name in parsed.patterns:
                raise QueryError(f"Only one pattern per field is supported: {name}", details={"field": name})
            parsed.patterns[name] = value
        elif name == "level":
            parsed.levels.append(parse_level(value))
        elif name in SET_FIELDS:
            parsed.sets.setdefault(name, []).append(value)
        else:
            parsed.filters.setdefault(name, []).append(value)

    remaining = " ".join(words).strip()
    parsed.text = remaining or None
    return parsed


def _unwrap(values: list):
    return values[0] if len(values) == 1 else values


def apply_query_text(query: Query) -> Query:
    """Return a copy of ``query`` with field terms from ``text`` merged into its filters."""
    if query.is_match_all or query.mode in LITERAL_MODES:
        return query

    parsed = parse_query_text(query.text)
    if not parsed.has_field_terms:
        return query

    update: dict = {"text": parsed.text}
    filters = dict(query.filters)
    # Terms in the text narrow an explicit set: they go in as a filter ANDed with it
    if parsed.levels:
        if query.levels:
            filters["severity"] = _unwrap([LEVEL_SEVERITY[level] for level in parsed.levels])
        else:
            update["levels"] = list(dict.fromkeys(parsed.levels))
    for name, values in parsed.sets.items():
        attr = SET_FIELDS[name]
        if getattr(query, attr):
            filters[name] = _unwrap(values)
        else:
            update[attr] = list(dict.fromkeys(values))
    for name, values in parsed.filters.items():
        filters[name] = _unwrap(values)
    if filters != query.filters:
        update["filters"] = filters
    if parsed.patterns:
        update["patterns"] = {**query.patterns, **parsed.patterns}
    return query.model_copy(update=update)

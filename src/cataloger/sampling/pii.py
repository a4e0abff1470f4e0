"""PII detection by field name and by value pattern."""

from __future__ import annotations

import re

from cataloger.infrastructure.config import PiiConfig

FIELD_NAME = "field_name"
VALUE_PATTERN = "value_pattern"

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_SEPARATOR_RE = re.compile(r"[^A-Za-z0-9]+")

# Denylist entries at least this long also match inside compound names
# (``userpassword``); shorter ones (``ip``, ``key``) must be whole tokens.
_SUBSTRING_MIN = 5


def name_tokens(field_path: str) -> list[str]:
    """``billing.emailAddress`` -> ``["billing", "email", "address"]``.

    Every path segment counts, so fields nested under a PII-named
    sub-document are PII too.
    """
    spaced = _CAMEL_RE.sub(" ", field_path)
    return [t.lower() for t in _SEPARATOR_RE.split(spaced) if t]


class PiiDetector:
    """Classify sampled fields as PII before any statistic is computed."""

    def __init__(self, config: PiiConfig | None = None) -> None:
        self.config = config or PiiConfig()
        self._names = tuple(n.lower() for n in self.config.field_names)
        self._patterns = {
            kind: re.compile(pattern) for kind, pattern in self.config.value_patterns.items()
        }

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def redaction_value(self) -> str:
        return self.config.redaction_value

    def field_kind(self, field_path: str) -> str | None:
        """Denylist entry matched by the field name, if any."""
        tokens = name_tokens(field_path)
        compact = "".join(tokens)
        for name in self._names:
            if name in tokens:
                return name
            if len(name) >= _SUBSTRING_MIN and name in compact:
                return name
        return None

    def value_kind(self, value: object) -> str | None:
        """Pattern kind matched by a string or integer value, if any."""
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str):
            return None
        for kind, pattern in self._patterns.items():
            if pattern.search(value):
                return kind
        return None

    def detect(self, field_path: str, value: object) -> tuple[str, str] | None:
        """``(kind, method)`` when the field/value pair is PII, else ``None``."""
        if not self.config.enabled:
            return None
        kind = self.field_kind(field_path)
        if kind is not None:
            return kind, FIELD_NAME
        kind = self.value_kind(value)
        if kind is not None:
            return kind, VALUE_PATTERN
        return None


"""
Error registry: the catalogue behind every CreditLedgerError code.

registry.yaml holds one entry per code with the user-safe message, HTTP
status and retry semantics. The API never shows an exception's ``detail``;
it shows the registry entry for the exception's code. Startup refuses to
continue if any error class raised by the service has no entry, so a new
error cannot silently degrade to a generic 500.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from creditledger.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_PATH = Path(__file__).with_name("registry.yaml")

VALID_DOMAINS = {"LED", "PAY", "EVT", "DB", "CFG", "SES", "SYS", "API"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = (
    "code", "domain", "title", "severity", "retryable",
    "user_action_required", "http_status", "safe_message", "remediation",
)


class RegistryValidationError(Exception):
    """registry.yaml is structurally wrong or does not cover the service's errors."""


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], position: int) -> "ErrorEntry":
        label = f"Entry {position} ({raw.get('code', '?')})"
        missing = [name for name in REQUIRED_FIELDS if name not in raw]
        if missing:
            raise RegistryValidationError(f"{label}: missing fields {missing}")

        code = raw["code"]
        if not CODE_PATTERN.match(code):
            raise RegistryValidationError(f"Invalid code format: {code!r}")
        prefix = code.split("-")[1]
        if raw["domain"] != prefix:
            raise RegistryValidationError(
                f"{code}: domain {raw['domain']!r} doesn't match code prefix {prefix!r}"
            )
        if prefix not in VALID_DOMAINS:
            raise RegistryValidationError(f"{code}: unknown domain {prefix!r}")
        if raw["severity"] not in VALID_SEVERITIES:
            raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

        status = int(raw["http_status"])
        if not 400 <= status <= 599:
            raise RegistryValidationError(f"{code}: http_status {status} is not an error status")

        return cls(
            code=code,
            domain=prefix,
            title=raw["title"],
            severity=raw["severity"],
            retryable=bool(raw["retryable"]),
            user_action_required=bool(raw["user_action_required"]),
            http_status=status,
            safe_message=raw["safe_message"],
            remediation=list(raw.get("remediation") or []),
            tags=list(raw.get("tags") or []),
        )


class ErrorRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: Optional[str] = None) -> "ErrorRegistry":
        source = Path(path) if path else DEFAULT_PATH
        data = yaml.safe_load(source.read_text(encoding="utf-8")) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for position, raw in enumerate(raw_entries):
            entry = ErrorEntry.from_mapping(raw, position)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = int(data.get("schema_version", 0))
        logger.info("error_registry_loaded", extra={"count": len(entries), "path": str(source)})
        return self

    def require_coverage(self, error_classes: Iterable[type]) -> None:
        """Fail unless every class's ``code`` has an entry."""
        missing = sorted({cls.code for cls in error_classes if cls.code not in self._entries})
        if missing:
            raise RegistryValidationError(f"Error codes without a registry entry: {missing}")

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        try:
            return self._entries[code]
        except KeyError:
            raise KeyError(f"Unknown error code: {code!r}") from None

    def codes_for_domain(self, domain: str) -> List[str]:
        return [code for code, entry in self._entries.items() if entry.domain == domain]

    def __len__(self) -> int:
        return len(self._entries)


error_registry = ErrorRegistry()

"""FactSheet: the flattened client/appointment snapshot steps and conditions read.

Field names are normalized to snake_case, so a condition on
``appointmentType`` and one on ``appointment_type`` read the same fact.
Merge tags in message templates (``{{first_name}}``) resolve against the
same sheet.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_MERGE_TAG = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

# Rendered when the fact is missing or empty
MERGE_TAG_DEFAULTS: dict[str, str] = {
    "first_name": "there",
    "business_name": "our clinic",
}

# Client payload keys that are also exposed under a "client_" name
_CLIENT_ALIASES = {
    "status": "client_status",
    "name": "client_name",
}


def normalize_key(key: str) -> str:
    """``appointmentType`` -> ``appointment_type``; ``First Name`` -> ``first_name``."""
    key = _CAMEL_BOUNDARY.sub("_", str(key).strip())
    return re.sub(r"[\s\-]+", "_", key).lower()


@dataclass
class FactSheet:
    """Read-only view over client and appointment facts."""

    values: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.values = {normalize_key(k): v for k, v in self.values.items()}
        if "client_name" not in self.values:
            first = self.values.get("first_name") or ""
            last = self.values.get("last_name") or ""
            full = f"{first} {last}".strip()
            if full:
                self.values["client_name"] = full
        self.values.setdefault("tags", [])

    # ─── Lookup ────────────────────────────────────────────

    def lookup(self, name: str) -> tuple[bool, Any]:
        """Return (present, value) for a field name in any casing."""
        key = normalize_key(name)
        if key in self.values:
            return True, self.values[key]
        return False, None

    def get(self, name: str, default: Any = None) -> Any:
        present, value = self.lookup(name)
        return value if present else default

    @property
    def tags(self) -> list[str]:
        raw = self.values.get("tags") or []
        if isinstance(raw, str):
            raw = [t for t in raw.split(",")]
        return [str(t).strip().lower() for t in raw if str(t).strip()]

    def merged(self, fresh: Optional[dict]) -> "FactSheet":
        """New sheet with `fresh` facts layered over this one."""
        if not fresh:
            return FactSheet(dict(self.values))
        fresh = {normalize_key(k): v for k, v in fresh.items()}
        combined = dict(self.values)
        if "client_name" not in fresh and ("first_name" in fresh or "last_name" in fresh):
            combined.pop("client_name", None)
        combined.update(fresh)
        return FactSheet(combined)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.values)

    # ─── Construction ──────────────────────────────────────

    @classmethod
    def from_payload(
        cls,
        payload: Optional[dict] = None,
        client: Optional[dict] = None,
        appointment: Optional[dict] = None,
    ) -> "FactSheet":
        """Flatten an event payload with optional nested client/appointment snapshots.

        Top-level payload keys win over nested ones. Appointment keys are
        exposed with an ``appointment_`` prefix (``type`` -> ``appointment_type``).
        """
        values: dict[str, Any] = {}

        for key, value in (client or {}).items():
            norm = normalize_key(key)
            values[_CLIENT_ALIASES.get(norm, norm)] = value

        for key, value in (appointment or {}).items():
            norm = normalize_key(key)
            if not norm.startswith("appointment_"):
                norm = f"appointment_{norm}"
            values[norm] = value

        for key, value in (payload or {}).items():
            if key in ("client", "appointment") and isinstance(value, dict):
                continue
            values[normalize_key(key)] = value

        return cls(values)


def render_template(template: str, facts: FactSheet) -> str:
    """Substitute ``{{merge_tag}}`` placeholders with facts.

    Missing facts render as their default (see MERGE_TAG_DEFAULTS) or as
    an empty string.
    """
    if not template:
        return ""

    def _replace(match: re.Match) -> str:
        key = normalize_key(match.group(1))
        value = facts.get(key)
        if value is None or value == "" or value == []:
            return MERGE_TAG_DEFAULTS.get(key, "")
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _MERGE_TAG.sub(_replace, template)

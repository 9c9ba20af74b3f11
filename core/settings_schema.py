from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping

ANY_KEYS = "*"

# None marks a leaf, ANY_KEYS a free-form mapping, a set the allowed sub-keys.
_ALLOWED_STRUCTURE: Dict[str, Any] = {
    "version": None,
    "working_dir": None,
    "store_root": None,
    "backup": {"exclude_patterns", "compare", "one_file_system"},
    "capture": {"command_timeout_s", "recent_logins"},
    "categories": ANY_KEYS,
    "diff": {"color", "config_files"},
    "api": {"host", "port"},
}


@dataclass(slots=True)
class SettingsValidator:
    schema: Mapping[str, Any]

    def unknown_keys(self, payload: Mapping[str, Any]) -> List[str]:
        """Dotted paths of keys in *payload* the schema does not describe."""

        return sorted(self._walk(payload, self.schema, prefix=""))

    def _walk(self, payload: Mapping[str, Any], schema: Mapping[str, Any], *, prefix: str) -> Iterator[str]:
        for key, value in payload.items():
            dotted = f"{prefix}{key}"
            if key not in schema:
                yield dotted
                continue
            rule = schema[key]
            if rule is None or rule == ANY_KEYS or not isinstance(value, Mapping):
                continue
            if isinstance(rule, (set, frozenset)):
                yield from (f"{dotted}.{sub}" for sub in value if sub not in rule)
            elif isinstance(rule, Mapping):
                yield from self._walk(value, rule, prefix=f"{dotted}.")


SETTINGS_VALIDATOR = SettingsValidator(_ALLOWED_STRUCTURE)

__all__ = ["ANY_KEYS", "SETTINGS_VALIDATOR", "SettingsValidator"]

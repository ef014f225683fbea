"""
Configuration schema — the declarative description of the fields a
connector needs, sent to the peer at introspection time.

Field maps merge with *first declaration wins*: once a key is present a
later ``add_fields`` call leaves it alone unless it passes
``override=True``.  Core fields (OAuth result, endpoint token) are
declared through the same path, so whichever side declares a key first
owns it and the outcome never depends on dict-merge direction.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping

from pydantic import BaseModel

from utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

OAUTH_RESULT_FIELD = "oauthResult"
ENDPOINT_TOKEN_FIELD = "_endpointToken"


class FieldKind(str, Enum):
    LINE = "line"
    MANAGED = "managed"


class ConfigField(BaseModel):
    name: str
    display_name: str
    placeholder: str = ""
    kind: FieldKind = FieldKind.LINE
    plain: bool = False
    optional: bool = False

    model_config = {"frozen": True}

    def to_wire(self) -> Dict[str, Any]:
        return {
            "name": self.display_name,
            "placeholder": self.placeholder,
            "type": self.kind.value,
            "plain": self.plain,
            "optional": self.optional,
        }


def merge_fields(
    existing: Mapping[str, ConfigField],
    incoming: Mapping[str, ConfigField],
) -> Dict[str, ConfigField]:
    """Merge two field maps; keys already in *existing* are kept."""
    merged = dict(existing)
    for key, field in incoming.items():
        merged.setdefault(key, field)
    return merged


class ConfigSchemaBuilder:
    """Accumulates field declarations until ``freeze()``."""

    def __init__(self) -> None:
        self._fields: Dict[str, ConfigField] = {}
        self._oauth_required = False
        self._frozen = False

    # ── declarations ────────────────────────────────────────────────────

    def add_fields(self, fields: Iterable[ConfigField], override: bool = False) -> "ConfigSchemaBuilder":
        self._check_mutable()
        for field in fields:
            if field.name in self._fields and not override:
                logger.debug("Config field '%s' already declared — keeping first", field.name)
                continue
            self._fields[field.name] = field
        return self

    def require_oauth(self) -> "ConfigSchemaBuilder":
        self._check_mutable()
        self._oauth_required = True
        return self.add_fields([
            ConfigField(
                name=OAUTH_RESULT_FIELD,
                display_name="OAuth Result",
                placeholder="will be set by finishing the oauth flow",
                kind=FieldKind.MANAGED,
            )
        ])

    def add_oauth_client_fields(self) -> "ConfigSchemaBuilder":
        return self.add_fields([
            ConfigField(name="clientId", display_name="OAuth Client ID", placeholder="e.g. 1234"),
            ConfigField(name="clientSecret", display_name="OAuth Client Secret", placeholder="e.g. axd5xde"),
        ])

    def add_endpoint_token(self) -> "ConfigSchemaBuilder":
        return self.add_fields([
            ConfigField(
                name=ENDPOINT_TOKEN_FIELD,
                display_name="Endpoint Token (set to enable the endpoint)",
                placeholder="e.g. 1234",
                plain=True,
                optional=True,
            )
        ])

    def freeze(self) -> "ConfigSchemaBuilder":
        self._frozen = True
        return self

    def _check_mutable(self) -> None:
        if self._frozen:
            raise ConfigurationError("config schema is frozen after build()")

    # ── read side ───────────────────────────────────────────────────────

    @property
    def oauth_required(self) -> bool:
        return self._oauth_required

    def get(self, name: str) -> ConfigField | None:
        return self._fields.get(name)

    def is_plain(self, name: str) -> bool:
        field = self._fields.get(name)
        return bool(field and field.plain)

    def has_fields(self) -> bool:
        return bool(self._fields)

    def field_names(self) -> List[str]:
        return list(self._fields.keys())

    def snapshot(self) -> Dict[str, Any]:
        """Wire document ``{oauth, fields}``; a new dict on every call."""
        return {
            "oauth": self._oauth_required,
            "fields": {key: field.to_wire() for key, field in self._fields.items()},
        }

"""
ConnectorBuilder — collects everything a connector declares at startup
(types, operations, config fields, OAuth, endpoint, business logic) and
freezes it into a ``ConnectorDefinition``.

Usage:
    builder = Connector(id="…", version="1.0.0", name="acme").configure()
    builder.types(TYPES).operations({"listItems": list_items})
    builder.config({"apiKey": {"name": "API Key", "placeholder": "e.g. 1234"}})
    builder.main(run)
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Union

from connectors.oauth import OAuthConfig
from connectors.schema import ConfigField, ConfigSchemaBuilder
from operations.registry import CONFIG_QUERY, DEFAULT, ENDPOINT, MethodRegistry
from utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

MainFn = Callable[[Any], Awaitable[None]]
FieldDeclarations = Union[Iterable[ConfigField], Mapping[str, Mapping[str, Any]]]


def _to_fields(fields: FieldDeclarations) -> list[ConfigField]:
    """Accept ConfigField objects or the wire-style ``{key: {name, placeholder, type, …}}`` map."""
    if isinstance(fields, Mapping):
        return [
            ConfigField(
                name=key,
                display_name=decl.get("name", key),
                placeholder=decl.get("placeholder", ""),
                kind=decl.get("type", "line"),
                plain=bool(decl.get("plain", False)),
                optional=bool(decl.get("optional", False)),
            )
            for key, decl in fields.items()
        ]
    return list(fields)


@dataclass(frozen=True)
class ConnectorDefinition:
    """Read-only result of ``ConnectorBuilder.build()``."""

    schema: ConfigSchemaBuilder
    registry: MethodRegistry
    types: Optional[Dict[str, Any]]
    oauth: Optional[OAuthConfig]
    main: Optional[MainFn]

    def config_schema(self) -> Dict[str, Any]:
        return self.schema.snapshot()

    def introspect(self) -> Dict[str, Any]:
        """Declared types document, or a generated operation catalogue."""
        if self.types is not None:
            return copy.deepcopy(self.types)
        return {"operations": self.registry.catalogue()}


class ConnectorBuilder:
    def __init__(self) -> None:
        self.schema = ConfigSchemaBuilder()
        self.registry = MethodRegistry()
        self._types: Optional[Dict[str, Any]] = None
        self._oauth: Optional[OAuthConfig] = None
        self._main: Optional[MainFn] = None
        self._built = False

    def main(self, fn: MainFn) -> "ConnectorBuilder":
        self._main = fn
        return self

    def types(self, document: Dict[str, Any]) -> "ConnectorBuilder":
        self._types = copy.deepcopy(document)
        return self

    def config(self, fields: FieldDeclarations = (), override: bool = False) -> "ConnectorBuilder":
        self.schema.add_fields(_to_fields(fields), override=override)
        return self

    def oauth(self, oauth_config: Optional[OAuthConfig] = None, **kwargs: Any) -> "ConnectorBuilder":
        """Declare OAuth; pass an ``OAuthConfig`` or its fields as keywords."""
        cfg = oauth_config or OAuthConfig(**kwargs)
        cfg.check()
        if self._oauth is not None:
            raise ConfigurationError("oauth already configured")

        self._oauth = cfg
        self.schema.require_oauth()
        if cfg.configurable_client and not cfg.platform_managed:
            self.schema.add_oauth_client_fields()
        return self

    def operations(self, entries: Mapping[str, Any]) -> "ConnectorBuilder":
        self.registry.register_many(entries)
        return self

    def operation(self, name: str, fn: Callable) -> "ConnectorBuilder":
        self.registry.register(name, fn)
        return self

    def endpoint(self, fn: Callable) -> "ConnectorBuilder":
        """Enable the inbound webhook endpoint; adds the ``_endpointToken`` field."""
        self.schema.add_endpoint_token()
        self.registry.register(ENDPOINT, fn)
        return self

    def config_query(self, fn: Callable) -> "ConnectorBuilder":
        self.registry.register(CONFIG_QUERY, fn)
        return self

    def default(self, fn: Callable) -> "ConnectorBuilder":
        self.registry.register(DEFAULT, fn)
        return self

    def build(self) -> ConnectorDefinition:
        if self._built:
            raise ConfigurationError("connector already built")
        self._built = True
        self.schema.freeze()
        self.registry.freeze()

        logger.info(
            "Connector built: %d config field(s), %d operation(s), oauth=%s",
            len(self.schema.field_names()),
            len(self.registry.catalogue()),
            self.schema.oauth_required,
        )
        return ConnectorDefinition(
            schema=self.schema,
            registry=self.registry,
            types=self._types,
            oauth=self._oauth,
            main=self._main,
        )

"""Tenant connection descriptors.

A descriptor is persisted as a single string: a base connection string with a
``schema=<name>`` query parameter appended. In code it is handled as a structured
record (base connection + schema name); the string form is produced only when the
record is persisted, and the connection string used to actually connect is derived
at the point of use (without the ``schema`` parameter, which asyncpg would otherwise
forward to the server as a runtime setting).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import unquote, urlsplit, urlunsplit

SCHEMA_PARAM = "schema"


def _split_query(query: str) -> list[str]:
    return [p for p in query.split("&") if p] if query else []


def _param_name(pair: str) -> str:
    return unquote(pair.split("=", 1)[0])


@dataclass(frozen=True)
class ConnectionDescriptor:
    base_connection: str
    schema_name: Optional[str] = None
    # Original text when parsed from storage; keeps round-trips byte-identical.
    raw: Optional[str] = field(default=None, compare=False, repr=False)

    @classmethod
    def parse(cls, raw: str | None) -> "ConnectionDescriptor":
        text = raw or ""
        parts = urlsplit(text)
        pairs = _split_query(parts.query)
        schema: Optional[str] = None
        rest: list[str] = []
        for pair in pairs:
            if _param_name(pair) == SCHEMA_PARAM:
                # Last occurrence wins, matching how query strings are usually read.
                value = pair.split("=", 1)[1] if "=" in pair else ""
                schema = unquote(value) or None
            else:
                rest.append(pair)
        base = urlunsplit(parts._replace(query="&".join(rest)))
        return cls(base_connection=base, schema_name=schema, raw=text)

    def serialize(self) -> str:
        if self.raw is not None:
            return self.raw
        return self._synthesize(self.base_connection, self.schema_name)

    def with_schema(self, schema_name: str) -> "ConnectionDescriptor":
        """Return a descriptor pointing at ``schema_name``; other parameters are preserved."""
        if self.raw is None:
            return ConnectionDescriptor(self.base_connection, schema_name)
        parts = urlsplit(self.raw)
        pairs = _split_query(parts.query)
        replaced = False
        out: list[str] = []
        for pair in pairs:
            if _param_name(pair) == SCHEMA_PARAM:
                if not replaced:
                    out.append(f"{SCHEMA_PARAM}={schema_name}")
                    replaced = True
                continue
            out.append(pair)
        if not replaced:
            out.append(f"{SCHEMA_PARAM}={schema_name}")
        raw = urlunsplit(parts._replace(query="&".join(out)))
        return ConnectionDescriptor(self.base_connection, schema_name, raw=raw)

    @property
    def has_schema(self) -> bool:
        return bool(self.schema_name)

    def connection_string(self) -> str:
        """Connection string to hand to the driver (no ``schema`` parameter)."""
        return self.base_connection

    @staticmethod
    def _synthesize(base: str, schema_name: Optional[str]) -> str:
        if not schema_name:
            return base
        sep = "&" if urlsplit(base).query else "?"
        return f"{base}{sep}{SCHEMA_PARAM}={schema_name}"

    def __str__(self) -> str:
        return self.serialize()

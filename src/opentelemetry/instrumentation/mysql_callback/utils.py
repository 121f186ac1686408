# Copyright The OpenTelemetry Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""
Some utils used by the mysql callback integration
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Callable, Sequence

from opentelemetry.semconv._incubating.attributes.db_attributes import (
    DB_CONNECTION_STRING,
    DB_NAME,
    DB_USER,
)
from opentelemetry.semconv._incubating.attributes.net_attributes import (
    NET_PEER_NAME,
    NET_PEER_PORT,
)

_DEFAULT_SPAN_NAME = "mysql"
_DEFAULT_HOST = "localhost"
_CONNECTION_FIELDS = ("host", "port", "database", "user")

_leading_comment_remover = re.compile(r"^/\*.*?\*/")


def _field(record: Any, name: str) -> Any:
    """Read ``name`` from a mapping or from an attribute of ``record``."""
    if record is None:
        return None
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def _get_config(config: Any) -> dict[str, Any]:
    # Pool configs keep the connection settings one level down.
    nested = _field(config, "connection_config")
    if nested is not None:
        config = nested
    return {key: _field(config, key) for key in _CONNECTION_FIELDS}


def _get_jdbc_string(host: Any, port: Any, database: Any) -> str:
    jdbc_string = f"jdbc:mysql://{host or _DEFAULT_HOST}"
    if isinstance(port, int) and not isinstance(port, bool):
        jdbc_string += f":{port}"
    if isinstance(database, str):
        jdbc_string += f"/{database}"
    return jdbc_string


def get_connection_attributes(config: Any) -> dict[str, Any]:
    """Transform a connection or pool config record into span attributes.

    ``config`` may be an object with ``host``, ``port``, ``database`` and
    ``user`` attributes, a mapping with the same keys, or a pool config
    whose ``connection_config`` holds them. Missing values are omitted.
    """
    conn = _get_config(config)
    attributes = {
        NET_PEER_NAME: conn["host"],
        NET_PEER_PORT: conn["port"],
        DB_CONNECTION_STRING: _get_jdbc_string(
            conn["host"], conn["port"], conn["database"]
        ),
        DB_NAME: conn["database"],
        DB_USER: conn["user"],
    }
    return {key: value for key, value in attributes.items() if value is not None}


def get_query_text(query: Any) -> str:
    """Return the SQL text of a query string or query options record."""
    if isinstance(query, str):
        return query
    if isinstance(query, bytes):
        return query.decode("utf8", "replace")
    sql = _field(query, "sql")
    return sql if isinstance(sql, str) else ""


def get_span_name(query: Any) -> str:
    """Use the leading SQL keyword, e.g. ``SELECT``, as the span name."""
    text = _leading_comment_remover.sub("", get_query_text(query)).split()
    if text:
        return text[0]
    return _DEFAULT_SPAN_NAME


def get_db_statement(
    query: Any,
    format_sql: Callable[[str, Any], str] | None,
    values: Sequence[Any] | None = None,
) -> str:
    """Render the statement text recorded as ``db.statement``.

    Values passed to ``query()`` override the ``values`` of a query options
    record. Without values, or without a formatting function, the raw text
    is returned.
    """
    if not isinstance(query, (str, bytes)) and values is None:
        values = _field(query, "values")
    text = get_query_text(query)
    if values is None or format_sql is None:
        return text
    return format_sql(text, values)

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

"""In-memory stand-in for a callback style MySQL client module.

Queries never complete on their own: tests deliver the outcome of the
oldest pending query with ``resolve()``, the way a driver would on a later
turn of its event loop.
"""

import re
from collections import defaultdict
from fnmatch import fnmatch
from urllib.parse import urlparse


class Error(Exception):
    def __init__(self, message, code="PROTOCOL_CONNECTION_LOST"):
        super().__init__(message)
        self.code = code


class ConnectionConfig:
    def __init__(
        self, host="localhost", port=3306, user=None, database=None
    ):
        self.host = host
        self.port = port
        self.user = user
        self.database = database


class PoolConfig:
    def __init__(self, connection_config, connection_limit=10):
        self.connection_config = connection_config
        self.connection_limit = connection_limit


def _parse_config(config):
    if isinstance(config, ConnectionConfig):
        return config
    if isinstance(config, str):
        url = urlparse(config)
        return ConnectionConfig(
            host=url.hostname,
            port=url.port,
            user=url.username,
            database=url.path.lstrip("/") or None,
        )
    return ConnectionConfig(**(config or {}))


def _escape(value):
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return ", ".join(_escape(item) for item in value)
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def format(sql, values=None):  # pylint: disable=redefined-builtin
    if values is None:
        return sql
    if not isinstance(values, (list, tuple)):
        values = [values]
    remaining = iter(values)

    def substitute(match):
        try:
            return _escape(next(remaining))
        except StopIteration:
            return match.group(0)

    return re.sub(r"\?", substitute, sql)


class Query:
    """Result of a query made without a callback."""

    def __init__(self, sql):
        self.sql = sql
        self._listeners = defaultdict(list)

    def on(self, event, listener):
        self._listeners[event].append(listener)
        return self

    def emit(self, event, *args):
        for listener in list(self._listeners[event]):
            listener(*args)


class _PendingQuery:
    def __init__(self, sql, values, callback, stream):
        self.sql = sql
        self.values = values
        self.callback = callback
        self.stream = stream


class _Queryable:
    def __init__(self, config):
        self.config = config
        self.pending = []
        self.error_on_query = None

    def query(self, sql, values=None, callback=None):
        if callable(values):
            callback, values = values, None
        if self.error_on_query is not None:
            raise self.error_on_query
        stream = None if callback else Query(sql)
        self.pending.append(_PendingQuery(sql, values, callback, stream))
        return stream

    def resolve(self, results=None, error=None, fields=None):
        pending = self.pending.pop(0)
        if pending.callback is not None:
            return pending.callback(error, results, fields)
        if error is not None:
            pending.stream.emit("error", error)
        for row in results or []:
            pending.stream.emit("result", row)
        pending.stream.emit("end")
        return None


class Connection(_Queryable):
    pass


class Pool(_Queryable):
    def __init__(self, config):
        super().__init__(PoolConfig(config))
        self._free = []
        self.created = 0

    def get_connection(self, callback):
        if self._free:
            connection = self._free.pop()
        else:
            connection = Connection(self.config.connection_config)
            self.created += 1
        callback(None, connection)

    def release(self, connection):
        self._free.append(connection)


class PoolCluster:
    def __init__(self, config=None):
        self.config = config
        self._pools = {}

    def add(self, name, config):
        self._pools[name] = Pool(_parse_config(config))

    def get_connection(self, *args):
        *selectors, callback = args
        pattern = selectors[0] if selectors else "*"
        for name, pool in self._pools.items():
            if fnmatch(name, pattern):
                pool.get_connection(callback)
                return
        callback(Error(f"Pool does not exist: {pattern}", "POOL_NONEONLINE"))


def create_connection(config):
    return Connection(_parse_config(config))


def create_pool(config):
    return Pool(_parse_config(config))


def create_pool_cluster(config=None):
    return PoolCluster(config)

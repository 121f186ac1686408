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

"""
Instrument callback style MySQL client modules to report a span for every
query. It can be enabled by using ``MySQLCallbackInstrumentor``.

The client module is expected to expose the ``create_connection``,
``create_pool`` and ``create_pool_cluster`` factories and a ``format(sql,
values)`` function. Connections and pools run SQL through ``query``, which
accepts a callback receiving ``(error, results, fields)`` or, when no
callback is given, returns a result object emitting ``"error"`` and
``"end"`` events. Pools and clusters hand out connections through
``get_connection(..., callback)``.

Usage
-----

.. code:: python

    import my_mysql_client as mysql
    from opentelemetry.instrumentation.mysql_callback import (
        MySQLCallbackInstrumentor,
    )

    # Call instrument() to wrap the factories of the client module
    MySQLCallbackInstrumentor().instrument(module=mysql)

    pool = mysql.create_pool({"host": "localhost", "database": "test"})

    def on_connection(error, connection):
        connection.query("SELECT ?", [1], lambda err, rows, fields: ...)

    pool.get_connection(on_connection)

.. note::
    Only objects created by the factories after ``instrument`` are traced.
    After ``uninstrument`` those objects stop producing spans and drop their
    wrappers on their next call.

.. code:: python

    # Alternatively, use instrument_connection for an existing connection
    connection = mysql.create_connection("mysql://localhost/test")
    MySQLCallbackInstrumentor().instrument_connection(connection, module=mysql)

Request/Response hooks
**********************

.. code:: python

    def request_hook(span, connection, args):
        if span and span.is_recording():
            span.set_attribute("custom_user_attribute_from_request_hook", "some-value")

    def response_hook(span, error, results):
        if span and span.is_recording() and results is not None:
            span.set_attribute("db.response.returned_rows", len(results))

    MySQLCallbackInstrumentor().instrument(
        module=mysql,
        request_hook=request_hook,
        response_hook=response_hook,
    )

The response hook runs for queries made with a callback, before the span
ends.

Capture parameters
******************

Bind values are rendered into ``db.statement``. With
``capture_parameters=True`` they are also recorded as
``db.statement.parameters``.

API
---
"""

from __future__ import annotations

import logging
from typing import Any, Collection

from opentelemetry.instrumentation.instrumentor import BaseInstrumentor
from opentelemetry.instrumentation.mysql_callback.package import _instruments
from opentelemetry.instrumentation.mysql_callback.patch import (
    GET_CONNECTION_METHOD,
    QUERY_METHOD,
    MySQLCallbackIntegration,
    _InstrumentationState,
    is_wrapped,
    unwrap_client_module,
    wrap_client_module,
)
from opentelemetry.instrumentation.mysql_callback.version import __version__
from opentelemetry.instrumentation.utils import unwrap

_logger = logging.getLogger(__name__)


class MySQLCallbackInstrumentor(BaseInstrumentor):
    """An instrumentor for callback style MySQL client modules.

    See `BaseInstrumentor`
    """

    _state: _InstrumentationState | None = None
    _module: Any = None

    def instrumentation_dependencies(self) -> Collection[str]:
        return _instruments

    def _get_state(self) -> _InstrumentationState:
        # Created once and shared with every wrapper, including those on
        # objects produced by a previous instrument() call.
        if self._state is None:
            self._state = _InstrumentationState()
        return self._state

    def instrument(self, **kwargs):
        """Instrument the client module given as ``module``.

        Returns the instrumented module, also when it was already
        instrumented. Without a module nothing is wrapped and the
        instrumentor stays uninstrumented.
        """
        if kwargs.get("module") is None:
            _logger.warning(
                "No client module passed to instrument(), nothing to trace"
            )
            return None
        if self._is_instrumented_by_opentelemetry:
            # Logs the already instrumented warning.
            super().instrument(**kwargs)
            return self._module
        return super().instrument(**kwargs)

    def _instrument(self, **kwargs):
        """Wrap the factories of the client module given as ``module``.

        Returns the instrumented module.
        """
        module = kwargs["module"]
        state = self._get_state()
        integration = MySQLCallbackIntegration(
            __name__,
            state,
            version=__version__,
            tracer_provider=kwargs.get("tracer_provider"),
            format_sql=getattr(module, "format", None),
            request_hook=kwargs.get("request_hook"),
            response_hook=kwargs.get("response_hook"),
            capture_parameters=kwargs.get("capture_parameters", False),
        )
        self._module = wrap_client_module(module, integration)
        state.enabled = True
        return self._module

    def _uninstrument(self, **kwargs):
        self._get_state().enabled = False
        module = kwargs.get("module", self._module)
        if module is not None:
            unwrap_client_module(module)
        self._module = None

    # pylint:disable=no-self-use
    def instrument_connection(
        self,
        connection,
        module=None,
        tracer_provider=None,
        request_hook=None,
        response_hook=None,
        capture_parameters=False,
    ):
        """Enable instrumentation in an existing connection, pool or cluster.

        Args:
            connection:
                The object to instrument. Its ``query`` method is traced and,
                for pools and clusters, connections handed out by
                ``get_connection`` are traced too.
            module:
                Optional client module whose ``format`` function renders bind
                values into ``db.statement``.
            tracer_provider:
                An optional `TracerProvider` instance to use for tracing. If not
                provided, the globally configured tracer provider is used.
            request_hook:
                Optional callable run with ``(span, connection, args)`` after a
                query span starts.
            response_hook:
                Optional callable run with ``(span, error, results)`` before a
                callback query span ends.
            capture_parameters:
                Record bind values as ``db.statement.parameters``.

        Returns:
            The same object, with traced methods.
        """
        if is_wrapped(connection, QUERY_METHOD) or is_wrapped(
            connection, GET_CONNECTION_METHOD
        ):
            _logger.warning("Connection already instrumented")
            return connection

        integration = MySQLCallbackIntegration(
            __name__,
            _InstrumentationState(enabled=True),
            version=__version__,
            tracer_provider=tracer_provider,
            format_sql=getattr(module, "format", None),
            request_hook=request_hook,
            response_hook=response_hook,
            capture_parameters=capture_parameters,
        )
        if callable(getattr(connection, QUERY_METHOD, None)):
            integration.wrap_query(connection)
        if callable(getattr(connection, GET_CONNECTION_METHOD, None)):
            integration.wrap_get_connection(connection)
        return connection

    def uninstrument_connection(self, connection):
        """Disable instrumentation in a connection, pool or cluster.

        Connections already handed out by a pool keep their own wrappers.

        Args:
            connection: The object to uninstrument.

        Returns:
            The same object, with its original methods.
        """
        if not (
            is_wrapped(connection, QUERY_METHOD)
            or is_wrapped(connection, GET_CONNECTION_METHOD)
        ):
            _logger.warning("Connection is not instrumented")
            return connection
        unwrap(connection, QUERY_METHOD)
        unwrap(connection, GET_CONNECTION_METHOD)
        return connection

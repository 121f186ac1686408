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
"""Wrappers installed on the client module and on the objects it produces.

Spans are started with ``Tracer.start_span`` rather than as the current span
because queries complete later, when the driver calls back or the streamed
result emits ``end``. The span only lives in the closures of those listeners.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable

import wrapt
from wrapt import wrap_function_wrapper

from opentelemetry import trace
from opentelemetry.instrumentation.utils import (
    is_instrumentation_enabled,
    unwrap,
)
from opentelemetry.semconv._incubating.attributes.db_attributes import (
    DB_STATEMENT,
    DB_SYSTEM,
)
from opentelemetry.semconv.attributes.error_attributes import ERROR_TYPE
from opentelemetry.trace import (
    Span,
    SpanKind,
    Status,
    StatusCode,
    TracerProvider,
)

from .utils import (
    get_connection_attributes,
    get_db_statement,
    get_span_name,
)

_logger = logging.getLogger(__name__)

DATABASE_SYSTEM = "mysql"

FACTORY_METHODS = ("create_connection", "create_pool", "create_pool_cluster")
QUERY_METHOD = "query"
GET_CONNECTION_METHOD = "get_connection"

_SCHEMA_URL = "https://opentelemetry.io/schemas/1.11.0"


class _InstrumentationState:
    """Enabled flag read by every wrapper at call time."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled


class _QueryShape(enum.Enum):
    STREAMING = "streaming"
    CALLBACK = "callback"
    CALLBACK_WITH_VALUES = "callback_with_values"


_CALLBACK_POSITION = {
    _QueryShape.CALLBACK: 1,
    _QueryShape.CALLBACK_WITH_VALUES: 2,
}


def _resolve_query_shape(args: tuple[Any, ...]) -> _QueryShape:
    if len(args) > 1 and callable(args[1]):
        return _QueryShape.CALLBACK
    if len(args) > 2 and callable(args[2]):
        return _QueryShape.CALLBACK_WITH_VALUES
    return _QueryShape.STREAMING


def _get_values(args: tuple[Any, ...]) -> Any:
    if len(args) < 2 or args[1] is None or callable(args[1]):
        return None
    if isinstance(args[1], (list, tuple)):
        return args[1]
    if len(args) > 2:
        return [args[1]]
    return None


def is_wrapped(obj: Any, attr: str) -> bool:
    return isinstance(getattr(obj, attr, None), wrapt.ObjectProxy)


class _QuerySpan:
    """One span per query, ended at most once.

    An error recorded before ``finish`` is kept; otherwise finishing marks
    the span as successful.
    """

    def __init__(self, span: Span):
        self.span = span
        self.failed = False
        self.ended = False

    def fail(self, error: Any) -> None:
        if self.ended:
            return
        self.failed = True
        if isinstance(error, BaseException):
            self.span.set_attribute(ERROR_TYPE, type(error).__qualname__)
        self.span.set_status(
            Status(StatusCode.ERROR, _error_message(error))
        )

    def finish(self) -> None:
        if self.ended:
            return
        if not self.failed:
            self.span.set_status(Status(StatusCode.OK))
        self.ended = True
        self.span.end()


def _error_message(error: Any) -> str:
    message = getattr(error, "message", None)
    if isinstance(message, str):
        return message
    return str(error)


class MySQLCallbackIntegration:
    """Builds the wrappers for one instrumented client module.

    Every wrapper it creates holds a reference to the same ``state``, so
    disabling it is observed by wrappers on objects produced long before.
    """

    def __init__(
        self,
        name: str,
        state: _InstrumentationState,
        version: str = "",
        tracer_provider: TracerProvider | None = None,
        format_sql: Callable[[str, Any], str] | None = None,
        request_hook: Callable | None = None,
        response_hook: Callable | None = None,
        capture_parameters: bool = False,
    ):
        self.state = state
        self.format_sql = format_sql
        self.request_hook = request_hook
        self.response_hook = response_hook
        self.capture_parameters = capture_parameters
        self._tracer = trace.get_tracer(
            name,
            version,
            tracer_provider,
            schema_url=_SCHEMA_URL,
        )

    def wrap_factory(self, module: Any, name: str) -> None:
        wrap_function_wrapper(module, name, self._traced_factory)
        _logger.debug("patched %s.%s", _module_name(module), name)

    def wrap_query(self, target: Any) -> None:
        """Trace ``target.query`` unless it is already traced."""
        if is_wrapped(target, QUERY_METHOD):
            return
        wrap_function_wrapper(
            target, QUERY_METHOD, self._traced_query_factory(target)
        )

    def wrap_get_connection(self, target: Any) -> None:
        if is_wrapped(target, GET_CONNECTION_METHOD):
            return
        wrap_function_wrapper(
            target,
            GET_CONNECTION_METHOD,
            self._traced_get_connection_factory(target),
        )

    # pylint: disable=unused-argument
    def _traced_factory(self, wrapped, instance, args, kwargs):
        result = wrapped(*args, **kwargs)
        # Unwrapped on the next call after uninstrument.
        if callable(getattr(result, QUERY_METHOD, None)):
            self.wrap_query(result)
        if callable(getattr(result, GET_CONNECTION_METHOD, None)):
            self.wrap_get_connection(result)
        return result

    def _traced_get_connection_factory(self, target: Any):
        # pylint: disable=unused-argument
        def traced_get_connection(wrapped, instance, args, kwargs):
            if not self.state.enabled:
                unwrap(target, GET_CONNECTION_METHOD)
                return wrapped(*args, **kwargs)

            if 1 <= len(args) <= 3 and callable(args[-1]):
                args = args[:-1] + (self._connection_callback(args[-1]),)
            return wrapped(*args, **kwargs)

        return traced_get_connection

    def _connection_callback(self, callback: Callable):
        def connection_callback(*args, **kwargs):
            # (error, connection, ...)
            if len(args) > 1 and args[1] is not None:
                self.wrap_query(args[1])
            return callback(*args, **kwargs)

        return connection_callback

    def _traced_query_factory(self, target: Any):
        # pylint: disable=unused-argument
        def traced_query(wrapped, instance, args, kwargs):
            if not self.state.enabled:
                unwrap(target, QUERY_METHOD)
                return wrapped(*args, **kwargs)
            if not is_instrumentation_enabled() or not args:
                return wrapped(*args, **kwargs)

            shape = _resolve_query_shape(args)
            query_span = self._start_span(target, args)

            if shape is _QueryShape.STREAMING:
                return self._traced_streaming(
                    query_span, wrapped, args, kwargs
                )

            position = _CALLBACK_POSITION[shape]
            args = (
                args[:position]
                + (self._query_callback(query_span, args[position]),)
                + args[position + 1 :]
            )
            return self._call(query_span, wrapped, args, kwargs)

        return traced_query

    def _start_span(self, target: Any, args: tuple[Any, ...]) -> _QuerySpan:
        query = args[0]
        values = _get_values(args)
        attributes = {DB_SYSTEM: DATABASE_SYSTEM}
        attributes.update(
            get_connection_attributes(getattr(target, "config", None))
        )
        span = self._tracer.start_span(
            get_span_name(query),
            kind=SpanKind.CLIENT,
            attributes=attributes,
        )
        if span.is_recording():
            span.set_attribute(
                DB_STATEMENT, get_db_statement(query, self.format_sql, values)
            )
            if self.capture_parameters and values is not None:
                span.set_attribute("db.statement.parameters", str(values))
        if self.request_hook:
            self.request_hook(span, target, args)
        return _QuerySpan(span)

    @staticmethod
    def _call(query_span: _QuerySpan, wrapped, args, kwargs):
        try:
            return wrapped(*args, **kwargs)
        except Exception as exc:
            # A callback run synchronously may already have ended the span.
            if not query_span.ended:
                query_span.span.record_exception(exc)
                query_span.fail(exc)
                query_span.finish()
            raise

    def _traced_streaming(self, query_span: _QuerySpan, wrapped, args, kwargs):
        result = self._call(query_span, wrapped, args, kwargs)

        if not callable(getattr(result, "on", None)):
            # Nothing will report completion of this call.
            query_span.finish()
            return result

        def on_error(error, *_):
            query_span.fail(error)

        def on_end(*_):
            query_span.finish()

        result.on("error", on_error)
        result.on("end", on_end)
        return result

    def _query_callback(self, query_span: _QuerySpan, callback: Callable):
        def query_callback(*args, **kwargs):
            # (error, results, fields)
            if not query_span.ended:
                error = args[0] if args else None
                if error:
                    query_span.fail(error)
                if self.response_hook:
                    results = args[1] if len(args) > 1 else None
                    self.response_hook(query_span.span, error, results)
                query_span.finish()
            return callback(*args, **kwargs)

        return query_callback


def _module_name(module: Any) -> str:
    return getattr(module, "__name__", type(module).__name__)


def wrap_client_module(
    module: Any, integration: MySQLCallbackIntegration
) -> Any:
    """Wrap the connection, pool and cluster factories of ``module``."""
    for name in FACTORY_METHODS:
        if not callable(getattr(module, name, None)):
            _logger.debug(
                "%s has no factory %s, skipping", _module_name(module), name
            )
            continue
        try:
            integration.wrap_factory(module, name)
        except Exception as ex:  # pylint: disable=broad-except
            _logger.warning(
                "Failed to instrument %s.%s. %s",
                _module_name(module),
                name,
                str(ex),
            )
    return module


def unwrap_client_module(module: Any) -> None:
    for name in FACTORY_METHODS:
        unwrap(module, name)

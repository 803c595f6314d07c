"""
restbind client.

`RestClient` is the single entry point provider facades call. For every call it

1. builds the request from the descriptor and arguments (on the caller thread,
   so `DescriptorError`/`BuildError` surface immediately and nothing is sent),
2. on a worker thread, applies the client-level filters followed by the
   descriptor's filters, sends the request and dispatches the outcome.

`invoke()` returns a `concurrent.futures.Future`; `call()` blocks on it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from .builder import RequestBuilder
from .clients.http import ClientConfig, HttpTransport
from .clients.pipeline import Request
from .descriptors import RequestDescriptor
from .dispatch import Outcome, ResponseDispatcher
from .exceptions import AuthError, RequestTimeoutError, TransportError
from .fanout import gather_ordered
from .filters import FilterChain, RequestFilter, SessionFilter
from .parsers import ParserRegistry

logger = logging.getLogger(__name__)


class RestClient:
    """
    Runtime for declarative endpoints.

    Example:
        ```python
        delete_key = RequestDescriptor(
            name="delete_key_pair",
            method="DELETE",
            path="/keypair/{name}",
            params=[PathParam("name", 0)],
            fallback=VOID_ON_NOT_FOUND,
        )

        with RestClient(
            ClientConfig(base_url="https://api.example.com"),
            filters=[BasicAuthentication("user", "secret")],
        ) as client:
            client.call(delete_key, "mykey")
        ```

    Args:
        config: Client settings.
        filters: Applied to every request, before the descriptor's own filters.
        parsers: Registry used to resolve parsers referenced by name.
        transport: Overrides the `HttpTransport` built from `config`.
        executor: Worker pool for `invoke()`; a bounded `ThreadPoolExecutor`
            of `config.max_workers` threads is created (and owned) when omitted.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        filters: Iterable[RequestFilter] = (),
        parsers: ParserRegistry | None = None,
        transport: HttpTransport | None = None,
        executor: Executor | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._builder = RequestBuilder(self._config.base_url)
        self._chain = FilterChain(filters)
        self._dispatcher = ResponseDispatcher(parsers)
        self._owns_transport = transport is None
        self._transport = transport or HttpTransport(self._config)
        self._owns_executor = executor is None
        self._executor = executor
        self._executor_lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> RestClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Stop the worker pool and release the HTTP connections."""
        if self._closed:
            return
        self._closed = True
        if self._owns_executor and isinstance(self._executor, ThreadPoolExecutor):
            self._executor.shutdown(wait=True, cancel_futures=True)
        if self._owns_transport:
            self._transport.close()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def filters(self) -> tuple[RequestFilter, ...]:
        return self._chain.filters

    @property
    def parsers(self) -> ParserRegistry:
        return self._dispatcher.registry

    # =========================================================================
    # Calls
    # =========================================================================

    def build(self, descriptor: RequestDescriptor, *args: Any) -> Request:
        """Build the unfiltered request for a call (no network access)."""
        return self._builder.build(descriptor, *args)

    def prepare(self, descriptor: RequestDescriptor, request: Request) -> Request:
        """Apply the client-level filters, then the descriptor's filters."""
        return self._chain.then(descriptor.filters).apply(request)

    def invoke(self, descriptor: RequestDescriptor, *args: Any) -> Future[Any]:
        """Build the request now and run the rest of the call on the worker pool."""
        if self._closed:
            raise RuntimeError("client is closed")
        request = self.build(descriptor, *args)
        return self._worker_pool().submit(self._execute, descriptor, request)

    def call(self, descriptor: RequestDescriptor, *args: Any, timeout: float | None = None) -> Any:
        """Invoke and wait for the result."""
        future = self.invoke(descriptor, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise RequestTimeoutError(
                f"{descriptor.name} did not complete within {timeout:g}s",
                method=descriptor.method,
                url=descriptor.path,
            ) from e

    def fan_out(
        self,
        descriptor: RequestDescriptor,
        arguments: Iterable[Sequence[Any] | Any],
        *,
        timeout: float | None = None,
    ) -> list[Any]:
        """
        Invoke `descriptor` once per element of `arguments` and gather the
        results in input order. A non-tuple element is a single argument.
        """
        futures: list[Future[Any]] = []
        try:
            for args in arguments:
                call_args = args if isinstance(args, tuple) else (args,)
                futures.append(self.invoke(descriptor, *call_args))
        except BaseException:
            for future in futures:
                future.cancel()
            raise
        return gather_ordered(futures, timeout=timeout)

    # =========================================================================
    # Worker side
    # =========================================================================

    def _execute(self, descriptor: RequestDescriptor, request: Request) -> Any:
        filtered = self.prepare(descriptor, request)
        outcome: Outcome
        try:
            outcome = self._transport.send(filtered)
        except TransportError as e:
            outcome = e
        try:
            return self._dispatcher.dispatch(descriptor, filtered, outcome)
        except AuthError as e:
            self._report_auth_failure(filtered, e)
            raise

    def _report_auth_failure(self, request: Request, error: AuthError) -> None:
        for applied in request.filters:
            if isinstance(applied, SessionFilter):
                logger.debug(
                    "%s rejected credentials from %s", request.request_line, applied.cache.name
                )
                applied.cache.report_failure(error)

    def _worker_pool(self) -> Executor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._config.max_workers, thread_name_prefix="restbind"
                )
            return self._executor


class ApiFacade:
    """
    Base class for provider facades.

    Subclasses declare their endpoints as `RequestDescriptor` class attributes
    and expose methods that call `_invoke()`/`_call()`:

        ```python
        class KeyPairApi(ApiFacade):
            DELETE = RequestDescriptor(...)

            def delete(self, name: str) -> None:
                self._call(self.DELETE, name)
        ```
    """

    def __init__(self, client: RestClient):
        self._client = client

    @property
    def client(self) -> RestClient:
        return self._client

    def _invoke(self, descriptor: RequestDescriptor, *args: Any) -> Future[Any]:
        return self._client.invoke(descriptor, *args)

    def _call(self, descriptor: RequestDescriptor, *args: Any) -> Any:
        return self._client.call(descriptor, *args)

    def _fan_out(self, descriptor: RequestDescriptor, arguments: Iterable[Any]) -> list[Any]:
        return self._client.fan_out(descriptor, arguments)


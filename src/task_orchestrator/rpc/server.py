"""Line-delimited JSON-RPC 2.0 server over a text stream pair."""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from enum import Enum
from typing import Any, BinaryIO, TextIO

from task_orchestrator.errors import OrchestratorError
from task_orchestrator.rpc.handlers import RpcMethods
from task_orchestrator.rpc.protocol import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    JSONRPC_VERSION,
    PARSE_ERROR,
    RpcError,
    error_response,
    success_response,
)

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTED = "started"


class _ShutdownRequested(Exception):
    """Raised from a signal handler to leave a blocking read."""


class ProtocolServer:
    """Read one JSON request per line and write one JSON response per line.

    The server goes ``stopped -> started -> stopped`` once; a stopped
    instance cannot be started again. With ``max_workers > 1`` requests are
    handled on a thread pool and responses may be written out of order.
    """

    def __init__(
        self,
        methods: RpcMethods,
        *,
        input_stream: TextIO,
        output_stream: TextIO,
        max_workers: int = 1,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1.")
        self.methods = methods
        self.input_stream = input_stream
        self.output_stream = output_stream
        self._byte_stream: BinaryIO | None = getattr(input_stream, "buffer", None)
        self.max_workers = max_workers

        self._state = ServerState.STOPPED
        self._has_run = False
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._reading = False

    @property
    def state(self) -> ServerState:
        return self._state

    def start(self) -> None:
        with self._state_lock:
            if self._state is ServerState.STARTED:
                logger.warning("Protocol server is already started")
                return
            if self._has_run:
                raise RuntimeError("A stopped protocol server cannot be restarted.")
            self._has_run = True
            self._state = ServerState.STARTED
            if self.max_workers > 1:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="rpc-worker",
                )
        logger.info("Protocol server started")

    def stop(self) -> None:
        with self._state_lock:
            if self._state is ServerState.STOPPED:
                return
            self._state = ServerState.STOPPED
            self._stop_event.set()
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        logger.info("Protocol server stopped")

    def serve_forever(self) -> None:
        """Process lines until EOF, ``stop()`` or SIGINT/SIGTERM."""

        self.start()
        try:
            with self._signal_handlers():
                while not self._stop_event.is_set():
                    line: str | bytes = ""
                    try:
                        self._reading = True
                        line = self._read_line()
                        self._reading = False
                    except _ShutdownRequested:
                        self._reading = False
                        logger.info("Shutdown requested while waiting for input")
                        if line:
                            self._submit_raw(line)
                        break
                    if not line:
                        break
                    self._submit_raw(line)
        finally:
            self._reading = False
            self.stop()

    def handle_line(self, line: str) -> dict[str, Any] | None:
        """Handle one wire line; ``None`` means nothing should be written."""

        stripped = line.strip()
        if not stripped:
            return None
        try:
            request = json.loads(stripped)
        except json.JSONDecodeError as error:
            return error_response(None, PARSE_ERROR, f"Parse error: {error.msg}")

        if not isinstance(request, dict):
            return error_response(None, INVALID_REQUEST, "Invalid Request: expected an object")
        request_id = request.get("id")
        if request_id is not None and (
            isinstance(request_id, bool) or not isinstance(request_id, (str, int, float))
        ):
            return error_response(None, INVALID_REQUEST, "Invalid Request: bad id")
        if request.get("jsonrpc") != JSONRPC_VERSION:
            return error_response(
                request_id,
                INVALID_REQUEST,
                f'Invalid Request: "jsonrpc" must be "{JSONRPC_VERSION}"',
            )
        method = request.get("method")
        if not isinstance(method, str) or not method:
            return error_response(request_id, INVALID_REQUEST, "Invalid Request: missing method")

        try:
            result = self.methods.dispatch(method, request.get("params"))
        except RpcError as error:
            response = error_response(request_id, error.code, error.message, error.data)
        except OrchestratorError as error:
            logger.warning("%s failed: %s", method, error)
            response = error_response(request_id, INTERNAL_ERROR, str(error), error.details())
        except Exception as error:  # noqa: BLE001
            logger.exception("Unhandled error in %s", method)
            response = error_response(request_id, INTERNAL_ERROR, f"Internal error: {error}")
        else:
            response = success_response(request_id, result)

        if "id" not in request:
            return None
        return response

    def _read_line(self) -> str | bytes:
        """Next raw line; bytes when the input exposes its binary buffer.

        Reading bytes keeps undecodable input confined to its own line. A bare
        text stream that fails to decode answers with a parse error and yields
        a blank line so the loop keeps going.
        """

        if self._byte_stream is not None:
            return self._byte_stream.readline()
        try:
            return self.input_stream.readline()
        except UnicodeDecodeError as error:
            self._write(_undecodable_response(error))
            return "\n"

    def _submit_raw(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            try:
                line = raw.decode("utf-8")
            except UnicodeDecodeError as error:
                self._write(_undecodable_response(error))
                return
        else:
            line = raw
        executor = self._executor
        if executor is None:
            self._respond(line)
            return
        executor.submit(self._respond, line)

    def _respond(self, line: str) -> None:
        response = self.handle_line(line)
        if response is None:
            return
        self._write(response)

    def _write(self, response: dict[str, Any]) -> None:
        payload = json.dumps(response, ensure_ascii=False, default=str)
        with self._write_lock:
            self.output_stream.write(payload + "\n")
            self.output_stream.flush()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping protocol server", name)
            self._stop_event.set()
            if self._reading:
                raise _ShutdownRequested(name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _undecodable_response(error: UnicodeDecodeError) -> dict[str, Any]:
    logger.warning("Undecodable input line: %s", error.reason)
    return error_response(None, PARSE_ERROR, f"Parse error: invalid UTF-8 ({error.reason})")

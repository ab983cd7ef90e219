"""Script service: answers requests from the HA command-line scripts over UNIX sockets."""

from __future__ import annotations

import socket
import struct
import threading
from collections.abc import Callable, Mapping

from hadaemon.halog import Priority
from hadaemon.protocol import (
    HEADER_SIZE,
    MAX_FIST_NAME_LEN,
    SCRIPT_MAGIC,
    Header,
    ProtocolError,
    ScriptType,
    SocketIndex,
    socket_index_for,
    socket_names as default_socket_names,
    unpack_u32,
    validate_request_header,
)

# Largest request body: the FIST request (name plus flag).
MAX_REQUEST_BODY = struct.calcsize(f"={MAX_FIST_NAME_LEN}si")
POLLING_TIMEOUT = 1.0
SELECT_FAILURE_PAUSE = 10.0
LISTEN_BACKLOG = 5

_THREAD_NAMES = {
    SocketIndex.OTHER: "sc_thread_other",
    SocketIndex.QUERY: "sc_thread_query",
    SocketIndex.INTERNAL: "sc_thread_internal",
}

ServiceFunc = Callable[[bytes], bytes]


def build_dispatch_table(services: Mapping, socket_index: int) -> dict[ScriptType, ServiceFunc]:
    """Return the services that are served on the given socket, keyed by request type."""
    table: dict[ScriptType, ServiceFunc] = {}
    for kind, func in services.items():
        kind = ScriptType(kind)
        if func is None:
            continue
        index = socket_index_for(kind)
        if index is not None and int(index) == int(socket_index):
            table[kind] = func
    return table


def _read_exact(conn: socket.socket, size: int) -> bytes:
    chunks = bytearray()
    while len(chunks) < size:
        data = conn.recv(size - len(chunks))
        if not data:
            raise EOFError("connection closed by peer")
        chunks += data
    return bytes(chunks)


class ScriptServer:
    """Listens on one socket per group of request types and serves each request.

    ``services`` maps a request type to a callable taking the request body
    and returning the response body.  ``excluded_hook``, if set, is called
    after a successful set_excluded response has been sent.
    """

    def __init__(self, services, socket_names=None, io_timeout=None, log=None):
        self.socket_names = tuple(socket_names if socket_names is not None
                                  else default_socket_names())
        self.io_timeout = io_timeout
        self._log = log
        self._tables = [build_dispatch_table(services, index)
                        for index in range(len(self.socket_names))]
        self._listeners: list[socket.socket] = []
        self._threads: list[threading.Thread] = []
        self._terminate = threading.Event()
        self._report_lock = threading.Lock()
        self._reported = False
        self.excluded_hook: Callable[[], None] | None = None

    # ----- logging -------------------------------------------------------

    def _message(self, priority, text: str) -> None:
        if self._log is not None:
            self._log.message(priority, text)

    def _thread_name(self, socket_index: int) -> str:
        try:
            return _THREAD_NAMES[SocketIndex(socket_index)]
        except ValueError:
            return "sc_thread_unknown"

    def _report_invalid(self) -> None:
        with self._report_lock:
            first = not self._reported
            self._reported = True
        if first:
            self._message(Priority.ERR, "Script service received an invalid message.\n")

    # ----- lifecycle -----------------------------------------------------

    def bind(self) -> None:
        """Create the listening sockets in the abstract namespace."""
        listeners = []
        try:
            for name in self.socket_names:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                listeners.append(sock)
                sock.bind("\0" + name)
                sock.listen(LISTEN_BACKLOG)
        except OSError as err:
            for sock in listeners:
                sock.close()
            self._message(Priority.ERR,
                          f"SC: cannnot create socket for {name}. (sys {err.errno})\n")
            raise
        self._listeners = listeners

    def start(self) -> None:
        """Bind if needed and start one service thread per socket."""
        if not self._listeners:
            self.bind()
        self._terminate.clear()
        for index in range(len(self._listeners)):
            thread = threading.Thread(target=self._serve_loop, args=(index,),
                                      name=self._thread_name(index), daemon=True)
            self._threads.append(thread)
            thread.start()

    def stop(self) -> None:
        """Ask the service threads to finish and close the listening sockets."""
        self._terminate.set()
        for thread in self._threads:
            thread.join(timeout=POLLING_TIMEOUT * 3)
        self._threads = []
        for sock in self._listeners:
            sock.close()
        self._listeners = []

    def _serve_loop(self, socket_index: int) -> None:
        listener = self._listeners[socket_index]
        name = self._thread_name(socket_index)
        if self._log is not None:
            self._log.thread_id("SC")
        listener.settimeout(POLLING_TIMEOUT)
        while not self._terminate.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError as err:
                if self._terminate.is_set():
                    break
                self._message(Priority.WARNING,
                              f"SC: accept failed (thread:{name}). (sys {err.errno})\n")
                self._terminate.wait(SELECT_FAILURE_PAUSE)
                continue
            self.serve_connection(conn, socket_index)

    # ----- request handling ----------------------------------------------

    def dispatch(self, socket_index: int, header: Header, body: bytes) -> bytes:
        """Run the service for a request and return the packed response."""
        table = self._tables[socket_index]
        try:
            func = table[ScriptType(header.type)]
        except (ValueError, KeyError):
            raise ProtocolError(f"invalid type({header.type}) in head") from None
        result = bytes(func(bytes(body)))
        response = Header(magic=SCRIPT_MAGIC, response=1, type=header.type, length=len(result))
        return response.pack() + result

    def serve_connection(self, conn: socket.socket, socket_index: int):
        """Serve one request on an accepted connection; return its type or None."""
        name = self._thread_name(socket_index)
        with conn:
            conn.settimeout(self.io_timeout)
            try:
                header = Header.unpack(_read_exact(conn, HEADER_SIZE))
            except (OSError, EOFError) as err:
                self._message(Priority.WARNING,
                              f"SC: read failed in request head (thread:{name}). ({err})\n")
                return None
            try:
                validate_request_header(header, MAX_REQUEST_BODY)
            except ProtocolError:
                self._report_invalid()
                self._message(Priority.WARNING, f"SC: invalild head (thread:{name}).\n")
                return None
            try:
                body = _read_exact(conn, header.length)
            except (OSError, EOFError) as err:
                self._message(Priority.WARNING,
                              f"SC: read failed in request body (thread:{name}). ({err})\n")
                return None
            try:
                response = self.dispatch(socket_index, header, body)
            except ProtocolError:
                self._report_invalid()
                self._message(Priority.WARNING,
                              f"SC: invalid type({header.type}) in head (thread:{name}).\n")
                return None
            except Exception as err:  # a failing service must not stop the server
                self._message(Priority.ERR,
                              f"SC: service func for type {header.type} failed "
                              f"(thread:{name}) status={err}.\n")
                return None
            try:
                conn.sendall(response)
            except OSError as err:
                self._message(Priority.WARNING,
                              f"SC: write failed in response (thread:{name}). ({err})\n")
                return None
        kind = ScriptType(header.type)
        self._check_after_set_excluded(kind, response[HEADER_SIZE:])
        return kind

    def _check_after_set_excluded(self, kind: ScriptType, body: bytes) -> None:
        if kind != ScriptType.SET_EXCLUDED:
            return
        try:
            retval = unpack_u32(body)
        except ProtocolError:
            self._message(Priority.WARNING,
                          "SC: (script_service_check_after_set_excluded) res_len is too small.\n")
            return
        if retval != 0:
            return
        self._message(Priority.NOTICE, "Excluded flag is set while HA daemon is operating.\n")
        self._message(Priority.NOTICE, "HA daemon terminated.\n")
        if self.excluded_hook is not None:
            self.excluded_hook()
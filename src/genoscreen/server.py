"""
Connection acceptor.

Owns the listening socket, the signature index (loaded once) and the record
store, and runs one ConnectionHandler per accepted connection. Up to
`max_workers` handlers run on a reusable thread pool; connections beyond that
get a dedicated thread, so no connection ever waits behind another. The
accept loop only blocks in `accept()`.

Shutdown stops accepting, waits up to `shutdown_timeout` seconds for
in-flight handlers, then force-closes the sockets that are still open.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from stairval.notepad import Notepad

from .framing import FramedReader, ResponseWriter
from .handler import ConnectionHandler
from .settings import ServerSettings
from .signatures import DiseaseSignatureIndex, load_signatures
from .store import RecordStore

# accept() wakes up this often to notice a shutdown request
_ACCEPT_POLL_SECONDS = 0.5


def _close_quietly(conn: socket.socket, shutdown: bool = False) -> None:
    if shutdown:
        try:
            conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    try:
        conn.close()
    except OSError:
        pass


class ConnectionAcceptor:
    def __init__(
        self,
        settings: ServerSettings,
        index: DiseaseSignatureIndex | None = None,
        store: RecordStore | None = None,
        notepad: Notepad | None = None,
    ):
        self.settings = settings
        self.index = index if index is not None else load_signatures(settings.disease_dir, notepad)
        self.store = store if store is not None else RecordStore.in_directory(settings.data_dir)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_workers, thread_name_prefix="genoscreen-handler"
        )
        self._listener: socket.socket | None = None
        self._stopping = threading.Event()
        self._ready = threading.Event()
        # guards _clients, _pooled, _threads and the stopping transition
        self._clients_lock = threading.Lock()
        self._idle = threading.Condition(self._clients_lock)
        self._clients: set[socket.socket] = set()
        self._pooled = 0
        self._threads: set[threading.Thread] = set()

    @property
    def address(self) -> tuple[str, int]:
        """Bound (host, port); only valid after `bind`."""
        if self._listener is None:
            raise RuntimeError("Acceptor is not bound")
        return self._listener.getsockname()[:2]

    def bind(self) -> tuple[str, int]:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((self.settings.host, self.settings.port))
        listener.listen()
        listener.settimeout(_ACCEPT_POLL_SECONDS)
        self._listener = listener
        logging.info(f"Listening on {self.address[0]}:{self.address[1]}")
        return self.address

    def wait_until_ready(self, timeout: float | None = None) -> bool:
        return self._ready.wait(timeout)

    @property
    def active_connections(self) -> int:
        with self._clients_lock:
            return len(self._clients)

    def serve_forever(self) -> None:
        if self._listener is None:
            self.bind()
        self._ready.set()
        logging.info(f"Serving with {len(self.index)} disease signatures")
        try:
            while not self._stopping.is_set():
                try:
                    conn, addr = self._listener.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._stopping.is_set():
                        break
                    logging.error(f"Error accepting connection: {e}")
                    continue
                self._spawn(conn, f"{addr[0]}:{addr[1]}")
        finally:
            self._close_listener()

    def _spawn(self, conn: socket.socket, peer: str) -> bool:
        """Start a handler for `conn`, or close it when shutting down. Returns True if started."""
        conn.settimeout(self.settings.read_timeout or None)
        with self._clients_lock:
            started = not self._stopping.is_set() and self._start_handler(conn, peer)
        if not started:
            logging.info(f"[{peer}] Connection closed without a handler")
            _close_quietly(conn)
        return started

    def _start_handler(self, conn: socket.socket, peer: str) -> bool:
        # caller holds _clients_lock; the handler's cleanup waits for it
        pooled = self._pooled < self.settings.max_workers
        try:
            if pooled:
                self._executor.submit(self._run_handler, conn, peer, True)
            else:
                logging.debug(f"[{peer}] Handler pool busy, serving on a dedicated thread")
                thread = threading.Thread(
                    target=self._run_handler,
                    args=(conn, peer, False),
                    name=f"genoscreen-overflow-{peer}",
                    daemon=True,
                )
                thread.start()
                self._threads.add(thread)
        except RuntimeError as e:
            logging.error(f"[{peer}] Could not start handler: {e}")
            return False
        self._clients.add(conn)
        if pooled:
            self._pooled += 1
        return True

    def _run_handler(self, conn: socket.socket, peer: str, pooled: bool) -> None:
        try:
            handler = ConnectionHandler(
                FramedReader.from_socket(conn),
                ResponseWriter.from_socket(conn),
                self.index,
                self.store,
                self.settings,
                peer=peer,
            )
            handler.serve()
        except OSError as e:
            logging.error(f"[{peer}] Connection failed: {e}")
        except Exception:
            logging.exception(f"[{peer}] Unexpected handler failure")
        finally:
            with self._clients_lock:
                self._clients.discard(conn)
                if pooled:
                    self._pooled -= 1
                else:
                    self._threads.discard(threading.current_thread())
                self._idle.notify_all()
            _close_quietly(conn)

    def _close_listener(self) -> None:
        if self._listener is not None:
            try:
                self._listener.close()
            except OSError:
                pass

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting, drain in-flight handlers, then force-close the rest."""
        timeout = self.settings.shutdown_timeout if timeout is None else timeout
        logging.info("Shutting down acceptor")
        with self._clients_lock:
            self._stopping.set()
        self._close_listener()

        deadline = time.monotonic() + timeout
        with self._clients_lock:
            self._idle.wait_for(lambda: not self._clients, timeout=max(0.0, deadline - time.monotonic()))
            remaining = list(self._clients)
        if remaining:
            logging.warning(f"Force-closing {len(remaining)} connection(s) after {timeout}s")
            for conn in remaining:
                _close_quietly(conn, shutdown=True)

        self._executor.shutdown(wait=True)
        with self._clients_lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join()
        logging.info("Acceptor stopped")

    def __enter__(self) -> "ConnectionAcceptor":
        self.bind()
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

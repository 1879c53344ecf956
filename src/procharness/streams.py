"""Writer, collectors, and exit reaper for one child process.

Each worker is a daemon thread owning exactly one resource: the writer owns
the stdin pipe, each collector owns one output pipe and its buffer, and the
reaper owns the single ``os.waitpid`` call on the child. Pipe workers poll
their descriptor through a ``selectors`` selector, which has no
``FD_SETSIZE`` ceiling, so that :meth:`_PipeWorker.stop` takes effect within
one poll interval even when the other end of the pipe never closes.

A pipe worker records any exception that ends its loop in ``error``; the
supervisor re-raises it after joining the worker.
"""

from __future__ import annotations

import io
import logging
import os
import selectors
import threading

from procharness.models import CollectorResult

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.05
_CHUNK_SIZE = 65536


class _PipeWorker(threading.Thread):
    """Thread bound to one pipe, stoppable between polls."""

    def __init__(
        self,
        name: str,
        pipe: io.FileIO,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self._pipe = pipe
        self._fd = pipe.fileno()
        self._poll_interval = poll_interval
        self._stop_requested = threading.Event()
        self.error: Exception | None = None

    def stop(self) -> None:
        """Ask the worker to give up at its next poll."""
        self._stop_requested.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()


class Writer(_PipeWorker):
    """Delivers the input payload to the child's stdin, then closes it.

    A child that exits or closes stdin without reading everything is not an
    error; the rest of the payload is dropped.
    """

    def __init__(
        self,
        pipe: io.FileIO,
        data: bytes,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        super().__init__("stdin-writer", pipe, poll_interval)
        self._data = data
        self.written = 0

    def run(self) -> None:
        view = memoryview(self._data)
        try:
            os.set_blocking(self._fd, False)
            with selectors.DefaultSelector() as selector:
                selector.register(self._fd, selectors.EVENT_WRITE)
                while self.written < len(view) and not self.stop_requested:
                    if not selector.select(self._poll_interval):
                        continue
                    try:
                        self.written += self._write_chunk(
                            view[self.written : self.written + _CHUNK_SIZE]
                        )
                    except BlockingIOError:
                        continue
        except BrokenPipeError:
            logger.debug(
                "Child closed stdin after %d of %d bytes", self.written, len(view)
            )
        except Exception as exc:
            logger.debug("stdin writer failed after %d bytes: %s", self.written, exc)
            self.error = exc
        finally:
            if not self.stop_requested:
                self._pipe.close()

    def _write_chunk(self, chunk: memoryview) -> int:
        return os.write(self._fd, chunk)


class Collector(_PipeWorker):
    """Drains one output pipe into memory until EOF or until stopped."""

    def __init__(
        self,
        stream: str,
        pipe: io.FileIO,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        super().__init__(f"{stream}-collector", pipe, poll_interval)
        self.stream = stream
        self._buffer = bytearray()
        self._lock = threading.Lock()
        self._finished = False

    def run(self) -> None:
        try:
            with selectors.DefaultSelector() as selector:
                selector.register(self._fd, selectors.EVENT_READ)
                while not self.stop_requested:
                    if not selector.select(self._poll_interval):
                        continue
                    chunk = self._read_chunk()
                    if not chunk:
                        self._finished = True
                        return
                    with self._lock:
                        self._buffer.extend(chunk)
        except Exception as exc:
            logger.debug("%s collector failed: %s", self.stream, exc)
            self.error = exc

    def _read_chunk(self) -> bytes:
        return os.read(self._fd, _CHUNK_SIZE)

    @property
    def finished(self) -> bool:
        """Whether the pipe reached EOF."""
        return self._finished

    def snapshot(self) -> bytes:
        """Bytes collected so far."""
        with self._lock:
            return bytes(self._buffer)

    def result(self) -> CollectorResult:
        return CollectorResult(
            stream=self.stream, data=self.snapshot(), finished=self._finished
        )


class Reaper(threading.Thread):
    """Waits for the child to exit with a single blocking ``os.waitpid``.

    Attributes:
        status: Raw wait status once the child has been reaped.
        error: Error raised by ``os.waitpid``, if any.
    """

    def __init__(self, pid: int) -> None:
        super().__init__(name=f"reaper-{pid}", daemon=True)
        self.pid = pid
        self.status: int | None = None
        self.error: OSError | None = None

    def run(self) -> None:
        try:
            _, self.status = os.waitpid(self.pid, 0)
        except OSError as exc:
            self.error = exc

    def wait(self, timeout: float | None) -> bool:
        """Wait up to *timeout* seconds for the child to be reaped.

        Starts the reaper on first use. ``None`` waits without bound.

        Returns:
            ``True`` once the wait has completed (successfully or not).
        """
        if not self.is_alive() and self.ident is None:
            self.start()
        self.join(timeout)
        return not self.is_alive()

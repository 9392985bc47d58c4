from __future__ import annotations

# Non-blocking stdin/stdout/stderr pump for one child process.
#
# The invoker calls pump() in its monitor loop; each call waits at most
# `timeout` seconds, so deadline and cancellation checks are never starved and
# a child that neither reads its input nor writes output cannot deadlock us.

import errno
import os
import selectors
import subprocess
from dataclasses import dataclass, field
from typing import Optional

CHUNK = 64 * 1024


@dataclass
class BoundedBuffer:
    """Keeps the first `limit` bytes, counts the rest."""
    limit: int
    data: bytearray = field(default_factory=bytearray)
    total: int = 0

    @property
    def truncated(self) -> bool:
        return self.total > self.limit

    def feed(self, chunk: bytes) -> None:
        self.total += len(chunk)
        room = self.limit - len(self.data)
        if room > 0:
            self.data.extend(chunk[:room])

    def getvalue(self) -> bytes:
        return bytes(self.data)


class IORelay:
    def __init__(self, proc: subprocess.Popen, input_bytes: bytes, *, max_stdout: int, max_stderr: int):
        assert proc.stdout is not None and proc.stderr is not None
        self.proc = proc
        self.stdout = BoundedBuffer(max_stdout)
        self.stderr = BoundedBuffer(max_stderr)
        self._input = memoryview(input_bytes)
        self._sel = selectors.DefaultSelector()
        self._stdin_fd: Optional[int] = None

        for stream, name in ((proc.stdout, "stdout"), (proc.stderr, "stderr")):
            os.set_blocking(stream.fileno(), False)
            self._sel.register(stream.fileno(), selectors.EVENT_READ, data=name)

        if proc.stdin is not None:
            fd = proc.stdin.fileno()
            if len(self._input):
                os.set_blocking(fd, False)
                self._stdin_fd = fd
                self._sel.register(fd, selectors.EVENT_WRITE, data="stdin")
            else:
                proc.stdin.close()

    @property
    def outputs_open(self) -> bool:
        return any(key.data != "stdin" for key in self._sel.get_map().values())

    @property
    def input_pending(self) -> bool:
        return self._stdin_fd is not None

    def _close_stdin(self) -> None:
        if self._stdin_fd is None:
            return
        self._sel.unregister(self._stdin_fd)
        self._stdin_fd = None
        try:
            self.proc.stdin.close()
        except BrokenPipeError:
            # child closed its end first; nothing left to deliver
            pass

    def _write_input(self) -> None:
        try:
            n = os.write(self._stdin_fd, self._input[:CHUNK])
        except BlockingIOError:
            return
        except (BrokenPipeError, ConnectionResetError):
            self._close_stdin()
            return
        self._input = self._input[n:]
        if not len(self._input):
            self._close_stdin()

    def _read(self, fd: int, name: str) -> None:
        try:
            chunk = os.read(fd, CHUNK)
        except BlockingIOError:
            return
        except OSError as e:
            if e.errno != errno.EIO:
                raise
            chunk = b""
        if not chunk:
            self._sel.unregister(fd)
            return
        (self.stdout if name == "stdout" else self.stderr).feed(chunk)

    def pump(self, timeout: float) -> None:
        """One select round: deliver input if writable, drain whatever output is ready."""
        if not self._sel.get_map():
            return
        for key, _mask in self._sel.select(timeout=timeout):
            if key.data == "stdin":
                if self._stdin_fd is not None:
                    self._write_input()
            else:
                self._read(key.fd, key.data)

    def close(self) -> None:
        self._close_stdin()
        self._sel.close()
        for stream in (self.proc.stdout, self.proc.stderr):
            if stream is not None and not stream.closed:
                stream.close()

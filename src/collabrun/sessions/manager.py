from __future__ import annotations
import codecs
import fcntl
import os
import pty
import shutil
import signal
import struct
import subprocess
import termios
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import structlog

from ..core.errors import SessionNotFound

log = structlog.get_logger(__name__)

Emit = Callable[[str], None]
OnExit = Callable[[int], None]


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _controlling_tty():
    # runs in the child after setsid(): make the pty slave on fd 0 our terminal
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


@dataclass
class Session:
    session_id: str
    emit: Emit
    on_exit: Optional[OnExit] = None
    size: Tuple[int, int] = (80, 30)     # cols, rows
    process: Optional[subprocess.Popen] = None
    master_fd: Optional[int] = None
    last_activity: float = field(default_factory=time.monotonic)
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)


class SessionManager:
    """
    One shell per client connection, created on the first input.

    Output is pushed to the session's `emit` callback from a reader thread bound
    to that session when the shell is spawned. A shell that exits on its own
    triggers `on_exit(code)` and the session is released.
    """

    def __init__(
        self,
        shell: str = "bash",
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        grace_s: float = 2.0,
        default_size: Tuple[int, int] = (80, 30),
    ):
        self.shell = shutil.which(shell) or "/bin/sh"
        self.cwd = cwd or os.environ.get("HOME") or "/"
        self.env = {**os.environ, **(env or {}), "TERM": "xterm-color"}
        self.grace_s = grace_s
        self.default_size = default_size
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    # ------------ client events ------------

    def connect(self, session_id: str, emit: Emit, on_exit: Optional[OnExit] = None) -> Session:
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                sess = Session(session_id, emit, on_exit, size=self.default_size)
                self._sessions[session_id] = sess
                log.info("session_connected", session_id=session_id)
            return sess

    def write(self, session_id: str, data: str) -> None:
        sess = self._get(session_id)
        with sess.lock:
            if sess.closed:
                raise SessionNotFound(session_id)
            if sess.process is None:
                self._spawn(sess)
            if sess.master_fd is None:
                raise SessionNotFound(session_id)
            sess.last_activity = time.monotonic()
            # held across the write: the reader clears master_fd under this lock before closing it
            try:
                os.write(sess.master_fd, data.encode("utf-8"))
            except OSError as e:
                raise SessionNotFound(session_id) from e

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        with self._lock:
            sess = self._sessions.get(session_id)
        if sess is None:
            return
        with sess.lock:
            sess.size = (cols, rows)
            if sess.master_fd is not None and not sess.closed:
                # the kernel delivers SIGWINCH to the shell's foreground group
                _set_winsize(sess.master_fd, cols, rows)

    def disconnect(self, session_id: str) -> None:
        with self._lock:
            sess = self._sessions.pop(session_id, None)
        if sess is None:
            return
        with sess.lock:
            sess.closed = True
            proc = sess.process
        if proc is not None:
            # the reader thread closes the pty once the shell is gone
            self._terminate(sess, proc)
        log.info("session_disconnected", session_id=session_id)

    # ------------ housekeeping ------------

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def reap_idle(self, max_idle_s: float) -> int:
        cutoff = time.monotonic() - max_idle_s
        with self._lock:
            idle = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
        for sid in idle:
            log.info("session_idle_reaped", session_id=sid)
            self.disconnect(sid)
        return len(idle)

    def close_all(self) -> None:
        with self._lock:
            ids = list(self._sessions)
        for sid in ids:
            self.disconnect(sid)

    # ------------ process ------------

    def _get(self, session_id: str) -> Session:
        with self._lock:
            sess = self._sessions.get(session_id)
        if sess is None:
            raise SessionNotFound(session_id)
        return sess

    def _spawn(self, sess: Session) -> None:
        master, slave = pty.openpty()
        try:
            _set_winsize(master, *sess.size)
            proc = subprocess.Popen(
                [self.shell],
                stdin=slave, stdout=slave, stderr=slave,
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,
                preexec_fn=_controlling_tty,
            )
        except OSError:
            os.close(master)
            raise
        finally:
            os.close(slave)
        sess.process = proc
        sess.master_fd = master
        threading.Thread(
            target=self._pump, args=(sess, proc, master),
            name=f"session-{sess.session_id[:8]}", daemon=True,
        ).start()
        log.info("session_shell_started", session_id=sess.session_id, pid=proc.pid, shell=self.shell)

    def _pump(self, sess: Session, proc: subprocess.Popen, fd: int) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = os.read(fd, 4096)
            except OSError:
                # EIO once every holder of the slave side is gone
                break
            if not chunk:
                break
            self._deliver(sess, decoder.decode(chunk))
        self._deliver(sess, decoder.decode(b"", final=True))

        code = proc.wait()
        self._close_fd(sess)
        with self._lock:
            owned = self._sessions.get(sess.session_id) is sess
            if owned:
                del self._sessions[sess.session_id]
        if not owned:
            # disconnect already released it; no exit notice for a closed connection
            return
        with sess.lock:
            sess.closed = True
        log.info("session_shell_exited", session_id=sess.session_id, code=code)
        if sess.on_exit is not None:
            try:
                sess.on_exit(code)
            except Exception:
                log.warning("session_exit_notice_failed", session_id=sess.session_id, exc_info=True)

    @staticmethod
    def _deliver(sess: Session, text: str) -> None:
        if not text or sess.closed:
            return
        try:
            sess.emit(text)
        except Exception:
            log.warning("session_emit_failed", session_id=sess.session_id, exc_info=True)

    def _terminate(self, sess: Session, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        for sig in (signal.SIGHUP, signal.SIGTERM):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                return
        try:
            proc.wait(timeout=self.grace_s)
            return
        except subprocess.TimeoutExpired:
            pass
        log.info("session_kill_escalated", session_id=sess.session_id, pid=proc.pid)
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        proc.wait()

    @staticmethod
    def _close_fd(sess: Session) -> None:
        with sess.lock:
            fd, sess.master_fd = sess.master_fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass

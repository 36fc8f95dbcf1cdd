"""Native companion host -- clipboard and confined file reads over framed stdio.

Every message on the wire is ``[4-byte little-endian length][UTF-8 JSON]``.
Requests look like ``{"op": ..., "args": {...}, "id": ...}`` and responses
``{"ok": true, "data": ..., "id": ...}`` or ``{"ok": false, "error": ..., "id": ...}``.

Only three operations exist: ``clipboard.read``, ``clipboard.write`` and
``fs.readText``. File reads are limited to an allow-listed set of roots and a
maximum size.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import shutil
import struct
import subprocess
import sys
import threading
from pathlib import Path
from typing import IO, Any, Sequence

from pageclick.engine.cancellation import CancellationToken, run_cancellable
from pageclick.models import NATIVE_ALLOWED_DIRS, NATIVE_MAX_READ_BYTES

logger = logging.getLogger("pageclick.engine.native_host")

HOST_NAME = "com.pageclick.host"
SUPPORTED_OPS = ("clipboard.read", "clipboard.write", "fs.readText")
MAX_FRAME_BYTES = 8 * 1024 * 1024

_HEADER = struct.Struct("<I")


class NativeHostError(Exception):
    """Framing, transport or operation failure of the native companion."""


# -- Framing -----------------------------------------------------------------


def encode_message(payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload).encode("utf-8")
    return _HEADER.pack(len(body)) + body


def read_message(stream: IO[bytes]) -> Any | None:
    """Read one framed JSON message. Returns None on a clean EOF.

    Raises NativeHostError on a truncated frame and ValueError when the body
    is not JSON.
    """
    header = stream.read(_HEADER.size)
    if not header:
        return None
    if len(header) < _HEADER.size:
        raise NativeHostError("Truncated frame header")
    (length,) = _HEADER.unpack(header)
    if length > MAX_FRAME_BYTES:
        raise NativeHostError(f"Frame too large ({length} bytes)")
    body = stream.read(length)
    if len(body) < length:
        raise NativeHostError("Truncated frame body")
    return json.loads(body.decode("utf-8"))


def write_message(stream: IO[bytes], payload: dict[str, Any]) -> None:
    stream.write(encode_message(payload))
    stream.flush()


# -- Clipboard ---------------------------------------------------------------


class Clipboard:
    """System clipboard through the platform's command line tools."""

    _CANDIDATES = (
        (("pbpaste",), ("pbcopy",)),
        (("wl-paste", "--no-newline"), ("wl-copy",)),
        (("xclip", "-selection", "clipboard", "-o"), ("xclip", "-selection", "clipboard")),
    )

    def __init__(self, read_cmd: Sequence[str] | None = None, write_cmd: Sequence[str] | None = None) -> None:
        if read_cmd is None or write_cmd is None:
            for candidate_read, candidate_write in self._CANDIDATES:
                if shutil.which(candidate_read[0]) and shutil.which(candidate_write[0]):
                    read_cmd, write_cmd = candidate_read, candidate_write
                    break
        self._read_cmd = list(read_cmd) if read_cmd else None
        self._write_cmd = list(write_cmd) if write_cmd else None

    def read(self) -> str:
        if not self._read_cmd:
            raise NativeHostError("No clipboard tool available (install pbpaste, wl-paste or xclip)")
        out = subprocess.run(self._read_cmd, capture_output=True, text=True, errors="replace", check=False)
        if out.returncode != 0:
            raise NativeHostError(out.stderr.strip() or f"{self._read_cmd[0]} failed")
        return out.stdout

    def write(self, text: str) -> None:
        if not self._write_cmd:
            raise NativeHostError("No clipboard tool available (install pbcopy, wl-copy or xclip)")
        out = subprocess.run(
            self._write_cmd, input=text, capture_output=True, text=True, errors="replace", check=False
        )
        if out.returncode != 0:
            raise NativeHostError(out.stderr.strip() or f"{self._write_cmd[0]} failed")


# -- Host --------------------------------------------------------------------


class NativeHost:
    """Handles native companion requests."""

    def __init__(
        self,
        allowed_dirs: Sequence[str | Path] = NATIVE_ALLOWED_DIRS,
        max_read_bytes: int = NATIVE_MAX_READ_BYTES,
        clipboard: Clipboard | None = None,
    ) -> None:
        self.allowed_roots = [Path(os.path.expanduser(str(d))).resolve() for d in allowed_dirs]
        self.max_read_bytes = max_read_bytes
        self._clipboard = clipboard

    @property
    def clipboard(self) -> Clipboard:
        if self._clipboard is None:
            self._clipboard = Clipboard()
        return self._clipboard

    def is_path_allowed(self, candidate: str) -> bool:
        resolved = Path(os.path.expanduser(candidate)).resolve()
        return any(resolved == root or root in resolved.parents for root in self.allowed_roots)

    def read_text(self, raw_path: Any) -> str:
        if not raw_path or not isinstance(raw_path, str):
            raise NativeHostError("fs.readText requires args.path (string)")
        if not self.is_path_allowed(raw_path):
            roots = ", ".join(str(r) for r in self.allowed_roots)
            raise NativeHostError(f"Path is not allowed. Allowed roots: {roots}")
        resolved = Path(os.path.expanduser(raw_path)).resolve()
        if not resolved.is_file():
            raise NativeHostError("Target path is not a file")
        if resolved.stat().st_size > self.max_read_bytes:
            raise NativeHostError(f"File too large (> {self.max_read_bytes} bytes)")
        return resolved.read_text(encoding="utf-8", errors="replace")

    def handle_request(self, request: Any) -> dict[str, Any]:
        """Turn one request into one response. Never raises."""
        if not isinstance(request, dict):
            return {"ok": False, "error": "Invalid request payload", "id": None}

        request_id = request.get("id")
        op = request.get("op")
        args = request.get("args") or {}
        if not isinstance(args, dict):
            return {"ok": False, "error": "args must be an object", "id": request_id}

        try:
            if op == "clipboard.read":
                data: dict[str, Any] = {"text": self.clipboard.read()}
            elif op == "clipboard.write":
                self.clipboard.write(str(args.get("text") or ""))
                data = {"written": True}
            elif op == "fs.readText":
                data = {"path": args.get("path"), "content": self.read_text(args.get("path"))}
            else:
                return {"ok": False, "error": f'Unsupported operation "{op}"', "id": request_id}
        except (NativeHostError, OSError) as exc:
            logger.warning("Native op %s failed: %s", op, exc)
            return {"ok": False, "error": str(exc), "id": request_id}
        return {"ok": True, "data": data, "id": request_id}

    def serve(self, stdin: IO[bytes], stdout: IO[bytes]) -> None:
        """Answer framed requests from *stdin* until EOF."""
        while True:
            try:
                request = read_message(stdin)
            except NativeHostError as exc:
                logger.error("Stopping native host: %s", exc)
                return
            except ValueError:
                write_message(stdout, {"ok": False, "error": f"{HOST_NAME}: invalid JSON request", "id": None})
                continue
            if request is None:
                return
            write_message(stdout, self.handle_request(request))


# -- Clients -----------------------------------------------------------------


class InProcessNativeClient:
    """Calls a NativeHost directly, without a subprocess."""

    def __init__(self, host: NativeHost) -> None:
        self._host = host
        self._ids = itertools.count(1)

    def request(self, op: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        return self._host.handle_request({"op": op, "args": args or {}, "id": next(self._ids)})

    def close(self) -> None:
        pass


class NativeHostClient:
    """Talks to ``pageclick native-host`` running as a child process.

    Each response must arrive within *timeout* seconds. A child that misses
    the deadline or breaks the framing is killed and restarted on the next
    request.
    """

    def __init__(self, command: Sequence[str] | None = None, timeout: float = 10.0) -> None:
        self._command = list(command or [sys.executable, "-m", "pageclick.cli.app", "native-host"])
        self._timeout = timeout
        self._proc: subprocess.Popen[bytes] | None = None
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def _ensure_started(self) -> subprocess.Popen[bytes]:
        if self._proc is None or self._proc.poll() is not None:
            logger.debug("Starting native host: %s", " ".join(self._command))
            self._proc = subprocess.Popen(self._command, stdin=subprocess.PIPE, stdout=subprocess.PIPE)
        return self._proc

    def _kill(self) -> None:
        if self._proc is None:
            return
        self._proc.kill()
        self._proc.wait()
        self._proc = None

    def request(self, op: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        request_id = next(self._ids)
        with self._lock:
            proc = self._ensure_started()
            assert proc.stdin is not None and proc.stdout is not None
            stdout = proc.stdout
            try:
                write_message(proc.stdin, {"op": op, "args": args or {}, "id": request_id})
                response = run_cancellable(lambda: read_message(stdout), CancellationToken(), timeout=self._timeout)
            except TimeoutError as exc:
                self._kill()
                raise NativeHostError(f"Native host did not answer within {self._timeout:g}s") from exc
            except (OSError, ValueError, NativeHostError) as exc:
                self._kill()
                raise NativeHostError(f"Native host I/O failed: {exc}") from exc
        if response is None:
            raise NativeHostError("Native host exited without responding")
        if not isinstance(response, dict):
            raise NativeHostError("Native host sent a malformed response")
        if response.get("id") not in (request_id, None):
            raise NativeHostError(f"Response id {response.get('id')} does not match request {request_id}")
        return response

    def close(self) -> None:
        if self._proc is None:
            return
        if self._proc.stdin:
            self._proc.stdin.close()
        try:
            self._proc.wait(timeout=self._timeout)
        except subprocess.TimeoutExpired:
            self._proc.kill()
        self._proc = None

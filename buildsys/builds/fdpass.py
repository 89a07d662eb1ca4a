"""File descriptor passing over abstract Unix sockets.

The build container has no writable mount of the host. Instead, it
connects to a named abstract socket and receives an open descriptor for its
output directory. This module provides both ends of that exchange.
"""

from __future__ import annotations

import logging
import os
import socket
import struct
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

ACCEPT_TIMEOUT = 0.5

_UCRED = struct.Struct("3i")


def _abstract_address(name: str) -> str:
    return "\0" + name


def peer_uid(conn: socket.socket) -> int:
    """Return the uid of the process on the other end of ``conn``."""
    creds = conn.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, _UCRED.size)
    _pid, uid, _gid = _UCRED.unpack(creds)
    return uid


class DescriptorServer:
    """Serve a directory descriptor to clients running as ``client_uid``.

    Attributes:
        socket_name: Name in the abstract socket namespace.
        client_uid: Only clients with this uid receive the descriptor.
        path: Directory whose descriptor is handed out.
    """

    def __init__(self, socket_name: str, client_uid: int, path: Path) -> None:
        self.socket_name = socket_name
        self.client_uid = client_uid
        self.path = path
        self._sock: socket.socket | None = None

    def bind(self) -> None:
        """Bind and listen on the abstract socket."""
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(_abstract_address(self.socket_name))
            sock.listen()
            sock.settimeout(ACCEPT_TIMEOUT)
        except OSError:
            sock.close()
            raise
        self._sock = sock
        logger.debug("Descriptor server listening on @%s", self.socket_name)

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _handle(self, conn: socket.socket) -> None:
        uid = peer_uid(conn)
        if uid != self.client_uid:
            logger.warning(
                "Rejected descriptor request on @%s from uid %d", self.socket_name, uid
            )
            return
        fd = os.open(self.path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            socket.send_fds(conn, [b"\0"], [fd])
        finally:
            os.close(fd)
        logger.debug("Sent descriptor for %s to uid %d", self.path, uid)

    def serve(self, stop: threading.Event) -> None:
        """Answer requests until ``stop`` is set.

        Errors serving a single client are logged; they do not stop the
        server.
        """
        if self._sock is None:
            self.bind()
        assert self._sock is not None
        try:
            while not stop.is_set():
                try:
                    conn, _ = self._sock.accept()
                except socket.timeout:
                    continue
                with conn:
                    try:
                        self._handle(conn)
                    except OSError as e:
                        logger.warning(
                            "Failed to serve descriptor on @%s: %s", self.socket_name, e
                        )
        finally:
            self.close()
            logger.debug("Descriptor server on @%s stopped", self.socket_name)


def request_descriptor(socket_name: str, timeout: float = 5.0) -> int:
    """Connect to a descriptor server and receive its descriptor.

    Returns:
        The received file descriptor; the caller must close it.

    Raises:
        OSError: If the connection fails or no descriptor is received.
    """
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        sock.connect(_abstract_address(socket_name))
        _msg, fds, _flags, _addr = socket.recv_fds(sock, 1, 1)
    if not fds:
        raise ConnectionError(f"No descriptor received from @{socket_name}")
    return fds[0]


__all__ = ["DescriptorServer", "peer_uid", "request_descriptor"]

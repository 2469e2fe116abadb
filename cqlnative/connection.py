# Copyright DataStax, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Byte stream transports a :class:`~cqlnative.Session` runs the protocol over.
"""

import logging
import socket
from threading import Lock

from cqlnative import TransportError

log = logging.getLogger(__name__)

PERSISTENT_HOST_PREFIX = 'p:'


def parse_host(host):
    """
    Splits the persistent marker off a host string: ``'p:db1'`` asks for a
    persistent transport to ``db1``. Returns ``(address, persistent)``.
    """
    if host.startswith(PERSISTENT_HOST_PREFIX):
        return host[len(PERSISTENT_HOST_PREFIX):], True
    return host, False


class Transport(object):
    """
    The interface a session needs from its byte stream. Every failure is
    raised as :class:`~cqlnative.TransportError`.
    """

    is_persistent = False
    endpoint = None

    def open(self, address, port, timeout):
        raise NotImplementedError()

    def read_exact(self, size):
        """
        Blocks until exactly `size` bytes were read and returns them.
        """
        raise NotImplementedError()

    def write_all(self, data):
        raise NotImplementedError()

    def settimeout(self, timeout):
        raise NotImplementedError()

    def close(self):
        raise NotImplementedError()

    def release(self):
        """
        Called instead of :meth:`close` when a session is done with a
        persistent transport that should stay open.
        """
        pass

    @property
    def is_fresh(self):
        """
        True while nothing has been written on the underlying handle; a
        reused handle that is not fresh already went through the handshake.
        """
        return True

    @property
    def is_open(self):
        raise NotImplementedError()


class _SocketHandle(object):

    def __init__(self, sock):
        self.socket = sock
        self.bytes_written = 0


class SocketTransport(Transport):
    """
    A plain or TLS TCP connection, closed with the session.
    """

    _socket_impl = socket

    ssl_context = None
    """
    An optional :class:`ssl.SSLContext` the socket is wrapped with.
    """

    def __init__(self, ssl_context=None):
        self.ssl_context = ssl_context
        self._handle = None

    def open(self, address, port, timeout):
        self.endpoint = '%s:%s' % (address, port)
        self._handle = _SocketHandle(self._connect_socket(address, port, timeout))

    def _get_socket_addresses(self, address, port):
        try:
            addresses = self._socket_impl.getaddrinfo(address, port, socket.AF_UNSPEC, socket.SOCK_STREAM)
        except socket.gaierror as err:
            raise TransportError("Could not resolve %s: %s" % (address, err), self.endpoint)
        if not addresses:
            raise TransportError("getaddrinfo returned empty list for %s" % (self.endpoint,), self.endpoint)
        return addresses

    def _wrap_socket_from_context(self, sock, address):
        opts = {}
        if self.ssl_context.check_hostname:
            opts['server_hostname'] = address
        return self.ssl_context.wrap_socket(sock, **opts)

    def _connect_socket(self, address, port, timeout):
        sockerr = None
        sock = None
        addresses = self._get_socket_addresses(address, port)
        for (af, socktype, proto, _, sockaddr) in addresses:
            try:
                sock = self._socket_impl.socket(af, socktype, proto)
                if self.ssl_context:
                    sock = self._wrap_socket_from_context(sock, address)
                sock.settimeout(timeout)
                sock.connect(sockaddr)
                return sock
            except (socket.error, socket.timeout) as err:
                if sock:
                    sock.close()
                    sock = None
                sockerr = err

        raise TransportError("Tried connecting to %s. Last error: %s" %
                             ([a[4] for a in addresses], sockerr), self.endpoint)

    @property
    def _socket(self):
        if self._handle is None or self._handle.socket is None:
            raise TransportError("Transport to %s is not open" % (self.endpoint,), self.endpoint)
        return self._handle.socket

    def read_exact(self, size):
        buf = bytearray()
        while len(buf) < size:
            try:
                chunk = self._socket.recv(size - len(buf))
            except socket.timeout:
                raise TransportError("Timed out reading from %s after %d of %d bytes"
                                     % (self.endpoint, len(buf), size), self.endpoint)
            except socket.error as err:
                raise TransportError("Error reading from %s: %s" % (self.endpoint, err), self.endpoint)
            if not chunk:
                raise TransportError("Connection to %s closed after reading %d of %d bytes"
                                     % (self.endpoint, len(buf), size), self.endpoint)
            buf.extend(chunk)
        return bytes(buf)

    def write_all(self, data):
        sock = self._socket
        try:
            sock.sendall(data)
        except (socket.error, socket.timeout) as err:
            raise TransportError("Error writing to %s: %s" % (self.endpoint, err), self.endpoint)
        self._handle.bytes_written += len(data)

    def settimeout(self, timeout):
        self._socket.settimeout(timeout)

    def close(self):
        handle, self._handle = self._handle, None
        if handle is not None and handle.socket is not None:
            sock, handle.socket = handle.socket, None
            try:
                sock.close()
            except socket.error:
                log.debug("Error closing socket to %s", self.endpoint, exc_info=True)

    @property
    def is_fresh(self):
        return self._handle is None or self._handle.bytes_written == 0

    @property
    def is_open(self):
        return self._handle is not None and self._handle.socket is not None


class PersistentSocketTransport(SocketTransport):
    """
    A socket transport whose connection outlives the session that opened
    it. Opening the same address and port again in this process reuses the
    connection; :attr:`is_fresh` tells whether it still needs a handshake.
    Reusing sessions must take turns: one handle is never shared concurrently.
    """

    is_persistent = True

    _handles = {}
    _handles_lock = Lock()

    def open(self, address, port, timeout):
        self.endpoint = '%s:%s' % (address, port)
        key = (address, port)
        with self._handles_lock:
            handle = self._handles.get(key)
            if handle is not None and handle.socket is not None:
                log.debug("Reusing persistent connection to %s", self.endpoint)
                self._handle = handle
                return
        handle = _SocketHandle(self._connect_socket(address, port, timeout))
        with self._handles_lock:
            self._handles[key] = handle
        self._handle = handle

    def close(self):
        handle = self._handle
        with self._handles_lock:
            for key, registered in list(self._handles.items()):
                if registered is handle:
                    del self._handles[key]
        SocketTransport.close(self)

    def release(self):
        """
        Detaches from the connection and leaves it open for the next session.
        """
        self._handle = None

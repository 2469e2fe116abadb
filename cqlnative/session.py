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
The :class:`Session` owns one transport to one node and runs the protocol
over it: the STARTUP handshake with optional authentication, then queries,
prepared statements and batches.
"""

import logging
import random
import time

from cqlnative import (ConsistencyLevel, ConnectionShutdown, DriverException,
                       ProtocolError, ServerError, TransportError, UsageError)
from cqlnative.connection import parse_host, PersistentSocketTransport, SocketTransport
from cqlnative.protocol import (ProtocolHandler, read_frame, opcode_name,
                                StartupMessage, CredentialsMessage, AuthResponseMessage,
                                QueryMessage, PrepareMessage, ExecuteMessage, BatchMessage,
                                ReadyMessage, AuthenticateMessage, AuthChallengeMessage,
                                AuthSuccessMessage, ResultMessage)
from cqlnative.query import (PreparedStatement, SetKeyspace, bind_values,
                             result_from_message)

log = logging.getLogger(__name__)

SYNC_STREAM_ID = 0
ASYNC_STREAM_ID = 1


class Session(object):
    """
    A connection to a single node.

    Requests are either synchronous, writing one frame and blocking for its
    response, or asynchronous :meth:`execute` calls that are written
    immediately and drained in order by :meth:`read_async`. No synchronous
    request may be issued while asynchronous ones are pending.

    A session is not thread safe.

    Example usage::

        >>> with Session().connect('127.0.0.1', keyspace='ks') as session:
        ...     rows = session.query('SELECT name FROM users')
        ...     stmt = session.prepare('INSERT INTO users (id, name) VALUES (?, ?)')
        ...     session.execute(stmt, {'id': 1, 'name': 'bob'})
    """

    connect_timeout = 2
    """
    Seconds to wait for the socket to connect and for each handshake
    response.
    """

    read_timeout = 120
    """
    Seconds to wait for a response once the session is connected.
    """

    raw_blobs = False
    """
    Return blob and custom values as raw bytes instead of ``0x`` hex strings.
    """

    cql_version = '3.0.0'
    """
    Sent as the ``CQL_VERSION`` STARTUP option.
    """

    auth_provider = None
    """
    An optional :class:`~cqlnative.auth.AuthProvider`. When set, a node asking
    for authentication gets a SASL exchange; otherwise the username and
    password given to :meth:`connect` are sent as CREDENTIALS.
    """

    ssl_context = None
    """
    An optional :class:`ssl.SSLContext` for the socket transports.
    """

    transport_factory = None
    """
    Callable taking ``persistent`` and returning an unopened
    :class:`~cqlnative.connection.Transport`. Defaults to the socket
    transports.
    """

    default_port = 9042
    default_retries = 3
    default_consistency_level = ConsistencyLevel.ALL

    transport = None
    host = None

    in_flight = 0
    """
    Number of asynchronous requests written but not yet read back.
    """

    def __init__(self, connect_timeout=None, read_timeout=None, raw_blobs=None,
                 cql_version=None, auth_provider=None, ssl_context=None,
                 transport_factory=None):
        if connect_timeout is not None:
            self.connect_timeout = connect_timeout
        if read_timeout is not None:
            self.read_timeout = read_timeout
        if raw_blobs is not None:
            self.raw_blobs = raw_blobs
        if cql_version is not None:
            self.cql_version = cql_version
        if auth_provider is not None:
            self.auth_provider = auth_provider
        if ssl_context is not None:
            self.ssl_context = ssl_context
        if transport_factory is not None:
            self.transport_factory = transport_factory

        self._warnings = []
        self._last_frame = None

    def set_timeout_connect(self, seconds):
        self.connect_timeout = seconds

    def set_timeout_read(self, seconds):
        self.read_timeout = seconds

    @property
    def warnings(self):
        """
        Warnings the node attached to the last frame read.
        """
        return list(self._warnings)

    @property
    def last_frame(self):
        """
        Raw bytes of the last frame read, for diagnostics.
        """
        return self._last_frame

    @property
    def is_connected(self):
        return self.transport is not None and self.transport.is_open

    def _new_transport(self, persistent):
        if self.transport_factory is not None:
            return self.transport_factory(persistent)
        if persistent:
            return PersistentSocketTransport(ssl_context=self.ssl_context)
        return SocketTransport(ssl_context=self.ssl_context)

    def connect(self, host, user='', password='', keyspace='', port=None, retries=None):
        """
        Connects to `host`, authenticating with `user` and `password` if the
        node asks for it, and switches to `keyspace` when one is given.

        Prefixing `host` with ``p:`` uses a persistent connection: one left
        open by an earlier session to the same host and port is reused
        without a new handshake.

        Up to `retries` attempts are made with a random one to two second
        pause between them. The last attempt's error is raised if none
        succeeds. Returns this session.
        """
        port = self.default_port if port is None else port
        retries = self.default_retries if retries is None else retries

        last_error = None
        for attempt in range(retries):
            if attempt:
                delay = random.uniform(1, 2)
                log.warning("Connecting to %s:%s failed (%s); retrying in %.2f seconds",
                            host, port, last_error, delay)
                time.sleep(delay)
            try:
                self._connect_once(host, user, password, keyspace, port)
                return self
            except DriverException as exc:
                last_error = exc

        if last_error is not None:
            raise last_error
        raise ConnectionShutdown("Could not connect to %s:%s" % (host, port))

    def _connect_once(self, host, user, password, keyspace, port):
        if self.transport is not None:
            self.close()

        address, persistent = parse_host(host)
        self.host = address
        log.debug("Connecting to %s:%s (persistent=%s)", address, port, persistent)
        transport = self._new_transport(persistent)
        transport.open(address, port, self.connect_timeout)
        self.transport = transport
        self.in_flight = 0

        try:
            if transport.is_persistent and not transport.is_fresh:
                log.debug("Skipping handshake on established connection to %s", transport.endpoint)
            else:
                transport.settimeout(self.connect_timeout)
                self._handshake(address, user, password)
            transport.settimeout(self.read_timeout)

            if keyspace:
                self._use_keyspace(keyspace)
        except DriverException as exc:
            self.defunct(exc)
            raise

    def _handshake(self, address, user, password):
        log.debug("Sending STARTUP on connection to %s", self.transport.endpoint)
        self._send(StartupMessage(self.cql_version))
        response = self._read_message()

        if isinstance(response, AuthenticateMessage):
            log.debug("Got AUTHENTICATE (%s) from %s", response.authenticator, self.transport.endpoint)
            if self.auth_provider is not None:
                self._authenticate_sasl(address, response)
                return
            self._send(CredentialsMessage({'username': user, 'password': password}))
            response = self._read_message()

        if not isinstance(response, ReadyMessage):
            raise ProtocolError("Missing READY frame; got %s instead" % (opcode_name(response.opcode),),
                                frame=self._last_frame)
        log.debug("Got READY from %s", self.transport.endpoint)

    def _authenticate_sasl(self, address, auth_message):
        authenticator = self.auth_provider.new_authenticator(address)
        authenticator.server_authenticator_class = auth_message.authenticator
        self._send(AuthResponseMessage(authenticator.initial_response()))
        while True:
            response = self._read_message()
            if isinstance(response, AuthChallengeMessage):
                self._send(AuthResponseMessage(authenticator.evaluate_challenge(response.challenge)))
            elif isinstance(response, AuthSuccessMessage):
                log.debug("Authenticated to %s", self.transport.endpoint)
                authenticator.on_authentication_success(response.token)
                return
            else:
                raise ProtocolError("Unexpected %s frame during authentication"
                                    % (opcode_name(response.opcode),), frame=self._last_frame)

    def _use_keyspace(self, keyspace):
        result = self.query('USE %s' % (keyspace,))
        if keyspace.startswith('"') and keyspace.endswith('"'):
            expected = keyspace[1:-1]
        else:
            expected = keyspace.lower()
        if not isinstance(result, SetKeyspace) or result.keyspace != expected:
            raise ProtocolError("Keyspace %s was not set; got %r" % (keyspace, result),
                                frame=self._last_frame)

    def close(self, force_persistent=False):
        """
        Closes the connection. A persistent connection is left open for
        reuse by a later session unless `force_persistent` is set or
        asynchronous responses are still unread on it.
        """
        transport, self.transport = self.transport, None
        pending, self.in_flight = self.in_flight, 0
        if transport is None:
            return
        if transport.is_persistent and not force_persistent and pending:
            log.debug("Closing persistent connection to %s with %d unread responses",
                      transport.endpoint, pending)
            force_persistent = True
        if transport.is_persistent and not force_persistent:
            transport.release()
        else:
            transport.close()

    def defunct(self, exc):
        """
        Closes the connection after `exc` and returns it. Whatever went
        wrong, the state of the stream is unknown afterwards.
        """
        endpoint = self.transport.endpoint if self.transport is not None else self.host
        log.debug("Defuncting session to %s: %s", endpoint, exc)
        self.close(force_persistent=True)
        return exc

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None and self.in_flight and self.transport is not None:
            self.read_async()
        self.close()

    def _check_no_pending(self, operation):
        if self.in_flight:
            raise UsageError("Cannot %s while %d async requests are pending; call read_async() first"
                             % (operation, self.in_flight))

    def _send(self, message, stream_id=SYNC_STREAM_ID):
        if self.transport is None:
            raise ConnectionShutdown("Session to %s is not connected" % (self.host,))
        data = ProtocolHandler.encode_message(message, stream_id)
        try:
            self.transport.write_all(data)
        except TransportError as exc:
            self.defunct(exc)
            raise

    def _read_message(self):
        if self.transport is None:
            raise ConnectionShutdown("Session to %s is not connected" % (self.host,))
        try:
            frame = read_frame(self.transport)
            self._last_frame = frame.raw
            message = ProtocolHandler.decode_message(frame, self.raw_blobs)
            self._warnings = list(frame.warnings or ())
        except (TransportError, ProtocolError) as exc:
            self.defunct(exc)
            raise
        if isinstance(message, ServerError):
            raise self.defunct(message)
        return message

    def _read_result(self, query_string=None):
        message = self._read_message()
        try:
            if not isinstance(message, ResultMessage):
                raise ProtocolError("Unexpected %s frame while waiting for RESULT"
                                    % (opcode_name(message.opcode),), frame=self._last_frame)
            return result_from_message(message, query_string)
        except ProtocolError as exc:
            if exc.frame is None:
                exc.frame = self._last_frame
            self.defunct(exc)
            raise

    def query(self, query, consistency_level=None):
        """
        Runs an unprepared CQL statement and returns its result:
        :class:`~cqlnative.query.Rows`, :class:`~cqlnative.query.VoidResult`,
        :class:`~cqlnative.query.SetKeyspace` or
        :class:`~cqlnative.query.SchemaChange`.
        """
        self._check_no_pending('query')
        if consistency_level is None:
            consistency_level = self.default_consistency_level
        self._send(QueryMessage(query, consistency_level))
        return self._read_result(query)

    def prepare(self, query):
        """
        Prepares a CQL statement on the node and returns a
        :class:`~cqlnative.query.PreparedStatement`.
        """
        self._check_no_pending('prepare')
        self._send(PrepareMessage(query))
        result = self._read_result(query)
        if not isinstance(result, PreparedStatement):
            exc = ProtocolError("Expected a PREPARED result for %r, got %r" % (query, result),
                                frame=self._last_frame)
            raise self.defunct(exc)
        return result

    def execute(self, prepared_statement, values=None, consistency_level=None, async_=False):
        """
        Executes `prepared_statement` with `values`, a sequence in bind
        marker order or a dict keyed by column name.

        With `async_` set the request is written and :const:`None` returned
        at once; its result comes back from :meth:`read_async`.
        """
        if not async_:
            self._check_no_pending('execute')
        if consistency_level is None:
            consistency_level = self.default_consistency_level
        params = bind_values(prepared_statement, values)
        message = ExecuteMessage(prepared_statement.query_id, params, consistency_level)

        if async_:
            self._send(message, ASYNC_STREAM_ID)
            self.in_flight += 1
            return None

        self._send(message)
        return self._read_result(prepared_statement.query_string)

    def execute_async(self, prepared_statement, values=None, consistency_level=None):
        return self.execute(prepared_statement, values, consistency_level, async_=True)

    def read_async(self):
        """
        Reads the results of all pending asynchronous requests, in the
        order they were sent.
        """
        results = []
        while self.in_flight:
            results.append(self._read_result())
            self.in_flight -= 1
        return results

    def batch(self, batch, consistency_level=None):
        """
        Sends a :class:`~cqlnative.query.BatchStatement` as one BATCH request.
        The batch is left as it was; clear it before reusing it.
        """
        self._check_no_pending('batch')
        if consistency_level is None:
            consistency_level = self.default_consistency_level
        self._send(BatchMessage(batch.get_data(), consistency_level))
        return self._read_result()

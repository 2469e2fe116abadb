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

import logging

logging.getLogger('cqlnative').addHandler(logging.NullHandler())

__version_info__ = (1, 0, 0)
__version__ = '.'.join(map(str, __version_info__))


class ConsistencyLevel(object):
    """
    Specifies how many replicas must respond for an operation to be considered
    a success.  The value is passed through to the server as-is; by default
    ``ALL`` is used for all operations.
    """

    ANY = 0x0000
    """
    Only requires that one replica receives the write *or* the coordinator
    stores a hint to replay later. Valid only for writes.
    """

    ONE = 0x0001
    """
    Only one replica needs to respond to consider the operation a success
    """

    TWO = 0x0002
    THREE = 0x0003

    QUORUM = 0x0004
    """
    ``ceil(RF/2)`` replicas must respond to consider the operation a success
    """

    ALL = 0x0005
    """
    All replicas must respond to consider the operation a success
    """

    LOCAL_QUORUM = 0x0006
    """
    Requires a quorum of replicas in the local datacenter
    """

    EACH_QUORUM = 0x0007
    """
    Requires a quorum of replicas in each datacenter
    """

    LOCAL_ONE = 0x000A
    """
    Sends a request only to replicas in the local datacenter and waits for
    one response.
    """


ConsistencyLevel.value_to_name = {
    ConsistencyLevel.ANY: 'ANY',
    ConsistencyLevel.ONE: 'ONE',
    ConsistencyLevel.TWO: 'TWO',
    ConsistencyLevel.THREE: 'THREE',
    ConsistencyLevel.QUORUM: 'QUORUM',
    ConsistencyLevel.ALL: 'ALL',
    ConsistencyLevel.LOCAL_QUORUM: 'LOCAL_QUORUM',
    ConsistencyLevel.EACH_QUORUM: 'EACH_QUORUM',
    ConsistencyLevel.LOCAL_ONE: 'LOCAL_ONE'
}


def consistency_value_to_name(value):
    return ConsistencyLevel.value_to_name.get(value, "Unknown(%r)" % (value,))


class ProtocolVersion(object):
    """
    The native protocol version spoken on every frame.  Only one version is
    supported; it is written into the low seven bits of the version byte of
    each outgoing frame and checked on each incoming one.
    """

    V4 = 4
    """
    v4, supported in Cassandra 2.2-->3.x+; adds server warnings and custom
    payloads.
    """

    CURRENT = V4


class SchemaTargetType(object):
    KEYSPACE = 'KEYSPACE'
    TABLE = 'TABLE'
    TYPE = 'TYPE'
    FUNCTION = 'FUNCTION'
    AGGREGATE = 'AGGREGATE'


class DriverException(Exception):
    """
    Base for all exceptions explicitly raised by the driver.
    """
    pass


class TransportError(DriverException):
    """
    The byte stream to the node failed: connecting, reading or writing did
    not complete, a read timed out, or the stream ended before a full frame
    arrived.  The session's connection is always closed when this is raised.
    """

    def __init__(self, message, endpoint=None):
        DriverException.__init__(self, message)
        self.endpoint = endpoint


class ConnectionShutdown(TransportError):
    """
    Raised when a request is attempted on a session whose connection is
    closed or was never opened.
    """
    pass


class ProtocolError(DriverException):
    """
    Communication did not match the protocol that this driver expects.
    """

    frame = None
    """
    Raw bytes (header and body) of the frame that could not be handled,
    when one was read.
    """

    def __init__(self, message, frame=None):
        DriverException.__init__(self, message)
        self.frame = frame


class ServerError(DriverException):
    """
    The node answered a request with an ERROR frame.

    Subclasses exist for each error code the protocol defines; codes that are
    not known to the driver are raised as this class.
    """

    summary = 'Server error'

    code = None
    """ The numeric error code sent by the node """

    message = None
    """ The error message sent by the node """

    info = None
    """ Code-specific extra information, when the node sent any """

    def __init__(self, code, message, info=None):
        self.code = code
        self.message = message
        self.info = info
        DriverException.__init__(self, self.summary_msg())

    def summary_msg(self):
        msg = 'Error from server: code=%04x [%s] message="%s"' \
              % (self.code, self.summary, self.message)
        if self.info:
            info = dict(self.info)
            if 'consistency' in info:
                info['consistency'] = consistency_value_to_name(info['consistency'])
            msg += ' info=%r' % (info,)
        return msg


class UsageError(DriverException):
    """
    The caller broke the session's contract, for example by issuing a
    synchronous request while asynchronous requests are pending or by
    leaving a bound column without a value.  The connection is not touched.
    """
    pass


class AuthenticationFailed(DriverException):
    """
    Failed to authenticate.
    """
    pass


from cqlnative.query import BatchStatement, BatchType, PreparedStatement  # noqa: E402
from cqlnative.session import Session  # noqa: E402

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

from collections import namedtuple
import io
import logging
import struct
from uuid import UUID

from cqlnative import ProtocolError, ProtocolVersion, SchemaTargetType, ServerError
from cqlnative import type_codes
from cqlnative.cqltypes import DataType, lookup_type
from cqlnative.marshal import (int8_unpack, int32_pack, int32_unpack, uint8_pack,
                               uint16_pack, uint16_unpack, frame_header_pack,
                               frame_header_unpack, FRAME_HEADER_LENGTH)

log = logging.getLogger(__name__)


HEADER_DIRECTION_TO_CLIENT = 0x80
HEADER_VERSION_MASK = 0x7f

COMPRESSED_FLAG = 0x01
TRACING_FLAG = 0x02
CUSTOM_PAYLOAD_FLAG = 0x04
WARNING_FLAG = 0x08


class Opcode(object):
    """
    Message type tags carried in the frame header.
    """

    ERROR = 0x00
    STARTUP = 0x01
    READY = 0x02
    AUTHENTICATE = 0x03
    CREDENTIALS = 0x04
    OPTIONS = 0x05
    SUPPORTED = 0x06
    QUERY = 0x07
    RESULT = 0x08
    PREPARE = 0x09
    EXECUTE = 0x0A
    REGISTER = 0x0B
    EVENT = 0x0C
    BATCH = 0x0D
    AUTH_CHALLENGE = 0x0E
    AUTH_RESPONSE = 0x0F
    AUTH_SUCCESS = 0x10


Opcode.value_to_name = dict(
    (value, name) for name, value in vars(Opcode).items() if name.isupper())


def opcode_name(opcode):
    return Opcode.value_to_name.get(opcode, "Unknown(0x%02x)" % (opcode,))


ColumnMetadata = namedtuple('ColumnMetadata',
                            ['keyspace', 'table', 'name', 'type', 'subtype1', 'subtype2'])
"""
One column of a result set or of a prepared statement's bind markers. ``type``
is a type code or a custom type class name; ``subtype1`` and ``subtype2`` are
filled for collections, and hold a :class:`~cqlnative.cqltypes.DataType` when
the subtype is itself a collection.
"""


def column_metadata(keyspace, table, name, coltype):
    if isinstance(coltype, DataType):
        return ColumnMetadata(keyspace, table, name, *coltype)
    return ColumnMetadata(keyspace, table, name, coltype, None, None)


class Frame(object):
    """
    A frame read off the transport: the decoded header fields plus the body,
    and the raw bytes of the whole frame for diagnostics.

    ``trace_id``, ``warnings`` and ``custom_payload`` are filled in when the
    body is decoded.
    """

    trace_id = None
    warnings = None
    custom_payload = None

    def __init__(self, version, flags, stream, opcode, body, raw=None):
        self.version = version
        self.flags = flags
        self.stream = stream
        self.opcode = opcode
        self.body = body
        self.raw = raw

    @property
    def is_response(self):
        return bool(self.version & HEADER_DIRECTION_TO_CLIENT)

    def __eq__(self, other):  # facilitates testing
        if isinstance(other, Frame):
            return (self.version == other.version and
                    self.flags == other.flags and
                    self.stream == other.stream and
                    self.opcode == other.opcode and
                    self.body == other.body)
        return NotImplemented

    def __str__(self):
        return "ver({0}); flags({1:04b}); stream({2}); op({3}); len({4})".format(
            self.version, self.flags, self.stream, opcode_name(self.opcode), len(self.body))


def encode_frame(opcode, body, is_response=False, stream_id=0):
    """
    Returns the bytes of a frame: the 9 byte header followed by `body`.
    Flags are always zero on frames this driver sends.
    """
    version = ProtocolVersion.CURRENT
    if is_response:
        version |= HEADER_DIRECTION_TO_CLIENT
    return frame_header_pack(version, 0, stream_id, opcode, len(body)) + body


def read_frame(transport):
    """
    Reads exactly one frame from `transport`. Short reads surface as the
    transport's :class:`~cqlnative.TransportError`; a frame for another
    protocol version raises :class:`~cqlnative.ProtocolError`, carrying the
    node's message when the frame is an ERROR with the same header layout.
    """
    header = transport.read_exact(FRAME_HEADER_LENGTH)
    version, flags, stream, opcode, length = frame_header_unpack(header)
    if version & HEADER_VERSION_MASK != ProtocolVersion.CURRENT:
        raise _version_mismatch(transport, header)
    body = transport.read_exact(length) if length else b''
    return Frame(version, flags, stream, opcode, body, header + body)


def _version_mismatch(transport, header):
    version, flags, stream, opcode, length = frame_header_unpack(header)
    version &= HEADER_VERSION_MASK
    message = "Unsupported protocol version %d in frame header" % (version,)
    # v1 and v2 headers are 8 bytes, so only v3+ bodies can be located
    if opcode != Opcode.ERROR or version < 3 or not length:
        return ProtocolError(message, frame=header)

    body = transport.read_exact(length)
    try:
        error = ErrorMessage.recv_body(io.BytesIO(body))
    except (ProtocolError, ValueError, struct.error):
        log.debug("Could not decode v%d ERROR body", version, exc_info=True)
    else:
        message += "; node replied: %s" % (error.message,)
    return ProtocolError(message, frame=header + body)


class _RegisterMessageType(type):
    def __init__(cls, name, bases, dct):
        if not name.startswith('_'):
            _message_types_by_opcode[cls.opcode] = cls


_message_types_by_opcode = {}


class _MessageType(object, metaclass=_RegisterMessageType):

    warnings = None
    trace_id = None
    custom_payload = None

    def __repr__(self):
        return '<%s(%s)>' % (self.__class__.__name__, ', '.join('%s=%r' % i for i in _get_params(self)))


def _get_params(message_obj):
    base_attrs = dir(_MessageType)
    return (
        (n, a) for n, a in message_obj.__dict__.items()
        if n not in base_attrs and not n.startswith('_') and not callable(a)
    )


error_classes = {}


class ErrorMessage(_MessageType):
    """
    Decodes ERROR bodies into the :class:`~cqlnative.ServerError` registered
    for the error code.
    """
    opcode = Opcode.ERROR
    name = 'ERROR'

    @classmethod
    def recv_body(cls, f, **kwargs):
        code = read_int(f)
        msg = read_string(f)
        subcls = error_classes.get(code, ServerError)
        extra = f.read()
        info = None
        if extra and hasattr(subcls, 'recv_error_info'):
            info = subcls.recv_error_info(io.BytesIO(extra))
        return subcls(code=code, message=msg, info=info)


class ErrorMessageSubclass(type):
    def __init__(cls, name, bases, dct):
        if cls.error_code is not None:
            error_classes[cls.error_code] = cls


class _ServerErrorSub(ServerError, metaclass=ErrorMessageSubclass):
    error_code = None


class RequestExecutionException(_ServerErrorSub):
    pass


class RequestValidationException(_ServerErrorSub):
    pass


class InternalServerError(_ServerErrorSub):
    summary = 'Server error'
    error_code = 0x0000


class ProtocolException(_ServerErrorSub):
    summary = 'Protocol error'
    error_code = 0x000A


class BadCredentials(_ServerErrorSub):
    summary = 'Bad credentials'
    error_code = 0x0100


class Unavailable(RequestExecutionException):
    summary = 'Unavailable exception'
    error_code = 0x1000

    @staticmethod
    def recv_error_info(f):
        return {
            'consistency': read_consistency_level(f),
            'required_replicas': read_int(f),
            'alive_replicas': read_int(f),
        }


class Overloaded(RequestExecutionException):
    summary = 'Coordinator node overloaded'
    error_code = 0x1001


class IsBootstrapping(RequestExecutionException):
    summary = 'Coordinator node is bootstrapping'
    error_code = 0x1002


class TruncateError(RequestExecutionException):
    summary = 'Error during truncate'
    error_code = 0x1003


class WriteTimeout(RequestExecutionException):
    summary = "Coordinator node timed out waiting for replica nodes' responses"
    error_code = 0x1100

    @staticmethod
    def recv_error_info(f):
        return {
            'consistency': read_consistency_level(f),
            'received_responses': read_int(f),
            'required_responses': read_int(f),
            'write_type': read_string(f),
        }


class ReadTimeout(RequestExecutionException):
    summary = "Coordinator node timed out waiting for replica nodes' responses"
    error_code = 0x1200

    @staticmethod
    def recv_error_info(f):
        return {
            'consistency': read_consistency_level(f),
            'received_responses': read_int(f),
            'required_responses': read_int(f),
            'data_retrieved': bool(read_byte(f)),
        }


class ReadFailure(RequestExecutionException):
    summary = "Replica(s) failed to execute read"
    error_code = 0x1300

    @staticmethod
    def recv_error_info(f):
        return {
            'consistency': read_consistency_level(f),
            'received_responses': read_int(f),
            'required_responses': read_int(f),
            'failures': read_int(f),
            'data_retrieved': bool(read_byte(f)),
        }


class FunctionFailure(RequestExecutionException):
    summary = "User Defined Function failure"
    error_code = 0x1400

    @staticmethod
    def recv_error_info(f):
        return {
            'keyspace': read_string(f),
            'function': read_string(f),
            'arg_types': read_stringlist(f),
        }


class WriteFailure(RequestExecutionException):
    summary = "Replica(s) failed to execute write"
    error_code = 0x1500

    @staticmethod
    def recv_error_info(f):
        return {
            'consistency': read_consistency_level(f),
            'received_responses': read_int(f),
            'required_responses': read_int(f),
            'failures': read_int(f),
            'write_type': read_string(f),
        }


class SyntaxException(RequestValidationException):
    summary = 'Syntax error in CQL query'
    error_code = 0x2000


class Unauthorized(RequestValidationException):
    summary = 'Unauthorized'
    error_code = 0x2100


class InvalidRequest(RequestValidationException):
    summary = 'Invalid query'
    error_code = 0x2200


class ConfigurationException(RequestValidationException):
    summary = 'Query invalid because of configuration issue'
    error_code = 0x2300


class AlreadyExists(ConfigurationException):
    summary = 'Item already exists'
    error_code = 0x2400

    @staticmethod
    def recv_error_info(f):
        return {
            'keyspace': read_string(f),
            'table': read_string(f),
        }


class PreparedQueryNotFound(RequestValidationException):
    summary = 'Matching prepared statement not found on this node'
    error_code = 0x2500

    @staticmethod
    def recv_error_info(f):
        return {'id': read_binary_string(f)}


class StartupMessage(_MessageType):
    opcode = Opcode.STARTUP
    name = 'STARTUP'

    def __init__(self, cqlversion, options=None):
        self.cqlversion = cqlversion
        self.options = options or {}

    def send_body(self, f):
        optmap = self.options.copy()
        optmap['CQL_VERSION'] = self.cqlversion
        write_stringmap(f, optmap)


class ReadyMessage(_MessageType):
    opcode = Opcode.READY
    name = 'READY'

    @classmethod
    def recv_body(cls, f, **kwargs):
        return cls()


class AuthenticateMessage(_MessageType):
    opcode = Opcode.AUTHENTICATE
    name = 'AUTHENTICATE'

    def __init__(self, authenticator):
        self.authenticator = authenticator

    @classmethod
    def recv_body(cls, f, **kwargs):
        authname = read_string(f)
        return cls(authenticator=authname)


class CredentialsMessage(_MessageType):
    opcode = Opcode.CREDENTIALS
    name = 'CREDENTIALS'

    def __init__(self, creds):
        self.creds = creds

    def send_body(self, f):
        write_stringmap(f, self.creds)


class AuthChallengeMessage(_MessageType):
    opcode = Opcode.AUTH_CHALLENGE
    name = 'AUTH_CHALLENGE'

    def __init__(self, challenge):
        self.challenge = challenge

    @classmethod
    def recv_body(cls, f, **kwargs):
        return cls(read_binary_longstring(f))


class AuthResponseMessage(_MessageType):
    opcode = Opcode.AUTH_RESPONSE
    name = 'AUTH_RESPONSE'

    def __init__(self, response):
        self.response = response

    def send_body(self, f):
        write_value(f, self.response)


class AuthSuccessMessage(_MessageType):
    opcode = Opcode.AUTH_SUCCESS
    name = 'AUTH_SUCCESS'

    def __init__(self, token):
        self.token = token

    @classmethod
    def recv_body(cls, f, **kwargs):
        return cls(read_binary_longstring(f))


_VALUES_FLAG = 0x01


class QueryMessage(_MessageType):
    opcode = Opcode.QUERY
    name = 'QUERY'

    def __init__(self, query, consistency_level):
        self.query = query
        self.consistency_level = consistency_level

    def send_body(self, f):
        write_longstring(f, self.query)
        write_consistency_level(f, self.consistency_level)
        write_byte(f, 0)


class PrepareMessage(_MessageType):
    opcode = Opcode.PREPARE
    name = 'PREPARE'

    def __init__(self, query):
        self.query = query

    def send_body(self, f):
        write_longstring(f, self.query)


class ExecuteMessage(_MessageType):
    opcode = Opcode.EXECUTE
    name = 'EXECUTE'

    def __init__(self, query_id, query_params, consistency_level):
        self.query_id = query_id
        self.query_params = query_params
        self.consistency_level = consistency_level

    def send_body(self, f):
        write_string(f, self.query_id)
        write_consistency_level(f, self.consistency_level)
        write_byte(f, _VALUES_FLAG)
        write_short(f, len(self.query_params))
        for param in self.query_params:
            write_value(f, param)


class BatchMessage(_MessageType):
    """
    ``batch_data`` is the kind, count and entries exactly as assembled by
    :meth:`~cqlnative.query.BatchStatement.get_data`.
    """
    opcode = Opcode.BATCH
    name = 'BATCH'

    def __init__(self, batch_data, consistency_level):
        self.batch_data = batch_data
        self.consistency_level = consistency_level

    def send_body(self, f):
        f.write(self.batch_data)
        write_consistency_level(f, self.consistency_level)
        write_byte(f, 0)


RESULT_KIND_VOID = 0x0001
RESULT_KIND_ROWS = 0x0002
RESULT_KIND_SET_KEYSPACE = 0x0003
RESULT_KIND_PREPARED = 0x0004
RESULT_KIND_SCHEMA_CHANGE = 0x0005


class ResultMessage(_MessageType):
    opcode = Opcode.RESULT
    name = 'RESULT'

    _FLAGS_GLOBAL_TABLES_SPEC = 0x0001
    _HAS_MORE_PAGES_FLAG = 0x0002
    _NO_METADATA_FLAG = 0x0004

    kind = None

    # These are all the things a result message might contain. They are populated according to 'kind'
    column_metadata = None
    parsed_rows = None
    paging_state = None
    new_keyspace = None
    query_id = None
    bind_metadata = None
    pk_indexes = None
    schema_change_event = None

    def __init__(self, kind):
        self.kind = kind

    def recv(self, f, raw_blobs):
        if self.kind == RESULT_KIND_VOID:
            return
        elif self.kind == RESULT_KIND_ROWS:
            self.recv_results_rows(f, raw_blobs)
        elif self.kind == RESULT_KIND_SET_KEYSPACE:
            self.new_keyspace = read_string(f)
        elif self.kind == RESULT_KIND_PREPARED:
            self.recv_results_prepared(f)
        elif self.kind == RESULT_KIND_SCHEMA_CHANGE:
            self.recv_results_schema_change(f)
        else:
            raise ProtocolError("Unknown RESULT kind: %d" % self.kind)

    @classmethod
    def recv_body(cls, f, raw_blobs=False, **kwargs):
        kind = read_int(f)
        msg = cls(kind)
        msg.recv(f, raw_blobs)
        return msg

    def recv_results_rows(self, f, raw_blobs):
        self.recv_results_metadata(f)
        if self.column_metadata is None:
            raise ProtocolError("Rows result without column metadata")
        column_metadata = self.column_metadata
        rowcount = read_int(f)
        rows = [self.recv_row(f, len(column_metadata)) for _ in range(rowcount)]
        col_types = [lookup_type(md.type, md.subtype1, md.subtype2) for md in column_metadata]

        def decode_row(row):
            return dict((md.name, col_type.from_binary(val, raw_blobs))
                        for val, md, col_type in zip(row, column_metadata, col_types))

        try:
            self.parsed_rows = [decode_row(row) for row in rows]
        except Exception:
            for row in rows:
                for val, md, col_type in zip(row, column_metadata, col_types):
                    try:
                        col_type.from_binary(val, raw_blobs)
                    except Exception as e:
                        raise ProtocolError('Failed decoding result column "%s" of type %s: %s'
                                            % (md.name, col_type.cql_parameterized_type(), str(e)))
            raise

    def recv_results_prepared(self, f):
        self.query_id = read_binary_string(f)
        self.recv_prepared_metadata(f)

    def recv_results_metadata(self, f):
        flags = read_int(f)
        colcount = read_int(f)

        if flags & self._HAS_MORE_PAGES_FLAG:
            self.paging_state = read_binary_longstring(f)

        if flags & self._NO_METADATA_FLAG:
            return

        self.column_metadata = self._recv_column_specs(f, flags, colcount)

    def recv_prepared_metadata(self, f):
        flags = read_int(f)
        colcount = read_int(f)
        num_pk_indexes = read_int(f)
        pk_indexes = [read_short(f) for _ in range(num_pk_indexes)]

        bind_metadata = self._recv_column_specs(f, flags, colcount)

        self.recv_results_metadata(f)
        self.bind_metadata = bind_metadata
        self.pk_indexes = pk_indexes

    def _recv_column_specs(self, f, flags, colcount):
        glob_tblspec = bool(flags & self._FLAGS_GLOBAL_TABLES_SPEC)
        if glob_tblspec:
            ksname = read_string(f)
            cfname = read_string(f)
        specs = []
        for _ in range(colcount):
            if glob_tblspec:
                colksname = ksname
                colcfname = cfname
            else:
                colksname = read_string(f)
                colcfname = read_string(f)
            colname = read_string(f)
            coltype = self.read_type(f)
            specs.append(column_metadata(colksname, colcfname, colname, coltype))
        return specs

    def recv_results_schema_change(self, f):
        change_type = read_string(f)
        target = read_string(f)
        keyspace = read_string(f)
        event = {'change_type': change_type, 'target_type': target, 'keyspace': keyspace,
                 'name': None, 'argument_types': None}
        if target != SchemaTargetType.KEYSPACE:
            event['name'] = read_string(f)
            if target in (SchemaTargetType.FUNCTION, SchemaTargetType.AGGREGATE):
                event['argument_types'] = read_stringlist(f)
        self.schema_change_event = event

    @classmethod
    def read_type(cls, f):
        """
        Reads one ``[option]``: a plain type code, the class name of a custom
        type, or a :class:`~cqlnative.cqltypes.DataType` for collections.
        """
        optid = read_short(f)
        if optid == type_codes.CUSTOM:
            return read_string(f)
        elif optid in (type_codes.LIST, type_codes.SET):
            return DataType(optid, cls.read_type(f))
        elif optid == type_codes.MAP:
            keysubtype = cls.read_type(f)
            valsubtype = cls.read_type(f)
            return DataType(optid, keysubtype, valsubtype)
        elif optid in type_codes.name_by_code:
            return optid
        raise ProtocolError("Unknown column type %s in result metadata"
                            % (type_codes.describe(optid),))

    @staticmethod
    def recv_row(f, colcount):
        return [read_value(f) for _ in range(colcount)]


class ProtocolHandler(object):
    """
    Encodes request messages into frames and decodes response frames into
    messages.

    ``message_types_by_opcode`` maps response opcodes to the message classes
    that decode them; it may be updated to inject specialized decoding.
    """

    message_types_by_opcode = dict(
        (opcode, msg_class) for opcode, msg_class in _message_types_by_opcode.items()
        if hasattr(msg_class, 'recv_body'))

    @classmethod
    def encode_message(cls, msg, stream_id=0):
        """
        Returns the bytes of a request frame carrying `msg`.
        """
        body = io.BytesIO()
        msg.send_body(body)
        return encode_frame(msg.opcode, body.getvalue(), stream_id=stream_id)

    @classmethod
    def decode_message(cls, frame, raw_blobs=False):
        """
        Decodes the body of `frame` into a message. Tracing ids, warnings and
        custom payloads are stripped from the body first and set on both the
        frame and the message. ERROR frames decode to a
        :class:`~cqlnative.ServerError` instance which the caller raises.
        """
        flags = frame.flags
        if flags & COMPRESSED_FLAG:
            raise ProtocolError("Received a compressed frame; compression is not supported",
                                frame=frame.raw)

        body = io.BytesIO(frame.body)
        try:
            if flags & TRACING_FLAG:
                frame.trace_id = UUID(bytes=read_exactly(body, 16))
                flags ^= TRACING_FLAG

            if flags & WARNING_FLAG:
                frame.warnings = read_stringlist(body)
                flags ^= WARNING_FLAG

            if flags & CUSTOM_PAYLOAD_FLAG:
                frame.custom_payload = read_bytesmap(body)
                flags ^= CUSTOM_PAYLOAD_FLAG

            if flags:
                log.warning("Unknown protocol flags set: %02x. May cause problems.", flags)

            try:
                msg_class = cls.message_types_by_opcode[frame.opcode]
            except KeyError:
                raise ProtocolError("Unexpected response opcode %s" % (opcode_name(frame.opcode),))
            msg = msg_class.recv_body(body, raw_blobs=raw_blobs)
        except ProtocolError as exc:
            if exc.frame is None:
                exc.frame = frame.raw
            raise
        except (ValueError, struct.error) as exc:
            raise ProtocolError("Malformed %s frame body: %s" % (opcode_name(frame.opcode), exc),
                                frame=frame.raw)

        msg.stream_id = frame.stream
        msg.trace_id = frame.trace_id
        msg.custom_payload = frame.custom_payload
        msg.warnings = frame.warnings

        if msg.warnings:
            for w in msg.warnings:
                log.warning("Server warning: %s", w)

        return msg


def read_exactly(f, size):
    contents = f.read(size)
    if len(contents) != size:
        raise ProtocolError("Frame body ended after %d of %d expected bytes"
                            % (len(contents), size))
    return contents


def read_byte(f):
    return int8_unpack(read_exactly(f, 1))


def write_byte(f, b):
    f.write(uint8_pack(b))


def read_int(f):
    return int32_unpack(read_exactly(f, 4))


def write_int(f, i):
    f.write(int32_pack(i))


def read_short(f):
    return uint16_unpack(read_exactly(f, 2))


def write_short(f, s):
    f.write(uint16_pack(s))


def read_consistency_level(f):
    return read_short(f)


def write_consistency_level(f, cl):
    write_short(f, cl)


def read_string(f):
    size = read_short(f)
    contents = read_exactly(f, size)
    return contents.decode('utf8')


def read_binary_string(f):
    size = read_short(f)
    return read_exactly(f, size)


def write_string(f, s):
    if isinstance(s, str):
        s = s.encode('utf8')
    write_short(f, len(s))
    f.write(s)


def read_binary_longstring(f):
    size = read_int(f)
    if size < 0:
        return None
    return read_exactly(f, size)


def read_longstring(f):
    return read_binary_longstring(f).decode('utf8')


def write_longstring(f, s):
    if isinstance(s, str):
        s = s.encode('utf8')
    write_int(f, len(s))
    f.write(s)


def read_stringlist(f):
    numstrs = read_short(f)
    return [read_string(f) for _ in range(numstrs)]


def write_stringlist(f, stringlist):
    write_short(f, len(stringlist))
    for s in stringlist:
        write_string(f, s)


def read_stringmap(f):
    numpairs = read_short(f)
    strmap = {}
    for _ in range(numpairs):
        k = read_string(f)
        strmap[k] = read_string(f)
    return strmap


def write_stringmap(f, strmap):
    write_short(f, len(strmap))
    for k, v in strmap.items():
        write_string(f, k)
        write_string(f, v)


def read_bytesmap(f):
    numpairs = read_short(f)
    bytesmap = {}
    for _ in range(numpairs):
        k = read_string(f)
        bytesmap[k] = read_value(f)
    return bytesmap


def read_value(f):
    size = read_int(f)
    if size < 0:
        return None
    return read_exactly(f, size)


def write_value(f, v):
    if v is None:
        write_int(f, -1)
    else:
        write_int(f, len(v))
        f.write(v)

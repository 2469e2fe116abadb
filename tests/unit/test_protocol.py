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

import io
import unittest
from unittest.mock import Mock
import uuid

from cqlnative import ProtocolError, ServerError, TransportError, type_codes
from cqlnative.cqltypes import DataType
from cqlnative.marshal import frame_header_pack, int32_pack, uint16_pack
from cqlnative.protocol import (
    AuthResponseMessage, BatchMessage, ColumnMetadata, CredentialsMessage, ExecuteMessage,
    Frame, Opcode, PrepareMessage, ProtocolHandler, QueryMessage, ReadyMessage,
    ReadTimeout, ResultMessage, StartupMessage, SyntaxException, Unavailable, AlreadyExists,
    COMPRESSED_FLAG, CUSTOM_PAYLOAD_FLAG, TRACING_FLAG, WARNING_FLAG,
    RESULT_KIND_ROWS, RESULT_KIND_SCHEMA_CHANGE, encode_frame, read_frame,
    read_stringmap, write_int, write_short, write_string, write_stringlist, write_value)

from tests.unit.transport_util import (ScriptedTransport, error, prepared_result,
                                       response_frame, rows_body, type_option)


def decode(opcode, body, flags=0, raw_blobs=False):
    frame = read_frame(ScriptedTransport([response_frame(opcode, body, flags=flags)]))
    return ProtocolHandler.decode_message(frame, raw_blobs)


class MessageTest(unittest.TestCase):

    def test_prepare_message(self):
        message = PrepareMessage("a")
        io = Mock()

        message.send_body(io)
        self._check_calls(io, [(b'\x00\x00\x00\x01',), (b'a',)])

    def test_execute_message(self):
        message = ExecuteMessage(b'1', [], 4)
        io = Mock()

        message.send_body(io)
        self._check_calls(io, [(b'\x00\x01',), (b'1',), (b'\x00\x04',), (b'\x01',), (b'\x00\x00',)])

        io.reset_mock()
        message = ExecuteMessage(b'1', [b'\x00\x00\x00\x07', None], 1)
        message.send_body(io)
        self._check_calls(io, [(b'\x00\x01',), (b'1',), (b'\x00\x01',), (b'\x01',), (b'\x00\x02',),
                               (b'\x00\x00\x00\x04',), (b'\x00\x00\x00\x07',),
                               (b'\xff\xff\xff\xff',)])

    def test_query_message(self):
        message = QueryMessage("a", 3)
        io = Mock()

        message.send_body(io)
        self._check_calls(io, [(b'\x00\x00\x00\x01',), (b'a',), (b'\x00\x03',), (b'\x00',)])

    def test_batch_message(self):
        message = BatchMessage(b'\x01\x00\x00', 5)
        io = Mock()

        message.send_body(io)
        self._check_calls(io, [(b'\x01\x00\x00',), (b'\x00\x05',), (b'\x00',)])

    def test_startup_message(self):
        body = io.BytesIO()
        StartupMessage('3.0.0').send_body(body)
        body.seek(0)
        self.assertEqual(read_stringmap(body), {'CQL_VERSION': '3.0.0'})

    def test_credentials_message(self):
        body = io.BytesIO()
        CredentialsMessage({'username': 'u', 'password': 'p'}).send_body(body)
        body.seek(0)
        self.assertEqual(read_stringmap(body), {'username': 'u', 'password': 'p'})

    def test_auth_response_message(self):
        body = io.BytesIO()
        AuthResponseMessage(None).send_body(body)
        self.assertEqual(body.getvalue(), b'\xff\xff\xff\xff')

    def _check_calls(self, io, expected):
        self.assertEqual(
            tuple(c[1] for c in io.write.mock_calls),
            tuple(expected)
        )


class FrameTest(unittest.TestCase):

    def test_encode_frame(self):
        self.assertEqual(encode_frame(Opcode.QUERY, b'abc'),
                         b'\x04\x00\x00\x00\x07\x00\x00\x00\x03abc')
        self.assertEqual(encode_frame(Opcode.RESULT, b'', is_response=True, stream_id=1),
                         b'\x84\x00\x00\x01\x08\x00\x00\x00\x00')

    def test_encode_message(self):
        data = ProtocolHandler.encode_message(QueryMessage('a', 1), stream_id=1)
        self.assertEqual(data[:9], b'\x04\x00\x00\x01\x07\x00\x00\x00\x08')
        self.assertEqual(data[9:], b'\x00\x00\x00\x01a\x00\x01\x00')

    def test_read_frame(self):
        raw = response_frame(Opcode.READY, stream=3)
        frame = read_frame(ScriptedTransport([raw]))
        self.assertEqual(frame, Frame(0x84, 0, 3, Opcode.READY, b''))
        self.assertTrue(frame.is_response)
        self.assertEqual(frame.raw, raw)
        self.assertIn('READY', str(frame))

    def test_body_shorter_than_declared(self):
        raw = response_frame(Opcode.RESULT, b'\x00\x00\x00\x01')[:-2]
        self.assertRaises(TransportError, read_frame, ScriptedTransport([raw]))

    def test_short_header(self):
        self.assertRaises(TransportError, read_frame, ScriptedTransport([b'\x84\x00\x00']))

    def test_version_mismatch(self):
        raw = b'\x83\x00\x00\x00\x02\x00\x00\x00\x00'
        with self.assertRaises(ProtocolError) as cm:
            read_frame(ScriptedTransport([raw]))
        self.assertEqual(cm.exception.frame, raw)

    def test_version_mismatch_error_message(self):
        buf = io.BytesIO()
        write_int(buf, 0x000A)
        write_string(buf, 'Invalid or unsupported protocol version (4)')
        body = buf.getvalue()
        raw = frame_header_pack(0x83, 0, 0, Opcode.ERROR, len(body)) + body
        with self.assertRaises(ProtocolError) as cm:
            read_frame(ScriptedTransport([raw]))
        self.assertIn('Unsupported protocol version 3', str(cm.exception))
        self.assertIn('Invalid or unsupported protocol version (4)', str(cm.exception))
        self.assertEqual(cm.exception.frame, raw)

    def test_invalid_utf8_string(self):
        body = int32_pack(3) + uint16_pack(2) + b'\xff\xfe'
        with self.assertRaises(ProtocolError) as cm:
            decode(Opcode.RESULT, body)
        self.assertIn('Malformed RESULT frame body', str(cm.exception))
        self.assertIsNotNone(cm.exception.frame)

    def test_invalid_utf8_warning(self):
        body = uint16_pack(1) + uint16_pack(1) + b'\xff' + int32_pack(1)
        self.assertRaises(ProtocolError, decode, Opcode.RESULT, body, WARNING_FLAG)

    def test_decode_ready(self):
        self.assertIsInstance(decode(Opcode.READY, b''), ReadyMessage)

    def test_warnings_are_stripped(self):
        buf = io.BytesIO()
        write_stringlist(buf, ['first', 'second'])
        write_int(buf, 1)
        with self.assertLogs('cqlnative.protocol', level='WARNING') as logs:
            msg = decode(Opcode.RESULT, buf.getvalue(), flags=WARNING_FLAG)
        self.assertIsInstance(msg, ResultMessage)
        self.assertEqual(msg.warnings, ['first', 'second'])
        self.assertIn('Server warning: first', logs.output[0])

    def test_tracing_and_custom_payload_are_stripped(self):
        trace_id = uuid.uuid4()
        buf = io.BytesIO()
        buf.write(trace_id.bytes)
        write_short(buf, 1)
        write_string(buf, 'key')
        write_value(buf, b'val')
        msg = decode(Opcode.READY, buf.getvalue(), flags=TRACING_FLAG | CUSTOM_PAYLOAD_FLAG)
        self.assertEqual(msg.trace_id, trace_id)
        self.assertEqual(msg.custom_payload, {'key': b'val'})

    def test_compressed_frame(self):
        self.assertRaises(ProtocolError, decode, Opcode.READY, b'', COMPRESSED_FLAG)

    def test_unknown_flags_are_logged(self):
        with self.assertLogs('cqlnative.protocol', level='WARNING') as logs:
            decode(Opcode.READY, b'', flags=0x40)
        self.assertIn('Unknown protocol flags', logs.output[0])

    def test_unexpected_opcode(self):
        with self.assertRaises(ProtocolError) as cm:
            decode(Opcode.QUERY, b'')
        self.assertIsNotNone(cm.exception.frame)

    def test_truncated_body(self):
        with self.assertRaises(ProtocolError) as cm:
            decode(Opcode.AUTHENTICATE, b'\x00\x10abc')
        self.assertIn('ended', str(cm.exception))


class ErrorMessageTest(unittest.TestCase):

    def decode_error(self, code, message, extra=b''):
        frame = read_frame(ScriptedTransport([error(code, message, extra)]))
        return ProtocolHandler.decode_message(frame)

    def test_error_without_info(self):
        exc = self.decode_error(0x1200, 'syntax error')
        self.assertIsInstance(exc, ReadTimeout)
        self.assertIsInstance(exc, ServerError)
        self.assertEqual(exc.code, 0x1200)
        self.assertEqual(exc.message, 'syntax error')
        self.assertIsNone(exc.info)
        self.assertIn('code=1200', str(exc))
        self.assertIn('syntax error', str(exc))

    def test_syntax_error(self):
        exc = self.decode_error(0x2000, 'line 1:0 no viable alternative')
        self.assertIsInstance(exc, SyntaxException)
        self.assertEqual(exc.summary, 'Syntax error in CQL query')

    def test_unknown_code(self):
        exc = self.decode_error(0x7777, 'who knows')
        self.assertIs(type(exc), ServerError)
        self.assertEqual(exc.code, 0x7777)

    def test_unavailable_info(self):
        extra = uint16_pack(4) + int32_pack(3) + int32_pack(1)
        exc = self.decode_error(0x1000, 'Cannot achieve consistency level QUORUM', extra)
        self.assertIsInstance(exc, Unavailable)
        self.assertEqual(exc.info, {'consistency': 4, 'required_replicas': 3, 'alive_replicas': 1})
        self.assertIn("'consistency': 'QUORUM'", str(exc))

    def test_read_timeout_info(self):
        extra = uint16_pack(1) + int32_pack(0) + int32_pack(1) + b'\x00'
        exc = self.decode_error(0x1200, 'Operation timed out', extra)
        self.assertEqual(exc.info, {'consistency': 1, 'received_responses': 0,
                                    'required_responses': 1, 'data_retrieved': False})

    def test_already_exists_info(self):
        buf = io.BytesIO()
        write_string(buf, 'ks')
        write_string(buf, 'tbl')
        exc = self.decode_error(0x2400, 'exists', buf.getvalue())
        self.assertIsInstance(exc, AlreadyExists)
        self.assertEqual(exc.info, {'keyspace': 'ks', 'table': 'tbl'})


class ResultMessageTest(unittest.TestCase):

    def test_rows(self):
        columns = [('id', type_option(type_codes.INT)),
                   ('name', type_option(type_codes.TEXT)),
                   ('data', type_option(type_codes.BLOB))]
        body = rows_body(columns, [[int32_pack(1), b'alice', b'\x01'],
                                   [int32_pack(2), None, None]])
        msg = decode(Opcode.RESULT, body)
        self.assertEqual(msg.kind, RESULT_KIND_ROWS)
        self.assertEqual(msg.column_metadata[0], ColumnMetadata('ks', 'tbl', 'id', type_codes.INT, None, None))
        self.assertEqual(msg.parsed_rows, [{'id': 1, 'name': 'alice', 'data': '0x01'},
                                           {'id': 2, 'name': None, 'data': None}])
        self.assertEqual(list(msg.parsed_rows[0]), ['id', 'name', 'data'])

        msg = decode(Opcode.RESULT, body, raw_blobs=True)
        self.assertEqual(msg.parsed_rows[0]['data'], b'\x01')

    def test_rows_per_column_table_spec(self):
        buf = io.BytesIO()
        write_int(buf, RESULT_KIND_ROWS)
        write_int(buf, 0)
        write_int(buf, 1)
        write_string(buf, 'ks1')
        write_string(buf, 'tbl1')
        write_string(buf, 'v')
        write_short(buf, type_codes.BIGINT)
        write_int(buf, 1)
        write_value(buf, b'\x00' * 7 + b'\x05')
        msg = decode(Opcode.RESULT, buf.getvalue())
        self.assertEqual(msg.column_metadata[0].keyspace, 'ks1')
        self.assertEqual(msg.parsed_rows, [{'v': 5}])

    def test_rows_nested_collection_metadata(self):
        coltype = (type_option(type_codes.LIST) + type_option(type_codes.MAP) +
                   type_option(type_codes.TEXT) + type_option(type_codes.INT))
        value = (int32_pack(1) + int32_pack(17) +
                 int32_pack(1) + int32_pack(1) + b'a' + int32_pack(4) + int32_pack(9))
        msg = decode(Opcode.RESULT, rows_body([('m', coltype)], [[value]]))
        column = msg.column_metadata[0]
        self.assertEqual(column.type, type_codes.LIST)
        self.assertEqual(column.subtype1, DataType(type_codes.MAP, type_codes.TEXT, type_codes.INT))
        self.assertEqual(msg.parsed_rows, [{'m': [{'a': 9}]}])

    def test_custom_column_type(self):
        coltype = type_option(type_codes.CUSTOM) + uint16_pack(3) + b'Foo'
        msg = decode(Opcode.RESULT, rows_body([('c', coltype)], [[b'\xab']]))
        self.assertEqual(msg.column_metadata[0].type, 'Foo')
        self.assertEqual(msg.parsed_rows, [{'c': '0xab'}])

    def test_paging_state_is_kept(self):
        buf = io.BytesIO()
        write_int(buf, RESULT_KIND_ROWS)
        write_int(buf, 0x0001 | 0x0002)
        write_int(buf, 0)
        write_int(buf, 3)
        buf.write(b'pgs')
        write_string(buf, 'ks')
        write_string(buf, 'tbl')
        write_int(buf, 0)
        msg = decode(Opcode.RESULT, buf.getvalue())
        self.assertEqual(msg.paging_state, b'pgs')
        self.assertEqual(msg.parsed_rows, [])

    def test_no_metadata_rows_rejected(self):
        buf = io.BytesIO()
        write_int(buf, RESULT_KIND_ROWS)
        write_int(buf, 0x0004)
        write_int(buf, 1)
        write_int(buf, 0)
        self.assertRaises(ProtocolError, decode, Opcode.RESULT, buf.getvalue())

    def test_unknown_column_type(self):
        body = rows_body([('u', type_option(type_codes.UDT))], [])
        with self.assertRaises(ProtocolError) as cm:
            decode(Opcode.RESULT, body)
        self.assertIn('0x0030', str(cm.exception))

    def test_undecodable_value(self):
        body = rows_body([('id', type_option(type_codes.UUID))], [[b'\x01\x02']])
        with self.assertRaises(ProtocolError) as cm:
            decode(Opcode.RESULT, body)
        self.assertIn('"id"', str(cm.exception))

    def test_truncated_row(self):
        body = rows_body([('id', type_option(type_codes.INT))], [[int32_pack(1)]])
        self.assertRaises(ProtocolError, decode, Opcode.RESULT, body[:-2])

    def test_unknown_result_kind(self):
        self.assertRaises(ProtocolError, decode, Opcode.RESULT, int32_pack(9))

    def test_prepared(self):
        frame = prepared_result(b'\xca\xfe', [('id', type_option(type_codes.INT)),
                                              ('tags', type_option(type_codes.SET) + type_option(type_codes.TEXT))])
        msg = ProtocolHandler.decode_message(read_frame(ScriptedTransport([frame])))
        self.assertEqual(msg.query_id, b'\xca\xfe')
        self.assertEqual(msg.pk_indexes, [0])
        self.assertEqual([c.name for c in msg.bind_metadata], ['id', 'tags'])
        self.assertEqual(msg.bind_metadata[1].subtype1, type_codes.TEXT)
        self.assertIsNone(msg.column_metadata)

    def test_schema_change_table(self):
        buf = io.BytesIO()
        write_int(buf, RESULT_KIND_SCHEMA_CHANGE)
        for s in ('CREATED', 'TABLE', 'ks', 'users'):
            write_string(buf, s)
        msg = decode(Opcode.RESULT, buf.getvalue())
        self.assertEqual(msg.schema_change_event,
                         {'change_type': 'CREATED', 'target_type': 'TABLE', 'keyspace': 'ks',
                          'name': 'users', 'argument_types': None})

    def test_schema_change_function(self):
        buf = io.BytesIO()
        write_int(buf, RESULT_KIND_SCHEMA_CHANGE)
        for s in ('DROPPED', 'FUNCTION', 'ks', 'fn'):
            write_string(buf, s)
        write_stringlist(buf, ['int', 'text'])
        msg = decode(Opcode.RESULT, buf.getvalue())
        self.assertEqual(msg.schema_change_event['argument_types'], ['int', 'text'])

    def test_schema_change_keyspace(self):
        buf = io.BytesIO()
        write_int(buf, RESULT_KIND_SCHEMA_CHANGE)
        for s in ('UPDATED', 'KEYSPACE', 'ks'):
            write_string(buf, s)
        msg = decode(Opcode.RESULT, buf.getvalue())
        self.assertIsNone(msg.schema_change_event['name'])

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
This module holds classes for working with prepared statements, batches and
the values a request produces.
"""

import base64
from collections import namedtuple, OrderedDict
import io
import logging

from cqlnative import ProtocolError, UsageError, type_codes
from cqlnative.cqltypes import DataType, pack_value
from cqlnative.protocol import (RESULT_KIND_VOID, RESULT_KIND_ROWS,
                                RESULT_KIND_SET_KEYSPACE, RESULT_KIND_PREPARED,
                                RESULT_KIND_SCHEMA_CHANGE,
                                write_byte, write_short, write_string,
                                write_longstring, write_value)

log = logging.getLogger(__name__)


class PreparedStatement(object):
    """
    A statement that has been prepared on the node the session is connected
    to. Instances of this class should not be created directly, but through
    :meth:`.Session.prepare()`.

    The bind marker metadata is fixed once the statement is prepared; values
    passed to :meth:`.Session.execute()` are serialized in its order.
    """

    query_id = None
    """
    The opaque id the node issued for this statement, as bytes.
    """

    column_metadata = None
    """
    :class:`~cqlnative.protocol.ColumnMetadata` for each bind marker, in
    order.
    """

    pk_indexes = None
    result_metadata = None
    query_string = None

    def __init__(self, query_id, column_metadata, pk_indexes=None,
                 result_metadata=None, query_string=None):
        self.query_id = query_id
        self.column_metadata = list(column_metadata)
        self.pk_indexes = pk_indexes
        self.result_metadata = result_metadata
        self.query_string = query_string

    @classmethod
    def from_message(cls, msg, query_string=None):
        return cls(msg.query_id, msg.bind_metadata, msg.pk_indexes,
                   msg.column_metadata, query_string)

    @property
    def id(self):
        """
        The statement id in its textual (base64) form.
        """
        return base64.b64encode(self.query_id).decode('ascii')

    @property
    def columns(self):
        """
        Bind markers by name: an ordered mapping of column name to its
        :class:`~cqlnative.cqltypes.DataType`.
        """
        return OrderedDict((col.name, DataType(col.type, col.subtype1, col.subtype2))
                           for col in self.column_metadata)

    def __str__(self):
        return (u'<PreparedStatement id=%s, query="%s">' %
                (self.id, self.query_string))
    __repr__ = __str__


def bind_values(prepared_statement, values):
    """
    Serializes `values` for the bind markers of `prepared_statement` and
    returns the list of ``[bytes]`` bodies (:const:`None` for nulls).
    `values` *must* be:

    * a sequence with exactly one value per bind marker, or
    * a dict keyed by column name; extra keys are ignored

    An explicit :const:`None` binds a null. A bind marker with no value
    raises :exc:`~cqlnative.UsageError`.
    """
    if values is None:
        values = ()
    col_meta = prepared_statement.column_metadata

    if isinstance(values, dict):
        values_dict = values
        values = []
        for col in col_meta:
            try:
                values.append(values_dict[col.name])
            except KeyError:
                raise UsageError('Column name `%s` not found in bound dict.' % (col.name,))
    else:
        values = list(values)
        if len(values) != len(col_meta):
            raise UsageError(
                "Wrong number of values to bind (got %d, expected %d)" %
                (len(values), len(col_meta)))

    serialized = []
    for value, col_spec in zip(values, col_meta):
        try:
            serialized.append(pack_value(value, col_spec.type, col_spec.subtype1, col_spec.subtype2))
        except (TypeError, ValueError) as exc:
            actual_type = type(value)
            expected_type = type_codes.describe(col_spec.type)
            message = ('Received an argument of invalid type for column "%s". '
                       'Expected: %s, Got: %s; (%s)' % (col_spec.name, expected_type, actual_type, exc))
            raise TypeError(message)
    return serialized


class BatchType(object):
    """
    A BatchType is used with :class:`.BatchStatement` instances to control
    the atomicity of the batch operation.
    """

    LOGGED = None
    """
    Atomic batch operation.
    """

    UNLOGGED = None
    """
    Non-atomic batch operation.
    """

    COUNTER = None
    """
    Batches of counter operations.
    """

    def __init__(self, name, value):
        self.name = name
        self.value = value

    def __str__(self):
        return self.name

    def __repr__(self):
        return "BatchType.%s" % (self.name, )


BatchType.LOGGED = BatchType("LOGGED", 0)
BatchType.UNLOGGED = BatchType("UNLOGGED", 1)
BatchType.COUNTER = BatchType("COUNTER", 2)


class BatchStatement(object):
    """
    Accumulates simple and prepared statements into the body of one BATCH
    request. Entries are serialized as they are added; values are checked
    against the prepared statement's metadata at that point.
    """

    batch_type = None
    """
    The :class:`.BatchType` for the batch operation. Defaults to
    :attr:`.BatchType.LOGGED`.
    """

    def __init__(self, batch_type=BatchType.LOGGED):
        self.batch_type = batch_type
        self._entries = io.BytesIO()
        self._count = 0

    def add_simple(self, query):
        """
        Adds an unprepared CQL statement without bound values.
        """
        self._check_room()
        write_byte(self._entries, 0)
        write_longstring(self._entries, query)
        write_short(self._entries, 0)
        self._count += 1
        return self

    def add_prepared(self, prepared_statement, values=None):
        """
        Adds a prepared statement with `values` for its bind markers, given
        the same way as to :meth:`.Session.execute()`.
        """
        self._check_room()
        params = bind_values(prepared_statement, values)
        write_byte(self._entries, 1)
        write_string(self._entries, prepared_statement.query_id)
        write_short(self._entries, len(params))
        for param in params:
            write_value(self._entries, param)
        self._count += 1
        return self

    def get_data(self):
        """
        Returns the batch kind, entry count and entries as sent in a BATCH
        body. The accumulated entries are kept; use :meth:`clear` to reuse
        this instance.
        """
        buf = io.BytesIO()
        write_byte(buf, getattr(self.batch_type, 'value', self.batch_type))
        write_short(buf, self._count)
        buf.write(self._entries.getvalue())
        return buf.getvalue()

    def clear(self):
        """
        This is a convenience method to clear a batch statement for reuse.
        """
        self._entries = io.BytesIO()
        self._count = 0

    reset = clear

    def _check_room(self):
        if self._count >= 0xFFFF:
            raise UsageError("Batch statement cannot contain more than %d statements." % 0xFFFF)

    def __len__(self):
        return self._count

    def __str__(self):
        return (u'<BatchStatement type=%s, statements=%d>' %
                (self.batch_type, len(self)))
    __repr__ = __str__


class VoidResult(object):
    """
    Result of a request that returns nothing.
    """

    def __eq__(self, other):
        return isinstance(other, VoidResult)

    __hash__ = object.__hash__

    def __repr__(self):
        return '<VoidResult>'


class Rows(list):
    """
    The rows of a ROWS result, each a dict of column name to value in
    column order.
    """

    column_metadata = None
    """
    :class:`~cqlnative.protocol.ColumnMetadata` of the result columns.
    """

    paging_state = None
    """
    Set when the node signalled more pages. Pages are not followed.
    """

    def __init__(self, rows=(), column_metadata=None, paging_state=None):
        list.__init__(self, rows)
        self.column_metadata = column_metadata or []
        self.paging_state = paging_state

    @property
    def column_names(self):
        return [col.name for col in self.column_metadata]


SetKeyspace = namedtuple('SetKeyspace', ['keyspace'])

SchemaChange = namedtuple('SchemaChange', ['change', 'target', 'options', 'name', 'argument_types'])
SchemaChange.__new__.__defaults__ = (None, None)
SchemaChange.__doc__ = """
A schema altering statement's result. ``options`` is the affected keyspace;
``name`` is set for tables, types, functions and aggregates;
``argument_types`` for functions and aggregates.
"""


def result_from_message(msg, query_string=None):
    """
    Builds the caller-facing value of a decoded RESULT message.
    """
    if msg.kind == RESULT_KIND_VOID:
        return VoidResult()
    elif msg.kind == RESULT_KIND_ROWS:
        return Rows(msg.parsed_rows, msg.column_metadata, msg.paging_state)
    elif msg.kind == RESULT_KIND_SET_KEYSPACE:
        return SetKeyspace(msg.new_keyspace)
    elif msg.kind == RESULT_KIND_PREPARED:
        return PreparedStatement.from_message(msg, query_string)
    elif msg.kind == RESULT_KIND_SCHEMA_CHANGE:
        event = msg.schema_change_event
        return SchemaChange(event['change_type'], event['target_type'], event['keyspace'],
                            event['name'], event['argument_types'])
    raise ProtocolError("Unknown RESULT kind: %r" % (msg.kind,))

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
Representation of the native protocol column types. Each type is a class
registered under its protocol type code; it knows how to serialize a Python
value into the bytes of a ``[bytes]`` value and how to deserialize them again.
Collection types are parameterized with their element (or key and value)
types, which may themselves be collections.

Values cross this layer in these Python forms:

    ascii, text, varchar        str (bytes accepted on serialize)
    bigint, counter, timestamp  int (timestamp also accepts datetime)
    blob, custom                '0x'-prefixed hex str, or bytes
    boolean                     bool
    decimal                     decimal.Decimal (int and float accepted)
    double, float               float
    int, varint                 int
    uuid, timeuuid              canonical hyphenated str (uuid.UUID accepted)
    inet                        presentation str (ipaddress objects accepted)
    list, set                   list (any sequence accepted)
    map                         dict (any mapping accepted)
"""

import calendar
from collections import namedtuple
from decimal import Decimal
from functools import lru_cache
import io
import ipaddress
import logging
import math
import socket
import struct
from uuid import UUID

from cqlnative import ProtocolError
from cqlnative import type_codes
from cqlnative.marshal import (int8_unpack, int32_pack, int32_unpack,
                               int64_pack, int64_unpack, float_pack, float_unpack,
                               double_pack, double_unpack, varint_pack, varint_unpack)

log = logging.getLogger(__name__)

_cqltypes_by_code = {}


DataType = namedtuple('DataType', ['type', 'subtype1', 'subtype2'])
DataType.__new__.__defaults__ = (None, None)
DataType.__doc__ = """
A column type as declared in result or prepared metadata. ``type`` is a
type code, or the class name string of a custom type. ``subtype1`` is the
element type of a list or set, or the key type of a map; ``subtype2`` is the
value type of a map. Subtypes are codes, custom names, or nested
:class:`DataType` instances.
"""


class CQLTypeType(type):
    """
    Registers each CQL type class that declares its own ``type_code`` in the
    by-code registry used for dispatch. Parameterized collection classes
    built by :meth:`_CQLType.apply_parameters` inherit the code and are not
    registered.
    """

    def __new__(metacls, name, bases, dct):
        cls = type.__new__(metacls, name, bases, dct)
        if not name.startswith('_') and 'type_code' in dct:
            _cqltypes_by_code[dct['type_code']] = cls
        return cls


class _CQLType(object, metaclass=CQLTypeType):
    typename = None
    subtypes = ()
    num_subtypes = 0
    empty_binary_ok = False
    """
    Zero-length values deserialize to :const:`None` unless this is set, in
    which case they are handed to :meth:`deserialize`.
    """

    @classmethod
    def from_binary(cls, byts, raw_blobs=False):
        """
        Deserialize a bytestring into a value. See the deserialize() method
        for more information. This method differs in that if None or the empty
        string is passed in, None may be returned.
        """
        if byts is None:
            return None
        elif len(byts) == 0 and not cls.empty_binary_ok:
            return None
        return cls.deserialize(byts, raw_blobs)

    @classmethod
    def to_binary(cls, val):
        """
        Serialize a value into a bytestring. :const:`None` stays :const:`None`
        so that it is written as a protocol null.
        """
        if val is None:
            return None
        try:
            return cls.serialize(val)
        except struct.error as exc:
            raise ValueError("Cannot serialize %r as %s: %s"
                             % (val, cls.cql_parameterized_type(), exc))

    @staticmethod
    def deserialize(byts, raw_blobs):
        return byts

    @staticmethod
    def serialize(val):
        return val

    @classmethod
    def cql_parameterized_type(cls):
        """
        Return a CQL type specifier for this type. If this type has parameters,
        they are included in standard CQL <> notation.
        """
        if not cls.subtypes:
            return cls.typename
        return '%s<%s>' % (cls.typename, ', '.join(styp.cql_parameterized_type() for styp in cls.subtypes))


class BytesType(_CQLType):
    typename = 'blob'
    type_code = type_codes.BLOB
    empty_binary_ok = True

    @staticmethod
    def deserialize(byts, raw_blobs):
        if raw_blobs:
            return bytes(byts)
        if not byts:
            return ''
        return '0x' + byts.hex()

    @staticmethod
    def serialize(val):
        if isinstance(val, str):
            if val.startswith('0x'):
                return bytes.fromhex(val[2:])
            return val.encode('utf-8')
        return bytes(val)


class CustomType(BytesType):
    typename = 'custom'
    type_code = type_codes.CUSTOM


class AsciiType(_CQLType):
    typename = 'ascii'
    type_code = type_codes.ASCII
    empty_binary_ok = True

    @staticmethod
    def deserialize(byts, raw_blobs):
        return byts.decode('ascii')

    @staticmethod
    def serialize(var):
        if isinstance(var, bytes):
            return var
        return var.encode('ascii')


class UTF8Type(_CQLType):
    typename = 'text'
    type_code = type_codes.TEXT
    empty_binary_ok = True

    @staticmethod
    def deserialize(byts, raw_blobs):
        return byts.decode('utf8')

    @staticmethod
    def serialize(ustr):
        if isinstance(ustr, bytes):
            return ustr
        return ustr.encode('utf-8')


class VarcharType(UTF8Type):
    typename = 'varchar'
    type_code = type_codes.VARCHAR


class LongType(_CQLType):
    typename = 'bigint'
    type_code = type_codes.BIGINT

    @staticmethod
    def deserialize(byts, raw_blobs):
        return int64_unpack(byts)

    @staticmethod
    def serialize(byts):
        return int64_pack(byts)


class CounterColumnType(LongType):
    typename = 'counter'
    type_code = type_codes.COUNTER


class TimestampType(LongType):
    """
    Milliseconds since the epoch. Decodes to an int; serializing also accepts
    an aware or naive (taken as UTC) datetime.
    """
    typename = 'timestamp'
    type_code = type_codes.TIMESTAMP

    @staticmethod
    def serialize(v):
        try:
            timestamp = calendar.timegm(v.utctimetuple()) * 1000 + v.microsecond // 1000
        except AttributeError:
            timestamp = v
        return int64_pack(timestamp)


class Int32Type(_CQLType):
    typename = 'int'
    type_code = type_codes.INT

    @staticmethod
    def deserialize(byts, raw_blobs):
        return int32_unpack(byts)

    @staticmethod
    def serialize(byts):
        return int32_pack(byts)


class BooleanType(_CQLType):
    typename = 'boolean'
    type_code = type_codes.BOOLEAN

    @staticmethod
    def deserialize(byts, raw_blobs):
        c = int8_unpack(byts[:1])
        if c == 1:
            return True
        elif c == 0:
            return False
        return None

    @staticmethod
    def serialize(truth):
        return b'\x01' if truth else b'\x00'


class FloatType(_CQLType):
    typename = 'float'
    type_code = type_codes.FLOAT

    @staticmethod
    def deserialize(byts, raw_blobs):
        return float_unpack(byts)

    @staticmethod
    def serialize(byts):
        return float_pack(byts)


class DoubleType(_CQLType):
    typename = 'double'
    type_code = type_codes.DOUBLE

    @staticmethod
    def deserialize(byts, raw_blobs):
        return double_unpack(byts)

    @staticmethod
    def serialize(byts):
        return double_pack(byts)


class IntegerType(_CQLType):
    typename = 'varint'
    type_code = type_codes.VARINT

    @staticmethod
    def deserialize(byts, raw_blobs):
        return varint_unpack(byts)

    @staticmethod
    def serialize(byts):
        return varint_pack(int(byts))


def derive_decimal_scale(value):
    """
    Finds ``(scale, unscaled)`` for a plain int or float by trial division.

    Trailing factors of ten are stripped from the integer part to get a
    "positive" scale; separately the value is multiplied by ten until no
    fraction remains to get a "negative" scale. Any fractional component makes
    the negative path win. Floats that need more digits than they carry come
    back with a long scale; pass a :class:`decimal.Decimal` to control the
    scale exactly.
    """
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError("Cannot serialize %r as decimal" % (value,))

    magnitude = abs(value)
    positive_scale = 0
    while math.floor(magnitude) and magnitude % 10 == 0:
        magnitude = magnitude // 10 if isinstance(magnitude, int) else magnitude / 10
        positive_scale += 1

    shifted = value
    negative_scale = 0
    while shifted % 1:
        shifted *= 10
        negative_scale -= 1

    if negative_scale:
        scale = -negative_scale
        unscaled = int(shifted)
    else:
        scale = -positive_scale
        if isinstance(value, int):
            unscaled = value // 10 ** positive_scale
        else:
            unscaled = int(round(value / 10 ** positive_scale))
    return scale, unscaled


class DecimalType(_CQLType):
    typename = 'decimal'
    type_code = type_codes.DECIMAL

    @staticmethod
    def deserialize(byts, raw_blobs):
        if len(byts) < 5:
            return Decimal(0)
        scale = int32_unpack(byts[:4])
        unscaled = varint_unpack(byts[4:])
        return Decimal('%de%d' % (unscaled, -scale))

    @staticmethod
    def serialize(dec):
        if isinstance(dec, bool):
            raise TypeError("Invalid type for Decimal value: %r" % (dec,))
        if isinstance(dec, (int, float)):
            scale, unscaled = derive_decimal_scale(dec)
        else:
            try:
                sign, digits, exponent = dec.as_tuple()
            except AttributeError:
                try:
                    sign, digits, exponent = Decimal(dec).as_tuple()
                except Exception:
                    raise TypeError("Invalid type for Decimal value: %r" % (dec,))
            if not isinstance(exponent, int):
                raise ValueError("Cannot serialize %r as decimal" % (dec,))
            unscaled = int(''.join([str(digit) for digit in digits]) or '0')
            if sign:
                unscaled *= -1
            scale = -exponent
        return int32_pack(scale) + varint_pack(unscaled)


class UUIDType(_CQLType):
    typename = 'uuid'
    type_code = type_codes.UUID

    @staticmethod
    def deserialize(byts, raw_blobs):
        return str(UUID(bytes=bytes(byts)))

    @staticmethod
    def serialize(uuid):
        if isinstance(uuid, str):
            uuid = UUID(uuid)
        try:
            return uuid.bytes
        except AttributeError:
            raise TypeError("Got a non-UUID object for a UUID value")


class TimeUUIDType(UUIDType):
    typename = 'timeuuid'
    type_code = type_codes.TIMEUUID


class InetAddressType(_CQLType):
    typename = 'inet'
    type_code = type_codes.INET

    @staticmethod
    def deserialize(byts, raw_blobs):
        if len(byts) == 16:
            return socket.inet_ntop(socket.AF_INET6, byts)
        elif len(byts) == 4:
            return socket.inet_ntop(socket.AF_INET, byts)
        raise ValueError("bad inet address: %r" % (byts,))

    @staticmethod
    def serialize(addr):
        if isinstance(addr, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            return addr.packed
        try:
            if ':' in addr:
                return socket.inet_pton(socket.AF_INET6, addr)
            return socket.inet_pton(socket.AF_INET, addr)
        except (OSError, TypeError):
            raise ValueError("can't interpret %r as an inet address" % (addr,))


class _ParameterizedType(_CQLType):

    @classmethod
    def apply_parameters(cls, subtypes):
        """
        Given other CQL types, create a new subtype of this type using them
        as parameters.

            >>> MapType.apply_parameters([UTF8Type, Int32Type]).cql_parameterized_type()
            'map<text, int>'
        """
        if len(subtypes) != cls.num_subtypes:
            raise ValueError("%s types require %d subtypes (%d given)"
                             % (cls.typename, cls.num_subtypes, len(subtypes)))
        newname = '%s(%s)' % (cls.__name__, ', '.join(s.__name__ for s in subtypes))
        return type(newname, (cls,), {'subtypes': tuple(subtypes)})

    @classmethod
    def deserialize(cls, byts, raw_blobs):
        if not cls.subtypes:
            raise NotImplementedError("can't deserialize unparameterized %s"
                                      % cls.typename)
        return cls.deserialize_safe(byts, raw_blobs)

    @classmethod
    def serialize(cls, val):
        if not cls.subtypes:
            raise NotImplementedError("can't serialize unparameterized %s"
                                      % cls.typename)
        return cls.serialize_safe(val)


def _read_element(byts, p):
    itemlen = int32_unpack(byts[p:p + 4])
    p += 4
    if itemlen < 0:
        return None, p
    if p + itemlen > len(byts):
        raise ValueError("collection element of %d bytes overruns the %d byte value"
                         % (itemlen, len(byts)))
    return byts[p:p + itemlen], p + itemlen


def _write_element(buf, itembytes):
    if itembytes is None:
        buf.write(int32_pack(-1))
    else:
        buf.write(int32_pack(len(itembytes)))
        buf.write(itembytes)


class _SimpleParameterizedType(_ParameterizedType):
    num_subtypes = 1

    @classmethod
    def deserialize_safe(cls, byts, raw_blobs):
        subtype, = cls.subtypes
        numelements = int32_unpack(byts[:4])
        p = 4
        result = []
        for _ in range(numelements):
            item, p = _read_element(byts, p)
            result.append(subtype.from_binary(item, raw_blobs))
        return result

    @classmethod
    def serialize_safe(cls, items, protocol_version=None):
        if isinstance(items, (str, bytes)):
            raise TypeError("Received a string for a type that expects a sequence")

        subtype, = cls.subtypes
        items = list(items)
        buf = io.BytesIO()
        buf.write(int32_pack(len(items)))
        for item in items:
            _write_element(buf, subtype.to_binary(item))
        return buf.getvalue()


class ListType(_SimpleParameterizedType):
    typename = 'list'
    type_code = type_codes.LIST


class SetType(_SimpleParameterizedType):
    """
    Sets decode to lists in the order the node sent them; uniqueness is the
    node's guarantee and is not checked here.
    """
    typename = 'set'
    type_code = type_codes.SET


class MapType(_ParameterizedType):
    typename = 'map'
    type_code = type_codes.MAP
    num_subtypes = 2

    @classmethod
    def deserialize_safe(cls, byts, raw_blobs):
        key_type, value_type = cls.subtypes
        numelements = int32_unpack(byts[:4])
        p = 4
        themap = {}
        for _ in range(numelements):
            keybytes, p = _read_element(byts, p)
            valbytes, p = _read_element(byts, p)
            key = key_type.from_binary(keybytes, raw_blobs)
            if isinstance(key, list):
                key = tuple(key)
            themap[key] = value_type.from_binary(valbytes, raw_blobs)
        return themap

    @classmethod
    def serialize_safe(cls, themap):
        key_type, value_type = cls.subtypes
        try:
            items = list(themap.items())
        except AttributeError:
            raise TypeError("Got a non-map object for a map value")
        buf = io.BytesIO()
        buf.write(int32_pack(len(items)))
        for key, val in items:
            _write_element(buf, key_type.to_binary(key))
            _write_element(buf, value_type.to_binary(val))
        return buf.getvalue()


@lru_cache(maxsize=256)
def lookup_type(col_type, subtype1=None, subtype2=None):
    """
    Returns the type class for a column type as found in metadata: a type
    code, a custom type class name, or a :class:`DataType`. Collections are
    returned parameterized with their subtypes.
    """
    if isinstance(col_type, DataType):
        return lookup_type(*col_type)
    if isinstance(col_type, str):
        return CustomType
    try:
        typeclass = _cqltypes_by_code[col_type]
    except (KeyError, TypeError):
        raise ProtocolError("Unknown column type %s" % (type_codes.describe(col_type),))

    if typeclass.num_subtypes == 1:
        typeclass = typeclass.apply_parameters((lookup_type(subtype1),))
    elif typeclass.num_subtypes == 2:
        typeclass = typeclass.apply_parameters((lookup_type(subtype1), lookup_type(subtype2)))
    return typeclass


def pack_value(value, col_type, subtype1=None, subtype2=None):
    """
    Serializes `value` as the body of a ``[bytes]`` value for the given column
    type. Returns :const:`None` for a :const:`None` value (a protocol null).
    """
    return lookup_type(col_type, subtype1, subtype2).to_binary(value)


def unpack_value(content, col_type, subtype1=None, subtype2=None, raw_blobs=False):
    """
    Deserializes the body of a ``[bytes]`` value. A protocol null
    (:const:`None`) decodes to :const:`None` whatever the column type.
    """
    if content is None:
        return None
    return lookup_type(col_type, subtype1, subtype2).from_binary(content, raw_blobs)

"""
Module with constants for native protocol column type codes.

These constants are useful for

    a) mapping result and prepared metadata to codecs  (cqlnative/cqltypes.py)
    b) naming the offending type in codec errors

Type codes are repeated here from the native protocol v4 document (section 4.2.5.2):

            0x0000    Custom: the value is a [string], see above.
            0x0001    Ascii
            0x0002    Bigint
            0x0003    Blob
            0x0004    Boolean
            0x0005    Counter
            0x0006    Decimal
            0x0007    Double
            0x0008    Float
            0x0009    Int
            0x000A    Text
            0x000B    Timestamp
            0x000C    Uuid
            0x000D    Varchar
            0x000E    Varint
            0x000F    Timeuuid
            0x0010    Inet
            0x0020    List: the value is an [option], representing the type
                            of the elements of the list.
            0x0021    Map: the value is two [option], representing the types of the
                           keys and values of the map
            0x0022    Set: the value is an [option], representing the type
                            of the elements of the set

Tuple (0x0031) and user-defined (0x0030) types are not supported.
"""

CUSTOM = 0x0000
ASCII = 0x0001
BIGINT = 0x0002
BLOB = 0x0003
BOOLEAN = 0x0004
COUNTER = 0x0005
DECIMAL = 0x0006
DOUBLE = 0x0007
FLOAT = 0x0008
INT = 0x0009
TEXT = 0x000A
TIMESTAMP = 0x000B
UUID = 0x000C
VARCHAR = 0x000D
VARINT = 0x000E
TIMEUUID = 0x000F
INET = 0x0010
LIST = 0x0020
MAP = 0x0021
SET = 0x0022

UDT = 0x0030
TUPLE = 0x0031


name_by_code = dict((v, k) for k, v in globals().items()
                    if k.isupper() and isinstance(v, int) and k not in ('UDT', 'TUPLE'))


def describe(code):
    """
    Human readable name for a type code, for error messages.
    """
    name = name_by_code.get(code)
    if name is None:
        try:
            return '0x%04x' % (code,)
        except TypeError:
            return repr(code)
    return '%s (0x%04x)' % (name, code)

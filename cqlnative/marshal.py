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

import struct


def _make_packer(format_string):
    packer = struct.Struct(format_string)
    pack = packer.pack
    unpack = lambda s: packer.unpack(s)[0]
    return pack, unpack

int64_pack, int64_unpack = _make_packer('>q')
int32_pack, int32_unpack = _make_packer('>i')
int8_unpack = _make_packer('>b')[1]
uint16_pack, uint16_unpack = _make_packer('>H')
uint8_pack = _make_packer('>B')[0]

# native (little-endian) IEEE-754 images; the wire order is produced by
# reversing every byte of these, see float_pack / double_pack
_float_le_pack, _float_le_unpack = _make_packer('<f')
_double_le_pack, _double_le_unpack = _make_packer('<d')

# version, flags, stream id, opcode, body length
frame_header = struct.Struct('>BBHBI')
frame_header_pack = frame_header.pack
frame_header_unpack = frame_header.unpack

FRAME_HEADER_LENGTH = frame_header.size


def float_pack(value):
    return _float_le_pack(value)[::-1]


def float_unpack(byts):
    return _float_le_unpack(byts[3::-1])


def double_pack(value):
    return _double_le_pack(value)[::-1]


def double_unpack(byts):
    return _double_le_unpack(byts[7::-1])


def varint_unpack(term):
    """
    Folds a big-endian two's complement byte string of any length into an int,
    most significant byte first.
    """
    if not term:
        return 0
    negative = term[0] & 0x80
    val = 0
    for b in term:
        if negative:
            b ^= 0xFF
        val = val * 256 + b
    if negative:
        val = -(val + 1)
    return val


def varint_pack(big):
    pos = True
    if big == 0:
        return b'\x00'
    if big < 0:
        bytelength = (abs(big) - 1).bit_length() // 8 + 1
        big = (1 << bytelength * 8) + big
        pos = False
    revbytes = bytearray()
    while big > 0:
        revbytes.append(big & 0xff)
        big >>= 8
    if pos and revbytes[-1] & 0x80:
        revbytes.append(0)
    revbytes.reverse()
    return bytes(revbytes)

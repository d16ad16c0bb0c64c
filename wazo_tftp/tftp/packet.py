# Copyright 2010-2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Low-level functions to manipulate packets and datagrams.

A packet is a dictionary object. A dgram (datagram) is a bytes object.

"""
from __future__ import annotations

import struct
from collections.abc import Callable
from typing import TypedDict, Union

PacketOptions = dict[bytes, bytes]


class BasePacket(TypedDict):
    opcode: bytes


class RequestPacket(BasePacket):
    filename: bytes
    mode: bytes
    options: PacketOptions


class AckPacket(BasePacket):
    blkno: int


class OptionAckPacket(BasePacket):
    options: PacketOptions


class DataPacket(BasePacket):
    blkno: int
    data: bytes


class ErrorPacket(BasePacket):
    errcode: int
    errmsg: bytes


Packet = Union[AckPacket, DataPacket, ErrorPacket, OptionAckPacket, RequestPacket]

OP_RRQ = b'\x00\x01'
OP_WRQ = b'\x00\x02'
OP_DATA = b'\x00\x03'
OP_ACK = b'\x00\x04'
OP_ERR = b'\x00\x05'
OP_OACK = b'\x00\x06'

ERR_UNDEF = 0  # Not defined, see error message (if any)
ERR_FNF = 1  # File not found
ERR_ACCESS = 2  # Access violation
ERR_ALLOC = 3  # Disk full or allocation exceeded
ERR_ILL = 4  # Illegal TFTP operation
ERR_UNKNWN_TID = 5  # Unknown transfer ID
ERR_FEXIST = 6  # File already exists
ERR_NO_USER = 7  # No such user
ERR_OPTNEG = 8  # Option negotiation failed (RFC 2347)

ERROR_MESSAGES = {
    ERR_UNDEF: b'Not defined',
    ERR_FNF: b'File not found',
    ERR_ACCESS: b'Access violation',
    ERR_ALLOC: b'Disk full or allocation exceeded',
    ERR_ILL: b'Illegal TFTP operation',
    ERR_UNKNWN_TID: b'Unknown transfer ID',
    ERR_FEXIST: b'File already exists',
    ERR_NO_USER: b'No such user',
    ERR_OPTNEG: b'Option negotiation failed',
}

_UINT16_STRUCT = struct.Struct('!H')


class PacketError(Exception):
    """Raise when a problem with parsing/building a datagram arise."""

    pass


def _unpack_uint16(data: bytes) -> int:
    return _UINT16_STRUCT.unpack(data)[0]


def _pack_uint16(n: int) -> bytes:
    try:
        return _UINT16_STRUCT.pack(n)
    except struct.error:
        raise PacketError(f'invalid 16-bit value {n!r}')


def _split_fields(dgram: bytes) -> list[bytes]:
    """Return the fields of a sequence of null-terminated strings."""
    if dgram[-1:] != b'\x00':
        raise PacketError('last datagram byte not null')
    return dgram[:-1].split(b'\x00')


def _parse_options(fields: list[bytes]) -> PacketOptions:
    if len(fields) % 2:
        raise PacketError('option without value')
    options: PacketOptions = {}
    for name, value in zip(fields[::2], fields[1::2]):
        # first occurrence wins
        options.setdefault(name.lower(), value)
    return options


def _parse_request(opcode: bytes, dgram: bytes) -> RequestPacket:
    fields = _split_fields(dgram)
    if len(fields) < 2:
        raise PacketError('missing filename or mode')
    return {
        'opcode': opcode,
        'filename': fields[0],
        'mode': fields[1].lower(),
        'options': _parse_options(fields[2:]),
    }


def _parse_data(opcode: bytes, dgram: bytes) -> DataPacket:
    if len(dgram) < 2:
        raise PacketError('missing block number')
    return {'opcode': opcode, 'blkno': _unpack_uint16(dgram[:2]), 'data': dgram[2:]}


def _parse_ack(opcode: bytes, dgram: bytes) -> AckPacket:
    if len(dgram) != 2:
        raise PacketError('incorrect size')
    return {'opcode': opcode, 'blkno': _unpack_uint16(dgram)}


def _parse_err(opcode: bytes, dgram: bytes) -> ErrorPacket:
    if len(dgram) < 3:
        raise PacketError('too small')
    if dgram[-1:] != b'\x00':
        raise PacketError('last datagram byte not null')
    return {
        'opcode': opcode,
        'errcode': _unpack_uint16(dgram[:2]),
        'errmsg': dgram[2:-1],
    }


def _parse_oack(opcode: bytes, dgram: bytes) -> OptionAckPacket:
    fields = _split_fields(dgram) if dgram else []
    return {'opcode': opcode, 'options': _parse_options(fields)}


_PARSE_MAP: dict[bytes, Callable[[bytes, bytes], Packet]] = {
    OP_RRQ: _parse_request,
    OP_WRQ: _parse_request,
    OP_DATA: _parse_data,
    OP_ACK: _parse_ack,
    OP_ERR: _parse_err,
    OP_OACK: _parse_oack,
}


def parse_dgram(dgram: bytes) -> Packet:
    """Return the packet (a dictionary) encoded in a datagram.

    Every packet has an 'opcode' key holding the 2-byte opcode. The other
    keys depend on the opcode:
      RRQ/WRQ -- filename, mode, options
      DATA -- blkno, data
      ACK -- blkno
      ERROR -- errcode, errmsg
      OACK -- options

    The mode and the option names are lowercased, the option values are
    left untouched, recognized or not. When an option appears more than once,
    the first value is kept.

    Raise a PacketError if the datagram is invalid.

    """
    opcode = dgram[:2]
    try:
        fct = _PARSE_MAP[opcode]
    except KeyError:
        raise PacketError('invalid opcode')

    return fct(opcode, dgram[2:])


def _check_no_null(*fields: bytes) -> None:
    for field in fields:
        if b'\x00' in field:
            raise PacketError('null byte in field')


def _build_options(options: PacketOptions) -> bytes:
    _check_no_null(*(elem for pair in options.items() for elem in pair))
    return b''.join(opt + b'\x00' + val + b'\x00' for opt, val in options.items())


def _build_request(packet: RequestPacket) -> bytes:
    _check_no_null(packet['filename'], packet['mode'])
    return (
        packet['filename']
        + b'\x00'
        + packet['mode']
        + b'\x00'
        + _build_options(packet['options'])
    )


def _build_data(packet: DataPacket) -> bytes:
    return _pack_uint16(packet['blkno']) + packet['data']


def _build_ack(packet: AckPacket) -> bytes:
    return _pack_uint16(packet['blkno'])


def _build_error(packet: ErrorPacket) -> bytes:
    if b'\x00' in packet['errmsg']:
        raise PacketError('null byte in errmsg')
    return _pack_uint16(packet['errcode']) + packet['errmsg'] + b'\x00'


def _build_oack(packet: OptionAckPacket) -> bytes:
    return _build_options(packet['options'])


_BUILD_MAP: dict[bytes, Callable[[Packet], bytes]] = {
    OP_RRQ: _build_request,  # type: ignore[dict-item]
    OP_WRQ: _build_request,  # type: ignore[dict-item]
    OP_DATA: _build_data,  # type: ignore[dict-item]
    OP_ACK: _build_ack,  # type: ignore[dict-item]
    OP_ERR: _build_error,  # type: ignore[dict-item]
    OP_OACK: _build_oack,  # type: ignore[dict-item]
}


def build_dgram(packet: Packet) -> bytes:
    """Return the datagram encoding a packet, the reverse of parse_dgram.

    Raise a PacketError if a field can't be encoded, e.g. a filename
    holding a null byte or a block number above 65535.

    """
    opcode = packet['opcode']
    try:
        fct = _BUILD_MAP[opcode]
    except KeyError:
        raise PacketError('invalid opcode')
    return opcode + fct(packet)


def rrq_packet(
    filename: bytes, mode: bytes = b'octet', options: PacketOptions | None = None
) -> RequestPacket:
    return {
        'opcode': OP_RRQ,
        'filename': filename,
        'mode': mode,
        'options': options or {},
    }


def wrq_packet(
    filename: bytes, mode: bytes = b'octet', options: PacketOptions | None = None
) -> RequestPacket:
    return {
        'opcode': OP_WRQ,
        'filename': filename,
        'mode': mode,
        'options': options or {},
    }


def err_packet(errcode: int, errmsg: bytes | None = None) -> ErrorPacket:
    """Return a new error packet.

    errcode is one of the ERR_* integers and errmsg is a NVT ASCII string.
    When errmsg is None, the standard message of the error code is used.

    """
    if errmsg is None:
        errmsg = ERROR_MESSAGES.get(errcode, b'')
    return {'opcode': OP_ERR, 'errcode': errcode, 'errmsg': errmsg}


def data_packet(blk_no: int, data: bytes) -> DataPacket:
    """Return a new data packet."""
    return {'opcode': OP_DATA, 'blkno': blk_no, 'data': data}


def ack_packet(blk_no: int) -> AckPacket:
    return {'opcode': OP_ACK, 'blkno': blk_no}


def oack_packet(options: PacketOptions) -> OptionAckPacket:
    """Return a new option acknowledgement packet.

    Options is a dictionary of option/value.

    """
    return {'opcode': OP_OACK, 'options': options}

# Copyright 2010-2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, BinaryIO, Callable, Union

from twisted.internet import reactor as default_reactor
from twisted.internet.error import CannotListenError
from twisted.internet.protocol import DatagramProtocol
from twisted.python.failure import Failure

from wazo_tftp.tftp.connection import (
    MAX_DGRAM_SIZE,
    Address,
    ReadConnection,
    WriteConnection,
    _AbstractConnection,
)
from wazo_tftp.tftp.exceptions import OptionNegotiationError
from wazo_tftp.tftp.options import OptionNegotiator
from wazo_tftp.tftp.packet import (
    ERR_UNDEF,
    ERR_UNKNWN_TID,
    OP_ERR,
    OP_RRQ,
    OP_WRQ,
    PacketError,
    RequestPacket,
    build_dgram,
    err_packet,
    parse_dgram,
)

if TYPE_CHECKING:
    from wazo_tftp.tftp.service import AbstractTFTPService, TFTPRequest

logger = logging.getLogger(__name__)

AcceptCallback = Callable[[BinaryIO], None]
RejectCallback = Callable[[int, Union[str, bytes]], None]

# binary is an old alias of octet
_SUPPORTED_MODES = (b'octet', b'binary')


def _encode_errmsg(errmsg: str | bytes) -> bytes:
    if isinstance(errmsg, str):
        return errmsg.encode('ascii', 'replace')
    return errmsg


class _Response:
    def __init__(self, freject: RejectCallback, faccept: AcceptCallback) -> None:
        self._answered = False
        self._do_reject = freject
        self._do_accept = faccept

    def _raise_if_answered(self) -> None:
        if self._answered:
            raise ValueError('Request has already been answered')
        else:
            self._answered = True

    def ignore(self) -> None:
        self._raise_if_answered()

    def reject(self, errcode: int, errmsg: str | bytes) -> None:
        self._raise_if_answered()
        self._do_reject(errcode, errmsg)

    def accept(self, fobj: BinaryIO) -> None:
        self._raise_if_answered()
        self._do_accept(fobj)


class TFTPProtocol(DatagramProtocol):
    """Listen on the TFTP service port and dispatch requests.

    Each accepted request is served by a connection bound to its own port.
    The protocol keeps a table of the active connections by remote address,
    so that datagrams sent by a client to the service port are routed to
    its connection.

    """

    def __init__(
        self,
        service: AbstractTFTPService,
        negotiator: OptionNegotiator | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        reactor=None,
        on_transfer_end: Callable[[Address], None] | None = None,
    ) -> None:
        self._service = service
        self._negotiator = negotiator or OptionNegotiator()
        self._timeout = timeout
        self._max_retries = max_retries
        self._reactor = reactor or default_reactor
        self._on_transfer_end = on_transfer_end
        self._sessions: dict[Address, _AbstractConnection] = {}

    @property
    def sessions(self) -> dict[Address, _AbstractConnection]:
        return dict(self._sessions)

    def _send_error(
        self, errcode: int, errmsg: bytes | None, addr: Address
    ) -> None:
        self.transport.write(build_dgram(err_packet(errcode, errmsg)), addr)

    def _transfer_ended(
        self, result: int | Failure, connection: _AbstractConnection, kind: str
    ) -> None:
        addr = connection.peer
        if self._sessions.get(addr) is connection:
            del self._sessions[addr]
        if isinstance(result, Failure):
            logger.info(
                'TFTP %s transfer with %s failed: %s',
                kind,
                addr,
                result.getErrorMessage(),
            )
        else:
            logger.info(
                'TFTP %s transfer with %s done: %s bytes', kind, addr, result
            )

    def _connection_closed(self, _, connection: _AbstractConnection) -> None:
        if self._on_transfer_end is not None:
            self._on_transfer_end(connection.peer)

    def _start_connection(
        self, pkt: RequestPacket, addr: Address, fobj: BinaryIO, negotiated
    ) -> None:
        options, oack_options = negotiated
        if pkt['opcode'] == OP_RRQ:
            kind = 'read'
            connection_class: type[_AbstractConnection] = ReadConnection
        else:
            kind = 'write'
            connection_class = WriteConnection
        connection = connection_class(
            addr,
            fobj,
            options,
            oack_options,
            timeout=self._timeout,
            max_retries=self._max_retries,
            clock=self._reactor,
        )
        self._sessions[addr] = connection
        connection.finished.addBoth(self._transfer_ended, connection, kind)
        connection.closed.addCallback(self._connection_closed, connection)
        try:
            self._reactor.listenUDP(0, connection, maxPacketSize=MAX_DGRAM_SIZE)
        except CannotListenError as e:
            logger.error('Could not bind TFTP transfer port: %s', e)
            del self._sessions[addr]
            fobj.close()
            self._send_error(ERR_UNDEF, b'Could not allocate transfer port', addr)

    def _handle_request(self, pkt: RequestPacket, addr: Address) -> None:
        kind = 'read' if pkt['opcode'] == OP_RRQ else 'write'
        if pkt['mode'] not in _SUPPORTED_MODES:
            logger.warning('TFTP mode not supported: %s', pkt['mode'])
            self._send_error(ERR_UNDEF, b'Mode not supported', addr)
            return

        try:
            negotiated = self._negotiator.negotiate(pkt['options'])
        except OptionNegotiationError as e:
            logger.info('TFTP %s request rejected: %s', kind, e)
            self._send_error(e.errcode, e.errmsg, addr)
            return

        def on_reject(errcode: int, errmsg: str | bytes) -> None:
            logger.info('TFTP %s request rejected: %s', kind, errmsg)
            self._send_error(errcode, _encode_errmsg(errmsg), addr)

        def on_accept(fobj: BinaryIO) -> None:
            if addr in self._sessions:
                logger.info('TFTP %s request from %s already served', kind, addr)
                fobj.close()
                return
            logger.info('TFTP %s request accepted', kind)
            logger.debug('Using options %s with %s', negotiated[0], addr)
            self._start_connection(pkt, addr, fobj, negotiated)

        request: TFTPRequest = {'address': addr, 'packet': pkt}
        response = _Response(on_reject, on_accept)
        if kind == 'read':
            self._service.handle_read_request(request, response)
        else:
            self._service.handle_write_request(request, response)

    def datagramReceived(self, dgram: bytes, addr: Address) -> None:
        try:
            pkt = parse_dgram(dgram)
        except PacketError as e:
            # invalid datagram - ignore it
            logger.info('Received invalid TFTP datagram from %s: %s', addr, e)
            return

        connection = self._sessions.get(addr)
        if pkt['opcode'] in (OP_RRQ, OP_WRQ):
            if connection is not None:
                logger.info('Ignoring duplicate TFTP request from %s', addr)
                return
            if pkt['opcode'] == OP_RRQ:
                logger.info('TFTP read request from %s', addr)
            else:
                logger.info('TFTP write request from %s', addr)
            request_pkt: RequestPacket = pkt  # type: ignore[assignment]
            self._handle_request(request_pkt, addr)
        elif connection is not None:
            connection.datagramReceived(dgram, addr)
        elif pkt['opcode'] != OP_ERR:
            logger.info('Datagram received from %s with unknown TID', addr)
            self._send_error(ERR_UNKNWN_TID, None, addr)

    def stopProtocol(self) -> None:
        for connection in list(self._sessions.values()):
            connection.abort('Server shutting down')

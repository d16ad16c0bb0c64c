# Copyright 2010-2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Manage the transfer between two host.

A connection drives exactly one transfer. It is a datagram protocol
that must be bound to its own port, which is the transfer ID (TID) of
our side of the transfer.

The sender side of a transfer sends a window of blocks before waiting
for an acknowledgement, as described in RFC 7440. Acknowledgements are
cumulative, and a timeout makes the whole window to be sent again.

"""
from __future__ import annotations

import enum
import logging
from collections import deque
from typing import TYPE_CHECKING, BinaryIO

from twisted.internet import reactor
from twisted.internet.defer import Deferred
from twisted.internet.protocol import DatagramProtocol

from wazo_tftp.tftp.exceptions import (
    LocalTimeoutError,
    ProtocolError,
    RemoteError,
    StorageError,
    TFTPError,
)
from wazo_tftp.tftp.options import (
    DEFAULT_OPTIONS,
    MAX_BLKSIZE,
    NegotiatedOptions,
    accept_oack,
)
from wazo_tftp.tftp.packet import (
    ERR_UNDEF,
    ERR_UNKNWN_TID,
    OP_ACK,
    OP_DATA,
    OP_ERR,
    OP_OACK,
    AckPacket,
    DataPacket,
    ErrorPacket,
    OptionAckPacket,
    PacketError,
    PacketOptions,
    ack_packet,
    build_dgram,
    data_packet,
    err_packet,
    oack_packet,
    parse_dgram,
    rrq_packet,
    wrq_packet,
)

if TYPE_CHECKING:
    from twisted.internet.interfaces import IDelayedCall, IReactorTime

# TODO RFC1122 says we must use an adaptive timeout...


logger = logging.getLogger(__name__)

Address = tuple[str, int]

_BLK_NO_MODULO = 65536

# a DATA packet carrying the largest block
MAX_DGRAM_SIZE = 4 + MAX_BLKSIZE


def _blk_distance(from_blk_no: int, to_blk_no: int) -> int:
    """Return how far to_blk_no is after from_blk_no, block numbers wrapping."""
    return (to_blk_no - from_blk_no) % _BLK_NO_MODULO


class TransferState(enum.Enum):
    NEGOTIATING = 'negotiating'
    TRANSFERRING = 'transferring'
    COMPLETING = 'completing'
    DONE = 'done'
    FAILED = 'failed'


class _AbstractConnection(DatagramProtocol):
    """Represent a transfer with a remote host.

    The '_start' method MUST be overridden in derived class. It is called
    once the connection is listening and should send the first datagram(s).

    The '_handle_ack', '_handle_data' and '_handle_oack' methods MAY be
    overridden in derived class. By default, receiving such a packet is an
    illegal TFTP operation.

    The '_close' method MAY be overridden in derived class. It will be called
    at least once after the transfer is finished, in any circumstances, and
    must be idempotent.

    The 'finished' deferred fires with the number of bytes transferred once
    the transfer is completed, or fails with a TFTPError.

    The 'closed' deferred fires once the connection has stopped listening.
    A receiver that sent its final ACK keeps listening for a while after
    'finished' has fired, to acknowledge a retransmitted last block.

    """

    timeout: float = 4
    max_retries = 4

    _HANDLERS = {
        OP_ACK: '_handle_ack',
        OP_DATA: '_handle_data',
        OP_ERR: '_handle_error',
        OP_OACK: '_handle_oack',
    }

    def __init__(
        self,
        addr: Address,
        options: NegotiatedOptions = DEFAULT_OPTIONS,
        timeout: float | None = None,
        max_retries: int | None = None,
        clock: IReactorTime | None = None,
    ) -> None:
        """Create a new connection with a remote host.

        addr is the address of the remote host.

        """
        self._addr = addr
        self._tid_fixed = True
        self.options = options
        if timeout is not None:
            self.timeout = timeout
        if max_retries is not None:
            self.max_retries = max_retries
        self._clock: IReactorTime = clock or reactor  # type: ignore[assignment]
        self.state = TransferState.NEGOTIATING
        self.finished: Deferred[int] = Deferred()
        self.closed: Deferred[None] = Deferred()
        self.bytes_transferred = 0
        self._closed = False
        self._last_dgrams: list[bytes] = []
        self._retry_cnt = 0
        self._timeout_timer: IDelayedCall | None = None
        self._start_time = 0.0

    @property
    def peer(self) -> Address:
        return self._addr

    def _start(self) -> None:
        raise NotImplementedError('Must be implemented in derived class')

    def _close(self) -> None:
        pass

    def __do_close(self) -> None:
        """Cleanup and make sure the connection stops listening once."""
        if not self._closed:
            self._cancel_timeout()
            self._close()
            self._closed = True
            if self.transport is not None:
                self.transport.stopListening()
            self.closed.callback(None)

    def _cancel_timeout(self) -> None:
        if self._timeout_timer is not None:
            if self._timeout_timer.active():
                self._timeout_timer.cancel()
            self._timeout_timer = None

    def _set_timeout(self, delay: float | None = None) -> None:
        self._cancel_timeout()
        self._timeout_timer = self._clock.callLater(
            self.timeout if delay is None else delay, self._timeout_expired
        )

    def _timeout_expired(self) -> None:
        self._timeout_timer = None
        if self.state is TransferState.COMPLETING:
            self._finish_completing()
            return

        logger.info('Timeout has expired with current retry count %s', self._retry_cnt)
        self._retry_cnt += 1
        if self._retry_cnt >= self.max_retries:
            self._fail(LocalTimeoutError('Timeout'), send_error=True)
        else:
            self._send_dgrams(self._last_dgrams)

    def _write(self, dgram: bytes, addr: Address | None = None) -> None:
        self.transport.write(dgram, addr or self._addr)

    def _send_dgrams(self, dgrams: list[bytes]) -> None:
        """Send datagrams that will be sent again if the timeout expires."""
        for dgram in dgrams:
            self._write(dgram)
        self._last_dgrams = dgrams
        self._set_timeout()

    def _send_error(
        self, errcode: int, errmsg: bytes | None = None, addr: Address | None = None
    ) -> None:
        self._write(build_dgram(err_packet(errcode, errmsg)), addr)

    def _reset_retries(self) -> None:
        self._retry_cnt = 0

    def _fail(self, e: TFTPError, send_error: bool = False) -> None:
        if send_error:
            self._send_error(e.errcode, e.errmsg)
        logger.info('TFTP transfer with %s failed: %s', self._addr, e)
        self.state = TransferState.FAILED
        self.__do_close()
        if not self.finished.called:
            self.finished.errback(e)

    def _transfer_completed(self) -> None:
        self._close()
        duration = self._clock.seconds() - self._start_time
        logger.info(
            'TFTP transfer with %s completed: %s bytes in %.3fs (%.1f KiB/s)',
            self._addr,
            self.bytes_transferred,
            duration,
            self.bytes_transferred / 1024 / duration if duration > 0 else 0.0,
        )
        if not self.finished.called:
            self.finished.callback(self.bytes_transferred)

    def _succeed(self) -> None:
        self.state = TransferState.DONE
        self.__do_close()
        self._transfer_completed()

    def _enter_completing(self) -> None:
        """Keep listening before closing, in case our last ACK was lost.

        The wait lasts two timeout periods so that a peer retransmitting
        after its own timeout still gets an answer.

        """
        self.state = TransferState.COMPLETING
        self._transfer_completed()
        self._set_timeout(self.timeout * 2)

    def _finish_completing(self) -> None:
        self.state = TransferState.DONE
        self.__do_close()

    def abort(self, reason: str = 'Transfer aborted') -> None:
        if self._closed:
            return
        if self.state is TransferState.COMPLETING:
            self._finish_completing()
        else:
            self._fail(TFTPError(reason), send_error=True)

    def _handle_wrong_tid(self, dgram: bytes, addr: Address) -> None:
        logger.info('Datagram received from %s with wrong TID', addr)
        if dgram[:2] != OP_ERR:
            self._send_error(ERR_UNKNWN_TID, addr=addr)

    def _handle_invalid_dgram(self, e: PacketError) -> None:
        """Called when a datagram sent by the remote host could not be parsed."""
        if self.state is TransferState.NEGOTIATING:
            self._fail(ProtocolError(f'Invalid datagram: {e}', ERR_UNDEF), True)
        else:
            logger.info('Ignoring invalid datagram from %s: %s', self._addr, e)

    def _handle_illegal_pkt(self, errmsg: str = 'Illegal TFTP operation') -> None:
        self._fail(ProtocolError(errmsg), send_error=True)

    def _handle_error(self, pkt: ErrorPacket) -> None:
        logger.info('Received an error packet from %s', self._addr)
        self._fail(RemoteError(pkt['errcode'], pkt['errmsg']))

    def _handle_ack(self, pkt: AckPacket) -> None:
        self._handle_illegal_pkt()

    def _handle_data(self, pkt: DataPacket) -> None:
        self._handle_illegal_pkt()

    def _handle_oack(self, pkt: OptionAckPacket) -> None:
        self._handle_illegal_pkt()

    def _is_peer(self, addr: Address) -> bool:
        if addr == self._addr:
            return True
        # the first reply of a server comes from its TID, not its service port
        return not self._tid_fixed and addr[0] == self._addr[0]

    def datagramReceived(self, dgram: bytes, addr: Address) -> None:
        if self._closed:
            return
        if not self._is_peer(addr):
            self._handle_wrong_tid(dgram, addr)
            return

        try:
            pkt = parse_dgram(dgram)
        except PacketError as e:
            self._handle_invalid_dgram(e)
            return

        if not self._tid_fixed:
            self._addr = addr
            self._tid_fixed = True

        try:
            handler = getattr(self, self._HANDLERS[pkt['opcode']])
        except KeyError:
            logger.info('Received an unexpected packet - opcode %r', pkt['opcode'])
            self._handle_illegal_pkt()
            return

        try:
            handler(pkt)
        except TFTPError as e:
            self._fail(e, send_error=True)

    def startProtocol(self) -> None:
        self._start_time = self._clock.seconds()
        try:
            self._start()
        except TFTPError as e:
            self._fail(e, send_error=True)

    def stopProtocol(self) -> None:
        if self._closed:
            return
        if self.state is TransferState.COMPLETING:
            self._finish_completing()
        else:
            self._fail(TFTPError('Transfer interrupted'))


class _SenderConnection(_AbstractConnection):
    """The side of a transfer that reads a file and sends DATA packets."""

    def __init__(
        self,
        addr: Address,
        fobj: BinaryIO,
        options: NegotiatedOptions = DEFAULT_OPTIONS,
        **kwargs,
    ) -> None:
        """
        fobj -- a file-object that is going to be transmitted.
                This object will call its close method.

        """
        super().__init__(addr, options, **kwargs)
        self._fobj = fobj
        self._window: deque[tuple[int, bytes]] = deque()
        self._blk_no = 0
        self._eof = False
        self._started = False

    def _close(self) -> None:
        self._fobj.close()

    def _read_block(self) -> bytes:
        try:
            return self._fobj.read(self.options.blksize)
        except OSError as e:
            raise StorageError.from_os_error(e)

    def _fill_window(self) -> None:
        blk_no = self._window[-1][0] if self._window else self._blk_no
        while len(self._window) < self.options.windowsize and not self._eof:
            buf = self._read_block()
            blk_no = (blk_no + 1) % _BLK_NO_MODULO
            self._window.append((blk_no, buf))
            # a block shorter than blksize, possibly empty, is the last one
            if len(buf) < self.options.blksize:
                self._eof = True

    def _send_window(self) -> None:
        self._send_dgrams(
            [build_dgram(data_packet(blk_no, buf)) for blk_no, buf in self._window]
        )

    def _start_transfer(self) -> None:
        self.state = TransferState.TRANSFERRING
        self._started = True
        self._fill_window()
        self._send_window()

    def _handle_ack(self, pkt: AckPacket) -> None:
        blk_no = pkt['blkno']
        if not self._started:
            if blk_no != 0:
                self._handle_illegal_pkt('Illegal block number')
                return
            self._reset_retries()
            self._start_transfer()
            return

        distance = _blk_distance(self._blk_no, blk_no)
        if not 0 < distance <= len(self._window):
            logger.debug('Ignoring stale ACK %s from %s', blk_no, self._addr)
            return

        self.state = TransferState.TRANSFERRING
        for _ in range(distance):
            _, buf = self._window.popleft()
            self.bytes_transferred += len(buf)
        self._blk_no = blk_no
        self._cancel_timeout()
        self._reset_retries()
        if self._eof and not self._window:
            self._succeed()
        else:
            self._fill_window()
            self._send_window()


class _ReceiverConnection(_AbstractConnection):
    """The side of a transfer that receives DATA packets and writes a file."""

    def __init__(
        self,
        addr: Address,
        fobj: BinaryIO,
        options: NegotiatedOptions = DEFAULT_OPTIONS,
        **kwargs,
    ) -> None:
        """
        fobj -- a file-object where the received data is written.
                This object will call its close method.

        """
        super().__init__(addr, options, **kwargs)
        self._fobj = fobj
        self._blk_no = 0
        self._unacked = 0

    def _close(self) -> None:
        self._fobj.close()

    def _ack_dgram(self) -> bytes:
        return build_dgram(ack_packet(self._blk_no))

    def _send_ack(self) -> None:
        self._unacked = 0
        self._send_dgrams([self._ack_dgram()])

    def _timeout_expired(self) -> None:
        if self.state is TransferState.TRANSFERRING:
            # the sender restarts its window after the ACK we are about to resend
            self._unacked = 0
        super()._timeout_expired()

    def _write_block(self, data: bytes) -> None:
        try:
            self._fobj.write(data)
        except OSError as e:
            raise StorageError.from_os_error(e)

    def _accept_block(self, blk_no: int, data: bytes) -> None:
        if len(data) > self.options.blksize:
            self._handle_illegal_pkt('Block larger than blksize')
            return

        self._write_block(data)
        self.state = TransferState.TRANSFERRING
        self._blk_no = blk_no
        self._unacked += 1
        self.bytes_transferred += len(data)
        self._reset_retries()
        if len(data) < self.options.blksize:
            self._send_ack()
            self._enter_completing()
        elif self._unacked >= self.options.windowsize:
            self._send_ack()
        else:
            # if the rest of the window never comes, ACK what we have
            self._last_dgrams = [self._ack_dgram()]
            self._set_timeout()

    def _handle_data(self, pkt: DataPacket) -> None:
        blk_no = pkt['blkno']
        distance = _blk_distance(self._blk_no, blk_no)
        if distance == 1 and self.state is not TransferState.COMPLETING:
            self._accept_block(blk_no, pkt['data'])
        elif distance == 0 or distance > _BLK_NO_MODULO // 2:
            logger.debug('Duplicate DATA %s from %s', blk_no, self._addr)
            self._write(self._ack_dgram())
        else:
            logger.debug(
                'Discarding DATA %s from %s, expecting %s',
                blk_no,
                self._addr,
                (self._blk_no + 1) % _BLK_NO_MODULO,
            )


class ReadConnection(_SenderConnection):
    """Server side of a read request (RRQ)."""

    def __init__(
        self,
        addr: Address,
        fobj: BinaryIO,
        options: NegotiatedOptions = DEFAULT_OPTIONS,
        oack_options: PacketOptions | None = None,
        **kwargs,
    ) -> None:
        """
        oack_options -- the options to acknowledge, or None if the
                        request had no option we recognized.

        """
        super().__init__(addr, fobj, options, **kwargs)
        self._oack_options = oack_options

    def _start(self) -> None:
        if self._oack_options is None:
            self._start_transfer()
        else:
            self._send_dgrams([build_dgram(oack_packet(self._oack_options))])


class WriteConnection(_ReceiverConnection):
    """Server side of a write request (WRQ)."""

    def __init__(
        self,
        addr: Address,
        fobj: BinaryIO,
        options: NegotiatedOptions = DEFAULT_OPTIONS,
        oack_options: PacketOptions | None = None,
        **kwargs,
    ) -> None:
        super().__init__(addr, fobj, options, **kwargs)
        self._oack_options = oack_options

    def _start(self) -> None:
        if self._oack_options is None:
            self.state = TransferState.TRANSFERRING
            self._send_ack()
        else:
            self._send_dgrams([build_dgram(oack_packet(self._oack_options))])


class ClientReadConnection(_ReceiverConnection):
    """Client side of a download.

    addr is the service address of the server. The transfer ID of the
    server is learned from its first reply.

    """

    def __init__(
        self,
        addr: Address,
        fobj: BinaryIO,
        filename: bytes,
        requested_options: PacketOptions | None = None,
        mode: bytes = b'octet',
        **kwargs,
    ) -> None:
        super().__init__(addr, fobj, DEFAULT_OPTIONS, **kwargs)
        self._tid_fixed = False
        self._request = rrq_packet(filename, mode, requested_options)

    def _start(self) -> None:
        self._send_dgrams([build_dgram(self._request)])

    def _handle_oack(self, pkt: OptionAckPacket) -> None:
        if self.state is TransferState.NEGOTIATING:
            self.options = accept_oack(self._request['options'], pkt['options'])
            logger.debug('Using options %s with %s', self.options, self._addr)
            self.state = TransferState.TRANSFERRING
            self._reset_retries()
            self._send_ack()
        elif self._blk_no == 0:
            # our ACK of the OACK was lost
            self._write(self._ack_dgram())


class ClientWriteConnection(_SenderConnection):
    """Client side of an upload."""

    def __init__(
        self,
        addr: Address,
        fobj: BinaryIO,
        filename: bytes,
        requested_options: PacketOptions | None = None,
        mode: bytes = b'octet',
        **kwargs,
    ) -> None:
        super().__init__(addr, fobj, DEFAULT_OPTIONS, **kwargs)
        self._tid_fixed = False
        self._request = wrq_packet(filename, mode, requested_options)

    def _start(self) -> None:
        self._send_dgrams([build_dgram(self._request)])

    def _handle_oack(self, pkt: OptionAckPacket) -> None:
        if self._started:
            logger.debug('Ignoring duplicate OACK from %s', self._addr)
            return
        self.options = accept_oack(self._request['options'], pkt['options'])
        logger.debug('Using options %s with %s', self.options, self._addr)
        self._reset_retries()
        self._start_transfer()

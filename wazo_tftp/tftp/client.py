# Copyright 2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import logging
import os
from collections.abc import Callable

from twisted.internet import defer
from twisted.internet import reactor as default_reactor
from twisted.internet.defer import Deferred
from twisted.internet.error import CannotListenError, DNSLookupError
from twisted.python.failure import Failure

from wazo_tftp.tftp.connection import (
    MAX_DGRAM_SIZE,
    Address,
    ClientReadConnection,
    ClientWriteConnection,
    _AbstractConnection,
)
from wazo_tftp.tftp.exceptions import StorageError, TFTPError
from wazo_tftp.tftp.options import request_options

logger = logging.getLogger(__name__)

DEFAULT_PORT = 69


class TFTPClient:
    """Download files from, and upload files to, a TFTP server.

    Every call to download or upload drives exactly one transfer and
    returns a deferred that fires with the number of bytes transferred,
    or fails with the TFTPError that terminated the transfer.

    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        blksize: int | None = None,
        windowsize: int | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        reactor=None,
    ) -> None:
        self._host = host
        self._port = port
        self._options = request_options(blksize, windowsize)
        self._timeout = timeout
        self._max_retries = max_retries
        self._reactor = reactor or default_reactor

    def _resolve(self) -> Deferred[str]:
        def on_error(failure: Failure) -> Failure:
            failure.trap(DNSLookupError)
            raise TFTPError(f'Could not resolve host {self._host}')

        d = self._reactor.resolve(self._host)
        d.addErrback(on_error)
        return d

    def _transfer(
        self, connection_factory: Callable[[Address], _AbstractConnection]
    ) -> Deferred[int]:
        def wait_closed(
            result: int | Failure, connection: _AbstractConnection
        ) -> Deferred[int]:
            # a download keeps answering a retransmitted last block for a while
            d: Deferred[int] = Deferred()
            connection.closed.addCallback(lambda _: d.callback(result))
            return d

        def on_resolved(ip: str) -> Deferred[int]:
            connection = connection_factory((ip, self._port))
            try:
                self._reactor.listenUDP(0, connection, maxPacketSize=MAX_DGRAM_SIZE)
            except CannotListenError as e:
                raise TFTPError(f'Could not bind local port: {e}')
            return connection.finished.addBoth(wait_closed, connection)

        d = self._resolve()
        d.addCallback(on_resolved)
        return d

    def _connection_kwargs(self) -> dict:
        return {
            'timeout': self._timeout,
            'max_retries': self._max_retries,
            'clock': self._reactor,
        }

    def download(self, remote: str, local: str) -> Deferred[int]:
        """Read the file named remote on the server into the local file.

        The local file is removed if the transfer fails.

        """
        try:
            fobj = open(local, 'wb')
        except OSError as e:
            return defer.fail(StorageError.from_os_error(e))

        def new_connection(addr: Address) -> _AbstractConnection:
            logger.info('Downloading %s from %s:%s', remote, *addr)
            return ClientReadConnection(
                addr,
                fobj,
                os.fsencode(remote),
                self._options,
                **self._connection_kwargs(),
            )

        def on_error(failure: Failure) -> Failure:
            fobj.close()
            try:
                os.remove(local)
            except FileNotFoundError:
                pass
            return failure

        d = self._transfer(new_connection)
        d.addErrback(on_error)
        return d

    def upload(self, local: str, remote: str) -> Deferred[int]:
        """Write the content of the local file to the file named remote."""
        try:
            fobj = open(local, 'rb')
        except OSError as e:
            return defer.fail(StorageError.from_os_error(e))

        def new_connection(addr: Address) -> _AbstractConnection:
            logger.info('Uploading %s to %s:%s', local, *addr)
            return ClientWriteConnection(
                addr,
                fobj,
                os.fsencode(remote),
                self._options,
                **self._connection_kwargs(),
            )

        def on_error(failure: Failure) -> Failure:
            fobj.close()
            return failure

        d = self._transfer(new_connection)
        d.addErrback(on_error)
        return d

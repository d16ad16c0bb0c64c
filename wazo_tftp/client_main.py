# Copyright 2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Command line TFTP client.

Usage: wazo-tftp get [options] <host> <remote file> [<local file>]
       wazo-tftp put [options] <host> <local file> [<remote file>]

"""
from __future__ import annotations

import logging
import os
import posixpath
import sys
from typing import Callable

from twisted.internet import task
from twisted.internet.defer import Deferred
from twisted.python import usage
from twisted.python.failure import Failure

from wazo_tftp.tftp.client import DEFAULT_PORT, TFTPClient
from wazo_tftp.tftp.exceptions import TFTPError
from wazo_tftp.tftp.options import (
    MAX_BLKSIZE,
    MAX_WINDOWSIZE,
    MIN_BLKSIZE,
    MIN_WINDOWSIZE,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s (%(levelname)s) (%(name)s): %(message)s'


def _bounded_int(lower: int, upper: int) -> Callable[[str], int]:
    def coerce(value: str) -> int:
        n = int(value)
        if not lower <= n <= upper:
            raise ValueError(f'{n} is not between {lower} and {upper}')
        return n

    coerce.coerceDoc = f'Between {lower} and {upper}.'  # type: ignore[attr-defined]
    return coerce


def _positive_float(value: str) -> float:
    n = float(value)
    if n <= 0:
        raise ValueError(f'{value} is not a positive number')
    return n


class _TransferOptions(usage.Options):
    optFlags = [
        ('verbose', 'v', 'Increase verbosity.'),
    ]

    optParameters = [
        ('port', 'p', DEFAULT_PORT, 'The port of the server.', _bounded_int(1, 65535)),
        (
            'blksize',
            'b',
            None,
            'The block size to request.',
            _bounded_int(MIN_BLKSIZE, MAX_BLKSIZE),
        ),
        (
            'windowsize',
            'w',
            None,
            'The window size to request.',
            _bounded_int(MIN_WINDOWSIZE, MAX_WINDOWSIZE),
        ),
        (
            'timeout',
            't',
            None,
            'Seconds to wait before retransmitting.',
            _positive_float,
        ),
        (
            'retries',
            'r',
            None,
            'Retransmissions before giving up.',
            _bounded_int(1, 1000),
        ),
    ]


class GetOptions(_TransferOptions):
    synopsis = '[options] <host> <remote file> [<local file>]'

    def parseArgs(self, host: str, remote: str, local: str | None = None) -> None:
        self['host'] = host
        self['remote'] = remote
        self['local'] = local or posixpath.basename(remote)
        if not self['local']:
            raise usage.UsageError('cannot guess the local file name')


class PutOptions(_TransferOptions):
    synopsis = '[options] <host> <local file> [<remote file>]'

    def parseArgs(self, host: str, local: str, remote: str | None = None) -> None:
        self['host'] = host
        self['local'] = local
        self['remote'] = remote or os.path.basename(local)
        if not self['remote']:
            raise usage.UsageError('cannot guess the remote file name')


class Options(usage.Options):
    synopsis = 'Usage: wazo-tftp <command> [options]'

    subCommands = [
        ('get', None, GetOptions, 'Download a file from a TFTP server.'),
        ('put', None, PutOptions, 'Upload a file to a TFTP server.'),
    ]

    def postOptions(self) -> None:
        if self.subCommand is None:
            raise usage.UsageError('missing command')


def run(reactor, options: Options) -> Deferred:
    command = options.subCommand
    sub_options = options.subOptions
    client = TFTPClient(
        sub_options['host'],
        sub_options['port'],
        blksize=sub_options['blksize'],
        windowsize=sub_options['windowsize'],
        timeout=sub_options['timeout'],
        max_retries=sub_options['retries'],
        reactor=reactor,
    )
    if command == 'get':
        d = client.download(sub_options['remote'], sub_options['local'])
    else:
        d = client.upload(sub_options['local'], sub_options['remote'])

    def on_success(bytes_transferred: int) -> None:
        logger.info('%s: %s bytes transferred', command, bytes_transferred)

    def on_error(failure: Failure) -> None:
        failure.trap(TFTPError)
        logger.error('%s: transfer failed: %s', command, failure.value)
        raise SystemExit(1)

    d.addCallbacks(on_success, on_error)
    return d


def main(argv: list[str] | None = None) -> None:
    options = Options()
    try:
        options.parseOptions(argv)
    except usage.UsageError as e:
        print(f'{options}\n{sys.argv[0]}: {e}', file=sys.stderr)
        sys.exit(2)

    verbose = options.subOptions['verbose']
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT
    )
    task.react(run, [options])

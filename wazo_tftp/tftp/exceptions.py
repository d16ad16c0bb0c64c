# Copyright 2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later
from __future__ import annotations

import errno

from wazo_tftp.tftp.packet import (
    ERR_ACCESS,
    ERR_ALLOC,
    ERR_FNF,
    ERR_ILL,
    ERR_OPTNEG,
    ERR_UNDEF,
    ERROR_MESSAGES,
)


class TFTPError(Exception):
    """Base class of the conditions terminating a transfer.

    errcode is the TFTP error code sent to the remote host, if any is sent.

    """

    errcode = ERR_UNDEF

    def __init__(self, message: str, errcode: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if errcode is not None:
            self.errcode = errcode

    @property
    def errmsg(self) -> bytes:
        return self.message.encode('ascii', 'replace')


class OptionNegotiationError(TFTPError):
    errcode = ERR_OPTNEG


class ProtocolError(TFTPError):
    errcode = ERR_ILL


class RemoteError(ProtocolError):
    """Raised when the remote host has sent an error packet."""

    def __init__(self, errcode: int, errmsg: bytes) -> None:
        message = errmsg.decode('ascii', 'replace') or ERROR_MESSAGES.get(
            errcode, b''
        ).decode('ascii')
        super().__init__(message, errcode)


class LocalTimeoutError(TFTPError):
    pass


class StorageError(TFTPError):
    _ERRNO_MAP = {
        errno.ENOSPC: ERR_ALLOC,
        errno.EDQUOT: ERR_ALLOC,
        errno.EACCES: ERR_ACCESS,
        errno.EPERM: ERR_ACCESS,
        errno.EROFS: ERR_ACCESS,
        errno.ENOENT: ERR_FNF,
    }

    @classmethod
    def from_os_error(cls, e: OSError) -> StorageError:
        errcode = cls._ERRNO_MAP.get(e.errno, ERR_UNDEF)  # type: ignore[arg-type]
        message = ERROR_MESSAGES[errcode].decode('ascii')
        if errcode == ERR_UNDEF:
            message = e.strerror or 'I/O error'
        return cls(message, errcode)

# Copyright 2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Negotiation of the TFTP options.

Only the blksize (RFC 2348) and windowsize (RFC 7440) options are
recognized. Any other option is ignored.

"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from wazo_tftp.tftp.exceptions import OptionNegotiationError
from wazo_tftp.tftp.packet import PacketOptions

logger = logging.getLogger(__name__)

BLKSIZE = b'blksize'
WINDOWSIZE = b'windowsize'

DEFAULT_BLKSIZE = 512
MIN_BLKSIZE = 8
MAX_BLKSIZE = 65464

DEFAULT_WINDOWSIZE = 1
MIN_WINDOWSIZE = 1
MAX_WINDOWSIZE = 65535

_BOUNDS = {
    BLKSIZE: (MIN_BLKSIZE, MAX_BLKSIZE),
    WINDOWSIZE: (MIN_WINDOWSIZE, MAX_WINDOWSIZE),
}


@dataclass(frozen=True)
class NegotiatedOptions:
    blksize: int = DEFAULT_BLKSIZE
    windowsize: int = DEFAULT_WINDOWSIZE


DEFAULT_OPTIONS = NegotiatedOptions()


# larger than any option bound
_OVERFLOW = 1 << 32


def _parse_int(name: bytes, value: bytes) -> int:
    """Parse an unsigned decimal value made of ASCII digits only.

    Values too long to fit the option bounds are returned as a value above
    every bound, without converting the whole string.

    """
    if not value.isdigit():
        raise OptionNegotiationError(
            f'invalid {name.decode()} value {value!r} - not a number'
        )
    digits = value.lstrip(b'0')
    if len(digits) > 9:
        return _OVERFLOW
    return int(digits or b'0')


def _clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(value, upper))


class OptionNegotiator:
    """Compute the options of a transfer from the options of a request."""

    def __init__(
        self, max_blksize: int = MAX_BLKSIZE, max_windowsize: int = MAX_WINDOWSIZE
    ) -> None:
        self._bounds = {
            BLKSIZE: (MIN_BLKSIZE, _clamp(max_blksize, MIN_BLKSIZE, MAX_BLKSIZE)),
            WINDOWSIZE: (
                MIN_WINDOWSIZE,
                _clamp(max_windowsize, MIN_WINDOWSIZE, MAX_WINDOWSIZE),
            ),
        }

    def negotiate(
        self, requested: PacketOptions
    ) -> tuple[NegotiatedOptions, PacketOptions | None]:
        """Return the negotiated options and the options to acknowledge.

        The options to acknowledge is None if no recognized option was
        requested, in which case no OACK must be sent.

        Raise an OptionNegotiationError if a recognized option has a value
        that is not a number. Values out of bounds are clamped.

        """
        values: dict[bytes, int] = {}
        for name, value in requested.items():
            if name not in self._bounds:
                logger.debug('Ignoring unsupported option %r', name)
                continue
            lower, upper = self._bounds[name]
            values[name] = _clamp(_parse_int(name, value), lower, upper)

        if not values:
            return DEFAULT_OPTIONS, None

        negotiated = NegotiatedOptions(
            blksize=values.get(BLKSIZE, DEFAULT_BLKSIZE),
            windowsize=values.get(WINDOWSIZE, DEFAULT_WINDOWSIZE),
        )
        oack_options = {name: str(value).encode() for name, value in values.items()}
        return negotiated, oack_options


def request_options(
    blksize: int | None = None, windowsize: int | None = None
) -> PacketOptions:
    """Return the options a client should put in its request.

    Options equal to their default value are not requested.

    """
    options: PacketOptions = {}
    if blksize is not None and blksize != DEFAULT_BLKSIZE:
        options[BLKSIZE] = str(blksize).encode()
    if windowsize is not None and windowsize != DEFAULT_WINDOWSIZE:
        options[WINDOWSIZE] = str(windowsize).encode()
    return options


def accept_oack(
    requested: PacketOptions, oack_options: PacketOptions
) -> NegotiatedOptions:
    """Return the options of a transfer from the OACK sent by a server.

    The server may only acknowledge options that were requested, and
    may only lower their value.

    """
    values: dict[bytes, int] = {}
    for name, value in oack_options.items():
        if name not in requested or name not in _BOUNDS:
            raise OptionNegotiationError(f'unrequested option {name!r}')
        acked_value = _parse_int(name, value)
        lower, upper = _BOUNDS[name]
        if not lower <= acked_value <= upper:
            raise OptionNegotiationError(
                f'invalid {name.decode()} value {acked_value} - out of range'
            )
        if acked_value > _parse_int(name, requested[name]):
            raise OptionNegotiationError(
                f'invalid {name.decode()} value {acked_value} - greater than requested'
            )
        values[name] = acked_value

    return NegotiatedOptions(
        blksize=values.get(BLKSIZE, DEFAULT_BLKSIZE),
        windowsize=values.get(WINDOWSIZE, DEFAULT_WINDOWSIZE),
    )

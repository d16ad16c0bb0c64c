# Copyright 2016-2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""Log of the events a tool like fail2ban may want to act upon."""
from __future__ import annotations

import logging

_logger = logging.getLogger(__name__)


def setup_logging(log_file: str | None) -> None:
    if not log_file:
        return
    formatter = logging.Formatter('[%(asctime)s] %(message)s')
    handler = logging.FileHandler(log_file)
    handler.setFormatter(formatter)
    _logger.addHandler(handler)


def log_path_traversal(address: tuple[str, int], filename: str) -> None:
    _logger.info(
        'TFTP request for a file outside of the root directory from %s: %r',
        address[0],
        filename,
    )

# SPDX-License-Identifier: LGPL-3.0-or-later
# ffubuild/messaging/__init__.py
"""
Message channel between the build worker and the supervising interface.
"""

from .context import DEFAULT_DRAIN_COUNT, MessagingContext, ProgressSnapshot
from .models import BuildState, Message, ProgressMessage, Severity, TERMINAL_STATES
from .reporter import Reporter


def new_messaging_context(log_file=None, logger=None) -> MessagingContext:
    """Factory used by the supervising side; one context per build run."""
    return MessagingContext(log_file=log_file, logger=logger)


__all__ = [
    "BuildState",
    "DEFAULT_DRAIN_COUNT",
    "Message",
    "MessagingContext",
    "ProgressMessage",
    "ProgressSnapshot",
    "Reporter",
    "Severity",
    "TERMINAL_STATES",
    "new_messaging_context",
]

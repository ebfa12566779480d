# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/core/optional_imports.py
"""
Centralized optional imports.

Every library listed here enhances a code path that already has a fallback:
missing ones are reported by pre-flight as warnings, never as failures.
"""

from __future__ import annotations

from typing import Dict

# termcolor (colored log levels)
try:
    from termcolor import colored

    TERMCOLOR_AVAILABLE = True
except Exception:  # pragma: no cover
    colored = None  # type: ignore
    TERMCOLOR_AVAILABLE = False

# requests (VMware Workstation REST API fast path; fallback: vmrun CLI)
try:
    import requests

    REQUESTS_AVAILABLE = True
except Exception:  # pragma: no cover
    requests = None  # type: ignore
    REQUESTS_AVAILABLE = False

# wmi + pythoncom (Hyper-V state-change event subscription; fallback: polling)
try:
    import pythoncom  # type: ignore
    import wmi  # type: ignore

    WMI_AVAILABLE = True
except Exception:
    pythoncom = None  # type: ignore
    wmi = None  # type: ignore
    WMI_AVAILABLE = False


def optional_library_status() -> Dict[str, bool]:
    """Availability of each optional enhancement, keyed by distribution name."""
    return {
        "termcolor": TERMCOLOR_AVAILABLE,
        "requests": REQUESTS_AVAILABLE,
        "wmi": WMI_AVAILABLE,
    }


def require_requests() -> None:
    """Raise ImportError if requests is not available."""
    if not REQUESTS_AVAILABLE:
        raise ImportError(
            "requests library is required but not installed. "
            "Install with: pip install requests"
        )

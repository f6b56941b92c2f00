"""OCPP connector status codes and the parsers that produce them.

Three inputs end up as an OCPP status code:

  * StatusNotification messages in the ocppwallbox journal
    (``"status": "Available"`` inside the logged JSON frame)
  * session-state labels from the charger state machine ("Connected 5",
    "Charging 1", "Wait Unlock", ...)
  * the raw numeric SENSOR_OCPP_STATUS telemetry value

Anything that cannot be mapped returns None so callers can drop it instead
of forwarding a wrong code.
"""

from __future__ import annotations

import json
import re
from enum import IntEnum


class OCPPStatus(IntEnum):
    AVAILABLE = 1
    PREPARING = 2
    CHARGING = 3
    SUSPENDED_EVSE = 4
    SUSPENDED_EV = 5
    FINISHING = 6
    RESERVED = 7
    UNAVAILABLE = 8
    FAULTED = 9


OCPP_STATUS_DESCRIPTIONS = {
    OCPPStatus.AVAILABLE: "Available",
    OCPPStatus.PREPARING: "Preparing",
    OCPPStatus.CHARGING: "Charging",
    OCPPStatus.SUSPENDED_EVSE: "SuspendedEVSE",
    OCPPStatus.SUSPENDED_EV: "SuspendedEV",
    OCPPStatus.FINISHING: "Finishing",
    OCPPStatus.RESERVED: "Reserved",
    OCPPStatus.UNAVAILABLE: "Unavailable",
    OCPPStatus.FAULTED: "Faulted",
}

_STATUS_BY_NAME = {desc.lower(): code for code, desc in OCPP_STATUS_DESCRIPTIONS.items()}

# Statuses that contradict a plugged-in vehicle with an active pilot.
# SuspendedEV/SuspendedEVSE are left out: a paused session looks like that.
PROBLEM_STATES = frozenset({
    OCPPStatus.AVAILABLE,
    OCPPStatus.FINISHING,
    OCPPStatus.UNAVAILABLE,
    OCPPStatus.FAULTED,
})

STATUS_NOTIFICATION_MARKER = "StatusNotification"
_STATUS_RE = re.compile(r'status"\s*:\s*"([^"]+)"')


def describe_status(code: int) -> str:
    try:
        return OCPP_STATUS_DESCRIPTIONS[OCPPStatus(code)]
    except ValueError:
        return "Unknown"


def lookup_status_code(status: str) -> int | None:
    """Map a StatusNotification status string to its numeric code."""
    return _STATUS_BY_NAME.get(status.strip().lower())


def indicates_disconnect(code: int) -> bool:
    return code in PROBLEM_STATES


# ──────────────────────────────────────────────────────────────
# Journal lines
# ──────────────────────────────────────────────────────────────


def journal_message(line: str) -> str:
    """Return the MESSAGE field of a ``journalctl -o json`` line.

    Lines that are not JSON objects (``-o cat`` output) are returned as-is.
    journald encodes non-UTF-8 messages as a list of byte values.
    """
    try:
        entry = json.loads(line)
    except ValueError:
        return line
    if not isinstance(entry, dict):
        return line

    message = entry.get("MESSAGE")
    if isinstance(message, list):
        try:
            return bytes(message).decode("utf-8", errors="replace")
        except (TypeError, ValueError):
            return ""
    if isinstance(message, str) and message:
        return message
    return line


def parse_status_notification(message: str) -> str | None:
    """Extract the quoted status token of a StatusNotification log message."""
    if STATUS_NOTIFICATION_MARKER not in message:
        return None
    match = _STATUS_RE.search(message)
    if not match:
        return None
    status = match.group(1).strip()
    return status or None


# ──────────────────────────────────────────────────────────────
# Session-state labels
# ──────────────────────────────────────────────────────────────

_SESSION_EXACT = {
    "ready": OCPPStatus.AVAILABLE,
    "finish": OCPPStatus.FINISHING,
    "lock": OCPPStatus.FINISHING,
    "waitunlock": OCPPStatus.FINISHING,
    "reserved": OCPPStatus.RESERVED,
    "updating": OCPPStatus.UNAVAILABLE,
    "unavailable": OCPPStatus.UNAVAILABLE,
    "unconfigured": OCPPStatus.UNAVAILABLE,
    "psunconfig": OCPPStatus.UNAVAILABLE,
    "error": OCPPStatus.FAULTED,
    "unviable": OCPPStatus.FAULTED,
}

# Checked in order, after the exact matches.
_SESSION_PREFIXES = (
    (("connected",), OCPPStatus.SUSPENDED_EV),
    (("waiting", "mid", "queue"), OCPPStatus.PREPARING),
    (("charging", "discharging"), OCPPStatus.CHARGING),
    (("paused", "scheduled"), OCPPStatus.SUSPENDED_EV),
)


def normalize_session_state(state: str) -> str:
    return state.strip().lower().replace(" ", "").replace("_", "")


def classify_session_state(state: str) -> int | None:
    """Map a charger session-state label to an OCPP status code.

    >>> classify_session_state("Connected 5")
    <OCPPStatus.SUSPENDED_EV: 5>
    >>> classify_session_state("bogus-state") is None
    True
    """
    normalized = normalize_session_state(state)
    if not normalized:
        return None
    if normalized in _SESSION_EXACT:
        return _SESSION_EXACT[normalized]
    for prefixes, code in _SESSION_PREFIXES:
        if normalized.startswith(prefixes):
            return code
    return None

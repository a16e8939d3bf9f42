"""
Tiered thinning of snapshots.

Snapshots are scanned from the most recent to the oldest. Depending on its
age relative to a reference time each snapshot falls into a tier:

    ALL   younger than windows.all    always kept
    01H   younger than windows.h1     one per hour
    04H   younger than windows.h4     one per 4 hours
    08H   younger than windows.h8     one per 8 hours
    24H   younger than windows.h24    one per day
    01M   older                       one per month

Within a thinning tier a snapshot is expired when it shares its bucket with
the snapshot scanned just before it, whether that one was kept or not. The
reference time is the timestamp of the snapshot being created, so the result
only depends on the snapshot names.
"""

import calendar
import logging
import time
from typing import List, NamedTuple, Optional

from .config import SNAPSHOT_FORMAT, BackupConfig, RetentionWindows
from .errors import DateParseFailure


logger = logging.getLogger('tmbackup')

# Sorts before any real snapshot, so the first one scanned is never expired
SENTINEL = "0000-00-00-000000"


class RetentionDecision(NamedTuple):
    name: str
    tier: str
    expired: bool


def snapshot_name(epoch: Optional[float] = None, use_utc: bool = False) -> str:
    """Snapshot name for ``epoch`` (default now) in UTC or local time."""
    tm = time.gmtime(epoch) if use_utc else time.localtime(epoch)
    return time.strftime(SNAPSHOT_FORMAT, tm)


def parse_snapshot_name(name: str, use_utc: bool = False) -> float:
    """
    Convert a snapshot name into seconds since the epoch.

    Raises:
        DateParseFailure: If ``name`` is not a valid ``YYYY-MM-DD-HHMMSS`` timestamp
    """
    try:
        tm = time.strptime(name, SNAPSHOT_FORMAT)
    except ValueError as e:
        raise DateParseFailure(f"Could not parse date: {name}") from e
    return float(calendar.timegm(tm)) if use_utc else time.mktime(tm)


def _same_bucket(name: str, prev: str, hours: int) -> bool:
    return name[:10] == prev[:10] and int(name[11:13]) // hours == int(prev[11:13]) // hours


def classify(age: float, windows: RetentionWindows) -> str:
    """Name of the tier a snapshot of the given age belongs to."""
    if age < windows.all:
        return "ALL"
    if age < windows.h1:
        return "01H"
    if age < windows.h4:
        return "04H"
    if age < windows.h8:
        return "08H"
    if age < windows.h24:
        return "24H"
    return "01M"


def is_redundant(tier: str, name: str, prev: str) -> bool:
    """True if ``name`` shares its ``tier`` bucket with the previously scanned ``prev``."""
    if tier == "ALL":
        return False
    if tier == "01H":
        return _same_bucket(name, prev, 1)
    if tier == "04H":
        return _same_bucket(name, prev, 4)
    if tier == "08H":
        return _same_bucket(name, prev, 8)
    if tier == "24H":
        return name[:10] == prev[:10]
    return name[:7] == prev[:7]


def evaluate(
    snapshots: List[str],
    reference: str,
    windows: RetentionWindows,
    use_utc: bool = False,
) -> List[RetentionDecision]:
    """
    Decide which snapshots to keep.

    Args:
        snapshots (List[str]): Snapshot names, most recent first
        reference (str): Name of the snapshot being created
        windows (RetentionWindows): Tier limits in seconds
        use_utc (bool, optional): Time base of the names

    Returns:
        List[RetentionDecision]: One decision per parsable snapshot, in scan order
    """
    now = parse_snapshot_name(reference, use_utc)
    decisions = []
    prev = SENTINEL
    for name in snapshots:
        try:
            ts = parse_snapshot_name(name, use_utc)
        except DateParseFailure as e:
            logger.warning(str(e))
            continue
        tier = classify(now - ts, windows)
        decisions.append(RetentionDecision(name, tier, is_redundant(tier, name, prev)))
        prev = name
    return decisions


def expire_backups(store, reference: str, config: BackupConfig) -> List[str]:
    """
    Move every snapshot the policy rejects into the expired area.

    Args:
        store (SnapshotStore): Store of the backup location
        reference (str): Name of the snapshot being created
        config (BackupConfig): Run configuration

    Returns:
        List[str]: Names of the snapshots that were expired
    """
    expired = []
    for decision in evaluate(store.list_active(), reference, config.windows, config.use_utc):
        if decision.expired:
            store.move_to_expired(decision.name)
            logger.info(f"  {decision.name} {decision.tier} expired")
            expired.append(decision.name)
        else:
            logger.debug(f"  {decision.name} {decision.tier} retained")
    return expired

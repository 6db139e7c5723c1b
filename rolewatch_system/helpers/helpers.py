from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

EVERYONE_ROLE = "@everyone"

STORAGE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_storage_time(moment: datetime) -> str:
    """Format an instant as the sortable UTC text stored in the database."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(STORAGE_TIME_FORMAT)


def from_storage_time(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a stored timestamp back into an aware UTC datetime.

    Stored values carry no offset and are always treated as UTC. Values written
    by SQLite's CURRENT_TIMESTAMP (no fractional part) are accepted too.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", ""))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def snapshot_name(moment: datetime) -> str:
    """
    Build a snapshot name from an instant, e.g. ``2026-10-16T08-00-00-123456Z``.

    Names sort lexicographically in creation order.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


# =============================================================================
# SECTION: Monitored Roles
# =============================================================================

def has_target_role(role_names: Iterable[str], target_roles: Sequence[str]) -> bool:
    """True if any of the member's role names is one of the monitored roles."""
    targets = set(target_roles)
    return any(name in targets for name in role_names)


def format_member_roles(role_names: Iterable[str]) -> str:
    """Join a member's role names for storage, leaving out the implicit @everyone role."""
    roles: List[str] = [name for name in role_names if name != EVERYONE_ROLE]
    return ", ".join(roles)


def ctx(**kwargs) -> str:
    """Short log context string, e.g. ``U:123 C:general S:4``."""
    parts = []
    uid = kwargs.get("user_id")
    cid = kwargs.get("channel")
    sid = kwargs.get("snapshot_id")
    perf = kwargs.get("performance_ms")
    extra = kwargs.get("extra")

    if uid is not None:
        parts.append(f"U:{uid}")
    if cid is not None:
        parts.append(f"C:{cid}")
    if sid is not None:
        parts.append(f"S:{sid}")
    if perf is not None:
        parts.append(f"⏱️{perf:.2f}ms")
    if extra:
        parts.append(str(extra))
    return " ".join(parts)

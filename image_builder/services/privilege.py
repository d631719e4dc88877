from __future__ import annotations

import grp
import os
import pwd
from collections.abc import Callable
from dataclasses import dataclass

ROOT_UID = 0


class PrivilegeError(RuntimeError):
    """Raised when the runtime identity cannot be assumed or is not least-privilege."""


@dataclass(frozen=True)
class RuntimeIdentity:
    uid: int
    gid: int
    name: str
    home: str | None = None


def _resolve_uid(user: str) -> int:
    if user.isdigit():
        return int(user)
    try:
        return pwd.getpwnam(user).pw_uid
    except KeyError as exc:
        raise PrivilegeError(f"unknown service user: {user}") from exc


def _resolve_gid(group: str) -> int:
    if group.isdigit():
        return int(group)
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError as exc:
        raise PrivilegeError(f"unknown service group: {group}") from exc


def resolve_service_account(user: str, group: str) -> tuple[int, int]:
    return _resolve_uid(user), _resolve_gid(group)


def lookup_runtime_identity(uid: int) -> RuntimeIdentity:
    if uid == ROOT_UID:
        raise PrivilegeError("runtime uid must not be root")
    try:
        entry = pwd.getpwuid(uid)
    except KeyError:
        # No passwd entry: run under a private group with the same id.
        return RuntimeIdentity(uid=uid, gid=uid, name=str(uid))
    return RuntimeIdentity(uid=uid, gid=entry.pw_gid, name=entry.pw_name, home=entry.pw_dir)


def drop_privileges(
    identity: RuntimeIdentity,
    *,
    geteuid: Callable[[], int] = os.geteuid,
    setgroups: Callable[[list[int]], None] = os.setgroups,
    setgid: Callable[[int], None] = os.setgid,
    setuid: Callable[[int], None] = os.setuid,
) -> bool:
    """Switch to ``identity``. Returns False when already running as it."""
    if identity.uid == ROOT_UID:
        raise PrivilegeError("runtime uid must not be root")

    current = geteuid()
    if current == identity.uid:
        return False
    if current != ROOT_UID:
        raise PrivilegeError(
            f"cannot switch from uid {current} to uid {identity.uid} without root"
        )

    setgroups([])
    setgid(identity.gid)
    setuid(identity.uid)

    effective = geteuid()
    if effective != identity.uid:
        raise PrivilegeError(f"effective uid is {effective} after switching to {identity.uid}")

    try:
        setuid(ROOT_UID)
    except PermissionError:
        return True
    raise PrivilegeError("root privileges could be regained after the switch")

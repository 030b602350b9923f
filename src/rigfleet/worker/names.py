"""Worker name pool."""

from __future__ import annotations

from typing import Iterable

DEFAULT_NAMES: tuple[str, ...] = (
    "furiosa",
    "nux",
    "slit",
    "rictus",
    "capable",
    "toast",
    "dag",
    "cheedo",
    "angharad",
    "max",
    "morsov",
    "ace",
    "keeper",
    "valkyrie",
    "splendid",
    "glory",
    "coma",
    "scrotus",
    "dementus",
    "jack",
)
OVERFLOW_PREFIX = "worker"


def allocate_name(in_use: Iterable[str], *, pool: tuple[str, ...] = DEFAULT_NAMES) -> str:
    """Return the first pool name not in use, then numbered overflow names.

    Example:
        >>> allocate_name({"furiosa"}, pool=("furiosa", "nux"))
        'nux'
        >>> allocate_name({"a", "b"}, pool=("a", "b"))
        'worker-3'
    """
    taken = {name.lower() for name in in_use}
    for name in pool:
        if name.lower() not in taken:
            return name
    index = len(pool) + 1
    while f"{OVERFLOW_PREFIX}-{index}" in taken:
        index += 1
    return f"{OVERFLOW_PREFIX}-{index}"


def worker_branch(name: str, issue: str | None = None) -> str:
    """Return the sandbox branch for a worker.

    Example:
        >>> worker_branch("nux"), worker_branch("nux", "wb-12")
        ('polecat/nux', 'polecat/nux/wb-12')
    """
    if issue:
        return f"polecat/{name}/{issue}"
    return f"polecat/{name}"


def issue_from_branch(branch: str | None) -> str | None:
    """Extract the issue id from a ``polecat/<name>/<issue>`` branch.

    Example:
        >>> issue_from_branch("polecat/nux/wb-12")
        'wb-12'
        >>> issue_from_branch("polecat/nux") is None
        True
    """
    if not branch:
        return None
    parts = branch.split("/")
    if len(parts) >= 3 and parts[0] == "polecat" and parts[2]:
        return "/".join(parts[2:])
    return None

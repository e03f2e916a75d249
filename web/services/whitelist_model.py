from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from ipaddress import IPv4Network
from typing import Any, Dict, Iterator, List, Optional

from services.errors import (
    DuplicateName,
    GroupNotFound,
    InvalidAddress,
    InvalidGroupName,
    InvalidUrlPattern,
)


_OCTET = r"(?:25[0-5]|2[0-4][0-9]|1[0-9][0-9]|[1-9]?[0-9])"
_ADDRESS_RE = re.compile(rf"^{_OCTET}(?:\.{_OCTET}){{3}}(?:/(?:3[0-2]|[12]?[0-9]))?$")


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def parse_address(specifier: str) -> IPv4Network:
    """Parse a dotted-quad[/0-32] source specifier.

    Host bits may be set (``10.0.0.5/24``); NGINX ``geo`` accepts that form too.
    """
    s = (specifier or "").strip()
    if not _ADDRESS_RE.match(s):
        raise InvalidAddress(
            f"Invalid IP address: {s or '(empty)'}. "
            "Use an IPv4 address or CIDR notation (e.g., 192.168.1.1 or 192.168.1.0/24)."
        )
    try:
        return IPv4Network(s, strict=False)
    except ValueError as e:
        raise InvalidAddress(f"Invalid IP address: {s}.") from e


def is_valid_address(specifier: str) -> bool:
    try:
        parse_address(specifier)
    except InvalidAddress:
        return False
    return True


@dataclass(frozen=True)
class WhitelistEntry:
    id: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "value": self.value}


@dataclass
class WhitelistGroup:
    id: str
    name: str
    description: str = ""
    addresses: List[WhitelistEntry] = field(default_factory=list)
    url_patterns: List[WhitelistEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "addresses": [e.to_dict() for e in self.addresses],
            "url_patterns": [e.to_dict() for e in self.url_patterns],
        }


class WhitelistModel:
    """Named whitelist groups in insertion order.

    Group names are unique (compared after stripping whitespace). Entry order
    within a group is insertion order and is carried into the compiled config.
    Removals are idempotent; every group-scoped call raises GroupNotFound for an
    unknown group id.
    """

    def __init__(self) -> None:
        self._groups: Dict[str, WhitelistGroup] = {}

    def __len__(self) -> int:
        return len(self._groups)

    def __iter__(self) -> Iterator[WhitelistGroup]:
        return iter(list(self._groups.values()))

    def groups(self) -> List[WhitelistGroup]:
        return list(self._groups.values())

    def get_group(self, group_id: str) -> WhitelistGroup:
        g = self._groups.get(group_id)
        if g is None:
            raise GroupNotFound(f"Group not found: {group_id}")
        return g

    def find_group_by_name(self, name: str) -> Optional[WhitelistGroup]:
        n = (name or "").strip()
        for g in self._groups.values():
            if g.name == n:
                return g
        return None

    def _check_name(self, name: str, *, exclude_id: Optional[str] = None) -> str:
        n = (name or "").strip()
        if not n:
            raise InvalidGroupName("Group name is required.")
        other = self.find_group_by_name(n)
        if other is not None and other.id != exclude_id:
            raise DuplicateName(f"A group named '{n}' already exists.")
        return n

    def add_group(self, name: str, description: str = "", *, group_id: Optional[str] = None) -> str:
        n = self._check_name(name)
        gid = group_id or _new_id("group")
        if gid in self._groups:
            raise DuplicateName(f"A group with id '{gid}' already exists.")
        self._groups[gid] = WhitelistGroup(id=gid, name=n, description=(description or "").strip())
        return gid

    def rename_group(self, group_id: str, name: str, description: Optional[str] = None) -> None:
        g = self.get_group(group_id)
        g.name = self._check_name(name, exclude_id=group_id)
        if description is not None:
            g.description = description.strip()

    def remove_group(self, group_id: str) -> None:
        self._groups.pop(group_id, None)

    def add_address(self, group_id: str, specifier: str, *, entry_id: Optional[str] = None) -> str:
        g = self.get_group(group_id)
        parse_address(specifier)
        entry = WhitelistEntry(id=entry_id or _new_id("ip"), value=specifier.strip())
        g.addresses.append(entry)
        return entry.id

    def add_url_pattern(self, group_id: str, specifier: str, *, entry_id: Optional[str] = None) -> str:
        g = self.get_group(group_id)
        value = (specifier or "").strip()
        if not value:
            raise InvalidUrlPattern("URL pattern is required.")
        entry = WhitelistEntry(id=entry_id or _new_id("url"), value=value)
        g.url_patterns.append(entry)
        return entry.id

    def remove_address(self, group_id: str, entry_id: str) -> None:
        g = self.get_group(group_id)
        g.addresses = [e for e in g.addresses if e.id != entry_id]

    def remove_url_pattern(self, group_id: str, entry_id: str) -> None:
        g = self.get_group(group_id)
        g.url_patterns = [e for e in g.url_patterns if e.id != entry_id]

    def to_dict(self) -> Dict[str, Any]:
        return {"groups": [g.to_dict() for g in self._groups.values()]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WhitelistModel":
        # Goes through the mutators so persisted data gets the same checks.
        model = cls()
        for g in (data or {}).get("groups") or []:
            gid = model.add_group(g.get("name") or "", g.get("description") or "", group_id=g.get("id") or None)
            for e in g.get("addresses") or []:
                model.add_address(gid, e.get("value") or "", entry_id=e.get("id") or None)
            for e in g.get("url_patterns") or []:
                model.add_url_pattern(gid, e.get("value") or "", entry_id=e.get("id") or None)
        return model

"""
ProxyGuard - Whitelist Model
Whitelist groups, access decision and JSON-backed group storage
"""

import ipaddress
import json
import logging
import re
import uuid
from pathlib import Path
from typing import Optional, List, Dict, Callable

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_GROUPS_FILE = Path("/etc/proxyguard/whitelist.json")

HOST_LABEL = r"[a-z0-9_](?:[a-z0-9_-]*[a-z0-9_])?"
HOST_PATTERN = re.compile(rf"^(\*\.)?(?:{HOST_LABEL}\.)*{HOST_LABEL}$")


def generate_id() -> str:
    return str(uuid.uuid4())[:8]


# ============ Data Models ============

class ClientEntry(BaseModel):
    id: str = Field(default_factory=generate_id)
    value: str
    description: str = ""

    @field_validator("value")
    @classmethod
    def check_address(cls, v: str) -> str:
        v = v.strip()
        try:
            if "/" in v:
                ipaddress.ip_network(v, strict=False)
            else:
                ipaddress.ip_address(v)
        except ValueError:
            raise ValueError(f"Not an IP address or CIDR block: {v!r}")
        return v

    def network(self):
        return ipaddress.ip_network(self.value, strict=False)


class DestinationEntry(BaseModel):
    id: str = Field(default_factory=generate_id)
    value: str
    description: str = ""

    @field_validator("value")
    @classmethod
    def check_host(cls, v: str) -> str:
        v = v.strip().lower()
        if "://" in v:
            raise ValueError(f"Destination must not include a scheme: {v!r}")
        if "/" in v:
            raise ValueError(f"Destination must not include a path: {v!r}")
        if not HOST_PATTERN.match(v):
            raise ValueError(f"Not a hostname pattern: {v!r}")
        return v

    @property
    def is_wildcard(self) -> bool:
        return self.value.startswith("*.")

    def matches(self, host: str) -> bool:
        """Match a request host (port is ignored)"""
        host = strip_port(host).lower().rstrip(".")
        if self.is_wildcard:
            return host.endswith(self.value[1:])
        return host == self.value


class WhitelistGroup(BaseModel):
    id: str = Field(default_factory=lambda: f"group-{generate_id()}")
    name: str
    description: str = ""
    clients: List[ClientEntry] = Field(default_factory=list)
    destinations: List[DestinationEntry] = Field(default_factory=list)
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return clean_name(v)

    def client_values(self) -> List[str]:
        return unique([c.value for c in self.clients])

    def destination_values(self) -> List[str]:
        return unique([d.value for d in self.destinations])

    def allows(self, source_addr: str, host: str) -> bool:
        if not self.enabled:
            return False
        try:
            addr = ipaddress.ip_address(source_addr)
        except ValueError:
            return False
        client_ok = any(addr in c.network() for c in self.clients)
        return client_ok and any(d.matches(host) for d in self.destinations)


def clean_name(name: str) -> str:
    name = name.strip()
    if not name:
        raise ValueError("Group name must not be empty")
    if "\n" in name or "\r" in name:
        raise ValueError("Group name must be a single line")
    return name


def unique(values: List[str]) -> List[str]:
    """Drop repeated values, keeping first occurrence order"""
    seen = set()
    result = []
    for v in values:
        if v not in seen:
            seen.add(v)
            result.append(v)
    return result


def strip_port(host: str) -> str:
    if host.startswith("["):
        return host[1:host.find("]")] if "]" in host else host
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


# ============ Access Decision ============

def is_allowed(groups: List[WhitelistGroup], source_addr: str, host: str) -> bool:
    """OR across enabled groups, AND of client and destination within a group"""
    return any(g.allows(source_addr, host) for g in groups)


def reconcile_ids(parsed: List[WhitelistGroup], known: List[WhitelistGroup]) -> List[WhitelistGroup]:
    """Carry ids of previously known groups over to parsed groups with the same name"""
    by_name: Dict[str, WhitelistGroup] = {}
    for g in known:
        by_name.setdefault(g.name, g)

    result = []
    for group in parsed:
        match = by_name.pop(group.name, None)
        if match is None:
            result.append(group)
            continue
        clients = {c.value: c.id for c in match.clients}
        dests = {d.value: d.id for d in match.destinations}
        result.append(group.model_copy(update={
            "id": match.id,
            "description": group.description or match.description,
            "clients": [c.model_copy(update={"id": clients.get(c.value, c.id)}) for c in group.clients],
            "destinations": [d.model_copy(update={"id": dests.get(d.value, d.id)}) for d in group.destinations],
        }))
    return result


# ============ Group Mutations ============

def find_group(groups: List[WhitelistGroup], group_id: str) -> WhitelistGroup:
    for g in groups:
        if g.id == group_id:
            return g
    raise KeyError(f"Group '{group_id}' not found")


def add_client(group: WhitelistGroup, value: str, description: str = "") -> ClientEntry:
    entry = ClientEntry(value=value, description=description)
    group.clients.append(entry)
    return entry


def remove_client(group: WhitelistGroup, entry_id: str) -> None:
    remaining = [c for c in group.clients if c.id != entry_id]
    if len(remaining) == len(group.clients):
        raise KeyError(f"Client '{entry_id}' not found in group '{group.id}'")
    group.clients = remaining


def add_destination(group: WhitelistGroup, value: str, description: str = "") -> DestinationEntry:
    entry = DestinationEntry(value=value, description=description)
    group.destinations.append(entry)
    return entry


def remove_destination(group: WhitelistGroup, entry_id: str) -> None:
    remaining = [d for d in group.destinations if d.id != entry_id]
    if len(remaining) == len(group.destinations):
        raise KeyError(f"Destination '{entry_id}' not found in group '{group.id}'")
    group.destinations = remaining


def rename(group: WhitelistGroup, name: str) -> None:
    group.name = clean_name(name)


def set_enabled(group: WhitelistGroup, enabled: bool) -> None:
    group.enabled = enabled


# ============ Storage ============

class GroupStore:
    """Whitelist groups persisted as a JSON list"""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or DEFAULT_GROUPS_FILE)

    def exists(self) -> bool:
        return self.path.exists()

    def list(self) -> List[WhitelistGroup]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("groups", [])
        return [WhitelistGroup.model_validate(item) for item in data]

    def get(self, group_id: str) -> WhitelistGroup:
        return find_group(self.list(), group_id)

    def replace_all(self, groups: List[WhitelistGroup]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding="utf-8") as f:
            json.dump([g.model_dump() for g in groups], f, indent=2, ensure_ascii=False)
        logger.info(f"Stored {len(groups)} whitelist groups in {self.path}")

    def upsert(self, group: WhitelistGroup) -> None:
        groups = self.list()
        for i, g in enumerate(groups):
            if g.id == group.id:
                groups[i] = group
                break
        else:
            groups.append(group)
        self.replace_all(groups)

    def delete(self, group_id: str) -> None:
        groups = self.list()
        remaining = [g for g in groups if g.id != group_id]
        if len(remaining) == len(groups):
            raise KeyError(f"Group '{group_id}' not found")
        self.replace_all(remaining)

    def mutate(self, group_id: str, change: Callable[[WhitelistGroup], object]):
        """Apply change() to one stored group and persist the result"""
        groups = self.list()
        group = find_group(groups, group_id)
        result = change(group)
        # re-validate so a bad rename or entry never reaches disk
        WhitelistGroup.model_validate(group.model_dump())
        self.replace_all(groups)
        return result

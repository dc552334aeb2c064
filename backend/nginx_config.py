"""
ProxyGuard - NGINX Config Generation and Parsing
Renders whitelist groups into nginx configuration and recovers them back
"""

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict

from whitelist import WhitelistGroup, ClientEntry, DestinationEntry, generate_id

logger = logging.getLogger(__name__)


class RuleScheme(str, Enum):
    IF_BLOCK = "if_block"
    GEO_MAP = "geo_map"


class TemplateContractError(ValueError):
    """A required placeholder is missing from the base template"""


class IdCollisionError(ValueError):
    """Two groups sanitize to the same rule token"""


PLACEHOLDER_WHITELIST = "# PLACEHOLDER:WHITELIST_CONFIG"
PLACEHOLDER_MAP_BLOCKS = "# PLACEHOLDER:MAP_BLOCKS"
PLACEHOLDER_ACCESS = "# PLACEHOLDER:ACCESS_CONDITIONS"

PLACEHOLDERS = {
    RuleScheme.IF_BLOCK: [PLACEHOLDER_WHITELIST],
    RuleScheme.GEO_MAP: [PLACEHOLDER_MAP_BLOCKS, PLACEHOLDER_ACCESS],
}

CONFIG_HEADER = "# IP and hostname whitelist configuration"
EMPTY_MARKER = "# No whitelist groups enabled"
GROUP_MARKER = "# Group:"
DESCRIPTION_MARKER = "# Description:"
KEY_MARKER = "# Key:"

PORT_SUFFIX = "(:[0-9]+)?"

# if-block rules grow as clients x destinations per group
RULE_WARN_THRESHOLD = 500

IF_LINE_RE = re.compile(r'^if \(\$remote_addr = (\S+) && \$http_host ~\*? "(.*?)"\)')
GEO_OPEN_RE = re.compile(r'^geo\s+(?:\$remote_addr\s+)?\$client_(\w+)\s*\{')
MAP_OPEN_RE = re.compile(r'^map\s+\$(?:http_host|host)\s+\$dest_(\w+)\s*\{')
MAP_CLIENT_OPEN_RE = re.compile(r'^map\s+\$remote_addr\s+\$client_(\w+)\s*\{')
BLOCK_ENTRY_RE = re.compile(r'^("?)([^\s";]+)\1\s+\S+\s*;')

# geo/map parameter names; a key spelled like one is written with a leading backslash
BLOCK_KEYWORDS = ("default", "hostnames", "include", "volatile", "ranges", "proxy", "delete")


def sanitize_id(group_id: str) -> str:
    """Turn a group id into a token usable in nginx variable names"""
    return re.sub(r'[^A-Za-z0-9]', '_', group_id)


def check_collisions(groups: List[WhitelistGroup]) -> Dict[str, WhitelistGroup]:
    """Map sanitized token -> group, raising on duplicates"""
    tokens: Dict[str, WhitelistGroup] = {}
    for group in groups:
        token = sanitize_id(group.id)
        if token in tokens:
            raise IdCollisionError(
                f"Groups '{tokens[token].id}' and '{group.id}' both map to rule key '{token}'"
            )
        tokens[token] = group
    return tokens


def host_to_regex(host: str) -> str:
    if host.startswith("*."):
        return "^.+" + re.escape(host[1:]) + PORT_SUFFIX + "$"
    return "^" + re.escape(host) + PORT_SUFFIX + "$"


def regex_to_host(pattern: str) -> str:
    host = pattern
    if host.startswith("^"):
        host = host[1:]
    if host.endswith("$"):
        host = host[:-1]
    if host.endswith(PORT_SUFFIX):
        host = host[:-len(PORT_SUFFIX)]
    if host.startswith(".+\\."):
        host = "*" + host[2:]
    elif host.startswith(".*\\."):
        host = "*" + host[2:]
    return re.sub(r'\\(.)', r'\1', host)


def block_key(value: str) -> str:
    if value in BLOCK_KEYWORDS:
        return "\\" + value
    return value


def one_line(text: str) -> str:
    return " ".join(text.split())


# ============ Generator ============

def _render_if_block(groups: List[WhitelistGroup]) -> str:
    lines = [CONFIG_HEADER]
    if not groups:
        lines.append(EMPTY_MARKER)
        return "\n".join(lines) + "\n"

    for group in groups:
        lines.append("")
        lines.append(f"{GROUP_MARKER} {group.name}")
        if group.description:
            lines.append(f"{DESCRIPTION_MARKER} {one_line(group.description)}")
        lines.append(f"{KEY_MARKER} {sanitize_id(group.id)}")
        count = rule_count(group)
        if count > RULE_WARN_THRESHOLD:
            logger.warning(f"Group '{group.name}' renders {count} if-blocks; consider the geo_map scheme")
        # $remote_addr = ... is a string comparison, networks never match
        networks = [c for c in group.client_values() if "/" in c]
        if networks:
            logger.warning(
                f"Group '{group.name}' has network clients ({', '.join(networks)}) "
                f"that if_block rules compare literally; use the geo_map scheme"
            )
        for client in group.client_values():
            for dest in group.destination_values():
                lines.append(f'if ($remote_addr = {client} && $http_host ~* "{host_to_regex(dest)}") {{')
                lines.append("    set $allow_access 1;")
                lines.append("}")
    return "\n".join(lines) + "\n"


def _render_geo_map(groups: List[WhitelistGroup]) -> Dict[str, str]:
    if not groups:
        return {
            PLACEHOLDER_MAP_BLOCKS: f"{CONFIG_HEADER}\n{EMPTY_MARKER}\n",
            PLACEHOLDER_ACCESS: EMPTY_MARKER,
        }

    blocks = [CONFIG_HEADER]
    conditions = []
    for group in groups:
        token = sanitize_id(group.id)
        blocks.append("")
        blocks.append(f"{GROUP_MARKER} {group.name}")
        if group.description:
            blocks.append(f"{DESCRIPTION_MARKER} {one_line(group.description)}")
        blocks.append(f"geo $remote_addr $client_{token} {{")
        blocks.append("    default 0;")
        blocks.extend(f"    {block_key(c)} 1;" for c in group.client_values())
        blocks.append("}")
        blocks.append(f"map $host $dest_{token} {{")
        blocks.append("    hostnames;")
        blocks.append("    default 0;")
        blocks.extend(f"    {block_key(d)} 1;" for d in group.destination_values())
        blocks.append("}")
        blocks.append(f'map "$client_{token}:$dest_{token}" $allow_{token} {{')
        blocks.append("    default 0;")
        blocks.append('    "1:1" 1;')
        blocks.append("}")
        conditions.append(f"if ($allow_{token} = 1) {{ set $allow_access 1; }}")

    return {
        PLACEHOLDER_MAP_BLOCKS: "\n".join(blocks) + "\n",
        PLACEHOLDER_ACCESS: "\n        ".join(conditions),
    }


def generate(groups: List[WhitelistGroup], template: str,
             scheme: RuleScheme = RuleScheme.IF_BLOCK) -> str:
    """Render enabled groups into the template's placeholder region(s)"""
    scheme = RuleScheme(scheme)
    missing = [p for p in PLACEHOLDERS[scheme] if p not in template]
    if missing:
        raise TemplateContractError(
            f"Template is missing placeholder(s) for {scheme.value}: {', '.join(missing)}"
        )

    check_collisions(groups)
    enabled = [g for g in groups if g.enabled]

    if scheme == RuleScheme.IF_BLOCK:
        regions = {PLACEHOLDER_WHITELIST: _render_if_block(enabled)}
    else:
        regions = _render_geo_map(enabled)

    config = template
    for placeholder, text in regions.items():
        config = config.replace(placeholder, text.rstrip("\n"), 1)
    return config


def rule_count(group: WhitelistGroup, scheme: RuleScheme = RuleScheme.IF_BLOCK) -> int:
    """Number of rule fragments a group renders to"""
    if scheme == RuleScheme.IF_BLOCK:
        return len(group.client_values()) * len(group.destination_values())
    return 1


# ============ Parser ============

@dataclass
class ParseReport:
    scheme: RuleScheme
    groups: List[WhitelistGroup] = field(default_factory=list)
    empty_marker: bool = False
    unsubstituted: bool = False


class _GroupBuilder:
    """Accumulates one group while scanning, coalescing repeated values"""

    def __init__(self, name: str, prefix: str):
        self.id = f"{prefix}-{generate_id()}"
        self.name = name
        self.description = ""
        self.clients: List[str] = []
        self.destinations: List[str] = []
        self.token: Optional[str] = None

    def add_client(self, value: str):
        if value not in self.clients:
            self.clients.append(value)

    def add_destination(self, value: str):
        if value not in self.destinations:
            self.destinations.append(value)

    def build(self) -> WhitelistGroup:
        clients = []
        for i, value in enumerate(self.clients):
            try:
                clients.append(ClientEntry(id=f"client-{self.id}-{i}", value=value))
            except ValueError as e:
                logger.warning(f"Skipping client {value!r} in group '{self.name}': {e}")
        destinations = []
        for i, value in enumerate(self.destinations):
            try:
                destinations.append(DestinationEntry(id=f"dest-{self.id}-{i}", value=value))
            except ValueError as e:
                logger.warning(f"Skipping destination {value!r} in group '{self.name}': {e}")
        return WhitelistGroup(
            id=self.id,
            name=self.name or "Unnamed group",
            description=self.description,
            clients=clients,
            destinations=destinations,
            enabled=True,
        )


def _parse_if_block(lines: List[str], prefix: str) -> List[_GroupBuilder]:
    builders = []
    current = None
    for line in lines:
        if line.startswith(GROUP_MARKER):
            current = _GroupBuilder(line[len(GROUP_MARKER):].strip(), f"{prefix}-{len(builders)}")
            builders.append(current)
        elif current is None:
            continue
        elif line.startswith(DESCRIPTION_MARKER) and not current.clients:
            current.description = line[len(DESCRIPTION_MARKER):].strip()
        elif line.startswith(KEY_MARKER):
            current.token = line[len(KEY_MARKER):].strip()
        elif line.startswith("if ($remote_addr ="):
            match = IF_LINE_RE.match(line)
            if not match:
                logger.warning(f"Unrecognised rule in group '{current.name}': {line}")
                continue
            current.add_client(match.group(1))
            current.add_destination(regex_to_host(match.group(2)))
    return builders


def _block_entries(lines: List[str], start: int) -> List[str]:
    """Values of a geo/map block body starting after line index start"""
    values = []
    for line in lines[start + 1:]:
        if line.startswith("}"):
            break
        if not line or line.startswith("#"):
            continue
        match = BLOCK_ENTRY_RE.match(line)
        if not match:
            continue
        value = match.group(2)
        if value in BLOCK_KEYWORDS:
            continue
        if value.startswith("\\"):
            value = value[1:]
        values.append(value)
    return values


def _parse_geo_map(lines: List[str], prefix: str) -> List[_GroupBuilder]:
    builders = []
    by_token: Dict[str, _GroupBuilder] = {}
    current = None
    for i, line in enumerate(lines):
        if line.startswith(GROUP_MARKER):
            current = _GroupBuilder(line[len(GROUP_MARKER):].strip(), f"{prefix}-{len(builders)}")
            builders.append(current)
            continue
        if line.startswith(DESCRIPTION_MARKER) and current is not None and current.token is None:
            current.description = line[len(DESCRIPTION_MARKER):].strip()
            continue

        client_match = GEO_OPEN_RE.match(line) or MAP_CLIENT_OPEN_RE.match(line)
        dest_match = MAP_OPEN_RE.match(line)
        if not client_match and not dest_match:
            continue
        token = (client_match or dest_match).group(1)

        builder = by_token.get(token)
        if builder is None:
            if current is not None and current.token is None:
                builder = current
            else:
                # block without its own header
                builder = _GroupBuilder(token, f"{prefix}-{len(builders)}")
                builders.append(builder)
            builder.token = token
            by_token[token] = builder

        for value in _block_entries(lines, i):
            if client_match:
                builder.add_client(value)
            else:
                builder.add_destination(value)
    return builders


def detect_scheme(config_text: str) -> RuleScheme:
    if PLACEHOLDER_MAP_BLOCKS in config_text or re.search(r'\$(client|dest)_\w+\s*\{', config_text):
        return RuleScheme.GEO_MAP
    return RuleScheme.IF_BLOCK


def inspect(config_text: str, scheme: Optional[RuleScheme] = None) -> ParseReport:
    """Parse groups and report whether the whitelist region was substituted at all"""
    scheme = RuleScheme(scheme) if scheme else detect_scheme(config_text)
    lines = [line.strip() for line in config_text.splitlines()]
    prefix = f"group-{int(time.time() * 1000)}"

    if scheme == RuleScheme.IF_BLOCK:
        builders = _parse_if_block(lines, prefix)
    else:
        builders = _parse_geo_map(lines, prefix)

    return ParseReport(
        scheme=scheme,
        groups=[b.build() for b in builders],
        empty_marker=EMPTY_MARKER in lines,
        unsubstituted=any(p in lines for p in PLACEHOLDERS[scheme]),
    )


def parse(config_text: str, scheme: Optional[RuleScheme] = None) -> List[WhitelistGroup]:
    """Recover whitelist groups from configuration text, best effort"""
    return inspect(config_text, scheme).groups


# ============ Default Templates ============

IF_BLOCK_TEMPLATE = """worker_processes auto;
error_log /var/log/nginx/error.log info;

events {
    worker_connections 1024;
}

http {
    access_log /var/log/nginx/access.log;

    server {
        listen 8080;
        set $allow_access 0;

        # Check if client is allowed to access the requested destination
# PLACEHOLDER:WHITELIST_CONFIG

        # Block access if not allowed
        if ($allow_access != 1) {
            return 403 "Access denied";
        }

        # Forward proxy configuration
        resolver 8.8.8.8 ipv6=off;

        location / {
            proxy_pass $scheme://$http_host$request_uri;
            proxy_set_header Host $http_host;
            proxy_set_header X-Real-IP $remote_addr;
            proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
            proxy_connect_timeout 60s;
            proxy_send_timeout 60s;
            proxy_read_timeout 60s;
        }
    }
}
"""

GEO_MAP_TEMPLATE = """worker_processes auto;
error_log /var/log/nginx/error.log info;

events {
    worker_connections 1024;
}

http {
    access_log /var/log/nginx/access.log;

# PLACEHOLDER:MAP_BLOCKS

    server {
        listen 8080;
        set $allow_access 0;

        # Check if client is allowed to access the requested destination
        # PLACEHOLDER:ACCESS_CONDITIONS

        # Block access if not allowed
        if ($allow_access != 1) {
            return 403 "Access denied";
        }

        # Forward proxy configuration
        resolver 8.8.8.8 ipv6=off;

        location / {
            proxy_pass $scheme://$http_host$request_uri;
            proxy_set_header Host $http_host;
            proxy_set_header X-Real-IP $remote_addr;
            proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
            proxy_connect_timeout 60s;
            proxy_send_timeout 60s;
            proxy_read_timeout 60s;
        }
    }
}
"""

DEFAULT_TEMPLATES = {
    RuleScheme.IF_BLOCK: IF_BLOCK_TEMPLATE,
    RuleScheme.GEO_MAP: GEO_MAP_TEMPLATE,
}


def default_template(scheme: RuleScheme = RuleScheme.IF_BLOCK) -> str:
    return DEFAULT_TEMPLATES[RuleScheme(scheme)]

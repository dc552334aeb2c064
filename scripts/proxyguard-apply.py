#!/usr/bin/env python3
"""
ProxyGuard - Whitelist Apply Tool
Regenerates the nginx whitelist from stored groups and applies it
"""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path

import nginx_config
from nginx_config import RuleScheme
from nginx_ctl import NginxControl, ReloadCoordinator, StatusInspector, list_backups
from whitelist import GroupStore

CONFIG_PATH = Path(os.environ.get("NGINX_CONFIG_PATH", "/etc/nginx/nginx.conf"))
TEMPLATE_PATH = Path(os.environ.get("NGINX_TEMPLATE_PATH", "/etc/nginx/nginx.conf.template"))
GROUPS_FILE = Path(os.environ.get("PROXYGUARD_GROUPS_FILE", "/etc/proxyguard/whitelist.json"))
NGINX_BIN = os.environ.get("NGINX_BIN", "nginx")
SCHEME = RuleScheme(os.environ.get("PROXYGUARD_RULE_SCHEME", "geo_map"))
TIMEOUT = float(os.environ.get("PROXYGUARD_COMMAND_TIMEOUT", 30))
RETENTION = int(os.environ.get("PROXYGUARD_BACKUP_RETENTION", 10))

logger = logging.getLogger("proxyguard")


def load_template():
    if TEMPLATE_PATH.exists():
        return TEMPLATE_PATH.read_text(encoding="utf-8", errors="replace")
    logger.info(f"No template at {TEMPLATE_PATH}, using built-in {SCHEME.value} template")
    return nginx_config.default_template(SCHEME)


def render():
    groups = GroupStore(GROUPS_FILE).list()
    return nginx_config.generate(groups, load_template(), SCHEME)


async def apply_all():
    """Generate from the group store and push through validate/backup/write/reload"""
    try:
        config = render()
    except ValueError as e:
        logger.error(f"Cannot generate config: {e}")
        return 2

    coordinator = ReloadCoordinator(NginxControl(NGINX_BIN, timeout=TIMEOUT), backup_retention=RETENTION)
    result = await coordinator.apply(config, CONFIG_PATH)
    print(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        return 1
    # saved but not live
    if not result.reloaded:
        return 3
    return 0


async def show_status():
    report = await StatusInspector(NginxControl(NGINX_BIN, timeout=TIMEOUT)).status(CONFIG_PATH)
    print(json.dumps(report.to_dict(), indent=2))
    backups = list_backups(CONFIG_PATH)
    print(f"Backups: {len(backups)}")
    for b in backups:
        print(f"  {b.name}")
    return 0


def show_groups():
    """Print groups recovered from the live config"""
    if not CONFIG_PATH.exists():
        print(f"No config at {CONFIG_PATH}")
        return 1
    report = nginx_config.inspect(CONFIG_PATH.read_text(encoding="utf-8", errors="replace"))
    print(json.dumps({
        "scheme": report.scheme.value,
        "emptyMarker": report.empty_marker,
        "unsubstituted": report.unsubstituted,
        "groups": [g.model_dump() for g in report.groups],
    }, indent=2))
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="[proxyguard] %(message)s")
    cmd = sys.argv[1] if len(sys.argv) > 1 else "apply"

    if cmd == "apply":
        sys.exit(asyncio.run(apply_all()))
    elif cmd == "generate":
        print(render())
    elif cmd == "status":
        sys.exit(asyncio.run(show_status()))
    elif cmd == "groups":
        sys.exit(show_groups())
    else:
        print(f"Usage: {sys.argv[0]} {{apply|generate|status|groups}}")
        sys.exit(1)

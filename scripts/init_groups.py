#!/usr/bin/env python3
"""Initialize whitelist.json from an existing nginx config"""
import os
import sys
from pathlib import Path

import nginx_config
from whitelist import GroupStore, reconcile_ids

config_path = Path(sys.argv[1] if len(sys.argv) > 1 else os.environ.get("NGINX_CONFIG_PATH", "/etc/nginx/nginx.conf"))
store = GroupStore(Path(os.environ.get("PROXYGUARD_GROUPS_FILE", "/etc/proxyguard/whitelist.json")))

if not config_path.exists():
    print(f"No config at {config_path}")
    sys.exit(1)

report = nginx_config.inspect(config_path.read_text(encoding="utf-8", errors="replace"))
if report.unsubstituted:
    print("Config still contains template placeholders, nothing to import")
    sys.exit(1)

groups = reconcile_ids(report.groups, store.list())
store.replace_all(groups)

print(f"Imported {len(groups)} group(s) ({report.scheme.value}) into {store.path}")
for g in groups:
    print(f"  {g.name}: {len(g.clients)} client(s), {len(g.destinations)} destination(s)")

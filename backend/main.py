#!/usr/bin/env python3
"""
ProxyGuard - FastAPI Backend
Web API for managing NGINX forward-proxy whitelist groups
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import nginx_config
from nginx_config import RuleScheme, TemplateContractError, IdCollisionError
from nginx_ctl import (
    NginxControl,
    ReloadCoordinator,
    StatusInspector,
    ApplyOutcome,
    list_backups,
    is_writable,
    DEFAULT_TIMEOUT,
    DEFAULT_BACKUP_RETENTION,
)
import whitelist as wl
from whitelist import WhitelistGroup, GroupStore

logger = logging.getLogger("proxyguard")


# ============ Configuration ============

@dataclass
class Settings:
    config_path: Path = Path("/etc/nginx/nginx.conf")
    template_path: Path = Path("/etc/nginx/nginx.conf.template")
    groups_file: Path = wl.DEFAULT_GROUPS_FILE
    nginx_bin: str = "nginx"
    scheme: RuleScheme = RuleScheme.GEO_MAP
    command_timeout: float = DEFAULT_TIMEOUT
    backup_retention: int = DEFAULT_BACKUP_RETENTION
    host: str = "0.0.0.0"
    port: int = 3001

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            config_path=Path(env.get("NGINX_CONFIG_PATH", "/etc/nginx/nginx.conf")),
            template_path=Path(env.get("NGINX_TEMPLATE_PATH", "/etc/nginx/nginx.conf.template")),
            groups_file=Path(env.get("PROXYGUARD_GROUPS_FILE", str(wl.DEFAULT_GROUPS_FILE))),
            nginx_bin=env.get("NGINX_BIN", "nginx"),
            scheme=RuleScheme(env.get("PROXYGUARD_RULE_SCHEME", RuleScheme.GEO_MAP.value)),
            command_timeout=float(env.get("PROXYGUARD_COMMAND_TIMEOUT", DEFAULT_TIMEOUT)),
            backup_retention=int(env.get("PROXYGUARD_BACKUP_RETENTION", DEFAULT_BACKUP_RETENTION)),
            host=env.get("API_HOST", "0.0.0.0"),
            port=int(env.get("API_PORT", 3001)),
        )


def setup_logging():
    level = os.environ.get("PROXYGUARD_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format="[proxyguard] %(levelname)s %(name)s: %(message)s")


settings = Settings.from_env()
nginx = NginxControl(settings.nginx_bin, timeout=settings.command_timeout)
coordinator = ReloadCoordinator(nginx, backup_retention=settings.backup_retention)
inspector = StatusInspector(nginx)


def get_settings() -> Settings:
    return settings


def get_coordinator() -> ReloadCoordinator:
    return coordinator


def get_inspector() -> StatusInspector:
    return inspector


def get_store(settings: Settings = Depends(get_settings)) -> GroupStore:
    return GroupStore(settings.groups_file)


# ============ Request Models ============

class ConfigBody(BaseModel):
    config: str


class SaveRequest(BaseModel):
    config: str
    path: Optional[str] = None


class WritableCheck(BaseModel):
    path: Optional[str] = None


class GroupsUpdate(BaseModel):
    groups: List[WhitelistGroup]


class EntryCreate(BaseModel):
    value: str
    description: str = ""


class GroupRename(BaseModel):
    name: str
    description: Optional[str] = None


class AccessCheck(BaseModel):
    source: str
    host: str


# ============ Helpers ============

def read_text(path: Path) -> Optional[str]:
    """Read a file, None if it does not exist"""
    if not path.exists():
        return None
    with open(path, encoding="utf-8", errors="replace") as f:
        return f.read()


def load_template(settings: Settings) -> str:
    """Template file if present, else the built-in one for the active scheme"""
    text = read_text(settings.template_path)
    if text is None:
        return nginx_config.default_template(settings.scheme)
    return text


def apply_response(result) -> JSONResponse:
    status = 200
    if result.outcome == ApplyOutcome.REJECTED:
        status = 400
    elif result.outcome == ApplyOutcome.FAILED:
        status = 500
    body = {
        "success": result.success,
        "reloaded": result.reloaded,
        "outcome": result.outcome.value,
        "message": result.message,
        "backup": result.backup_path,
    }
    if result.error:
        body["error"] = result.message
        body["errorKind"] = result.error.value
    return JSONResponse(status_code=status, content=body)


def store_mutation(store: GroupStore, group_id: str, change):
    try:
        return store.mutate(group_id, change)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    setup_logging()
    logger.info("API server starting...")
    logger.info(f"Config: {settings.config_path} (template {settings.template_path}, scheme {settings.scheme.value})")
    yield
    logger.info("API server stopping...")

# Create FastAPI app
app = FastAPI(
    title="ProxyGuard",
    description="Whitelist management for an NGINX forward proxy",
    version="1.0.0",
    lifespan=lifespan
)


# API Routes

@app.get("/api/health")
async def get_health(settings: Settings = Depends(get_settings)):
    """Service health and effective configuration"""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "configPath": str(settings.config_path),
        "templatePath": str(settings.template_path),
        "scheme": settings.scheme.value,
    }


@app.get("/api/status")
async def get_status(settings: Settings = Depends(get_settings),
                     inspector: StatusInspector = Depends(get_inspector)):
    """Get nginx status"""
    report = await inspector.status(settings.config_path)
    return report.to_dict()


@app.get("/api/config")
async def get_config(settings: Settings = Depends(get_settings)):
    """Get current nginx configuration, falling back to the template"""
    config = read_text(settings.config_path)
    if config is not None:
        return {"config": config, "isTemplate": False}

    template = read_text(settings.template_path)
    if template is not None:
        return {"config": template, "isTemplate": True}

    raise HTTPException(status_code=404, detail="Configuration file not found")


@app.post("/api/validate")
async def validate_config(body: ConfigBody, coordinator: ReloadCoordinator = Depends(get_coordinator)):
    """Validate configuration text without touching the live file"""
    result = await coordinator.validate(body.config)
    if result.success:
        return {"success": True}
    return JSONResponse(status_code=400, content={"success": False, "error": result.message})


@app.post("/api/save")
async def save_config(body: SaveRequest,
                      settings: Settings = Depends(get_settings),
                      coordinator: ReloadCoordinator = Depends(get_coordinator)):
    """Validate, back up and write configuration (no reload)"""
    target = Path(body.path) if body.path else settings.config_path
    result = await coordinator.apply(body.config, target, reload=False)
    return apply_response(result)


@app.post("/api/reload")
async def reload_nginx(coordinator: ReloadCoordinator = Depends(get_coordinator)):
    """Reload nginx with the configuration on disk"""
    result = await coordinator.reload()
    if result.ok:
        return {"success": True}
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": result.output.strip() or "Failed to reload NGINX"}
    )


@app.post("/api/test-writable")
async def test_writable(body: WritableCheck, settings: Settings = Depends(get_settings)):
    """Check whether a config path could be written"""
    path = Path(body.path) if body.path else settings.config_path
    if is_writable(path):
        return {"writable": True}
    if not path.exists() and not path.parent.is_dir():
        return {"writable": False, "error": f"Directory {path.parent} does not exist"}
    return {"writable": False, "error": f"Cannot write to {path}"}


@app.get("/api/backups")
async def get_backups(settings: Settings = Depends(get_settings)):
    """List backups of the live configuration, newest first"""
    return {
        "backups": [
            {"path": str(p), "size": p.stat().st_size}
            for p in list_backups(settings.config_path)
        ]
    }


@app.get("/api/groups")
async def get_groups(source: Optional[str] = None,
                     settings: Settings = Depends(get_settings),
                     store: GroupStore = Depends(get_store)):
    """Get whitelist groups from the store, else recovered from nginx config"""
    if source not in (None, "store", "config"):
        raise HTTPException(status_code=400, detail=f"Unknown source: {source}")

    if source != "config" and store.exists():
        return {"groups": [g.model_dump() for g in store.list()], "source": "store", "isTemplate": False}

    is_template = False
    text = read_text(settings.config_path)
    if text is None:
        text = read_text(settings.template_path)
        is_template = text is not None
    if text is None:
        return {"groups": [], "source": "none", "isTemplate": False}

    report = nginx_config.inspect(text)
    groups = wl.reconcile_ids(report.groups, store.list())
    logger.info(f"Extracted {len(groups)} groups from {'template' if is_template else 'config file'}")
    return {
        "groups": [g.model_dump() for g in groups],
        "source": "template" if is_template else "config",
        "isTemplate": is_template or report.unsubstituted,
    }


@app.post("/api/groups")
async def update_groups(body: GroupsUpdate,
                        settings: Settings = Depends(get_settings),
                        store: GroupStore = Depends(get_store),
                        coordinator: ReloadCoordinator = Depends(get_coordinator)):
    """Regenerate nginx config from groups and apply it"""
    logger.info(f"Updating whitelist with {len(body.groups)} groups")
    try:
        config = nginx_config.generate(body.groups, load_template(settings), settings.scheme)
    except (TemplateContractError, IdCollisionError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = await coordinator.apply(config, settings.config_path)
    if result.outcome not in (ApplyOutcome.REJECTED, ApplyOutcome.FAILED):
        store.replace_all(body.groups)
    return apply_response(result)


@app.delete("/api/groups/{group_id}")
async def delete_group(group_id: str, store: GroupStore = Depends(get_store)):
    try:
        store.delete(group_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]))
    return {"status": "ok"}


@app.put("/api/groups/{group_id}")
async def rename_group(group_id: str, body: GroupRename, store: GroupStore = Depends(get_store)):
    def change(group):
        wl.rename(group, body.name)
        if body.description is not None:
            group.description = body.description
        return group

    group = store_mutation(store, group_id, change)
    return {"status": "ok", "group": group.model_dump()}


@app.post("/api/groups/{group_id}/toggle")
async def toggle_group(group_id: str, store: GroupStore = Depends(get_store)):
    """Flip a group's enabled flag (stored only, apply separately)"""
    def flip(group):
        wl.set_enabled(group, not group.enabled)
        return group.enabled

    enabled = store_mutation(store, group_id, flip)
    return {"status": "ok", "enabled": enabled}


@app.post("/api/groups/{group_id}/clients")
async def add_group_client(group_id: str, item: EntryCreate, store: GroupStore = Depends(get_store)):
    entry = store_mutation(store, group_id, lambda g: wl.add_client(g, item.value, item.description))
    return {"status": "ok", "client": entry.model_dump()}


@app.delete("/api/groups/{group_id}/clients/{entry_id}")
async def delete_group_client(group_id: str, entry_id: str, store: GroupStore = Depends(get_store)):
    store_mutation(store, group_id, lambda g: wl.remove_client(g, entry_id))
    return {"status": "ok"}


@app.post("/api/groups/{group_id}/destinations")
async def add_group_destination(group_id: str, item: EntryCreate, store: GroupStore = Depends(get_store)):
    entry = store_mutation(store, group_id, lambda g: wl.add_destination(g, item.value, item.description))
    return {"status": "ok", "destination": entry.model_dump()}


@app.delete("/api/groups/{group_id}/destinations/{entry_id}")
async def delete_group_destination(group_id: str, entry_id: str, store: GroupStore = Depends(get_store)):
    store_mutation(store, group_id, lambda g: wl.remove_destination(g, entry_id))
    return {"status": "ok"}


@app.post("/api/check")
async def check_access(check: AccessCheck, store: GroupStore = Depends(get_store)):
    """Would the stored groups allow this request?"""
    return {"allowed": wl.is_allowed(store.list(), check.source, check.host)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)

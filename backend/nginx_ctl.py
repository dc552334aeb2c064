"""
ProxyGuard - NGINX Control
Runs nginx test/reload commands and applies configuration files safely
"""

import asyncio
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Callable, Awaitable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
DEFAULT_BACKUP_RETENTION = 10

SYNTAX_OK = "syntax is ok"
TEST_OK = "test is successful"


# ============ Command Runner ============

@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


Runner = Callable[[List[str], float], Awaitable[CommandResult]]


async def run_command(cmd: list, timeout: float = DEFAULT_TIMEOUT) -> CommandResult:
    """Run a command and capture its output; never raises"""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error(f"Cannot run {cmd[0]}: {e}")
        return CommandResult(exit_code=-1, stderr=str(e))

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass  # exited on its own
        await proc.wait()
        logger.error(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        return CommandResult(exit_code=-1, stderr="Command timed out", timed_out=True)

    return CommandResult(
        exit_code=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


class NginxControl:
    """The three nginx operations the dashboard relies on"""

    def __init__(self, binary: str = "nginx", runner: Runner = run_command,
                 timeout: float = DEFAULT_TIMEOUT):
        self.binary = binary
        self.runner = runner
        self.timeout = timeout

    async def _run(self, cmd: List[str]) -> CommandResult:
        logger.info(f"Running: {' '.join(cmd)}")
        result = await self.runner(cmd, self.timeout)
        if not result.ok:
            logger.info(f"Exit code {result.exit_code}: {result.output.strip()}")
        return result

    @staticmethod
    def test_passed(result: CommandResult) -> bool:
        output = result.output
        return result.ok and SYNTAX_OK in output and TEST_OK in output

    async def test_config(self, path) -> CommandResult:
        return await self._run([self.binary, "-t", "-c", str(path)])

    async def reload(self) -> CommandResult:
        return await self._run([self.binary, "-s", "reload"])

    async def is_running(self) -> bool:
        result = await self._run(["pgrep", "-x", Path(self.binary).name])
        return result.ok and bool(result.stdout.strip())


# ============ Apply ============

class ApplyOutcome(str, Enum):
    REJECTED = "rejected"   # validation failed, nothing touched
    FAILED = "failed"       # backup/write failed
    SAVED = "saved"         # written but not reloaded
    APPLIED = "applied"     # written and reloaded


class ApplyError(str, Enum):
    VALIDATION = "validation"
    WRITE = "write"
    RELOAD = "reload"


@dataclass
class ApplyResult:
    success: bool
    reloaded: bool
    message: str
    outcome: ApplyOutcome
    error: Optional[ApplyError] = None
    backup_path: Optional[str] = None
    validation_output: str = ""
    reload_output: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["error"] = self.error.value if self.error else None
        return data


@dataclass
class ValidationResult:
    success: bool
    message: str


def backup_path_for(target: Path) -> Path:
    stamp = int(time.time() * 1000)
    # stay ahead of the newest backup so ordering by suffix is ordering by age
    existing = list_backups(target)
    if existing:
        stamp = max(stamp, int(existing[0].name.rsplit("-", 1)[1]) + 1)
    return target.with_name(f"{target.name}.bak-{stamp}")


def list_backups(target) -> List[Path]:
    """Backups of target, newest first"""
    target = Path(target)
    if not target.parent.exists():
        return []
    prefix = f"{target.name}.bak-"
    backups = []
    for p in target.parent.iterdir():
        suffix = p.name[len(prefix):]
        if p.name.startswith(prefix) and suffix.isdigit():
            backups.append((int(suffix), p))
    return [p for _, p in sorted(backups, reverse=True)]


def prune_backups(target, keep: int) -> List[Path]:
    """Delete all but the newest `keep` backups; keep <= 0 disables pruning"""
    if keep <= 0:
        return []
    removed = []
    for old in list_backups(target)[keep:]:
        try:
            old.unlink()
            removed.append(old)
        except OSError as e:
            logger.warning(f"Could not remove old backup {old}: {e}")
    if removed:
        logger.info(f"Pruned {len(removed)} old backup(s) of {target}")
    return removed


def _write_file(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding="utf-8") as f:
        f.write(text)


class ReloadCoordinator:
    """validate -> backup -> write -> reload, serialized per target path"""

    def __init__(self, nginx: NginxControl, backup_retention: int = DEFAULT_BACKUP_RETENTION):
        self.nginx = nginx
        self.backup_retention = backup_retention
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, target) -> asyncio.Lock:
        key = os.path.realpath(str(target))
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def validate(self, text: str) -> ValidationResult:
        """Test candidate text in a throwaway file, never in place"""
        try:
            fd, tmp = await asyncio.to_thread(tempfile.mkstemp, prefix="nginx-test-", suffix=".conf")
        except OSError as e:
            return ValidationResult(False, f"Cannot create temporary file: {e}")
        try:
            with os.fdopen(fd, 'w', encoding="utf-8") as f:
                f.write(text)
            result = await self.nginx.test_config(tmp)
        except (OSError, UnicodeError) as e:
            return ValidationResult(False, f"Cannot write temporary file: {e}")
        finally:
            try:
                os.unlink(tmp)
            except OSError:
                pass

        output = result.output.strip()
        if self.nginx.test_passed(result):
            return ValidationResult(True, output)
        return ValidationResult(False, output or "Configuration test failed")

    async def reload(self) -> CommandResult:
        return await self.nginx.reload()

    async def apply(self, text: str, target_path, reload: bool = True) -> ApplyResult:
        target = Path(target_path)
        async with self.lock_for(target):
            return await self._apply(text, target, reload)

    async def _apply(self, text: str, target: Path, reload: bool) -> ApplyResult:
        logger.info(f"Validating new configuration for {target}")
        validation = await self.validate(text)
        if not validation.success:
            logger.warning(f"Configuration rejected: {validation.message}")
            return ApplyResult(
                success=False,
                reloaded=False,
                message=validation.message,
                outcome=ApplyOutcome.REJECTED,
                error=ApplyError.VALIDATION,
                validation_output=validation.message,
            )

        backup = None
        try:
            if target.exists():
                backup = backup_path_for(target)
                await asyncio.to_thread(shutil.copy2, target, backup)
                logger.info(f"Created backup at {backup}")
                await asyncio.to_thread(prune_backups, target, self.backup_retention)
            await asyncio.to_thread(_write_file, target, text)
            logger.info(f"Wrote configuration to {target}")
        except (OSError, UnicodeError) as e:
            logger.error(f"Failed to write {target}: {e}")
            return ApplyResult(
                success=False,
                reloaded=False,
                message=f"Failed to write config: {e}",
                outcome=ApplyOutcome.FAILED,
                error=ApplyError.WRITE,
                backup_path=str(backup) if backup else None,
                validation_output=validation.message,
            )

        if not reload:
            return ApplyResult(
                success=True,
                reloaded=False,
                message="Configuration saved",
                outcome=ApplyOutcome.SAVED,
                backup_path=str(backup) if backup else None,
                validation_output=validation.message,
            )

        logger.info("Reloading nginx")
        result = await self.nginx.reload()
        if not result.ok:
            output = result.output.strip() or "Failed to reload NGINX"
            logger.error(f"Configuration saved but reload failed: {output}")
            return ApplyResult(
                success=True,
                reloaded=False,
                message=f"Configuration saved but reload failed: {output}",
                outcome=ApplyOutcome.SAVED,
                error=ApplyError.RELOAD,
                backup_path=str(backup) if backup else None,
                validation_output=validation.message,
                reload_output=output,
            )

        logger.info("NGINX reloaded with new configuration")
        return ApplyResult(
            success=True,
            reloaded=True,
            message="Configuration applied",
            outcome=ApplyOutcome.APPLIED,
            backup_path=str(backup) if backup else None,
            validation_output=validation.message,
            reload_output=result.output.strip(),
        )


# ============ Status ============

@dataclass
class StatusReport:
    running: bool
    last_modified: Optional[str]
    config_exists: bool
    config_valid: Dict[str, object] = field(default_factory=dict)
    writable: bool = False
    config_path: str = ""

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "lastModified": self.last_modified,
            "configExists": self.config_exists,
            "configValid": self.config_valid,
            "writable": self.writable,
            "configPath": self.config_path,
        }


def is_writable(path) -> bool:
    """Writable file, or for a missing file a writable containing directory"""
    path = Path(path)
    if path.exists():
        return os.access(path, os.W_OK)
    return path.parent.is_dir() and os.access(path.parent, os.W_OK)


class StatusInspector:
    """Read-only view of the live nginx configuration"""

    def __init__(self, nginx: NginxControl):
        self.nginx = nginx

    async def status(self, path) -> StatusReport:
        path = Path(path)
        running = await self.nginx.is_running()

        config_exists = path.exists()
        last_modified = None
        if config_exists:
            try:
                mtime = path.stat().st_mtime
                last_modified = datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat()
            except OSError as e:
                logger.error(f"Error checking config file: {e}")

        if config_exists:
            result = await self.nginx.test_config(path)
            valid = self.nginx.test_passed(result)
            config_valid = {
                "success": valid,
                "message": "Configuration test successful" if valid
                else (result.output.strip() or "Configuration test failed"),
            }
        else:
            config_valid = {"success": False, "message": "Configuration not tested"}

        return StatusReport(
            running=running,
            last_modified=last_modified,
            config_exists=config_exists,
            config_valid=config_valid,
            writable=is_writable(path),
            config_path=str(path),
        )

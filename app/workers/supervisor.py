# app/workers/supervisor.py
from __future__ import annotations

import json
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from app.settlements.errors import InvalidWorkerAction, SupervisorUnavailable, WorkerNotFound

logger = logging.getLogger("reconciler.supervisor")

WORKER_ACTIONS = ("start", "stop", "restart")


def format_uptime(ms: int) -> str:
    seconds = max(0, int(ms)) // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


@dataclass(frozen=True)
class WorkerHealth:
    name: str
    status: str
    uptime_ms: int = 0
    restarts: int = 0
    pid: Optional[int] = None
    memory_mb: int = 0
    cpu_percent: float = 0
    created_at: Optional[datetime] = None

    @property
    def healthy(self) -> bool:
        return self.status == "online"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "uptime": self.uptime_ms,
            "uptimeFormatted": format_uptime(self.uptime_ms),
            "restarts": self.restarts,
            "pid": self.pid,
            "memory": f"{self.memory_mb}MB",
            "cpu": f"{self.cpu_percent}%",
            "created": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class ControlResult:
    action: str
    output: str
    error: Optional[str] = None


class ProcessSupervisor(Protocol):
    def health(self) -> WorkerHealth: ...

    def control(self, action: str) -> ControlResult: ...


def _ms_to_dt(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_pm2_entry(entry: dict[str, Any], *, now_ms: Optional[int] = None) -> WorkerHealth:
    env = entry.get("pm2_env") or {}
    monit = entry.get("monit") or {}
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    started = env.get("pm_uptime")
    uptime = now_ms - int(started) if started else 0
    return WorkerHealth(
        name=str(entry.get("name") or ""),
        status=str(env.get("status") or "unknown"),
        uptime_ms=max(0, uptime),
        restarts=int(env.get("restart_time") or 0),
        pid=entry.get("pid"),
        memory_mb=round(int(monit.get("memory") or 0) / 1024 / 1024),
        cpu_percent=monit.get("cpu") or 0,
        created_at=_ms_to_dt(env.get("created_at")),
    )


class Pm2Supervisor:
    """
    Worker supervision through the pm2 CLI. Commands run as argv lists, never via a shell.
    """

    def __init__(
        self,
        name: str,
        *,
        ecosystem_file: str = "ecosystem.config.json",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        which: Callable[[str], Optional[str]] = shutil.which,
        timeout_s: float = 15.0,
    ) -> None:
        self.name = name
        self.ecosystem_file = ecosystem_file
        self._run = runner
        self._which = which
        self.timeout_s = timeout_s

    def _pm2(self, *args: str) -> subprocess.CompletedProcess:
        if not self._which("pm2"):
            raise SupervisorUnavailable("PM2 is not installed")
        try:
            return self._run(
                ["pm2", *args],
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout_s,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
            logger.warning("pm2_command_failed args=%s error=%s", args, exc)
            raise SupervisorUnavailable(f"pm2 {' '.join(args)} failed: {exc}") from exc

    def health(self) -> WorkerHealth:
        proc = self._pm2("jlist")
        try:
            processes = json.loads(proc.stdout or "[]")
        except ValueError as exc:
            raise SupervisorUnavailable("Failed to parse pm2 process list") from exc

        for entry in processes if isinstance(processes, list) else []:
            if isinstance(entry, dict) and entry.get("name") == self.name:
                return parse_pm2_entry(entry)
        raise WorkerNotFound(f"Worker is not running. Start it with: pm2 start {self.ecosystem_file}")

    def control(self, action: str) -> ControlResult:
        if action not in WORKER_ACTIONS:
            raise InvalidWorkerAction("Invalid action. Must be: start, stop, or restart")
        if action == "start":
            proc = self._pm2("start", self.ecosystem_file)
        else:
            proc = self._pm2(action, self.name)
        logger.info("pm2_control action=%s name=%s", action, self.name)
        return ControlResult(action=action, output=proc.stdout or "", error=(proc.stderr or None))

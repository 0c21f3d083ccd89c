"""
Worker Manager - Process lifecycle orchestration.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

import asyncio
import inspect
import logging
import os
import signal
from pathlib import Path

from .errors import ProcessLimitError, SupervisorError, ValidationError
from .models import (
    LaunchSpec, ProcessConfig, ProcessDefaults, ProcessInfo,
    EXEC_MODE_FORK, STATUS_NOT_FOUND,
)
from .registry import ProcessRegistry
from .supervisor import SupervisorAdapter
from .validation import validate_process_config

logger = logging.getLogger(__name__)

# Delay between force_shutdown() returning and the host being terminated
SHUTDOWN_GRACE_SECONDS = 2.0


def apply_defaults(base: ProcessDefaults, override: ProcessConfig, base_dir: Path,
                   scripts_dir: Path) -> LaunchSpec:
    """Merge system defaults with a per-process config, field by field.

    A field set on the override (not None) wins. Environment mappings are
    merged key by key with the override's keys winning. The working
    directory is resolved against base_dir and falls back to the scripts
    directory.
    """
    def pick(name):
        value = getattr(override, name)
        return getattr(base, name) if value is None else value

    args = pick("args")
    if args is None:
        args = []
    elif isinstance(args, str):
        args = args.split()

    cwd = pick("cwd")
    cwd = Path(base_dir) / cwd if cwd else Path(scripts_dir)

    env = dict(base.env or {})
    env.update(override.env or {})

    return LaunchSpec(
        name=override.name,
        script=override.script,
        cwd=str(cwd),
        args=[str(arg) for arg in args],
        interpreter=pick("interpreter"),
        env=env,
        instances=pick("instances") or 1,
        exec_mode=pick("exec_mode") or EXEC_MODE_FORK,
        watch=pick("watch") or False,
        ignore_watch=list(pick("ignore_watch") or []),
        autorestart=bool(pick("autorestart")),
        max_memory_restart=pick("max_memory_restart"),
        time=bool(pick("time")),
        out_file=override.out_file,
        error_file=override.error_file,
        log_file=override.log_file,
    )


def terminate_host():
    """Ask the own process to shut down; the entry point handles SIGTERM."""
    os.kill(os.getpid(), signal.SIGTERM)


class LifecycleController:
    """Creates and drives supervised processes and fires their callbacks."""

    def __init__(self, supervisor: SupervisorAdapter, registry: ProcessRegistry,
                 defaults: ProcessDefaults = None, base_dir: Path = None, scripts_dir: Path = None,
                 max_processes: int = 0, exit_func=terminate_host,
                 shutdown_grace: float = SHUTDOWN_GRACE_SECONDS):
        self.supervisor = supervisor
        self.registry = registry
        self.defaults = defaults or ProcessDefaults()
        self.base_dir = Path(base_dir or Path.cwd())
        self.scripts_dir = Path(scripts_dir or self.base_dir)
        self.max_processes = max_processes
        self.exit_func = exit_func
        self.shutdown_grace = shutdown_grace

    async def init(self):
        try:
            await self.supervisor.connect()
        except SupervisorError:
            raise
        except Exception as e:
            raise SupervisorError(f"Error connecting to supervisor: {e}") from e
        logger.info("Connected to supervisor")

    async def ensure_connected(self):
        if not self.supervisor.connected:
            await self.init()

    async def disconnect(self):
        if not self.supervisor.connected:
            return
        try:
            await self.supervisor.disconnect()
            logger.info("Disconnected from supervisor")
        except Exception:
            logger.exception("Error disconnecting from supervisor")

    async def _call(self, operation, *args):
        """Await a supervisor operation, reporting any failure as SupervisorError."""
        try:
            return await operation(*args)
        except SupervisorError:
            raise
        except Exception as e:
            raise SupervisorError(str(e) or e.__class__.__name__) from e

    async def _fire(self, config: ProcessConfig, hook: str):
        callback = getattr(config.callbacks, hook, None)
        if callback is None:
            return
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("[%s] Error in %s callback", config.name, hook)

    async def create(self, config: ProcessConfig) -> int:
        validate_process_config(config)
        if self.registry.has_name(config.name):
            raise ValidationError(f"Process name '{config.name}' is already registered")
        if self.max_processes and len(self.registry) >= self.max_processes:
            raise ProcessLimitError(f"Maximum number of processes ({self.max_processes}) reached")

        spec = apply_defaults(self.defaults, config, self.base_dir, self.scripts_dir)
        await self.ensure_connected()
        try:
            pm_id = await self._call(self.supervisor.launch, spec)
        except SupervisorError as e:
            logger.error("[%s] Failed to create process: %s", config.name, e)
            raise
        if pm_id is None:
            raise SupervisorError(f"Failed to get an ID for created process {config.name}")

        self.registry.add(pm_id, config)
        await self._fire(config, "on_start")
        logger.info("[%s] Created with ID %s", config.name, pm_id)
        return pm_id

    async def _run(self, pm_id: int, operation, hook: str, verb: str):
        config = self.registry.require(pm_id)
        await self.ensure_connected()
        await self._call(operation, config.name)
        await self._fire(config, hook)
        logger.info("[%s] %s", config.name, verb)

    async def start(self, pm_id: int):
        await self._run(pm_id, self.supervisor.start, "on_start", "Started")

    async def stop(self, pm_id: int):
        await self._run(pm_id, self.supervisor.stop, "on_stop", "Stopped")

    async def restart(self, pm_id: int):
        await self._run(pm_id, self.supervisor.restart, "on_restart", "Restarted")

    async def delete(self, pm_id: int):
        """Delete from the supervisor and forget the process. Result files stay on disk."""
        config = self.registry.require(pm_id)
        await self.ensure_connected()
        await self._call(self.supervisor.delete, config.name)
        await self._fire(config, "on_delete")
        self.registry.remove(pm_id)
        logger.info("[%s] Deleted", config.name)

    async def stop_all(self):
        await self.ensure_connected()
        await self._call(self.supervisor.stop_all)
        for _, config in self.registry.items():
            await self._fire(config, "on_stop")
        logger.info("All processes stopped")

    async def restart_all(self):
        await self.ensure_connected()
        await self._call(self.supervisor.restart_all)
        for _, config in self.registry.items():
            await self._fire(config, "on_restart")
        logger.info("All processes restarted")

    async def get_info(self, pm_id: int) -> ProcessInfo:
        config = self.registry.get(pm_id)
        if config is None:
            return None
        try:
            await self.ensure_connected()
            infos = await self.supervisor.describe(config.name)
        except Exception as e:
            logger.warning("[%s] Could not describe process: %s", config.name, e)
            return None
        if not infos:
            return None
        return next((info for info in infos if info.pm_id == pm_id), infos[0])

    async def get_all(self) -> list[ProcessInfo]:
        try:
            await self.ensure_connected()
            return list(await self.supervisor.list())
        except Exception as e:
            logger.warning("Could not list processes: %s", e)
            return []

    async def get_status(self, pm_id: int) -> str:
        info = await self.get_info(pm_id)
        if info is None or not info.status:
            return STATUS_NOT_FOUND
        return info.status

    async def force_shutdown(self):
        """Stop everything, disconnect, and terminate the host after a grace delay.

        Irreversible: once called the process will exit.
        """
        if len(self.registry) > 0:
            logger.info("Force stopping all processes...")
            try:
                await self.stop_all()
            except Exception:
                logger.exception("Error stopping processes during shutdown")
        await self.disconnect()
        logger.info("Exiting in %.1fs", self.shutdown_grace)
        asyncio.get_running_loop().call_later(self.shutdown_grace, self.exit_func)

"""
Worker Manager - Supervisor interface and the local subprocess supervisor.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

import asyncio
import fnmatch
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

import psutil
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .errors import SupervisorError
from .models import (
    LaunchSpec, ProcessInfo, Worker,
    STATUS_ERRORED, STATUS_LAUNCHING, STATUS_ONLINE, STATUS_STOPPED, STATUS_STOPPING,
)
from .validation import parse_memory

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Interpreter per script extension; None means "the running Python"
INTERPRETERS = {
    ".py": None,
    ".js": "node",
    ".ts": "ts-node",
    ".sh": "bash",
}

# Never restart a watched app because of these
DEFAULT_IGNORE_WATCH = ["*.log", "*.log.1", "*.pyc", "__pycache__", "node_modules", ".git"]

WATCH_DEBOUNCE_SECONDS = 1.0
STOP_TIMEOUT_SECONDS = 5.0


def sanitize_filename(name: str) -> str:
    """Sanitize a name for use in filenames - replace spaces and special chars with underscore."""
    sanitized = re.sub(r'[^a-zA-Z0-9_-]', '_', name)
    sanitized = re.sub(r'_+', '_', sanitized)
    return sanitized.strip('_')


def is_process_alive(pid: int) -> bool:
    """Check if a process with the given PID is still alive."""
    if pid is None:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks if process exists
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


class SupervisorAdapter(ABC):
    """Asynchronous facade over whatever actually runs the workers.

    Every method completes only once the supervisor has finished the
    operation and raises SupervisorError when it reports a failure.
    """

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def connect(self): ...

    @abstractmethod
    async def disconnect(self): ...

    @abstractmethod
    async def launch(self, spec: LaunchSpec) -> int:
        """Create and start a new app, returning the identity of its first worker."""

    @abstractmethod
    async def start(self, name: str): ...

    @abstractmethod
    async def stop(self, name: str): ...

    @abstractmethod
    async def restart(self, name: str): ...

    @abstractmethod
    async def delete(self, name: str): ...

    @abstractmethod
    async def stop_all(self): ...

    @abstractmethod
    async def restart_all(self): ...

    @abstractmethod
    async def describe(self, name: str) -> list[ProcessInfo]: ...

    @abstractmethod
    async def list(self) -> list[ProcessInfo]: ...


class _RestartOnChange(FileSystemEventHandler):
    """Restarts an app when a file under one of its watched paths changes."""

    def __init__(self, supervisor: "LocalSupervisor", name: str, root: Path, ignore: list):
        super().__init__()
        self.supervisor = supervisor
        self.name = name
        self.root = root
        self.ignore = ignore
        self.last_trigger = 0.0

    def is_ignored(self, path: str) -> bool:
        candidate = Path(path)
        try:
            relative = candidate.relative_to(self.root).as_posix()
        except ValueError:
            relative = candidate.as_posix()
        for pattern in self.ignore:
            if fnmatch.fnmatch(candidate.name, pattern) or fnmatch.fnmatch(relative, pattern):
                return True
            if pattern in candidate.parts:
                return True
        return False

    def on_any_event(self, event):
        if event.is_directory or self.is_ignored(event.src_path):
            return
        now = time.monotonic()
        if now - self.last_trigger < WATCH_DEBOUNCE_SECONDS:
            return
        self.last_trigger = now
        logger.info("[%s] Change detected in %s, restarting", self.name, event.src_path)
        self.supervisor.schedule_watch_restart(self.name)


class LocalSupervisor(SupervisorAdapter):
    """Runs workers as local subprocesses and keeps them alive.

    Blocking work (spawning, waiting for termination) runs in worker threads;
    all state is mutated on the event loop.
    """

    def __init__(self, log_dir: Path, restart_delay: float = 1, max_failures: int = 10,
                 failure_reset_seconds: float = 60, max_log_size_mb: float = 10,
                 monitor_interval: float = 1.0):
        self.log_dir = Path(log_dir)
        self.restart_delay = restart_delay
        self.max_failures = max_failures
        self.failure_reset_seconds = failure_reset_seconds
        self.max_log_size_mb = max_log_size_mb
        self.monitor_interval = monitor_interval
        self.workers: dict[int, Worker] = {}
        self._next_id = 0
        self._connected = False
        self._loop = None
        self._monitor_task = None
        self._observers: dict[str, Observer] = {}

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        if self._connected:
            return
        self._loop = asyncio.get_running_loop()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._monitor_task = asyncio.create_task(self._monitor())
        self._connected = True
        logger.info("Local supervisor connected (log dir %s)", self.log_dir)

    async def disconnect(self):
        """Stop monitoring; workers keep running."""
        if not self._connected:
            return
        self._connected = False
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        for name in list(self._observers):
            self._unwatch(name)
        logger.info("Local supervisor disconnected")

    def resolve_script(self, spec: LaunchSpec) -> Path:
        script_path = Path(spec.script)
        if not script_path.is_absolute():
            script_path = Path(spec.cwd) / script_path
        return script_path

    def build_command(self, spec: LaunchSpec) -> list:
        script_path = self.resolve_script(spec)
        if spec.interpreter:
            interpreter = shutil.which(spec.interpreter) or spec.interpreter
            cmd = [interpreter, str(script_path)]
        else:
            suffix = script_path.suffix.lower()
            if suffix == ".py":
                cmd = [sys.executable, "-u", str(script_path)]
            elif suffix in INTERPRETERS:
                interpreter = shutil.which(INTERPRETERS[suffix])
                if not interpreter:
                    raise SupervisorError(
                        f"[{spec.name}] Interpreter '{INTERPRETERS[suffix]}' not found in PATH")
                cmd = [interpreter, str(script_path)]
            else:
                cmd = [str(script_path)]
        if spec.args:
            cmd.extend(str(arg) for arg in spec.args)
        return cmd

    def log_paths(self, spec: LaunchSpec) -> tuple[Path, Path]:
        """Return (stdout log, stderr log) for an app."""
        def resolve(path):
            path = Path(path)
            return path if path.is_absolute() else Path(spec.cwd) / path

        default_log = self.log_dir / f"{sanitize_filename(spec.name)}.log"
        out_log = resolve(spec.out_file or spec.log_file) if (spec.out_file or spec.log_file) else default_log
        err_log = resolve(spec.error_file) if spec.error_file else out_log
        return out_log, err_log

    def instance_count(self, instances) -> int:
        if instances == "max":
            return psutil.cpu_count() or 1
        return max(1, int(instances or 1))

    def _spawn(self, worker: Worker, cmd: list) -> subprocess.Popen:
        spec = worker.spec
        out_log, err_log = self.log_paths(spec)
        out_log.parent.mkdir(parents=True, exist_ok=True)
        err_log.parent.mkdir(parents=True, exist_ok=True)

        env = os.environ.copy()
        env.update(spec.env or {})

        creationflags = subprocess.CREATE_NEW_PROCESS_GROUP if IS_WINDOWS else 0

        with open(out_log, "a") as out, open(err_log, "a") as err:
            stdout = subprocess.PIPE if spec.time else out
            if spec.time:
                stderr = subprocess.STDOUT if err_log == out_log else subprocess.PIPE
            else:
                stderr = subprocess.STDOUT if err_log == out_log else err
            process = subprocess.Popen(
                cmd,
                cwd=spec.cwd,
                stdout=stdout,
                stderr=stderr,
                env=env,
                start_new_session=not IS_WINDOWS,
                creationflags=creationflags,
            )
        if spec.time:
            self._pump_timestamped(process.stdout, out_log)
            if process.stderr is not None:
                self._pump_timestamped(process.stderr, err_log)
        return process

    def _pump_timestamped(self, stream, log_path: Path):
        def pump():
            with stream, open(log_path, "ab") as log:
                for line in iter(stream.readline, b""):
                    stamp = datetime.now().strftime("%Y-%m-%dT%H:%M:%S").encode()
                    log.write(stamp + b": " + line)
                    log.flush()

        threading.Thread(target=pump, daemon=True).start()

    def _terminate(self, pid: int, process: subprocess.Popen = None):
        """SIGTERM the process group, escalate to SIGKILL after the timeout."""
        # Our own children must be reaped, otherwise they linger as zombies
        if process is not None:
            alive = lambda: process.poll() is None
        else:
            alive = lambda: is_process_alive(pid)
        if not pid or not alive():
            return
        try:
            if IS_WINDOWS:
                psutil.Process(pid).terminate()
            else:
                os.killpg(os.getpgid(pid), signal.SIGTERM)
            deadline = time.monotonic() + STOP_TIMEOUT_SECONDS
            while time.monotonic() < deadline:
                if not alive():
                    return
                time.sleep(0.1)
            if IS_WINDOWS:
                psutil.Process(pid).kill()
            else:
                os.killpg(os.getpgid(pid), signal.SIGKILL)
        except (ProcessLookupError, psutil.NoSuchProcess):
            pass

    def _is_running(self, worker: Worker) -> bool:
        if worker.process is not None:
            return worker.process.poll() is None
        return is_process_alive(worker.pid)

    async def _start_worker(self, worker: Worker):
        cmd = self.build_command(worker.spec)
        try:
            process = await asyncio.to_thread(self._spawn, worker, cmd)
        except OSError as e:
            worker.status = STATUS_ERRORED
            raise SupervisorError(f"[{worker.name}] Failed to start: {e}") from e
        worker.process = process
        worker.pid = process.pid
        worker.status = STATUS_ONLINE
        worker.start_time = datetime.now()
        worker._psutil_process = None
        logger.info("[%s] Started instance %d with PID %d", worker.name, worker.instance, process.pid)

    async def _stop_worker(self, worker: Worker):
        worker._user_action_in_progress = True
        try:
            if self._is_running(worker):
                worker.status = STATUS_STOPPING
                pid = worker.process.pid if worker.process else worker.pid
                await asyncio.to_thread(self._terminate, pid, worker.process)
                if worker.process is not None:
                    await asyncio.to_thread(worker.process.wait)
            worker.process = None
            worker.pid = None
            worker.status = STATUS_STOPPED
        finally:
            worker._user_action_in_progress = False

    def _by_name(self, name: str) -> list[Worker]:
        workers = [w for w in self.workers.values() if w.name == name]
        if not workers:
            raise SupervisorError(f"Process {name} not found")
        return workers

    async def launch(self, spec: LaunchSpec) -> int:
        if any(w.name == spec.name for w in self.workers.values()):
            raise SupervisorError(f"Process name '{spec.name}' is already in use")
        script_path = self.resolve_script(spec)
        if not script_path.exists():
            raise SupervisorError(f"[{spec.name}] Script not found: {script_path}")

        created = []
        for instance in range(self.instance_count(spec.instances)):
            worker = Worker(pm_id=self._next_id, name=spec.name, spec=spec, instance=instance)
            self._next_id += 1
            self.workers[worker.pm_id] = worker
            created.append(worker)

        try:
            for worker in created:
                await self._start_worker(worker)
        except SupervisorError:
            for worker in created:
                await self._stop_worker(worker)
                del self.workers[worker.pm_id]
            raise

        if spec.watch:
            self._watch(spec)
        return created[0].pm_id

    async def start(self, name: str):
        for worker in self._by_name(name):
            if self._is_running(worker):
                continue
            worker.is_broken = False
            worker.consecutive_failures = 0
            await self._start_worker(worker)

    async def stop(self, name: str):
        for worker in self._by_name(name):
            await self._stop_worker(worker)
        logger.info("[%s] Stopped", name)

    async def restart(self, name: str):
        for worker in self._by_name(name):
            await self._restart_worker(worker)

    async def _restart_worker(self, worker: Worker):
        await self._stop_worker(worker)
        worker._user_action_in_progress = True
        try:
            worker.is_broken = False
            worker.consecutive_failures = 0
            worker.total_restarts += 1
            worker.last_restart = datetime.now()
            await asyncio.sleep(self.restart_delay)
            await self._start_worker(worker)
        finally:
            worker._user_action_in_progress = False

    async def delete(self, name: str):
        workers = self._by_name(name)
        self._unwatch(name)
        for worker in workers:
            await self._stop_worker(worker)
            del self.workers[worker.pm_id]
        logger.info("[%s] Deleted", name)

    def _names(self) -> list[str]:
        return list(dict.fromkeys(w.name for w in self.workers.values()))

    async def stop_all(self):
        for name in self._names():
            await self.stop(name)

    async def restart_all(self):
        for name in self._names():
            await self.restart(name)

    def snapshot(self, worker: Worker) -> ProcessInfo:
        memory = 0
        if worker.pid and self._is_running(worker):
            try:
                memory = psutil.Process(worker.pid).memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                memory = 0
        uptime = 0.0
        if worker.start_time and worker.status == STATUS_ONLINE:
            uptime = (datetime.now() - worker.start_time).total_seconds()
        return ProcessInfo(
            pm_id=worker.pm_id,
            name=worker.name,
            pid=worker.pid,
            status=worker.status,
            cpu=worker.cpu_history[-1] if worker.cpu_history else 0.0,
            memory=memory,
            uptime=uptime,
            restarts=worker.total_restarts,
            instance=worker.instance,
            exec_mode=worker.spec.exec_mode,
        )

    async def describe(self, name: str) -> list[ProcessInfo]:
        workers = [w for w in self.workers.values() if w.name == name]
        return await asyncio.to_thread(lambda: [self.snapshot(w) for w in workers])

    async def list(self) -> list[ProcessInfo]:
        workers = list(self.workers.values())
        return await asyncio.to_thread(lambda: [self.snapshot(w) for w in workers])

    async def _monitor(self):
        while True:
            try:
                await self.check_workers()
            except Exception:
                logger.exception("Worker monitor iteration failed")
            await asyncio.sleep(self.monitor_interval)

    async def check_workers(self):
        """One monitor pass: restart crashed workers, sample CPU, rotate logs."""
        for worker in list(self.workers.values()):
            if worker.status != STATUS_ONLINE or worker._user_action_in_progress:
                continue

            if self._is_running(worker):
                if worker.start_time and worker.consecutive_failures > 0:
                    uptime_seconds = (datetime.now() - worker.start_time).total_seconds()
                    if uptime_seconds >= self.failure_reset_seconds:
                        worker.consecutive_failures = 0
                self.collect_cpu_usage(worker)
                if self.exceeds_memory_limit(worker):
                    logger.warning("[%s] Memory limit %s exceeded, restarting",
                                   worker.name, worker.spec.max_memory_restart)
                    await self._restart_worker(worker)
                continue

            logger.warning("[%s] Process died (PID %s)", worker.name, worker.pid)
            worker.process = None
            worker.pid = None
            worker.consecutive_failures += 1
            worker.last_restart = datetime.now()

            if not worker.spec.autorestart:
                worker.status = STATUS_STOPPED
                continue

            if worker.consecutive_failures >= self.max_failures:
                logger.error("[%s] Marked as errored after %d consecutive failures",
                             worker.name, self.max_failures)
                worker.is_broken = True
                worker.status = STATUS_ERRORED
                continue

            logger.info("[%s] Restarting in %ss (failure %d/%d)", worker.name, self.restart_delay,
                        worker.consecutive_failures, self.max_failures)
            worker.status = STATUS_LAUNCHING
            worker.total_restarts += 1
            await asyncio.sleep(self.restart_delay)
            if worker.status != STATUS_LAUNCHING or worker.pm_id not in self.workers:
                continue  # Stopped or deleted while waiting
            try:
                await self._start_worker(worker)
            except SupervisorError as e:
                logger.error("%s", e)

        for log_file in {path for w in self.workers.values() for path in self.log_paths(w.spec)}:
            self.rotate_log_if_needed(log_file)

    def collect_cpu_usage(self, worker: Worker):
        """Collect CPU usage for a worker and add to history."""
        pid = worker.pid
        if not pid:
            worker._psutil_process = None
            worker.cpu_history.append(0.0)
            return
        try:
            if worker._psutil_process is None or worker._psutil_process.pid != pid:
                worker._psutil_process = psutil.Process(pid)
            # CPU percent since last call, non-blocking
            worker.cpu_history.append(worker._psutil_process.cpu_percent(interval=None))
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            worker._psutil_process = None
            worker.cpu_history.append(0.0)

    def exceeds_memory_limit(self, worker: Worker) -> bool:
        limit = parse_memory(worker.spec.max_memory_restart)
        if not limit or not worker.pid:
            return False
        try:
            return psutil.Process(worker.pid).memory_info().rss > limit
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return False

    def rotate_log_if_needed(self, log_file: Path):
        """Copy the log to .log.1 and truncate it once it grows past the limit.

        The worker keeps writing to the same fd, now at position 0.
        """
        if not log_file.exists():
            return
        try:
            size_mb = log_file.stat().st_size / (1024 * 1024)
            if size_mb < self.max_log_size_mb:
                return
            backup_file = log_file.with_name(log_file.name + ".1")
            shutil.copy2(log_file, backup_file)
            os.truncate(log_file, 0)
            logger.info("Log rotated: %s (%.1fMB) -> %s", log_file.name, size_mb, backup_file.name)
        except OSError as e:
            logger.warning("Failed to rotate log %s: %s", log_file, e)

    def _watch(self, spec: LaunchSpec):
        root = Path(spec.cwd)
        if isinstance(spec.watch, (list, tuple)):
            paths = [p if Path(p).is_absolute() else root / p for p in spec.watch]
        else:
            paths = [root]
        handler = _RestartOnChange(self, spec.name, root, DEFAULT_IGNORE_WATCH + list(spec.ignore_watch or []))
        observer = Observer()
        for path in paths:
            if Path(path).exists():
                observer.schedule(handler, str(path), recursive=True)
            else:
                logger.warning("[%s] Watch path does not exist: %s", spec.name, path)
        observer.daemon = True
        observer.start()
        self._observers[spec.name] = observer
        logger.info("[%s] Watching %s", spec.name, ", ".join(str(p) for p in paths))

    def _unwatch(self, name: str):
        observer = self._observers.pop(name, None)
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)

    def schedule_watch_restart(self, name: str):
        """Called from the watchdog thread."""
        if self._loop is None or not self._connected:
            return
        asyncio.run_coroutine_threadsafe(self._watch_restart(name), self._loop)

    async def _watch_restart(self, name: str):
        try:
            await self.restart(name)
        except SupervisorError as e:
            logger.warning("[%s] Restart after file change failed: %s", name, e)

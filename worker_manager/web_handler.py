"""
JSON HTTP API for Worker Manager.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

import asyncio
import base64
import binascii
import json
import logging
from datetime import datetime
from http.server import BaseHTTPRequestHandler
from urllib.parse import urlparse, unquote

from .errors import ManagerError, NoFilesError, NotFoundError, ProcessLimitError, ValidationError

logger = logging.getLogger(__name__)

SHUTDOWN_DELAY_SECONDS = 0.1


class BadRequest(Exception):
    pass


def status_for(error: Exception) -> int:
    if isinstance(error, (ValidationError, BadRequest)):
        return 400
    if isinstance(error, (NotFoundError, NoFilesError)):
        return 404
    if isinstance(error, ProcessLimitError):
        return 409
    return 500


async def _delayed_shutdown(manager):
    await asyncio.sleep(SHUTDOWN_DELAY_SECONDS)
    await manager.force_shutdown()


def _log_shutdown_failure(future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error("Shutdown failed: %s", error, exc_info=error)


class WebHandler(BaseHTTPRequestHandler):
    manager = None  # Will be set by main()
    loop = None  # Event loop the manager runs on

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def _run(self, coro):
        """Run a manager coroutine on the event loop thread and wait for it."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result()

    def _send_json(self, status: int, payload: dict):
        payload = dict(payload)
        payload.setdefault("success", status < 400)
        payload["timestamp"] = datetime.now().isoformat()
        body = json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> dict:
        content_length = int(self.headers.get("Content-Length", 0) or 0)
        if content_length <= 0:
            return {}
        body = self.rfile.read(content_length)
        try:
            data = json.loads(body)
        except ValueError as e:
            raise BadRequest(f"Invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise BadRequest("Request body must be a JSON object")
        return data

    @staticmethod
    def _zip_options(data: dict):
        options = data.get("options")
        if options is not None and not isinstance(options, dict):
            raise BadRequest("options must be a JSON object")
        return options

    @staticmethod
    def _parse_id(segment: str) -> int:
        try:
            return int(segment)
        except ValueError:
            raise BadRequest(f"Invalid process ID: {segment}") from None

    def _dispatch(self, method: str):
        parts = [unquote(p) for p in urlparse(self.path).path.split("/") if p]
        try:
            handler = getattr(self, f"_{method}_{parts[0].replace('-', '_')}", None) if parts else None
            if handler is None or not handler(parts[1:]):
                self._send_json(404, {"message": f"Route {method.upper()} {self.path} not found"})
        except (ManagerError, BadRequest) as e:
            self._send_json(status_for(e), {"message": str(e)})
        except Exception as e:
            logger.exception("Error handling %s %s", method.upper(), self.path)
            self._send_json(500, {"message": f"Internal error: {e}"})

    def do_GET(self):
        self._dispatch("get")

    def do_POST(self):
        self._dispatch("post")

    def do_DELETE(self):
        self._dispatch("delete")

    # Route handlers return True when the path matched
    def _get_health(self, rest):
        if rest:
            return False
        self._send_json(200, {"status": "ok", "activeProcesses": self.manager.get_active_process_count()})
        return True

    def _post_init(self, rest):
        if rest:
            return False
        self._run(self.manager.init())
        self._send_json(200, {"message": "Supervisor connected"})
        return True

    def _post_shutdown(self, rest):
        if rest:
            return False
        self._send_json(200, {"message": "Shutting down"})
        future = asyncio.run_coroutine_threadsafe(_delayed_shutdown(self.manager), self.loop)
        future.add_done_callback(_log_shutdown_failure)
        return True

    def _get_scripts(self, rest):
        if rest:
            return False
        scripts = self._run(self.manager.get_available_scripts())
        self._send_json(200, {"scripts": scripts, "directory": self.manager.get_scripts_directory()})
        return True

    def _get_statistics(self, rest):
        if rest:
            return False
        stats = self._run(self.manager.get_results_statistics())
        self._send_json(200, {"statistics": stats.to_dict()})
        return True

    def _get_results(self, rest):
        if rest:
            return False
        results = self._run(self.manager.get_all_process_results())
        self._send_json(200, {"results": [r.to_dict() for r in results]})
        return True

    def _post_results(self, rest):
        if rest != ["zip"]:
            return False
        data = self._read_json()
        path = self._run(self.manager.create_all_results_zip(data.get("outputPath"), self._zip_options(data)))
        self._send_json(200, {"zipPath": path})
        return True

    def _delete_results(self, rest):
        if rest:
            return False
        self._run(self.manager.clear_all_results())
        self._send_json(200, {"message": "All results cleared"})
        return True

    def _get_processes(self, rest):
        if not rest:
            processes = self._run(self.manager.get_all_processes())
            self._send_json(200, {"processes": [p.to_dict() for p in processes]})
        elif rest == ["ids"]:
            ids = [{"pmId": pm_id, "name": self.manager.get_process_name(pm_id)}
                   for pm_id in self.manager.get_process_ids()]
            self._send_json(200, {"processes": ids})
        elif len(rest) == 1:
            pm_id = self._parse_id(rest[0])
            info = self._run(self.manager.get_process_info(pm_id))
            if info is None:
                self._send_json(404, {"message": f"Process with ID {pm_id} not found"})
            else:
                self._send_json(200, {"process": info.to_dict()})
        elif len(rest) == 2 and rest[1] == "status":
            pm_id = self._parse_id(rest[0])
            status = self._run(self.manager.get_process_status(pm_id))
            self._send_json(200, {"pmId": pm_id, "status": status})
        elif len(rest) == 2 and rest[1] == "results":
            results = self._run(self.manager.get_process_results(self._parse_id(rest[0])))
            self._send_json(200, {"results": results.to_dict()})
        elif len(rest) == 3 and rest[1:] == ["results", "files"]:
            files = self._run(self.manager.get_process_result_files(self._parse_id(rest[0])))
            self._send_json(200, {"files": [f.to_dict() for f in files]})
        else:
            return False
        return True

    def _post_processes(self, rest):
        if not rest:
            data = self._read_json()
            pm_id = self._run(self.manager.create_process(data))
            self._send_json(201, {"pmId": pm_id, "message": f"Process {data.get('name')} created"})
        elif rest == ["stop-all"]:
            self._run(self.manager.stop_all_processes())
            self._send_json(200, {"message": "All processes stopped"})
        elif rest == ["restart-all"]:
            self._run(self.manager.restart_all_processes())
            self._send_json(200, {"message": "All processes restarted"})
        elif len(rest) == 2 and rest[1] in ("start", "stop", "restart"):
            pm_id = self._parse_id(rest[0])
            action = rest[1]
            if action == "start":
                self._run(self.manager.start_process(pm_id))
            elif action == "stop":
                self._run(self.manager.stop_process(pm_id))
            else:
                self._run(self.manager.restart_process(pm_id))
            self._send_json(200, {"message": f"Process {pm_id} {action} completed"})
        elif len(rest) == 2 and rest[1] == "results":
            self._save_result(self._parse_id(rest[0]))
        elif len(rest) == 3 and rest[1:] == ["results", "zip"]:
            pm_id = self._parse_id(rest[0])
            data = self._read_json()
            path = self._run(self.manager.create_process_results_zip(
                pm_id, data.get("outputPath"), self._zip_options(data)))
            self._send_json(200, {"zipPath": path})
        else:
            return False
        return True

    def _delete_processes(self, rest):
        if len(rest) == 1:
            pm_id = self._parse_id(rest[0])
            self._run(self.manager.delete_process(pm_id))
            self._send_json(200, {"message": f"Process {pm_id} deleted"})
        elif len(rest) == 2 and rest[1] == "results":
            pm_id = self._parse_id(rest[0])
            self._run(self.manager.clear_process_results(pm_id))
            self._send_json(200, {"message": f"Results of process {pm_id} cleared"})
        elif len(rest) == 3 and rest[1] == "results":
            pm_id = self._parse_id(rest[0])
            self._run(self.manager.delete_result_file(pm_id, rest[2]))
            self._send_json(200, {"message": f"Result file {rest[2]} deleted"})
        else:
            return False
        return True

    def _save_result(self, pm_id: int):
        data = self._read_json()
        file_name = data.get("fileName")
        content = data.get("content")
        encoding = data.get("encoding", "utf8")
        if not file_name or content is None:
            raise BadRequest("fileName and content are required")
        if not isinstance(content, str):
            raise BadRequest("content must be a string")

        if encoding == "base64":
            try:
                content = base64.b64decode(content, validate=True)
            except binascii.Error as e:
                raise BadRequest(f"Invalid base64 content: {e}") from e
        elif encoding not in ("utf8", "utf-8"):
            raise BadRequest(f"Unsupported encoding: {encoding}")

        path = self._run(self.manager.save_result_file(pm_id, file_name, content))
        self._send_json(201, {"filePath": path})

"""Privileged provisioner daemon (Unix socket, newline-delimited JSON)."""

from __future__ import annotations

import asyncio
import grp
import hmac
import json
import logging
import os
import stat
from pathlib import Path
from typing import Callable, Dict, Optional, Set, Union

from core.command_allowlist import DEFAULT_ALLOWLIST
from core.provisioner_executor import ProvisionerExecutor
from utils.constants import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    DEFAULT_MAX_REQUEST_BYTES,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_SOCKET_GROUP,
    DEFAULT_SOCKET_MODE,
)

logger = logging.getLogger(__name__)


class ProvisionerServer:
    """Authenticate, validate and execute one command request per connection."""

    def __init__(
        self,
        *,
        socket_path: str,
        token: str,
        executor=None,
        validator: Optional[Callable[[str, list], Optional[str]]] = None,
        socket_group: Optional[str] = DEFAULT_SOCKET_GROUP,
        socket_mode: Optional[Union[int, str]] = DEFAULT_SOCKET_MODE,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES,
    ):
        self.token = str(token or "")
        if not self.token:
            raise ValueError("MC_PROVISIONER_TOKEN is required")
        self.socket_path = str(socket_path)
        self.executor = executor or ProvisionerExecutor()
        self.validator = validator or DEFAULT_ALLOWLIST.validate
        self.socket_group = str(socket_group).strip() if socket_group else None
        self.socket_mode = self._normalize_mode(socket_mode)
        self.request_timeout_seconds = float(request_timeout_seconds)
        self.max_request_bytes = max(1024, int(max_request_bytes))
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Set[asyncio.StreamWriter] = set()
        self._stopping = False

    async def start(self) -> None:
        self._stopping = False
        Path(self.socket_path).parent.mkdir(parents=True, exist_ok=True)
        self._remove_existing_socket(require_socket_type=True)
        self._server = await asyncio.start_unix_server(
            self._handle_conn,
            path=self.socket_path,
            limit=self.max_request_bytes,
        )
        self._apply_socket_permissions()
        logger.info("Provisioner listening on %s", self.socket_path)

    async def stop(self) -> None:
        self._stopping = True
        srv = self._server
        if srv:
            srv.close()

        writers = list(self._connections)
        for writer in writers:
            try:
                writer.close()
            except Exception:
                pass
        if writers:
            await asyncio.gather(*(self._wait_writer_closed(w) for w in writers), return_exceptions=True)
        self._connections.clear()

        if srv:
            try:
                await asyncio.wait_for(srv.wait_closed(), timeout=2.0)
            except Exception:
                pass
            self._server = None

        try:
            self._remove_existing_socket(require_socket_type=True)
        except RuntimeError:
            logger.warning("Leaving non-socket file at %s in place", self.socket_path)

    async def _handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._stopping:
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass
            return

        self._connections.add(writer)
        try:
            try:
                raw = await asyncio.wait_for(reader.readline(), timeout=self.request_timeout_seconds)
            except asyncio.TimeoutError:
                await self._reply(writer, {"ok": False, "error": "Request timeout"})
                return
            except (ValueError, asyncio.LimitOverrunError):
                await self._reply(writer, {"ok": False, "error": "Request too large"})
                return
            if not raw:
                return
            try:
                req = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, ValueError):
                await self._reply(writer, {"ok": False, "error": "Invalid JSON"})
                return

            if not self._is_authorized(req):
                logger.warning("Rejected unauthorized provisioner request")
                await self._reply(writer, {"ok": False, "error": "Unauthorized"})
                return

            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, self._process_request, req)
            await self._reply(writer, result)
        except Exception:
            logger.exception("Provisioner request handler failed")
            try:
                await self._reply(writer, {"ok": False, "error": "Internal error"})
            except Exception:
                pass
        finally:
            self._connections.discard(writer)
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    def _is_authorized(self, req) -> bool:
        if not isinstance(req, dict):
            return False
        supplied = req.get("token")
        if not isinstance(supplied, str) or not supplied:
            return False
        return hmac.compare_digest(supplied.encode("utf-8"), self.token.encode("utf-8"))

    def _process_request(self, req: dict) -> Dict[str, object]:
        command = str(req.get("command") or "")
        raw_args = req.get("args")
        if raw_args is None:
            args = []
        elif isinstance(raw_args, list):
            args = [str(a) for a in raw_args]
        else:
            args = raw_args
        dry_run = bool(req.get("dryRun"))
        timeout_ms = req.get("timeoutMs") or DEFAULT_COMMAND_TIMEOUT_MS
        step_key = req.get("stepKey")

        reason = self.validator(command, args)
        if reason:
            logger.warning("Rejected %s (step=%s): %s", command or "<empty>", step_key, reason)
            return {"ok": False, "error": reason}

        if dry_run:
            logger.info("Dry-run %s %s (step=%s)", command, " ".join(args), step_key)
            return {"ok": True, "code": 0, "stdout": "", "stderr": "", "skipped": True}

        logger.info("Executing %s %s (step=%s)", command, " ".join(args), step_key)
        result = self.executor.run_with_retry(command, args, timeout_ms)
        response: Dict[str, object] = {
            "ok": bool(result.get("ok")),
            "code": result.get("code"),
            "stdout": result.get("stdout", ""),
            "stderr": result.get("stderr", ""),
            "skipped": False,
        }
        if not response["ok"]:
            response["error"] = f"Command failed: {command}"
            logger.warning("Command %s exited with code %s", command, response["code"])
        return response

    async def _reply(self, writer: asyncio.StreamWriter, payload: Dict[str, object]) -> None:
        wire = json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"
        writer.write(wire.encode("utf-8"))
        await writer.drain()

    @staticmethod
    def _normalize_mode(mode: Optional[Union[int, str]]) -> Optional[int]:
        if mode is None:
            return None
        if isinstance(mode, int):
            return mode
        text = str(mode).strip().lower()
        if not text:
            return None
        if text.startswith("0o"):
            text = text[2:]
        return int(text, 8)

    def _resolve_group_gid(self) -> Optional[int]:
        if not self.socket_group:
            return None
        try:
            return int(grp.getgrnam(self.socket_group).gr_gid)
        except KeyError:
            logger.warning("Socket group %s not found; keeping default ownership", self.socket_group)
            return None

    def _apply_socket_permissions(self) -> None:
        p = Path(self.socket_path)
        if not p.exists():
            return
        if self.socket_mode is not None:
            os.chmod(p, self.socket_mode)
        gid = self._resolve_group_gid()
        if gid is None:
            return
        uid = 0 if os.geteuid() == 0 else -1
        try:
            os.chown(p, uid, gid)
        except PermissionError:
            logger.warning("Could not chown %s to group %s", self.socket_path, self.socket_group)

    def _remove_existing_socket(self, *, require_socket_type: bool) -> None:
        p = Path(self.socket_path)
        try:
            st = os.lstat(p)
        except FileNotFoundError:
            return
        if require_socket_type and not stat.S_ISSOCK(st.st_mode):
            raise RuntimeError(f"socket_path_not_socket:{self.socket_path}")
        try:
            os.unlink(p)
        except FileNotFoundError:
            return

    @staticmethod
    async def _wait_writer_closed(writer: asyncio.StreamWriter, timeout: float = 2.0) -> None:
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=timeout)
        except Exception:
            pass

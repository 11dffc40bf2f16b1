"""Client for the privileged provisioner daemon over its local Unix socket."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Dict, List, Optional

from core.command_allowlist import command_basename
from core.provisioner_executor import ProvisionerExecutor
from utils.constants import (
    CLIENT_TIMEOUT_GRACE_SECONDS,
    DEFAULT_SOCKET_PATH,
    DEFAULT_STEP_TIMEOUT_MS,
    ENV_SOCKET_PATH,
    ENV_TOKEN,
    USERADD_MAX_ATTEMPTS,
    USERADD_RETRY_DELAY_SECONDS,
)


class ProvisionerClient:
    def __init__(self, socket_path: Optional[str] = None, token: Optional[str] = None):
        self.socket_path = str(socket_path or os.environ.get(ENV_SOCKET_PATH) or DEFAULT_SOCKET_PATH)
        self.token = str(token if token is not None else os.environ.get(ENV_TOKEN, ""))
        if not self.token:
            raise ValueError("MC_PROVISIONER_TOKEN is not configured")

    @staticmethod
    def _exc_text(err: Exception) -> str:
        text = str(err or "").strip()
        if text:
            return text
        return err.__class__.__name__

    @staticmethod
    def _failure(error: str) -> Dict[str, object]:
        return {"ok": False, "code": 1, "stdout": "", "stderr": "", "skipped": False, "error": error}

    @staticmethod
    def response_timeout_seconds(command: str, timeout_ms) -> float:
        """How long to wait for the daemon, including its useradd retries."""
        per_attempt = ProvisionerExecutor.resolve_timeout_ms(timeout_ms) / 1000.0
        if command_basename(command) != "useradd":
            return per_attempt + CLIENT_TIMEOUT_GRACE_SECONDS
        attempts = USERADD_MAX_ATTEMPTS
        return (
            attempts * per_attempt
            + (attempts - 1) * USERADD_RETRY_DELAY_SECONDS
            + CLIENT_TIMEOUT_GRACE_SECONDS
        )

    def _build_request(
        self,
        command: str,
        args: List[str],
        timeout_ms: int,
        dry_run: bool,
        step_key: Optional[str],
    ) -> dict:
        req = {
            "token": self.token,
            "command": str(command),
            "args": [str(a) for a in args],
            "timeoutMs": int(timeout_ms),
            "dryRun": bool(dry_run),
        }
        if step_key:
            req["stepKey"] = str(step_key)
        return req

    async def run_command(
        self,
        command: str,
        args: List[str],
        *,
        timeout_ms: int = DEFAULT_STEP_TIMEOUT_MS,
        dry_run: bool = False,
        step_key: Optional[str] = None,
    ) -> Dict[str, object]:
        """Send one command request and return the daemon's Command Result."""
        req = self._build_request(command, args, timeout_ms, dry_run, step_key)
        timeout_seconds = self.response_timeout_seconds(command, timeout_ms)

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(self.socket_path),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._failure("Provisioner socket timeout")
        except Exception as e:
            return self._failure(f"Provisioner socket error: {self._exc_text(e)}")

        try:
            wire = json.dumps(req, ensure_ascii=False, separators=(",", ":")) + "\n"
            writer.write(wire.encode("utf-8"))
            await asyncio.wait_for(writer.drain(), timeout=timeout_seconds)
            raw = await asyncio.wait_for(reader.readline(), timeout=timeout_seconds)
            if not raw:
                return self._failure("Provisioner closed connection without a response")
            try:
                data = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, ValueError) as e:
                return self._failure(f"Invalid provisioner response: {self._exc_text(e)}")
            if not isinstance(data, dict):
                return self._failure("Invalid provisioner response: not an object")
            data["ok"] = bool(data.get("ok"))
            if not isinstance(data.get("code"), int):
                data["code"] = 0 if data["ok"] else 1
            data.setdefault("stdout", "")
            data.setdefault("stderr", "")
            data["skipped"] = bool(data.get("skipped"))
            return data
        except asyncio.TimeoutError:
            return self._failure("Provisioner socket timeout")
        except Exception as e:
            return self._failure(f"Provisioner socket error: {self._exc_text(e)}")
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

"""Privileged executor for allow-listed provisioning commands."""

from __future__ import annotations

import logging
import subprocess
import time
from typing import Callable, Dict, List, Optional

from core.command_allowlist import command_basename
from utils.constants import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    MIN_COMMAND_TIMEOUT_MS,
    PASSWD_LOCK_RE,
    SPAWN_ERROR_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    TIMEOUT_MARKER,
    USERADD_MAX_ATTEMPTS,
    USERADD_RETRY_DELAY_SECONDS,
)

logger = logging.getLogger(__name__)


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class ProvisionerExecutor:
    """Spawn one process per call, never through a shell.

    Callers validate first; this class only enforces the timeout and the
    narrow useradd retry policy.
    """

    def __init__(
        self,
        *,
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        max_useradd_attempts: int = USERADD_MAX_ATTEMPTS,
        retry_delay_seconds: float = USERADD_RETRY_DELAY_SECONDS,
    ):
        self._runner = runner or subprocess.run
        self._sleep = sleep or time.sleep
        self.max_useradd_attempts = max(1, int(max_useradd_attempts))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))

    @staticmethod
    def resolve_timeout_ms(timeout_ms) -> int:
        try:
            value = int(timeout_ms)
        except (TypeError, ValueError, OverflowError):
            value = DEFAULT_COMMAND_TIMEOUT_MS
        if value <= 0:
            value = DEFAULT_COMMAND_TIMEOUT_MS
        return max(MIN_COMMAND_TIMEOUT_MS, value)

    def execute(self, command: str, args: List[str], timeout_ms=None) -> Dict[str, object]:
        timeout_seconds = self.resolve_timeout_ms(timeout_ms) / 1000.0
        argv = [str(command), *[str(a) for a in args]]
        try:
            completed = self._runner(
                argv,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout_seconds,
                shell=False,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            # subprocess.run has already killed and reaped the child.
            logger.warning("Command %s timed out after %.1fs", command, timeout_seconds)
            return {
                "ok": False,
                "code": TIMEOUT_EXIT_CODE,
                "stdout": _as_text(e.stdout),
                "stderr": f"{_as_text(e.stderr)}\n{TIMEOUT_MARKER}",
            }
        except (OSError, ValueError) as e:
            logger.warning("Command %s failed to spawn: %s", command, e)
            return {
                "ok": False,
                "code": SPAWN_ERROR_EXIT_CODE,
                "stdout": "",
                "stderr": f"\n{e}",
            }

        code = int(completed.returncode)
        return {
            "ok": code == 0,
            "code": code,
            "stdout": _as_text(completed.stdout),
            "stderr": _as_text(completed.stderr),
        }

    @staticmethod
    def is_transient_failure(command: str, result: Dict[str, object]) -> bool:
        if command_basename(command) != "useradd":
            return False
        return bool(PASSWD_LOCK_RE.search(str(result.get("stderr") or "")))

    def run_with_retry(self, command: str, args: List[str], timeout_ms=None) -> Dict[str, object]:
        max_attempts = self.max_useradd_attempts if command_basename(command) == "useradd" else 1
        result: Dict[str, object] = {}
        for attempt in range(1, max_attempts + 1):
            result = self.execute(command, args, timeout_ms)
            if result.get("ok"):
                return result
            if attempt == max_attempts or not self.is_transient_failure(command, result):
                return result
            logger.info(
                "%s hit passwd lock contention (attempt %d/%d), retrying in %.1fs",
                command,
                attempt,
                max_attempts,
                self.retry_delay_seconds,
            )
            self._sleep(self.retry_delay_seconds)
        return result

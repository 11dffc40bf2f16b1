"""Global fixtures for the provisioner test suite."""

import json
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from core.provision_jobs import ProvisioningManager, ProvisioningSettings
from core.provision_store import ProvisionStore


# ── FakeProvisionerClient ──


class FakeProvisionerClient:
    """Test double for ProvisionerClient that records every request.

    ``results`` maps step keys to scripted Command Results (or exceptions to
    raise); unscripted steps succeed, flagged ``skipped`` for dry runs.
    """

    def __init__(self, results: Optional[Dict[str, object]] = None, on_call: Optional[Callable[[str], None]] = None):
        self.calls: List[dict] = []
        self.results = results or {}
        self.on_call = on_call

    async def run_command(self, command, args, *, timeout_ms, dry_run, step_key):
        self.calls.append(
            {"command": command, "args": list(args), "timeout_ms": timeout_ms, "dry_run": dry_run, "step_key": step_key}
        )
        if self.on_call:
            self.on_call(step_key)
        if step_key in self.results:
            result = self.results[step_key]
            if isinstance(result, BaseException):
                raise result
            return dict(result)
        return {"ok": True, "code": 0, "stdout": "", "stderr": "", "skipped": bool(dry_run)}

    @property
    def step_keys(self) -> List[str]:
        return [c["step_key"] for c in self.calls]


# ── ListAuditLogger ──


class ListAuditLogger:
    """Stands in for the JSONL audit logger and keeps decoded records."""

    def __init__(self):
        self.records: List[dict] = []

    def info(self, line: str):
        self.records.append(json.loads(line))

    @property
    def actions(self) -> List[str]:
        return [r["action"] for r in self.records]


# ── Fixtures ──


@pytest.fixture
def make_manager(tmp_path):
    """Factory for a manager whose state and artifacts live under tmp_path."""

    def _make(client=None, audit_logger=None, **settings) -> ProvisioningManager:
        s = ProvisioningSettings(data_dir=str(tmp_path / "data"), **settings)
        store = ProvisionStore(Path(s.state_file))
        return ProvisioningManager(
            store,
            client if client is not None else FakeProvisionerClient(),
            s,
            audit_logger=audit_logger,
            runner_host="runner-1",
        )

    return _make


@pytest.fixture
def sample_config(tmp_path):
    """Standard test configuration dict."""
    return {
        "provisioner": {
            "socket_path": "/tmp/mc-provisioner-test.sock",
            "token": "cfg-token",
            "group": "ops",
            "socket_mode": "0640",
            "request_timeout_seconds": 5,
            "max_request_bytes": 4096,
        },
        "provisioning": {
            "data_dir": str(tmp_path / "data"),
            "allow_live_execution": False,
            "require_two_person_rule": True,
        },
        "logging": {"level": "DEBUG"},
    }

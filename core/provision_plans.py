"""Ordered step plans for tenant bootstrap, update and decommission jobs.

A plan is data: a list of step dicts shaped like a command request
(``key``, ``title``, ``command``, ``args``, ``timeout_ms``). Plans are stored
on the job record and replayed in order by the job runner.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from core.command_allowlist import CommandAllowlist
from utils.constants import (
    GATEWAY_ENV_FILENAME,
    GATEWAY_UNIT_TARGET,
    MAX_PLAN_STEPS,
    TENANT_ENV_DIR,
)

USERADD = "/usr/sbin/useradd"
USERDEL = "/usr/sbin/userdel"
INSTALL = "/usr/bin/install"
CP = "/usr/bin/cp"
CHOWN = "/usr/bin/chown"
RM = "/usr/bin/rm"
SYSTEMCTL = "/usr/bin/systemctl"


def _step(key: str, title: str, command: str, args: List[str], timeout_ms: int) -> Dict[str, object]:
    return {
        "key": key,
        "title": title,
        "command": command,
        "args": list(args),
        "timeout_ms": int(timeout_ms),
    }


def tenant_env_path(linux_user: str) -> str:
    return f"{TENANT_ENV_DIR}/{linux_user}.env"


def gateway_service_name(linux_user: str) -> str:
    return f"openclaw-gateway@{linux_user}.service"


def _env_install_steps(linux_user: str, artifact_dir: str) -> Tuple[List[Dict[str, object]], List[Dict[str, object]]]:
    return [
        _step(
            "ensure-openclaw-tenants-dir",
            f"Ensure {TENANT_ENV_DIR} exists",
            INSTALL,
            ["-d", "-m", "0750", "-o", "root", "-g", "root", TENANT_ENV_DIR],
            5000,
        ),
    ], [
        _step(
            "install-tenant-gateway-env",
            "Install tenant gateway env file",
            CP,
            ["-f", f"{artifact_dir}/{GATEWAY_ENV_FILENAME}", tenant_env_path(linux_user)],
            5000,
        ),
    ]


def _service_start_steps(linux_user: str) -> List[Dict[str, object]]:
    return [
        _step("systemd-daemon-reload", "Reload systemd units", SYSTEMCTL, ["daemon-reload"], 10000),
        _step(
            "enable-start-gateway",
            f"Enable/start {gateway_service_name(linux_user)}",
            SYSTEMCTL,
            ["enable", "--now", gateway_service_name(linux_user)],
            5000,
        ),
    ]


def build_bootstrap_plan(
    tenant,
    *,
    template_openclaw_json: str,
    gateway_unit_template: str,
    artifact_dir: str,
) -> List[Dict[str, object]]:
    user = tenant.linux_user
    home_dir = str(Path(tenant.openclaw_home).parent)
    ensure_dir, install_env = _env_install_steps(user, artifact_dir)
    return [
        _step("create-linux-user", f"Create linux user {user}", USERADD, ["-m", "-s", "/bin/bash", user], 10000),
        _step(
            "create-openclaw-state",
            f"Create OpenClaw state directory {tenant.openclaw_home}",
            INSTALL,
            ["-d", "-m", "0750", "-o", user, "-g", user, tenant.openclaw_home],
            10000,
        ),
        _step(
            "create-workspace-root",
            f"Create workspace root {tenant.workspace_root}",
            INSTALL,
            ["-d", "-m", "0750", "-o", user, "-g", user, tenant.workspace_root],
            10000,
        ),
        _step(
            "seed-openclaw-template",
            "Seed base OpenClaw config scaffold",
            CP,
            ["-n", template_openclaw_json, f"{tenant.openclaw_home}/openclaw.json"],
            12000,
        ),
        _step("set-owner-home", f"Ensure ownership of {home_dir}", CHOWN, ["-R", f"{user}:{user}", home_dir], 20000),
        *ensure_dir,
        _step(
            "install-gateway-systemd-template",
            "Install openclaw-gateway@.service template",
            CP,
            ["-n", gateway_unit_template, GATEWAY_UNIT_TARGET],
            5000,
        ),
        *install_env,
        *_service_start_steps(user),
    ]


def build_update_plan(tenant, *, artifact_dir: str) -> List[Dict[str, object]]:
    """Re-render the tenant env file and make sure its gateway is enabled."""
    ensure_dir, install_env = _env_install_steps(tenant.linux_user, artifact_dir)
    return [*ensure_dir, *install_env, *_service_start_steps(tenant.linux_user)]


def build_decommission_plan(
    tenant,
    *,
    remove_linux_user: bool = False,
    remove_state_dirs: bool = False,
) -> List[Dict[str, object]]:
    user = tenant.linux_user
    plan = [
        _step(
            "disable-stop-gateway",
            f"Disable/stop {gateway_service_name(user)}",
            SYSTEMCTL,
            ["disable", "--now", gateway_service_name(user)],
            10000,
        ),
        _step("remove-tenant-gateway-env", f"Remove {tenant_env_path(user)}", RM, ["-f", tenant_env_path(user)], 5000),
    ]

    # userdel -r already removes the home directory.
    if remove_state_dirs and not remove_linux_user:
        plan.append(_step("remove-openclaw-state-dir", f"Remove {tenant.openclaw_home}", RM, ["-rf", tenant.openclaw_home], 10000))
        plan.append(_step("remove-workspace-dir", f"Remove {tenant.workspace_root}", RM, ["-rf", tenant.workspace_root], 10000))

    if remove_linux_user:
        plan.append(_step("remove-linux-user", f"Remove linux user {user}", USERDEL, ["-r", user], 15000))

    return plan


def check_plan(plan: List[Dict[str, object]], allowlist: Optional[CommandAllowlist] = None) -> None:
    """Raise ValueError unless every step would pass the daemon's allow-list."""
    if not plan:
        raise ValueError("Job plan is empty")
    if len(plan) > MAX_PLAN_STEPS:
        raise ValueError(f"Job plan has {len(plan)} steps; at most {MAX_PLAN_STEPS} are allowed")
    checker = allowlist or CommandAllowlist()
    seen = set()
    for step in plan:
        key = str(step.get("key") or "")
        if not key or key in seen:
            raise ValueError(f"Plan step key missing or duplicated: {key!r}")
        seen.add(key)
        reason = checker.validate(step.get("command"), step.get("args"))
        if reason:
            raise ValueError(f"Plan step {key} rejected: {reason}")


def render_gateway_env(tenant) -> str:
    return "\n".join(
        [
            f"TENANT_SLUG={tenant.slug}",
            f"TENANT_USER={tenant.linux_user}",
            f"OPENCLAW_HOME={tenant.openclaw_home}",
            f"OPENCLAW_STATE_DIR={tenant.openclaw_home}",
            f"OPENCLAW_CONFIG_PATH={tenant.openclaw_home}/openclaw.json",
            f"OPENCLAW_GATEWAY_PORT={tenant.gateway_port}",
            "",
        ]
    )


def write_gateway_env(tenant, artifact_dir: str) -> Path:
    """Write the tenant env artifact that the install-tenant-gateway-env step copies."""
    port = tenant.gateway_port
    if not isinstance(port, int) or port < 1024 or port > 65535:
        raise ValueError("Missing/invalid gateway_port for gateway unit provisioning")
    directory = Path(artifact_dir)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / GATEWAY_ENV_FILENAME
    tmp = target.with_name(f".{target.name}.tmp")
    fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(render_gateway_env(tenant))
    os.chmod(tmp, 0o600)
    os.replace(tmp, target)
    return target

#!/usr/bin/env python3
"""Operator CLI for tenant provisioning jobs (queue, approve, run, inspect)."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, is_dataclass
from pathlib import Path

# Allow running the script from any current working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.audit import setup_audit_logger
from core.provision_jobs import JOB_STATUSES, build_manager
from core.provisioner_client import ProvisionerClient
from utils.helpers import load_config


def _default_actor() -> str:
    return os.environ.get("MC_ACTOR") or os.environ.get("SUDO_USER") or os.environ.get("USER") or ""


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Manage Mission Control tenant provisioning jobs")
    p.add_argument("--config", default=None, help="Path to config YAML file")
    p.add_argument("--actor", default=_default_actor(), help="Operator name recorded on jobs (default: $MC_ACTOR/$USER)")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("tenants", help="List tenants with their latest job")

    jobs = sub.add_parser("jobs", help="List jobs, newest first")
    jobs.add_argument("--tenant-id", type=int, default=None)
    jobs.add_argument("--status", choices=JOB_STATUSES, default=None)
    jobs.add_argument("--limit", type=int, default=100)

    show = sub.add_parser("show", help="Show one job with its events")
    show.add_argument("job_id", type=int)

    boot = sub.add_parser("bootstrap", help="Register a tenant and queue its bootstrap job")
    boot.add_argument("slug")
    boot.add_argument("--display-name", required=True)
    boot.add_argument("--gateway-port", type=int, required=True)
    boot.add_argument("--dashboard-port", type=int, default=None)
    boot.add_argument("--linux-user", default=None)
    boot.add_argument("--plan-tier", default="standard")
    boot.add_argument("--owner-gateway", default=None)
    boot.add_argument("--execute", action="store_true", help="Queue a live job instead of a dry run")

    update = sub.add_parser("update", help="Queue an env refresh / gateway restart job")
    update.add_argument("tenant_id", type=int)
    update.add_argument("--gateway-port", type=int, default=None)
    update.add_argument("--execute", action="store_true")

    decom = sub.add_parser("decommission", help="Queue a decommission job")
    decom.add_argument("tenant_id", type=int)
    decom.add_argument("--remove-linux-user", action="store_true")
    decom.add_argument("--remove-state-dirs", action="store_true")
    decom.add_argument("--reason", default=None)
    decom.add_argument("--execute", action="store_true")

    for name in ("request-approval", "approve", "reject", "cancel"):
        t = sub.add_parser(name, help=f"{name.replace('-', ' ').capitalize()} a job")
        t.add_argument("job_id", type=int)
        t.add_argument("--reason", default=None)

    run = sub.add_parser("run", help="Execute an approved job through the provisioner daemon")
    run.add_argument("job_id", type=int)
    run.add_argument("--socket", default=None, help="Override provisioner socket path")
    return p


def _jsonable(value):
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _print(value) -> None:
    print(json.dumps(_jsonable(value), ensure_ascii=False, indent=2, sort_keys=True))


def _dispatch(manager, args) -> int:
    cmd = args.command
    if cmd == "tenants":
        _print(manager.list_tenants())
    elif cmd == "jobs":
        _print(manager.list_jobs(tenant_id=args.tenant_id, status=args.status, limit=args.limit))
    elif cmd == "show":
        job = manager.describe_job(args.job_id)
        if job is None:
            print(f"job not found: {args.job_id}", file=sys.stderr)
            return 1
        _print(job)
    elif cmd == "bootstrap":
        tenant, job = manager.create_tenant_and_bootstrap_job(
            {
                "slug": args.slug,
                "display_name": args.display_name,
                "linux_user": args.linux_user,
                "gateway_port": args.gateway_port,
                "dashboard_port": args.dashboard_port,
                "plan_tier": args.plan_tier,
                "owner_gateway": args.owner_gateway,
                "dry_run": not args.execute,
            },
            args.actor,
        )
        _print({"tenant": tenant, "job": job})
    elif cmd == "update":
        _print(
            manager.create_update_job(
                args.tenant_id,
                {"gateway_port": args.gateway_port, "dry_run": not args.execute},
                args.actor,
            )
        )
    elif cmd == "decommission":
        _print(
            manager.create_decommission_job(
                args.tenant_id,
                {
                    "remove_linux_user": args.remove_linux_user,
                    "remove_state_dirs": args.remove_state_dirs,
                    "reason": args.reason,
                    "dry_run": not args.execute,
                },
                args.actor,
            )
        )
    elif cmd == "run":
        manager.client = ProvisionerClient(socket_path=args.socket)
        _print(asyncio.run(manager.run_job(args.job_id, args.actor)))
    else:
        action = cmd.replace("-", "_")
        _print(manager.transition(args.job_id, args.actor, action, args.reason))
    return 0


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config(args.config) if args.config else {}
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    manager = build_manager(config, audit_logger=setup_audit_logger(config))
    try:
        return _dispatch(manager, args)
    except ValueError as e:
        print(f"ERROR {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())

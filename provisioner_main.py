#!/usr/bin/env python3
"""Privileged provisioner daemon entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from core.command_allowlist import CommandAllowlist
from core.provisioner_executor import ProvisionerExecutor
from core.provisioner_service import ProvisionerServer
from utils.constants import (
    DEFAULT_MAX_REQUEST_BYTES,
    DEFAULT_REPO_ROOT,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_SOCKET_GROUP,
    DEFAULT_SOCKET_MODE,
    DEFAULT_SOCKET_PATH,
    DEFAULT_TEMPLATE_OPENCLAW_JSON,
    ENV_REPO_ROOT,
    ENV_SOCKET_GROUP,
    ENV_SOCKET_PATH,
    ENV_TEMPLATE_OPENCLAW_JSON,
    ENV_TOKEN,
)
from utils.helpers import load_config


def parse_cli_args(argv=None):
    parser = argparse.ArgumentParser(description="Mission Control privileged provisioner daemon")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config YAML file (optional; environment variables suffice)",
    )
    parser.add_argument(
        "--socket",
        default=None,
        help="Override Unix socket path",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Validate config and print resolved provisioner settings, then exit",
    )
    return parser.parse_args(argv)


def setup_logging(config: dict) -> None:
    log_conf = config.get("logging", {}) or {}
    log_level = str(log_conf.get("level", "INFO")).upper()
    level = getattr(logging, log_level, logging.INFO)
    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = log_conf.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        handlers=handlers,
    )


def build_server(config: dict, args, environ=None) -> ProvisionerServer:
    env = os.environ if environ is None else environ
    prov_cfg = config.get("provisioner", {}) or {}

    socket_path = str(
        args.socket or env.get(ENV_SOCKET_PATH) or prov_cfg.get("socket_path") or DEFAULT_SOCKET_PATH
    )
    token = str(env.get(ENV_TOKEN) or prov_cfg.get("token") or "").strip()
    if not token:
        raise ValueError("MC_PROVISIONER_TOKEN is required")
    group = env.get(ENV_SOCKET_GROUP) or prov_cfg.get("group") or DEFAULT_SOCKET_GROUP

    allowlist = CommandAllowlist(
        template_openclaw_json=str(
            env.get(ENV_TEMPLATE_OPENCLAW_JSON)
            or prov_cfg.get("template_openclaw_json")
            or DEFAULT_TEMPLATE_OPENCLAW_JSON
        ),
        repo_root=str(env.get(ENV_REPO_ROOT) or prov_cfg.get("repo_root") or DEFAULT_REPO_ROOT),
        artifact_root=prov_cfg.get("artifact_root"),
    )
    executor = ProvisionerExecutor(
        max_useradd_attempts=int(prov_cfg.get("useradd_max_attempts", 6)),
        retry_delay_seconds=float(prov_cfg.get("useradd_retry_delay_seconds", 0.8)),
    )
    return ProvisionerServer(
        socket_path=socket_path,
        token=token,
        executor=executor,
        validator=allowlist.validate,
        socket_group=group,
        socket_mode=prov_cfg.get("socket_mode", DEFAULT_SOCKET_MODE),
        request_timeout_seconds=float(prov_cfg.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS)),
        max_request_bytes=int(prov_cfg.get("max_request_bytes", DEFAULT_MAX_REQUEST_BYTES)),
    )


async def main(argv=None):
    args = parse_cli_args(argv)
    config = load_config(args.config) if args.config else {}
    setup_logging(config)
    logger = logging.getLogger(__name__)

    try:
        server = build_server(config, args)
    except ValueError as e:
        logger.error("Invalid provisioner configuration: %s", e)
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)

    if args.validate_only:
        print("✅ provisioner config validation passed")
        print(f"config: {args.config}")
        print(f"socket: {server.socket_path}")
        print(f"socket_group: {server.socket_group}")
        print(f"socket_mode: {oct(server.socket_mode) if server.socket_mode is not None else None}")
        print(f"request_timeout_seconds: {server.request_timeout_seconds}")
        print(f"max_request_bytes: {server.max_request_bytes}")
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal(signum):
        logger.info("Received signal %s, stopping provisioner...", signum)
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _on_signal, signum)

    await server.start()

    await stop_event.wait()
    await server.stop()
    logger.info("Provisioner stopped")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

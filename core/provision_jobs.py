"""Provisioning job state machine: queue, approve, run and inspect tenant jobs.

Jobs move ``queued -> (awaiting_approval) -> approved -> running`` and end in
one of ``succeeded``, ``failed``, ``cancelled`` or ``rejected``. Every status
write goes through ``ProvisionStore.update_job`` with the states it is allowed
to leave, so a concurrent transition makes the second writer fail instead of
overwriting.
"""

from __future__ import annotations

import logging
import os
import posixpath
import socket
import time
import uuid
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from core.audit import emit_audit
from core.command_allowlist import CommandAllowlist, is_safe_user
from core.provision_plans import (
    build_bootstrap_plan,
    build_decommission_plan,
    build_update_plan,
    check_plan,
    write_gateway_env,
)
from core.provision_store import ProvisionJob, ProvisionStore, Tenant
from utils.constants import (
    DEFAULT_JOB_LIST_LIMIT,
    DEFAULT_OWNER_GATEWAY,
    DEFAULT_REPO_ROOT,
    DEFAULT_STEP_TIMEOUT_MS,
    DEFAULT_TEMPLATE_OPENCLAW_JSON,
    DEFAULT_TENANT_HOME_ROOT,
    DEFAULT_WORKSPACE_DIRNAME,
    ENV_DATA_DIR,
    ENV_DEFAULT_OWNER_GATEWAY,
    ENV_PROVISION_EXEC,
    ENV_REPO_ROOT,
    ENV_TEMPLATE_OPENCLAW_JSON,
    ENV_TENANT_HOME_ROOT,
    EVENT_PREVIEW_CHARS,
    GATEWAY_UNIT_TEMPLATE_RELPATH,
    MAX_JOB_LIST_LIMIT,
    MAX_OWNER_GATEWAY_CHARS,
    MAX_STORED_OUTPUT_CHARS,
    TENANT_SLUG_RE,
)

logger = logging.getLogger(__name__)

JOB_TYPES = ("bootstrap", "update", "decommission")
JOB_STATUSES = (
    "queued",
    "awaiting_approval",
    "approved",
    "running",
    "succeeded",
    "failed",
    "cancelled",
    "rejected",
)
TERMINAL_STATUSES = frozenset({"succeeded", "failed", "cancelled", "rejected"})
EXECUTION_DISABLED_ERROR = (
    "Execution disabled. Set MC_SUPER_PROVISION_EXEC=true to allow non-dry-run provisioning."
)


def _env_flag(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _now() -> float:
    return time.time()


def _clip(text, limit: int = MAX_STORED_OUTPUT_CHARS) -> str:
    value = str(text or "")
    return value if len(value) <= limit else value[:limit]


def _ensure_port(value) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("Ports must be integers between 1024 and 65535")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError("Ports must be integers between 1024 and 65535") from None
    if str(port) != str(value).strip() or port < 1024 or port > 65535:
        raise ValueError("Ports must be integers between 1024 and 65535")
    return port


def _request_flag(request: dict, key: str, default: bool) -> bool:
    value = request.get(key)
    if value is None:
        return default
    return bool(value)


@dataclass
class ProvisioningSettings:
    """Web-tier provisioning settings resolved from config plus environment."""

    repo_root: str = DEFAULT_REPO_ROOT
    data_dir: str = ""
    state_file: str = ""
    template_openclaw_json: str = DEFAULT_TEMPLATE_OPENCLAW_JSON
    home_root: str = DEFAULT_TENANT_HOME_ROOT
    workspace_dirname: str = DEFAULT_WORKSPACE_DIRNAME
    allow_live_execution: bool = False
    require_two_person_rule: bool = True
    default_owner_gateway: str = DEFAULT_OWNER_GATEWAY

    def __post_init__(self):
        self.repo_root = str(self.repo_root).rstrip("/") or "/"
        if not self.data_dir:
            self.data_dir = f"{self.repo_root}/.data"
        self.data_dir = str(self.data_dir).rstrip("/") or "/"
        if not self.state_file:
            self.state_file = f"{self.data_dir}/provisioning.json"

    @property
    def artifact_root(self) -> str:
        return f"{self.data_dir}/provisioner"

    @property
    def gateway_unit_template(self) -> str:
        return f"{self.repo_root}/{GATEWAY_UNIT_TEMPLATE_RELPATH}"

    def artifact_dir(self, slug: str) -> str:
        return f"{self.artifact_root}/{slug}"

    def build_allowlist(self) -> CommandAllowlist:
        return CommandAllowlist(
            template_openclaw_json=self.template_openclaw_json,
            repo_root=self.repo_root,
            artifact_root=self.artifact_root,
        )

    @classmethod
    def from_config(cls, config: Optional[dict], environ=None) -> "ProvisioningSettings":
        section = (config or {}).get("provisioning", {}) or {}
        env = os.environ if environ is None else environ

        repo_root = env.get(ENV_REPO_ROOT) or section.get("repo_root") or DEFAULT_REPO_ROOT
        if ENV_PROVISION_EXEC in env:
            allow_live = _env_flag(env.get(ENV_PROVISION_EXEC))
        else:
            allow_live = bool(section.get("allow_live_execution", False))

        return cls(
            repo_root=str(repo_root),
            data_dir=str(env.get(ENV_DATA_DIR) or section.get("data_dir") or ""),
            state_file=str(section.get("state_file") or ""),
            template_openclaw_json=str(
                env.get(ENV_TEMPLATE_OPENCLAW_JSON)
                or section.get("template_openclaw_json")
                or DEFAULT_TEMPLATE_OPENCLAW_JSON
            ),
            home_root=str(env.get(ENV_TENANT_HOME_ROOT) or section.get("home_root") or DEFAULT_TENANT_HOME_ROOT),
            workspace_dirname=str(section.get("workspace_dirname") or DEFAULT_WORKSPACE_DIRNAME),
            allow_live_execution=allow_live,
            require_two_person_rule=bool(section.get("require_two_person_rule", True)),
            default_owner_gateway=str(
                env.get(ENV_DEFAULT_OWNER_GATEWAY)
                or section.get("default_owner_gateway")
                or DEFAULT_OWNER_GATEWAY
            ),
        )


@dataclass(frozen=True)
class _Transition:
    from_states: frozenset
    to_status: str
    level: str
    step_key: str
    verb: str
    audit_action: str


_TRANSITIONS: Dict[str, _Transition] = {
    "request_approval": _Transition(
        frozenset({"queued"}),
        "awaiting_approval",
        "info",
        "approval",
        "Approval requested",
        "provision_job_approval_requested",
    ),
    "approve": _Transition(
        frozenset({"queued", "awaiting_approval"}),
        "approved",
        "info",
        "approval",
        "Approved",
        "provision_job_approved",
    ),
    "reject": _Transition(
        frozenset({"queued", "awaiting_approval"}),
        "rejected",
        "warn",
        "approval",
        "Rejected",
        "provision_job_rejected",
    ),
    "cancel": _Transition(
        frozenset({"queued", "awaiting_approval", "approved", "running"}),
        "cancelled",
        "warn",
        "cancel",
        "Cancelled",
        "provision_job_cancelled",
    ),
}


class ProvisioningManager:
    """Drive tenant provisioning jobs against the store and the provisioner client.

    ``client`` is anything with an async ``run_command(command, args, *,
    timeout_ms, dry_run, step_key)`` returning a Command Result dict. It may be
    None for read-only use; ``run_job`` then refuses to start.
    """

    def __init__(
        self,
        store: ProvisionStore,
        client=None,
        settings: Optional[ProvisioningSettings] = None,
        *,
        audit_logger: Optional[logging.Logger] = None,
        runner_host: Optional[str] = None,
    ):
        self.store = store
        self.client = client
        self.settings = settings or ProvisioningSettings()
        self.allowlist = self.settings.build_allowlist()
        self.audit_logger = audit_logger
        self.runner_host = runner_host or socket.gethostname()

    # ── Helpers ──

    @staticmethod
    def _require_actor(actor) -> str:
        value = str(actor or "").strip()
        if not value:
            raise ValueError("actor is required")
        return value

    def _require_job(self, job_id) -> ProvisionJob:
        job = self.store.get_job(int(job_id))
        if job is None:
            raise ValueError(f"Job not found: {job_id}")
        return job

    def _require_tenant(self, tenant_id) -> Tenant:
        tenant = self.store.get_tenant(int(tenant_id))
        if tenant is None:
            raise ValueError(f"Tenant not found: {tenant_id}")
        return tenant

    def _normalize_owner_gateway(self, value) -> str:
        text = str(value or "").strip() or self.settings.default_owner_gateway
        if len(text) > MAX_OWNER_GATEWAY_CHARS:
            raise ValueError(f"owner_gateway must be at most {MAX_OWNER_GATEWAY_CHARS} characters")
        return text

    def _event(self, job_id: int, level: str, message: str, *, step_key=None, data=None) -> None:
        self.store.append_event(job_id, level, message, step_key=step_key, data=data)

    def _audit(self, action: str, actor: str, job: ProvisionJob, detail: Optional[dict] = None) -> None:
        emit_audit(
            self.audit_logger,
            action,
            actor,
            target_type="provision_job",
            target_id=job.id,
            detail={"tenant_id": job.tenant_id, "job_type": job.job_type, **(detail or {})},
        )

    def _queue_job(
        self,
        tenant: Tenant,
        job_type: str,
        plan: List[Dict[str, Any]],
        request_payload: Dict[str, Any],
        *,
        actor: str,
        dry_run: bool,
    ) -> ProvisionJob:
        check_plan(plan, self.allowlist)
        job = self.store.insert_job(
            tenant_id=tenant.id,
            job_type=job_type,
            status="queued",
            dry_run=dry_run,
            requested_by=actor,
            idempotency_key=uuid.uuid4().hex,
            request_json=request_payload,
            plan_json=plan,
        )
        mode = "dry-run" if dry_run else "execute"
        self._event(job.id, "info", f"{job_type.capitalize()} request queued ({mode})", step_key="queued", data={"actor": actor})
        self._audit(f"tenant_{job_type}_requested", actor, job, {"slug": tenant.slug, "dry_run": dry_run})
        logger.info("Queued %s job %s for tenant %s (%s)", job_type, job.id, tenant.slug, mode)
        return job

    # ── Job creation ──

    def create_tenant_and_bootstrap_job(self, request: dict, actor: str) -> Tuple[Tenant, ProvisionJob]:
        """Register a new tenant and queue its bootstrap job."""
        actor = self._require_actor(actor)
        request = dict(request or {})

        slug = str(request.get("slug") or "").strip().lower()
        if not TENANT_SLUG_RE.fullmatch(slug):
            raise ValueError("Invalid slug. Use lowercase letters, numbers, and dashes (3-32 chars).")
        display_name = str(request.get("display_name") or "").strip()
        if not display_name:
            raise ValueError("display_name is required")
        linux_user = str(request.get("linux_user") or f"oc-{slug}").strip().lower()
        if not is_safe_user(linux_user):
            raise ValueError("Invalid linux_user. Use lowercase letters, numbers, dashes or underscores.")
        gateway_port = _ensure_port(request.get("gateway_port"))
        if gateway_port is None:
            raise ValueError("gateway_port is required for tenant bootstrap")
        dashboard_port = _ensure_port(request.get("dashboard_port"))
        config = request.get("config") or {}
        if not isinstance(config, dict):
            raise ValueError("config must be an object")
        dry_run = _request_flag(request, "dry_run", True)

        home_dir = posixpath.join(self.settings.home_root, linux_user)
        tenant_values = {
            "slug": slug,
            "display_name": display_name,
            "linux_user": linux_user,
            "openclaw_home": posixpath.join(home_dir, ".openclaw"),
            "workspace_root": posixpath.join(home_dir, self.settings.workspace_dirname),
            "plan_tier": str(request.get("plan_tier") or "standard").strip().lower(),
            "status": "pending",
            "gateway_port": gateway_port,
            "dashboard_port": dashboard_port,
            "config": config,
            "owner_gateway": self._normalize_owner_gateway(request.get("owner_gateway")),
            "created_by": actor,
        }
        plan = build_bootstrap_plan(
            Tenant(id=0, **tenant_values),
            template_openclaw_json=self.settings.template_openclaw_json,
            gateway_unit_template=self.settings.gateway_unit_template,
            artifact_dir=self.settings.artifact_dir(slug),
        )
        check_plan(plan, self.allowlist)

        request_payload = {
            "slug": slug,
            "display_name": display_name,
            "linux_user": linux_user,
            "plan_tier": tenant_values["plan_tier"],
            "gateway_port": gateway_port,
            "dashboard_port": dashboard_port,
            "owner_gateway": tenant_values["owner_gateway"],
            "dry_run": dry_run,
            "config": config,
        }
        tenant, job = self.store.insert_tenant_with_job(
            tenant_values,
            {
                "job_type": "bootstrap",
                "status": "queued",
                "dry_run": dry_run,
                "requested_by": actor,
                "idempotency_key": uuid.uuid4().hex,
                "request_json": request_payload,
                "plan_json": plan,
            },
        )
        mode = "dry-run" if dry_run else "execute"
        self._event(job.id, "info", f"Provisioning request queued ({mode})", step_key="queued", data={"actor": actor})
        self._audit("tenant_bootstrap_requested", actor, job, {"slug": slug, "linux_user": linux_user, "dry_run": dry_run})
        logger.info("Registered tenant %s and queued bootstrap job %s (%s)", slug, job.id, mode)
        return tenant, job

    def create_update_job(self, tenant_id: int, request: Optional[dict], actor: str) -> ProvisionJob:
        """Queue a job that re-renders the tenant env file and restarts its gateway.

        ``gateway_port`` in the request overrides the registry value for this
        job; the registry is updated when a live run succeeds.
        """
        actor = self._require_actor(actor)
        request = dict(request or {})
        tenant = self._require_tenant(tenant_id)
        if tenant.status == "suspended":
            raise ValueError(f"Tenant {tenant.slug} is decommissioned")

        gateway_port = _ensure_port(request.get("gateway_port"))
        effective = replace(tenant, gateway_port=gateway_port) if gateway_port is not None else tenant
        if effective.gateway_port is None:
            raise ValueError("gateway_port is required for tenant update")
        dry_run = _request_flag(request, "dry_run", True)

        plan = build_update_plan(effective, artifact_dir=self.settings.artifact_dir(tenant.slug))
        payload = {"dry_run": dry_run, "gateway_port": effective.gateway_port}
        return self._queue_job(tenant, "update", plan, payload, actor=actor, dry_run=dry_run)

    def create_decommission_job(self, tenant_id: int, request: Optional[dict], actor: str) -> ProvisionJob:
        actor = self._require_actor(actor)
        request = dict(request or {})
        tenant = self._require_tenant(tenant_id)

        dry_run = _request_flag(request, "dry_run", True)
        remove_linux_user = _request_flag(request, "remove_linux_user", False)
        remove_state_dirs = _request_flag(request, "remove_state_dirs", False)
        reason = str(request.get("reason") or "").strip() or None

        plan = build_decommission_plan(
            tenant,
            remove_linux_user=remove_linux_user,
            remove_state_dirs=remove_state_dirs,
        )
        payload = {
            "dry_run": dry_run,
            "remove_linux_user": remove_linux_user,
            "remove_state_dirs": remove_state_dirs,
            "reason": reason,
        }
        return self._queue_job(tenant, "decommission", plan, payload, actor=actor, dry_run=dry_run)

    # ── Transitions ──

    def request_approval(self, job_id: int, actor: str, reason: Optional[str] = None) -> ProvisionJob:
        return self.transition(job_id, actor, "request_approval", reason)

    def approve(self, job_id: int, actor: str, reason: Optional[str] = None) -> ProvisionJob:
        return self.transition(job_id, actor, "approve", reason)

    def reject(self, job_id: int, actor: str, reason: Optional[str] = None) -> ProvisionJob:
        return self.transition(job_id, actor, "reject", reason)

    def cancel(self, job_id: int, actor: str, reason: Optional[str] = None) -> ProvisionJob:
        return self.transition(job_id, actor, "cancel", reason)

    def transition(self, job_id: int, actor: str, action: str, reason: Optional[str] = None) -> ProvisionJob:
        rule = _TRANSITIONS.get(str(action or ""))
        if rule is None:
            raise ValueError(f"Unsupported action: {action}")
        actor = self._require_actor(actor)
        job = self._require_job(job_id)
        if job.status not in rule.from_states:
            if job.status in TERMINAL_STATUSES:
                raise ValueError(f"Job {job.id} is {job.status} and can no longer change")
            raise ValueError(f"Cannot {action.replace('_', ' ')} job {job.id} from status {job.status}")

        reason = str(reason or "").strip() or None
        changes: Dict[str, Any] = {"status": rule.to_status}
        if action == "approve":
            changes["approved_by"] = actor
        if rule.to_status in TERMINAL_STATUSES:
            changes["completed_at"] = _now()
            if reason:
                changes["error_text"] = reason

        updated = self.store.update_job(job.id, expected_status=rule.from_states, **changes)
        if updated is None:
            raise ValueError(f"Job {job.id} changed status concurrently; reload and retry")

        message = f"{rule.verb} by {actor}" + (f": {reason}" if reason else "")
        self._event(job.id, rule.level, message, step_key=rule.step_key, data={"from": job.status, "to": rule.to_status})
        self._audit(rule.audit_action, actor, updated, {"from": job.status, "reason": reason})
        logger.info("Job %s: %s -> %s by %s", job.id, job.status, rule.to_status, actor)
        return updated

    # ── Execution ──

    def _check_runnable(self, job: ProvisionJob, actor: str) -> List[Dict[str, Any]]:
        if job.status != "approved":
            raise ValueError(f"Job must be approved before execution. Current status: {job.status}")
        plan = list(job.plan_json or [])
        check_plan(plan, self.allowlist)
        if not job.approved_by:
            raise ValueError("Job has no approver recorded")
        if not job.dry_run and self.settings.require_two_person_rule:
            if job.approved_by == job.requested_by:
                raise ValueError("Two-person rule: approver must differ from requester for live jobs")
            if actor == job.approved_by:
                raise ValueError("Two-person rule: runner must differ from approver for live jobs")
        if self.client is None:
            raise ValueError("Provisioner client is not configured")
        running = self.store.list_jobs(tenant_id=job.tenant_id, status="running", limit=1)
        if running:
            raise ValueError(f"Job {running[0].id} is already running for this tenant")
        return plan

    def _effective_tenant(self, tenant: Tenant, job: ProvisionJob) -> Tenant:
        port = (job.request_json or {}).get("gateway_port")
        if job.job_type == "update" and port:
            return replace(tenant, gateway_port=int(port))
        return tenant

    @staticmethod
    def _step_record(index: int, step: Dict[str, Any], result: Dict[str, Any]) -> Dict[str, Any]:
        record = {
            "index": index,
            "key": step.get("key"),
            "command": step.get("command"),
            "ok": bool(result.get("ok")),
            "code": result.get("code"),
            "skipped": bool(result.get("skipped")),
            "stdout": _clip(result.get("stdout")),
            "stderr": _clip(result.get("stderr")),
        }
        if result.get("error"):
            record["error"] = str(result.get("error"))
        return record

    async def _run_step(self, job: ProvisionJob, step: Dict[str, Any]) -> Dict[str, Any]:
        if not job.dry_run and not self.settings.allow_live_execution:
            return {"ok": False, "code": 1, "stdout": "", "stderr": "", "skipped": False, "error": EXECUTION_DISABLED_ERROR}
        return await self.client.run_command(
            str(step.get("command") or ""),
            [str(a) for a in (step.get("args") or [])],
            timeout_ms=int(step.get("timeout_ms") or DEFAULT_STEP_TIMEOUT_MS),
            dry_run=job.dry_run,
            step_key=step.get("key"),
        )

    async def _execute_plan(
        self,
        job: ProvisionJob,
        plan: List[Dict[str, Any]],
        steps: List[Dict[str, Any]],
    ) -> Tuple[str, Optional[int], Optional[Dict[str, Any]]]:
        """Run steps in order; stop at the first failure or once the job leaves ``running``."""
        for index, step in enumerate(plan, start=1):
            current = self.store.get_job(job.id)
            if current is None or current.status != "running":
                return "cancelled", None, None

            key = step.get("key")
            self._event(job.id, "info", f"Running: {step.get('title') or key}", step_key=key)
            result = await self._run_step(job, step)
            steps.append(self._step_record(index, step, result))

            if not result.get("ok"):
                return "failed", index, result

            if result.get("skipped"):
                self._event(job.id, "info", "Dry-run: command execution skipped", step_key=key)
            else:
                preview = _clip(str(result.get("stdout") or "").strip(), EVENT_PREVIEW_CHARS)
                self._event(job.id, "info", "Completed", step_key=key, data={"stdout": preview} if preview else None)
        return "succeeded", None, None

    def _set_tenant_status(self, job: ProvisionJob, status: str, **changes) -> None:
        if job.dry_run:
            return
        self.store.update_tenant(job.tenant_id, status=status, **changes)

    def _failure_text(self, index: int, step: Dict[str, Any], result: Dict[str, Any]) -> str:
        parts = [str(result.get("error") or "").strip(), str(result.get("stderr") or "").strip()]
        detail = " | ".join(p for p in parts if p) or f"exit code {result.get('code')}"
        return _clip(f"Step {index} ({step.get('key')}) failed: {detail}")

    async def run_job(self, job_id: int, actor: str) -> ProvisionJob:
        """Execute an approved job's plan through the provisioner client.

        Step failures are recorded on the job, which is returned; guard
        violations raise ValueError before anything changes.
        """
        actor = self._require_actor(actor)
        job = self._require_job(job_id)
        plan = self._check_runnable(job, actor)
        tenant = self._require_tenant(job.tenant_id)
        effective = self._effective_tenant(tenant, job)

        if job.job_type in ("bootstrap", "update"):
            write_gateway_env(effective, self.settings.artifact_dir(tenant.slug))

        started = self.store.update_job(
            job.id,
            expected_status={"approved"},
            status="running",
            started_at=_now(),
            runner_host=self.runner_host,
            error_text=None,
        )
        if started is None:
            raise ValueError(f"Job {job.id} is no longer approved")
        previous_tenant_status = tenant.status
        self._set_tenant_status(job, "decommissioning" if job.job_type == "decommission" else "provisioning")
        mode = "dry-run" if job.dry_run else "execute"
        self._event(job.id, "info", f"Started by {actor} on {self.runner_host} ({mode})", step_key="start")
        self._audit("provision_job_started", actor, started, {"dry_run": job.dry_run, "steps": len(plan)})
        logger.info("Running %s job %s for tenant %s (%s, %d steps)", job.job_type, job.id, tenant.slug, mode, len(plan))

        steps: List[Dict[str, Any]] = []
        try:
            outcome, failed_index, failed_result = await self._execute_plan(started, plan, steps)
        except Exception as e:
            self._record_crash(started, actor, steps, e)
            raise

        result_json: Dict[str, Any] = {"dry_run": job.dry_run, "steps_executed": len(steps), "steps": steps}

        if outcome == "failed":
            step = plan[failed_index - 1]
            error_text = self._failure_text(failed_index, step, failed_result)
            result_json.update(
                failed_step_index=failed_index,
                failed_step_key=step.get("key"),
                failed_result=steps[-1],
            )
            final = self.store.update_job(
                job.id,
                expected_status={"running"},
                status="failed",
                completed_at=_now(),
                error_text=error_text,
                result_json=result_json,
            )
            self._set_tenant_status(job, "error")
            self._event(job.id, "error", error_text, step_key=step.get("key"), data={"code": failed_result.get("code")})
            self._audit("provision_job_failed", actor, job, {"failed_step_key": step.get("key"), "error": error_text})
            logger.warning("Job %s failed at step %s (%s)", job.id, failed_index, step.get("key"))
            return final or self._require_job(job.id)

        if outcome == "succeeded":
            final = self.store.update_job(
                job.id,
                expected_status={"running"},
                status="succeeded",
                completed_at=_now(),
                result_json=result_json,
            )
            if final is not None:
                if job.job_type == "decommission":
                    self._set_tenant_status(job, "suspended")
                else:
                    self._set_tenant_status(job, "active", gateway_port=effective.gateway_port)
                self._event(job.id, "info", f"Job completed ({mode})", step_key="done")
                self._audit("provision_job_succeeded", actor, job, {"dry_run": job.dry_run, "steps": len(steps)})
                logger.info("Job %s succeeded", job.id)
                return final

        # Cancelled while running: the status already says so; keep what ran.
        final = self.store.update_job(job.id, expected_status={"cancelled"}, result_json=result_json)
        if steps:
            self._set_tenant_status(job, "error")
        else:
            self._set_tenant_status(job, previous_tenant_status)
        self._event(job.id, "warn", f"Stopped after {len(steps)} of {len(plan)} steps (cancelled)", step_key="cancel")
        logger.info("Job %s cancelled after %d of %d steps", job.id, len(steps), len(plan))
        return final or self._require_job(job.id)

    def _record_crash(self, job: ProvisionJob, actor: str, steps: List[Dict[str, Any]], error: Exception) -> None:
        error_text = _clip(f"Runner error: {error}")
        self.store.update_job(
            job.id,
            expected_status={"running"},
            status="failed",
            completed_at=_now(),
            error_text=error_text,
            result_json={"dry_run": job.dry_run, "steps_executed": len(steps), "steps": steps},
        )
        self._set_tenant_status(job, "error")
        self._event(job.id, "error", error_text, step_key="runner")
        self._audit("provision_job_failed", actor, job, {"error": error_text})
        logger.exception("Job %s aborted by runner error", job.id)

    # ── Queries ──

    def get_job(self, job_id: int) -> Optional[ProvisionJob]:
        return self.store.get_job(int(job_id))

    def list_job_events(self, job_id: int):
        return self.store.list_events(int(job_id))

    def describe_job(self, job_id: int) -> Optional[Dict[str, Any]]:
        """Job row joined with its tenant identity and event log."""
        job = self.store.get_job(int(job_id))
        if job is None:
            return None
        tenant = self.store.get_tenant(job.tenant_id)
        payload = asdict(job)
        payload["tenant_slug"] = tenant.slug if tenant else None
        payload["tenant_display_name"] = tenant.display_name if tenant else None
        payload["linux_user"] = tenant.linux_user if tenant else None
        payload["events"] = [asdict(e) for e in self.store.list_events(job.id)]
        return payload

    def list_jobs(
        self,
        *,
        tenant_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = DEFAULT_JOB_LIST_LIMIT,
    ) -> List[ProvisionJob]:
        if status and status not in JOB_STATUSES:
            raise ValueError(f"Invalid job status: {status}")
        try:
            bounded = int(limit)
        except (TypeError, ValueError):
            bounded = DEFAULT_JOB_LIST_LIMIT
        bounded = max(1, min(MAX_JOB_LIST_LIMIT, bounded))
        return self.store.list_jobs(tenant_id=tenant_id, status=status or None, limit=bounded)

    def list_tenants(self) -> List[Dict[str, Any]]:
        items = []
        for tenant in self.store.list_tenants():
            latest = self.store.latest_job_for_tenant(tenant.id)
            row = asdict(tenant)
            row["latest_job_id"] = latest.id if latest else None
            row["latest_job_status"] = latest.status if latest else None
            row["latest_job_type"] = latest.job_type if latest else None
            items.append(row)
        return items

    def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        return self.store.get_tenant(int(tenant_id))

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        return self.store.get_tenant_by_slug(str(slug or "").strip().lower())


def build_manager(config: Optional[dict], client=None, *, audit_logger=None, environ=None) -> ProvisioningManager:
    """Wire settings, store and manager from a loaded config dict."""
    settings = ProvisioningSettings.from_config(config, environ=environ)
    store = ProvisionStore(Path(settings.state_file))
    return ProvisioningManager(store, client, settings, audit_logger=audit_logger)

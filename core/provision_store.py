"""Tenant registry and provisioning job records, persisted as one JSON state file."""

from __future__ import annotations

import json
import logging
import threading
import time
from copy import deepcopy
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class Tenant:
    """Registry row for one tenant."""

    id: int
    slug: str
    display_name: str
    linux_user: str
    openclaw_home: str
    workspace_root: str
    plan_tier: str = "standard"
    status: str = "pending"
    gateway_port: Optional[int] = None
    dashboard_port: Optional[int] = None
    config: Dict[str, Any] = field(default_factory=dict)
    owner_gateway: str = "primary"
    created_by: str = "system"
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class ProvisionJob:
    """One infrastructure operation against one tenant."""

    id: int
    tenant_id: int
    job_type: str
    status: str = "queued"
    dry_run: bool = True
    requested_by: str = "system"
    approved_by: Optional[str] = None
    runner_host: Optional[str] = None
    idempotency_key: Optional[str] = None
    request_json: Dict[str, Any] = field(default_factory=dict)
    plan_json: List[Dict[str, Any]] = field(default_factory=list)
    result_json: Optional[Dict[str, Any]] = None
    error_text: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class ProvisionEvent:
    id: int
    job_id: int
    level: str
    message: str
    step_key: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    created_at: float = 0.0


def _from_dict(cls, item: dict):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in item.items() if k in known})


class ProvisionStore:
    """Thread-safe registry of tenants, jobs and job events.

    Rows are never deleted. Readers get copies, so mutation only happens
    through the update methods, which persist before returning.
    """

    def __init__(self, state_file: Path):
        self.state_file = Path(state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.tenants: Dict[int, Tenant] = {}
        self.jobs: Dict[int, ProvisionJob] = {}
        self.events: List[ProvisionEvent] = []
        self._next_ids: Dict[str, int] = {"tenant": 1, "job": 1, "event": 1}
        self._lock = threading.RLock()
        self._load()

    def _load(self) -> None:
        if not self.state_file.exists():
            return

        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            tenants = {int(k): _from_dict(Tenant, v) for k, v in data.get("tenants", {}).items()}
            jobs = {int(k): _from_dict(ProvisionJob, v) for k, v in data.get("jobs", {}).items()}
            events = [_from_dict(ProvisionEvent, v) for v in data.get("events", [])]
            next_ids = {str(k): int(v) for k, v in data.get("next_ids", {}).items()}
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load provisioning state from %s", self.state_file)
            return

        self.tenants = tenants
        self.jobs = jobs
        self.events = events
        self._next_ids.update(next_ids)
        logger.info("Loaded %d tenants and %d jobs from disk", len(self.tenants), len(self.jobs))

    def _save(self) -> None:
        payload = {
            "next_ids": self._next_ids,
            "tenants": {str(k): asdict(v) for k, v in self.tenants.items()},
            "jobs": {str(k): asdict(v) for k, v in self.jobs.items()},
            "events": [asdict(e) for e in self.events],
        }
        tmp_file = self.state_file.with_suffix(".json.tmp")
        tmp_file.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_file.replace(self.state_file)

    def _allocate_id(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    # ── Tenants ──

    def _check_tenant_unique(self, slug: str, linux_user: str) -> None:
        for tenant in self.tenants.values():
            if tenant.slug == slug:
                raise ValueError(f"Tenant slug already exists: {slug}")
            if tenant.linux_user == linux_user:
                raise ValueError(f"Linux user already assigned to tenant {tenant.slug}: {linux_user}")

    def _new_tenant(self, values: Dict[str, Any]) -> Tenant:
        now = time.time()
        return Tenant(
            **{**values, "id": self._allocate_id("tenant"), "created_at": now, "updated_at": now}
        )

    def _new_job(self, values: Dict[str, Any]) -> ProvisionJob:
        now = time.time()
        return ProvisionJob(**{**values, "id": self._allocate_id("job"), "created_at": now, "updated_at": now})

    def insert_tenant(self, **values) -> Tenant:
        with self._lock:
            self._check_tenant_unique(str(values.get("slug")), str(values.get("linux_user")))
            tenant = self._new_tenant(values)
            self.tenants[tenant.id] = tenant
            self._save()
            return deepcopy(tenant)

    def insert_tenant_with_job(self, tenant_values: Dict[str, Any], job_values: Dict[str, Any]) -> Tuple[Tenant, ProvisionJob]:
        """Insert a tenant and its first job in one write."""
        with self._lock:
            self._check_tenant_unique(str(tenant_values.get("slug")), str(tenant_values.get("linux_user")))
            tenant = self._new_tenant(tenant_values)
            job = self._new_job({**job_values, "tenant_id": tenant.id})
            self.tenants[tenant.id] = tenant
            self.jobs[job.id] = job
            self._save()
            return deepcopy(tenant), deepcopy(job)

    def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        with self._lock:
            tenant = self.tenants.get(int(tenant_id))
            return deepcopy(tenant) if tenant else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._lock:
            for tenant in self.tenants.values():
                if tenant.slug == slug:
                    return deepcopy(tenant)
            return None

    def list_tenants(self) -> List[Tenant]:
        with self._lock:
            items = sorted(self.tenants.values(), key=lambda t: (t.created_at, t.id), reverse=True)
            return [deepcopy(t) for t in items]

    def update_tenant(self, tenant_id: int, **changes) -> Optional[Tenant]:
        with self._lock:
            tenant = self.tenants.get(int(tenant_id))
            if tenant is None:
                return None
            updated = replace(tenant, **changes, updated_at=time.time())
            self.tenants[tenant.id] = updated
            self._save()
            return deepcopy(updated)

    # ── Jobs ──

    def insert_job(self, **values) -> ProvisionJob:
        with self._lock:
            if int(values.get("tenant_id", 0)) not in self.tenants:
                raise ValueError("Tenant not found")
            job = self._new_job(values)
            self.jobs[job.id] = job
            self._save()
            return deepcopy(job)

    def get_job(self, job_id: int) -> Optional[ProvisionJob]:
        with self._lock:
            job = self.jobs.get(int(job_id))
            return deepcopy(job) if job else None

    def list_jobs(
        self,
        *,
        tenant_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ProvisionJob]:
        with self._lock:
            items: Iterable[ProvisionJob] = self.jobs.values()
            if tenant_id is not None:
                items = [j for j in items if j.tenant_id == int(tenant_id)]
            if status:
                items = [j for j in items if j.status == status]
            ordered = sorted(items, key=lambda j: (j.created_at, j.id), reverse=True)
            if limit is not None:
                ordered = ordered[: max(0, int(limit))]
            return [deepcopy(j) for j in ordered]

    def latest_job_for_tenant(self, tenant_id: int) -> Optional[ProvisionJob]:
        jobs = self.list_jobs(tenant_id=tenant_id, limit=1)
        return jobs[0] if jobs else None

    def update_job(
        self,
        job_id: int,
        *,
        expected_status: Optional[Iterable[str]] = None,
        **changes,
    ) -> Optional[ProvisionJob]:
        """Patch a job; with ``expected_status`` the write only happens from those states.

        Returns None when the job is missing or its status did not match.
        """
        with self._lock:
            job = self.jobs.get(int(job_id))
            if job is None:
                return None
            if expected_status is not None and job.status not in set(expected_status):
                return None
            updated = replace(job, **changes, updated_at=time.time())
            self.jobs[job.id] = updated
            self._save()
            return deepcopy(updated)

    # ── Events ──

    def append_event(
        self,
        job_id: int,
        level: str,
        message: str,
        *,
        step_key: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> ProvisionEvent:
        with self._lock:
            event = ProvisionEvent(
                id=self._allocate_id("event"),
                job_id=int(job_id),
                level=str(level),
                message=str(message),
                step_key=step_key,
                data=data,
                created_at=time.time(),
            )
            self.events.append(event)
            self._save()
            return deepcopy(event)

    def list_events(self, job_id: int) -> List[ProvisionEvent]:
        with self._lock:
            return [deepcopy(e) for e in self.events if e.job_id == int(job_id)]

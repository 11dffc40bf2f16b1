"""Tests for core/provision_jobs.py — provisioning job state machine."""

from __future__ import annotations

from pathlib import Path

import pytest

from core.provision_jobs import (
    EXECUTION_DISABLED_ERROR,
    ProvisioningManager,
    ProvisioningSettings,
    build_manager,
)
from core.provision_store import ProvisionStore
from tests.conftest import FakeProvisionerClient, ListAuditLogger


def _request(**overrides):
    values = {"slug": "acme", "display_name": "Acme Corp", "gateway_port": 18789}
    values.update(overrides)
    return values


class TestCreateBootstrap:

    def test_registers_pending_tenant_and_queued_job(self, make_manager):
        mgr = make_manager()
        tenant, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")

        assert tenant.status == "pending"
        assert tenant.linux_user == "oc-acme"
        assert tenant.openclaw_home == "/home/oc-acme/.openclaw"
        assert tenant.workspace_root == "/home/oc-acme/workspace"
        assert tenant.owner_gateway == "primary"
        assert tenant.created_by == "alice"
        assert job.status == "queued"
        assert job.dry_run is True
        assert job.requested_by == "alice"
        assert len(job.plan_json) == 10
        assert job.request_json["gateway_port"] == 18789
        assert [e.step_key for e in mgr.list_job_events(job.id)] == ["queued"]

    def test_env_step_points_at_artifact_root(self, tmp_path, make_manager):
        mgr = make_manager()
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        env_step = next(s for s in job.plan_json if s["key"] == "install-tenant-gateway-env")
        assert env_step["args"][1] == f"{tmp_path / 'data'}/provisioner/acme/openclaw-gateway.env"

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"slug": "A"}, "Invalid slug"),
            ({"slug": "-acme"}, "Invalid slug"),
            ({"display_name": "  "}, "display_name is required"),
            ({"linux_user": "Root!"}, "Invalid linux_user"),
            ({"gateway_port": None}, "gateway_port is required"),
            ({"gateway_port": 80}, "Ports must be integers"),
            ({"gateway_port": "abc"}, "Ports must be integers"),
            ({"dashboard_port": 70000}, "Ports must be integers"),
            ({"owner_gateway": "g" * 121}, "owner_gateway"),
            ({"config": ["not", "a", "dict"]}, "config must be an object"),
        ],
    )
    def test_rejects_invalid_input(self, make_manager, overrides, message):
        mgr = make_manager()
        with pytest.raises(ValueError, match=message):
            mgr.create_tenant_and_bootstrap_job(_request(**overrides), "alice")
        assert mgr.list_tenants() == []

    def test_requires_actor(self, make_manager):
        mgr = make_manager()
        with pytest.raises(ValueError, match="actor is required"):
            mgr.create_tenant_and_bootstrap_job(_request(), " ")

    def test_duplicate_slug(self, make_manager):
        mgr = make_manager()
        mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        with pytest.raises(ValueError, match="already exists"):
            mgr.create_tenant_and_bootstrap_job(_request(linux_user="oc-other"), "alice")

    def test_home_root_outside_allowlist_refused_at_queue_time(self, make_manager):
        mgr = make_manager(home_root="/srv/tenants")
        with pytest.raises(ValueError, match="rejected"):
            mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        assert mgr.list_tenants() == []


class TestTransitions:

    def test_request_approval_then_approve(self, make_manager):
        mgr = make_manager()
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")

        waiting = mgr.request_approval(job.id, "alice")
        assert waiting.status == "awaiting_approval"
        approved = mgr.approve(job.id, "bob", "looks fine")
        assert approved.status == "approved"
        assert approved.approved_by == "bob"

    def test_reject_keeps_reason(self, make_manager):
        mgr = make_manager()
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        rejected = mgr.reject(job.id, "bob", "wrong port")
        assert rejected.status == "rejected"
        assert rejected.error_text == "wrong port"
        assert rejected.completed_at is not None

    def test_terminal_jobs_are_immutable(self, make_manager):
        mgr = make_manager()
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.cancel(job.id, "alice")

        for action in ("approve", "reject", "cancel", "request_approval"):
            with pytest.raises(ValueError, match="can no longer change"):
                mgr.transition(job.id, "bob", action)
        assert mgr.get_job(job.id).status == "cancelled"

    def test_reject_after_approval_not_allowed(self, make_manager):
        mgr = make_manager()
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "bob")
        with pytest.raises(ValueError, match="Cannot reject job"):
            mgr.reject(job.id, "bob")

    def test_cancel_approved_job(self, make_manager):
        mgr = make_manager()
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "bob")
        assert mgr.cancel(job.id, "bob").status == "cancelled"

    def test_unknown_action_and_job(self, make_manager):
        mgr = make_manager()
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        with pytest.raises(ValueError, match="Unsupported action"):
            mgr.transition(job.id, "bob", "resume")
        with pytest.raises(ValueError, match="Job not found"):
            mgr.approve(999, "bob")

    def test_transitions_emit_events_and_audit(self, make_manager):
        audit = ListAuditLogger()
        mgr = make_manager(audit_logger=audit)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.request_approval(job.id, "alice")
        mgr.approve(job.id, "bob")

        assert audit.actions == [
            "tenant_bootstrap_requested",
            "provision_job_approval_requested",
            "provision_job_approved",
        ]
        assert audit.records[-1]["actor"] == "bob"
        assert audit.records[-1]["target_id"] == job.id
        messages = [e.message for e in mgr.list_job_events(job.id)]
        assert messages[-1] == "Approved by bob"


class TestRunDryRun:

    @pytest.mark.asyncio
    async def test_dry_run_executes_every_step_in_order(self, tmp_path, make_manager):
        client = FakeProvisionerClient()
        mgr = make_manager(client=client)
        tenant, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "alice")

        done = await mgr.run_job(job.id, "alice")

        assert done.status == "succeeded"
        assert done.runner_host == "runner-1"
        assert done.started_at is not None and done.completed_at is not None
        assert client.step_keys == [s["key"] for s in job.plan_json]
        assert all(c["dry_run"] is True for c in client.calls)
        assert done.result_json["steps_executed"] == 10
        assert all(s["skipped"] for s in done.result_json["steps"])
        assert mgr.get_tenant(tenant.id).status == "pending"

        artifact = tmp_path / "data" / "provisioner" / "acme" / "openclaw-gateway.env"
        assert "OPENCLAW_GATEWAY_PORT=18789" in artifact.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_unapproved_job_is_refused_without_side_effects(self, tmp_path, make_manager):
        client = FakeProvisionerClient()
        mgr = make_manager(client=client)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")

        with pytest.raises(ValueError, match="must be approved"):
            await mgr.run_job(job.id, "alice")

        assert client.calls == []
        assert mgr.get_job(job.id).status == "queued"
        assert not (tmp_path / "data" / "provisioner").exists()

    @pytest.mark.asyncio
    async def test_first_failure_stops_the_plan(self, make_manager):
        failure = {"ok": False, "code": 1, "stdout": "", "stderr": "rm: busy", "error": "Command failed: /usr/bin/rm"}
        client = FakeProvisionerClient(results={"remove-tenant-gateway-env": failure})
        mgr = make_manager(client=client)
        tenant, boot = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        job = mgr.create_decommission_job(tenant.id, {"remove_linux_user": True}, "alice")
        assert [s["key"] for s in job.plan_json] == [
            "disable-stop-gateway",
            "remove-tenant-gateway-env",
            "remove-linux-user",
        ]
        mgr.approve(job.id, "bob")

        done = await mgr.run_job(job.id, "carol")

        assert client.step_keys == ["disable-stop-gateway", "remove-tenant-gateway-env"]
        assert done.status == "failed"
        assert done.result_json["failed_step_index"] == 2
        assert done.result_json["failed_step_key"] == "remove-tenant-gateway-env"
        assert done.result_json["failed_result"]["stderr"] == "rm: busy"
        assert done.error_text.startswith("Step 2 (remove-tenant-gateway-env) failed: Command failed: /usr/bin/rm")
        # Dry runs never touch the tenant row.
        assert mgr.get_tenant(tenant.id).status == "pending"

    @pytest.mark.asyncio
    async def test_stored_output_is_truncated(self, make_manager):
        big = {"ok": True, "code": 0, "stdout": "x" * 5000, "stderr": "y" * 4500, "skipped": False}
        client = FakeProvisionerClient(results={"create-linux-user": big})
        mgr = make_manager(client=client)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "alice")

        done = await mgr.run_job(job.id, "alice")

        first = done.result_json["steps"][0]
        assert len(first["stdout"]) == 4000
        assert len(first["stderr"]) == 4000

    @pytest.mark.asyncio
    async def test_completed_job_cannot_run_again(self, make_manager):
        client = FakeProvisionerClient()
        mgr = make_manager(client=client)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "alice")
        await mgr.run_job(job.id, "alice")
        calls = len(client.calls)

        with pytest.raises(ValueError, match="Current status: succeeded"):
            await mgr.run_job(job.id, "alice")
        with pytest.raises(ValueError, match="can no longer change"):
            mgr.approve(job.id, "bob")
        assert len(client.calls) == calls

    @pytest.mark.asyncio
    async def test_cancel_while_running_stops_before_next_step(self, make_manager):
        holder = {}

        def _cancel_after_second(step_key):
            if step_key == "create-openclaw-state":
                holder["mgr"].cancel(holder["job_id"], "bob", "operator abort")

        client = FakeProvisionerClient(on_call=_cancel_after_second)
        mgr = make_manager(client=client)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "alice")
        holder.update(mgr=mgr, job_id=job.id)

        done = await mgr.run_job(job.id, "alice")

        assert done.status == "cancelled"
        assert client.step_keys == ["create-linux-user", "create-openclaw-state"]
        assert done.result_json["steps_executed"] == 2

    @pytest.mark.asyncio
    async def test_one_running_job_per_tenant(self, make_manager):
        client = FakeProvisionerClient()
        mgr = make_manager(client=client)
        tenant, boot = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        update = mgr.create_update_job(tenant.id, {}, "alice")
        mgr.approve(update.id, "alice")
        mgr.store.update_job(boot.id, status="running")

        with pytest.raises(ValueError, match="already running"):
            await mgr.run_job(update.id, "alice")
        assert client.calls == []
        assert mgr.get_job(update.id).status == "approved"

    @pytest.mark.asyncio
    async def test_client_crash_marks_job_failed_and_propagates(self, make_manager):
        client = FakeProvisionerClient(results={"create-workspace-root": RuntimeError("socket exploded")})
        mgr = make_manager(client=client)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "alice")

        with pytest.raises(RuntimeError, match="socket exploded"):
            await mgr.run_job(job.id, "alice")

        failed = mgr.get_job(job.id)
        assert failed.status == "failed"
        assert "socket exploded" in failed.error_text
        assert failed.result_json["steps_executed"] == 2

    @pytest.mark.asyncio
    async def test_missing_client_refuses_to_run(self, tmp_path):
        settings = ProvisioningSettings(data_dir=str(tmp_path / "data"))
        mgr = ProvisioningManager(ProvisionStore(Path(settings.state_file)), None, settings)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "alice")
        with pytest.raises(ValueError, match="client is not configured"):
            await mgr.run_job(job.id, "alice")
        assert mgr.get_job(job.id).status == "approved"


class TestRunLive:

    @pytest.mark.asyncio
    async def test_two_person_rule(self, make_manager):
        client = FakeProvisionerClient()
        mgr = make_manager(client=client, allow_live_execution=True)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(dry_run=False), "alice")

        mgr.approve(job.id, "alice")
        with pytest.raises(ValueError, match="approver must differ from requester"):
            await mgr.run_job(job.id, "carol")

        _, job2 = mgr.create_tenant_and_bootstrap_job(
            _request(slug="beta", gateway_port=18790, dry_run=False), "alice"
        )
        mgr.approve(job2.id, "bob")
        with pytest.raises(ValueError, match="runner must differ from approver"):
            await mgr.run_job(job2.id, "bob")
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_two_person_rule_can_be_disabled(self, make_manager):
        mgr = make_manager(allow_live_execution=True, require_two_person_rule=False)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(dry_run=False), "alice")
        mgr.approve(job.id, "alice")
        assert (await mgr.run_job(job.id, "alice")).status == "succeeded"

    @pytest.mark.asyncio
    async def test_live_bootstrap_activates_tenant(self, make_manager):
        audit = ListAuditLogger()
        client = FakeProvisionerClient()
        mgr = make_manager(client=client, audit_logger=audit, allow_live_execution=True)
        tenant, job = mgr.create_tenant_and_bootstrap_job(_request(dry_run=False), "alice")
        mgr.approve(job.id, "bob")

        done = await mgr.run_job(job.id, "carol")

        assert done.status == "succeeded"
        assert all(c["dry_run"] is False for c in client.calls)
        assert mgr.get_tenant(tenant.id).status == "active"
        assert audit.actions[-2:] == ["provision_job_started", "provision_job_succeeded"]

    @pytest.mark.asyncio
    async def test_live_failure_marks_tenant_error(self, make_manager):
        failure = {"ok": False, "code": 124, "stdout": "", "stderr": "\nTimed out", "error": "Command failed: /usr/bin/chown"}
        client = FakeProvisionerClient(results={"set-owner-home": failure})
        audit = ListAuditLogger()
        mgr = make_manager(client=client, audit_logger=audit, allow_live_execution=True)
        tenant, job = mgr.create_tenant_and_bootstrap_job(_request(dry_run=False), "alice")
        mgr.approve(job.id, "bob")

        done = await mgr.run_job(job.id, "carol")

        assert done.status == "failed"
        assert done.result_json["failed_step_index"] == 5
        assert len(client.calls) == 5
        assert mgr.get_tenant(tenant.id).status == "error"
        assert audit.actions[-1] == "provision_job_failed"

    @pytest.mark.asyncio
    async def test_live_execution_disabled_fails_first_step(self, make_manager):
        client = FakeProvisionerClient()
        mgr = make_manager(client=client, allow_live_execution=False)
        _, job = mgr.create_tenant_and_bootstrap_job(_request(dry_run=False), "alice")
        mgr.approve(job.id, "bob")

        done = await mgr.run_job(job.id, "carol")

        assert client.calls == []
        assert done.status == "failed"
        assert done.result_json["failed_step_index"] == 1
        assert EXECUTION_DISABLED_ERROR in done.error_text

    @pytest.mark.asyncio
    async def test_update_applies_new_port(self, tmp_path, make_manager):
        mgr = make_manager(allow_live_execution=True)
        tenant, boot = mgr.create_tenant_and_bootstrap_job(_request(dry_run=False), "alice")
        mgr.approve(boot.id, "bob")
        await mgr.run_job(boot.id, "carol")

        job = mgr.create_update_job(tenant.id, {"gateway_port": 19001, "dry_run": False}, "alice")
        assert [s["key"] for s in job.plan_json][0] == "ensure-openclaw-tenants-dir"
        assert mgr.get_tenant(tenant.id).gateway_port == 18789
        mgr.approve(job.id, "bob")
        done = await mgr.run_job(job.id, "carol")

        assert done.status == "succeeded"
        assert mgr.get_tenant(tenant.id).gateway_port == 19001
        artifact = tmp_path / "data" / "provisioner" / "acme" / "openclaw-gateway.env"
        assert "OPENCLAW_GATEWAY_PORT=19001" in artifact.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_decommission_suspends_tenant(self, make_manager):
        mgr = make_manager(allow_live_execution=True)
        tenant, _ = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        job = mgr.create_decommission_job(tenant.id, {"dry_run": False, "reason": "churned"}, "alice")
        assert job.request_json["reason"] == "churned"
        mgr.approve(job.id, "bob")

        done = await mgr.run_job(job.id, "carol")

        assert done.status == "succeeded"
        assert mgr.get_tenant(tenant.id).status == "suspended"
        with pytest.raises(ValueError, match="decommissioned"):
            mgr.create_update_job(tenant.id, {}, "alice")


class TestQueries:

    def test_list_jobs_limits_and_status(self, make_manager):
        mgr = make_manager()
        tenant, _ = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        for _ in range(3):
            mgr.create_update_job(tenant.id, {}, "alice")

        assert len(mgr.list_jobs()) == 4
        assert len(mgr.list_jobs(limit=0)) == 1
        assert len(mgr.list_jobs(limit=10000)) == 4
        assert [j.job_type for j in mgr.list_jobs(tenant_id=tenant.id, limit=1)] == ["update"]
        assert mgr.list_jobs(status="approved") == []
        with pytest.raises(ValueError, match="Invalid job status"):
            mgr.list_jobs(status="paused")

    def test_list_tenants_includes_latest_job(self, make_manager):
        mgr = make_manager()
        tenant, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "bob")

        rows = mgr.list_tenants()
        assert rows[0]["slug"] == "acme"
        assert rows[0]["latest_job_id"] == job.id
        assert rows[0]["latest_job_status"] == "approved"
        assert mgr.get_tenant_by_slug("ACME").id == tenant.id

    def test_describe_job(self, make_manager):
        mgr = make_manager()
        _, job = mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        mgr.approve(job.id, "bob")

        detail = mgr.describe_job(job.id)
        assert detail["tenant_slug"] == "acme"
        assert detail["linux_user"] == "oc-acme"
        assert [e["step_key"] for e in detail["events"]] == ["queued", "approval"]
        assert mgr.describe_job(404) is None


class TestSettings:

    def test_defaults_follow_repo_root(self):
        s = ProvisioningSettings(repo_root="/srv/mc/")
        assert s.data_dir == "/srv/mc/.data"
        assert s.state_file == "/srv/mc/.data/provisioning.json"
        assert s.artifact_dir("acme") == "/srv/mc/.data/provisioner/acme"
        assert s.gateway_unit_template == "/srv/mc/ops/templates/openclaw-gateway@.service"

    def test_environment_overrides_config(self):
        config = {
            "provisioning": {
                "repo_root": "/srv/mc",
                "allow_live_execution": True,
                "default_owner_gateway": "edge",
                "require_two_person_rule": False,
            }
        }
        env = {
            "MISSION_CONTROL_REPO_ROOT": "/opt/mc",
            "MC_SUPER_PROVISION_EXEC": "false",
            "MC_DATA_DIR": "/var/lib/mc",
            "MC_SUPER_TEMPLATE_OPENCLAW_JSON": "/opt/tpl/openclaw.json",
        }
        s = ProvisioningSettings.from_config(config, environ=env)
        assert s.repo_root == "/opt/mc"
        assert s.allow_live_execution is False
        assert s.data_dir == "/var/lib/mc"
        assert s.template_openclaw_json == "/opt/tpl/openclaw.json"
        assert s.default_owner_gateway == "edge"
        assert s.require_two_person_rule is False

    def test_exec_flag_from_environment(self):
        s = ProvisioningSettings.from_config({}, environ={"MC_SUPER_PROVISION_EXEC": "true"})
        assert s.allow_live_execution is True

    def test_build_manager_uses_state_file(self, tmp_path):
        config = {"provisioning": {"data_dir": str(tmp_path), "state_file": str(tmp_path / "s.json")}}
        mgr = build_manager(config, environ={})
        mgr.create_tenant_and_bootstrap_job(_request(), "alice")
        assert (tmp_path / "s.json").exists()

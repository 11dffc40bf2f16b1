"""
Centralized constants for the Mission Control provisioner.

Collects socket defaults, executor limits, and compiled patterns shared by the
privileged daemon and the web-tier job runner.
"""
import re

# ── Daemon environment / defaults ──
DEFAULT_SOCKET_PATH = "/run/mc-provisioner.sock"
DEFAULT_SOCKET_GROUP = "openclaw"
DEFAULT_SOCKET_MODE = 0o660
ENV_SOCKET_PATH = "MC_PROVISIONER_SOCKET"
ENV_TOKEN = "MC_PROVISIONER_TOKEN"
ENV_SOCKET_GROUP = "MC_PROVISIONER_GROUP"

# ── Request limits ──
DEFAULT_REQUEST_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_REQUEST_BYTES = 64 * 1024

# ── Executor ──
DEFAULT_COMMAND_TIMEOUT_MS = 10000
MIN_COMMAND_TIMEOUT_MS = 1000
TIMEOUT_EXIT_CODE = 124
TIMEOUT_MARKER = "Timed out"
SPAWN_ERROR_EXIT_CODE = 1

# useradd contends for the passwd lock when tenants are created concurrently.
USERADD_MAX_ATTEMPTS = 6
USERADD_RETRY_DELAY_SECONDS = 0.8
# Client-side wait beyond the daemon's own command timeout.
CLIENT_TIMEOUT_GRACE_SECONDS = 2.0
PASSWD_LOCK_RE = re.compile(r"cannot lock /etc/passwd", re.IGNORECASE)

# ── Allow-list patterns ──
SAFE_USER_PATTERN = r"[a-z_][a-z0-9_-]{1,30}"
SAFE_USER_RE = re.compile(SAFE_USER_PATTERN)
TENANT_SLUG_RE = re.compile(r"[a-z0-9][a-z0-9-]{1,30}[a-z0-9]")
GATEWAY_SERVICE_RE = re.compile(rf"openclaw-gateway@{SAFE_USER_PATTERN}\.service")
TENANT_ENV_DIR = "/etc/openclaw-tenants"
TENANT_ENV_RE = re.compile(rf"/etc/openclaw-tenants/{SAFE_USER_PATTERN}\.env")
TENANT_CONFIG_TARGET_RE = re.compile(rf"/home/({SAFE_USER_PATTERN})/\.openclaw/openclaw\.json")
TENANT_STATE_DIR_RE = re.compile(rf"/home/({SAFE_USER_PATTERN})/(\.openclaw|workspace)")
GATEWAY_UNIT_TARGET = "/etc/systemd/system/openclaw-gateway@.service"
TRUSTED_BIN_DIRS = frozenset({"/usr/sbin", "/usr/bin", "/sbin", "/bin"})

# ── Template defaults (web tier) ──
DEFAULT_TEMPLATE_OPENCLAW_JSON = "/home/openclaw/.openclaw/openclaw.json"
DEFAULT_REPO_ROOT = "/home/openclaw/repos/mission-control"
GATEWAY_UNIT_TEMPLATE_RELPATH = "ops/templates/openclaw-gateway@.service"
ARTIFACT_RELDIR = ".data/provisioner"
GATEWAY_ENV_FILENAME = "openclaw-gateway.env"

# ── Jobs ──
MAX_PLAN_STEPS = 32
DEFAULT_STEP_TIMEOUT_MS = 15000
MAX_STORED_OUTPUT_CHARS = 4000
EVENT_PREVIEW_CHARS = 250
MAX_JOB_LIST_LIMIT = 500
DEFAULT_JOB_LIST_LIMIT = 100

# ── Web-tier environment ──
ENV_PROVISION_EXEC = "MC_SUPER_PROVISION_EXEC"
ENV_TEMPLATE_OPENCLAW_JSON = "MC_SUPER_TEMPLATE_OPENCLAW_JSON"
ENV_REPO_ROOT = "MISSION_CONTROL_REPO_ROOT"
ENV_TENANT_HOME_ROOT = "MC_TENANT_HOME_ROOT"
ENV_DEFAULT_OWNER_GATEWAY = "MC_DEFAULT_OWNER_GATEWAY"
ENV_DATA_DIR = "MC_DATA_DIR"
DEFAULT_TENANT_HOME_ROOT = "/home"
DEFAULT_WORKSPACE_DIRNAME = "workspace"
DEFAULT_OWNER_GATEWAY = "primary"
MAX_OWNER_GATEWAY_CHARS = 120

"""Closed allow-list of exact host command invocations for the provisioner.

Every entry is a capability grant for a root-capable daemon. Rules are data:
each command maps to one or more argument shapes, and a single generic routine
(`CommandAllowlist.validate`) evaluates them. Adding a permitted invocation
means adding a row to the table built in `_build_rules`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Pattern, Sequence, Tuple

from utils.constants import (
    ARTIFACT_RELDIR,
    DEFAULT_REPO_ROOT,
    DEFAULT_TEMPLATE_OPENCLAW_JSON,
    GATEWAY_ENV_FILENAME,
    GATEWAY_SERVICE_RE,
    GATEWAY_UNIT_TARGET,
    GATEWAY_UNIT_TEMPLATE_RELPATH,
    SAFE_USER_PATTERN,
    SAFE_USER_RE,
    TENANT_CONFIG_TARGET_RE,
    TENANT_ENV_DIR,
    TENANT_ENV_RE,
    TENANT_STATE_DIR_RE,
    TRUSTED_BIN_DIRS,
)


def command_basename(command: str) -> str:
    return str(command or "").split("/")[-1]


def is_safe_user(value: str) -> bool:
    return bool(SAFE_USER_RE.fullmatch(str(value or "")))


def _contains_line_break_or_nul(value: str) -> bool:
    text = str(value or "")
    return ("\n" in text) or ("\r" in text) or ("\x00" in text)


@dataclass(frozen=True)
class Arg:
    """Matcher for one positional argument."""

    reason: str
    literal: Optional[str] = None
    pattern: Optional[Pattern] = None
    choices: Optional[FrozenSet[str]] = None

    @property
    def is_literal(self) -> bool:
        return self.literal is not None

    def matches(self, value: str) -> bool:
        if self.literal is not None:
            return value == self.literal
        if self.choices is not None:
            return value in self.choices
        if self.pattern is not None:
            return bool(self.pattern.fullmatch(value))
        return False


def lit(value: str, reason: str) -> Arg:
    return Arg(reason=reason, literal=value)


def one_of(values, reason: str) -> Arg:
    return Arg(reason=reason, choices=frozenset(values))


def pattern(regex, reason: str) -> Arg:
    compiled = regex if isinstance(regex, re.Pattern) else re.compile(regex)
    return Arg(reason=reason, pattern=compiled)


Check = Tuple[Callable[[Sequence[str]], bool], str]


@dataclass(frozen=True)
class Shape:
    """Exact argument vector: one matcher per position plus cross-argument checks.

    ``select`` names the positions that pick this shape among siblings with
    the same arity; when they do not match, the next shape is tried.
    """

    args: Tuple[Arg, ...]
    checks: Tuple[Check, ...] = ()
    select: Tuple[int, ...] = ()

    @property
    def arity(self) -> int:
        return len(self.args)

    def is_selected(self, argv: Sequence[str]) -> bool:
        return all(self.args[i].matches(argv[i]) for i in self.select)

    def check(self, argv: Sequence[str]) -> Optional[str]:
        # Literal flags first, then constrained values, then relations.
        for arg, value in zip(self.args, argv):
            if arg.is_literal and not arg.matches(value):
                return arg.reason
        for arg, value in zip(self.args, argv):
            if not arg.is_literal and not arg.matches(value):
                return arg.reason
        for predicate, reason in self.checks:
            if not predicate(argv):
                return reason
        return None


@dataclass(frozen=True)
class CommandRule:
    shapes: Tuple[Shape, ...]
    arity_reason: str
    unmatched_reason: str = ""
    common: Tuple[Tuple[int, Arg], ...] = field(default=())


class CommandAllowlist:
    """Evaluate (command, args) against the closed allow-list table."""

    def __init__(
        self,
        *,
        template_openclaw_json: str = DEFAULT_TEMPLATE_OPENCLAW_JSON,
        repo_root: str = DEFAULT_REPO_ROOT,
        artifact_root: Optional[str] = None,
    ):
        self.template_openclaw_json = str(template_openclaw_json)
        self.repo_root = str(repo_root).rstrip("/") or "/"
        self.gateway_unit_template = f"{self.repo_root}/{GATEWAY_UNIT_TEMPLATE_RELPATH}"
        self.artifact_root = str(artifact_root or f"{self.repo_root}/{ARTIFACT_RELDIR}").rstrip("/")
        self.rules: Dict[str, CommandRule] = self._build_rules()

    @property
    def commands(self) -> List[str]:
        return sorted(self.rules)

    def _build_rules(self) -> Dict[str, CommandRule]:
        user = pattern(SAFE_USER_RE, "Invalid username")
        owner = pattern(rf"root|{SAFE_USER_PATTERN}", "install ownership not allowed")
        service = pattern(GATEWAY_SERVICE_RE, "systemctl service name not allowed")
        tenant_env_source = re.compile(
            re.escape(self.artifact_root) + r"/[a-z0-9-]{3,32}/" + re.escape(GATEWAY_ENV_FILENAME)
        )

        def _install_owner_pair(argv: Sequence[str]) -> bool:
            return argv[4] == argv[6]

        def _install_target(argv: Sequence[str]) -> bool:
            owner_user, target = argv[4], argv[7]
            if owner_user == "root" and target == TENANT_ENV_DIR:
                return True
            return is_safe_user(owner_user) and target in (
                f"/home/{owner_user}/.openclaw",
                f"/home/{owner_user}/workspace",
            )

        def _chown_owner_pair(argv: Sequence[str]) -> bool:
            user_a, _, user_b = argv[1].partition(":")
            return user_a == user_b

        def _chown_target(argv: Sequence[str]) -> bool:
            return argv[2] == f"/home/{argv[1].partition(':')[0]}"

        return {
            "useradd": CommandRule(
                shapes=(
                    Shape(
                        args=(
                            lit("-m", "useradd args not allowed"),
                            lit("-s", "useradd args not allowed"),
                            lit("/bin/bash", "useradd args not allowed"),
                            user,
                        )
                    ),
                ),
                arity_reason="useradd argument mismatch",
            ),
            "install": CommandRule(
                shapes=(
                    Shape(
                        args=(
                            lit("-d", "install args not allowed"),
                            lit("-m", "install args not allowed"),
                            one_of({"0750", "0700"}, "install mode not allowed"),
                            lit("-o", "install args not allowed"),
                            owner,
                            lit("-g", "install args not allowed"),
                            owner,
                            pattern(r"/.+", "install path not allowed"),
                        ),
                        checks=(
                            (_install_owner_pair, "install ownership not allowed"),
                            (_install_target, "install path not allowed"),
                        ),
                    ),
                ),
                arity_reason="install argument mismatch",
            ),
            "cp": CommandRule(
                common=((0, one_of({"-n", "-f"}, "cp flag not allowed")),),
                shapes=(
                    Shape(
                        select=(1,),
                        args=(
                            lit("-n", "openclaw config copy must use -n"),
                            lit(self.template_openclaw_json, "cp source not allowed"),
                            pattern(TENANT_CONFIG_TARGET_RE, "cp target not allowed"),
                        ),
                    ),
                    Shape(
                        select=(1,),
                        args=(
                            lit("-n", "template copy must use -n"),
                            lit(self.gateway_unit_template, "cp source not allowed"),
                            lit(GATEWAY_UNIT_TARGET, "gateway template target not allowed"),
                        ),
                    ),
                    Shape(
                        select=(1,),
                        args=(
                            lit("-f", "tenant env copy must use -f"),
                            pattern(tenant_env_source, "cp source not allowed"),
                            pattern(TENANT_ENV_RE, "tenant env target not allowed"),
                        ),
                    ),
                ),
                arity_reason="cp argument mismatch",
                unmatched_reason="cp source not allowed",
            ),
            "chown": CommandRule(
                shapes=(
                    Shape(
                        args=(
                            lit("-R", "chown must use -R"),
                            pattern(rf"{SAFE_USER_PATTERN}:{SAFE_USER_PATTERN}", "chown owner not allowed"),
                            pattern(r"/.+", "chown target not allowed"),
                        ),
                        checks=(
                            (_chown_owner_pair, "chown owner not allowed"),
                            (_chown_target, "chown target not allowed"),
                        ),
                    ),
                ),
                arity_reason="chown argument mismatch",
            ),
            "rm": CommandRule(
                shapes=(
                    Shape(
                        select=(0,),
                        args=(
                            lit("-f", "rm flag not allowed"),
                            pattern(TENANT_ENV_RE, "rm -f target not allowed"),
                        ),
                    ),
                    Shape(
                        select=(0,),
                        args=(
                            lit("-rf", "rm flag not allowed"),
                            pattern(TENANT_STATE_DIR_RE, "rm -rf target not allowed"),
                        ),
                    ),
                ),
                arity_reason="rm argument mismatch",
                unmatched_reason="rm flag not allowed",
            ),
            "userdel": CommandRule(
                shapes=(Shape(args=(lit("-r", "userdel must use -r"), user)),),
                arity_reason="userdel argument mismatch",
            ),
            "true": CommandRule(
                shapes=(Shape(args=()),),
                arity_reason="true takes no args",
            ),
            "systemctl": CommandRule(
                shapes=(
                    Shape(args=(lit("daemon-reload", "systemctl args not allowed"),)),
                    Shape(
                        select=(0, 1),
                        args=(
                            lit("enable", "systemctl args not allowed"),
                            lit("--now", "systemctl args not allowed"),
                            service,
                        ),
                    ),
                    Shape(
                        select=(0, 1),
                        args=(
                            lit("disable", "systemctl args not allowed"),
                            lit("--now", "systemctl args not allowed"),
                            service,
                        ),
                    ),
                ),
                arity_reason="systemctl args not allowed",
                unmatched_reason="systemctl args not allowed",
            ),
        }

    def validate(self, command, args) -> Optional[str]:
        """Return None when the invocation is allowed, otherwise a rejection reason."""
        if not command or not isinstance(command, str) or not isinstance(args, (list, tuple)):
            return "Invalid command payload"
        if any(not isinstance(a, str) for a in args):
            return "Invalid command payload"

        name = command_basename(command)
        rule = self.rules.get(name)
        if rule is None:
            return f"Command not allowlisted: {command}"
        if "/" in command and command.rsplit("/", 1)[0] not in TRUSTED_BIN_DIRS:
            return f"Command path not allowed: {command}"
        if any(_contains_line_break_or_nul(a) for a in args):
            return "Invalid argument characters"

        argv = list(args)
        candidates = [shape for shape in rule.shapes if shape.arity == len(argv)]
        if not candidates:
            return rule.arity_reason

        for position, arg in rule.common:
            if not arg.matches(argv[position]):
                return arg.reason

        selected = [shape for shape in candidates if shape.is_selected(argv)]
        if not selected:
            return rule.unmatched_reason or rule.arity_reason

        reason = None
        for shape in selected:
            reason = shape.check(argv)
            if reason is None:
                return None
        return reason


DEFAULT_ALLOWLIST = CommandAllowlist()


def validate_command(command, args) -> Optional[str]:
    return DEFAULT_ALLOWLIST.validate(command, args)

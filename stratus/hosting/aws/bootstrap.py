"""First-boot payload for cluster nodes.

The payload is composed from small operations, each a string or a function
returning one, and rendered to a single shell script:

    >>> resolve([shell("echo one"), lambda: "echo two"])
    'echo one\\necho two'

The script carries the one-time account password, which is why the instance
controller clears it from the instance once the node has booted.
"""

from __future__ import annotations

import shlex
from collections.abc import Callable
from typing import Final

from stratus.constants import DEFAULT_IMAGE_USER, SSH_PORT, STANDARD_ACCOUNT
from stratus.definition import ClusterLogin

type Op = str | Callable[[], str] | list[Op]
"""Operation type: either a literal string or a function returning a string."""


def resolve(op: Op) -> str:
    """Resolve an operation to its string representation."""
    match op:
        case str(op):
            return op
        case list(op):
            return "\n".join(resolve(o) for o in op)
        case _:
            return op()


HEADER: Final = """#!/bin/bash
set -e
export DEBIAN_FRONTEND=noninteractive
"""

SSHD_CONFIG: Final = f"""Port {SSH_PORT}
Protocol 2
HostKey /etc/ssh/ssh_host_rsa_key
HostKey /etc/ssh/ssh_host_ecdsa_key
HostKey /etc/ssh/ssh_host_ed25519_key
SyslogFacility AUTH
LogLevel INFO
LoginGraceTime 120
PermitRootLogin no
StrictModes yes
PubkeyAuthentication yes
IgnoreRhosts yes
HostbasedAuthentication no
PermitEmptyPasswords no
ChallengeResponseAuthentication no
PasswordAuthentication yes
X11Forwarding no
PrintMotd no
AcceptEnv LANG LC_*
Subsystem sftp /usr/lib/openssh/sftp-server
UsePAM yes
ClientAliveInterval 60
"""


# =============================================================================
# Operations
# =============================================================================


def shell(cmd: str) -> Op:
    return lambda: cmd


def file(path: str, content: str, mode: str | None = None) -> Op:
    """Write content to a file using a quoted heredoc."""

    def generate() -> str:
        lines = [f"cat > {path} << 'EOF'", content.rstrip("\n"), "EOF"]
        if mode:
            lines.append(f"chmod {mode} {path}")
        return "\n".join(lines)

    return generate


def apt_remove(*packages: str) -> Op:
    if not packages:
        return lambda: "# No APT packages to remove"
    return lambda: f"apt-get -o DPkg::Lock::Timeout=-1 purge -y -qq {' '.join(packages)} || true"


def set_password(user: str, password: str) -> Op:
    """Set a password without it appearing on a command line."""
    return lambda: f"echo {shlex.quote(f'{user}:{password}')} | chpasswd"


def rename_account(current: str, new: str) -> Op:
    """Rename a user together with its group and home directory."""
    return [
        f"if id {current} >/dev/null 2>&1; then",
        f"    usermod -l {new} -d /home/{new} -m {current}",
        f"    groupmod -n {new} {current}",
        f"    sed -i 's/^{current} /{new} /' /etc/sudoers.d/90-cloud-init-users || true",
        "fi",
    ]


# =============================================================================
# Payload
# =============================================================================


def first_boot_script(login: ClusterLogin) -> str:
    """Render the script every node runs on first boot."""
    return resolve([
        HEADER,
        apt_remove("ec2-instance-connect"),
        file("/etc/ssh/sshd_config", SSHD_CONFIG, mode="0644"),
        shell("systemctl restart ssh"),
        set_password(DEFAULT_IMAGE_USER, login.ssh_password),
        rename_account(DEFAULT_IMAGE_USER, STANDARD_ACCOUNT),
    ])

from __future__ import annotations

import pytest

from stratus.constants import STANDARD_ACCOUNT
from stratus.definition import ClusterLogin
from stratus.hosting.aws.bootstrap import (
    HEADER,
    apt_remove,
    file,
    first_boot_script,
    rename_account,
    resolve,
    set_password,
    shell,
)

pytestmark = [pytest.mark.xdist_group("unit")]


class TestOps:
    def test_resolve_nested(self):
        assert resolve(["a", [shell("b"), lambda: "c"]]) == "a\nb\nc"

    def test_file_uses_quoted_heredoc(self):
        script = resolve(file("/etc/motd", "hello $USER\n", mode="0644"))
        assert script == "cat > /etc/motd << 'EOF'\nhello $USER\nEOF\nchmod 0644 /etc/motd"

    def test_apt_remove_nothing(self):
        assert resolve(apt_remove()).startswith("#")

    def test_apt_remove_tolerates_missing_packages(self):
        assert resolve(apt_remove("a", "b")).endswith("purge -y -qq a b || true")

    def test_password_is_quoted(self):
        assert resolve(set_password("ubuntu", "it's $ecret")) == "echo 'ubuntu:it'\"'\"'s $ecret' | chpasswd"

    def test_rename_account_is_guarded(self):
        script = resolve(rename_account("ubuntu", "sysadmin"))
        assert script.startswith("if id ubuntu")
        assert "usermod -l sysadmin -d /home/sysadmin -m ubuntu" in script
        assert script.endswith("fi")


class TestFirstBootScript:
    def test_hardens_and_renames(self):
        script = first_boot_script(ClusterLogin(ssh_password="pw", ssh_public_key="ssh-ed25519 AAAA"))
        assert script.startswith(HEADER)
        assert "PermitRootLogin no" in script
        assert "ec2-instance-connect" in script
        assert "echo ubuntu:pw | chpasswd" in script
        assert f"groupmod -n {STANDARD_ACCOUNT} ubuntu" in script

    def test_password_set_before_rename(self):
        script = first_boot_script(ClusterLogin(ssh_password="pw", ssh_public_key="k"))
        assert script.index("chpasswd") < script.index("usermod")

"""Tests for vmcomm.endpoint: connection parameters and key checks."""

from __future__ import annotations

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from vmcomm.config import SSHSettings
from vmcomm.endpoint import Endpoint, check_key_permissions
from vmcomm.errors import SSHKeyBadOwner, SSHKeyBadPermissions


class TestFromSSHInfo:

    def test_defaults_from_settings(self):
        settings = SSHSettings(connect_retries=3, connect_timeout=9, keep_alive=False)
        ep = Endpoint.from_ssh_info({"host": "10.0.0.5"}, settings)
        assert ep.host == "10.0.0.5"
        assert ep.port == 22
        assert ep.username == "root"
        assert ep.connect_retries == 3
        assert ep.connect_timeout == 9
        assert ep.keep_alive is False
        assert ep.private_key_paths == ()

    def test_info_overrides_retries(self):
        info = {"host": "h", "connect_retries": 1, "connect_retry_delay": 0}
        ep = Endpoint.from_ssh_info(info, SSHSettings())
        assert ep.connect_retries == 1
        assert ep.connect_retry_delay == 0

    def test_single_key_path_becomes_tuple(self):
        ep = Endpoint.from_ssh_info({"host": "h", "private_key_path": "/k"}, SSHSettings())
        assert ep.private_key_paths == ("/k",)

    @pytest.mark.parametrize(
        "value, expected",
        [(True, "always"), (False, "never"), (None, "never"), ("accepts_new", "accept_new"), ("always", "always")],
    )
    def test_host_key_policy_spellings(self, value, expected):
        ep = Endpoint.from_ssh_info({"host": "h", "verify_host_key": value}, SSHSettings())
        assert ep.verify_host_key == expected


class TestAuthMethods:

    def test_keys_only(self):
        ep = Endpoint(host="h", private_key_paths=("/k",))
        assert ep.auth_methods == ["none", "hostbased", "publickey"]
        assert ep.auth_type == "private key"

    def test_password_only(self):
        ep = Endpoint(host="h", password="pw")
        assert ep.auth_methods == ["none", "hostbased", "password"]
        assert ep.auth_type == "password"

    def test_both(self):
        ep = Endpoint(host="h", password="pw", private_key_paths=("/k",))
        assert ep.auth_methods == ["none", "hostbased", "publickey", "password"]


class TestCheckKeyPermissions:

    def test_tightens_open_mode(self, tmp_path: Path):
        key = tmp_path / "id"
        key.write_text("key")
        key.chmod(0o644)
        check_key_permissions(key)
        assert stat.S_IMODE(key.stat().st_mode) == 0o600

    def test_private_mode_untouched(self, tmp_path: Path):
        key = tmp_path / "id"
        key.write_text("key")
        key.chmod(0o400)
        check_key_permissions(key)
        assert stat.S_IMODE(key.stat().st_mode) == 0o400

    def test_wrong_owner(self, tmp_path: Path):
        key = tmp_path / "id"
        key.write_text("key")
        with patch("vmcomm.endpoint.os.getuid", return_value=os.getuid() + 1):
            with pytest.raises(SSHKeyBadOwner) as exc_info:
                check_key_permissions(key)
        assert exc_info.value.key_path == str(key)

    def test_unfixable_mode(self, tmp_path: Path):
        key = tmp_path / "id"
        key.write_text("key")
        key.chmod(0o644)
        with patch.object(Path, "chmod", side_effect=PermissionError("read-only")):
            with pytest.raises(SSHKeyBadPermissions):
                check_key_permissions(key)

"""Tests for vmcomm.config: settings and machine config parsing."""

import pytest
from pathlib import Path

from vmcomm.config import SSHSettings, find_config, load_config, settings_from_dict


# ---------------------------------------------------------------------------
# settings_from_dict
# ---------------------------------------------------------------------------

class TestSettingsFromDict:
    """Tests for settings_from_dict()."""

    def test_defaults(self):
        s = settings_from_dict({})
        assert s == SSHSettings()
        assert s.shell == "bash -l"
        assert s.sudo_command == "sudo -E -H %c"
        assert s.pty is False
        assert s.insert_key is True
        assert s.key_type == "auto"

    def test_overrides(self):
        s = settings_from_dict({"shell": "sh", "pty": True, "connect_retries": 2, "key_type": "rsa"})
        assert s.shell == "sh"
        assert s.pty is True
        assert s.connect_retries == 2
        assert s.key_type == "rsa"

    def test_insecure_key_dir_expanded(self):
        s = settings_from_dict({"insecure_key_dir": "~/keys"})
        assert s.insecure_key_dir == Path.home() / "keys"

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="bogus"):
            settings_from_dict({"bogus": 1})

    def test_wrong_type(self):
        with pytest.raises(ValueError, match="connect_retries"):
            settings_from_dict({"connect_retries": "five"})

    def test_bool_not_numeric(self):
        with pytest.raises(ValueError, match="connect_timeout"):
            settings_from_dict({"connect_timeout": True})

    def test_bad_key_type(self):
        with pytest.raises(ValueError, match="key_type"):
            settings_from_dict({"key_type": "dsa"})

    def test_sudo_command_needs_placeholder(self):
        with pytest.raises(ValueError, match="%c"):
            settings_from_dict({"sudo_command": "sudo"})


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------

class TestLoadConfig:
    """Tests for load_config()."""

    def test_full_config(self, tmp_path):
        """All sections present, loads without error."""
        p = tmp_path / "web.toml"
        p.write_text("""\
[ssh]
shell = "sh -l"
connect_retries = 3

[machine]
host = "192.168.122.10"
port = 2222
username = "vagrant"
private_key_path = "~/.ssh/id_ed25519"
forward_agent = true
forward_env = ["LANG"]
verify_host_key = "accept_new"
""")
        c = load_config(p)
        assert c["ssh"].shell == "sh -l"
        assert c["ssh"].connect_retries == 3
        m = c["machine"]
        assert m["host"] == "192.168.122.10"
        assert m["port"] == 2222
        assert m["private_key_path"] == [str(Path.home() / ".ssh" / "id_ed25519")]
        assert m["forward_agent"] is True
        assert m["forward_env"] == ["LANG"]
        assert m["verify_host_key"] == "accept_new"

    def test_machine_defaults(self, tmp_path):
        p = tmp_path / "web.toml"
        p.write_text('[machine]\nhost = "h"\nusername = "root"\n')
        m = load_config(p)["machine"]
        assert m["port"] == 22
        assert m["password"] is None
        assert m["private_key_path"] == []
        assert m["verify_host_key"] == "never"
        assert m["keys_only"] is True

    def test_empty_file_gets_default_settings(self, tmp_path):
        p = tmp_path / "web.toml"
        p.write_text("")
        c = load_config(p)
        assert c["ssh"] == SSHSettings()
        assert "machine" not in c

    def test_missing_host(self, tmp_path):
        p = tmp_path / "web.toml"
        p.write_text('[machine]\nusername = "root"\n')
        with pytest.raises(ValueError, match="host"):
            load_config(p)

    def test_bad_host_key_policy(self, tmp_path):
        p = tmp_path / "web.toml"
        p.write_text('[machine]\nhost = "h"\nusername = "u"\nverify_host_key = "sometimes"\n')
        with pytest.raises(ValueError, match="verify_host_key"):
            load_config(p)

    def test_libvirt_passthrough(self, tmp_path):
        p = tmp_path / "web.toml"
        p.write_text("""\
[libvirt]
uri = "qemu:///session"
domain_prefix = "lab-"

[libvirt.ssh]
username = "arch"
""")
        c = load_config(p)
        assert c["libvirt"]["uri"] == "qemu:///session"
        assert c["libvirt"]["ssh"]["username"] == "arch"


# ---------------------------------------------------------------------------
# find_config
# ---------------------------------------------------------------------------

class TestFindConfig:
    """Tests for find_config()."""

    def test_find_in_single_directory(self, tmp_path):
        (tmp_path / "web.toml").write_text("")
        assert find_config("web", [tmp_path]) == tmp_path / "web.toml"

    def test_not_found_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_config("nonexistent", [tmp_path])

    def test_first_directory_wins(self, tmp_path):
        d1 = tmp_path / "dir1"
        d2 = tmp_path / "dir2"
        d1.mkdir()
        d2.mkdir()
        (d1 / "dup.toml").write_text("")
        (d2 / "dup.toml").write_text("")
        assert find_config("dup", [d1, d2]) == d1 / "dup.toml"

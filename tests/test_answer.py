"""Tests for answer file parsing and validation."""

import pytest

from auto_installer.devices.selector import FilterMatch
from auto_installer.domain.answer import (
    Answer,
    BtrfsOptions,
    DhcpNetwork,
    ExplicitDisks,
    FilteredDisks,
    FirstBootOrdering,
    FirstBootSource,
    FqdnFromDhcp,
    InterfacePinning,
    LvmOptions,
    MAX_IFNAME_LEN,
    ManualNetwork,
    RebootMode,
    ZfsOptions,
    check_interface_name,
    find_deprecated_keys,
    load_answer,
    load_toml,
    parse_answer,
)
from auto_installer.domain.options import (
    BtrfsRaidLevel,
    Filesystem,
    Fqdn,
    KeyboardLayout,
    ZfsRaidLevel,
)
from auto_installer.exceptions import AnswerError, AnswerParseError, AnswerValidationError

MANUAL_NETWORK = """\
[network]
source = "from-answer"
cidr = "10.10.10.10/24"
dns = "10.10.10.1"
gateway = "10.10.10.1"
filter.ID_NET_NAME_MAC = "*bbbbbb"
"""

ZFS_FILTER = """\
[disk-setup]
filesystem = "zfs"
zfs.raid = "raid1"
filter-match = "all"
filter.ID_SERIAL_SHORT = "*2222*"
"""


GLOBAL_VALUES = {
    "keyboard": '"de"',
    "country": '"at"',
    "fqdn": '"pveauto.testinstall"',
    "mailto": '"mail@no.invalid"',
    "timezone": '"Europe/Vienna"',
    "root-password": '"12345678"',
}


def global_section(**values):
    """Build a [global] section; ``None`` drops a key."""
    lines = dict(GLOBAL_VALUES)
    for key, value in values.items():
        if value is None:
            lines.pop(key, None)
        else:
            lines[key] = value
    return "[global]\n" + "".join(f"{key} = {value}\n" for key, value in lines.items())


def assert_field_error(text, field):
    with pytest.raises(AnswerValidationError) as exc_info:
        Answer.parse(text)
    assert exc_info.value.field == field
    return exc_info.value


class TestMinimalAnswer:
    """Test the smallest valid answer file."""

    def test_parse(self, answer_toml):
        """Test all sections are parsed into typed values."""
        answer = Answer.parse(answer_toml)
        settings = answer.global_
        assert settings.country == "at"
        assert settings.keyboard is KeyboardLayout.DE
        assert settings.fqdn == Fqdn(("pveauto", "testinstall"))
        assert settings.root_password == "12345678"
        assert settings.root_password_hashed is None
        assert settings.reboot_on_error is False
        assert settings.reboot_mode is RebootMode.REBOOT
        assert answer.network.use_dhcp
        assert isinstance(answer.network.settings, DhcpNetwork)
        assert answer.disks.fs_type.filesystem is Filesystem.EXT4
        assert answer.disks.selection == ExplicitDisks(("sda",))
        assert answer.disks.options == LvmOptions()
        assert answer.first_boot is None
        assert answer.post_installation_webhook is None

    def test_parse_bytes(self, answer_toml):
        """Test raw bytes are accepted."""
        assert parse_answer(answer_toml.encode()).global_.country == "at"

    def test_load(self, tmp_path, answer_toml):
        """Test loading from a file."""
        path = tmp_path / "answer.toml"
        path.write_text(answer_toml)
        assert load_answer(path).global_.timezone == "Europe/Vienna"

    def test_load_missing_file(self, tmp_path):
        """Test a missing file raises AnswerParseError."""
        with pytest.raises(AnswerParseError, match="opening answer file failed"):
            Answer.load(tmp_path / "missing.toml")


class TestSyntaxErrors:
    """Test malformed documents."""

    def test_invalid_toml(self):
        """Test TOML syntax errors raise AnswerParseError."""
        with pytest.raises(AnswerParseError) as exc_info:
            Answer.parse("[global\nkeyboard = ")
        assert isinstance(exc_info.value, AnswerError)

    def test_invalid_utf8(self):
        """Test undecodable bytes raise AnswerParseError."""
        with pytest.raises(AnswerParseError, match="UTF-8"):
            load_toml(b"\xff\xfe[global]")

    def test_missing_section(self, answer_factory):
        """Test each mandatory section is required."""
        assert_field_error(answer_factory(network=""), "network")

    def test_unknown_top_level_section(self, answer_factory):
        """Test unknown sections are rejected."""
        assert_field_error(answer_factory(extra="[system]\nfoo = 1\n"), "system")

    def test_unknown_key(self, answer_factory):
        """Test unknown keys inside a section are rejected."""
        error = assert_field_error(
            answer_factory(global_=global_section(color='"blue"')),
            "global.color",
        )
        assert "unknown field" in str(error)


class TestGlobalSection:
    """Test the [global] section."""

    def test_snake_case_alias(self, answer_factory):
        """Test snake_case spelling of a key is accepted."""
        text = answer_factory(global_=global_section(**{"root-password": None, "root_password": '"abcdefgh"'}))
        assert Answer.parse(text).global_.root_password == "abcdefgh"

    def test_password_alias(self, answer_factory):
        """Test the old ``password`` key maps to root-password."""
        text = answer_factory(global_=global_section(**{"root-password": None, "password": '"abcdefgh"'}))
        assert Answer.parse(text).global_.root_password == "abcdefgh"

    def test_both_spellings_rejected(self, answer_factory):
        """Test a key given in both spellings is an error."""
        text = answer_factory(global_=global_section(reboot_on_error="true", **{"reboot-on-error": "false"}))
        error = assert_field_error(text, "global.reboot-on-error")
        assert "given twice" in str(error)

    def test_missing_required_field(self, answer_factory):
        """Test a missing required field is named."""
        error = assert_field_error(answer_factory(global_=global_section(timezone=None)), "global.timezone")
        assert "must be set" in str(error)

    def test_hashed_password(self, answer_factory):
        text = answer_factory(
            global_=global_section(**{"root-password": None, "root-password-hashed": '"$y$j9T$abc"'})
        )
        settings = Answer.parse(text).global_
        assert settings.root_password is None
        assert settings.root_password_hashed == "$y$j9T$abc"

    def test_both_passwords(self, answer_factory):
        """Test plain and hashed password are mutually exclusive."""
        text = answer_factory(global_=global_section(**{"root-password-hashed": '"$y$abc"'}))
        error = assert_field_error(text, "global.root-password")
        assert "cannot be set at the same time" in str(error)

    def test_no_password(self, answer_factory):
        text = answer_factory(global_=global_section(**{"root-password": None}))
        assert_field_error(text, "global.root-password")

    def test_short_password(self, answer_factory):
        """Test the minimum password length."""
        text = answer_factory(global_=global_section(**{"root-password": '"1234567"'}))
        error = assert_field_error(text, "global.root-password")
        assert "at least 8" in str(error)

    def test_placeholder_email(self, answer_factory):
        text = answer_factory(global_=global_section(mailto='"mail@example.invalid"'))
        assert_field_error(text, "global.mailto")

    def test_invalid_keyboard(self, answer_factory):
        text = answer_factory(global_=global_section(keyboard='"xx"'))
        assert_field_error(text, "global.keyboard")

    def test_invalid_fqdn(self, answer_factory):
        text = answer_factory(global_=global_section(fqdn='"pveauto"'))
        assert_field_error(text, "global.fqdn")

    def test_fqdn_from_dhcp(self, answer_factory):
        """Test the extended FQDN table."""
        text = answer_factory(
            global_=global_section(fqdn='{ source = "from-dhcp", domain = "fallback.example" }')
        )
        assert Answer.parse(text).global_.fqdn == FqdnFromDhcp(domain="fallback.example")

    def test_fqdn_invalid_source(self, answer_factory):
        text = answer_factory(global_=global_section(fqdn='{ source = "from-answer" }'))
        assert_field_error(text, "global.fqdn.source")

    def test_optional_settings(self, answer_factory):
        """Test reboot and command list settings."""
        text = answer_factory(
            global_=global_section(
                **{
                    "reboot-on-error": "true",
                    "reboot-mode": '"power-off"',
                    "root-ssh-keys": '["ssh-ed25519 AAAA admin@host"]',
                    "pre-commands": '["echo pre"]',
                    "post-commands": '["echo post", "sync"]',
                }
            )
        )
        settings = Answer.parse(text).global_
        assert settings.reboot_on_error is True
        assert settings.reboot_mode is RebootMode.POWER_OFF
        assert settings.root_ssh_keys == ("ssh-ed25519 AAAA admin@host",)
        assert settings.pre_commands == ("echo pre",)
        assert settings.post_commands == ("echo post", "sync")

    def test_wrong_type(self, answer_factory):
        text = answer_factory(global_=global_section(**{"reboot-on-error": '"yes"'}))
        assert_field_error(text, "global.reboot-on-error")


class TestNetworkSection:
    """Test the [network] section."""

    def test_manual_network(self, answer_factory):
        """Test a complete static configuration."""
        network = Answer.parse(answer_factory(network=MANUAL_NETWORK)).network
        assert not network.use_dhcp
        settings = network.settings
        assert isinstance(settings, ManualNetwork)
        assert str(settings.cidr) == "10.10.10.10/24"
        assert str(settings.gateway) == "10.10.10.1"
        assert dict(settings.filter) == {"ID_NET_NAME_MAC": "*bbbbbb"}

    def test_use_dhcp_false(self, answer_factory):
        """Test the older use-dhcp flag selects manual configuration."""
        text = MANUAL_NETWORK.replace('source = "from-answer"', "use-dhcp = false")
        assert not Answer.parse(answer_factory(network=text)).network.use_dhcp

    def test_missing_gateway(self, answer_factory):
        """Test a manual configuration without gateway names the field."""
        text = MANUAL_NETWORK.replace('gateway = "10.10.10.1"\n', "")
        error = assert_field_error(answer_factory(network=text), "network.gateway")
        assert "must be set" in str(error)

    def test_missing_filter(self, answer_factory):
        text = MANUAL_NETWORK.replace('filter.ID_NET_NAME_MAC = "*bbbbbb"\n', "")
        assert_field_error(answer_factory(network=text), "network.filter")

    def test_invalid_cidr(self, answer_factory):
        text = MANUAL_NETWORK.replace("10.10.10.10/24", "10.10.10.10/40")
        assert_field_error(answer_factory(network=text), "network.cidr")

    def test_dhcp_ignores_manual_fields(self, answer_factory, log_messages):
        """Test manual fields are ignored with a warning when DHCP is used."""
        text = MANUAL_NETWORK.replace('source = "from-answer"', 'source = "from-dhcp"')
        network = Answer.parse(answer_factory(network=text)).network
        assert network.use_dhcp
        assert any("Ignoring 'network.cidr'" in message for message in log_messages)

    def test_contradicting_source(self, answer_factory):
        """Test use-dhcp and source must agree."""
        text = '[network]\nsource = "from-dhcp"\nuse-dhcp = false\n'
        assert_field_error(answer_factory(network=text), "network.source")

    def test_filter_keys_are_not_validated(self, answer_factory):
        """Test udev property names with underscores are kept as is."""
        network = Answer.parse(answer_factory(network=MANUAL_NETWORK)).network
        assert "ID_NET_NAME_MAC" in network.settings.filter


def pinned_network(*mapping, enabled="true"):
    """Build a DHCP [network] section with interface name pinning."""
    lines = [
        '[network]\nsource = "from-dhcp"\n',
        f"[network.interface-name-pinning]\nenabled = {enabled}\n",
        "[network.interface-name-pinning.mapping]\n",
    ]
    lines.extend(f"{entry}\n" for entry in mapping)
    return "\n".join(lines)


class TestInterfaceNamePinning:
    """Test [network.interface-name-pinning]."""

    def test_mapping(self, answer_factory):
        """Test names are keyed by lower case MAC address."""
        text = pinned_network('"52:54:00:AA:AA:AA" = "mgmt"', '"52:54:00:bb:bb:bb" = "uplink_1"')
        pinning = Answer.parse(answer_factory(network=text)).network.interface_name_pinning
        assert pinning.enabled
        assert dict(pinning.mapping) == {
            "52:54:00:aa:aa:aa": "mgmt",
            "52:54:00:bb:bb:bb": "uplink_1",
        }

    def test_absent(self, answer_toml):
        assert Answer.parse(answer_toml).network.interface_name_pinning is None

    def test_enabled_without_mapping(self, answer_factory):
        text = '[network]\nsource = "from-dhcp"\ninterface-name-pinning.enabled = true\n'
        pinning = Answer.parse(answer_factory(network=text)).network.interface_name_pinning
        assert pinning.enabled
        assert dict(pinning.mapping) == {}

    def test_with_manual_network(self, answer_factory):
        text = MANUAL_NETWORK + "interface-name-pinning.enabled = true\n"
        network = Answer.parse(answer_factory(network=text)).network
        assert isinstance(network.settings, ManualNetwork)
        assert network.interface_name_pinning.enabled

    def test_longest_name(self, answer_factory):
        text = pinned_network(f'"52:54:00:aa:aa:aa" = "{"n" * MAX_IFNAME_LEN}"')
        pinning = Answer.parse(answer_factory(network=text)).network.interface_name_pinning
        assert pinning.mapping["52:54:00:aa:aa:aa"] == "n" * MAX_IFNAME_LEN

    @pytest.mark.parametrize(
        "name,reason",
        [
            ("", "cannot be empty"),
            ("n" * (MAX_IFNAME_LEN + 1), "cannot be longer than 15 characters"),
            ("1234", "fully numeric"),
            ("0mgmt", "start with a number"),
            ("mgmt-0", "alphanumeric characters and underscores"),
            ("mgmt.10", "alphanumeric characters and underscores"),
            ("brücke", "alphanumeric characters and underscores"),
        ],
    )
    def test_invalid_names(self, answer_factory, name, reason):
        text = pinned_network(f'"52:54:00:aa:aa:aa" = "{name}"')
        error = assert_field_error(
            answer_factory(network=text), "network.interface-name-pinning.mapping.52:54:00:aa:aa:aa"
        )
        assert reason in str(error)

    def test_duplicate_name(self, answer_factory):
        """Test two addresses cannot share one name."""
        text = pinned_network('"52:54:00:aa:aa:aa" = "mgmt"', '"52:54:00:bb:bb:bb" = "mgmt"')
        with pytest.raises(AnswerValidationError, match="duplicate interface name mapping 'mgmt'"):
            Answer.parse(answer_factory(network=text))

    def test_address_mapped_twice(self, answer_factory):
        """Test the same address in different case counts as a duplicate."""
        text = pinned_network('"52:54:00:aa:aa:aa" = "mgmt"', '"52:54:00:AA:AA:AA" = "lan"')
        with pytest.raises(AnswerValidationError, match="mapped twice"):
            Answer.parse(answer_factory(network=text))

    def test_name_must_be_string(self, answer_factory):
        text = pinned_network('"52:54:00:aa:aa:aa" = 1')
        assert_field_error(
            answer_factory(network=text), "network.interface-name-pinning.mapping.52:54:00:aa:aa:aa"
        )

    def test_unknown_key(self, answer_factory):
        text = '[network]\nsource = "from-dhcp"\ninterface-name-pinning.prefix = "lan"\n'
        assert_field_error(answer_factory(network=text), "network.interface-name-pinning.prefix")

    def test_mapping_while_disabled(self, answer_factory, log_messages):
        """Test a mapping is still checked but ignored with a warning when disabled."""
        text = pinned_network('"52:54:00:aa:aa:aa" = "mgmt"', enabled="false")
        pinning = Answer.parse(answer_factory(network=text)).network.interface_name_pinning
        assert not pinning.enabled
        assert any("interface name pinning is not enabled" in message for message in log_messages)

    def test_pinned_name(self):
        pinning = InterfacePinning(enabled=True, mapping={"52:54:00:aa:aa:aa": "mgmt"})
        assert pinning.pinned_name("52:54:00:AA:AA:AA", "0") == "mgmt"
        assert pinning.pinned_name("52:54:00:bb:bb:bb", "3") == "nic3"
        assert pinning.pinned_name("52:54:00:bb:bb:bb", None) is None

    @pytest.mark.parametrize("name", ["mgmt", "nic0", "uplink_1", "A"])
    def test_check_interface_name(self, name):
        check_interface_name(name)


class TestDiskSetup:
    """Test the [disk-setup] section."""

    def test_zfs_with_filter(self, answer_factory):
        """Test a ZFS mirror selected by filter."""
        disks = Answer.parse(answer_factory(disk_setup=ZFS_FILTER)).disks
        assert disks.fs_type.serialize() == "zfs (RAID1)"
        assert disks.selection == FilteredDisks({"ID_SERIAL_SHORT": "*2222*"})
        assert disks.filter_match is FilterMatch.ALL
        assert isinstance(disks.options, ZfsOptions)
        assert disks.options.raid is ZfsRaidLevel.RAID1

    def test_zfs_options(self, answer_factory):
        text = (
            '[disk-setup]\nfilesystem = "zfs"\ndisk-list = ["sda", "sdb"]\n'
            '[disk-setup.zfs]\nraid = "raid1"\nashift = 13\narc_max = 4096\n'
            'compress = "lz4"\nchecksum = "sha256"\ncopies = 2\nhdsize = 20\n'
        )
        options = Answer.parse(answer_factory(disk_setup=text)).disks.options
        assert options.ashift == 13
        assert options.arc_max == 4096
        assert str(options.compress) == "lz4"
        assert str(options.checksum) == "sha256"
        assert options.copies == 2
        assert options.hdsize == 20.0

    def test_btrfs(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "btrfs"\nbtrfs.raid = "raid0"\ndisk-list = ["sda"]\n'
        disks = Answer.parse(answer_factory(disk_setup=text)).disks
        assert isinstance(disks.options, BtrfsOptions)
        assert disks.options.raid is BtrfsRaidLevel.RAID0
        assert disks.filter_match is None

    def test_lvm_options(self, answer_factory):
        text = (
            '[disk-setup]\nfilesystem = "xfs"\ndisk-list = ["sda"]\n'
            "lvm.hdsize = 30\nlvm.swapsize = 4\nlvm.maxroot = 10.5\n"
        )
        options = Answer.parse(answer_factory(disk_setup=text)).disks.options
        assert options == LvmOptions(hdsize=30.0, swapsize=4.0, maxroot=10.5)

    def test_ext4_with_zfs_block(self, answer_factory):
        """Test ext4 rejects ZFS options."""
        text = '[disk-setup]\nfilesystem = "ext4"\ndisk-list = ["sda"]\nzfs.raid = "raid1"\n'
        error = assert_field_error(answer_factory(disk_setup=text), "disk-setup.zfs")
        assert "only 'lvm'" in str(error)

    def test_zfs_with_lvm_block(self, answer_factory):
        text = ZFS_FILTER + "lvm.hdsize = 10\n"
        assert_field_error(answer_factory(disk_setup=text), "disk-setup.lvm")

    def test_zfs_requires_raid(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "zfs"\ndisk-list = ["sda"]\n'
        assert_field_error(answer_factory(disk_setup=text), "disk-setup.zfs.raid")

    def test_btrfs_requires_raid(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "btrfs"\ndisk-list = ["sda"]\nbtrfs.compress = "zstd"\n'
        assert_field_error(answer_factory(disk_setup=text), "disk-setup.btrfs.raid")

    def test_neither_list_nor_filter(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "ext4"\n'
        error = assert_field_error(answer_factory(disk_setup=text), "disk-setup.disk-list")
        assert "Need either" in str(error)

    def test_list_and_filter(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "ext4"\ndisk-list = ["sda"]\nfilter.DEVNAME = "*"\n'
        error = assert_field_error(answer_factory(disk_setup=text), "disk-setup.filter")
        assert "Cannot use both" in str(error)

    def test_ext4_single_disk(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "ext4"\ndisk-list = ["sda", "sdb"]\n'
        error = assert_field_error(answer_factory(disk_setup=text), "disk-setup.disk-list")
        assert "only one disk" in str(error)

    def test_too_few_disks_for_raid(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "zfs"\nzfs.raid = "raidz-1"\ndisk-list = ["sda", "sdb"]\n'
        error = assert_field_error(answer_factory(disk_setup=text), "disk-setup.disk-list")
        assert "at least 3" in str(error)

    def test_duplicate_disks(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "zfs"\nzfs.raid = "raid1"\ndisk-list = ["sda", "sda"]\n'
        error = assert_field_error(answer_factory(disk_setup=text), "disk-setup.disk-list")
        assert "duplicate" in str(error)

    def test_swapsize_too_large(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "ext4"\ndisk-list = ["sda"]\nlvm.hdsize = 10\nlvm.swapsize = 6\n'
        assert_field_error(answer_factory(disk_setup=text), "disk-setup.lvm.swapsize")

    def test_invalid_filter_match(self, answer_factory):
        text = ZFS_FILTER.replace('"all"', '"some"')
        assert_field_error(answer_factory(disk_setup=text), "disk-setup.filter-match")

    def test_unknown_filesystem(self, answer_factory):
        text = '[disk-setup]\nfilesystem = "ntfs"\ndisk-list = ["sda"]\n'
        assert_field_error(answer_factory(disk_setup=text), "disk-setup.filesystem")


class TestHooks:
    """Test [first-boot] and [post-installation-webhook]."""

    def test_first_boot_from_iso(self, answer_factory):
        text = answer_factory(extra='[first-boot]\nsource = "from-iso"\nordering = "network-online"\n')
        hook = Answer.parse(text).first_boot
        assert hook.source is FirstBootSource.FROM_ISO
        assert hook.ordering is FirstBootOrdering.NETWORK_ONLINE
        assert hook.ordering.systemd_target == "network-online"

    def test_first_boot_default_ordering(self, answer_factory):
        text = answer_factory(extra='[first-boot]\nsource = "from-iso"\n')
        assert Answer.parse(text).first_boot.ordering.systemd_target == "multi-user"

    def test_first_boot_url_required(self, answer_factory):
        """Test from-url needs a URL."""
        text = answer_factory(extra='[first-boot]\nsource = "from-url"\n')
        assert_field_error(text, "first-boot.url")

    def test_webhook(self, answer_factory):
        text = answer_factory(
            extra='[post-installation-webhook]\nurl = "https://hooks.example/done"\n'
            'cert-fingerprint = "AA:BB"\n'
        )
        webhook = Answer.parse(text).post_installation_webhook
        assert webhook.url == "https://hooks.example/done"
        assert webhook.cert_fingerprint == "AA:BB"


class TestDeprecatedKeys:
    """Test detection of snake_case keys."""

    def test_find_deprecated_keys(self):
        data = {
            "global": {"root_password": "x", "keyboard": "de"},
            "disk-setup": {"zfs": {"arc_max": 1}, "filter": {"ID_SERIAL_SHORT": "*"}},
        }
        assert find_deprecated_keys(data) == ["global.root_password", "disk-setup.zfs.arc_max"]

    def test_no_deprecated_keys(self, answer_toml):
        assert find_deprecated_keys(load_toml(answer_toml)) == []

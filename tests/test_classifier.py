from unittest.mock import MagicMock

import pytest

from arch_provision.classifier import (
    classify_devices,
    enumerate_devices,
    find_excluded_knames,
    is_candidate,
    parse_device_record,
    parse_device_records,
    render_device_record,
)
from arch_provision.utils.exceptions import DeviceRecordError, NoEligibleDeviceError
from arch_provision.utils.executor import Executor

SDA = ('NAME="sda" TYPE="disk" HOTPLUG="0" SIZE="512110190592" DISC_ZERO="0" ROTA="0" '
       'SERIAL="S4EWNX0N" MODEL="Samsung SSD 860" KNAME="sda" PKNAME="" FSTYPE="" PATH="/dev/sda"')
SDB_USB = ('NAME="sdb" TYPE="disk" HOTPLUG="1" SIZE="16008609792" DISC_ZERO="0" ROTA="1" '
           'SERIAL="4C530001" MODEL="Cruzer Blade" KNAME="sdb" PKNAME="" FSTYPE="iso9660" PATH="/dev/sdb"')
NVME = ('NAME="nvme0n1" TYPE="disk" HOTPLUG="0" SIZE="1000204886016" DISC_ZERO="1" ROTA="0" '
        'SERIAL="S5GXNF0R" MODEL="Samsung\\x20SSD\\x20980" KNAME="nvme0n1" PKNAME="" FSTYPE="" PATH="/dev/nvme0n1"')


# ----------------------------------------------------------------------
# --- Record parsing ---
# ----------------------------------------------------------------------

def test_parse_device_record_types():
    device = parse_device_record(SDA)

    assert device.kname == "sda"
    assert device.size == 512110190592
    assert device.hotplug is False
    assert device.rota is False
    assert device.model == "Samsung SSD 860"
    assert device.pkname == ""


def test_parse_device_record_unescapes_hex():
    assert parse_device_record(NVME).model == "Samsung SSD 980"


def test_parse_device_records_skips_blank_lines():
    devices = parse_device_records(f"{SDA}\n\n{NVME}\n")
    assert [d.kname for d in devices] == ["sda", "nvme0n1"]


@pytest.mark.parametrize("line", [
    SDA.replace(' PATH="/dev/sda"', ''),
    SDA + ' COLOR="blue"',
    SDA + ' NAME="sdz"',
    SDA.replace('SIZE="512110190592"', 'SIZE="big"'),
    SDA.replace('ROTA="0"', 'ROTA="maybe"'),
    SDA.replace('KNAME="sda"', 'KNAME'),
    'NAME="sda',
])
def test_parse_device_record_rejects_malformed(line):
    with pytest.raises(DeviceRecordError):
        parse_device_record(line)


def test_render_device_record_is_parseable():
    device = parse_device_record(NVME)
    rendered = render_device_record(device)

    assert 'ROTA="0"' in rendered
    assert 'DISC_ZERO="1"' in rendered
    assert parse_device_record(rendered) == device


# ----------------------------------------------------------------------
# --- Classification ---
# ----------------------------------------------------------------------

def test_is_candidate_rules(make_device):
    assert is_candidate(make_device("sda"), set())
    assert not is_candidate(make_device("sda"), {"sda"})
    assert not is_candidate(make_device("sdb", hotplug=True), set())
    assert not is_candidate(make_device("sda1", type="part"), set())
    assert not is_candidate(make_device("loop0", type="loop"), set())
    assert not is_candidate(make_device("vda", serial=""), set())
    assert not is_candidate(make_device("vdb", model="   "), set())


def test_classify_devices_dedupes_and_keeps_order(make_device):
    devices = [make_device("nvme0n1"), make_device("sda"), make_device("nvme0n1"), make_device("sdb")]

    selected = classify_devices(devices, excluded={"sdb"})

    assert [d.kname for d in selected] == ["nvme0n1", "sda"]


def test_classify_devices_is_idempotent(make_device):
    devices = [make_device("sda"), make_device("sdb", hotplug=True), make_device("sdc")]
    once = classify_devices(devices, set())
    assert classify_devices(once, set()) == once


# ----------------------------------------------------------------------
# --- Enumeration against a mocked executor ---
# ----------------------------------------------------------------------

def _executor_with(outputs, mock_rich_logger):
    """Dispatches Executor.run by the first distinctive argument of each command."""
    executor = MagicMock(spec=Executor)
    executor.logger = mock_rich_logger

    def run(description, command, **kwargs):
        for key, result in outputs.items():
            if key in command:
                return result
        return (1, "", "")

    executor.run.side_effect = run
    return executor


def test_find_excluded_knames_walks_to_root_disk(mock_rich_logger):
    executor = _executor_with({
        "iso9660": (0, "/dev/sdb1\n", ""),
        "--inverse": (0, 'NAME="sdb1" KNAME="sdb1" PKNAME="sdb"\nNAME="sdb" KNAME="sdb" PKNAME=""\n', ""),
    }, mock_rich_logger)

    assert find_excluded_knames(executor) == {"sdb1", "sdb"}


def test_find_excluded_knames_without_media(mock_rich_logger):
    executor = _executor_with({}, mock_rich_logger)
    assert find_excluded_knames(executor) == set()


def test_enumerate_devices_selects_fixed_disks(mock_rich_logger):
    executor = _executor_with({
        "iso9660": (0, "/dev/sdb\n", ""),
        "--inverse": (0, 'NAME="sdb" KNAME="sdb" PKNAME=""\n', ""),
        "--scsi": (0, f"{SDA}\n{SDB_USB}\n", ""),
        "--nvme": (0, f"{NVME}\n", ""),
    }, mock_rich_logger)

    devices = enumerate_devices(executor)

    assert [d.path for d in devices] == ["/dev/sda", "/dev/nvme0n1"]
    mock_rich_logger.section.assert_called_once()


def test_enumerate_devices_raises_when_nothing_eligible(mock_rich_logger):
    executor = _executor_with({
        "--scsi": (0, f"{SDB_USB}\n", ""),
        "--nvme": (0, "", ""),
    }, mock_rich_logger)

    with pytest.raises(NoEligibleDeviceError) as excinfo:
        enumerate_devices(executor)

    assert excinfo.value.exit_code == 3

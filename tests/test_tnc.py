import subprocess
from unittest import mock

import pytest

from aprstation import tnc
from aprstation.tnc import BTDevice, NoFreeRfcommError, Serial, TncError

ADDR = "AA:BB:CC:DD:EE:01"


def _fake_run(responses, calls=None):
    """Build a subprocess.run stand-in answering by command tuple."""

    def run(cmd, **kwargs):
        if calls is not None:
            calls.append(list(cmd))
        code, out = responses.get(tuple(cmd), (1, ""))
        return subprocess.CompletedProcess(cmd, code, stdout=out, stderr="")

    return run


def test_parse_device_list_skips_noise():
    out = f"Device {ADDR} Mobilinkd TNC3\n[CHG] Controller xx\nDevice 11:22:33:44:55:66 Other\n"
    devs = tnc.parse_device_list(out)
    assert devs == [
        BTDevice(address=ADDR, name="Mobilinkd TNC3"),
        BTDevice(address="11:22:33:44:55:66", name="Other"),
    ]


def test_list_serial_orders_by_pattern_then_name():
    matches = {
        "/dev/rfcomm*": ["/dev/rfcomm1", "/dev/rfcomm0"],
        "/dev/ttyUSB*": ["/dev/ttyUSB0"],
    }
    with mock.patch("aprstation.tnc.glob.glob", side_effect=lambda p: matches.get(p, [])):
        result = tnc.list_serial()
    assert [s.path for s in result] == ["/dev/rfcomm0", "/dev/rfcomm1", "/dev/ttyUSB0"]
    assert result[0] == Serial(
        path="/dev/rfcomm0", label="Bluetooth RFCOMM (rfcomm0)", kind="rfcomm"
    )
    assert result[2].kind == "usb-serial"


def test_choose_free_rfcomm_picks_lowest_missing():
    existing = {"/dev/rfcomm0", "/dev/rfcomm1"}
    with mock.patch("aprstation.tnc.os.path.exists", side_effect=existing.__contains__):
        assert tnc.choose_free_rfcomm() == "/dev/rfcomm2"


def test_choose_free_rfcomm_all_taken():
    with mock.patch("aprstation.tnc.os.path.exists", return_value=True):
        with pytest.raises(NoFreeRfcommError):
            tnc.choose_free_rfcomm()


def test_choose_rfcomm_for_reuses_bound_slot():
    out = f"rfcomm3: 00:11:22:33:44:55 -> {ADDR} channel 6 clean\n"
    run = _fake_run({("rfcomm", "-a"): (0, out)})
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run):
        assert tnc.choose_rfcomm_for(ADDR.lower()) == "/dev/rfcomm3"


def test_choose_rfcomm_for_falls_back_to_free_slot():
    out = "rfcomm0: 00:11:22:33:44:55 -> 11:22:33:44:55:66 channel 1 clean\n"
    run = _fake_run({("rfcomm", "-a"): (0, out)})
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run), mock.patch(
        "aprstation.tnc.os.path.exists", side_effect={"/dev/rfcomm0"}.__contains__
    ):
        assert tnc.choose_rfcomm_for(ADDR) == "/dev/rfcomm1"


def test_current_rfcomm_mac_ignores_other_devices():
    assert tnc.current_rfcomm_mac("/dev/ttyUSB0") == ""
    assert tnc.current_rfcomm_mac("/dev/rfcomm") == ""


def test_current_rfcomm_mac_parses_binding():
    out = "rfcomm1: 11:22:33:44:55:66 channel 1 clean\nrfcomm0: aa:bb:cc:dd:ee:01 channel 6 connected\n"
    run = _fake_run({("rfcomm",): (0, out)})
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run):
        assert tnc.current_rfcomm_mac("/dev/rfcomm0") == ADDR
        assert tnc.current_rfcomm_mac("/dev/rfcomm5") == ""


def test_current_rfcomm_mac_command_failure_raises():
    run = _fake_run({})
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run):
        with pytest.raises(TncError):
            tnc.current_rfcomm_mac("/dev/rfcomm0")


def test_release_rejects_non_rfcomm():
    with pytest.raises(TncError, match="not an rfcomm device"):
        tnc.release("/dev/ttyUSB0")


def test_release_runs_rfcomm_release():
    calls = []
    run = _fake_run({("rfcomm", "release", "2"): (0, "")}, calls)
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run):
        result = tnc.release("/dev/rfcomm2")
    assert result is None
    assert calls == [["rfcomm", "release", "2"]]


def test_release_command_failure_raises():
    calls = []
    run = _fake_run({}, calls)
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run):
        with pytest.raises(TncError):
            tnc.release("/dev/rfcomm2")
    assert calls == [["rfcomm", "release", "2"]]


def test_bind_rejects_bad_address():
    with pytest.raises(TncError, match="bad bluetooth address"):
        tnc.bind("not-a-mac", 1)


def test_bind_uses_free_slot_and_default_channel():
    calls = []
    run = _fake_run({("rfcomm", "bind", "1", ADDR, "1"): (0, "")}, calls)
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run), mock.patch(
        "aprstation.tnc.os.path.exists", side_effect={"/dev/rfcomm0"}.__contains__
    ):
        assert tnc.bind(ADDR, 0) == "/dev/rfcomm1"
    assert calls == [["rfcomm", "bind", "1", ADDR, "1"]]


def test_bind_command_failure_raises():
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=_fake_run({})), mock.patch(
        "aprstation.tnc.os.path.exists", return_value=False
    ):
        with pytest.raises(TncError, match="rfcomm bind"):
            tnc.bind(ADDR, 6)


def test_discover_spp_channel_reads_channel():
    cmd = ("sdptool", "search", "--bdaddr", ADDR, "SP")
    run = _fake_run({cmd: (0, "Service Name: SPP\n    Channel: 6\n")})
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run):
        assert tnc.discover_spp_channel(ADDR) == 6


def test_discover_spp_channel_defaults_after_retries():
    calls = []
    run = _fake_run({}, calls)
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run), mock.patch(
        "aprstation.tnc.time.sleep"
    ) as sleep:
        assert tnc.discover_spp_channel(ADDR) == 1
    assert len(calls) == 6
    assert sleep.call_count == 5


def test_ensure_bt_ready_hard_block():
    out = "0: hci0: Bluetooth\n\tSoft blocked: no\n\tHard blocked: yes\n"
    run = _fake_run({("rfkill", "list", "bluetooth"): (0, out)})
    with mock.patch("aprstation.tnc.shutil.which", return_value="/usr/bin/x"), mock.patch(
        "aprstation.tnc.subprocess.run", side_effect=run
    ):
        with pytest.raises(TncError, match="hard-blocked"):
            tnc.ensure_bt_ready()


def test_ensure_bt_ready_missing_bluetoothctl():
    with mock.patch("aprstation.tnc.shutil.which", return_value=None):
        with pytest.raises(TncError, match="bluetoothctl not found"):
            tnc.ensure_bt_ready()


def test_ensure_bt_ready_no_controller():
    run = _fake_run(
        {("bluetoothctl", "power", "on"): (1, "No default controller available\n")}
    )
    which = {"bluetoothctl": "/usr/bin/bluetoothctl"}.get
    with mock.patch("aprstation.tnc.shutil.which", side_effect=which), mock.patch(
        "aprstation.tnc.subprocess.run", side_effect=run
    ):
        with pytest.raises(TncError, match="no Bluetooth controller"):
            tnc.ensure_bt_ready()


def test_paired_falls_back_and_enriches():
    run = _fake_run(
        {
            ("bluetoothctl", "paired-devices"): (0, f"Device {ADDR} Mobilinkd TNC3\n"),
            ("bluetoothctl", "info", ADDR): (0, "Paired: yes\nTrusted: yes\nConnected: no\n"),
        }
    )
    with mock.patch("aprstation.tnc.subprocess.run", side_effect=run):
        devs = tnc.paired()
    assert devs == [
        BTDevice(
            address=ADDR,
            name="Mobilinkd TNC3",
            paired=True,
            trusted=True,
            connected=False,
        )
    ]


def test_pair_rejects_bad_address():
    with pytest.raises(TncError, match="bad bluetooth address"):
        tnc.pair("AA:BB")


def test_pair_already_paired_only_trusts():
    calls = []
    run = _fake_run(
        {
            ("bluetoothctl", "power", "on"): (0, ""),
            ("bluetoothctl", "info", ADDR): (0, "Paired: yes\n"),
            ("bluetoothctl", "trust", ADDR): (0, ""),
        },
        calls,
    )
    which = {"bluetoothctl": "/usr/bin/bluetoothctl"}.get
    with mock.patch("aprstation.tnc.shutil.which", side_effect=which), mock.patch(
        "aprstation.tnc.subprocess.run", side_effect=run
    ):
        tnc.pair(ADDR)
    assert calls[-1] == ["bluetoothctl", "trust", ADDR]
    assert ["bluetoothctl", "pair", ADDR] not in calls


def test_pair_requires_bt_agent():
    run = _fake_run(
        {
            ("bluetoothctl", "power", "on"): (0, ""),
            ("bluetoothctl", "info", ADDR): (0, "Paired: no\n"),
        }
    )
    which = {"bluetoothctl": "/usr/bin/bluetoothctl"}.get
    with mock.patch("aprstation.tnc.shutil.which", side_effect=which), mock.patch(
        "aprstation.tnc.subprocess.run", side_effect=run
    ):
        with pytest.raises(TncError, match="bt-agent not found"):
            tnc.pair(ADDR)


def test_scan_lists_devices_after_scan():
    run = _fake_run(
        {
            ("bluetoothctl", "power", "on"): (0, ""),
            ("bluetoothctl", "--timeout", "8", "scan", "on"): (0, ""),
            ("bluetoothctl", "devices"): (0, f"Device {ADDR} TNC\n"),
        }
    )
    which = {"bluetoothctl": "/usr/bin/bluetoothctl"}.get
    with mock.patch("aprstation.tnc.shutil.which", side_effect=which), mock.patch(
        "aprstation.tnc.subprocess.run", side_effect=run
    ):
        assert tnc.scan(0) == [BTDevice(address=ADDR, name="TNC")]


def test_no_free_rfcomm_is_caught_as_tnc_error():
    with mock.patch("aprstation.tnc.os.path.exists", return_value=True):
        with pytest.raises(TncError) as excinfo:
            tnc.choose_free_rfcomm()
    assert isinstance(excinfo.value, NoFreeRfcommError)
"""Discovery, pairing and binding of TNC sources.

Covers local serial devices found under /dev, Bluetooth devices managed
through the ``bluetoothctl`` and ``rfcomm`` command-line tools, and the
SDP lookup of a device's serial-port channel.
"""

from __future__ import annotations

import glob
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass

_BT_ADDR_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")
_DEV_LINE_RE = re.compile(r"^Device ([0-9A-Fa-f:]{17}) (.+)$")
_CHANNEL_RE = re.compile(r"Channel:\s*(\d+)", re.IGNORECASE)

_RFCOMM_PREFIX = "/dev/rfcomm"
_RFCOMM_SLOTS = 32

_SERIAL_PATTERNS = (
    ("/dev/rfcomm*", "rfcomm", "Bluetooth RFCOMM"),
    ("/dev/ttyUSB*", "usb-serial", "USB serial"),
    ("/dev/ttyACM*", "acm", "USB CDC-ACM"),
    ("/dev/ttyAMA*", "serial", "Built-in serial"),
    ("/dev/ttyS*", "serial", "Hardware serial"),
)


class TncError(Exception):
    """A TNC discovery, pairing or binding operation failed."""


class NoFreeRfcommError(TncError):
    """Every /dev/rfcommN slot is already bound or present."""

    def __init__(
        self,
        message: str = "no free /dev/rfcommN slot (all 32 bound — try `sudo rfcomm release all`)",
    ) -> None:
        super().__init__(message)


class _CommandError(TncError):
    """An external command failed; ``output`` holds what it printed."""

    def __init__(self, message: str, output: str) -> None:
        super().__init__(message)
        self.output = output


@dataclass(frozen=True)
class Serial:
    """A serial-style TTY device available on the system."""

    path: str
    label: str
    kind: str


@dataclass(frozen=True)
class BTDevice:
    """A Bluetooth device known to BlueZ."""

    address: str
    name: str
    paired: bool = False
    trusted: bool = False
    connected: bool = False


def _run(timeout: float, name: str, *args: str) -> str:
    """Run a command with combined stdout/stderr and return its output."""
    try:
        proc = subprocess.run(
            [name, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        out = exc.output or ""
        if isinstance(out, bytes):
            out = out.decode(errors="replace")
        raise _CommandError(f"{name}: timed out after {timeout:g}s: {out.strip()}", out) from exc
    except OSError as exc:
        raise _CommandError(f"{name}: {exc}", "") from exc
    out = proc.stdout or ""
    if proc.returncode != 0:
        raise _CommandError(
            f"{name}: exit status {proc.returncode}: {out.strip()}", out
        )
    return out


def _check_addr(addr: str) -> None:
    if not _BT_ADDR_RE.match(addr):
        raise TncError(f"bad bluetooth address {addr!r}")


def parse_device_list(output: str) -> list[BTDevice]:
    """Parse ``bluetoothctl devices`` output into devices."""
    devices = []
    for line in output.splitlines():
        m = _DEV_LINE_RE.match(line.strip())
        if m:
            devices.append(BTDevice(address=m.group(1), name=m.group(2)))
    return devices


def list_serial() -> list[Serial]:
    """Likely-TNC TTYs found by matching well-known /dev patterns."""
    return [
        Serial(path=path, label=f"{label} ({os.path.basename(path)})", kind=kind)
        for pattern, kind, label in _SERIAL_PATTERNS
        for path in sorted(glob.glob(pattern))
    ]


def paired() -> list[BTDevice]:
    """The Bluetooth devices currently paired with BlueZ."""
    try:
        out = _run(5, "bluetoothctl", "devices", "Paired")
    except TncError:
        # Some bluetoothctl versions lack the "Paired" filter.
        out = _run(5, "bluetoothctl", "paired-devices")
    result = []
    for dev in parse_device_list(out):
        trusted = connected = False
        try:
            info = _run(3, "bluetoothctl", "info", dev.address)
        except TncError:
            pass
        else:
            trusted = "Trusted: yes" in info
            connected = "Connected: yes" in info
        result.append(
            BTDevice(
                address=dev.address,
                name=dev.name,
                paired=True,
                trusted=trusted,
                connected=connected,
            )
        )
    return result


def scan(duration: float = 8) -> list[BTDevice]:
    """Scan for ``duration`` seconds and return the devices BlueZ knows of."""
    ensure_bt_ready()
    if duration <= 0:
        duration = 8
    try:
        subprocess.run(
            ["bluetoothctl", "--timeout", str(int(duration)), "scan", "on"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=duration + 5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        # Scan errors are common (already scanning etc.); list devices anyway.
        pass
    return parse_device_list(_run(5, "bluetoothctl", "devices"))


def ensure_bt_ready() -> None:
    """Unblock and power on the Bluetooth adapter, or raise a clear error."""
    if shutil.which("rfkill"):
        try:
            out = _run(3, "rfkill", "list", "bluetooth")
        except _CommandError as exc:
            out = exc.output
        if "Hard blocked: yes" in out:
            raise TncError(
                "bluetooth is hard-blocked by a physical switch or firmware setting — "
                "flip the device's Bluetooth/airplane switch on, then retry"
            )
        if "Soft blocked: yes" in out:
            try:
                _run(3, "rfkill", "unblock", "bluetooth")
            except TncError as exc:
                raise TncError(
                    "bluetooth is soft-blocked and couldn't be unblocked "
                    f"(rfkill unblock failed: {exc}) — try `sudo rfkill unblock bluetooth` "
                    "and retry"
                ) from exc

    if not shutil.which("bluetoothctl"):
        raise TncError(
            "bluetoothctl not found in PATH — install the bluez package so the "
            "BT adapter can be managed"
        )
    try:
        _run(3, "bluetoothctl", "power", "on")
    except _CommandError as exc:
        if "No default controller" in exc.output:
            raise TncError(
                "no Bluetooth controller found — check `dmesg | grep -i bluetooth` for "
                "driver errors; on a Pi the firmware in /lib/firmware/brcm/ may be "
                "missing or the UART for hci0 hasn't attached"
            ) from exc
        raise TncError(
            f"bluetoothctl power on: {exc}: {exc.output.strip()}"
        ) from exc


def pair(addr: str) -> None:
    """Pair and trust a device using Just-Works pairing via ``bt-agent``."""
    _check_addr(addr)
    ensure_bt_ready()
    try:
        info = _run(3, "bluetoothctl", "info", addr)
    except TncError:
        pass
    else:
        if "Paired: yes" in info:
            try:
                _run(3, "bluetoothctl", "trust", addr)
            except TncError:
                pass
            return

    if not shutil.which("bt-agent"):
        raise TncError(
            "bt-agent not found in PATH — install the bluez-tools package "
            "(apt install bluez-tools) so the BlueZ pairing agent can run during "
            "the pair operation"
        )
    try:
        agent = subprocess.Popen(
            ["bt-agent", "--capability=NoInputNoOutput"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as exc:
        raise TncError(f"start bt-agent: {exc}") from exc
    try:
        # Agent registration on the system bus is asynchronous.
        time.sleep(0.5)
        try:
            _run(25, "bluetoothctl", "pair", addr)
        except TncError as exc:
            raise TncError(f"pair {addr}: {exc}") from exc
        try:
            _run(3, "bluetoothctl", "trust", addr)
        except TncError as exc:
            raise TncError(f"trust {addr}: {exc}") from exc
        try:
            info = _run(3, "bluetoothctl", "info", addr)
        except TncError as exc:
            raise TncError(f"post-pair info {addr}: {exc}") from exc
        if "Paired: yes" not in info:
            raise TncError(
                f"pair {addr} reported success but device still shows Paired:no — make "
                "sure the TNC is powered on and within range, then try again"
            )
    finally:
        agent.kill()
        agent.wait()


def bind(addr: str, channel: int = 1) -> str:
    """Bind the lowest free /dev/rfcommN to ``addr`` and return its path."""
    _check_addr(addr)
    if channel <= 0:
        channel = 1
    idx = next(
        (i for i in range(_RFCOMM_SLOTS) if not os.path.exists(f"{_RFCOMM_PREFIX}{i}")),
        None,
    )
    if idx is None:
        raise NoFreeRfcommError("no free /dev/rfcommN slot")
    try:
        _run(5, "rfcomm", "bind", str(idx), addr, str(channel))
    except TncError as exc:
        raise TncError(f"rfcomm bind: {exc}") from exc
    return f"{_RFCOMM_PREFIX}{idx}"


def current_rfcomm_mac(dev: str) -> str:
    """The uppercase MAC bound to an rfcomm device, or "" if none."""
    idx = dev.removeprefix(_RFCOMM_PREFIX)
    if idx == dev or not idx:
        return ""
    out = _run(3, "rfcomm")
    prefix = f"rfcomm{idx}:"
    for raw_line in out.splitlines():
        line = raw_line.strip()
        if not line.startswith(prefix):
            continue
        fields = line[len(prefix):].split()
        if not fields:
            return ""
        mac = fields[0].upper()
        return mac if _BT_ADDR_RE.match(mac) else ""
    return ""


def release(dev: str) -> None:
    """Tear down an rfcomm binding."""
    idx = dev.removeprefix(_RFCOMM_PREFIX)
    if idx == dev:
        raise TncError(f"not an rfcomm device: {dev}")
    _run(3, "rfcomm", "release", idx)


def discover_spp_channel(addr: str) -> int:
    """The RFCOMM channel advertised for the Serial Port profile, or 1.

    Retries a few times because the SDP cache fills in shortly after pairing.
    """
    for attempt in range(6):
        if attempt:
            time.sleep(1)
        try:
            out = _run(10, "sdptool", "search", "--bdaddr", addr, "SP")
        except TncError:
            continue
        if not out:
            continue
        m = _CHANNEL_RE.search(out)
        if m:
            value = int(m.group(1))
            if 0 < value < 31:
                return value
    return 1


def choose_rfcomm_for(addr: str) -> str:
    """Reuse the rfcomm slot already bound to ``addr``, else the lowest free one."""
    wanted = addr.upper()
    try:
        proc = subprocess.run(
            ["rfcomm", "-a"],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        proc = None
    if proc is not None and proc.returncode == 0:
        for raw_line in (proc.stdout or "").split("\n"):
            line = raw_line.strip()
            if not line.startswith("rfcomm"):
                continue
            parts = line.split()
            if len(parts) < 4:
                continue
            # rfcommN: <HOST_MAC> -> <DEVICE_MAC> channel N ...
            if parts[3].upper() == wanted:
                return "/dev/" + parts[0].removesuffix(":")
    return choose_free_rfcomm()


def choose_free_rfcomm() -> str:
    """The lowest /dev/rfcommN path that does not exist yet."""
    for i in range(_RFCOMM_SLOTS):
        path = f"{_RFCOMM_PREFIX}{i}"
        if not os.path.exists(path):
            return path
    raise NoFreeRfcommError()
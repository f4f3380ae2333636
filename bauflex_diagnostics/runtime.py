"""Process runtime probes backed by psutil."""

import time

import psutil

_PROCESS = psutil.Process()
_STARTED = time.monotonic()


def memory_usage_mb() -> float:
    """Resident set size of this process in MB."""
    return _PROCESS.memory_info().rss / 1048576


def memory_ratio() -> float:
    """Fraction of system memory held by this process (0.0 - 1.0)."""
    return _PROCESS.memory_percent() / 100


def is_online() -> bool:
    """True when at least one non-loopback network interface is up."""
    for name, stats in psutil.net_if_stats().items():
        if stats.isup and not name.startswith("lo"):
            return True
    return False


def uptime_seconds() -> float:
    return round(time.monotonic() - _STARTED, 1)


def memory_report() -> dict:
    info = _PROCESS.memory_info()
    return {
        "rss": f"{info.rss / 1048576:.2f} MB",
        "vms": f"{info.vms / 1048576:.2f} MB",
        "percent": round(_PROCESS.memory_percent(), 2),
    }


def cpu_report() -> dict:
    times = _PROCESS.cpu_times()
    return {"user": times.user, "system": times.system}

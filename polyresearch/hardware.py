"""Best-effort hardware probe that tells an agent its working budget.

The probe reports two layers:

- Static machine spec: physical cores, total memory and GPUs. GPUs are
  enumerated with ``nvidia-smi`` on Linux and ``system_profiler`` on macOS.
- Live state: the 1-minute load average and currently available memory, so an
  agent can notice when another process is eating the machine and back off.

Live GPU utilisation is deliberately not probed: the extra process launch costs
more than the signal is worth, and GPU busy state changes faster than the pace
loop runs anyway.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from dataclasses import dataclass, field
from enum import Enum

import psutil

BYTES_PER_GB = 1024.0 * 1024.0 * 1024.0


class Platform(str, Enum):
    """Operating-system family the probe ran on."""

    MACOS = "macos"
    LINUX = "linux"
    OTHER = "other"

    @classmethod
    def current(cls) -> Platform:
        """The platform of the running interpreter."""
        if sys.platform == "darwin":
            return cls.MACOS
        if sys.platform.startswith("linux"):
            return cls.LINUX
        return cls.OTHER


class GpuVendor(str, Enum):
    """Who made a detected GPU."""

    NVIDIA = "nvidia"
    APPLE_SILICON = "apple_silicon"
    AMD = "amd"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class GpuInfo:
    """One detected GPU; memory is known only where the driver reports it."""

    vendor: GpuVendor
    name: str
    memory_gb: float | None = None


@dataclass
class HardwareSnapshot:
    """Static machine spec together with live load and free memory."""

    logical_cores: int
    physical_cores: int
    total_memory_gb: float
    platform: Platform
    load_avg_1m: float
    available_memory_gb: float
    gpus: list[GpuInfo] = field(default_factory=list)


@dataclass(frozen=True)
class HardwareBudget:
    """The share of the machine a project may use."""

    cores: int
    memory_gb: float
    gpus: int
    capacity_pct: int


def _logical_cores() -> int:
    try:
        count = len(os.sched_getaffinity(0))
    except (AttributeError, OSError):
        count = os.cpu_count() or 0
    return count if count > 0 else 1


def _load_avg_1m() -> float:
    try:
        return float(os.getloadavg()[0])
    except (AttributeError, OSError):
        return 0.0


def probe() -> HardwareSnapshot:
    """Measure the current machine."""
    memory = psutil.virtual_memory()
    logical_cores = _logical_cores()
    physical_cores = psutil.cpu_count(logical=False) or logical_cores
    platform = Platform.current()
    return HardwareSnapshot(
        logical_cores=logical_cores,
        physical_cores=physical_cores,
        total_memory_gb=memory.total / BYTES_PER_GB,
        platform=platform,
        load_avg_1m=_load_avg_1m(),
        available_memory_gb=memory.available / BYTES_PER_GB,
        gpus=detect_gpus(platform),
    )


def budget(snapshot: HardwareSnapshot, capacity_pct: int) -> HardwareBudget:
    """Scale the machine by ``capacity_pct``, clamped to 1..100."""
    pct = min(max(int(capacity_pct), 1), 100)
    gpu_count = len(snapshot.gpus)
    # GPUs are not divisible. Flooring would hide the only GPU of a single-GPU
    # box (1 * 75 // 100 == 0), so a machine with a GPU always grants one.
    gpus = 0 if gpu_count == 0 else max(gpu_count * pct // 100, 1)
    return HardwareBudget(
        cores=max(snapshot.physical_cores * pct // 100, 1),
        memory_gb=snapshot.total_memory_gb * pct / 100.0,
        gpus=gpus,
        capacity_pct=pct,
    )


def _run_text(args: list[str]) -> str | None:
    try:
        completed = subprocess.run(args, capture_output=True, check=False)
    except OSError:
        return None
    if completed.returncode != 0:
        return None
    try:
        return completed.stdout.decode("utf-8")
    except UnicodeDecodeError:
        return None


def detect_gpus(platform: Platform) -> list[GpuInfo]:
    """Enumerate GPUs with the platform's tool; an empty list when none answer."""
    if platform is Platform.LINUX:
        text = _run_text(
            ["nvidia-smi", "--query-gpu=name,memory.total", "--format=csv,noheader,nounits"]
        )
        return parse_nvidia_smi(text) if text is not None else []
    if platform is Platform.MACOS:
        text = _run_text(["system_profiler", "SPDisplaysDataType", "-json"])
        return parse_macos_gpus(text) if text is not None else []
    return []


def parse_nvidia_smi(text: str) -> list[GpuInfo]:
    """Parse ``name, memory_mb`` lines from ``nvidia-smi`` CSV output."""
    gpus = []
    for line in text.splitlines():
        name, sep, memory = line.partition(",")
        if not sep:
            continue
        name = name.strip()
        if not name:
            continue
        try:
            memory_mb = float(memory.strip())
        except ValueError:
            continue
        gpus.append(GpuInfo(GpuVendor.NVIDIA, name, memory_mb / 1024.0))
    return gpus


def _vendor_for(vendor_raw: str, name: str) -> GpuVendor:
    if "Apple" in vendor_raw or "Apple" in name:
        return GpuVendor.APPLE_SILICON
    if "NVIDIA" in vendor_raw:
        return GpuVendor.NVIDIA
    if "AMD" in vendor_raw or "ATI" in vendor_raw:
        return GpuVendor.AMD
    return GpuVendor.UNKNOWN


def parse_macos_gpus(text: str) -> list[GpuInfo]:
    """Parse ``system_profiler SPDisplaysDataType -json`` output."""
    try:
        value = json.loads(text)
    except ValueError:
        return []
    if not isinstance(value, dict):
        return []
    displays = value.get("SPDisplaysDataType")
    if not isinstance(displays, list):
        return []

    gpus = []
    for display in displays:
        details = display if isinstance(display, dict) else {}
        name = details.get("sppci_model")
        if not isinstance(name, str):
            name = "Unknown GPU"
        vendor_raw = details.get("sppci_vendor")
        if not isinstance(vendor_raw, str):
            vendor_raw = ""
        gpus.append(GpuInfo(_vendor_for(vendor_raw, name), name, None))
    return gpus


def group_gpus(gpus: list[GpuInfo]) -> list[str]:
    """Summarise GPUs by name in first-seen order, e.g. ``2 x A100 (40 GB each)``."""
    groups: dict[str, list] = {}
    for gpu in gpus:
        if gpu.name in groups:
            groups[gpu.name][0] += 1
        else:
            groups[gpu.name] = [1, gpu.memory_gb]

    lines = []
    for name, (count, memory_gb) in groups.items():
        if memory_gb is None:
            lines.append(f"{count} x {name}")
        elif count == 1:
            lines.append(f"1 x {name} ({memory_gb:.0f} GB)")
        else:
            lines.append(f"{count} x {name} ({memory_gb:.0f} GB each)")
    return lines


def format_machine_line(snapshot: HardwareSnapshot) -> str:
    """The "Machine" line of pace output."""
    gpu_summary = ", ".join(group_gpus(snapshot.gpus)) if snapshot.gpus else "0 GPUs"
    return (
        f"{snapshot.physical_cores} physical cores ({snapshot.logical_cores} logical), "
        f"{snapshot.total_memory_gb:.1f} GB RAM, {gpu_summary} ({snapshot.platform.value})"
    )


def format_share_line(budget: HardwareBudget) -> str:
    """The "Your max" share line of pace output."""
    if budget.gpus == 1:
        gpu_part = "1 GPU"
    else:
        gpu_part = f"{budget.gpus} GPUs"
    return (
        f"{budget.capacity_pct}% -> {budget.cores} cores, "
        f"{budget.memory_gb:.1f} GB, {gpu_part}"
    )


def format_live_line(snapshot: HardwareSnapshot) -> str:
    """The live load and free-memory line of pace output."""
    return (
        f"load avg {snapshot.load_avg_1m:.1f}/{snapshot.logical_cores}, "
        f"{snapshot.available_memory_gb:.1f} GB available"
    )
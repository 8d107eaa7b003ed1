import json

import pytest

from polyresearch.hardware import (
    GpuInfo,
    GpuVendor,
    HardwareBudget,
    HardwareSnapshot,
    Platform,
    budget,
    detect_gpus,
    format_live_line,
    format_machine_line,
    format_share_line,
    group_gpus,
    parse_macos_gpus,
    parse_nvidia_smi,
    probe,
)


def snapshot_for(cores, mem_gb, gpus):
    return HardwareSnapshot(
        logical_cores=cores * 2,
        physical_cores=cores,
        total_memory_gb=mem_gb,
        platform=Platform.LINUX,
        load_avg_1m=1.0,
        available_memory_gb=mem_gb * 0.5,
        gpus=[GpuInfo(GpuVendor.NVIDIA, "Test GPU", 48.0) for _ in range(gpus)],
    )


def test_budget_scales_by_capacity_percent():
    b = budget(snapshot_for(18, 128.0, 2), 50)
    assert b.cores == 9
    assert b.memory_gb == pytest.approx(64.0, abs=0.01)
    assert b.gpus == 1
    assert b.capacity_pct == 50


def test_budget_clamps_capacity_to_valid_range():
    snapshot = snapshot_for(4, 16.0, 0)
    assert budget(snapshot, 0).capacity_pct == 1
    assert budget(snapshot, 200).capacity_pct == 100


def test_budget_never_returns_zero_cores():
    assert budget(snapshot_for(2, 8.0, 0), 1).cores == 1


def test_budget_rounds_gpus_down_when_quotient_is_at_least_one():
    assert budget(snapshot_for(8, 64.0, 3), 50).gpus == 1


def test_budget_floors_gpus_at_one_when_machine_has_a_gpu():
    snapshot = snapshot_for(8, 64.0, 1)
    assert budget(snapshot, 75).gpus == 1
    assert budget(snapshot, 1).gpus == 1


def test_budget_reports_zero_gpus_when_machine_has_none():
    assert budget(snapshot_for(8, 64.0, 0), 100).gpus == 0


def test_budget_covers_full_machine_at_100():
    b = budget(snapshot_for(8, 64.0, 2), 100)
    assert b.cores == 8
    assert b.memory_gb == pytest.approx(64.0, abs=0.01)
    assert b.gpus == 2


def test_probe_reports_plausible_machine():
    snapshot = probe()
    assert snapshot.logical_cores >= 1
    assert snapshot.physical_cores >= 1
    assert snapshot.total_memory_gb > 0.0
    assert snapshot.available_memory_gb >= 0.0
    assert snapshot.platform in (Platform.MACOS, Platform.LINUX, Platform.OTHER)


def test_platform_current_is_a_known_platform():
    assert Platform.current() in set(Platform)


def test_detect_gpus_on_other_platform_is_empty():
    assert detect_gpus(Platform.OTHER) == []


def test_format_machine_line_includes_gpu_summary():
    line = format_machine_line(snapshot_for(18, 128.0, 2))
    assert "18 physical cores" in line
    assert "128.0 GB RAM" in line
    assert "Test GPU" in line
    assert line == (
        "18 physical cores (36 logical), 128.0 GB RAM, "
        "2 x Test GPU (48 GB each) (linux)"
    )


def test_format_machine_line_handles_no_gpus():
    line = format_machine_line(snapshot_for(4, 8.0, 0))
    assert "0 GPUs" in line


def test_format_share_line_renders_budget():
    line = format_share_line(budget(snapshot_for(18, 128.0, 2), 50))
    assert "50%" in line
    assert "9 cores" in line
    assert "64.0 GB" in line
    assert "1 GPU" in line
    assert line == "50% -> 9 cores, 64.0 GB, 1 GPU"


@pytest.mark.parametrize(
    ("gpus", "expected"),
    [(0, "0 GPUs"), (1, "1 GPU"), (3, "3 GPUs")],
)
def test_format_share_line_gpu_wording(gpus, expected):
    line = format_share_line(HardwareBudget(cores=2, memory_gb=4.0, gpus=gpus, capacity_pct=10))
    assert line.endswith(expected)


def test_format_live_line_reports_load_and_memory():
    line = format_live_line(snapshot_for(18, 128.0, 0))
    assert "load avg" in line
    assert "GB available" in line
    assert line == "load avg 1.0/36, 64.0 GB available"


def test_group_gpus_keeps_first_seen_order_and_counts():
    gpus = [
        GpuInfo(GpuVendor.NVIDIA, "A100", 40.0),
        GpuInfo(GpuVendor.APPLE_SILICON, "Apple M2", None),
        GpuInfo(GpuVendor.NVIDIA, "A100", 40.0),
        GpuInfo(GpuVendor.UNKNOWN, "Mystery", None),
        GpuInfo(GpuVendor.UNKNOWN, "Mystery", None),
        GpuInfo(GpuVendor.NVIDIA, "T4", 15.0),
    ]
    assert group_gpus(gpus) == [
        "2 x A100 (40 GB each)",
        "1 x Apple M2",
        "2 x Mystery",
        "1 x T4 (15 GB)",
    ]


def test_parse_nvidia_smi_reads_name_and_memory():
    text = "NVIDIA A100-SXM4-40GB, 40960\nTesla T4, 15360\n"
    gpus = parse_nvidia_smi(text)
    assert [gpu.name for gpu in gpus] == ["NVIDIA A100-SXM4-40GB", "Tesla T4"]
    assert gpus[0].memory_gb == pytest.approx(40.0)
    assert gpus[1].memory_gb == pytest.approx(15.0)
    assert all(gpu.vendor is GpuVendor.NVIDIA for gpu in gpus)


def test_parse_nvidia_smi_skips_malformed_lines():
    text = "no comma here\n, 1024\nBad GPU, not-a-number\nGood GPU, 2048\n"
    gpus = parse_nvidia_smi(text)
    assert gpus == [GpuInfo(GpuVendor.NVIDIA, "Good GPU", 2.0)]


def test_parse_macos_gpus_classifies_vendors():
    text = json.dumps(
        {
            "SPDisplaysDataType": [
                {"sppci_model": "Apple M2 Max", "sppci_vendor": "sppci_vendor_Apple"},
                {"sppci_model": "Quadro", "sppci_vendor": "NVIDIA (0x10de)"},
                {"sppci_model": "Radeon Pro", "sppci_vendor": "sppci_vendor_AMD"},
                {"sppci_model": "Other Card", "sppci_vendor": "Someone"},
                {},
            ]
        }
    )
    gpus = parse_macos_gpus(text)
    assert [gpu.vendor for gpu in gpus] == [
        GpuVendor.APPLE_SILICON,
        GpuVendor.NVIDIA,
        GpuVendor.AMD,
        GpuVendor.UNKNOWN,
        GpuVendor.UNKNOWN,
    ]
    assert gpus[-1].name == "Unknown GPU"
    assert all(gpu.memory_gb is None for gpu in gpus)


@pytest.mark.parametrize("text", ["not json", "[]", '{"SPDisplaysDataType": 3}', "{}"])
def test_parse_macos_gpus_rejects_unexpected_documents(text):
    assert parse_macos_gpus(text) == []
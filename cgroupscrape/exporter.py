"""Metric descriptors, samples and text exposition for cgroup metrics."""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

from .cgroupv1 import collect_v1
from .cgroupv2 import collect_v2
from .collector import (
    DEFAULT_CGROUP_ROOT,
    NAMESPACE,
    CgroupMetric,
    Settings,
    file_exists,
)


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def format_value(value) -> str:
    """Format a sample value the way the Prometheus text format writes floats."""
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    point = len(digits) + exponent
    digits = digits.rstrip("0") or "0"
    exp10 = point - 1
    if exp10 < -4 or exp10 >= 6:
        mantissa = digits[0] + (f".{digits[1:]}" if len(digits) > 1 else "")
        exp_sign = "-" if exp10 < 0 else "+"
        return f"{sign}{mantissa}e{exp_sign}{abs(exp10):02d}"
    if point <= 0:
        return f"{sign}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return f"{sign}{digits}{'0' * (point - len(digits))}"
    return f"{sign}{digits[:point]}.{digits[point:]}"


@dataclass(frozen=True)
class MetricDesc:
    """Name, help text and label names of a metric family."""

    name: str
    help: str
    label_names: tuple[str, ...] = ()
    kind: str = "gauge"

    def __str__(self) -> str:
        return f"# HELP {self.name} {_escape_help(self.help)}\n# TYPE {self.name} {self.kind}"


@dataclass(frozen=True)
class Sample:
    """One labelled value of a metric family."""

    desc: MetricDesc
    label_values: tuple[str, ...]
    value: float

    def __post_init__(self) -> None:
        if len(self.label_values) != len(self.desc.label_names):
            raise ValueError(
                f"{self.desc.name}: expected {len(self.desc.label_names)} label values, "
                f"got {len(self.label_values)}"
            )

    @property
    def labels(self) -> dict[str, str]:
        return dict(zip(self.desc.label_names, self.label_values))

    def __str__(self) -> str:
        value = format_value(self.value)
        if not self.label_values:
            return f"{self.desc.name} {value}"
        labels = ",".join(
            f'{key}="{_escape_label(val)}"' for key, val in zip(self.desc.label_names, self.label_values)
        )
        return f"{self.desc.name}{{{labels}}} {value}"


def _desc(subsystem: str, name: str, help_text: str, *labels: str) -> MetricDesc:
    fq_name = "_".join(part for part in (NAMESPACE, subsystem, name) if part)
    return MetricDesc(fq_name, help_text, tuple(labels))


def is_unified(cgroup_root=DEFAULT_CGROUP_ROOT) -> bool:
    """Return True if ``cgroup_root`` is mounted as the unified (v2) hierarchy."""
    return file_exists(Path(cgroup_root) / "cgroup.controllers")


class Exporter:
    """Collects cgroup metrics for a set of paths and exposes them as samples."""

    def __init__(
        self,
        paths,
        settings: Settings | None = None,
        cgroupv2: bool = False,
        group_path: Callable[[int], str] | None = None,
    ) -> None:
        self.paths = list(paths)
        self.settings = settings if settings is not None else Settings()
        self.cgroupv2 = cgroupv2
        self.group_path = group_path
        self.cpu_user = _desc("cpu", "user_seconds", "Cumalitive CPU user seconds for cgroup", "cgroup")
        self.cpu_system = _desc("cpu", "system_seconds", "Cumalitive CPU system seconds for cgroup", "cgroup")
        self.cpu_total = _desc("cpu", "total_seconds", "Cumalitive CPU total seconds for cgroup", "cgroup")
        self.cpus = _desc("", "cpus", "Number of CPUs in the cgroup", "cgroup")
        self.cpu_info = _desc("", "cpu_info", "Information about the cgroup CPUs", "cgroup", "cpus")
        self.memory_rss = _desc("memory", "rss_bytes", "Memory RSS used in bytes", "cgroup")
        self.memory_cache = _desc("memory", "cache_bytes", "Memory cache used in bytes", "cgroup")
        self.memory_used = _desc("memory", "used_bytes", "Memory used in bytes", "cgroup")
        self.memory_total = _desc("memory", "total_bytes", "Memory total given to cgroup in bytes", "cgroup")
        self.memory_fail_count = _desc("memory", "fail_count", "Memory fail count", "cgroup")
        self.memsw_used = _desc("memsw", "used_bytes", "Swap used in bytes", "cgroup")
        self.memsw_total = _desc("memsw", "total_bytes", "Swap total given to cgroup in bytes", "cgroup")
        self.memsw_fail_count = _desc("memsw", "fail_count", "Swap fail count", "cgroup")
        self.info = _desc("", "info", "User slice information", "cgroup", "username", "uid", "jobid")
        self.process_exec = _desc(
            "", "process_exec_count", "Count of instances of a given process",
            "cgroup", "exec", "username", "uid",
        )
        self.collect_error = _desc(
            "exporter", "collect_error", "Indicates collection error, 0=no error, 1=error", "cgroup"
        )

    def describe(self) -> list[MetricDesc]:
        """Return the descriptors of the metric families this exporter reports."""
        descs = [
            self.cpu_user, self.cpu_system, self.cpu_total, self.cpus, self.cpu_info,
            self.memory_rss, self.memory_cache, self.memory_used, self.memory_total,
            self.memory_fail_count, self.memsw_used, self.memsw_total, self.memsw_fail_count,
            self.info,
        ]
        if self.settings.collect_proc:
            descs.append(self.process_exec)
        return descs

    def _gather(self) -> list[CgroupMetric]:
        if self.cgroupv2:
            return collect_v2(self.paths, self.settings, self.group_path)
        return collect_v1(self.paths, self.settings)

    def collect(self) -> Iterator[Sample]:
        """Read the cgroups and yield one sample per reported value."""
        for m in self._gather():
            name = (m.name,)
            if m.err:
                yield Sample(self.collect_error, name, 1.0)
            yield Sample(self.cpu_user, name, m.cpu_user)
            yield Sample(self.cpu_system, name, m.cpu_system)
            yield Sample(self.cpu_total, name, m.cpu_total)
            yield Sample(self.cpus, name, float(m.cpus))
            yield Sample(self.cpu_info, (m.name, m.cpu_list), 1.0)
            yield Sample(self.memory_rss, name, m.memory_rss)
            yield Sample(self.memory_used, name, m.memory_used)
            yield Sample(self.memory_total, name, m.memory_total)
            yield Sample(self.memory_cache, name, m.memory_cache)
            yield Sample(self.memory_fail_count, name, m.memory_fail_count)
            yield Sample(self.memsw_used, name, m.memsw_used)
            yield Sample(self.memsw_total, name, m.memsw_total)
            # cgroup v2 offers no swap fail count
            if not self.cgroupv2:
                yield Sample(self.memsw_fail_count, name, m.memsw_fail_count)
            if m.userslice or m.job:
                yield Sample(self.info, (m.name, m.username, m.uid, m.jobid), 1.0)
            if self.settings.collect_proc:
                for exe, count in m.process_exec.items():
                    yield Sample(self.process_exec, (m.name, exe, m.username, m.uid), count)

    def render(self) -> str:
        """Return the collected samples in the Prometheus text exposition format."""
        families: dict[str, list[Sample]] = defaultdict(list)
        for sample in self.collect():
            families[sample.desc.name].append(sample)
        lines: list[str] = []
        for family in sorted(families):
            samples = families[family]
            lines.append(str(samples[0].desc))
            lines.extend(str(s) for s in sorted(samples, key=lambda s: s.label_values))
        return "\n".join(lines) + "\n" if lines else ""
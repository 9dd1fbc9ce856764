"""Collection of cgroup v1 (legacy hierarchy) metrics."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .collector import (
    CgroupError,
    CgroupMetric,
    JobInfo,
    Settings,
    get_cpus,
    lookup_username,
)

logger = logging.getLogger(__name__)

NANOSECONDS_PER_SECOND = 1_000_000_000
CLOCK_TICKS = 100

_USER_SLICE = re.compile(r"user-([0-9]+).slice")
_SLURM_JOB = re.compile(r"/slurm/uid_([0-9]+)/job_([0-9]+)")


@dataclass
class _MemoryEntry:
    usage: int = 0
    limit: int = 0
    failcnt: int = 0


@dataclass
class _MemoryStats:
    total_rss: int = 0
    total_cache: int = 0
    usage: _MemoryEntry = field(default_factory=_MemoryEntry)
    swap: _MemoryEntry = field(default_factory=_MemoryEntry)


def _subsystem_dir(cgroup_root, subsystem: str, name: str) -> Path:
    return Path(cgroup_root) / subsystem / name.lstrip("/")


def _parse_uint(text: str, source) -> int:
    try:
        value = int(text.strip())
    except ValueError as exc:
        raise CgroupError(f"invalid value {text.strip()!r} in {source}") from exc
    return max(value, 0)


def _read_uint(path: Path) -> int:
    return _parse_uint(path.read_text(), path)


def _read_kv(path: Path) -> dict[str, int]:
    values: dict[str, int] = {}
    for line in path.read_text().splitlines():
        if not line.strip():
            continue
        parts = line.split()
        if len(parts) != 2:
            raise CgroupError(f"invalid line {line!r} in {path}")
        values[parts[0]] = _parse_uint(parts[1], path)
    return values


def _cpuacct_usage(directory: Path) -> tuple[int, int, int] | None:
    """Return (user, kernel, total) nanoseconds, or None if the files are absent."""
    try:
        stat = _read_kv(directory / "cpuacct.stat")
        total = _read_uint(directory / "cpuacct.usage")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise CgroupError(f"unable to read cpuacct for {directory}: {exc}") from exc
    user = stat.get("user", 0) * NANOSECONDS_PER_SECOND // CLOCK_TICKS
    kernel = stat.get("system", 0) * NANOSECONDS_PER_SECOND // CLOCK_TICKS
    return user, kernel, total


def _memory_entry(directory: Path, prefix: str) -> _MemoryEntry:
    entry = _MemoryEntry()
    for attr, suffix in (
        ("usage", "usage_in_bytes"),
        ("limit", "limit_in_bytes"),
        ("failcnt", "failcnt"),
    ):
        try:
            setattr(entry, attr, _read_uint(directory / f"{prefix}.{suffix}"))
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise CgroupError(f"unable to read {prefix}.{suffix}: {exc}") from exc
    return entry


def _memory_stats(directory: Path) -> _MemoryStats | None:
    try:
        stat = _read_kv(directory / "memory.stat")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise CgroupError(f"unable to read memory.stat for {directory}: {exc}") from exc
    return _MemoryStats(
        total_rss=stat.get("total_rss", 0),
        total_cache=stat.get("total_cache", 0),
        usage=_memory_entry(directory, "memory"),
        swap=_memory_entry(directory, "memory.memsw"),
    )


def job_info_v1(name: str) -> JobInfo:
    """Derive user slice or batch job identity from a cgroup v1 name."""
    info = JobInfo()
    base = os.path.basename(name)
    if match := _USER_SLICE.fullmatch(base):
        info.userslice = True
        info.uid = match.group(1)
        info.username = lookup_username(info.uid) or ""
        return info
    if match := _SLURM_JOB.fullmatch(name):
        info.job = True
        info.uid = match.group(1)
        info.jobid = match.group(2)
        info.username = lookup_username(info.uid) or ""
        return info
    if name.startswith("/torque"):
        info.job = True
        info.jobid = base.split(".")[0]
    return info


def cgroup_name_v1(process_path: str, cgroup_root: str) -> str:
    """Map a process's cpuacct directory to the cgroup name it is reported under."""
    cpuacct_path = str(Path(cgroup_root) / "cpuacct")
    name = process_path.removeprefix(cpuacct_path).removesuffix("/")
    dirs = name.split("/")
    logger.debug("cgroup name dirs=%s", dirs)
    if len(dirs) == 3:
        return name
    for index, directory in enumerate(dirs):
        if directory.startswith("job_"):
            return "/".join(dirs[: index + 1])
    return name


def _read_pids(path: Path) -> list[int]:
    try:
        lines = path.read_text().splitlines()
    except OSError as exc:
        raise CgroupError(f"unable to read {path}: {exc}") from exc
    pids = []
    for line in lines:
        if not line:
            continue
        try:
            pids.append(int(line))
        except ValueError as exc:
            raise CgroupError(f"invalid pid {line!r} in {path}") from exc
    return pids


def list_processes_v1(path: str, settings: Settings) -> list[tuple[int, str]]:
    """Return (pid, cgroup directory) pairs for every process below ``path``."""
    base = _subsystem_dir(settings.cgroup_root, "cpuacct", path)
    if not base.is_dir():
        raise CgroupError(f"cgroups: {path} doesn't exist in cpuacct subsystem")
    processes: list[tuple[int, str]] = []
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames.sort()
        if "cgroup.procs" in filenames:
            pids = _read_pids(Path(dirpath) / "cgroup.procs")
            processes.extend((pid, dirpath) for pid in pids)
    return processes


def metrics_v1(name: str, pids, settings: Settings) -> CgroupMetric:
    """Gather the metrics of one cgroup v1 group; ``pids`` is None if unknown."""
    metric = CgroupMetric(name=name)
    logger.debug("Loading cgroup root=%s path=%s", settings.cgroup_root, name)
    try:
        cpu = _cpuacct_usage(_subsystem_dir(settings.cgroup_root, "cpuacct", name))
        memory = _memory_stats(_subsystem_dir(settings.cgroup_root, "memory", name))
    except CgroupError as exc:
        logger.error("Failed to stat cgroups path=%s err=%s", name, exc)
        metric.err = True
        return metric
    if cpu is not None:
        user, kernel, total = cpu
        metric.cpu_user = user / 1e9
        metric.cpu_system = kernel / 1e9
        metric.cpu_total = total / 1e9
    if memory is not None:
        metric.memory_rss = float(memory.total_rss)
        metric.memory_cache = float(memory.total_cache)
        metric.memory_used = float(memory.usage.usage)
        metric.memory_total = float(memory.usage.limit)
        metric.memory_fail_count = float(memory.usage.failcnt)
        metric.memsw_used = float(memory.swap.usage)
        metric.memsw_total = float(memory.swap.limit)
        metric.memsw_fail_count = float(memory.swap.failcnt)
    cpus_path = f"{settings.cgroup_root}/cpuset{name}/cpuset.cpus"
    try:
        cpus = get_cpus(cpus_path)
    except CgroupError:
        pass
    else:
        metric.cpus = len(cpus)
        metric.cpu_list = ",".join(cpus)
    metric.apply_info(job_info_v1(name))
    if settings.collect_proc:
        if pids is not None:
            logger.debug("Get process info pids=%s", pids)
            metric.add_proc_info(pids, settings)
        else:
            logger.error("Unable to get PIDs path=%s", name)
            metric.err = True
    return metric


def collect_v1(paths, settings: Settings) -> list[CgroupMetric]:
    """Collect metrics for every cgroup found below each of ``paths``."""
    metrics: list[CgroupMetric] = []
    for path in paths:
        try:
            processes = list_processes_v1(path, settings)
        except CgroupError as exc:
            logger.error("Error loading cgroup processes path=%s err=%s", path, exc)
            metrics.append(CgroupMetric(name=path, err=True))
            continue
        logger.debug("Found processes processes=%d", len(processes))
        pids: dict[str, list[int]] = {}
        for pid, process_path in processes:
            name = cgroup_name_v1(process_path, settings.cgroup_root)
            group = pids.setdefault(name, [])
            if pid not in group:
                group.append(pid)
        metrics.extend(metrics_v1(name, group, settings) for name, group in pids.items())
    return metrics
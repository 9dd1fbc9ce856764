"""Collection of cgroup v2 (unified hierarchy) metrics."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterator
from pathlib import Path

from .collector import (
    CgroupError,
    CgroupMetric,
    JobInfo,
    Settings,
    file_exists,
    get_cpus,
    lookup_username,
    process_executable,
    process_uids,
)

logger = logging.getLogger(__name__)

MICROSECONDS_PER_SECOND = 1_000_000
MAX_UINT64 = 2**64 - 1
SLURM_GROUP = "/system.slice/slurmstepd.scope"

_USER_SLICE = re.compile(r"user-([0-9]+).slice")
_SLURM_JOB = re.compile(r"/job_([0-9]+)$")
_IGNORED_JOB_EXECUTABLES = ("sleep", "slurmstepd")


def _parse_uint(text: str, source) -> int:
    if not (text.isascii() and text.isdigit()):
        raise CgroupError(f"invalid file format: {source}")
    value = int(text)
    if value > MAX_UINT64:
        raise CgroupError(f"invalid file format: {source}")
    return value


def _read_kv(path: Path) -> dict[str, int]:
    """Parse a ``key value`` file; a missing file raises FileNotFoundError."""
    try:
        lines = path.read_text().splitlines()
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise CgroupError(f"unable to read {path}: {exc}") from exc
    values: dict[str, int] = {}
    for line in lines:
        parts = line.split()
        if len(parts) != 2:
            raise CgroupError(f"invalid file format: {path}")
        values[parts[0]] = _parse_uint(parts[1], path)
    return values


def _read_single_uint(path: Path) -> int:
    """Read a single-value file; ``max`` is the largest uint64, errors give 0."""
    try:
        text = path.read_text().strip()
    except OSError as exc:
        logger.debug("Unable to read stat file path=%s err=%s", path, exc)
        return 0
    if text == "max":
        return MAX_UINT64
    try:
        return _parse_uint(text, path)
    except CgroupError as exc:
        logger.debug("Unable to parse stat file path=%s err=%s", path, exc)
        return 0


def _verify_group(group: str) -> None:
    if not group.startswith("/"):
        raise CgroupError(f"invalid group path {group!r}")


def _group_dir(cgroup_root, group: str) -> Path:
    _verify_group(group)
    return Path(cgroup_root) / group.lstrip("/")


def pid_group_path(pid, proc_root) -> str:
    """Return the unified-hierarchy cgroup path of ``pid`` from ``<proc_root>/<pid>/cgroup``."""
    path = Path(proc_root) / str(pid) / "cgroup"
    try:
        lines = path.read_text().splitlines()
    except OSError as exc:
        raise CgroupError(f"unable to read {path}: {exc}") from exc
    for line in lines:
        if not line:
            continue
        parts = line.split(":", 2)
        if len(parts) != 3:
            raise CgroupError(f"invalid cgroup entry {line!r} in {path}")
        if "" in parts[1].split(","):
            return parts[2]
    raise CgroupError(f"no unified cgroup path for pid {pid}")


def job_info_v2(name: str, pids, settings: Settings) -> JobInfo:
    """Derive user slice or batch job identity from a cgroup v2 name and its processes."""
    info = JobInfo()
    if match := _USER_SLICE.fullmatch(os.path.basename(name)):
        info.userslice = True
        info.uid = match.group(1)
        info.username = lookup_username(info.uid) or ""
        return info
    match = _SLURM_JOB.search(name)
    if match is None:
        return info
    info.job = True
    info.jobid = match.group(1)
    if not Path(settings.proc_root).is_dir():
        logger.error("Unable to get procfs root=%s", settings.proc_root)
        return info
    chosen = None
    for pid in pids:
        chosen = pid
        try:
            executable = process_executable(settings.proc_root, pid)
        except CgroupError as exc:
            logger.error("Unable to read process executable pid=%s err=%s", pid, exc)
            return info
        if os.path.basename(executable) not in _IGNORED_JOB_EXECUTABLES:
            break
    if chosen is None:
        logger.error("No processes to read job owner name=%s", name)
        return info
    try:
        effective_uid = process_uids(settings.proc_root, chosen)[1]
    except CgroupError as exc:
        logger.error("Unable to get proc status for PID pid=%s err=%s", chosen, exc)
        return info
    info.uid = str(effective_uid)
    info.username = lookup_username(info.uid) or ""
    return info


def cgroup_name_v2(pid_path: str, path: str) -> str:
    """Map a process's cgroup path to the cgroup name it is reported under."""
    depth = 4 if "slurm" in path else 3
    name = "/".join(pid_path.split("/")[:depth])
    logger.debug("Get name from path name=%s pidPath=%s path=%s", name, pid_path, path)
    return name


def get_stat_v2(name: str, path) -> float:
    """Return the value of key ``name`` in the ``key value`` file at ``path``."""
    if not file_exists(path):
        raise CgroupError(f"path {path} does not exist")
    try:
        lines = Path(path).read_text().splitlines()
    except OSError as exc:
        raise CgroupError(f"unable to read {path}: {exc}") from exc
    for line in lines:
        parts = line.split()
        if len(parts) != 2:
            raise CgroupError(f"invalid file format: {path}")
        value = _parse_uint(parts[1], path)
        if parts[0] == name:
            return float(value)
    raise CgroupError(f"unable to find stat key {name} in {path}")


def _walk_sorted(directory: Path) -> Iterator[Path]:
    for entry in sorted(directory.iterdir(), key=lambda p: p.name):
        if entry.is_dir() and not entry.is_symlink():
            yield from _walk_sorted(entry)
        else:
            yield entry


def list_procs_v2(group: str, settings: Settings) -> list[int]:
    """Return the PIDs of every process in ``group`` and its descendants."""
    base = _group_dir(settings.cgroup_root, group)
    if not base.is_dir():
        raise CgroupError(f"cgroup {group} does not exist under {settings.cgroup_root}")
    pids: list[int] = []
    try:
        for entry in _walk_sorted(base):
            if entry.name != "cgroup.procs":
                continue
            for line in entry.read_text().splitlines():
                if line.strip():
                    pids.append(_parse_uint(line.strip(), entry))
    except OSError as exc:
        raise CgroupError(f"unable to list processes of {group}: {exc}") from exc
    return pids


def _group_stats(directory: Path) -> tuple[dict[str, int], dict[str, int]]:
    """Return the merged cpu/memory stats and the memory events of a group."""
    try:
        controllers = (directory / "cgroup.controllers").read_text().split()
    except OSError as exc:
        raise CgroupError(f"unable to read controllers of {directory}: {exc}") from exc
    stats: dict[str, int] = {}
    for controller in ("cpu", "memory"):
        if controller not in controllers:
            continue
        try:
            stats.update(_read_kv(directory / f"{controller}.stat"))
        except FileNotFoundError:
            continue
    try:
        events = _read_kv(directory / "memory.events")
    except FileNotFoundError:
        events = {}
    return stats, events


def metrics_v2(name: str, pids, settings: Settings) -> CgroupMetric:
    """Gather the metrics of one cgroup v2 group."""
    metric = CgroupMetric(name=name)
    logger.debug("Loading cgroup path=%s", name)
    try:
        directory = _group_dir(settings.cgroup_root, name)
        stats, events = _group_stats(directory)
    except CgroupError as exc:
        logger.error("Failed to get cgroup stats path=%s err=%s", name, exc)
        metric.err = True
        return metric
    metric.cpu_user = stats.get("user_usec", 0) / MICROSECONDS_PER_SECOND
    metric.cpu_system = stats.get("system_usec", 0) / MICROSECONDS_PER_SECOND
    metric.cpu_total = stats.get("usage_usec", 0) / MICROSECONDS_PER_SECOND
    try:
        swapcached = get_stat_v2("swapcached", directory / "memory.stat")
    except CgroupError as exc:
        logger.error("Unable to get swapcached path=%s err=%s", name, exc)
        metric.err = True
        return metric
    anon = float(stats.get("anon", 0))
    file_bytes = float(stats.get("file", 0))
    metric.memory_rss = anon + swapcached + file_bytes
    metric.memory_used = float(_read_single_uint(directory / "memory.current"))
    metric.memory_total = float(_read_single_uint(directory / "memory.max"))
    metric.memory_cache = file_bytes
    metric.memsw_used = float(_read_single_uint(directory / "memory.swap.current"))
    metric.memsw_total = float(_read_single_uint(directory / "memory.swap.max"))
    if events:
        metric.memory_fail_count = float(events.get("oom", 0))
    try:
        cpus = get_cpus(directory / "cpuset.cpus")
    except CgroupError:
        pass
    else:
        metric.cpus = len(cpus)
        metric.cpu_list = ",".join(cpus)
    metric.apply_info(job_info_v2(name, pids, settings))
    if settings.collect_proc:
        logger.debug("Get process info pids=%s", pids)
        metric.add_proc_info(pids, settings)
    return metric


def collect_v2(
    paths,
    settings: Settings,
    group_path: Callable[[int], str] | None = None,
) -> list[CgroupMetric]:
    """Collect metrics for every cgroup found below each of ``paths``.

    ``group_path`` maps a PID to its cgroup path; by default it is read from procfs.
    """
    if group_path is None:
        def group_path(pid: int) -> str:
            return pid_group_path(pid, settings.proc_root)

    metrics: list[CgroupMetric] = []
    for path in paths:
        group = SLURM_GROUP if path == "/slurm" else path
        logger.debug("Loading cgroup path=%s group=%s root=%s", path, group, settings.cgroup_root)
        try:
            processes = list_procs_v2(group, settings)
        except CgroupError as exc:
            logger.error("Error loading cgroup processes path=%s group=%s err=%s", path, group, exc)
            metrics.append(CgroupMetric(name=path, err=True))
            continue
        logger.debug("Found processes path=%s group=%s processes=%d", path, group, len(processes))
        pids: dict[str, list[int]] = {}
        for pid in processes:
            try:
                pid_path = group_path(pid)
            except CgroupError as exc:
                logger.error("Error getting PID group path path=%s pid=%s err=%s", path, pid, exc)
                continue
            name = cgroup_name_v2(pid_path, path)
            if "slurm" in path and os.path.basename(name) == "system":
                logger.debug("Skip system cgroup name=%s", name)
                continue
            members = pids.setdefault(name, [])
            if pid not in members:
                members.append(pid)
        metrics.extend(metrics_v2(name, members, settings) for name, members in pids.items())
    return metrics
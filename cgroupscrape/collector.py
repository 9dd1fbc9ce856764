"""Shared cgroup metric model, proc helpers and cpuset parsing."""

from __future__ import annotations

import logging
import os
import pwd
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

NAMESPACE = "cgroup"
DEFAULT_CGROUP_ROOT = "/sys/fs/cgroup"
DEFAULT_PROC_ROOT = "/proc"


class CgroupError(Exception):
    """Raised when cgroup or proc data cannot be read or parsed."""


@dataclass
class Settings:
    """Runtime options shared by the collectors."""

    cgroup_root: str = DEFAULT_CGROUP_ROOT
    proc_root: str = DEFAULT_PROC_ROOT
    collect_proc: bool = False
    collect_proc_max_exec: int = 100


@dataclass
class JobInfo:
    """Identity derived from a cgroup name: user slice or batch job."""

    userslice: bool = False
    job: bool = False
    uid: str = ""
    username: str = ""
    jobid: str = ""


@dataclass
class CgroupMetric:
    """Values gathered for a single cgroup."""

    name: str = ""
    cpu_user: float = 0.0
    cpu_system: float = 0.0
    cpu_total: float = 0.0
    cpus: int = 0
    cpu_list: str = ""
    memory_rss: float = 0.0
    memory_cache: float = 0.0
    memory_used: float = 0.0
    memory_total: float = 0.0
    memory_fail_count: float = 0.0
    memsw_used: float = 0.0
    memsw_total: float = 0.0
    memsw_fail_count: float = 0.0
    userslice: bool = False
    job: bool = False
    uid: str = ""
    username: str = ""
    jobid: str = ""
    process_exec: dict[str, float] = field(default_factory=dict)
    err: bool = False

    def apply_info(self, info: JobInfo) -> None:
        """Copy the fields that ``info`` has set onto this metric."""
        if info.userslice:
            self.userslice = True
        if info.job:
            self.job = True
        if info.uid:
            self.uid = info.uid
        if info.username:
            self.username = info.username
        if info.jobid:
            self.jobid = info.jobid

    def add_proc_info(self, pids, settings: Settings) -> None:
        """Count executables of ``pids`` and, if unknown, infer the owning user."""
        proc_root = Path(settings.proc_root)
        if not proc_root.is_dir():
            logger.error("Unable to open procfs path=%s", proc_root)
            return
        collect_user = not self.uid and not self.username
        executables: Counter[str] = Counter()
        uid_counts: Counter[int] = Counter()
        for pid in pids:
            try:
                executable = process_executable(proc_root, pid)
            except CgroupError as exc:
                logger.error("Unable to get executable for PID pid=%s err=%s", pid, exc)
                continue
            if collect_user:
                try:
                    uid_counts[process_uids(proc_root, pid)[0]] += 1
                except CgroupError as exc:
                    logger.error("Unable to get status for PID pid=%s err=%s", pid, exc)
            if len(executable) > settings.collect_proc_max_exec:
                logger.debug("Executable will be truncated executable=%s pid=%s", executable, pid)
                executable = truncate_executable(executable, settings.collect_proc_max_exec)
            executables[executable] += 1
        self.process_exec = {exe: float(count) for exe, count in executables.items()}
        if collect_user and uid_counts:
            max_uid, _ = max(uid_counts.items(), key=lambda item: item[1])
            self.uid = str(max_uid)
            username = lookup_username(self.uid)
            if username is not None:
                self.username = username


def parse_cpuset(cpuset: str) -> list[str]:
    """Expand a cpuset list such as ``0-1,4`` into individual CPU ids."""
    cpus: list[str] = []
    if cpuset == "":
        return cpus
    for part in cpuset.split(","):
        bounds = part.split("-")
        try:
            if len(bounds) == 1:
                start = end = int(bounds[0])
            elif len(bounds) == 2:
                start, end = int(bounds[0]), int(bounds[1])
            else:
                raise ValueError(f"invalid cpuset range {part!r}")
        except ValueError as exc:
            raise ValueError(f"invalid cpuset {cpuset!r}: {exc}") from exc
        cpus.extend(str(cpu) for cpu in range(start, end + 1))
    return cpus


def get_cpus(path) -> list[str]:
    """Read and expand a cpuset file; a missing file yields no CPUs."""
    if not file_exists(path):
        return []
    try:
        data = Path(path).read_text()
    except OSError as exc:
        logger.error("Error reading cpuset cpuset=%s err=%s", path, exc)
        raise CgroupError(f"unable to read {path}: {exc}") from exc
    try:
        return parse_cpuset(data.removesuffix("\n"))
    except ValueError as exc:
        logger.error("Error parsing cpu set cpuset=%s err=%s", path, exc)
        raise CgroupError(str(exc)) from exc


def file_exists(filename) -> bool:
    """Return True if ``filename`` exists and is not a directory."""
    try:
        return not Path(filename).is_dir() and Path(filename).exists()
    except OSError:
        return False


def lookup_username(uid) -> str | None:
    """Return the account name for ``uid`` or None if it is unknown."""
    try:
        return pwd.getpwuid(int(uid)).pw_name
    except (KeyError, ValueError, OverflowError) as exc:
        logger.error("Error looking up uid uid=%s err=%s", uid, exc)
        return None


def _proc_dir(proc_root, pid) -> Path:
    path = Path(proc_root) / str(pid)
    if not path.is_dir():
        raise CgroupError(f"process {pid} not found under {proc_root}")
    return path


def process_executable(proc_root, pid) -> str:
    """Return the target of ``<proc_root>/<pid>/exe``; empty if the link is absent."""
    path = _proc_dir(proc_root, pid) / "exe"
    try:
        return os.readlink(path)
    except FileNotFoundError:
        return ""
    except OSError as exc:
        raise CgroupError(f"unable to read {path}: {exc}") from exc


def process_uids(proc_root, pid) -> tuple[int, ...]:
    """Return the real, effective, saved and filesystem UIDs of a process."""
    path = _proc_dir(proc_root, pid) / "status"
    try:
        lines = path.read_text().splitlines()
    except OSError as exc:
        raise CgroupError(f"unable to read {path}: {exc}") from exc
    for line in lines:
        key, _, value = line.partition(":")
        if key == "Uid":
            try:
                uids = tuple(int(v) for v in value.split())
            except ValueError as exc:
                raise CgroupError(f"malformed Uid line in {path}") from exc
            if len(uids) != 4:
                raise CgroupError(f"malformed Uid line in {path}")
            return uids
    raise CgroupError(f"no Uid line in {path}")


def truncate_executable(executable: str, max_len: int) -> str:
    """Shorten ``executable`` to its head and tail joined by ``...`` if too long."""
    if len(executable) <= max_len:
        return executable
    trim = max_len // 2
    return f"{executable[:trim]}...{executable[len(executable) - trim:]}"
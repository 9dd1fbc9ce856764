import os

import pytest

from cgroupscrape.collector import (
    CgroupError,
    CgroupMetric,
    JobInfo,
    Settings,
    file_exists,
    get_cpus,
    lookup_username,
    parse_cpuset,
    process_executable,
    process_uids,
    truncate_executable,
)


def _make_proc(root, pid, exe, uid=20821):
    pdir = root / str(pid)
    pdir.mkdir(parents=True)
    os.symlink(exe, pdir / "exe")
    (pdir / "status").write_text(
        f"Name:\tbash\nUid:\t{uid}\t{uid}\t{uid}\t{uid}\nGid:\t100\t100\t100\t100\n"
    )
    return pdir


@pytest.fixture
def proc_root(tmp_path):
    root = tmp_path / "proc"
    _make_proc(root, 95521, "/bin/bash")
    _make_proc(root, 95525, "/bin/bash")
    return root


@pytest.mark.parametrize(
    "cpuset, expected",
    [
        ("0-2", ["0", "1", "2"]),
        ("0-1,4-5,8-9", ["0", "1", "4", "5", "8", "9"]),
        ("1,3,5,7", ["1", "3", "5", "7"]),
        ("", []),
    ],
)
def test_parse_cpuset(cpuset, expected):
    assert parse_cpuset(cpuset) == expected


@pytest.mark.parametrize("cpuset", ["a", "0-b", "1,x"])
def test_parse_cpuset_invalid(cpuset):
    with pytest.raises(ValueError):
        parse_cpuset(cpuset)


def test_get_cpus_reads_file(tmp_path):
    path = tmp_path / "cpuset.cpus"
    path.write_text("0-1,4\n")
    assert get_cpus(path) == ["0", "1", "4"]


def test_get_cpus_missing_file(tmp_path):
    assert get_cpus(tmp_path / "dne") == []


def test_get_cpus_invalid_content(tmp_path):
    path = tmp_path / "cpuset.cpus"
    path.write_text("zero\n")
    with pytest.raises(CgroupError):
        get_cpus(path)


def test_file_exists(tmp_path):
    path = tmp_path / "f"
    path.write_text("x")
    assert file_exists(path) is True
    assert file_exists(tmp_path) is False
    assert file_exists(tmp_path / "missing") is False


def test_truncate_executable():
    assert truncate_executable("/bin/bash", 6) == "/bi...ash"
    assert truncate_executable("/bin/bash", 100) == "/bin/bash"
    assert truncate_executable("/bin/bash", 0) == "..."


def test_process_helpers(proc_root):
    assert process_executable(proc_root, 95521) == "/bin/bash"
    assert process_uids(proc_root, 95521) == (20821, 20821, 20821, 20821)


def test_process_executable_missing_pid(proc_root):
    with pytest.raises(CgroupError):
        process_executable(proc_root, 1)


def test_process_executable_without_link(proc_root):
    (proc_root / "777").mkdir()
    assert process_executable(proc_root, 777) == ""


def test_process_uids_malformed(proc_root):
    pdir = proc_root / "888"
    pdir.mkdir()
    (pdir / "status").write_text("Uid:\tone\n")
    with pytest.raises(CgroupError):
        process_uids(proc_root, 888)


def test_get_proc_info(proc_root):
    settings = Settings(proc_root=str(proc_root), collect_proc=True)
    metric = CgroupMetric()
    metric.add_proc_info([95521, 95525], settings)
    assert metric.process_exec == {"/bin/bash": 2.0}
    assert metric.uid == "20821"

    settings.collect_proc_max_exec = 6
    metric.add_proc_info([95521, 95525], settings)
    assert metric.process_exec == {"/bi...ash": 2.0}


def test_proc_info_skips_missing_pids(proc_root):
    metric = CgroupMetric()
    metric.add_proc_info([95521, 4242], Settings(proc_root=str(proc_root)))
    assert metric.process_exec == {"/bin/bash": 1.0}


def test_proc_info_majority_uid(tmp_path):
    root = tmp_path / "proc"
    _make_proc(root, 10, "/usr/bin/a", uid=1001)
    _make_proc(root, 11, "/usr/bin/b", uid=1002)
    _make_proc(root, 12, "/usr/bin/b", uid=1002)
    metric = CgroupMetric()
    metric.add_proc_info([10, 11, 12], Settings(proc_root=str(root)))
    assert metric.uid == "1002"
    assert metric.process_exec == {"/usr/bin/a": 1.0, "/usr/bin/b": 2.0}


def test_proc_info_keeps_known_uid(proc_root):
    metric = CgroupMetric(uid="500")
    metric.add_proc_info([95521], Settings(proc_root=str(proc_root)))
    assert metric.uid == "500"
    assert metric.process_exec == {"/bin/bash": 1.0}


def test_proc_info_missing_proc_root(tmp_path):
    metric = CgroupMetric()
    metric.add_proc_info([1], Settings(proc_root=str(tmp_path / "dne")))
    assert metric.process_exec == {}
    assert metric.uid == ""


def test_apply_info():
    metric = CgroupMetric(name="/slurm/uid_20821/job_10")
    metric.apply_info(JobInfo(job=True, uid="20821", jobid="10"))
    assert (metric.job, metric.userslice, metric.uid, metric.jobid, metric.username) == (
        True,
        False,
        "20821",
        "10",
        "",
    )


def test_lookup_username_unknown():
    assert lookup_username(2**31 - 3) is None
    assert lookup_username("not-a-number") is None


def test_settings_defaults():
    settings = Settings()
    assert (settings.cgroup_root, settings.proc_root) == ("/sys/fs/cgroup", "/proc")
    assert settings.collect_proc is False
    assert settings.collect_proc_max_exec == 100
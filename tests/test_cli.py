import threading
import urllib.request

import pytest

from cgroupscrape.cli import (
    ExporterConfig,
    MetricsHandler,
    build_server,
    main,
    parse_args,
    render_metrics,
)
from cgroupscrape.collector import Settings


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def _settings(tmp_path):
    root = tmp_path / "cgroup"
    proc = tmp_path / "proc"
    slice_dir = root / "user.slice" / "user-20821.slice"
    _write(slice_dir / "session-157.scope" / "cgroup.procs", "67998\n")
    _write(slice_dir / "cgroup.controllers", "cpu memory\n")
    _write(slice_dir / "cpu.stat", "usage_usec 17975873\nuser_usec 15270449\nsystem_usec 2705424\n")
    _write(slice_dir / "memory.stat", "anon 1000\nfile 2000\nswapcached 0\n")
    _write(slice_dir / "memory.current", "27115520\n")
    _write(proc / "67998" / "cgroup", "0::/user.slice/user-20821.slice/session-157.scope\n")
    return Settings(cgroup_root=str(root), proc_root=str(proc))


def _config(tmp_path, paths=("/user.slice",), **kwargs):
    return ExporterConfig(
        paths=list(paths),
        settings=_settings(tmp_path),
        cgroupv2=True,
        disable_exporter_metrics=True,
        **kwargs,
    )


def test_parse_args_defaults():
    config = parse_args(["--config.paths=/user.slice,/slurm"])
    assert config.paths == ["/user.slice", "/slurm"]
    assert config.listen_address == ":9306"
    assert config.disable_exporter_metrics is False
    assert config.settings == Settings()


def test_parse_args_flags():
    config = parse_args([
        "--config.paths=/user.slice",
        "--path.cgroup.root=/tmp/cg",
        "--path.proc.root=/tmp/proc",
        "--collect.proc",
        "--collect.proc.max-exec=6",
        "--web.disable-exporter-metrics",
    ])
    assert config.settings.cgroup_root == "/tmp/cg"
    assert config.settings.proc_root == "/tmp/proc"
    assert config.settings.collect_proc is True
    assert config.settings.collect_proc_max_exec == 6
    assert config.disable_exporter_metrics is True


def test_parse_args_requires_paths():
    with pytest.raises(SystemExit):
        parse_args([])


def test_render_metrics(tmp_path):
    body = render_metrics(_config(tmp_path))
    assert 'cgroup_memory_used_bytes{cgroup="/user.slice/user-20821.slice"} 2.711552e+07' in body
    assert "cgroup_exporter_build_info{" in body


def test_render_metrics_bad_path(tmp_path):
    body = render_metrics(_config(tmp_path, paths=("/dne",)))
    assert 'cgroup_exporter_collect_error{cgroup="/dne"} 1' in body


def test_render_metrics_exporter_metrics_toggle(tmp_path):
    config = _config(tmp_path)
    assert "process_cpu_seconds_total" not in render_metrics(config)
    config.disable_exporter_metrics = False
    assert "process_cpu_seconds_total" in render_metrics(config)


def test_build_server_rejects_bad_address(tmp_path):
    with pytest.raises(ValueError):
        build_server(_config(tmp_path, listen_address="localhost"))


def test_main_fails_on_bad_address():
    assert main(["--config.paths=/user.slice", "--web.listen-address=nowhere"]) == 1


def test_server_serves_metrics_and_landing_page(tmp_path):
    server = build_server(_config(tmp_path, listen_address="127.0.0.1:0"))
    assert server.RequestHandlerClass is MetricsHandler
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        port = server.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/metrics", timeout=10) as resp:
            status = resp.status
            body = resp.read().decode()
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/", timeout=10) as resp:
            landing = resp.read().decode()
    finally:
        server.shutdown()
        server.server_close()
    assert status == 200
    assert 'cgroup_memory_used_bytes{cgroup="/user.slice/user-20821.slice"} 2.711552e+07' in body
    assert "<h1>cgroup Exporter</h1>" in landing
    assert "href='/metrics'" in landing
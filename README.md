# cgroupscrape

An exporter that reads Linux control groups and serves per-cgroup metrics in
the Prometheus text exposition format. It reads both cgroup v1 (the
`cpuacct`, `memory` and `cpuset` hierarchies) and the unified cgroup v2
hierarchy, and recognises systemd user slices, SLURM jobs and Torque jobs.

## Installation

```
pip install .
```

The package uses only the Python standard library (Python 3.10 or later).
For the tests:

```
pip install .[test]
pytest
```

## Running

```
cgroupscrape --config.paths=/user.slice,/system.slice,/slurm
```

The server listens on `:9306` by default. Metrics are served at `/metrics`;
every other path returns a small HTML page linking to them.

Options:

- `--config.paths` (required): a comma-separated list of cgroup paths to scan.
  On cgroup v2, `/slurm` is read as `/system.slice/slurmstepd.scope`.
- `--web.listen-address`: the `host:port` to listen on (default `:9306`).
  An IPv6 host may be given in brackets.
- `--web.disable-exporter-metrics`: leave out the `process_*` metrics about
  the exporter process itself.
- `--collect.proc`: also count the executables of the processes in each cgroup
  and, where the owner is not known from the cgroup name, infer it from them.
- `--collect.proc.max-exec`: the longest executable path to record before it is
  shortened to `prefix...suffix` (default 100).
- `--path.cgroup.root`: the root of the cgroup filesystem (default `/sys/fs/cgroup`).
- `--path.proc.root`: the root of the proc filesystem (default `/proc`).
- `--log.level`: `debug`, `info`, `warn` or `error` (default `info`).
- `--log.format`: `logfmt` or `json` (default `logfmt`).
- `--version`: print the version and exit.

Whether to read cgroup v1 or v2 is decided on each scrape by checking for
`/sys/fs/cgroup/cgroup.controllers`. When the exporter is used as a library,
`ExporterConfig.cgroupv2` can be set to force one or the other.

## Metrics

All cgroup metrics carry a `cgroup` label:

| Metric | Meaning |
| --- | --- |
| `cgroup_cpu_user_seconds` | cumulative CPU user seconds |
| `cgroup_cpu_system_seconds` | cumulative CPU system seconds |
| `cgroup_cpu_total_seconds` | cumulative CPU total seconds |
| `cgroup_cpus` | number of CPUs in the cgroup's cpuset |
| `cgroup_cpu_info` | the cgroup's CPU list, as a `cpus` label |
| `cgroup_memory_rss_bytes` | memory RSS in bytes |
| `cgroup_memory_cache_bytes` | memory cache in bytes |
| `cgroup_memory_used_bytes` | memory used in bytes |
| `cgroup_memory_total_bytes` | memory limit in bytes |
| `cgroup_memory_fail_count` | memory fail count (OOM events on v2) |
| `cgroup_memsw_used_bytes` | swap used in bytes |
| `cgroup_memsw_total_bytes` | swap limit in bytes |
| `cgroup_memsw_fail_count` | swap fail count (cgroup v1 only) |
| `cgroup_info` | user slice or job information: `username`, `uid`, `jobid` |
| `cgroup_process_exec_count` | processes per executable (with `--collect.proc`) |
| `cgroup_exporter_collect_error` | 1 when a cgroup could not be read |

Each scrape also includes `cgroup_exporter_build_info` and, unless
`--web.disable-exporter-metrics` is given, `process_cpu_seconds_total`,
`process_max_fds`, `process_open_fds` and `process_resident_memory_bytes`.

## Library use

The collectors can be used without the HTTP server:

- `cgroupscrape.collector.Settings` holds the cgroup and proc roots and the
  process options; `CgroupMetric` holds the values of one cgroup;
  `parse_cpuset("0-1,4")` expands a cpuset list.
- `cgroupscrape.cgroupv1.collect_v1(paths, settings)` and
  `cgroupscrape.cgroupv2.collect_v2(paths, settings, group_path)` return lists
  of `CgroupMetric`. `group_path` maps a PID to its cgroup path and defaults
  to reading it from the proc filesystem.
- `cgroupscrape.exporter.Exporter` turns them into `Sample` objects
  (`collect()`) or exposition text (`render()`).
- `cgroupscrape.cli.render_metrics(config)` renders one full scrape for an
  `ExporterConfig`, and `build_server(config)` binds the HTTP server without
  starting it.

## Limitations

- The HTTP server is plain HTTP: it has no TLS and no authentication.
- Only CPU, memory and cpuset data are read; other cgroup controllers are not
  reported.
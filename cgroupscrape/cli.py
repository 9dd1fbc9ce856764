"""Command line entry point and HTTP server for the cgroup exporter."""

from __future__ import annotations

import argparse
import json
import logging
import os
import platform
import resource
import socket
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import urlsplit

from .collector import (
    DEFAULT_CGROUP_ROOT,
    DEFAULT_PROC_ROOT,
    NAMESPACE,
    Settings,
)
from .exporter import Exporter, MetricDesc, Sample, is_unified

logger = logging.getLogger(__name__)

PROGRAM = "cgroup_exporter"
VERSION = "1.0.0"
METRICS_PATH = "/metrics"
DEFAULT_LISTEN_ADDRESS = ":9306"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

_LANDING_PAGE = f"""<html>
             <head><title>cgroup Exporter</title></head>
             <body>
             <h1>cgroup Exporter</h1>
             <p><a href='{METRICS_PATH}'>Metrics</a></p>
             </body>
             </html>"""

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_BUILD_INFO = MetricDesc(
    f"{NAMESPACE}_exporter_build_info",
    f"A metric with a constant '1' value labeled by version and python version "
    f"from which {NAMESPACE}_exporter was built, and the platform it runs on.",
    ("version", "pythonversion", "platform"),
)
_PROCESS_CPU = MetricDesc(
    "process_cpu_seconds_total", "Total user and system CPU time spent in seconds.", (), "counter"
)
_PROCESS_MAX_FDS = MetricDesc("process_max_fds", "Maximum number of open file descriptors.")
_PROCESS_OPEN_FDS = MetricDesc("process_open_fds", "Number of open file descriptors.")
_PROCESS_RSS = MetricDesc("process_resident_memory_bytes", "Resident memory size in bytes.")


@dataclass
class ExporterConfig:
    """Options of a running exporter."""

    paths: list[str]
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    disable_exporter_metrics: bool = False
    settings: Settings = field(default_factory=Settings)
    cgroupv2: bool | None = None
    log_level: str = "info"
    log_format: str = "logfmt"


def parse_args(argv=None) -> ExporterConfig:
    """Parse command line flags into an :class:`ExporterConfig`."""
    parser = argparse.ArgumentParser(prog=PROGRAM, description="Export cgroup metrics for Prometheus.")
    parser.add_argument(
        "--config.paths", dest="paths", required=True,
        help="Comma separated list of cgroup paths to check, eg /user.slice,/system.slice,/slurm",
    )
    parser.add_argument(
        "--web.listen-address", dest="listen_address", default=DEFAULT_LISTEN_ADDRESS,
        help="Address to listen on for web interface and telemetry.",
    )
    parser.add_argument(
        "--web.disable-exporter-metrics", dest="disable_exporter_metrics",
        action=argparse.BooleanOptionalAction, default=False,
        help="Exclude metrics about the exporter (process_*)",
    )
    parser.add_argument(
        "--collect.proc", dest="collect_proc", action=argparse.BooleanOptionalAction, default=False,
        help="Boolean that sets if to collect proc information",
    )
    parser.add_argument(
        "--path.cgroup.root", dest="cgroup_root", default=DEFAULT_CGROUP_ROOT,
        help="Root path to cgroup fs",
    )
    parser.add_argument(
        "--collect.proc.max-exec", dest="max_exec", type=int, default=100,
        help="Max length of process executable to record",
    )
    parser.add_argument(
        "--path.proc.root", dest="proc_root", default=DEFAULT_PROC_ROOT, help="Root path to proc fs"
    )
    parser.add_argument(
        "--log.level", dest="log_level", choices=list(_LOG_LEVELS), default="info",
        help="Only log messages with the given severity or above.",
    )
    parser.add_argument(
        "--log.format", dest="log_format", choices=["logfmt", "json"], default="logfmt",
        help="Output format of log messages.",
    )
    parser.add_argument("--version", action="version", version=f"{PROGRAM} {VERSION}")
    args = parser.parse_args(argv)
    return ExporterConfig(
        paths=args.paths.split(","),
        listen_address=args.listen_address,
        disable_exporter_metrics=args.disable_exporter_metrics,
        settings=Settings(
            cgroup_root=args.cgroup_root,
            proc_root=args.proc_root,
            collect_proc=args.collect_proc,
            collect_proc_max_exec=args.max_exec,
        ),
        log_level=args.log_level,
        log_format=args.log_format,
    )


def _render_family(samples: Iterable[Sample]) -> str:
    samples = list(samples)
    if not samples:
        return ""
    return "\n".join([str(samples[0].desc), *(str(s) for s in samples)]) + "\n"


def _process_samples() -> Iterator[Sample]:
    times = os.times()
    yield Sample(_PROCESS_CPU, (), times.user + times.system)
    yield Sample(_PROCESS_MAX_FDS, (), float(resource.getrlimit(resource.RLIMIT_NOFILE)[0]))
    fd_dir = Path("/proc/self/fd")
    if fd_dir.is_dir():
        yield Sample(_PROCESS_OPEN_FDS, (), float(len(os.listdir(fd_dir))))
    try:
        pages = int(Path("/proc/self/statm").read_text().split()[1])
    except (OSError, IndexError, ValueError):
        return
    yield Sample(_PROCESS_RSS, (), float(pages * resource.getpagesize()))


def render_metrics(config: ExporterConfig) -> str:
    """Collect all metrics for one scrape and return them as exposition text."""
    cgroupv2 = config.cgroupv2 if config.cgroupv2 is not None else is_unified(DEFAULT_CGROUP_ROOT)
    exporter = Exporter(config.paths, config.settings, cgroupv2=cgroupv2)
    parts = [
        exporter.render(),
        _render_family([Sample(_BUILD_INFO, (VERSION, platform.python_version(), platform.system()), 1.0)]),
    ]
    if not config.disable_exporter_metrics:
        parts.extend(_render_family([sample]) for sample in _process_samples())
    return "".join(parts)


class MetricsHandler(BaseHTTPRequestHandler):
    """Serves the metrics endpoint and a landing page for every other path."""

    def do_GET(self) -> None:  # noqa: N802
        if urlsplit(self.path).path == METRICS_PATH:
            body = render_metrics(self.server.config).encode()
            content_type = CONTENT_TYPE
        else:
            body = _LANDING_PAGE.encode()
            content_type = "text/html; charset=utf-8"
        self.send_response(200)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args) -> None:  # noqa: A002
        logger.debug(format, *args)


class _MetricsServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, config: ExporterConfig) -> None:
        self.config = config
        super().__init__(address, MetricsHandler)


class _MetricsServerV6(_MetricsServer):
    address_family = socket.AF_INET6


def build_server(config: ExporterConfig) -> ThreadingHTTPServer:
    """Bind an HTTP server on the configured listen address."""
    host, sep, port = config.listen_address.rpartition(":")
    if not sep:
        raise ValueError(f"invalid listen address {config.listen_address!r}: missing port")
    try:
        port_number = int(port)
    except ValueError as exc:
        raise ValueError(f"invalid listen address {config.listen_address!r}: bad port") from exc
    host = host.strip("[]")
    server_class = _MetricsServerV6 if ":" in host else _MetricsServer
    return server_class((host, port_number), config)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(
            {
                "ts": self.formatTime(record),
                "level": record.levelname.lower(),
                "caller": record.name,
                "msg": record.getMessage(),
            }
        )


def _configure_logging(config: ExporterConfig) -> None:
    handler = logging.StreamHandler()
    if config.log_format == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("ts=%(asctime)s level=%(levelname)s caller=%(name)s msg=%(message)s")
        )
    logging.basicConfig(level=_LOG_LEVELS.get(config.log_level, logging.INFO), handlers=[handler], force=True)


def main(argv=None) -> int:
    """Run the exporter until interrupted; return the process exit status."""
    config = parse_args(argv)
    _configure_logging(config)
    logger.info("Starting %s version=%s", PROGRAM, VERSION)
    logger.info("Build context python=%s", platform.python_version())
    logger.info("Starting Server address=%s", config.listen_address)
    try:
        server = build_server(config)
    except (OSError, ValueError) as exc:
        logger.error("err=%s", exc)
        return 1
    with server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
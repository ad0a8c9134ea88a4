from __future__ import annotations

import argparse
import functools
import logging
import os
import signal
import threading
from typing import List, Optional

from .cache import DecisionCache, load_secondary_tier
from .config.config_parser import AppConfig, parse_config_file
from .errors import PersistenceError
from .events import QueueBroadcaster
from .logging_config import init_logging
from .pipeline import QueryPipeline
from .privacy import LogSanitizer
from .resolver import UpstreamResolver
from .rules.repository import FileRuleRepository
from .rules.store import RuleSnapshot, RuleStore
from .servers.tcp_server import DNSTCPServer
from .servers.udp_server import DNSServer
from .servers.webserver import RingBuffer, start_webserver
from .stats import StatsAggregator, format_snapshot_json
from .transports.udp import udp_query


def build_pipeline(cfg: AppConfig, event_buffer: Optional[RingBuffer] = None) -> QueryPipeline:
    """
    Construct a QueryPipeline and its collaborators from validated config.

    Inputs:
      - cfg: AppConfig.
      - event_buffer: Optional RingBuffer subscribed to broadcast events.

    Outputs:
      - QueryPipeline (not started).

    The inline rules seed the store. A configured repository file that does
    not exist yet is created from them, so the first start persists the
    config rules instead of replacing them with an empty document.
    """
    log = logging.getLogger("dnsguard.main")
    rules_cfg = cfg.rules
    initial = RuleSnapshot.build(
        blocked=rules_cfg.blocked,
        allowed=rules_cfg.allowed,
        categories=rules_cfg.categories,
        active_categories=rules_cfg.active_categories,
        mode=rules_cfg.mode,
    )
    store = RuleStore(initial)

    repository = None
    if rules_cfg.repository:
        repository = FileRuleRepository(rules_cfg.repository)
        if not os.path.exists(repository.path):
            try:
                repository.save(initial)
                log.info("Created rule repository %s from config rules", repository.path)
            except PersistenceError as exc:
                log.warning("Could not create rule repository %s: %s", repository.path, exc)

    cache = DecisionCache(
        capacity=cfg.cache.capacity,
        ttl=cfg.cache.ttl,
        tier=load_secondary_tier(cfg.cache.secondary),
        tier_backoff_seconds=cfg.cache.tier_backoff_seconds,
    )

    transport = udp_query
    if cfg.upstream.source_ip:
        transport = functools.partial(udp_query, source_ip=cfg.upstream.source_ip)
    resolver = UpstreamResolver(
        cfg.upstream.host,
        cfg.upstream.port,
        timeout_ms=cfg.upstream.timeout_ms,
        transport=transport,
    )

    sanitizer = LogSanitizer(cfg.privacy.mode)
    stats = StatsAggregator(
        history_size=cfg.stats.history_size,
        device_activity_size=cfg.stats.device_activity_size,
        top_n=cfg.stats.top_n,
        active_window_seconds=cfg.stats.active_window_seconds,
        history_sanitizer=sanitizer.sanitize,
    )

    broadcaster = QueueBroadcaster(max_queue=cfg.stats.broadcast_queue_size)
    if event_buffer is not None:
        broadcaster.subscribe(event_buffer.record_event)

    return QueryPipeline(
        store=store,
        cache=cache,
        resolver=resolver,
        stats=stats,
        sanitizer=sanitizer,
        broadcaster=broadcaster,
        repository=repository,
        persist=rules_cfg.persist,
        sync_interval_seconds=rules_cfg.sync_interval_seconds,
        sweep_interval_seconds=cfg.stats.sweep_interval_seconds,
    )


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the DNS filter.
    Parses arguments, loads configuration, builds the pipeline and serves
    until SIGTERM/SIGINT.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code (0 on clean shutdown, 1 on startup failure, 2 after
        SIGTERM/SIGINT).

    Example use:
        CLI:
            dnsguard --config config.yaml -v UPSTREAM=1.1.1.1
    """
    parser = argparse.ArgumentParser(description="Filtering DNS proxy with per-device statistics")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument(
        "-v",
        "--var",
        dest="variables",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Set a config variable (overrides config and DNSGUARD_* environment)",
    )
    args = parser.parse_args(argv)

    try:
        cfg = parse_config_file(args.config, cli_vars=args.variables)
    except (OSError, ValueError) as exc:
        print(str(exc))
        return 1

    init_logging(cfg.logging.model_dump())
    logger = logging.getLogger("dnsguard.main")
    logger.info("Loaded config from %s", args.config)

    event_buffer = RingBuffer(cfg.webserver.event_buffer_size)
    pipeline = build_pipeline(cfg, event_buffer)

    try:
        udp = DNSServer(cfg.listen.host, cfg.listen.port, pipeline)
        tcp = None
        if cfg.listen.tcp:
            tcp_port = cfg.listen.tcp_port if cfg.listen.tcp_port is not None else cfg.listen.port
            tcp = DNSTCPServer(cfg.listen.host, tcp_port, pipeline)
    except OSError as exc:
        logger.error("Could not bind DNS listener: %s", exc)
        return 1

    pipeline.start()

    shutdown_event = threading.Event()
    exit_code = 0

    def _request_shutdown(reason: str, code: int) -> None:
        nonlocal exit_code
        if shutdown_event.is_set():
            return
        exit_code = code
        logger.info("Received %s, initiating shutdown (exit code=%d)", reason, code)
        shutdown_event.set()

    def _sigterm_handler(_signum, _frame):
        _request_shutdown("SIGTERM", 2)

    def _sigint_handler(_signum, _frame):
        _request_shutdown("SIGINT", 2)

    def _sigusr1_handler(_signum, _frame):
        logger.info("stats %s", format_snapshot_json(pipeline.get_stats()))

    signal.signal(signal.SIGTERM, _sigterm_handler)
    signal.signal(signal.SIGINT, _sigint_handler)
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, _sigusr1_handler)
    else:  # pragma: no cover - platform specific
        logger.warning("Could not install SIGUSR1 handler on this platform")

    threads = [
        threading.Thread(target=udp.serve_forever, name="dnsguard-udp", daemon=True)
    ]
    if tcp is not None:
        threads.append(
            threading.Thread(target=tcp.serve_forever, name="dnsguard-tcp", daemon=True)
        )
    for t in threads:
        t.start()
    logger.info("Listening for DNS on %s:%d", *udp.address)
    if tcp is not None:
        logger.info("Listening for DNS over TCP on %s:%d", *tcp.address)

    web_handle = start_webserver(pipeline, cfg.model_dump(), event_buffer)

    logger.info("Startup Completed")
    try:
        while not shutdown_event.wait(1.0):
            if not all(t.is_alive() for t in threads):
                logger.error("A DNS listener thread exited unexpectedly")
                exit_code = 1
                break
    finally:
        # Stop listeners first so no new queries arrive during teardown.
        udp.stop()
        if tcp is not None:
            tcp.stop()
        for t in threads:
            t.join(timeout=5.0)
        if web_handle is not None:
            logger.info("Stopping webserver")
            web_handle.stop()
        pipeline.stop()
        logger.info("Final stats %s", format_snapshot_json(pipeline.get_stats()))

    return exit_code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

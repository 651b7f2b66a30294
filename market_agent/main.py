from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from market_agent.client import MarketplaceClient
from market_agent.config import AgentSettings, load_settings
from market_agent.errors import ConfigError, TransportError
from market_agent.ledger import EventJournal
from market_agent.orchestrator import build_orchestrator
from market_agent.store import JsonStateStore

logger = logging.getLogger("market_agent")

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
EXIT_CONFIG_ERROR = 2


def configure_logging(*, log_path: Path | None, level: int = logging.INFO) -> None:
    root = logging.getLogger("market_agent")
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    root.addHandler(stream)
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    root.propagate = False


def _client(settings: AgentSettings) -> MarketplaceClient:
    return MarketplaceClient(base_url=settings.base_url, api_key=settings.require_api_key())


def _print_status(store: JsonStateStore) -> None:
    config = store.load_config()
    state = store.load_state()
    print("market-agent status")
    print(f"Running: {'yes' if config.running else 'no'} | Strategy: {config.bid_strategy.value}")
    print(f"Max concurrent: {config.max_concurrent} | Poll: {config.poll_interval:g}s")
    print(
        f"Bids: placed {state.bids_placed} | won {state.bids_won} | rejected {state.bids_rejected}"
        f" | pending {len(state.pending_bids)}"
    )
    print(
        f"Jobs: active {len(state.active_jobs)} | delivered {len(state.delivered_jobs)}"
        f" | paid {len(state.paid_jobs)}"
    )
    print(f"Total earned: {state.total_earnings:.2f} NEAR")
    print(f"Already-bid jobs: {len(state.already_bid_job_ids)} | Cycles: {state.cycle_count}")


def _print_bids(settings: AgentSettings, *, limit: int) -> int:
    res = _client(settings).list_my_bids(limit=limit)
    if res.status != 200:
        print(f"failed to fetch bids (HTTP {res.status})", file=sys.stderr)
        return 1
    print(f"Your bids ({len(res.data)}):")
    for bid in res.data:
        print(f"  [{bid.status:>8}] {bid.amount:.2f} NEAR on job {bid.job_id}")
    return 0


def _print_balance(settings: AgentSettings) -> int:
    res = _client(settings).get_wallet_balance()
    if res.status != 200:
        print(f"failed to fetch balance (HTTP {res.status})", file=sys.stderr)
        return 1
    print(json.dumps(res.data, indent=2, default=str))
    return 0


def _print_events(store: JsonStateStore, *, limit: int, verify: bool, job_id: str | None = None) -> int:
    journal = EventJournal(store.events_path, read_only=True)
    if verify:
        try:
            journal.verify_chain()
        except ValueError as e:
            print(f"journal verification FAILED: {e}", file=sys.stderr)
            return 1
        print(f"journal OK ({len(journal)} events)")
    if job_id is None:
        events = journal.tail(limit)
    else:
        events = journal.for_job(job_id)[-limit:] if limit > 0 else []
    for e in events:
        job = f" job={e.job_id}" if e.job_id else ""
        payload = json.dumps(e.payload, sort_keys=True, default=str) if e.payload else ""
        print(f"{e.ts.isoformat()} #{e.cycle} {e.type.value}{job} {payload}".rstrip())
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="market-agent")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="directory for config.json, state.json, events.jsonl and work/ (default: ./data)",
    )
    parser.add_argument("--env-file", type=Path, default=None, help="dotenv file with credentials")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    start_p = sub.add_parser("start", help="run the bid/work/deliver loop until stopped")
    start_p.add_argument("--once", action="store_true", help="run a single cycle and exit")

    sub.add_parser("status", help="print counters from the saved state")
    sub.add_parser("balance", help="print the marketplace wallet balance")

    bids_p = sub.add_parser("bids", help="list your bids on the marketplace")
    bids_p.add_argument("--limit", type=int, default=50)

    sub.add_parser("reset-bids", help="forget which jobs were already bid on")
    sub.add_parser("stop", help="ask a running agent to stop after its current cycle")

    events_p = sub.add_parser("events", help="print recent journal events")
    events_p.add_argument("--limit", type=int, default=20)
    events_p.add_argument("--verify", action="store_true", help="verify the journal hash chain")
    events_p.add_argument("--job", default=None, help="only events for this job id")

    dash_p = sub.add_parser("dashboard", help="serve the local status dashboard")
    dash_p.add_argument("--port", type=int, default=None, help="port (default: dashboard_port)")
    dash_p.add_argument("--no-browser", action="store_true", help="don't open a browser")

    args = parser.parse_args(argv)

    try:
        settings = load_settings(env_file=args.env_file, data_dir=args.data_dir)
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    store = JsonStateStore(settings.data_dir)
    configure_logging(
        log_path=store.log_path if args.cmd == "start" else None,
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    try:
        if args.cmd == "start":
            orchestrator = build_orchestrator(settings=settings, store=store)
            if not args.once:
                store.set_running(True)
            logger.info("starting market-agent against %s (data dir %s)", settings.base_url, store.data_dir)
            try:
                orchestrator.run(once=args.once)
            except KeyboardInterrupt:
                logger.info("interrupted; state saved")
                store.set_running(False)
            return 0

        if args.cmd == "status":
            _print_status(store)
            return 0

        if args.cmd == "balance":
            return _print_balance(settings)

        if args.cmd == "bids":
            return _print_bids(settings, limit=args.limit)

        if args.cmd == "reset-bids":
            state = store.load_state()
            state.reset_bids()
            store.save_state(state)
            print("Bid history cleared; every open job is biddable again next cycle.")
            return 0

        if args.cmd == "stop":
            store.set_running(False)
            print("Stop requested; the agent exits after its current cycle.")
            return 0

        if args.cmd == "events":
            return _print_events(store, limit=args.limit, verify=args.verify, job_id=args.job)

        if args.cmd == "dashboard":
            from market_agent.dashboard.server import run_dashboard

            port = args.port or store.load_config().dashboard_port
            run_dashboard(store=store, port=port, open_browser=not args.no_browser)
            return 0
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except TransportError as e:
        print(f"marketplace unreachable: {e}", file=sys.stderr)
        return 1

    raise AssertionError(f"unhandled command: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())

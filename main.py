import argparse
import logging
import sys
import threading

from hlsrelay.config import ConfigManager
from hlsrelay.errors import HLSRelayError

LOG = logging.getLogger("hlsrelay")


def _setup_logging(level_name):
    level = getattr(logging, str(level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )


def _load_config(args):
    mgr = ConfigManager(args.config) if args.config else ConfigManager()
    return dict(mgr.config)


def cmd_serve(args):
    from hlsrelay.stream_proxy import StreamProxyServer

    config = _load_config(args)
    if args.host:
        config["listen_host"] = args.host
    if args.port is not None:
        config["listen_port"] = args.port
    _setup_logging(config.get("log_level"))

    server = StreamProxyServer(config)
    server.start()
    print(f"PROXY_URL={server.base_url}{server.proxy.proxy_path}?url=")
    sys.stdout.flush()
    server.serve_forever()
    return 0


def cmd_download(args):
    from hlsrelay.downloader import download_episode

    config = _load_config(args)
    if args.concurrency is not None:
        config["download_concurrency"] = args.concurrency
    if args.engine:
        config["remux_engine"] = args.engine
    _setup_logging(config.get("log_level"))

    cancel = threading.Event()
    last = {"index": -1}

    def on_progress(index, pct, total):
        if pct == 100 and index > last["index"]:
            last["index"] = index
            print(f"\rsegment {index + 1}/{total}", end="", flush=True)

    outcome = {}

    def run():
        try:
            outcome["report"] = download_episode(
                args.manifest_url,
                args.name,
                on_progress=on_progress,
                config=config,
                output_dir=args.output_dir,
                cancel_event=cancel,
            )
        except Exception as e:
            outcome["error"] = e

    # KeyboardInterrupt is only raised in the main thread; it must see the
    # download still running to cancel it.
    worker = threading.Thread(target=run, name="download", daemon=True)
    try:
        worker.start()
        while worker.is_alive():
            worker.join(0.5)
    except KeyboardInterrupt:
        cancel.set()
        print()
        LOG.warning("Download interrupted, waiting for in-flight segments")
        if worker.is_alive():
            worker.join()
        return 1

    error = outcome.get("error")
    if isinstance(error, HLSRelayError):
        print()
        LOG.error("Download failed: %s", error)
        return 1
    if error is not None:
        raise error
    report = outcome["report"]

    print()
    print(f"OUTPUT={report.output_path}")
    print(f"SEGMENTS={report.success_count}/{report.total}")
    if report.soft_failure_count:
        print(f"SOFT_FAILURES={report.soft_failure_count}")
    if report.incomplete:
        print("INCOMPLETE=1")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="HLS relay proxy and encrypted episode downloader")
    subparsers = parser.add_subparsers(dest="cmd", required=True)

    serve = subparsers.add_parser("serve", help="Run the same-origin stream proxy")
    serve.add_argument("--config", help="Path to config.json")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    download = subparsers.add_parser("download", help="Download one AES-128 encrypted episode")
    download.add_argument("manifest_url")
    download.add_argument("name")
    download.add_argument("--config", help="Path to config.json")
    download.add_argument("--output-dir")
    download.add_argument("--concurrency", type=int)
    download.add_argument("--engine", choices=["ffmpeg", "concat"])

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        return cmd_serve(args)
    if args.cmd == "download":
        return cmd_download(args)
    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    sys.exit(main())

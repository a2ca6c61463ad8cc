import argparse

from usagewatch.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="usagewatch",
        description="AI assistant usage and quota Prometheus exporter",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address to listen on (default: :9186)",
    )
    parser.add_argument(
        "--scrape.interval",
        dest="scrape_interval",
        type=int,
        default=60,
        help="Interval between fetch rounds in seconds (default: 60)",
    )
    parser.add_argument(
        "--fetch.timeout",
        dest="fetch_timeout",
        type=float,
        default=10.0,
        help="Per provider fetch timeout in seconds (default: 10)",
    )
    parser.add_argument(
        "--cache.dir",
        dest="cache_dir",
        default=None,
        help="Directory to persist the last usage per provider "
        "(default: $USAGEWATCH_CACHE_DIR, in memory if unset)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )

    args = parser.parse_args(argv)
    if args.fetch_timeout <= 0:
        parser.error("--fetch.timeout must be positive")

    config = Config.from_env()
    config.listen_address = args.listen_address
    config.scrape_interval = args.scrape_interval
    config.fetch_timeout = args.fetch_timeout
    if args.cache_dir is not None:
        config.cache_dir = args.cache_dir
    config.log_level = args.log_level
    config.log_format = args.log_format
    return config

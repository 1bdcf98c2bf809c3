import argparse

from usagewatch.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="usagewatch",
        description="claude.ai session and weekly quota monitor",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address for the metrics endpoint, empty to disable (default: :9186)",
    )
    parser.add_argument(
        "--poll.interval",
        dest="poll_interval",
        type=int,
        default=60,
        help="Base poll interval in seconds (default: 60)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--state.file",
        dest="state_file",
        default=None,
        help="Path of the persisted state file (default: $USAGEWATCH_STATE_FILE "
        "or ~/.config/usagewatch/state.json)",
    )

    args = parser.parse_args(argv)
    if args.poll_interval <= 0:
        parser.error("--poll.interval must be positive")

    config = Config.from_env()
    config.listen_address = args.listen_address
    config.poll_interval = args.poll_interval
    config.log_level = args.log_level
    if args.state_file:
        config.state_file = args.state_file
    return config

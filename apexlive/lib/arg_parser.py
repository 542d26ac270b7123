import argparse

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Replay OpenF1 sessions in the terminal")

    parser.add_argument(
        "-y", "--year",
        type=int,
        default=2025,
        help="Year to use (default: 2025)"
    )

    parser.add_argument(
        "--list-sessions",
        action="store_true",
        help="List the sessions of the year and exit"
    )

    parser.add_argument(
        "--session",
        type=int,
        default=None,
        help="OpenF1 session key (default: race of the latest meeting)"
    )

    parser.add_argument(
        "-d", "--driver",
        type=str,
        default=None,
        help="Driver number to track (default: first driver of the session)"
    )

    parser.add_argument(
        "-s", "--speed",
        type=float,
        default=1,
        help="Playback speed (default: 1)"
    )

    parser.add_argument(
        "--live",
        action="store_true",
        help="Start at the live head of a running session"
    )

    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many wall-clock seconds (default: until the session ends)"
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="YAML file overriding replay_config.yaml"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging"
    )

    return parser.parse_args(argv)

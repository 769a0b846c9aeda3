"""
CLI for the host monitoring agent.

Usage:
    python -m src.agent.run [options]
"""

import argparse
import os
import sys
from dataclasses import replace

import structlog

from src.core.logger import LOG_LEVELS, setup_logging

from .config import DEFAULT_CONFIG, DEV_CONFIG, RASPBERRY_PI_CONFIG, AgentConfig
from .runner import MonitorAgent

logger = structlog.get_logger(__name__)


# Predefined configurations
PROFILES = {
    "default": DEFAULT_CONFIG,
    "raspberry-pi": RASPBERRY_PI_CONFIG,
    "dev": DEV_CONFIG,
}


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Self-learning host monitoring agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Basic usage (learns for 5 minutes, then detects)
        python -m src.agent.run

        # Observe only, no firewall or shutdown changes
        python -m src.agent.run --dry-run

        # Fast learning on a development machine for 2 minutes
        python -m src.agent.run --profile dev --duration 120

        # Forget the stored baseline and learn again for 10 minutes
        python -m src.agent.run --relearn --learning-period 600
        """,
    )

    parser.add_argument(
        "--profile",
        choices=list(PROFILES.keys()),
        default=os.getenv("MONITOR_PROFILE", "default"),
        help="Predefined configuration (default: default)",
    )

    # Learning
    parser.add_argument(
        "--learning-period",
        type=float,
        help="Learning period in seconds (default: from profile)",
    )
    parser.add_argument(
        "--relearn",
        action="store_true",
        help="Discard the stored baseline and start a new learning period",
    )

    # Sampling
    parser.add_argument(
        "--hosts",
        nargs="*",
        help="Hosts whose latency is monitored (default: from profile or MONITOR_HOSTS)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between sampling cycles (default: from profile)",
    )

    # Persistence
    parser.add_argument(
        "--baseline-path",
        help="Baseline file (default: from profile or MONITOR_BASELINE_PATH)",
    )

    # Actions
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log actions instead of touching the firewall or powering off",
    )
    parser.add_argument(
        "--webhook-url",
        default=os.getenv("ALERT_WEBHOOK_URL"),
        help="POST alerts to this URL in addition to the log",
    )

    # Runtime settings
    parser.add_argument(
        "--duration",
        type=int,
        help="Run for N seconds then stop (default: infinite)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=list(LOG_LEVELS.keys()),
        default=None,
        help="Logging level (default: INFO or LOG_LEVEL env var)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit one JSON object per log line",
    )

    return parser.parse_args(argv)


def build_config(args) -> AgentConfig:
    """Build configuration from the profile, the environment and arguments"""
    config = AgentConfig.from_env(PROFILES[args.profile])

    monitor = config.monitor
    if args.learning_period is not None:
        monitor = replace(monitor, learning_period_seconds=args.learning_period)

    return replace(
        config,
        monitor=monitor,
        monitored_hosts=args.hosts if args.hosts is not None else config.monitored_hosts,
        update_interval=args.interval if args.interval is not None else config.update_interval,
        baseline_path=args.baseline_path or config.baseline_path,
        webhook_url=args.webhook_url or config.webhook_url,
        dry_run=args.dry_run or config.dry_run,
        log_level=args.log_level or config.log_level,
        json_logs=args.json_logs or config.json_logs,
    )


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)

    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    log_level = LOG_LEVELS.get(config.log_level, LOG_LEVELS["INFO"])
    setup_logging(level=log_level, json_logs=config.json_logs)

    logger.info(
        "Starting monitoring agent",
        profile=args.profile,
        baseline_path=config.baseline_path,
        dry_run=config.dry_run,
    )

    try:
        agent = MonitorAgent.from_config(config)
        if args.relearn:
            agent.service.begin_learning_period()

        agent.run(duration_seconds=args.duration)

        logger.info("Agent completed successfully")
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("Agent failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())

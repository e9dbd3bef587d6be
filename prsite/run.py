"""
prsite: preview sites for pull requests.

Listens for GitHub webhooks; on pull_request opened/reopened/synchronize
it (re)builds a site for the PR on its own port, on closed it tears the
site down. Status is reported as PR comments, and `@<bot> <verb>`
comments act as commands.
"""

import argparse
import logging
import sys
from pathlib import Path

from prsite.app import Application
from prsite.config import AppConfig, load_config
from prsite.logging import PrsiteLogging


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="prsite",
        description="prsite - preview sites for pull requests",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only load and validate config, then exit",
    )
    return parser.parse_args(argv)


def run(config: AppConfig) -> None:
    """Build the application, resolve the bot identity, then serve."""
    PrsiteLogging(config.logging).setup()
    log = logging.getLogger("prsite.run")
    app = Application(config)
    app.resolve_identity()
    log.info(
        "prsite started | ports=%s-%s | link_domain=%s | pr_delay_ms=%s",
        config.ports.min_port,
        config.ports.max_port,
        config.instances.link_domain,
        config.instances.pr_delay_ms,
    )
    app.serve()


def main(argv: list[str] | None = None) -> int:
    """Entry point for prsite."""
    args = parse_args(argv)
    config_path = args.config
    if not config_path.is_file() and config_path == Path("config.yaml"):
        if Path("config.example.yaml").is_file():
            config_path = Path("config.example.yaml")
            logging.basicConfig(level=logging.INFO)
            logging.getLogger("prsite.run").warning("config.yaml not found, using config.example.yaml")

    config = load_config(config_path)

    if args.check:
        print("Config OK:", f"ports {config.ports.min_port}-{config.ports.max_port}", config.instances.link_domain)
        return 0

    try:
        run(config)
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("prsite.run").exception("Fatal error: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

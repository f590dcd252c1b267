"""
Command line entry point.

    outpost-forms [--base-dir DIR] serve
    outpost-forms [--base-dir DIR] open --addon_name SCCoPIFO --MSG_FILENAME ...
    outpost-forms [--base-dir DIR] dry-run
    outpost-forms [--base-dir DIR] stop

The host's launcher runs `open` with its own arguments; everything after
the verb is passed to the daemon as is.
"""

import argparse
import asyncio
import logging
import sys
import webbrowser
from pathlib import Path

from outpost_forms import __version__
from outpost_forms.app.client import DiscoveryClient
from outpost_forms.app.daemon import FormsDaemon
from outpost_forms.core.logging import configure_logging
from outpost_forms.core.settings import DaemonConfig, load_config
from outpost_forms.domain.errors import FormsError
from outpost_forms.domain.schemas import DaemonPaths

logger = logging.getLogger(__name__)

VERBS = ("serve", "open", "dry-run", "stop")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="outpost-forms",
        description="Local forms daemon between Outpost and PackItForms",
    )
    parser.add_argument(
        "--base-dir",
        type=Path,
        default=Path.cwd(),
        help="add-on folder (default: current directory)",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("verb", choices=VERBS)
    return parser


def split_argv(argv: list[str]) -> tuple[list[str], list[str]]:
    """(options and verb, arguments after the verb)"""
    for i, token in enumerate(argv):
        if token in VERBS:
            return argv[: i + 1], argv[i + 1 :]
    return argv, []


async def _open(client: DiscoveryClient, args: list[str], browse: bool) -> None:
    page_url = await client.open_message(args)
    if page_url and browse:
        logger.info(f"browse {page_url}")
        webbrowser.open(page_url)


def main(argv: list[str] | None = None) -> int:
    head, rest = split_argv(sys.argv[1:] if argv is None else argv)
    namespace = build_parser().parse_args(head)
    paths = DaemonPaths(namespace.base_dir.resolve())
    config = DaemonConfig.from_config(load_config(paths.config_file))

    if namespace.verb == "serve":
        return asyncio.run(FormsDaemon(paths, config).run())

    configure_logging(paths.log_dir, namespace.verb)
    client = DiscoveryClient(paths, config)
    try:
        if namespace.verb == "open":
            asyncio.run(_open(client, rest, browse=True))
        elif namespace.verb == "dry-run":
            asyncio.run(_open(client, [], browse=False))
        else:
            asyncio.run(client.stop_servers())
    except FormsError as e:
        logger.error(f"{namespace.verb} failed: {e.to_dict()}")
        print(f"outpost-forms {namespace.verb}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Main CLI entry point for cargo-debstatus."""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from rich.console import Console

from . import __version__
from .commands.stats import show_stats
from .formatters import OutputFormatter, Pattern, PatternError, RenderOptions, render
from .graph_builder import BuildOptions, PackageSpecError, build
from .models import Graph
from .oracle import OracleConfig, create_oracle
from .parsers import (CargoMetadataParser, ResolverError, load_metadata_file, query_platform,
                      run_cargo_metadata)
from .propagator import compute_statuses
from .version_parser import ParseError

logger = logging.getLogger(__name__)

SUBCOMMANDS = ("tree", "stats")

LOG_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def log_level_for(verbose: int = 0, log_level: Optional[str] = None, quiet: bool = False) -> int:
    """Pick the logging level from `--loglevel`, `-q` and the `-v` count, in that order."""
    if log_level:
        return LOG_LEVELS[log_level.upper()]
    if quiet:
        return logging.ERROR
    if verbose >= 2:
        return logging.DEBUG
    if verbose:
        return logging.INFO
    return logging.WARNING


def setup_logging(verbose: int = 0, log_level: Optional[str] = None, quiet: bool = False):
    """Configure logging based on verbosity flags."""
    logging.basicConfig(
        level=log_level_for(verbose, log_level, quiet),
        format='%(levelname)s: %(message)s'
    )


def make_console(color: str) -> Console:
    if color == "never":
        return Console(color_system=None, force_terminal=False, highlight=False, soft_wrap=True)
    if color == "always":
        return Console(force_terminal=True, highlight=False, soft_wrap=True)
    return Console(highlight=False, soft_wrap=True)


def split_list(values: Optional[List[str]]) -> List[str]:
    """Flatten repeated, comma or space separated option values."""
    result = []
    for value in values or []:
        result.extend(v for v in value.replace(",", " ").split() if v)
    return result


def load_graph(args) -> Graph:
    """Run (or read) cargo metadata and build the dependency graph."""
    features = split_list(args.features)
    if args.metadata == '-':
        metadata = json.load(sys.stdin)
    elif args.metadata:
        metadata = load_metadata_file(args.metadata)
    else:
        metadata = run_cargo_metadata(
            manifest_path=args.manifest_path,
            features=features,
            all_features=args.all_features,
            no_default_features=args.no_default_features,
            frozen=args.frozen,
            locked=args.locked,
            offline=args.offline,
        )
    resolved = CargoMetadataParser.parse(metadata)

    platform = None if args.all_targets else query_platform(args.target)
    options = BuildOptions(
        features=features,
        all_features=args.all_features,
        no_default_features=args.no_default_features,
        include_dev=not args.no_dev_dependencies,
        platform=platform,
        include=split_list(args.include),
        exclude=split_list(args.exclude),
        collapse_workspace=args.collapse_workspace,
    )
    return build(resolved.packages, resolved.edges, resolved.root, options)


def annotate(graph: Graph, args):
    """Look up every package concurrently, then compute the status map."""
    config = OracleConfig(suite=args.suite, concurrency=args.concurrency, timeout=args.timeout)
    oracle, client = create_oracle(config)
    with client:
        oracle.prefetch(graph.nodes)
        return compute_statuses(graph, oracle)


def handle_tree(args):
    """Handle the 'tree' subcommand."""
    setup_logging(args.verbose, args.loglevel, args.quiet)

    try:
        pattern = Pattern(args.format)
        graph = load_graph(args)
        statuses = annotate(graph, args)

        options = RenderOptions(
            invert=args.invert,
            depth=args.depth,
            include_dev=not args.no_dev_dependencies,
            focus=args.package,
            no_dedupe=args.all,
            charset=args.charset,
            prefix=args.prefix,
            only_blocking=args.filter == 'missing',
            duplicates=args.duplicates,
        )
        lines = list(render(graph, statuses, options))
    except (ResolverError, ParseError, PackageSpecError, PatternError) as e:
        logger.error(f"{e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        for line in lines:
            print(OutputFormatter.format_json(line))
        return 0

    console = make_console(args.color)
    tree = 0
    for line in lines:
        if line.tree != tree:
            console.print()
            tree = line.tree
        console.print(OutputFormatter.format_human(line, pattern, show_blocked_by=args.why))
    return 0


def handle_stats(args):
    """Handle the 'stats' subcommand."""
    setup_logging(args.verbose, args.loglevel, args.quiet)

    try:
        graph = load_graph(args)
        statuses = annotate(graph, args)
    except (ResolverError, ParseError) as e:
        logger.error(f"{e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    show_stats(graph, statuses)
    return 0


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--manifest-path', metavar='PATH',
                        help='Path to Cargo.toml')
    parser.add_argument('--metadata', metavar='FILE',
                        help='Read `cargo metadata` JSON from FILE (- for stdin) instead of running cargo')
    parser.add_argument('-F', '--features', action='append', metavar='FEATURES',
                        help='Space or comma separated list of features to activate')
    parser.add_argument('--all-features', action='store_true',
                        help='Activate all available features')
    parser.add_argument('--no-default-features', action='store_true',
                        help='Do not activate the `default` feature')
    parser.add_argument('--no-dev-dependencies', action='store_true',
                        help='Skip dev dependencies')
    parser.add_argument('--target', metavar='TRIPLE',
                        help='Set the target triple (default: host)')
    parser.add_argument('--all-targets', action='store_true',
                        help='Return dependencies for all targets')
    parser.add_argument('--include', action='append', metavar='PACKAGES',
                        help='Comma-separated list of workspace members to include in output')
    parser.add_argument('--exclude', action='append', metavar='PACKAGES',
                        help='Comma-separated list of workspace members to exclude from output')
    parser.add_argument('-w', '--collapse-workspace', action='store_true',
                        help='Hide the trees of workspace members which are dependencies of other members')
    parser.add_argument('--frozen', action='store_true', help='Require Cargo.lock and cache are up to date')
    parser.add_argument('--locked', action='store_true', help='Require Cargo.lock is up to date')
    parser.add_argument('--offline', action='store_true', help='Run without accessing the network')
    parser.add_argument('--suite', default='sid',
                        help='Debian suite to check against. Default: sid')
    parser.add_argument('-j', '--concurrency', type=int, default=24,
                        help='Number of concurrent archive lookups. Default: 24')
    parser.add_argument('--timeout', type=float, default=30,
                        help='Archive request timeout in seconds. Default: 30')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Verbose output (-vv for debug output)')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Only log errors')
    parser.add_argument('--loglevel',
                        choices=['TRACE', 'DEBUG', 'INFO', 'WARN', 'ERROR'],
                        help='Set log level')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cargo-debstatus',
        description='Display the Debian packaging status of a Rust dependency tree'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Subcommands')

    # Tree command
    tree_parser = subparsers.add_parser('tree', help='Print the annotated dependency tree (default)')
    add_common_arguments(tree_parser)
    tree_parser.add_argument('-p', '--package', metavar='SPEC',
                             help='Package to start the tree at (name or name:version)')
    tree_parser.add_argument('-i', '--invert', action='store_true',
                             help='Invert the tree direction')
    tree_parser.add_argument('--depth', type=int, metavar='N',
                             help='Maximum display depth of the tree')
    tree_parser.add_argument('-a', '--all', action='store_true',
                             help="Don't truncate dependencies that have already been displayed or are packaged")
    tree_parser.add_argument('-d', '--duplicates', action='store_true',
                             help='Show only dependencies which come in multiple versions (implies -i)')
    tree_parser.add_argument('--filter', default='all', choices=['all', 'missing'],
                             help='Only show dependencies that block packaging with `missing`. Default: all')
    tree_parser.add_argument('--charset', default='utf8', choices=['utf8', 'ascii'],
                             help='Character set to use in output. Default: utf8')
    tree_parser.add_argument('--prefix', default='indent', choices=['indent', 'depth', 'none'],
                             help='Line prefix style. Default: indent')
    tree_parser.add_argument('--no-indent', dest='prefix', action='store_const', const='none',
                             help='Same as --prefix none')
    tree_parser.add_argument('--prefix-depth', dest='prefix', action='store_const', const='depth',
                             help='Same as --prefix depth')
    tree_parser.add_argument('-f', '--format', default='{p}', metavar='FORMAT',
                             help='Format string used for printing dependencies ({p}, {l}, {r}). Default: {p}')
    tree_parser.add_argument('--json', action='store_true',
                             help='Print one JSON object per line')
    tree_parser.add_argument('--color', default='auto', choices=['auto', 'always', 'never'],
                             help='Coloring. Default: auto')
    tree_parser.add_argument('--why', action='store_true',
                             help='Show which dependency each blocking package waits on')
    tree_parser.set_defaults(func=handle_tree)

    # Stats command
    stats_parser = subparsers.add_parser('stats', help='Show packaging status counts')
    add_common_arguments(stats_parser)
    stats_parser.set_defaults(func=handle_stats)

    return parser


def normalize_argv(argv: List[str]) -> List[str]:
    """Accept `cargo debstatus ...` invocations and default to the tree subcommand."""
    if argv and argv[0] == 'debstatus':
        argv = argv[1:]
    if not argv or argv[0] not in SUBCOMMANDS + ('-h', '--help', '--version'):
        argv = ['tree'] + argv
    return argv


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(normalize_argv(list(sys.argv[1:] if argv is None else argv)))

    # Execute command
    try:
        return args.func(args)
    except KeyboardInterrupt:
        # Lookup threads blocked on the network would be joined at interpreter exit
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(130)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())

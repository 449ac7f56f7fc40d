#!/usr/bin/env python3
"""
Discovery network crawler CLI.

Crawls a discovery network through a pluggable protocol client, records one
CSV row per measured node, and turns finished crawls into a SQLite database
and an interactive map.
"""

import argparse
import asyncio
import importlib
import logging
import signal
import sys
from typing import Callable, List, Optional

from .config import (
    DEFAULT_CLIENT,
    DEFAULT_LISTEN_ADDRESS,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_PENDING,
    DEFAULT_PERSISTING_FILE,
    DEFAULT_QUERY_INTERVAL,
    DEFAULT_QUERY_TIMEOUT,
    DEFAULT_UDP_PORT,
    CrawlConfig,
    load_bootnodes,
    parse_log_level,
)
from .crawler import QUERY_ERRORS, crawl
from .database import DEFAULT_DB_PATH, MeasurementsDatabase
from .enr import EnrError, decode_enr
from .node import NodeRecord, ProtocolClient
from .peerstore import PersistenceError

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def setup_logging(level: str = DEFAULT_LOG_LEVEL):
    """Configure root logging once for the whole process."""
    logging.basicConfig(level=parse_log_level(level), format=LOG_FORMAT)


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                          ARGUMENT PARSING                                   ║
# ╚══════════════════════════════════════════════════════════════════════════╝

def enr_target(value: str) -> NodeRecord:
    """argparse type for ENR arguments that must carry an address."""
    try:
        record = decode_enr(value)
    except EnrError as e:
        raise argparse.ArgumentTypeError(f"Invalid ENR: {e}")
    if record.address is None:
        raise argparse.ArgumentTypeError("ENR without address")
    return record


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='discv5-crawler',
        description='Crawl a discovery network and record per-peer measurements',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Crawl forever, writing peerstore.csv:
  discv5-crawler --client my_discv5.client:create_client --bootnode enr:-Ku4Q...

  # Bootnodes from a published list:
  discv5-crawler --client my_discv5.client:create_client \\
      --bootnode https://example.org/bootstrap_nodes.yaml crawl --persisting-file run1.csv

  # Offline analysis of a finished crawl:
  discv5-crawler import run1.csv
  discv5-crawler geolocate --geoip-db geoip/GeoLite2-City.mmdb
  discv5-crawler map --output peers_map.html

Environment Variables:
  DCRAWL_CLIENT           - Protocol client factory (module:callable)
  DCRAWL_LOG_LEVEL        - Log level (default: INFO)
  DCRAWL_PERSISTING_FILE  - CSV output file (default: peerstore.csv)
  DCRAWL_DB               - SQLite database for offline analysis (default: crawls.db)
  DCRAWL_GEOIP_DB         - GeoLite2-City.mmdb path
        """
    )

    parser.add_argument('--log-level', default=DEFAULT_LOG_LEVEL,
                        help=f'Sets the log level (default: {DEFAULT_LOG_LEVEL})')
    parser.add_argument('--client', default=DEFAULT_CLIENT,
                        help='Protocol client factory as module:callable')
    parser.add_argument('--listen-address', default=DEFAULT_LISTEN_ADDRESS,
                        help=f'Listening address for discovery traffic (default: {DEFAULT_LISTEN_ADDRESS})')
    parser.add_argument('--udp-port', type=int, default=DEFAULT_UDP_PORT,
                        help=f'UDP listening port (default: {DEFAULT_UDP_PORT})')
    parser.add_argument('--bootnode', action='append', default=[],
                        help='ENR, file or URL of bootstrap nodes. Argument may be repeated')
    parser.add_argument('--enr-auto-update', action='store_true',
                        help='Let the client update its own ENR from the address peers report')

    subparsers = parser.add_subparsers(dest='command')

    crawl_parser = subparsers.add_parser('crawl', help='Crawl the network (default command)')
    crawl_parser.add_argument('--persisting-file', default=DEFAULT_PERSISTING_FILE,
                              help=f'File where discovered records are kept (default: {DEFAULT_PERSISTING_FILE})')
    crawl_parser.add_argument('--query-interval', type=float, default=DEFAULT_QUERY_INTERVAL,
                              help=f'Seconds between two dispatched queries (default: {DEFAULT_QUERY_INTERVAL})')
    crawl_parser.add_argument('--max-pending', type=int, default=DEFAULT_MAX_PENDING,
                              help=f'Maximum in-flight queries, 0 for no cap (default: {DEFAULT_MAX_PENDING})')
    crawl_parser.add_argument('--query-timeout', type=float, default=DEFAULT_QUERY_TIMEOUT,
                              help=f'Seconds before a query is abandoned, 0 to disable (default: {DEFAULT_QUERY_TIMEOUT:g})')

    ping_parser = subparsers.add_parser('ping', help='Send a ping message to a node')
    ping_parser.add_argument('node', type=enr_target, help='ENR URI of the node')

    findnode_parser = subparsers.add_parser('findnode', help='Send a findNode message to a node')
    findnode_parser.add_argument('--distance', type=int, default=255,
                                 help='Distance parameter for the findNode message (default: 255)')
    findnode_parser.add_argument('node', type=enr_target, help='ENR URI of the node')

    talkreq_parser = subparsers.add_parser('talkreq', help='Send a talkReq message to a node')
    talkreq_parser.add_argument('node', type=enr_target, help='ENR URI of the node')

    import_parser = subparsers.add_parser('import', help='Import a peer store CSV into SQLite')
    import_parser.add_argument('file', help='Peer store CSV file')
    import_parser.add_argument('--db', default=DEFAULT_DB_PATH,
                               help=f'SQLite database file (default: {DEFAULT_DB_PATH})')

    geolocate_parser = subparsers.add_parser('geolocate', help='Geolocate the latest imported crawl')
    geolocate_parser.add_argument('--db', default=DEFAULT_DB_PATH,
                                  help=f'SQLite database file (default: {DEFAULT_DB_PATH})')
    geolocate_parser.add_argument('--geoip-db', default=None,
                                  help='Path to GeoLite2-City.mmdb')

    map_parser = subparsers.add_parser('map', help='Render the latest imported crawl on a map')
    map_parser.add_argument('--db', default=DEFAULT_DB_PATH,
                            help=f'SQLite database file (default: {DEFAULT_DB_PATH})')
    map_parser.add_argument('--output', default='peers_map.html',
                            help='Output HTML map file (default: peers_map.html)')
    map_parser.add_argument('--no-heatmap', action='store_true',
                            help='Disable heatmap layer (default: heatmap enabled)')

    return parser


def build_config(args: argparse.Namespace) -> CrawlConfig:
    return CrawlConfig(
        persisting_file=getattr(args, 'persisting_file', DEFAULT_PERSISTING_FILE),
        query_interval=getattr(args, 'query_interval', DEFAULT_QUERY_INTERVAL),
        max_pending=getattr(args, 'max_pending', DEFAULT_MAX_PENDING),
        query_timeout=getattr(args, 'query_timeout', DEFAULT_QUERY_TIMEOUT),
        listen_address=args.listen_address,
        udp_port=args.udp_port,
        enr_auto_update=args.enr_auto_update,
    )


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                          PROTOCOL CLIENT                                    ║
# ╚══════════════════════════════════════════════════════════════════════════╝

def load_client_factory(factory_path: str) -> Callable[[CrawlConfig], ProtocolClient]:
    """Resolve 'package.module:callable' to the factory it names."""
    module_name, _, attr_path = factory_path.partition(':')
    if not module_name or not attr_path:
        raise ValueError(f"Client factory must look like module:callable, got '{factory_path}'")

    factory = importlib.import_module(module_name)
    for attr in attr_path.split('.'):
        factory = getattr(factory, attr)

    if not callable(factory):
        raise TypeError(f"{factory_path} is not callable")
    return factory


def start_client(factory_path: Optional[str], config: CrawlConfig) -> Optional[ProtocolClient]:
    """Create and open the protocol client; None (after logging) on failure."""
    if not factory_path:
        logger.critical("No protocol client configured: pass --client module:callable "
                        "or set DCRAWL_CLIENT")
        return None

    try:
        client = load_client_factory(factory_path)(config)
        client.open()
    except Exception as e:
        logger.critical(f"Could not start protocol client {factory_path}: {e}")
        return None

    logger.info(f"Protocol client {factory_path} listening on {config.listen_address}:{config.udp_port}")
    return client


# ╔══════════════════════════════════════════════════════════════════════════╗
# ║                               COMMANDS                                      ║
# ╚══════════════════════════════════════════════════════════════════════════╝

async def _crawl_until_stopped(client: ProtocolClient, config: CrawlConfig):
    task = asyncio.current_task()
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, task.cancel)
    except (NotImplementedError, RuntimeError):
        # No signal handlers on this platform/thread; SIGINT still works
        pass
    await crawl(client, config)


def run_crawl(client: ProtocolClient, config: CrawlConfig) -> int:
    """Run the crawl until interrupted; returns the process exit code."""
    try:
        asyncio.run(_crawl_until_stopped(client, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user, shutting down")
    except asyncio.CancelledError:
        logger.info("Crawl cancelled, shutting down")
    except PersistenceError as e:
        logger.critical(f"{e}")
        return 1
    return 0


def run_diagnostic(command: str, client: ProtocolClient, args: argparse.Namespace) -> int:
    node = client.node_from_record(args.node)

    if command == 'ping':
        try:
            pong = asyncio.run(client.ping(node))
        except QUERY_ERRORS:
            print("No Pong message returned")
            return 1
        print(pong)

    elif command == 'findnode':
        try:
            nodes = asyncio.run(client.find_node(node, [args.distance]))
        except QUERY_ERRORS:
            print("No Nodes message returned")
            return 1
        print("Received valid records:")
        for found in nodes:
            print(f"{found.node_id.hex()} - {found}")

    elif command == 'talkreq':
        try:
            response = asyncio.run(client.talk_req(node, b'', b''))
        except QUERY_ERRORS:
            print("No Talk Response message returned")
            return 1
        print(response.hex() if isinstance(response, bytes) else response)

    return 0


def run_import(args: argparse.Namespace) -> int:
    db = MeasurementsDatabase(args.db)
    try:
        crawl_id = db.import_peerstore(args.file)
    except (OSError, ValueError) as e:
        logger.error(f"Could not import {args.file}: {e}")
        return 1

    crawl_info = db.get_latest_crawl()
    print(f"\n{'=' * 60}")
    print(f"Imported {args.file} as crawl {crawl_id}")
    print(f"Measurements: {crawl_info['total_rows']}")
    print(f"Cycles: {crawl_info['total_cycles']}")
    print(f"Unique nodes: {crawl_info['unique_nodes']}")
    print("\nClients:")
    for client_name, count in list(db.get_client_distribution(crawl_id).items())[:10]:
        print(f"  {client_name}: {count} nodes")
    print(f"{'=' * 60}")
    return 0


def run_geolocate(args: argparse.Namespace) -> int:
    from .geolocate import MaxMindGeolocator

    db = MeasurementsDatabase(args.db)
    crawl_info = db.get_latest_crawl()
    if not crawl_info:
        logger.error("No crawl imported yet; run the import command first")
        return 1

    try:
        geolocator = MaxMindGeolocator(args.geoip_db)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1

    with geolocator:
        updated = geolocator.geolocate_crawl(db, crawl_info['id'])
    print(f"Geolocated {updated} measurements of crawl {crawl_info['id']}")
    return 0


def run_map(args: argparse.Namespace) -> int:
    from .visualize import create_measurements_map

    db = MeasurementsDatabase(args.db)
    crawl_info = db.get_latest_crawl()
    if not crawl_info:
        logger.error("No crawl imported yet; run the import command first")
        return 1

    output = create_measurements_map(db.get_measurements(crawl_info['id']), args.output,
                                     enable_heatmap=not args.no_heatmap)
    if output is None:
        return 1
    print(f"Map saved to: {output}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args(argv + ['crawl'])

    try:
        setup_logging(args.log_level)
    except ValueError as e:
        parser.error(str(e))

    if args.command == 'import':
        return run_import(args)
    if args.command == 'geolocate':
        return run_geolocate(args)
    if args.command == 'map':
        return run_map(args)

    try:
        config = build_config(args)
        config.bootnodes = load_bootnodes(args.bootnode)
    except Exception as e:
        logger.critical(f"Invalid configuration: {e}")
        return 1

    client = start_client(args.client, config)
    if client is None:
        return 1

    try:
        if args.command == 'crawl':
            return run_crawl(client, config)
        return run_diagnostic(args.command, client, args)
    finally:
        client.close()


if __name__ == '__main__':
    sys.exit(main())

"""
SQLite store for offline analysis of finished crawls.

Each imported peer store file becomes one crawl; its rows land in the
measurements table, which also carries location columns filled in later by
the geolocator.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Dict, List, Optional

from .peerstore import read_peerstore

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.environ.get('DCRAWL_DB', 'crawls.db')

LOCATION_FIELDS = ('latitude', 'longitude', 'country', 'country_code', 'city', 'asn', 'asn_org')


def split_address(address: str):
    """Split 'ip:port' / '[ip6]:port' into (ip, port); (None, None) when empty."""
    if not address:
        return None, None
    host, _, port = address.rpartition(':')
    return host.strip('[]'), int(port)


class MeasurementsDatabase:
    """Database for storing and querying crawl measurements."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS crawls (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_file TEXT,
                    total_rows INTEGER,
                    total_cycles INTEGER,
                    unique_nodes INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS measurements (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    crawl_id INTEGER,
                    cycle INTEGER,
                    node_id TEXT NOT NULL,
                    ip TEXT,
                    port INTEGER,
                    rtt_min INTEGER,
                    rtt_avg INTEGER,
                    bw_max_mbps REAL,
                    bw_avg_mbps REAL,
                    pubkey TEXT,
                    fork_digest TEXT,
                    attnets TEXT,
                    attnets_number INTEGER,
                    client TEXT,
                    latitude REAL,
                    longitude REAL,
                    country TEXT,
                    country_code TEXT,
                    city TEXT,
                    asn TEXT,
                    asn_org TEXT,
                    FOREIGN KEY (crawl_id) REFERENCES crawls(id)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_measurements_crawl
                ON measurements(crawl_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_measurements_node
                ON measurements(node_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_measurements_ip
                ON measurements(ip)
            """)

            logger.info(f"Database initialized at {self.db_path}")

    def import_peerstore(self, path: str) -> int:
        """Import a peer store CSV as a new crawl.

        Args:
            path: CSV file written by the crawler

        Returns:
            crawl_id: ID of the created crawl
        """
        rows = list(read_peerstore(path, skip_invalid=True))

        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                INSERT INTO crawls (source_file, total_rows, total_cycles, unique_nodes)
                VALUES (?, ?, ?, ?)
            """, (
                os.path.abspath(path),
                len(rows),
                len({row.cycle for row in rows}),
                len({row.node_id for row in rows}),
            ))

            crawl_id = cursor.lastrowid

            for row in rows:
                ip, port = split_address(row.address)
                cursor.execute("""
                    INSERT INTO measurements (
                        crawl_id, cycle, node_id, ip, port, rtt_min, rtt_avg,
                        bw_max_mbps, bw_avg_mbps, pubkey, fork_digest, attnets,
                        attnets_number, client
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    crawl_id, row.cycle, row.node_id, ip, port,
                    row.rtt_min, row.rtt_avg, row.bw_max_mbps, row.bw_avg_mbps,
                    row.pubkey, row.fork_digest, row.attnets, row.attnets_number,
                    row.client,
                ))

            logger.info(f"Imported crawl {crawl_id} with {len(rows)} measurements from {path}")
            return crawl_id

    def get_latest_crawl(self) -> Optional[Dict]:
        """Most recently imported crawl metadata, or None."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM crawls ORDER BY id DESC LIMIT 1")
            row = cursor.fetchone()
            if not row:
                logger.warning("No crawls found in database")
                return None
            return dict(row)

    def get_measurements(self, crawl_id: int, cycle: Optional[int] = None) -> List[Dict]:
        """Measurements of one crawl, optionally restricted to a single cycle."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            query = "SELECT * FROM measurements WHERE crawl_id = ?"
            params = [crawl_id]
            if cycle is not None:
                query += " AND cycle = ?"
                params.append(cycle)
            query += " ORDER BY cycle, id"

            cursor.execute(query, params)
            measurements = []
            for row in cursor.fetchall():
                measurement = dict(row)
                measurement.pop('crawl_id', None)
                measurements.append(measurement)
            return measurements

    def list_crawls(self) -> List[Dict]:
        """List all imported crawls."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM crawls ORDER BY id DESC")
            return [dict(row) for row in cursor.fetchall()]

    def get_client_distribution(self, crawl_id: int) -> Dict[str, int]:
        """Unique nodes per declared client name (empty name reported as 'unknown')."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT client, COUNT(DISTINCT node_id) as count
                FROM measurements
                WHERE crawl_id = ?
                GROUP BY client
                ORDER BY count DESC
            """, (crawl_id,))
            distribution = {}
            for row in cursor.fetchall():
                name = row['client'] or 'unknown'
                distribution[name] = distribution.get(name, 0) + row['count']
            return distribution

    def get_stats(self) -> Dict:
        """Get database statistics."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("SELECT COUNT(*) as count FROM crawls")
            crawl_count = cursor.fetchone()['count']

            cursor.execute("SELECT COUNT(*) as count FROM measurements")
            measurement_count = cursor.fetchone()['count']

            cursor.execute("SELECT COUNT(DISTINCT node_id) as count FROM measurements")
            node_count = cursor.fetchone()['count']

            cursor.execute("""
                SELECT COUNT(DISTINCT country_code) as count
                FROM measurements
                WHERE country_code IS NOT NULL
            """)
            country_count = cursor.fetchone()['count']

            return {
                'total_crawls': crawl_count,
                'total_measurements': measurement_count,
                'unique_nodes': node_count,
                'countries_represented': country_count,
            }

    def update_locations(self, crawl_id: int, locations: Dict[str, Dict]) -> int:
        """Store location data for every measurement of a crawl, keyed by IP.

        Returns:
            Number of updated measurement rows
        """
        updated = 0
        with self._get_connection() as conn:
            cursor = conn.cursor()
            for ip, location in locations.items():
                cursor.execute(f"""
                    UPDATE measurements
                    SET {', '.join(f'{name} = ?' for name in LOCATION_FIELDS)}
                    WHERE crawl_id = ? AND ip = ?
                """, [location.get(name) for name in LOCATION_FIELDS] + [crawl_id, ip])
                updated += cursor.rowcount

        logger.info(f"Updated locations of {updated} measurements in crawl {crawl_id}")
        return updated

    def delete_old_crawls(self, keep_latest: int = 5):
        """Delete old crawls, keeping only the most recent ones.

        Args:
            keep_latest: Number of crawls to keep
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                SELECT id FROM crawls
                ORDER BY id DESC
                LIMIT -1 OFFSET ?
            """, (keep_latest,))

            old_ids = [row['id'] for row in cursor.fetchall()]

            if old_ids:
                placeholders = ','.join('?' * len(old_ids))
                cursor.execute(f"DELETE FROM measurements WHERE crawl_id IN ({placeholders})", old_ids)
                cursor.execute(f"DELETE FROM crawls WHERE id IN ({placeholders})", old_ids)
                logger.info(f"Deleted {len(old_ids)} old crawls")
            else:
                logger.info("No old crawls to delete")

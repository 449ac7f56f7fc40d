"""
Visualize measured peers on an interactive map.
Requires geolocated measurements (see geolocate.py).
"""

import html
import logging
from collections import Counter
from typing import Dict, List, Optional

import folium
from folium.plugins import HeatMap, MarkerCluster

logger = logging.getLogger(__name__)


def latest_per_node(measurements: List[Dict]) -> List[Dict]:
    """Keep the most recent measurement of every node (highest cycle wins)."""
    latest: Dict[str, Dict] = {}
    for m in measurements:
        current = latest.get(m['node_id'])
        if current is None or m['cycle'] >= current['cycle']:
            latest[m['node_id']] = m
    return list(latest.values())


def _popup_html(m: Dict) -> str:
    rows = [
        ('Node', m['node_id'][:16] + '…'),
        ('Address', f"{m.get('ip')}:{m.get('port')}"),
        ('Client', m.get('client') or 'unknown'),
        ('Fork digest', m.get('fork_digest') or ''),
        ('Subnets', m.get('attnets_number', 0)),
        ('RTT min/avg', f"{m.get('rtt_min')} / {m.get('rtt_avg')} ms"),
        ('BW max/avg', f"{m.get('bw_max_mbps')} / {m.get('bw_avg_mbps')} MB/s"),
        ('Location', f"{m.get('city') or 'Unknown'}, {m.get('country') or 'Unknown'}"),
        ('ASN', f"{m.get('asn') or 'Unknown'} {m.get('asn_org') or ''}"),
    ]
    body = ''.join(
        f'<p style="margin: 4px 0;"><strong>{name}:</strong> {html.escape(str(value))}</p>'
        for name, value in rows
    )
    return (
        '<div style="font-family: Arial, sans-serif;">'
        '<h4 style="margin: 0 0 10px 0; color: #1a1a1a;">Discovery Peer</h4>'
        f'{body}</div>'
    )


def create_measurements_map(measurements: List[Dict], output_file: str = 'peers_map.html',
                            enable_heatmap: bool = True) -> Optional[str]:
    """
    Create an interactive map of measured peers.

    Args:
        measurements: Measurement dicts with location columns
        output_file: Output HTML file path
        enable_heatmap: Whether to add heatmap layer (default: True)

    Returns:
        Output path, or None when no measurement has a location
    """
    geolocated = [
        m for m in latest_per_node(measurements)
        if m.get('latitude') is not None and m.get('longitude') is not None
    ]

    if not geolocated:
        logger.error("No measurements with valid location data found!")
        logger.info("Run the geolocate command first to add location data.")
        return None

    logger.info(f"Creating map with {len(geolocated)} geolocated peers...")

    center_lat = sum(m['latitude'] for m in geolocated) / len(geolocated)
    center_lon = sum(m['longitude'] for m in geolocated) / len(geolocated)

    m = folium.Map(location=[center_lat, center_lon], zoom_start=2, tiles='OpenStreetMap')
    folium.TileLayer('CartoDB positron').add_to(m)
    folium.TileLayer('CartoDB dark_matter').add_to(m)

    if enable_heatmap:
        HeatMap(
            [[p['latitude'], p['longitude']] for p in geolocated],
            name='Heatmap',
            min_opacity=0.3,
            max_zoom=18,
            radius=15,
            blur=20,
            gradient={0.2: 'blue', 0.4: 'cyan', 0.6: 'lime', 0.8: 'yellow', 1.0: 'red'}
        ).add_to(m)

    marker_cluster = MarkerCluster(name='Markers', show=not enable_heatmap).add_to(m)

    country_counts = Counter()
    client_counts = Counter()

    for peer in geolocated:
        country_counts[peer.get('country') or 'Unknown'] += 1
        client_counts[peer.get('client') or 'unknown'] += 1

        folium.Marker(
            location=[peer['latitude'], peer['longitude']],
            popup=folium.Popup(_popup_html(peer), max_width=320),
            tooltip=f"{peer.get('ip')} - {peer.get('client') or 'unknown'}",
            icon=folium.Icon(color='blue', icon='server', prefix='fa')
        ).add_to(marker_cluster)

    stats_html = f"""
    <div style="position: fixed;
                top: 10px; right: 10px; width: 300px; height: auto;
                background-color: white; z-index:9999;
                padding: 15px; border-radius: 5px;
                box-shadow: 0 2px 5px rgba(0,0,0,0.3);
                font-family: Arial, sans-serif; font-size: 12px;">
        <h3 style="margin: 0 0 10px 0; color: #1a1a1a;">Discovery Network Stats</h3>
        <p style="margin: 5px 0;"><strong>Total Peers:</strong> {len(geolocated)}</p>
        <p style="margin: 5px 0;"><strong>Countries:</strong> {len(country_counts)}</p>
        <hr style="margin: 10px 0;">
        <h4 style="margin: 10px 0 5px 0; font-size: 14px;">Top Countries:</h4>
        <ol style="margin: 0; padding-left: 20px;">
    """
    for country, count in country_counts.most_common(10):
        stats_html += f'<li style="margin: 2px 0;">{html.escape(country)}: {count}</li>'
    stats_html += """
        </ol>
        <h4 style="margin: 10px 0 5px 0; font-size: 14px;">Top Clients:</h4>
        <ol style="margin: 0; padding-left: 20px;">
    """
    for client, count in client_counts.most_common(5):
        stats_html += f'<li style="margin: 2px 0;">{html.escape(client)}: {count}</li>'
    stats_html += """
        </ol>
    </div>
    """

    m.get_root().html.add_child(folium.Element(stats_html))
    folium.LayerControl().add_to(m)

    m.save(output_file)
    logger.info(f"Map saved to {output_file} ({len(country_counts)} countries)")
    return output_file

#!/usr/bin/env python3
"""
IPTV Stream Finder
Keeps a working URL for every moveonjoy channel and redirects to it
"""

import json
import logging
import os
import re
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

import requests
from flask import Flask, Response, jsonify, redirect, request, url_for

# ============================================================================
# CONFIGURATION
# ============================================================================

# Server Configuration
PORT = int(os.environ.get('PORT', '3000'))

# Catalog
PLAYLIST_URL = os.environ.get('PLAYLIST_URL', 'https://cwdiptvb.github.io/tv_channels.m3u')
ORIGIN_DOMAIN = os.environ.get('ORIGIN_DOMAIN', 'moveonjoy.com')
HOST_RANGE = int(os.environ.get('HOST_RANGE', '99'))     # fl1 .. flN

# Scan Settings
SCAN_INTERVAL = int(os.environ.get('SCAN_INTERVAL', '300'))       # Seconds between scans
STREAM_TIMEOUT = float(os.environ.get('STREAM_TIMEOUT', '8'))     # Per probe
SCAN_DELAY = float(os.environ.get('SCAN_DELAY', '0.5'))           # Between channels
USER_AGENT = os.environ.get('USER_AGENT', 'VLC/3.0.20')

# Paths
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
STREAMS_FILE = os.environ.get('STREAMS_FILE', os.path.join(SCRIPT_DIR, 'streams.json'))

DEFAULT_EXAMPLE_ID = 'boomerang'

# ============================================================================
# LOGGING
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%H:%M:%S'
)
log = logging.getLogger(__name__)

# ============================================================================
# GLOBAL STATE
# ============================================================================

working_streams: Dict[str, str] = {}
channel_names: Dict[str, str] = {}
last_scan: Optional[dict] = None
lock = threading.RLock()
scan_lock = threading.Lock()
start_time = time.time()

session = requests.Session()
session.headers['User-Agent'] = USER_AGENT

# ============================================================================
# STORAGE
# ============================================================================

def load_streams():
    """Load cached working streams from file"""
    global working_streams
    try:
        with open(STREAMS_FILE, 'r') as f:
            loaded = json.load(f)
        if not isinstance(loaded, dict):
            raise ValueError(f"expected an object, got {type(loaded).__name__}")
        with lock:
            # Only non-empty string URLs count as a successful probe
            working_streams = {str(k): v for k, v in loaded.items() if isinstance(v, str) and v}
        log.info(f"Loaded existing streams: {len(working_streams)}")
    except (OSError, ValueError) as e:
        log.info(f"No usable streams file ({e}), starting fresh")
        with lock:
            working_streams = {}
        save_streams()

def save_streams() -> bool:
    """Save working streams to file"""
    with lock:
        data = dict(working_streams)
    try:
        with open(STREAMS_FILE, 'w') as f:
            json.dump(data, f, indent=2)
        log.info("Saved streams to file")
        return True
    except OSError as e:
        log.error(f"Failed to save streams: {e}")
        return False

# ============================================================================
# CATALOG
# ============================================================================

TVG_ID_RE = re.compile(r'tvg-id="([^"]+)"')
TVG_NAME_RE = re.compile(r'tvg-name="([^"]+)"')

def parse_playlist(text: str, host: str = None) -> List[dict]:
    """Extract channel entries served from the origin domain"""
    host = host or ORIGIN_DOMAIN
    entries = []
    current = {}

    for raw in text.splitlines():
        line = raw.strip()

        if line.startswith('#EXTINF:'):
            current = {}
            id_match = TVG_ID_RE.search(line)
            if id_match:
                name_match = TVG_NAME_RE.search(line)
                current['tvg_id'] = id_match.group(1)
                current['name'] = name_match.group(1) if name_match else id_match.group(1)
        elif line and not line.startswith('#') and host in line and current.get('tvg_id'):
            current['url'] = line
            entries.append(current)
            current = {}

    return entries

def m3u_safe(value: str) -> str:
    """Make a value safe for an #EXTINF attribute or title"""
    return value.replace('"', "'").replace(',', ' ').replace('\n', ' ').replace('\r', ' ')

def fetch_playlist() -> List[dict]:
    """Download and parse the channel catalog"""
    try:
        r = session.get(PLAYLIST_URL, timeout=30)
        r.raise_for_status()
    except requests.RequestException as e:
        log.error(f"Error fetching playlist: {e}")
        return []

    entries = parse_playlist(r.text)
    log.info(f"Parsed {len(entries)} {ORIGIN_DOMAIN} streams from M3U")
    return entries

# ============================================================================
# STREAM PROBING
# ============================================================================

def check_stream(url: str) -> bool:
    """Check if a stream URL answers HEAD with 200"""
    try:
        response = session.head(url, timeout=STREAM_TIMEOUT, allow_redirects=True)
        return response.status_code == 200
    except requests.RequestException:
        return False

def candidate_hosts(url: str) -> Iterator[tuple]:
    """Yield (index, url) for every alternate flN origin host"""
    pattern = re.compile(r'fl\d+\.' + re.escape(ORIGIN_DOMAIN))
    if not pattern.search(url):
        return
    for i in range(1, HOST_RANGE + 1):
        yield i, pattern.sub(f'fl{i}.{ORIGIN_DOMAIN}', url, count=1)

def find_working_stream(tvg_id: str, name: str, url: str) -> Optional[str]:
    """Try cached URL, then advertised URL, then scan fl1..flN"""
    log.info(f"Testing {name} ({tvg_id})...")
    tried = set()

    with lock:
        cached = working_streams.get(tvg_id)

    if cached:
        log.info(f"  Trying current: {cached}")
        tried.add(cached)
        if check_stream(cached):
            log.info("  ✓ Current stream still works")
            return cached
        log.info("  ✗ Current stream failed, trying original...")

    if url not in tried:
        tried.add(url)
        if check_stream(url):
            log.info(f"  ✓ Original URL works: {url}")
            return url

    log.info(f"  ✗ Original failed, scanning fl1-{HOST_RANGE}...")

    for i, test_url in candidate_hosts(url):
        if i % 10 == 0:
            log.info(f"  Testing fl{i}...")
        if test_url in tried:
            continue
        tried.add(test_url)
        if check_stream(test_url):
            log.info(f"  ✓ Found working stream: fl{i}")
            return test_url

    log.info(f"  ✗ No working stream found for {name}")
    return None

# ============================================================================
# SCANNER
# ============================================================================

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def scan_streams() -> Optional[dict]:
    """Run one scan cycle; returns the summary, or None if skipped"""
    if not scan_lock.acquire(blocking=False):
        log.warning("Scan already running, skipping")
        return None
    return run_locked_scan()

def run_locked_scan() -> Optional[dict]:
    """Scan body; caller must hold scan_lock, which is released here"""
    global last_scan

    try:
        log.info("=== Starting stream scan ===")
        started = _now()

        entries = fetch_playlist()
        if not entries:
            log.info("No streams to scan")
            return None

        with lock:
            channel_names.update({e['tvg_id']: e['name'] for e in entries})

        updated = 0
        failed = 0

        for idx, entry in enumerate(entries):
            tvg_id = entry['tvg_id']
            working_url = find_working_stream(tvg_id, entry['name'], entry['url'])

            with lock:
                if working_url:
                    if working_streams.get(tvg_id) != working_url:
                        log.info(f"  → Updated {tvg_id}: {working_url}")
                        updated += 1
                    working_streams[tvg_id] = working_url
                else:
                    failed += 1
                    if working_streams.pop(tvg_id, None):
                        log.info(f"  → Removed {tvg_id} (no working stream found)")

            if idx < len(entries) - 1:
                time.sleep(SCAN_DELAY)

        save_streams()

        with lock:
            summary = {
                'started': started,
                'finished': _now(),
                'channels': len(entries),
                'working': len(working_streams),
                'updated': updated,
                'failed': failed
            }
            last_scan = summary

        log.info("=== Scan complete ===")
        log.info(f"Working: {summary['working']}")
        log.info(f"Updated: {updated}")
        log.info(f"Failed: {failed}")
        return summary
    finally:
        scan_lock.release()

def is_scanning() -> bool:
    return scan_lock.locked()

def scan_loop():
    """Scan immediately, then every SCAN_INTERVAL seconds"""
    log.info(f"Scheduled scans every {SCAN_INTERVAL // 60} minutes")
    while True:
        try:
            scan_streams()
        except Exception as e:
            log.error(f"Scan error: {e}")
        time.sleep(SCAN_INTERVAL)

# ============================================================================
# REST API
# ============================================================================

app = Flask(__name__)
app.json.sort_keys = False
logging.getLogger('werkzeug').setLevel(logging.ERROR)

@app.route('/')
def api_stream():
    tvg_id = request.args.get('id')

    with lock:
        available = len(working_streams)
        first_id = next(iter(working_streams), DEFAULT_EXAMPLE_ID)
        stream_url = working_streams.get(tvg_id) if tvg_id else None

    if not tvg_id:
        return jsonify({
            'error': 'Missing id parameter',
            'usage': '/?id={tvg-id}',
            'available': available,
            'example': f'/?id={first_id}'
        }), 400

    if not stream_url:
        return jsonify({
            'error': 'Stream not found or not working',
            'tvgId': tvg_id,
            'available': available
        }), 404

    return redirect(stream_url, code=302)

@app.route('/list')
def api_list():
    with lock:
        streams = dict(working_streams)
        last_update = last_scan['finished'] if last_scan else None
    return jsonify({
        'count': len(streams),
        'streams': streams,
        'lastUpdate': last_update
    })

@app.route('/health')
def api_health():
    with lock:
        count = len(working_streams)
    return jsonify({
        'status': 'ok',
        'workingStreams': count,
        'uptime': int(time.time() - start_time)
    })

@app.route('/status')
def api_status():
    with lock:
        summary = dict(last_scan) if last_scan else None
    return jsonify({
        'scanning': is_scanning(),
        'interval': SCAN_INTERVAL,
        'lastScan': summary
    })

@app.route('/scan')
def api_scan():
    # Lock ownership passes to the worker thread
    if not scan_lock.acquire(blocking=False):
        return jsonify({'message': 'Scan already running', 'check': '/status for progress'}), 409
    try:
        threading.Thread(target=run_locked_scan, daemon=True).start()
    except RuntimeError:
        scan_lock.release()
        raise
    return jsonify({'message': 'Scan started', 'check': '/list for results'})

@app.route('/playlist.m3u')
def api_playlist():
    with lock:
        ids = list(working_streams)
        names = {k: channel_names.get(k, k) for k in ids}

    m3u_lines = ["#EXTM3U"]
    for tvg_id in ids:
        name = m3u_safe(names[tvg_id])
        m3u_lines.append(f'#EXTINF:-1 tvg-id="{m3u_safe(tvg_id)}" tvg-name="{name}",{name}')
        m3u_lines.append(url_for('api_stream', id=tvg_id, _external=True))

    return Response("\n".join(m3u_lines) + "\n", mimetype='audio/mpegurl', headers={
        "Content-Disposition": "attachment; filename=\"playlist.m3u\""
    })

# ============================================================================
# MAIN
# ============================================================================

def main():
    print("=" * 60)
    print("IPTV Stream Finder")
    print("=" * 60)
    print(f"Streams file: {STREAMS_FILE}")

    load_streams()

    threading.Thread(target=scan_loop, daemon=True).start()

    log.info(f"Server running on port {PORT}")
    log.info(f"Stream endpoint: http://localhost:{PORT}/?id={{tvg-id}}")
    log.info(f"List streams: http://localhost:{PORT}/list")
    log.info(f"Health check: http://localhost:{PORT}/health")
    try:
        app.run(host='0.0.0.0', port=PORT, debug=False, threaded=True)
    except KeyboardInterrupt:
        log.info("Stopped")

if __name__ == "__main__":
    main()

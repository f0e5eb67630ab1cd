#!/usr/bin/env python3
"""
supplyDesk Web API - Flask application exposing record validation and
duplicate detection as JSON endpoints.
"""

from flask import Flask, request, jsonify, Response, g
from pathlib import Path
import datetime
import sys
import os
import time

# Prometheus metrics
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Add the parent directory to Python path to import supplydesk modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from supplydesk.core.v1.config import get_datarepo_path
from supplydesk.core.v1.duplicates import DuplicateCheckError, detect_duplicates
from supplydesk.core.v1.imports import validate_import
from supplydesk.core.v1.records import RecordDirectoryLookup
from supplydesk.core.v1.repo import validate_repo
from supplydesk.core.v1.rulesets import load_rulesets, get_ruleset
from supplydesk.core.v1.validate import validate_entity

app = Flask(__name__)
app.secret_key = os.environ.get('SD_WEB_SECRET', 'dev-only-insecure-secret')

# -----------------------
# Prometheus instrumentation
# -----------------------
_METRICS_ENV = os.environ.get('METRICS_ENV', 'prod')
_SERVICE_NAME = os.environ.get('SERVICE_NAME', 'app')

# Module-local registry: each import of this module owns its collectors
METRICS_REGISTRY = CollectorRegistry()

HTTP_REQUESTS_TOTAL = Counter(
    'sd_web_http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status', 'env', 'service'],
    registry=METRICS_REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    'sd_web_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path', 'status', 'env', 'service'],
    buckets=(0.05, 0.1, 0.3, 1, 3, 10),
    registry=METRICS_REGISTRY,
)

VALIDATIONS_TOTAL = Counter(
    'sd_validations_total',
    'Candidate records validated',
    ['entity_type', 'outcome', 'env', 'service'],
    registry=METRICS_REGISTRY,
)

LOOKUP_FAILURES_TOTAL = Counter(
    'sd_duplicate_lookup_failures_total',
    'Duplicate checks that could not run because the records lookup failed',
    ['entity_type', 'env', 'service'],
    registry=METRICS_REGISTRY,
)

@app.before_request
def _metrics_before_request():
    g._metrics_t0 = time.time()

@app.after_request
def _metrics_after_request(response: Response):
    try:
        t0 = getattr(g, '_metrics_t0', None)
        dt = (time.time() - t0) if t0 is not None else None
        method = str(request.method or 'GET')
        # Prefer route rule (stable cardinality); fallback to path
        rule = request.url_rule.rule if request.url_rule is not None else None
        path_label = str(rule or request.path or '/')
        status = str(getattr(response, 'status_code', 0))
        HTTP_REQUESTS_TOTAL.labels(method, path_label, status, _METRICS_ENV, _SERVICE_NAME).inc()
        if dt is not None:
            HTTP_REQUEST_DURATION_SECONDS.labels(method, path_label, status, _METRICS_ENV, _SERVICE_NAME).observe(dt)
    except Exception as e:
        # Never break responses on metrics errors
        app.logger.warning(f"[supplyDesk] metrics update failed: {e}")
    return response

@app.get('/metrics')
def _metrics_endpoint():
    data = generate_latest(METRICS_REGISTRY)
    return Response(response=data, status=200, mimetype=CONTENT_TYPE_LATEST)

# -----------------------
# Request helpers
# -----------------------

def _as_bool(val, default=True):
    if val is None:
        return bool(default)
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in ('1', 'true', 'yes', 'on')


def _parse_now(val):
    """Parse an ISO 8601 date or datetime (trailing Z accepted). None passes through."""
    if val is None or val == '':
        return None
    if not isinstance(val, str):
        raise ValueError("'now' must be an ISO 8601 string")
    s = val.strip()
    probe = s[:-1] + '+00:00' if s.endswith('Z') else s
    try:
        return datetime.date.fromisoformat(probe)
    except ValueError:
        pass
    try:
        return datetime.datetime.fromisoformat(probe)
    except ValueError:
        raise ValueError(f"Invalid ISO 8601 date/time for 'now': {val}")


def _repo_or_none():
    """Configured datarepo path, or None when no default datarepo is set."""
    try:
        return get_datarepo_path()
    except RuntimeError:
        return None


def _decode_csv_bytes(b: bytes) -> str:
    """Decode uploaded CSV bytes, handling common BOMs and UTF-16 files."""
    if not b:
        return ''
    if b.startswith(b'\xef\xbb\xbf'):
        return b.decode('utf-8-sig', errors='ignore')
    if b.startswith(b'\xff\xfe') or b.startswith(b'\xfe\xff'):
        return b.decode('utf-16', errors='ignore')
    return b.decode('utf-8', errors='ignore')


def _sanitize_csv_text(text: str) -> str:
    """Remove stray BOM and embedded NULs, normalize newlines."""
    text = text.replace('\ufeff', '').replace('\x00', '')
    return text.replace('\r\n', '\n').replace('\r', '\n')


def _lookup_unavailable(entity_type: str, e: DuplicateCheckError):
    app.logger.warning(f"[supplyDesk] duplicate check for {entity_type} could not run: {e}")
    LOOKUP_FAILURES_TOTAL.labels(entity_type, _METRICS_ENV, _SERVICE_NAME).inc()
    body = {'success': False, 'error': str(e), 'lookup_unavailable': True}
    if e.field:
        body['field'] = e.field
    return jsonify(body), 503

# -----------------------
# Rule sets
# -----------------------

@app.route('/api/rules')
def api_rules_list():
    """List entity types and their rule sets."""
    try:
        rulesets = load_rulesets(_repo_or_none())
        items = [rs.describe() for rs in sorted(rulesets.values(), key=lambda r: r.name)]
        return jsonify({'success': True, 'rulesets': items})
    except Exception as e:
        return jsonify({'success': False, 'error': str(e)}), 500

@app.route('/api/rules/<entity_type>')
def api_rules_view(entity_type):
    try:
        rs = get_ruleset(entity_type, load_rulesets(_repo_or_none()))
        return jsonify({'success': True, 'ruleset': rs.describe()})
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 404

# -----------------------
# Validation
# -----------------------

@app.route('/api/validate/<entity_type>', methods=['POST'])
def api_validate_record(entity_type):
    """Validate one candidate record.

    Request JSON body:
      - record: mapping of field -> value (required)
      - exclude_id: identity of the record being updated (optional)
      - now: ISO 8601 reference date/time for future-date checks (optional)
      - check_duplicates: run duplicate detection against records/ (default true)

    Response: {'success': True, 'result': {is_valid, errors, warnings}}
    """
    try:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            payload = {}
        record = payload.get('record')
        if not isinstance(record, dict):
            return jsonify({'success': False, 'error': "'record' must be a JSON object"}), 400
        check_duplicates = _as_bool(payload.get('check_duplicates'), default=True)
        now = _parse_now(payload.get('now'))
        datarepo_path = get_datarepo_path() if check_duplicates else _repo_or_none()
        rs = get_ruleset(entity_type, load_rulesets(datarepo_path))
        result = validate_entity(record, rs, now)
        if check_duplicates:
            lookup = RecordDirectoryLookup(datarepo_path, rs.name)
            result = result.merged(detect_duplicates(record, rs, payload.get('exclude_id'), lookup))
    except DuplicateCheckError as e:
        return _lookup_unavailable(entity_type, e)
    except (ValueError, RuntimeError) as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    outcome = 'valid' if result.is_valid else 'invalid'
    VALIDATIONS_TOTAL.labels(rs.name, outcome, _METRICS_ENV, _SERVICE_NAME).inc()
    return jsonify({'success': True, 'entity_type': rs.name, 'result': result.to_dict()})

@app.route('/api/validate/<entity_type>/csv', methods=['POST'])
def api_validate_csv(entity_type):
    """Check a CSV import without writing anything.

    Accepts a multipart upload ('file'), 'csv_text' in form/JSON, or a raw text body.
    Query/form/JSON 'check_duplicates' and 'now' behave as for single records.
    """
    try:
        payload = request.get_json(silent=True) if request.is_json else None
        payload = payload or {}
        if not isinstance(payload, dict):
            payload = {}
        if 'file' in request.files:
            text = _decode_csv_bytes(request.files['file'].read())
        elif payload.get('csv_text') or request.form.get('csv_text'):
            text = payload.get('csv_text') or request.form.get('csv_text') or ''
            if not isinstance(text, str):
                return jsonify({'success': False, 'error': "'csv_text' must be a string"}), 400
        else:
            text = _decode_csv_bytes(request.get_data() or b'')
        text = _sanitize_csv_text(text)
        if not text.strip():
            return jsonify({'success': False, 'error': 'No CSV provided'}), 400

        def _opt(name):
            return payload.get(name, request.form.get(name, request.args.get(name)))

        check_duplicates = _as_bool(_opt('check_duplicates'), default=True)
        now = _parse_now(_opt('now'))
        datarepo_path = get_datarepo_path() if check_duplicates else _repo_or_none()
        rs = get_ruleset(entity_type, load_rulesets(datarepo_path))
        lookup = RecordDirectoryLookup(datarepo_path, rs.name) if check_duplicates else None
        result = validate_import(text, rs, lookup=lookup, now=now)
        return jsonify({'success': True, 'result': result})
    except DuplicateCheckError as e:
        return _lookup_unavailable(entity_type, e)
    except (ValueError, RuntimeError) as e:
        return jsonify({'success': False, 'error': str(e)}), 400

@app.route('/repo/validate', methods=['POST'])
def repo_validate():
    """Run repository validation and return JSON results."""
    try:
        datarepo_path = get_datarepo_path()
        payload = request.get_json(silent=True) or {}
        include_duplicates = _as_bool(payload.get('include_duplicates', request.form.get('include_duplicates')))
        types = payload.get('entity_types') or request.form.getlist('entity_types') or None
        if isinstance(types, str):
            types = [types]
        now = _parse_now(payload.get('now', request.form.get('now')))
        result = validate_repo(
            datarepo_path,
            entity_types=types,
            include_duplicates=include_duplicates,
            now=now,
        )
        return jsonify({'success': True, 'result': result})
    except Exception as e:
        app.logger.error(f"[supplyDesk] repository validation failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 400

@app.errorhandler(404)
def not_found(error):
    return jsonify({'success': False, 'error': 'Not found'}), 404

@app.errorhandler(500)
def internal_error(error):
    return jsonify({'success': False, 'error': 'Internal server error'}), 500

if __name__ == '__main__':
    # Determine port (env PORT or --port flag), default 8080
    port = int(os.environ.get('PORT', '8080'))
    if '--port' in sys.argv:
        idx = sys.argv.index('--port')
        if idx + 1 < len(sys.argv):
            port = int(sys.argv[idx + 1])

    print("Starting supplyDesk validation API...")
    print(f"Access the API at: http://localhost:{port}/api/rules")
    print("=" * 50)

    debug_mode = os.environ.get('FLASK_ENV') == 'development' or '--debug' in sys.argv
    try:
        app.run(
            debug=debug_mode,
            host='0.0.0.0',
            port=port,
            use_reloader=debug_mode
        )
    except KeyboardInterrupt:
        print("\nShutting down supplyDesk web API...")
